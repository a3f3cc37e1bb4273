from __future__ import annotations

import pytest


@pytest.fixture
def anyio_backend() -> str:
    # Sandbox code is written against asyncio primitives; run AnyIO tests on asyncio only
    return "asyncio"
