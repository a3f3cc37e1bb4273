from __future__ import annotations

import asyncio
import threading
from subprocess import CalledProcessError, CompletedProcess

import pytest

from runsql.domain.sandbox import EngineKind, ResourceHandle, SandboxEndpoint
from runsql.errors import MaterializationFailure, ProvisioningError, ProvisioningTimeout
from runsql.infrastructure.postgres.client import PostgresCredentials
from runsql.infrastructure.sandbox.docker import DockerPostgresProvisioner
from runsql.infrastructure.sandbox.options import PostgresSandboxOptions
from tests.fixtures.fakes import FailingConnector, FakeConnection, FakeConnector

pytestmark = pytest.mark.anyio("asyncio")


class RecordingRunner:
    """Fake ``subprocess.run`` keyed on the docker sub-command."""

    def __init__(
        self,
        *,
        image_present: bool = True,
        port_output: str = "127.0.0.1:49153\n",
        ps_output: str = "",
        failing: set[str] | None = None,
        run_gate: threading.Event | None = None,
    ) -> None:
        self.commands: list[tuple[list[str], dict[str, object]]] = []
        self._image_present = image_present
        self._port_output = port_output
        self._ps_output = ps_output
        self._failing = failing or set()
        self._lock = threading.Lock()
        self._run_gate = run_gate

    def __call__(self, args: list[str], **kwargs: object) -> CompletedProcess[str]:
        with self._lock:
            self.commands.append((list(args), dict(kwargs)))
        command = args[1]
        if command == "run" and self._run_gate is not None:
            self._run_gate.wait(timeout=5)
        if command == "image" and not self._image_present:
            raise CalledProcessError(1, args, output="", stderr="No such image")
        if command in self._failing:
            raise CalledProcessError(1, args, output="", stderr=f"{command} failed")
        stdout = {
            "run": "abc123\n",
            "port": self._port_output,
            "ps": self._ps_output,
        }.get(command, "")
        return CompletedProcess(args=args, returncode=0, stdout=stdout, stderr="")

    def subcommands(self) -> list[str]:
        return [args[1] for args, _ in self.commands]


def _options(**overrides: object) -> PostgresSandboxOptions:
    defaults: dict[str, object] = {
        "image": "postgres:15-alpine",
        "credentials": PostgresCredentials(username="sandbox", password="s3cret", database="sandbox"),
        "readiness_timeout_seconds": 5.0,
        "readiness_retry_delay_seconds": 0.01,
    }
    defaults.update(overrides)
    return PostgresSandboxOptions(**defaults)  # type: ignore[arg-type]


async def test_provision_builds_run_command_and_resolves_port() -> None:
    runner = RecordingRunner()
    connector = FakeConnector()
    provisioner = DockerPostgresProvisioner(_options(), command_runner=runner, connect=connector)

    provisioned = await provisioner.provision(EngineKind.POSTGRES, "sandbox_1_abc")

    assert provisioned.resource.identifier == "abc123"
    assert provisioned.resource.name.startswith("runsql-sandbox-sandbox_1_abc-")
    assert provisioned.endpoint == SandboxEndpoint("127.0.0.1", 49153)
    assert runner.subcommands() == ["image", "run", "port"]

    run_args, run_kwargs = runner.commands[1]
    assert run_args[:6] == ["docker", "run", "-d", "--pull", "never", "--name"]
    assert run_args[6] == provisioned.resource.name
    assert "runsql.sandbox=runsql" in run_args
    assert "runsql.session=sandbox_1_abc" in run_args
    assert run_args[run_args.index("-p") + 1] == "127.0.0.1::5432"
    assert "POSTGRES_PASSWORD=s3cret" in run_args
    assert "--memory" in run_args
    assert run_args[-1] == "postgres:15-alpine"
    assert run_kwargs["capture_output"] is True
    assert run_kwargs["text"] is True

    assert runner.commands[2][0] == ["docker", "port", provisioned.resource.name, "5432"]
    assert connector.calls[0]["port"] == 49153
    assert connector.connections[0].closed is True


async def test_missing_image_is_pulled_once_for_concurrent_callers() -> None:
    runner = RecordingRunner(image_present=False)
    provisioner = DockerPostgresProvisioner(_options(), command_runner=runner, connect=FakeConnector())

    await asyncio.gather(provisioner.ensure_image(), provisioner.ensure_image(), provisioner.ensure_image())
    await provisioner.ensure_image()

    assert runner.subcommands() == ["image", "pull"]
    assert runner.commands[1][0] == ["docker", "pull", "postgres:15-alpine"]


async def test_never_pull_policy_fails_when_image_is_missing() -> None:
    runner = RecordingRunner(image_present=False)
    provisioner = DockerPostgresProvisioner(
        _options(pull_policy="never"), command_runner=runner, connect=FakeConnector()
    )

    with pytest.raises(ProvisioningError, match="not available locally"):
        await provisioner.provision(EngineKind.POSTGRES, "sandbox_1_abc")

    assert "run" not in runner.subcommands()


async def test_failed_image_fetch_is_retried_on_next_request() -> None:
    runner = RecordingRunner(image_present=False, failing={"pull"})
    provisioner = DockerPostgresProvisioner(_options(), command_runner=runner, connect=FakeConnector())

    with pytest.raises(ProvisioningError, match="docker pull postgres:15-alpine failed"):
        await provisioner.ensure_image()
    with pytest.raises(ProvisioningError):
        await provisioner.ensure_image()

    assert runner.subcommands() == ["image", "pull", "image", "pull"]


async def test_docker_run_failure_does_not_leak_credentials() -> None:
    runner = RecordingRunner(failing={"run"})
    provisioner = DockerPostgresProvisioner(_options(), command_runner=runner, connect=FakeConnector())

    with pytest.raises(ProvisioningError) as excinfo:
        await provisioner.provision(EngineKind.POSTGRES, "sandbox_1_abc")

    assert "s3cret" not in str(excinfo.value)
    assert "run failed" in str(excinfo.value)


async def test_readiness_timeout_destroys_the_container() -> None:
    runner = RecordingRunner()
    provisioner = DockerPostgresProvisioner(
        _options(readiness_timeout_seconds=0.05),
        command_runner=runner,
        connect=FailingConnector(OSError("connection refused")),
    )

    with pytest.raises(ProvisioningTimeout):
        await provisioner.provision(EngineKind.POSTGRES, "sandbox_1_abc")

    assert runner.subcommands()[-2:] == ["stop", "rm"]
    assert runner.commands[-2][0] == ["docker", "stop", "-t", "5", "abc123"]
    assert runner.commands[-1][0] == ["docker", "rm", "-f", "abc123"]


async def test_unparseable_port_mapping_destroys_the_container() -> None:
    runner = RecordingRunner(port_output="garbage\n")
    provisioner = DockerPostgresProvisioner(_options(), command_runner=runner, connect=FakeConnector())

    with pytest.raises(ProvisioningError, match="unexpected mapping"):
        await provisioner.provision(EngineKind.POSTGRES, "sandbox_1_abc")

    assert runner.subcommands()[-2:] == ["stop", "rm"]


async def test_port_mapping_accepts_multiple_bindings() -> None:
    runner = RecordingRunner(port_output="0.0.0.0:49160\n[::]:49160\n")
    provisioner = DockerPostgresProvisioner(_options(), command_runner=runner, connect=FakeConnector())

    provisioned = await provisioner.provision(EngineKind.POSTGRES, "sandbox_1_abc")

    assert provisioned.endpoint.port == 49160


async def test_destroy_never_raises_and_always_removes() -> None:
    runner = RecordingRunner(failing={"stop"})
    provisioner = DockerPostgresProvisioner(
        _options(stop_timeout_seconds=None), command_runner=runner, connect=FakeConnector()
    )

    await provisioner.destroy(ResourceHandle(identifier="abc123", name="runsql-sandbox-x"))

    assert [args for args, _ in runner.commands] == [
        ["docker", "stop", "abc123"],
        ["docker", "rm", "-f", "abc123"],
    ]


async def test_list_resources_filters_on_service_label() -> None:
    runner = RecordingRunner(ps_output="abc123\n\ndef456\n")
    provisioner = DockerPostgresProvisioner(_options(), command_runner=runner, connect=FakeConnector())

    assert await provisioner.list_resources() == ["abc123", "def456"]
    args, _ = runner.commands[0]
    assert args[:4] == ["docker", "ps", "-a", "--no-trunc"]
    assert "label=runsql.sandbox=runsql" in args


async def test_materialize_closes_connection_and_wraps_errors() -> None:
    connection = FakeConnection(fail_on="CREATE", error=OSError("connection reset"))
    provisioner = DockerPostgresProvisioner(
        _options(), command_runner=RecordingRunner(), connect=FakeConnector(connection)
    )

    with pytest.raises(MaterializationFailure, match="connection reset"):
        await provisioner.materialize(SandboxEndpoint("127.0.0.1", 49153), ['CREATE TABLE "t" ();'], {})

    assert connection.closed is True


async def test_materialize_reports_unreachable_sandbox() -> None:
    provisioner = DockerPostgresProvisioner(
        _options(),
        command_runner=RecordingRunner(),
        connect=FailingConnector(OSError("refused")),
    )

    with pytest.raises(MaterializationFailure, match="Failed to connect to sandbox"):
        await provisioner.materialize(SandboxEndpoint("127.0.0.1", 49153), [], {})


async def test_failed_docker_run_removes_the_named_container() -> None:
    runner = RecordingRunner(failing={"run"})
    provisioner = DockerPostgresProvisioner(_options(), command_runner=runner, connect=FakeConnector())

    with pytest.raises(ProvisioningError):
        await provisioner.provision(EngineKind.POSTGRES, "sandbox_1_abc")

    assert runner.subcommands() == ["image", "run", "rm"]
    name = runner.commands[1][0][6]
    assert runner.commands[2][0] == ["docker", "rm", "-f", name]


async def test_cancelled_launch_removes_container_once_docker_run_returns() -> None:
    run_gate = threading.Event()
    runner = RecordingRunner(run_gate=run_gate)
    provisioner = DockerPostgresProvisioner(_options(), command_runner=runner, connect=FakeConnector())

    task = asyncio.create_task(provisioner.provision(EngineKind.POSTGRES, "sandbox_1_abc"))
    for _ in range(200):
        if "run" in runner.subcommands():
            break
        await asyncio.sleep(0.01)
    task.cancel()
    for _ in range(5):
        await asyncio.sleep(0)
    assert "rm" not in runner.subcommands()

    run_gate.set()
    with pytest.raises(asyncio.CancelledError):
        await task

    name = runner.commands[1][0][6]
    assert runner.subcommands() == ["image", "run", "rm"]
    assert runner.commands[-1][0] == ["docker", "rm", "-f", name]
