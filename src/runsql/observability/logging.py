"""Logging setup: console formatter with structured extras, optional Cloud Logging."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import time
from collections.abc import Mapping
from dataclasses import asdict, is_dataclass
from logging.config import dictConfig
from typing import Any

from google.cloud import logging as gcp_logging
from opentelemetry import trace

ROOT_LEVEL_ENV = "LOG_LEVEL"
CLOUD_LOG_NAME = "runsql"

# Sandbox lifecycle logs stay at INFO even when the root level is raised.
_EXTRA_LOGGERS: dict[str, dict[str, Any]] = {
    "runsql.sandbox": {"level": "INFO"},
    "runsql.registry": {"level": "INFO"},
    "runsql.gc": {"level": "INFO"},
}

_PACKAGE_LOGGER_ROOT = "runsql"


def _level(env_var: str, default: str) -> str:
    return os.getenv(env_var, default).upper()


def _should_emit_json_payload() -> bool:
    # Managed runtimes parse JSON lines into structured payloads; keep local logs readable.
    return bool(os.getenv("K_SERVICE") or os.getenv("KUBERNETES_SERVICE_HOST"))


class ExtrasFormatter(logging.Formatter):
    """Append structured `data` payloads when present."""

    def format(self, record: logging.LogRecord) -> str:
        record_data = record.__dict__.get("data")

        if _should_emit_json_payload():
            return json.dumps(_structured_payload(record), sort_keys=True, separators=(",", ":"))

        formatted = super().format(record)
        if record_data:
            try:
                encoded = json.dumps(record_data, sort_keys=True, separators=(",", ":"))
            except TypeError:
                encoded = str(record_data)
            return f"{formatted} | data={encoded}"
        return formatted


class OtelContextLogFilter(logging.Filter):
    """Copy the active trace and span ids onto the record's json_fields."""

    def __init__(self, *, gcp_project_id: str | None = None) -> None:
        super().__init__()
        self._gcp_project_id = gcp_project_id.strip() if gcp_project_id else None

    def filter(self, record: logging.LogRecord) -> bool:
        span_context = trace.get_current_span().get_span_context()
        if not span_context.is_valid:
            return True

        json_fields = record.__dict__.get("json_fields")
        fields = dict(json_fields) if isinstance(json_fields, Mapping) else {}
        trace_id = f"{span_context.trace_id:032x}"
        span_id = f"{span_context.span_id:016x}"
        fields["otel"] = {"trace_id": trace_id, "span_id": span_id}
        if self._gcp_project_id:
            fields.setdefault(
                "logging.googleapis.com/trace",
                f"projects/{self._gcp_project_id}/traces/{trace_id}",
            )
            fields.setdefault("logging.googleapis.com/spanId", span_id)
        record.__dict__["json_fields"] = fields
        return True


class CloudJsonSanitizer(logging.Filter):
    """Make `data` JSON-serializable before Cloud Logging ships it."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - thin wrapper
        record_dict = record.__dict__
        if "data" not in record_dict:
            return True
        sanitized = _sanitize_for_json(record_dict["data"])
        record_dict["data"] = sanitized
        json_fields = record_dict.get("json_fields")
        fields = dict(json_fields) if isinstance(json_fields, Mapping) else {}
        fields.setdefault("data", sanitized)
        record_dict["json_fields"] = fields
        return True


def _structured_payload(record: logging.LogRecord) -> dict[str, Any]:
    message = record.getMessage()
    payload: dict[str, Any] = {
        "severity": record.levelname,
        "logger": record.name,
        "timestamp": (
            f"{time.strftime('%Y-%m-%dT%H:%M:%S', time.gmtime(record.created))}"
            f".{int(record.msecs):03d}Z"
        ),
    }
    record_data = record.__dict__.get("data")
    if record_data:
        payload["data"] = _sanitize_for_json(record_data)
    if record.exc_info:
        payload["exception"] = logging.Formatter().formatException(record.exc_info)
    json_fields = record.__dict__.get("json_fields")
    if isinstance(json_fields, Mapping):
        for key, value in json_fields.items():
            payload.setdefault(key, _sanitize_for_json(value))
    payload["message"] = message
    return payload


def _sanitize_for_json(value: Any, depth: int = 8) -> Any:
    """Return a JSON-serializable copy; fall back to ``str`` for unknown types."""
    if depth <= 0:
        return "<depth_exceeded>"
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return f"<bytes len={len(value)}>"
    if is_dataclass(value) and not isinstance(value, type):
        return _sanitize_for_json(asdict(value), depth - 1)
    if isinstance(value, Mapping):
        return {str(key): _sanitize_for_json(item, depth - 1) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_sanitize_for_json(item, depth - 1) for item in value]
    return str(value)


def build_log_config(
    *,
    cloud_logging_enabled: bool = False,
    gcp_project: str | None = None,
    cloud_log_labels: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return a dictConfig-compatible logging configuration."""
    cloud_handler_name = None
    handlers: dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "console",
            "stream": "ext://sys.stdout",
            "filters": ["otel_context"],
        }
    }
    if cloud_logging_enabled:
        if not gcp_project:
            raise RuntimeError("GCP project required when cloud logging is enabled")
        cloud_handler_name = "cloud_logging"
        handlers[cloud_handler_name] = _cloud_logging_handler(gcp_project, cloud_log_labels)

    handler_list = ["console"] + ([cloud_handler_name] if cloud_handler_name else [])
    loggers: dict[str, dict[str, Any]] = {
        name: {"level": _level(env_var, default), "handlers": list(handler_list), "propagate": False}
        for name, env_var, default in (
            ("uvicorn", "UVICORN_LOG_LEVEL", "INFO"),
            ("uvicorn.error", "UVICORN_LOG_LEVEL", "INFO"),
            ("uvicorn.access", "UVICORN_ACCESS_LOG_LEVEL", "WARNING"),
            ("asyncpg", "ASYNCPG_LOG_LEVEL", "WARNING"),
        )
    }
    loggers.update({name: dict(config) for name, config in _EXTRA_LOGGERS.items()})

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {
                "()": ExtrasFormatter,
                "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S",
            }
        },
        "filters": {
            "otel_context": {"()": OtelContextLogFilter, "gcp_project_id": gcp_project},
            "cloud_json_sanitizer": {"()": CloudJsonSanitizer},
        },
        "handlers": handlers,
        "root": {"level": _level(ROOT_LEVEL_ENV, "INFO"), "handlers": handler_list},
        "loggers": loggers,
    }


def _cloud_logging_handler(project: str, labels: Mapping[str, str] | None) -> dict[str, Any]:
    from google.cloud.logging_v2.resource import Resource
    from google.oauth2.service_account import Credentials

    credentials = None
    service_account_b64 = (os.getenv("GCP_SERVICE_ACCOUNT_CREDENTIAL_BASE64") or "").strip()
    if service_account_b64:
        try:
            info = json.loads(base64.b64decode(service_account_b64, validate=True).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError("GCP_SERVICE_ACCOUNT_CREDENTIAL_BASE64 is invalid") from exc
        credentials = Credentials.from_service_account_info(info)  # type: ignore[no-untyped-call]

    client = gcp_logging.Client(project=project, credentials=credentials)  # type: ignore[no-untyped-call]
    return {
        "level": "INFO",
        "class": "google.cloud.logging_v2.handlers.handlers.CloudLoggingHandler",
        "client": client,
        "name": CLOUD_LOG_NAME,
        "resource": Resource("global", {"project_id": project}),
        "labels": dict(labels or {}),
        "formatter": "console",
        "filters": ["otel_context", "cloud_json_sanitizer"],
    }


def configure_logging(
    *,
    cloud_logging_enabled: bool = False,
    gcp_project: str | None = None,
    cloud_log_labels: Mapping[str, str] | None = None,
) -> None:
    config = build_log_config(
        cloud_logging_enabled=cloud_logging_enabled,
        gcp_project=gcp_project,
        cloud_log_labels=cloud_log_labels,
    )
    dictConfig(config)
    _reset_package_logger_levels(explicit_loggers=set(config["loggers"]))


def init_logging() -> None:
    """Bootstrap console logging without cloud handlers."""
    configure_logging(cloud_logging_enabled=False)


def enable_cloud_logging(*, gcp_project: str, cloud_log_labels: Mapping[str, str] | None = None) -> None:
    """Attach cloud logging on top of the console setup."""
    configure_logging(
        cloud_logging_enabled=True,
        gcp_project=gcp_project,
        cloud_log_labels=cloud_log_labels,
    )


def _reset_package_logger_levels(*, explicit_loggers: set[str]) -> None:
    package_logger = logging.getLogger(_PACKAGE_LOGGER_ROOT)
    package_logger.setLevel(logging.getLogger().level)
    package_logger.propagate = True
    for name, entry in logging.Logger.manager.loggerDict.items():
        if (
            isinstance(entry, logging.Logger)
            and name.startswith(f"{_PACKAGE_LOGGER_ROOT}.")
            and name not in explicit_loggers
        ):
            entry.setLevel(logging.NOTSET)


def shutdown_logging() -> None:
    """Flush and close Cloud Logging handlers so buffered entries are shipped."""
    from google.cloud.logging_v2.handlers.handlers import CloudLoggingHandler

    seen: set[int] = set()
    loggers = [logging.getLogger()]
    loggers.extend(
        entry for entry in logging.Logger.manager.loggerDict.values() if isinstance(entry, logging.Logger)
    )
    for entry in loggers:
        for handler in entry.handlers:
            if id(handler) in seen or not isinstance(handler, CloudLoggingHandler):
                continue
            seen.add(id(handler))
            try:
                handler.flush()  # type: ignore[no-untyped-call]
                handler.close()  # type: ignore[no-untyped-call]
            except Exception as exc:  # pragma: no cover - network teardown
                logging.getLogger("runsql.observability").warning(
                    "closing cloud logging handler failed: %s", exc
                )


__all__ = [
    "CloudJsonSanitizer",
    "ExtrasFormatter",
    "OtelContextLogFilter",
    "build_log_config",
    "configure_logging",
    "enable_cloud_logging",
    "init_logging",
    "shutdown_logging",
]
