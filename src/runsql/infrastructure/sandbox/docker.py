"""Docker-backed Postgres sandbox provisioner."""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import subprocess
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import asyncpg

from runsql.application.ports.provisioner import ProvisionedSandbox, SandboxProvisionerPort
from runsql.domain.sandbox import EngineKind, ResourceHandle, SandboxEndpoint
from runsql.errors import MaterializationFailure, ProvisioningError, UnsupportedEngine
from runsql.infrastructure.postgres import client as pg
from runsql.infrastructure.sandbox.options import (
    SANDBOX_LABEL,
    SESSION_LABEL,
    PostgresSandboxOptions,
)
from runsql.json_types import JsonObject

logger = logging.getLogger("runsql.sandbox")

CommandRunner = Callable[..., subprocess.CompletedProcess[str]]

_NAME_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]+")


class DockerPostgresProvisioner(SandboxProvisionerPort):
    """Launches one Postgres container per sandbox using the Docker CLI."""

    def __init__(
        self,
        options: PostgresSandboxOptions,
        *,
        docker_binary: str = "docker",
        command_runner: CommandRunner | None = None,
        connect: pg.ConnectFactory = asyncpg.connect,
    ) -> None:
        self._options = options
        self._docker = docker_binary
        self._run = command_runner or self._default_run
        self._connect = connect
        self._image_ready = False
        self._image_task: asyncio.Task[None] | None = None

    async def provision(self, engine: EngineKind, session_key: str) -> ProvisionedSandbox:
        if engine is not EngineKind.POSTGRES:
            raise UnsupportedEngine(f"Engine {engine.value} is not supported yet")

        await self.ensure_image()
        name = self._container_name(session_key)
        launch = asyncio.ensure_future(self._launch_container(name, session_key))
        try:
            container_id = await asyncio.shield(launch)
        except BaseException:
            # docker run may have created the container before failing, and a
            # cancelled launch keeps running in its worker thread until it returns.
            if not launch.done():
                await asyncio.wait({launch})
            await self._best_effort(
                [self._docker, "rm", "-f", name],
                ResourceHandle(identifier=name, name=name),
                action="rm",
            )
            raise
        resource = ResourceHandle(identifier=container_id, name=name)
        try:
            port = await self._resolve_published_port(name)
            endpoint = SandboxEndpoint(host=self._options.host, port=port)
            await self.await_ready(endpoint)
        except BaseException:
            await self.destroy(resource)
            raise
        return ProvisionedSandbox(endpoint=endpoint, resource=resource)

    async def ensure_image(self) -> None:
        """Make sure the sandbox image is present; concurrent callers share one fetch."""
        if self._image_ready:
            return
        task = self._image_task
        if task is None:
            task = asyncio.create_task(self._fetch_image(), name="sandbox-image-fetch")
            self._image_task = task
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._image_task is task:
                self._image_task = None
        self._image_ready = True

    async def await_ready(
        self,
        endpoint: SandboxEndpoint,
        *,
        timeout_seconds: float | None = None,
        retry_delay_seconds: float | None = None,
    ) -> None:
        await pg.await_ready(
            endpoint,
            self._options.credentials,
            timeout_seconds=timeout_seconds or self._options.readiness_timeout_seconds,
            retry_delay_seconds=retry_delay_seconds or self._options.readiness_retry_delay_seconds,
            connect=self._connect,
        )

    async def materialize(
        self,
        endpoint: SandboxEndpoint,
        statements: Sequence[str],
        data: Mapping[str, Sequence[JsonObject]],
    ) -> None:
        timeout = self._options.materialize_timeout_seconds
        try:
            connection = await pg.open_connection(
                endpoint,
                self._options.credentials,
                timeout=timeout or 30.0,
                connect=self._connect,
            )
        except pg.CONNECTION_ERRORS as exc:
            raise MaterializationFailure(f"Failed to connect to sandbox: {exc}") from exc
        try:
            await pg.materialize(connection, statements, data, timeout=timeout)
        finally:
            await pg.close_quietly(connection)

    async def destroy(self, resource: ResourceHandle) -> None:
        """Stop with a grace period, then force-remove. Failures are logged only."""
        stop_args = [self._docker, "stop"]
        if self._options.stop_timeout_seconds is not None:
            stop_args.extend(["-t", str(self._options.stop_timeout_seconds)])
        stop_args.append(resource.identifier)
        logger.info(
            "stopping sandbox container",
            extra={"data": {"container": resource.identifier, "name": resource.name}},
        )
        await self._best_effort(stop_args, resource, action="stop")
        await self._best_effort([self._docker, "rm", "-f", resource.identifier], resource, action="rm")

    async def list_resources(self) -> list[str]:
        args = [
            self._docker,
            "ps",
            "-a",
            "--no-trunc",
            "--filter",
            f"label={SANDBOX_LABEL}={self._options.label_value}",
            "--format",
            "{{.ID}}",
        ]
        try:
            result = await asyncio.to_thread(self._run, args, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            raise RuntimeError(f"docker ps failed: stderr={stderr}") from exc
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    async def _fetch_image(self) -> None:
        image = self._options.image
        policy = self._options.pull_policy
        present = False if policy == "always" else await self._image_present(image)
        if present:
            return
        if policy == "never":
            raise ProvisioningError(f"sandbox image {image} is not available locally")
        logger.info("pulling sandbox image", extra={"data": {"image": image, "pull_policy": policy}})
        try:
            await asyncio.to_thread(
                self._run,
                [self._docker, "pull", image],
                capture_output=True,
                text=True,
                check=True,
            )
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            logger.error(
                "docker pull failed: returncode=%s stderr=%s",
                exc.returncode,
                stderr,
                extra={"data": {"image": image}},
            )
            raise ProvisioningError(f"docker pull {image} failed: {stderr}") from exc

    async def _image_present(self, image: str) -> bool:
        try:
            await asyncio.to_thread(
                self._run,
                [self._docker, "image", "inspect", image],
                capture_output=True,
                text=True,
                check=True,
            )
        except subprocess.CalledProcessError:
            return False
        return True

    def _build_run_args(self, name: str, session_key: str) -> list[str]:
        options = self._options
        args = [
            self._docker,
            "run",
            "-d",
            "--pull",
            "never",
            "--name",
            name,
            "--label",
            f"{SANDBOX_LABEL}={options.label_value}",
            "--label",
            f"{SESSION_LABEL}={session_key}",
            "-p",
            f"{options.host}::{options.container_port}",
        ]
        for key, value in options.env.items():
            args.extend(["-e", f"{key}={value}"])
        args.extend(options.extra_args)
        args.append(options.image)
        return args

    async def _launch_container(self, name: str, session_key: str) -> str:
        args = self._build_run_args(name, session_key)
        logger.info(
            "launching sandbox container",
            extra={
                "data": {
                    "image": self._options.image,
                    "container_name": name,
                    "container_port": self._options.container_port,
                }
            },
        )
        try:
            result = await asyncio.to_thread(self._run, args, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as exc:
            self._raise_run_error(exc, name)
        container_id = (result.stdout or "").strip()
        if not container_id:
            raise ProvisioningError("docker run did not return a container identifier")
        return container_id

    def _raise_run_error(self, exc: subprocess.CalledProcessError, name: str) -> None:
        stderr = (exc.stderr or "").strip()
        # The command line carries the sandbox password; keep it out of logs and errors.
        logger.error(
            "docker run failed (returncode=%s) stderr=%s",
            exc.returncode,
            stderr,
            extra={"data": {"container": name, "image": self._options.image}},
        )
        raise ProvisioningError(
            f"docker run failed (returncode={exc.returncode}) stderr={stderr}"
        ) from exc

    async def _resolve_published_port(self, name: str) -> int:
        args = [self._docker, "port", name, str(self._options.container_port)]
        try:
            result = await asyncio.to_thread(self._run, args, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            raise ProvisioningError(f"docker port failed: stderr={stderr}") from exc

        output = (result.stdout or "").strip()
        if not output:
            raise ProvisioningError("docker port returned an empty mapping")

        for line in output.splitlines():
            mapping = line
            if "->" in line:
                _, _, mapping = line.partition("->")
                mapping = mapping.strip()

            port_bits = mapping.rsplit(":", 1)
            if len(port_bits) != 2:
                continue
            published_port = port_bits[1].strip()
            if published_port.isdigit():
                return int(published_port)

        raise ProvisioningError(f"docker port returned an unexpected mapping: {output}")

    async def _best_effort(self, args: list[str], resource: ResourceHandle, *, action: str) -> None:
        try:
            await asyncio.to_thread(self._run, args, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as exc:
            logger.warning(
                "docker %s failed (ignored): returncode=%s stderr=%s",
                action,
                exc.returncode,
                exc.stderr,
                extra={"data": {"container": resource.identifier}},
            )
        except Exception as exc:
            logger.warning(
                "docker %s failed (ignored): %s",
                action,
                exc,
                extra={"data": {"container": resource.identifier}},
            )

    def _container_name(self, session_key: str) -> str:
        safe_key = _NAME_UNSAFE.sub("-", session_key).strip("-.")[:48] or "session"
        return f"{self._options.name_prefix}-{safe_key}-{secrets.token_hex(3)}"

    @staticmethod
    def _default_run(
        *args: Any,
        **kwargs: Any,
    ) -> subprocess.CompletedProcess[str]:  # pragma: no cover - thin wrapper
        return subprocess.run(*args, **kwargs)  # noqa: S603


__all__ = ["CommandRunner", "DockerPostgresProvisioner"]
