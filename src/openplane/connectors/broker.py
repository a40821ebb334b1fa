from __future__ import annotations

import asyncio
import logging
import os
import shlex
from dataclasses import dataclass
from typing import Protocol

from openplane.models import ConnectorDefinition, ConnectorStatus
from openplane.processes import kill_and_reap, spawn_process_group

logger = logging.getLogger(__name__)

DEFAULT_STARTUP_GRACE_SECONDS = 0.2


class ConnectorBroker(Protocol):
    async def connect(self, definition: ConnectorDefinition) -> ConnectorStatus: ...

    async def disconnect(self, name: str) -> None: ...

    async def get_statuses(self) -> list[ConnectorStatus]: ...

    async def close(self) -> None: ...


@dataclass(slots=True)
class _ConnectorProcess:
    name: str
    process: asyncio.subprocess.Process


def _key(name: str) -> str:
    return name.strip().casefold()


class ProcessConnectorBroker:
    """Keeps at most one live subprocess per connector name.

    All public methods run under one lock, so spawns, kills and status reads
    never interleave.
    """

    def __init__(self, startup_grace_seconds: float = DEFAULT_STARTUP_GRACE_SECONDS) -> None:
        self.startup_grace_seconds = startup_grace_seconds
        self._lock = asyncio.Lock()
        self._processes: dict[str, _ConnectorProcess] = {}

    async def connect(self, definition: ConnectorDefinition) -> ConnectorStatus:
        definition = definition.normalized()
        key = _key(definition.name)
        async with self._lock:
            existing = self._processes.get(key)
            if existing is not None and existing.process.returncode is None:
                return ConnectorStatus(definition.name, True)
            if existing is not None:
                self._processes.pop(key, None)

            try:
                return await self._spawn(definition, key)
            except (OSError, ValueError) as exc:
                logger.warning("Connector %s failed to start: %s", definition.name, exc)
                return ConnectorStatus(definition.name, False, str(exc) or exc.__class__.__name__)

    async def _spawn(self, definition: ConnectorDefinition, key: str) -> ConnectorStatus:
        if not definition.command:
            raise ValueError("Connector command is empty.")
        argv = shlex.split(definition.command, posix=os.name != "nt")
        if not argv:
            raise ValueError("Connector command is empty.")

        env = {**os.environ, **definition.environment}
        process = await spawn_process_group(
            argv,
            env=env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        self._processes[key] = _ConnectorProcess(definition.name, process)

        try:
            await asyncio.wait_for(process.wait(), timeout=self.startup_grace_seconds)
        except TimeoutError:
            logger.info("Connector %s started (pid=%s)", definition.name, process.pid)
            return ConnectorStatus(definition.name, True)

        # Exited inside the grace period.
        self._processes.pop(key, None)
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        logger.warning(
            "Connector %s exited immediately with code %s", definition.name, process.returncode
        )
        return ConnectorStatus(
            definition.name, False, stderr_output or "Connector exited immediately."
        )

    async def disconnect(self, name: str) -> None:
        async with self._lock:
            handle = self._processes.pop(_key(name), None)
            if handle is None:
                return
            await self._stop(handle)
            logger.info("Connector %s disconnected", handle.name)

    async def get_statuses(self) -> list[ConnectorStatus]:
        async with self._lock:
            statuses: list[ConnectorStatus] = []
            for key, handle in list(self._processes.items()):
                return_code = handle.process.returncode
                if return_code is not None:
                    self._processes.pop(key, None)
                    await self._stop(handle)
                    statuses.append(ConnectorStatus(handle.name, False, f"Exited ({return_code})"))
                    continue
                statuses.append(ConnectorStatus(handle.name, True))
            return sorted(statuses, key=lambda status: status.name.casefold())

    async def close(self) -> None:
        async with self._lock:
            handles = list(self._processes.values())
            self._processes.clear()
            for handle in handles:
                await self._stop(handle)

    @staticmethod
    async def _stop(handle: _ConnectorProcess) -> None:
        process = handle.process
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        if process.returncode is None:
            await kill_and_reap(process)


class InMemoryConnectorBroker:
    """Records connect/disconnect calls without spawning anything."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._statuses: dict[str, ConnectorStatus] = {}

    async def connect(self, definition: ConnectorDefinition) -> ConnectorStatus:
        async with self._lock:
            status = ConnectorStatus(definition.name.strip(), True)
            self._statuses[_key(definition.name)] = status
            return status

    async def disconnect(self, name: str) -> None:
        async with self._lock:
            key = _key(name)
            if key in self._statuses:
                self._statuses[key] = ConnectorStatus(self._statuses[key].name, False)

    async def get_statuses(self) -> list[ConnectorStatus]:
        async with self._lock:
            return sorted(self._statuses.values(), key=lambda status: status.name.casefold())

    async def close(self) -> None:
        async with self._lock:
            self._statuses.clear()
