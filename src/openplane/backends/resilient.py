from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from openplane.backends.base import BackendExecutionError, BackendTimeoutError, ReasoningBackend

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0

    def delay_for(self, attempt: int) -> float:
        """Exponential backoff before retry number ``attempt`` (1-based)."""
        return self.backoff_seconds * (2 ** (attempt - 1))


class ResilientBackend(ReasoningBackend):
    """Wraps primary/fallback backends with timeout, retry, and failover."""

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: ReasoningBackend,
        fallback_name: str,
        fallback_backend: ReasoningBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _attempts(self) -> list[tuple[str, ReasoningBackend]]:
        attempts = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback_backend))
        return attempts

    def network_hosts(self) -> tuple[str, ...]:
        hosts: list[str] = []
        for _, backend in self._attempts():
            for host in backend.network_hosts():
                if host not in hosts:
                    hosts.append(host)
        return tuple(hosts)

    def _emit(self, name: str, backend_name: str, attempt: int, **fields: Any) -> None:
        event = {"event": name, "backend": backend_name, "attempt": attempt, **fields}
        logger.debug("Backend event: %s", event)
        if self.event_hook:
            self.event_hook(event)

    async def _attempt(
        self,
        backend: ReasoningBackend,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> str:
        timeout = self.retry_policy.timeout_seconds
        try:
            return await asyncio.wait_for(
                backend.complete(system_prompt, user_prompt, context), timeout=timeout
            )
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {timeout:.1f}s", retriable=True
            ) from exc

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        failures: list[str] = []
        step_title = context.get("step_title")
        for backend_name, backend in self._attempts():
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt:
                    delay = self.retry_policy.delay_for(attempt)
                    self._emit("backend_retry", backend_name, attempt, delay_seconds=delay)
                    await asyncio.sleep(delay)
                try:
                    text = await self._attempt(backend, system_prompt, user_prompt, context)
                except BackendExecutionError as exc:
                    failures.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        "backend_attempt_failed",
                        backend_name,
                        attempt,
                        error=str(exc),
                        retriable=exc.retriable,
                        step=step_title,
                    )
                    if exc.retriable:
                        continue
                    break

                if backend_name != self.primary_name:
                    self._emit("backend_fallback_success", backend_name, attempt, step=step_title)
                yield text
                return

        raise BackendExecutionError(
            "All backend attempts failed. " + "; ".join(failures[-6:]), retriable=False
        )
