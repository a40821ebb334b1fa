from __future__ import annotations

from pathlib import Path

from openplane.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    ReasoningBackend,
)
from openplane.backends.command_line import CommandLineBackend
from openplane.backends.echo import EchoBackend
from openplane.backends.openai_backend import OpenAIBackend
from openplane.backends.resilient import BackendEventHook, ResilientBackend, RetryPolicy
from openplane.config import BackendConfig, BackendName


def build_single_backend(
    backend_name: BackendName, config: BackendConfig, working_directory: Path | None = None
) -> ReasoningBackend:
    if backend_name == "openai":
        return OpenAIBackend(model=config.model, base_url=config.openai_base_url or None)
    if backend_name == "claude":
        return CommandLineBackend(binary=config.cli_binary, working_directory=working_directory)
    return EchoBackend()


def build_backend(
    config: BackendConfig,
    working_directory: Path | None = None,
    event_hook: BackendEventHook | None = None,
) -> ReasoningBackend:
    primary = build_single_backend(config.primary, config, working_directory)
    if config.primary == "echo" and config.fallback == "echo":
        return primary
    return ResilientBackend(
        primary_name=config.primary,
        primary_backend=primary,
        fallback_name=config.fallback,
        fallback_backend=build_single_backend(config.fallback, config, working_directory),
        retry_policy=RetryPolicy(
            max_retries=max(0, int(config.max_retries)),
            backoff_seconds=max(0.0, float(config.retry_backoff_seconds)),
            timeout_seconds=max(5.0, float(config.timeout_seconds)),
        ),
        event_hook=event_hook,
    )


__all__ = [
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "CommandLineBackend",
    "EchoBackend",
    "OpenAIBackend",
    "ReasoningBackend",
    "ResilientBackend",
    "RetryPolicy",
    "build_backend",
    "build_single_backend",
]
