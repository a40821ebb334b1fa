from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from openplane.backends.base import BackendExecutionError, BackendProcessError, ReasoningBackend


class CommandLineBackend(ReasoningBackend):
    """Runs an assistant CLI that prints ``stream-json`` events (``claude -p``)."""

    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        hosts: tuple[str, ...] = ("api.anthropic.com",),
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.hosts = hosts

    def network_hosts(self) -> tuple[str, ...]:
        return self.hosts

    def build_command(self, system_prompt: str, user_prompt: str, model: str | None) -> list[str]:
        command = [self.binary, "-p", user_prompt, "--output-format", "stream-json"]
        if system_prompt:
            command.extend(["--append-system-prompt", system_prompt])
        if model:
            command.extend(["--model", model])
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            )
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        result = event.get("result")
        if event.get("type") == "result" and isinstance(result, str):
            return result
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        model = context.get("model")
        command = self.build_command(
            system_prompt,
            user_prompt,
            model.strip() if isinstance(model, str) and model.strip() else None,
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=os.environ.copy(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Assistant binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Assistant backend did not expose stdout.", backend=self.name, retriable=False
            )

        parse_buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                yield line
                continue

            content = self._extract_content(event) if isinstance(event, dict) else ""
            if content:
                yield content

        if parse_buffer:
            yield parse_buffer

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise BackendExecutionError(
                f"Assistant backend failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
