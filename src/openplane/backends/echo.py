from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from openplane.backends.base import ReasoningBackend


class EchoBackend(ReasoningBackend):
    """Offline backend that acknowledges the step without calling a model."""

    name = "echo"

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        title = context.get("step_title")
        if not isinstance(title, str) or not title.strip():
            title = user_prompt.strip().splitlines()[0] if user_prompt.strip() else ""
        yield f"Executed: {title}"
