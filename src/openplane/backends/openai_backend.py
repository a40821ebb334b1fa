from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import urlparse

from openai import OpenAI, OpenAIError

from openplane.backends.base import BackendExecutionError, ReasoningBackend

DEFAULT_OPENAI_HOST = "api.openai.com"


class OpenAIBackend(ReasoningBackend):
    """Responses API backend built on the ``openai`` SDK."""

    name = "openai"

    def __init__(
        self,
        *,
        model: str = "gpt-5-mini",
        base_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.base_url = base_url
        self._client = client

    def network_hosts(self) -> tuple[str, ...]:
        if self.base_url:
            host = urlparse(self.base_url).hostname
            if host:
                return (host,)
        return (DEFAULT_OPENAI_HOST,)

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                self._client = OpenAI(base_url=self.base_url) if self.base_url else OpenAI()
            except OpenAIError as exc:
                raise BackendExecutionError(
                    f"OpenAI client could not be created: {exc}",
                    backend=self.name,
                    retriable=False,
                ) from exc
        return self._client

    @staticmethod
    def _build_user_input(user_prompt: str, context: dict[str, Any]) -> str:
        extra = {key: value for key, value in context.items() if key not in {"model", "step_title"}}
        if not extra:
            return user_prompt
        return f"{user_prompt}\n\nContext JSON:\n{json.dumps(extra, ensure_ascii=False, indent=2)}"

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        requested_model = context.get("model")
        model_name = (
            requested_model.strip()
            if isinstance(requested_model, str) and requested_model.strip()
            else self.model
        )
        client = self._get_client()
        prompt = self._build_user_input(user_prompt, context)

        def _request() -> Any:
            return client.responses.create(
                model=model_name,
                input=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
            )

        try:
            payload = await asyncio.to_thread(_request)
        except OpenAIError as exc:
            raise BackendExecutionError(
                f"OpenAI execution failed: {exc}",
                backend=self.name,
                retriable=True,
            ) from exc

        content = self._extract_text(payload).strip()
        if content:
            yield content
