from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from swarm.backends.base import AgentBackend, SessionError
from swarm.backends.codex import CodexBackend


class CodexSDKBackend(AgentBackend):
    """OpenAI Responses API backend that degrades to the Codex CLI."""

    def __init__(
        self,
        *,
        model: str = "gpt-5.2-codex",
        working_directory: Path | None = None,
    ) -> None:
        self.model = model
        self.working_directory = working_directory
        self.cli_fallback = CodexBackend(working_directory=working_directory)
        self._client: Any | None = None
        try:
            from openai import OpenAI

            self._client = OpenAI()
        except Exception:
            # Missing credentials: the CLI carries its own login.
            self._client = None

    @property
    def uses_sdk(self) -> bool:
        return self._client is not None

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
        if self._client is None:
            async for chunk in self.cli_fallback.execute(system_prompt, user_prompt, context):
                yield chunk
            return

        requested_model = context.get("model")
        model_name = (
            requested_model.strip()
            if isinstance(requested_model, str) and requested_model.strip()
            else self.model
        )
        client = self._client

        def _request() -> Any:
            return client.responses.create(
                model=model_name,
                instructions=system_prompt,
                input=user_prompt,
            )

        try:
            payload = await asyncio.to_thread(_request)
        except Exception as exc:
            raise SessionError(
                f"OpenAI Responses request failed: {exc}",
                backend="codex_sdk",
                retriable=True,
            ) from exc

        content = self._extract_text(payload).strip()
        if content:
            yield content
