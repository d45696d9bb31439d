from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from swarm.backends.base import (
    AgentBackend,
    BackendProcessError,
    SessionError,
    terminate_process,
)


class ClaudeCodeBackend(AgentBackend):
    """Runs one turn through ``claude -p`` and streams assistant text."""

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(
        self, system_prompt: str, user_prompt: str, model: str | None = None
    ) -> list[str]:
        command = [
            self.binary,
            "-p",
            user_prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--append-system-prompt",
            system_prompt,
        ]
        if model:
            command.extend(["--model", model])
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        message = event.get("message")
        if isinstance(message, dict):
            event = message
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict) and item.get("type", "text") == "text":
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
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
        self._emit({"event": "claude_cli_start", "model": model})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend="claude",
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Claude backend did not expose stdout.", backend="claude", retriable=False
            )

        try:
            emitted = False
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
                    emitted = True
                    yield line
                    continue
                if not isinstance(event, dict):
                    continue

                # The final result event repeats the assistant text.
                if event.get("type") == "result":
                    result = event.get("result")
                    if not emitted and isinstance(result, str) and result:
                        emitted = True
                        yield result
                    continue
                if event.get("type") not in (None, "assistant", "text", "content_block_delta"):
                    continue
                content = self._extract_content(event)
                if content:
                    emitted = True
                    yield content

            return_code = await process.wait()
            stderr_output = ""
            if process.stderr is not None:
                raw_stderr = await process.stderr.read()
                stderr_output = raw_stderr.decode("utf-8", errors="replace").strip()
            self._emit({"event": "claude_cli_exit", "exit_code": return_code})
            if return_code != 0:
                raise SessionError(
                    f"Claude backend failed with exit code {return_code}: {stderr_output}",
                    backend="claude",
                    exit_code=return_code,
                    retriable=True,
                )
        finally:
            await terminate_process(process)
