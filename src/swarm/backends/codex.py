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


class CodexBackend(AgentBackend):
    def __init__(
        self,
        binary: str = "codex",
        working_directory: Path | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, system_prompt: str, user_prompt: str, model: str | None = None) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "--full-auto",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        if model:
            command.extend(["-m", model])
        command.append(user_prompt)
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict):
            if item.get("type") not in (None, "agent_message", "assistant_message"):
                return ""
            text = item.get("text")
            if isinstance(text, str):
                return text
            event = item

        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for part in content:
                if isinstance(part, dict):
                    text = part.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)

        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            msg_content = message.get("content")
            if isinstance(msg_content, str):
                return msg_content
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
        requested_model = context.get("model")
        model = (
            requested_model.strip()
            if isinstance(requested_model, str) and requested_model.strip()
            else None
        )
        command = self.build_command(system_prompt, user_prompt, model)
        self._emit({"event": "codex_cli_start", "command": command[:4], "model": model})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Codex binary not found: {self.binary}",
                backend="codex",
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Codex backend did not expose stdout.", backend="codex", retriable=False
            )

        try:
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
                        self._emit({"event": "codex_json_partial", "bytes": len(candidate)})
                        continue
                    parse_buffer = ""
                    self._emit({"event": "codex_json_parse_fallback", "line": line[:200]})
                    continue
                if not isinstance(event, dict):
                    continue

                content = self._extract_content(event)
                self._emit(
                    {
                        "event": "codex_json_event",
                        "type": str(event.get("type", "")),
                        "has_content": bool(content),
                    }
                )
                if content:
                    yield content

            if parse_buffer:
                self._emit({"event": "codex_json_buffer_flush", "bytes": len(parse_buffer)})

            return_code = await process.wait()
            stderr_output = ""
            if process.stderr is not None:
                raw_stderr = await process.stderr.read()
                stderr_output = raw_stderr.decode("utf-8", errors="replace").strip()
            self._emit(
                {"event": "codex_cli_exit", "exit_code": return_code, "stderr": stderr_output[:400]}
            )
            if return_code != 0:
                raise SessionError(
                    f"Codex backend failed with exit code {return_code}: {stderr_output}",
                    backend="codex",
                    exit_code=return_code,
                    retriable=True,
                )
        finally:
            await terminate_process(process)
