from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class SessionError(RuntimeError):
    """Raised when an agent backend cannot produce a response."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class SessionTimeoutError(SessionError):
    """Raised when a response does not arrive within the session timeout."""


class BackendProcessError(SessionError):
    """Raised when a backend process cannot be started or read."""


class AgentBackend(ABC):
    """Stateless transport that runs one agent turn.

    ``context`` may carry ``model`` to select the model for this turn.
    """

    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Execute an agent and stream textual chunks."""


async def terminate_process(process: asyncio.subprocess.Process) -> None:
    """Kill a backend process that is still running and reap it."""
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()
