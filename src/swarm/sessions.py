from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from swarm.agents import AgentInstructionLoader
from swarm.backends.base import AgentBackend, SessionError, SessionTimeoutError

SessionEventHook = Callable[[dict[str, Any]], None]

DEFAULT_SESSION_TIMEOUT_SECONDS = 300.0


@dataclass(slots=True)
class AgentSessionHandle:
    session_id: str
    instructions: str
    model: str | None = None
    agent: str | None = None
    transcript: list[tuple[str, str]] = field(default_factory=list)
    destroyed: bool = False


class SessionGateway(ABC):
    """Conversation transport used by the pipeline.

    ``destroy_session`` is called exactly once per handle by its owner.
    """

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    @abstractmethod
    async def create_session(
        self, instructions: str, model: str | None = None, *, agent: str | None = None
    ) -> AgentSessionHandle:
        """Open a conversation seeded with system instructions."""

    @abstractmethod
    async def send(self, handle: AgentSessionHandle, prompt: str, timeout_seconds: float) -> str:
        """Send one prompt and wait for the complete response text."""

    @abstractmethod
    async def destroy_session(self, handle: AgentSessionHandle) -> None:
        """Release the conversation."""


class BackendSessionGateway(SessionGateway):
    """Session gateway over a stateless :class:`AgentBackend`.

    Each handle keeps its own transcript, which is replayed in front of the
    next prompt so a follow-up send continues the same conversation.
    """

    def __init__(self, backend: AgentBackend, event_hook: SessionEventHook | None = None) -> None:
        self.backend = backend
        self.event_hook = event_hook
        self.open_sessions: dict[str, AgentSessionHandle] = {}

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def create_session(
        self, instructions: str, model: str | None = None, *, agent: str | None = None
    ) -> AgentSessionHandle:
        handle = AgentSessionHandle(
            session_id=f"session-{uuid4().hex[:12]}",
            instructions=instructions,
            model=model,
            agent=agent,
        )
        self.open_sessions[handle.session_id] = handle
        self._emit(
            {"event": "session_created", "session_id": handle.session_id, "agent": agent, "model": model}
        )
        return handle

    @staticmethod
    def render_prompt(handle: AgentSessionHandle, prompt: str) -> str:
        if not handle.transcript:
            return prompt
        parts = ["Conversation so far:"]
        for index, (sent, received) in enumerate(handle.transcript, start=1):
            parts.append(f"--- Turn {index} request ---\n{sent}")
            parts.append(f"--- Turn {index} response ---\n{received}")
        parts.append(f"--- New request ---\n{prompt}")
        return "\n\n".join(parts)

    async def send(self, handle: AgentSessionHandle, prompt: str, timeout_seconds: float) -> str:
        if handle.destroyed:
            raise SessionError(f"Session {handle.session_id} was already destroyed.", retriable=False)
        context: dict[str, Any] = {}
        if handle.model:
            context["model"] = handle.model

        async def _consume() -> str:
            chunks: list[str] = []
            async for chunk in self.backend.execute(
                handle.instructions, self.render_prompt(handle, prompt), context
            ):
                chunks.append(chunk)
            return "".join(chunks).strip()

        try:
            response = await asyncio.wait_for(_consume(), timeout=timeout_seconds)
        except TimeoutError as exc:
            raise SessionTimeoutError(
                f"Agent response timed out after {timeout_seconds:.1f}s",
                retriable=True,
            ) from exc
        handle.transcript.append((prompt, response))
        return response

    async def destroy_session(self, handle: AgentSessionHandle) -> None:
        handle.destroyed = True
        self.open_sessions.pop(handle.session_id, None)
        self._emit({"event": "session_destroyed", "session_id": handle.session_id})


class SessionManager:
    """Agent-level calls on top of a :class:`SessionGateway`."""

    def __init__(
        self,
        gateway: SessionGateway,
        instructions: AgentInstructionLoader,
        *,
        primary_model: str,
        timeout_seconds: float = DEFAULT_SESSION_TIMEOUT_SECONDS,
        max_retries: int = 2,
        retry_backoff_seconds: float = 0.0,
        event_hook: SessionEventHook | None = None,
    ) -> None:
        self.gateway = gateway
        self.instructions = instructions
        self.primary_model = primary_model
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(1, max_retries)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def start(self) -> None:
        await self.gateway.start()

    async def stop(self) -> None:
        await self.gateway.stop()

    @asynccontextmanager
    async def session(self, agent: str, model: str | None = None) -> AsyncIterator[AgentSessionHandle]:
        instructions = self.instructions.load(agent)
        handle = await self.gateway.create_session(
            instructions, model or self.primary_model, agent=agent
        )
        try:
            yield handle
        finally:
            await self.gateway.destroy_session(handle)

    async def send(self, handle: AgentSessionHandle, prompt: str) -> str:
        return await self.gateway.send(handle, prompt, self.timeout_seconds)

    async def call_isolated(self, agent: str, prompt: str, model: str | None = None) -> str:
        """Run one prompt in a fresh session, retrying failures and empty replies.

        Every attempt opens and destroys its own session. An empty reply on the
        last attempt is returned as-is; an error on the last attempt propagates.
        """
        for attempt in range(1, self.max_retries + 1):
            if attempt > 1 and self.retry_backoff_seconds > 0:
                await asyncio.sleep(self.retry_backoff_seconds * (2 ** (attempt - 2)))
            try:
                async with self.session(agent, model) as handle:
                    content = await self.send(handle, prompt)
            except SessionError as exc:
                self._emit(
                    {
                        "event": "agent_call_failed",
                        "agent": agent,
                        "attempt": attempt,
                        "max_attempts": self.max_retries,
                        "error": str(exc),
                    }
                )
                if attempt >= self.max_retries:
                    raise
                continue
            if not content and attempt < self.max_retries:
                self._emit(
                    {
                        "event": "agent_empty_response",
                        "agent": agent,
                        "attempt": attempt,
                        "max_attempts": self.max_retries,
                    }
                )
                continue
            return content
        return ""
