from swarm.backends.base import (
    AgentBackend,
    BackendProcessError,
    SessionError,
    SessionTimeoutError,
)
from swarm.backends.claude import ClaudeCodeBackend
from swarm.backends.codex import CodexBackend
from swarm.backends.codex_sdk import CodexSDKBackend
from swarm.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendProcessError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "CodexSDKBackend",
    "ResilientBackend",
    "RetryPolicy",
    "SessionError",
    "SessionTimeoutError",
]
