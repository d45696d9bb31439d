from __future__ import annotations


class SwarmError(RuntimeError):
    """Base class for pipeline failures surfaced to the operator."""


class ConfigError(SwarmError):
    """Raised when the pipeline configuration or environment is invalid."""


class ParseError(SwarmError):
    """Raised when an agent response lacks the expected structured payload."""

    def __init__(self, message: str, *, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class StreamFailure(SwarmError):
    """Failure scoped to a single implementation stream."""

    def __init__(self, index: int, task: str, cause: BaseException) -> None:
        super().__init__(f"Stream {index + 1} failed: {cause}")
        self.index = index
        self.task = task
        self.cause = cause


class VerificationFailure(SwarmError):
    """Verification commands still fail after all fix attempts.

    Never raised by the engine itself; it is attached to the run summary so
    callers can decide whether an unresolved verification should be fatal.
    """

    def __init__(self, failing: list[str], attempts: int) -> None:
        super().__init__(
            f"Verification still failing after {attempts} fix attempt(s): " + ", ".join(failing)
        )
        self.failing = failing
        self.attempts = attempts
