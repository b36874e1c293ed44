from __future__ import annotations


class SkillError(RuntimeError):
    """Base class for skill-related failures."""


class SkillNotFoundError(SkillError):
    """Raised when a requested skill cannot be resolved."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Skill '{name}' is not registered")
        self.name = name


class SkillTimeoutError(SkillError):
    """Raised when a skill handler exceeds its timeout."""

    def __init__(self, name: str, timeout_ms: int) -> None:
        super().__init__(f"Skill '{name}' timed out after {timeout_ms}ms")
        self.name = name
        self.timeout_ms = timeout_ms


class SkillCrashError(SkillError):
    """Raised when a skill handler raises an unexpected exception."""

    def __init__(self, name: str, cause: BaseException) -> None:
        super().__init__(f"Skill '{name}' crashed: {type(cause).__name__}: {cause}")
        self.name = name
        self.cause = cause


class SkillFailedError(SkillError):
    """Raised by handlers to report an expected, user-facing failure."""


__all__ = [
    "SkillCrashError",
    "SkillError",
    "SkillFailedError",
    "SkillNotFoundError",
    "SkillTimeoutError",
]
