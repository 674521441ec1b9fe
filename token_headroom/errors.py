from __future__ import annotations

from typing import Any


class HeadroomError(Exception):
    pass


class PolicyInvalid(HeadroomError):
    """Policy document missing, malformed or of an unsupported schema version."""


class PolicyViolation(HeadroomError):
    pass


class TargetEscape(PolicyViolation):
    pass


class TargetMissing(HeadroomError):
    pass


class ValidationError(HeadroomError):
    pass


class WriteError(HeadroomError):
    def __init__(self, message: str, backup: Any = None) -> None:
        super().__init__(message)
        self.backup = backup


class UserDeclined(HeadroomError):
    pass


class RootNotFound(HeadroomError):
    pass


class UnknownVerb(HeadroomError):
    pass


class DuplicateVerb(HeadroomError):
    pass


class IllegalTransition(HeadroomError):
    pass


class WriteInterrupted(KeyboardInterrupt):
    """An interrupt held back until a write finished; the write did complete."""

    def __init__(self, message: str, backup: Any = None) -> None:
        super().__init__(message)
        self.backup = backup
        self.result: Any = None
