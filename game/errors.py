"""Error taxonomy for task refresh, reward and progression handling."""

from __future__ import annotations


class LifeQuestError(Exception):
    """Base class for recoverable and unrecoverable game errors."""

    def __init__(self, message: str, doc_id: str = ""):
        self.doc_id = doc_id
        super().__init__(message)


class ParseError(LifeQuestError):
    """Malformed policy text, timestamp or reward row.

    Fails only the single evaluation it occurred in.
    """


class MissingTargetError(LifeQuestError):
    """A reward points at an attribute, resource or skill that does not exist."""

    def __init__(self, message: str, doc_id: str = "", target: str = ""):
        self.target = target
        super().__init__(message, doc_id=doc_id)


class InvalidTransitionError(LifeQuestError):
    """A lifecycle transition was requested from the wrong state."""

    def __init__(self, message: str, doc_id: str = "", status: str = ""):
        self.status = status
        super().__init__(message, doc_id=doc_id)
