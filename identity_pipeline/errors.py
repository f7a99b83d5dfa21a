"""
Error kinds raised by the verification pipeline.

Every error carries a ``kind`` (its public name) and a ``retry`` hint telling
the client whether to simply try again or to start over with a new document.
Classifier details stay in ``detail`` and are only ever logged.
"""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar, Union

TRY_AGAIN = "try_again"
NEW_DOCUMENT = "new_document"

USER_MESSAGES = {
    TRY_AGAIN: "Please try again.",
    NEW_DOCUMENT: "Please submit a new document.",
}


class VerificationError(Exception):
    kind = "VerificationError"
    retry = TRY_AGAIN

    def __init__(self, message: str = "", detail: Optional[str] = None, retry: Optional[str] = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.detail = detail
        if retry is not None:
            self.retry = retry

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.retry]


class InvalidTransition(VerificationError):
    """Stage called out of order; the session is unchanged."""
    kind = "InvalidTransition"


class SessionNotFound(VerificationError):
    kind = "SessionNotFound"


class ConcurrentModification(VerificationError):
    """A finished stage was replayed with different data, or the session is busy."""
    kind = "ConcurrentModification"


class ExtractionFailed(VerificationError):
    kind = "ExtractionFailed"


class MalformedExtractionResponse(VerificationError):
    kind = "MalformedExtractionResponse"
    retry = NEW_DOCUMENT


class VerificationAdapterFailed(VerificationError):
    kind = "VerificationAdapterFailed"


class SignatureFailure(VerificationError):
    kind = "SignatureFailure"


class TokenVerificationError(VerificationError):
    kind = "TokenVerificationError"


class DuplicateAuditRecord(VerificationError):
    kind = "DuplicateAuditRecord"


class InvalidUpload(VerificationError):
    kind = "InvalidUpload"
    retry = NEW_DOCUMENT


class StorageError(VerificationError):
    kind = "StorageError"


# Errors that terminate a session in the Failed state
TERMINAL_ERRORS = (
    ExtractionFailed,
    MalformedExtractionResponse,
    VerificationAdapterFailed,
    SignatureFailure,
)


T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    error: VerificationError


Result = Union[Ok[T], Err]


def unwrap(result: "Result[T]") -> T:
    """Return the value of an ``Ok`` or raise the error carried by an ``Err``."""
    if isinstance(result, Err):
        raise result.error
    return result.value
