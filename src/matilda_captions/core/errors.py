"""Error taxonomy for the caption session.

Only the connection layer and the session orchestrator raise these; the
reconciliation and diff layers degrade instead of raising.
"""

import re
from dataclasses import dataclass


class CaptionsError(Exception):
    """Base exception for Matilda Captions."""


class TransportError(CaptionsError):
    """Raised when a network transport cannot be used."""


class ReconnectExhaustedError(TransportError):
    """Raised when a transport gave up after its retry budget."""

    def __init__(self, transport: str, attempts: int):
        self.transport = transport
        self.attempts = attempts
        super().__init__(f"Failed to reconnect {transport} after {attempts} attempts.")


class CapabilityError(CaptionsError):
    """Raised when the host cannot capture or handle audio."""


class CredentialError(CaptionsError):
    """Raised when a recognition token cannot be obtained."""


class RecognitionError(CaptionsError):
    """Raised for an ``Error`` message from the recognition service."""

    def __init__(self, reason: str, error_type: str | None = None):
        self.reason = reason
        self.error_type = error_type
        self.user_message = describe_recognition_error(reason, error_type)
        super().__init__(self.user_message)


# (pattern on reason/type, actionable message); first match wins
_KNOWN_ERRORS: list[tuple[re.Pattern[str], str]] = [
    (
        re.compile(r"translat\w*.*(not (allowed|available|enabled|permitted)|plan|contract)", re.IGNORECASE),
        "Translation is not available on your current plan. "
        "Run without --translate-to, or enable translation for your account.",
    ),
    (
        re.compile(r"quota|insufficient.*(funds|credit)|usage limit", re.IGNORECASE),
        "Your recognition usage quota is exhausted. Wait for the quota to reset or upgrade your plan.",
    ),
    (
        re.compile(r"not.?authori[sz]ed|unauthori[sz]ed|invalid.*(jwt|token)|expired", re.IGNORECASE),
        "The recognition service rejected the session token. Check the backend API key and try again.",
    ),
    (
        re.compile(r"(unsupported|invalid|not supported).*language|language.*not supported", re.IGNORECASE),
        "The requested language is not supported. Pick another --language or --translate-to value.",
    ),
    (
        re.compile(r"job_error|concurrent|too many|rate.?limit", re.IGNORECASE),
        "Too many concurrent sessions for this account. Stop other sessions and try again.",
    ),
]


def describe_recognition_error(reason: str | None, error_type: str | None = None) -> str:
    """Rephrase a raw recognition error into guidance for the user.

    Unknown errors are returned as-is so nothing is hidden.
    """
    text = " ".join(part for part in (error_type, reason) if part)
    if not text:
        return "Unknown error"
    for pattern, message in _KNOWN_ERRORS:
        if pattern.search(text):
            return message
    return reason or error_type or "Unknown error"


@dataclass(frozen=True)
class StatusBanner:
    """User-visible transport status.

    kind is one of "reconnecting", "fatal" or "error".
    """

    kind: str
    message: str

    @property
    def is_fatal(self) -> bool:
        return self.kind == "fatal"
