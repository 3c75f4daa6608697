from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    AUTH_FAILED = "auth-failed"
    NOT_FOUND = "not-found"
    QUOTA_EXCEEDED = "quota-exceeded"
    MALFORMED = "malformed"
    REPLAY = "replay"
    PERMANENT_DESCRIBE_FAILURE = "permanent-describe-failure"
    ABANDONED = "abandoned"
    CLIENT_INVALID = "client-invalid"


# Kinds after which retrying the same call is pointless.
TERMINAL_KINDS = frozenset({ErrorKind.PERMANENT, ErrorKind.AUTH_FAILED, ErrorKind.NOT_FOUND})


class ProviderError(Exception):
    """Typed failure of a Provider Adapter call."""

    def __init__(self, kind: ErrorKind, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind in (ErrorKind.TRANSIENT, ErrorKind.QUOTA_EXCEEDED)

    def __repr__(self) -> str:
        return f"ProviderError(kind={self.kind.value!r}, message={self.message!r}, status_code={self.status_code!r})"


class WebhookRejected(Exception):
    """Inbound provider callback that failed verification or parsing."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        if kind not in (ErrorKind.AUTH_FAILED, ErrorKind.MALFORMED, ErrorKind.REPLAY):
            raise ValueError(f"invalid webhook rejection kind: {kind}")
        super().__init__(message)
        self.kind = kind
        self.message = message


class ClientInvalidError(ValueError):
    """Media payload the authoring client must not send (empty, too small, too large)."""

    kind = ErrorKind.CLIENT_INVALID


def provider_error_from_status(status_code: int, message: str) -> ProviderError:
    """Map an HTTP status returned by a provider API to a typed ProviderError."""
    if status_code in (401, 403):
        return ProviderError(ErrorKind.AUTH_FAILED, message, status_code=status_code)
    if status_code == 404:
        return ProviderError(ErrorKind.NOT_FOUND, message, status_code=status_code)
    if status_code == 429:
        return ProviderError(ErrorKind.QUOTA_EXCEEDED, message, status_code=status_code)
    if status_code == 408 or status_code >= 500:
        return ProviderError(ErrorKind.TRANSIENT, message, status_code=status_code)
    return ProviderError(ErrorKind.PERMANENT, message, status_code=status_code)
