from __future__ import annotations


class VerificationError(Exception):
    """Base class for carrier verification failures."""


class IdentifierValidationError(VerificationError):
    """Caller supplied no identifier, or one that cannot be a registry number."""


class UnknownCarrierError(VerificationError):
    """Internal carrier id does not resolve to an MC or DOT number."""


class RegistryUpstreamError(VerificationError):
    def __init__(self, reason: str, *, status_code: int | None = None, retryable: bool = True) -> None:
        super().__init__(reason if status_code is None else f"{reason} (status {status_code})")
        self.reason = reason
        self.status_code = status_code
        self.retryable = retryable


class ServiceUnavailableError(VerificationError):
    """Registry unreachable and nothing cached for the key; safe to retry later."""

    def __init__(self, key: str, cause: str) -> None:
        super().__init__(f"Carrier verification unavailable for {key}: {cause}")
        self.key = key
        self.cause = cause
