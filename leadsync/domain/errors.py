from __future__ import annotations


class ProcessingError(Exception):
    """Base class for failures raised while ingesting or writing a lead."""

    category = "unknown"

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason or self.category

    @property
    def retryable(self) -> bool:
        return self.category in {"transient", "structural", "unknown"}


class InvalidPayload(ProcessingError):
    """Payload could not be normalized; never retried."""

    category = "terminal"


class TenantNotFound(ProcessingError):
    """No active tenant is bound to the delivery; never dead-lettered."""

    category = "terminal"

    def __init__(self, source_tag: str, binding_value: str | None) -> None:
        super().__init__(
            f"No tenant bound to {source_tag}={binding_value!r}",
            reason="no_client",
        )
        self.source_tag = source_tag
        self.binding_value = binding_value


class TransientExternalFailure(ProcessingError):
    category = "transient"


class StructuralMismatch(ProcessingError):
    """The live spreadsheet no longer matches the cached layout."""

    category = "structural"


class ExhaustedRetries(ProcessingError):
    category = "dead_letter"

    def __init__(self, message: str, *, attempts: int, last_error: str | None) -> None:
        super().__init__(message, reason="exhausted_retries")
        self.attempts = attempts
        self.last_error = last_error

    @property
    def retryable(self) -> bool:
        return False


def error_category(exc: BaseException) -> str:
    return getattr(exc, "category", "unknown")


def is_retryable(exc: BaseException) -> bool:
    retryable = getattr(exc, "retryable", None)
    if retryable is None:
        return True
    return bool(retryable)
