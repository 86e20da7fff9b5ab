from __future__ import annotations

from typing import Any

STAGE_GATE = "gate"
STAGE_VALIDATE = "validate"
STAGE_UPLOAD = "upload"
STAGE_BUILD = "build_request"
STAGE_EXECUTE = "execute"
STAGE_NORMALIZE = "normalize"
STAGE_CONVERT = "convert"
STAGE_LEDGER = "ledger"


class ConfigurationError(ValueError):
    pass


class DatastoreError(RuntimeError):
    def __init__(self, operation: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Datastore operation '{operation}' failed{detail}")


class GenerationError(RuntimeError):
    """Base for every failure a generation request can end with.

    ``stage`` names the pipeline step that failed, ``status_code`` and
    ``error_code`` are what the HTTP layer returns to the caller.
    """

    status_code = 500
    error_code = "Failed to generate image"
    stage = STAGE_EXECUTE

    def __init__(self, message: str, *, stage: str | None = None):
        if stage is not None:
            self.stage = stage
        super().__init__(message)

    def public_message(self) -> str:
        return "Failed to generate image. Please try again."

    def payload(self) -> dict[str, Any]:
        return {}


class GateDenied(GenerationError):
    stage = STAGE_GATE

    def public_message(self) -> str:
        return str(self)


class AuthenticationRequired(GateDenied):
    status_code = 401
    error_code = "Authentication required"

    def __init__(self, provider_label: str):
        self.provider_label = provider_label
        super().__init__(f"Please sign in to use {provider_label}.")


class SessionRequired(GateDenied):
    status_code = 400
    error_code = "Session required"

    def __init__(self) -> None:
        super().__init__("A session id is required for anonymous requests. Retry with an X-Session-ID header.")


class QuotaExceeded(GateDenied):
    status_code = 429
    error_code = "Free tier limit exceeded"

    def __init__(self, limit: int, used: int):
        self.limit = limit
        self.used = used
        super().__init__(
            f"You have reached the limit of {limit} free requests. Please sign in to continue."
        )

    def payload(self) -> dict[str, Any]:
        return {"limit": self.limit, "used": self.used, "requiresAuth": True}


class InsufficientCredits(GateDenied):
    status_code = 402
    error_code = "Insufficient credits"

    def __init__(self, provider_label: str, remaining: int, required: int):
        self.remaining = remaining
        self.required = required
        super().__init__(
            f"{provider_label} requires {required} credit(s) per image. "
            f"You have {remaining} credit(s) remaining. Please purchase more credits to continue."
        )

    def payload(self) -> dict[str, Any]:
        return {
            "creditsRemaining": self.remaining,
            "creditsRequired": self.required,
            "requiresPayment": True,
        }


class RequestBuildError(GenerationError):
    status_code = 400
    error_code = "Validation failed"
    stage = STAGE_BUILD

    def public_message(self) -> str:
        return str(self)


class UploadError(GenerationError):
    stage = STAGE_UPLOAD


class ProviderFailedError(GenerationError):
    stage = STAGE_EXECUTE

    def __init__(self, provider: str, message: str, *, code: str | None = None):
        self.provider = provider
        self.code = code
        super().__init__(f"{provider} reported failure: {message}")


class ProviderTimeoutError(GenerationError):
    stage = STAGE_EXECUTE

    def __init__(self, provider: str, task_id: str, attempts: int):
        self.provider = provider
        self.task_id = task_id
        self.attempts = attempts
        super().__init__(
            f"{provider} task {task_id} did not reach a terminal state within {attempts} polls"
        )


class NormalizationError(GenerationError):
    stage = STAGE_NORMALIZE

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"Unexpected {provider} response: {message}")


class ConversionError(GenerationError):
    stage = STAGE_CONVERT


class LedgerError(GenerationError):
    stage = STAGE_LEDGER
