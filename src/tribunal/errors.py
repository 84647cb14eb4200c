"""Error taxonomy for Tribunal.

Every failure the core can surface is a ``TribunalError``. Provider failures
carry the two policy bits the retry/fallback controller needs (``retryable``
and ``fallback_eligible``), a stable ``kind`` used in audit records and stream
events, and the HTTP status the API mirrors back to the caller.
"""

from typing import Optional


class TribunalError(Exception):
    """Base class for all errors raised by the core."""

    kind = "error"
    http_status = 500
    retryable = False
    fallback_eligible = True
    # substitute only when the caller asked for fallback in so many words
    explicit_fallback_only = False

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConfigurationError(TribunalError):
    kind = "configuration"
    http_status = 400


class ModelNotFoundError(ConfigurationError):
    kind = "model_not_found"
    fallback_eligible = False

    def __init__(self, model_id: str) -> None:
        self.model_id = model_id
        super().__init__(f"Unknown model id: {model_id}")


class MissingCredentialError(ConfigurationError):
    kind = "missing_credential"
    explicit_fallback_only = True

    def __init__(self, provider_label: str) -> None:
        self.provider_label = provider_label
        super().__init__(
            f"{provider_label} API key not configured. Please add it in your profile settings."
        )


class AuthenticationError(TribunalError):
    kind = "unauthenticated"
    http_status = 401
    fallback_eligible = False


class ResultInvariantError(TribunalError):
    """A contest result write would erase or alter a completed answer."""

    kind = "invariant"


class ProviderError(TribunalError):
    """Raised when an upstream provider call fails."""

    kind = "provider_error"

    def __init__(
        self, message: str, provider: str = "", status: Optional[int] = None
    ) -> None:
        self.provider = provider
        self.status = status
        prefix = f"[{provider}] " if provider else ""
        super().__init__(f"{prefix}{message}")


class TransientProviderError(ProviderError):
    kind = "transient"
    retryable = True


class ProviderTimeoutError(TransientProviderError):
    kind = "timeout"


class StallError(TransientProviderError):
    """The connection stayed open but stopped delivering bytes."""

    kind = "stall"


class EmptyResponseError(TransientProviderError):
    kind = "empty"


class RateLimitError(ProviderError):
    kind = "rate_limited"
    http_status = 429
    retryable = True


class PaymentRequiredError(ProviderError):
    kind = "payment_required"
    http_status = 402


class GoneError(ProviderError):
    kind = "gone"
    http_status = 410
    fallback_eligible = False


class UpstreamRequestError(ProviderError):
    """Any other 4xx returned by a provider."""

    kind = "bad_request"
    http_status = 400


def classify_status(status: int, message: str, provider: str = "") -> ProviderError:
    """
    Map an upstream HTTP status to the matching ProviderError.

    Args:
        status: HTTP status code returned by the provider
        message: Error text (usually the response body)
        provider: Provider label used to prefix the message

    Returns:
        An exception instance ready to be raised
    """
    if status == 429:
        return RateLimitError(
            "Rate limit exceeded. Please try again later.", provider, status
        )
    if status == 402:
        return PaymentRequiredError(
            f"Payment required: {message}", provider, status
        )
    if status == 410:
        return GoneError(
            "Model permanently removed upstream (HTTP 410 Gone)", provider, status
        )
    if status >= 500:
        return TransientProviderError(f"HTTP {status}: {message}", provider, status)
    return UpstreamRequestError(f"HTTP {status}: {message}", provider, status)


class NotFoundError(TribunalError):
    kind = "not_found"
    http_status = 404
    fallback_eligible = False


class RoundStateError(ConfigurationError):
    """A round or session transition that the state machine does not allow."""

    kind = "invalid_state"
    fallback_eligible = False


class ArbiterResponseError(TribunalError):
    """The judge model failed or answered with something that is not an evaluation."""

    kind = "arbiter"
