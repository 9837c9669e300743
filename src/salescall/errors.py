"""Error taxonomy for the call engine.

Provider-facing failures are translated into one of these kinds at the
adapter boundary, so the state machine never sees raw transport exceptions:

- TransientProviderError: network trouble, timeouts, 5xx.  Retry with backoff.
- PermanentProviderError: auth/validation, 4xx.  Log and degrade, no retry.
- UnknownSessionError: stale or duplicate webhook.  Idempotent no-op (HTTP 200).
- LowConfidenceInput: not a failure; drives the re-prompt policy.
- CallSystemError: unexpected bug.  Terminate the call with an apology.
- ConfigurationError: a malformed setting at startup.
"""

import httpx


class SalesCallError(Exception):
    """Base class for every error raised by the engine."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConfigurationError(SalesCallError):
    pass


class ProviderError(SalesCallError):
    """An external provider (speech, language model, record store, workflow) failed."""

    retryable = False

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider}: {message}")


class TransientProviderError(ProviderError):
    retryable = True


class PermanentProviderError(ProviderError):
    retryable = False


class UnknownSessionError(SalesCallError):
    def __init__(self, call_id: str) -> None:
        self.call_id = call_id
        super().__init__(f"No active session for call {call_id}")


class StaleTurnError(SalesCallError):
    """A speech-turn webhook referenced a turn the session has already moved past."""

    def __init__(self, call_id: str, expected: int, current: int) -> None:
        self.call_id = call_id
        self.expected = expected
        self.current = current
        super().__init__(f"Stale turn {expected} for call {call_id} (current {current})")


class LowConfidenceInput(SalesCallError):
    def __init__(self, confidence: float, threshold: float) -> None:
        self.confidence = confidence
        self.threshold = threshold
        super().__init__(f"Confidence {confidence:.2f} below threshold {threshold:.2f}")


class CallSystemError(SalesCallError):
    def __init__(self, message: str, call_id: str = "") -> None:
        self.call_id = call_id
        super().__init__(message)


def classify_http_error(provider: str, exc: Exception) -> ProviderError:
    """Translate an httpx exception into a transient or permanent provider error."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        body = exc.response.text[:200]
        if status >= 500 or status == 429:
            return TransientProviderError(provider, f"HTTP {status}: {body}", status)
        return PermanentProviderError(provider, f"HTTP {status}: {body}", status)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, TimeoutError)):
        return TransientProviderError(provider, f"{type(exc).__name__}: {exc}")
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return PermanentProviderError(provider, f"malformed response: {exc}")
    return TransientProviderError(provider, f"{type(exc).__name__}: {exc}")
