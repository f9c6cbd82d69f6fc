"""Exception taxonomy for the gateway.

Everything raised on purpose derives from GatewayError, so callers can catch
one type at the edge and still branch on the concrete class:

  - ConfigurationError: missing credentials, prefix conflicts, bad roles
  - TransportError: non-success status or connection/timeout failure
  - ProtocolError: malformed payloads, missing fields in vendor responses
  - CapabilityError: media sent to a model explicitly marked incapable
  - BudgetError: cap exceeded, or cap requested without an estimate
  - OperationError: long-running operation failed vs. timed out
  - UnsupportedOperationError: variant does not implement the capability
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for all gateway errors."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(GatewayError):
    """Invalid routing, credentials or request shape."""


class MissingApiKeyError(ConfigurationError):
    def __init__(self, provider: str, env_var: str | None = None):
        hint = f" (set {env_var})" if env_var else ""
        super().__init__(f"missing api key for provider '{provider}'{hint}")
        self.provider = provider
        self.env_var = env_var


class ProviderConflictError(ConfigurationError):
    def __init__(self, prefix: str, provider: str):
        super().__init__(f"model prefix '{prefix}' conflicts with provider '{provider}'")
        self.prefix = prefix
        self.provider = provider


class UnknownProviderError(ConfigurationError):
    def __init__(self, provider: str):
        super().__init__(f"unknown provider '{provider}' (no base url configured)")
        self.provider = provider


# ---------------------------------------------------------------------------
# Transport / protocol
# ---------------------------------------------------------------------------


class TransportError(GatewayError):
    """Raised for non-success HTTP responses and connection failures."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        snippet: str = "",
        provider: str = "",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.snippet = snippet
        self.provider = provider

    @property
    def retryable(self) -> bool:
        return self.status_code in RETRYABLE_STATUSES


RETRYABLE_STATUSES = frozenset({408, 429, 502, 503, 504})


class ProtocolError(GatewayError):
    """Malformed structured payload or missing expected field."""


# ---------------------------------------------------------------------------
# Capability / budget
# ---------------------------------------------------------------------------


class CapabilityError(GatewayError):
    def __init__(self, model: str, capability: str):
        super().__init__(f"model {model} does not support {capability}")
        self.model = model
        self.capability = capability


class BudgetError(GatewayError):
    """Base class for budget refusals."""


class BudgetExceededError(BudgetError):
    pass


class EstimateUnavailableError(BudgetError):
    pass


# ---------------------------------------------------------------------------
# Long-running operations
# ---------------------------------------------------------------------------


class OperationError(GatewayError):
    def __init__(self, message: str, operation_id: str = ""):
        super().__init__(message)
        self.operation_id = operation_id


class OperationFailedError(OperationError):
    """The vendor reported a terminal failure; message is the vendor's, verbatim."""


class OperationTimeoutError(OperationError):
    """Polling hit its attempt cap before a terminal state."""


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class UnsupportedOperationError(GatewayError):
    def __init__(self, provider_kind: str, operation: str):
        super().__init__(f"{operation} is not supported by {provider_kind} providers")
        self.provider_kind = provider_kind
        self.operation = operation


class CouncilError(GatewayError):
    """A council member failed; the whole council outcome is discarded."""

    def __init__(self, index: int, model: str, cause: BaseException, failed: int = 1):
        super().__init__(f"council member #{index} ({model}) failed: {cause}")
        self.index = index
        self.model = model
        self.cause = cause
        self.failed = failed
