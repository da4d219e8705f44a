"""
Perps History Exceptions - Error taxonomy for retrieval and reconstruction.

Item-level errors (one signature, one transaction) are recorded and skipped.
Pipeline-level errors (nothing to discover, provider unreachable) abort the run.

Hierarchy:
    PerpsHistoryError
    ├── FetchError
    │   ├── RateLimitedError       (retriable)
    │   ├── TransientNetworkError  (retriable)
    │   ├── NotFoundError
    │   └── MalformedError
    ├── DecodeError
    ├── InvalidInputError
    ├── InconsistentLifecycleError
    ├── DiscoveryError
    └── ProviderUnavailableError
"""

from datetime import datetime, timezone
from typing import Any, Optional


class PerpsHistoryError(Exception):
    """Base exception for all trade history errors."""

    retriable: bool = False

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.original_error = original_error
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "retriable": self.retriable,
            "original_error": str(self.original_error) if self.original_error else None,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        parts = [f"{self.__class__.__name__}: {self.message}"]
        if self.original_error:
            parts.append(f"(caused by: {self.original_error})")
        return " ".join(parts)


# ─────────────────────────────────────────────────────────────
# Provider failures
# ─────────────────────────────────────────────────────────────

class FetchError(PerpsHistoryError):
    """Error talking to the RPC provider."""

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        status_code: Optional[int] = None,
        rpc_code: Optional[int] = None,
        response_body: Optional[str] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, original_error, context)
        self.method = method
        self.status_code = status_code
        self.rpc_code = rpc_code
        self.response_body = response_body[:500] if response_body else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data.update({
            "method": self.method,
            "status_code": self.status_code,
            "rpc_code": self.rpc_code,
            "response_body": self.response_body,
        })
        return data


class RateLimitedError(FetchError):
    """Provider reported too many requests."""

    retriable = True

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        retry_after_seconds: Optional[float] = None,
        status_code: Optional[int] = 429,
        rpc_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message,
            method=method,
            status_code=status_code,
            rpc_code=rpc_code,
            original_error=original_error,
            context=context,
        )
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data["retry_after_seconds"] = self.retry_after_seconds
        return data


class TransientNetworkError(FetchError):
    """Timeout, connection reset, 5xx or lagging node."""

    retriable = True


class NotFoundError(FetchError):
    """Requested account or transaction does not exist."""


class MalformedError(FetchError):
    """Request rejected or response could not be interpreted."""


# ─────────────────────────────────────────────────────────────
# Decoding and input
# ─────────────────────────────────────────────────────────────

class DecodeError(PerpsHistoryError):
    """Raw on-chain data did not match the expected layout."""

    def __init__(
        self,
        message: str,
        layout: Optional[str] = None,
        offset: Optional[int] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, original_error, context)
        self.layout = layout
        self.offset = offset

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data.update({"layout": self.layout, "offset": self.offset})
        return data


class InvalidInputError(PerpsHistoryError):
    """Bad wallet address or date range; raised before any network call."""

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        value: Optional[Any] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, None, context)
        self.field_name = field_name
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data.update({
            "field_name": self.field_name,
            "value": str(self.value) if self.value is not None else None,
        })
        return data


class InconsistentLifecycleError(PerpsHistoryError):
    """
    A lifecycle's events disagree with exchange-enforced invariants.

    Never raised out of the reconstructor; instances are attached to the
    affected lifecycle as warnings.
    """

    def __init__(
        self,
        message: str,
        position_key: str,
        generation: int = 0,
        signature: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, None, context)
        self.position_key = position_key
        self.generation = generation
        self.signature = signature

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data.update({
            "position_key": self.position_key,
            "generation": self.generation,
            "signature": self.signature,
        })
        return data


# ─────────────────────────────────────────────────────────────
# Pipeline-level (fatal for the run)
# ─────────────────────────────────────────────────────────────

class DiscoveryError(PerpsHistoryError):
    """No candidate addresses could be derived for the wallet."""


class ProviderUnavailableError(PerpsHistoryError):
    """Every request of a stage failed; the provider is unreachable."""

    def __init__(
        self,
        message: str,
        stage: str,
        failed_items: int = 0,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, original_error, context)
        self.stage = stage
        self.failed_items = failed_items

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data.update({"stage": self.stage, "failed_items": self.failed_items})
        return data
