"""
Structured Error Taxonomy — Typed exceptions for the rPoly trading core.

Design principles:
  - Every error carries `retryable` + `error_code` for automated decisions
  - Hierarchy mirrors the layers: Decision → Position state → Gateway → Persistence
  - Structured logging friendly: all errors serialize cleanly to JSON
"""

from __future__ import annotations

__all__ = [
    # Base
    "RpolyError",
    # Decision layer
    "ConfigurationError",
    "InsufficientEdgeError",
    # Position state layer
    "StateDriftError",
    "PositionConflictError",
    # Gateway layer
    "GatewayError",
    "TransientNetworkError",
    "GatewayAuthError",
    # Persistence layer
    "PersistenceError",
]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Base
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class RpolyError(Exception):
    """Root exception for the trading core.

    Attributes:
        retryable: If True, the caller should consider retrying the operation.
        error_code: Machine-readable code for logs and alerting.
    """

    retryable: bool = False
    error_code: str = "RPOLY_ERROR"

    def __init__(self, message: str, *, detail: str | None = None):
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> dict:
        """Serialize for structured logging."""
        return {
            "error_code": self.error_code,
            "message": str(self),
            "detail": self.detail,
            "retryable": self.retryable,
        }


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Decision Layer — never escape analyze(); converted into SKIP reasons
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ConfigurationError(RpolyError):
    """Input is structurally unusable (no active market, missing reference price)."""

    error_code = "CONFIGURATION"


class InsufficientEdgeError(RpolyError):
    """Kelly fraction is non-positive — there is no edge to size."""

    error_code = "INSUFFICIENT_EDGE"

    def __init__(self, message: str, *, kelly_fraction: float = 0.0, **kwargs):
        self.kelly_fraction = kelly_fraction
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["kelly_fraction"] = self.kelly_fraction
        return d


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Position State Layer — local intent vs. authoritative upstream state
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class StateDriftError(RpolyError):
    """Local position size disagrees with the authoritative source."""

    retryable = True
    error_code = "STATE_DRIFT"

    def __init__(
        self,
        message: str,
        *,
        market_id: str = "",
        local_size: float = 0.0,
        remote_size: float | None = None,
        **kwargs,
    ):
        self.market_id = market_id
        self.local_size = local_size
        self.remote_size = remote_size
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["market_id"] = self.market_id
        d["local_size"] = self.local_size
        d["remote_size"] = self.remote_size
        return d


class PositionConflictError(RpolyError):
    """A second position was opened for a market that already has one."""

    error_code = "POSITION_CONFLICT"

    def __init__(self, message: str, *, market_id: str = "", **kwargs):
        self.market_id = market_id
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["market_id"] = self.market_id
        return d


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Gateway Layer — Errors from the exchange / market-data collaborators
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class GatewayError(RpolyError):
    """Base for all gateway errors."""

    error_code = "GATEWAY_ERROR"

    def __init__(self, message: str, *, endpoint: str | None = None, **kwargs):
        self.endpoint = endpoint
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["endpoint"] = self.endpoint
        return d


class TransientNetworkError(GatewayError):
    """Timeout, connection failure or 5xx from a collaborator."""

    retryable = True
    error_code = "TRANSIENT_NETWORK"


class GatewayAuthError(GatewayError):
    """The gateway rejected our credentials."""

    error_code = "GATEWAY_AUTH"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Persistence Layer
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class PersistenceError(RpolyError):
    """A persisted document is unreadable or could not be written."""

    error_code = "PERSISTENCE"

    def __init__(self, message: str, *, key: str = "", **kwargs):
        self.key = key
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["key"] = self.key
        return d
