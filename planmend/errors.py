"""
Exception types shared by the recovery runtime and its transports.
"""

from __future__ import annotations

from typing import Any


class RecoveryError(RuntimeError):
    """Base class for recovery failures surfaced to callers."""


class FeatureNotFoundError(RecoveryError):
    """Raised when a feature id does not exist in the project."""

    def __init__(self, feature_id: str):
        super().__init__(f"Feature not found: {feature_id}")
        self.feature_id = feature_id


class NoOpError(RecoveryError):
    """Raised when an action is declined because there is nothing to do.

    Carries an optional payload (for example the reconciliation result) so
    callers can explain why the action is unavailable.
    """

    def __init__(self, reason: str, payload: dict[str, Any] | None = None):
        super().__init__(reason)
        self.reason = reason
        self.payload = payload or {}
