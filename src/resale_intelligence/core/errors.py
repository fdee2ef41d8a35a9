"""Error taxonomy shared by the pipeline, clients and credential caches.

Callers own retry policy. ``TransientError`` is the only kind worth retrying
as-is; everything else needs a different input, more credits, or a fresh
authorization.
"""

from __future__ import annotations

from typing import Optional


class ResaleIntelligenceError(Exception):
    """Base class for every error raised by this package."""


class InsufficientBudget(ResaleIntelligenceError):
    """The credit ledger cannot cover the capability cost."""

    def __init__(self, required: int):
        super().__init__(f"Insufficient credits: {required} required")
        self.required = required


class NotAuthenticated(ResaleIntelligenceError):
    """No usable credential and nothing available to obtain one."""


class RefreshFailed(ResaleIntelligenceError):
    """A credential renewal was attempted and the remote rejected or errored."""

    def __init__(self, integration_id: str, reason: str):
        super().__init__(f"{integration_id}: token refresh failed: {reason}")
        self.integration_id = integration_id
        self.reason = reason


class TransientError(ResaleIntelligenceError):
    """Timeout or transport failure; the request may succeed if repeated."""


class RemoteError(ResaleIntelligenceError):
    """The remote answered with an explicit error."""

    def __init__(self, code: Optional[int], message: str):
        super().__init__(f"Remote error ({code}): {message}" if code is not None else f"Remote error: {message}")
        self.code = code
        self.message = message


class MalformedResponse(ResaleIntelligenceError):
    """The response envelope lacks its required shape."""


class ParseFailure(ResaleIntelligenceError):
    """Content was present but none of the expected fields were recognized."""
