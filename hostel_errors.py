"""
Exception hierarchy for the hostel core.

Every error carries a human-readable message and a stable ``reason`` code so
callers can tell "room no longer available" apart from "invalid amount".
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class HostelError(Exception):
    """Base class for all hostel core errors."""

    default_reason = "error"

    def __init__(self, message: str, reason: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.reason = reason or self.default_reason
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


class NotFound(HostelError, KeyError):
    """A referenced Room/Student/Fee/Complaint/Request/Notification does not exist."""

    default_reason = "not_found"


class Conflict(HostelError, ValueError):
    """The current state of a record forbids the requested transition."""

    default_reason = "conflict"


class ValidationError(HostelError, ValueError):
    """Malformed input, rejected before any store write."""

    default_reason = "invalid_input"


class StoreUnavailable(HostelError):
    """The Entity Store failed or timed out; multi-write effects may be partial."""

    default_reason = "store_unavailable"
