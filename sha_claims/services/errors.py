"""
Domain exceptions raised by the service layer.

They subclass `ValueError` so callers that only care about "the request was
wrong" can keep catching that; the API maps each subclass to a status code.
"""

from __future__ import annotations


class ClaimsError(ValueError):
    """Base class for all service-level errors."""


class NotFoundError(ClaimsError):
    """The referenced claim, batch, invoice, workflow or job does not exist."""


class ConflictError(ClaimsError):
    """The operation would duplicate something that must be unique."""


class InvalidStateError(ClaimsError):
    """The entity is not in a state that allows the requested operation."""
