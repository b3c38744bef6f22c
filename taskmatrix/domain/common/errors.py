from __future__ import annotations


class DomainError(Exception):
    """Base class for errors raised by taskmatrix services."""


class ValidationError(DomainError):
    """Input rejected before any state change."""


class NotFoundError(DomainError):
    pass


class BackendError(DomainError):
    """A persistence backend failed to read or write."""


class BackendUnavailableError(BackendError):
    pass
