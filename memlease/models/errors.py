"""
Error taxonomy shared by services and adapters.
"""

from typing import List, Optional


class MemoryLeaseError(Exception):
    """Base class for all lease gateway errors."""
    pass


class ValidationError(MemoryLeaseError):
    """Missing or malformed request fields, raised before any external call."""
    pass


class AccessDeniedError(MemoryLeaseError):
    """No lease grants the requesting entity access.

    The reason enumerates the alternatives the caller does have.
    """

    def __init__(self, reason: str, available: Optional[List[str]] = None):
        super().__init__(reason)
        self.reason = reason
        self.available = available or []


class NotFoundError(MemoryLeaseError):
    """Requested record does not exist or is not visible to the caller."""
    pass


class UpstreamUnavailableError(MemoryLeaseError):
    """An external system (ledger, cache, vector index, relational store, embedding service) failed."""
    pass


class InconsistencyError(UpstreamUnavailableError):
    """The ledger and the relational store disagree about a lease."""
    pass
