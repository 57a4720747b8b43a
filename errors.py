"""Error taxonomy for the planning engine.

Degraded-but-valid outcomes (no eligible hosts, insufficient data, a skipped
concurrent run) are reported as statuses on results, not raised.
"""


class PlanningError(Exception):
    """Base exception for planning engine errors"""
    pass


class NotFoundError(PlanningError):
    """Cluster, profile or VM does not exist"""

    def __init__(self, kind: str, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class ValidationError(PlanningError):
    """Malformed input to a public operation, rejected before any write"""
    pass


class ProfileInUseError(PlanningError):
    """Profile still has active instances and cannot be deleted"""
    pass


class SourceError(PlanningError):
    """Base exception for inventory and metrics source failures"""
    pass


class SourceConnectionError(SourceError):
    """Source unreachable after retries"""
    pass


class SourceQueryError(SourceError):
    """Source answered with an error status or an unreadable payload"""
    pass


class FetchTimeoutError(SourceError):
    """A single fetch exceeded its timeout"""
    pass
