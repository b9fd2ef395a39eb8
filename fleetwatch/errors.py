from __future__ import annotations


class FleetwatchError(Exception):
    """Base for every error raised by fleetwatch components."""


class ToolUnavailable(FleetwatchError):
    """A collaborator binary or service is not present. The feature it backs is disabled."""


class CollaboratorTimeout(FleetwatchError):
    """An external call overran its deadline. Retried on the next cycle."""


class MalformedResponse(FleetwatchError):
    """A collaborator returned output that could not be parsed."""


class ResolutionError(FleetwatchError):
    """Session or pane enumeration failed; the refresh cycle is aborted."""


class RotationFailed(FleetwatchError):
    def __init__(self, message: str, previous_account: str = ""):
        super().__init__(message)
        self.previous_account = previous_account


class RotationUnavailable(FleetwatchError):
    """Fewer than two credential sets are configured, rotation cannot run."""
