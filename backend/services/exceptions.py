"""Error taxonomy shared by the ride, bidding and pricing services."""


class RideServiceError(Exception):
    """Base class for errors raised by the ride services."""
    error_code = "error"

    def __init__(self, message: str = "", **details):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(RideServiceError):
    """Raised for malformed input: bid out of range, missing location, bad cost inputs."""
    error_code = "validation_error"


class PreconditionFailed(RideServiceError):
    """Raised when a ride, task or bid is not in the state an operation requires."""
    error_code = "precondition_failed"


class InvalidTransition(PreconditionFailed):
    """Raised when a task transition would skip a state or move backwards."""
    error_code = "invalid_transition"


class OutOfOrder(PreconditionFailed):
    """Raised when a transition targets a task that is not the active one."""
    error_code = "out_of_order"


class Conflict(RideServiceError):
    """Raised to the loser of a concurrent bid acceptance."""
    error_code = "already_assigned"


class PermissionDenied(RideServiceError):
    """Raised when the acting user has the wrong role for an operation."""
    error_code = "forbidden"


class RideNotFoundError(RideServiceError):
    """Raised when a ride cannot be found."""
    error_code = "ride_not_found"


class BidNotFoundError(RideServiceError):
    """Raised when a bid cannot be found."""
    error_code = "bid_not_found"


class TaskNotFoundError(RideServiceError):
    """Raised when an errand task cannot be found on the ride."""
    error_code = "task_not_found"


class TransportError(RideServiceError):
    """Raised internally when a change-feed channel fails."""
    error_code = "transport_error"


class ConfigUnavailable(RideServiceError):
    """Raised internally when the pricing or routing collaborator is unreachable."""
    error_code = "config_unavailable"
