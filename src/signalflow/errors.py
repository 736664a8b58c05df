"""Exception hierarchy for SignalFlow."""


class SignalFlowError(Exception):
    """Base class for all SignalFlow errors."""


class OracleError(SignalFlowError):
    """Raised when the reasoning oracle fails or returns unusable output."""


class OracleTimeoutError(OracleError):
    """Raised when every oracle attempt timed out."""


class DecisionSchemaError(OracleError):
    """Raised when an oracle response does not match the expected schema."""


class EmissionError(SignalFlowError):
    """Raised when an outbound event cannot be delivered."""


class ReviewError(SignalFlowError):
    """Base class for approval workflow errors."""


class ReviewNotFoundError(ReviewError):
    """Raised when a review id is unknown."""


class ReviewStateError(ReviewError):
    """Raised when a review is acted on after it was resolved."""
