"""Error taxonomy for the sweeper."""


class SweeperError(Exception):
    """Base class for every error raised by the sweeper."""


class ConfigError(SweeperError):
    """Invalid or missing process configuration."""


class ConnectivityError(SweeperError):
    """The node endpoint is unreachable or the connection dropped."""


class EstimationError(SweeperError):
    """The fee query failed. Aborts the current attempt only."""


class SubmissionRejected(SweeperError):
    """The transaction pool refused the extrinsic."""


class ExecutionFailure(SweeperError):
    """The extrinsic was included but the runtime reported a dispatch error."""

    def __init__(self, error_type, error_name=None, docs=None):
        self.error_type = error_type
        self.error_name = error_name
        self.docs = docs
        label = f"{error_type}.{error_name}" if error_name else str(error_type)
        super().__init__(label)


class PolicyViolation(SweeperError):
    """A computed plan would break a sweep invariant."""


class AmountUnderflow(PolicyViolation, ArithmeticError):
    """Subtraction would take an Amount below zero."""
