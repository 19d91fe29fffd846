"""Exception types raised by the MSPrep pipeline stages."""


class MSPrepError(ValueError):
    """Base class for all pipeline errors."""


class ShapeError(MSPrepError):
    """Input violates the fixed replicate-count design."""


class StageError(MSPrepError):
    """A stage was invoked on an object at the wrong lifecycle stage."""


class ConfigError(MSPrepError):
    """Invalid or insufficient parameters for a stage."""


class ImputationError(MSPrepError):
    """Degenerate input to an imputation method (e.g. an all-missing compound)."""
