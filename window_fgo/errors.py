"""Exception types raised by the estimator."""


class DataError(ValueError):
    """Input data is missing or malformed; the run cannot produce a result."""


class DuplicateStateError(KeyError):
    """A state with the same name and timestamp already exists."""


class UnknownStateError(KeyError):
    """A factor or query references a state that does not exist."""
