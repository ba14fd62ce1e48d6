"""
Error taxonomy for the online predictor.

Request-scoped errors (REQUEST_ERRORS) are fatal to a single message only:
the server logs them and keeps the connection open. Diverged is recoverable
and never leaves the trainer. Everything else stops the process.
"""


class PredictorError(Exception):
    """Base class for every predictor failure."""


class ConfigMissing(PredictorError):
    def __init__(self, fields):
        self.fields = list(fields)
        super().__init__(f"Missing required option(s): {', '.join(self.fields)}")


class ConfigInvalid(PredictorError):
    pass


class CapacityExceeded(PredictorError):
    def __init__(self, requested: int, capacity: int):
        self.requested = requested
        self.capacity = capacity
        super().__init__(f"Received too many samples: {requested} > capacity {capacity}")


class Diverged(PredictorError):
    def __init__(self, iteration: int, loss: float, reason: str):
        self.iteration = iteration
        self.loss = loss
        self.reason = reason
        super().__init__(f"Training diverged at iteration {iteration} ({reason}, loss={loss})")


class DimensionMismatch(PredictorError):
    def __init__(self, what: str, expected, actual):
        self.what = what
        self.expected = expected
        self.actual = actual
        super().__init__(f"Mismatch in {what}: expected {expected}, got {actual}")


class UnknownCommand(PredictorError):
    def __init__(self, command: str):
        self.command = command
        super().__init__(f"No handler available for ID: '{command}'")


class ProtocolError(PredictorError):
    pass


class NotInitialized(PredictorError):
    pass


REQUEST_ERRORS = (UnknownCommand, ProtocolError, CapacityExceeded, NotInitialized)
