"""Exception taxonomy.

Broker errors are fatal to the owning process. Transcode errors are scoped to
one job and end up as a `failed` catalog entry. Store errors split into the
expected ones (NotFound, ConstraintViolation) and transient I/O worth retrying.
"""

from typing import Optional


class BrokerError(Exception):
    pass


class ConnectionExhausted(BrokerError):
    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Could not connect to broker after {attempts} attempts: {last_error}")


class BrokerConnectionLost(BrokerError):
    pass


class TranscodeError(Exception):
    pass


class SpawnFailed(TranscodeError):
    """The encoder could not be started (missing binary, permissions)."""


class EncoderFailed(TranscodeError):
    def __init__(self, returncode: int):
        self.returncode = returncode
        super().__init__(f"ffmpeg exited with code {returncode}")


class EmptyOutput(TranscodeError):
    pass


class TimeoutExceeded(TranscodeError):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Encoder exceeded {timeout:.1f}s timeout and was killed")


class OutputDirectoryError(TranscodeError):
    pass


class OutsideSourceRoot(TranscodeError):
    pass


class EncoderAborted(TranscodeError):
    """The worker is shutting down; the job was not finished and goes back to the queue."""


class StoreError(Exception):
    pass


class NotFound(StoreError):
    pass


class ConstraintViolation(StoreError):
    pass


class StoreIOError(StoreError):
    pass


class InvalidTransition(StoreError):
    pass
