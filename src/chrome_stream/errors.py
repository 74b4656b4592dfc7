"""
Errors
======

Exceptions surfaced by the sampling and synchronization components.

Failures that are contained by policy (decode errors, dimension
mismatches, executor failures, correlation timeouts) never appear here;
they are converted into results where they happen.
"""


class SyncConfigError(ValueError):
    """Raised when component parameters fail validation."""
    pass


class NoFrameAvailableError(Exception):
    """Raised by register_action when no baseline frame has been buffered yet."""
    pass


class WaitCancelledError(Exception):
    """Raised to every waiter still pending when the buffer is cleared."""
    pass


class FrameWaitTimeoutError(TimeoutError):
    """Raised when a frame wait expires without any usable frame."""
    pass
