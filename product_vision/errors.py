"""
Error taxonomy for the recognition core.

Input errors (bad image, bad descriptor) are also ValueErrors. Resource
errors are transient and marked recoverable. Consistency errors signal an
integration bug in the caller and are never turned into results.
"""


class VisionError(Exception):
    """Base class for every error raised by product_vision."""

    recoverable = False


class InvalidImageError(VisionError, ValueError):
    """Pixel buffer is empty or its length does not match its dimensions."""

    recoverable = True


class EncodingError(VisionError, ValueError):
    """Descriptor or token metadata violates a data model invariant."""

    recoverable = True


class TenantMismatchError(VisionError):
    """A token was written to, or read from, another tenant's partition."""


class EmptyBankError(VisionError):
    """Raised only when the caller asks for an explicit empty-bank signal."""


class CaptureError(VisionError):
    """The camera could not deliver a frame (device busy, not ready, gone)."""

    recoverable = True


class RecognitionTimeoutError(VisionError):
    """A capture, extraction or matching step exceeded its time budget."""

    recoverable = True


class BankUnavailableError(VisionError):
    """A remote bank store could not be reached."""

    recoverable = True


class SessionBusyError(VisionError):
    """The session was asked to start work while not idle."""
