"""
Error taxonomy for the phase harness.

Every failure raised by the result publisher and the phase legacy store is a
subclass of HarnessError, so worker processes can catch the whole family at
once or react to individual conditions.
"""


class HarnessError(Exception):
    """Base class for all phase harness errors."""
    pass


class ConfigurationError(HarnessError):
    """Exception raised when a required location or setting is missing or invalid."""
    pass


class ValidationError(HarnessError):
    """Exception raised when a status or result is outside the recognized vocabulary."""
    pass


class LockAcquisitionError(HarnessError):
    """Exception raised when the lock on the results file cannot be obtained."""
    pass


class LockTimeoutError(LockAcquisitionError):
    """Exception raised when the lock was not obtained within the configured timeout."""
    pass


class ReentrancyError(HarnessError):
    """Exception raised when a publisher starts a transaction while one is still open."""
    pass


class CorruptDocumentError(HarnessError):
    """Exception raised when the existing results file cannot be parsed."""
    pass


class KeyDerivationError(HarnessError):
    """Exception raised when a legacy key cannot be derived from a test identity."""
    pass


class NotFoundError(HarnessError):
    """Exception raised when no legacy record exists for a key."""
    pass


class StoreError(HarnessError):
    """Exception raised when a legacy record cannot be written, read or parsed."""
    pass
