"""
Error taxonomy shared by every component of the learning loop.
"""


class LearningLoopError(Exception):
    """Base exception for learning loop errors."""
    pass


class ValidationError(LearningLoopError):
    """Empty input or malformed configuration, raised before any storage or network call."""
    pass


class TransientServiceError(LearningLoopError):
    """An embedding, judge or index backend was unreachable, timed out or returned an error."""
    pass


class SchemaError(LearningLoopError):
    """A payload, vector or score did not have the expected shape."""
    pass


class NotFoundError(LearningLoopError):
    """No record exists for the requested id."""
    pass


class StorageError(LearningLoopError):
    """The persistence layer failed to read or write a record."""
    pass
