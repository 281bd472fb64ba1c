class MedMinderError(Exception):
    """Base class for errors raised by the medminder core."""


class StorageReadFailure(MedMinderError):
    """A stored blob exists but could not be read or decrypted."""


class StorageWriteFailure(MedMinderError):
    """A blob could not be written; the in-memory snapshot stays authoritative."""


class InvalidTimeSpec(MedMinderError, ValueError):
    """A time, date or days-of-week string does not parse."""
