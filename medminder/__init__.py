"""Medication reminder core: schedules, intakes, reminders and overdue doses."""

from .capability import Capability, NotificationCapability, NullCapability, detect_capability
from .config import Settings
from .errors import InvalidTimeSpec, MedMinderError, StorageReadFailure, StorageWriteFailure
from .models import Intake, Medication, Reminder, Schedule
from .repository import MedicationRepository
from .storage import DurableStore, EncryptedFileStore, FileStore, InMemoryStore, open_store

__version__ = "0.1.0"

__all__ = [
    "Capability",
    "DurableStore",
    "EncryptedFileStore",
    "FileStore",
    "InMemoryStore",
    "Intake",
    "InvalidTimeSpec",
    "Medication",
    "MedicationRepository",
    "MedMinderError",
    "NotificationCapability",
    "NullCapability",
    "Reminder",
    "Schedule",
    "Settings",
    "StorageReadFailure",
    "StorageWriteFailure",
    "detect_capability",
    "open_store",
]
