from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Optional, Tuple


# field annotations are strings here (postponed evaluation)
_JSON_TYPES = {
    "int": (int,),
    "str": (str,),
    "bool": (bool,),
    "Optional[str]": (str, type(None)),
}


def _check_type(cls_name: str, key: str, annotation: str, value: Any):
    allowed = _JSON_TYPES.get(annotation)
    if allowed is None:
        return
    # bool is an int subclass; keep ids and timestamps honest
    if bool not in allowed and isinstance(value, bool):
        raise ValueError(f"{cls_name}.{key}: unexpected bool")
    if not isinstance(value, allowed):
        raise ValueError(f"{cls_name}.{key}: expected {annotation}, got {type(value).__name__}")


class Record:
    """Mixin mapping snake_case attributes to the camelCase keys on disk."""

    json_keys: ClassVar[Dict[str, str]] = {}

    def to_dict(self) -> Dict[str, Any]:
        return {self.json_keys.get(f.name, f.name): getattr(self, f.name)
                for f in dataclasses.fields(self)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]):
        if not isinstance(d, dict):
            raise ValueError(f"expected object, got {type(d).__name__}")
        kwargs = {}
        for f in dataclasses.fields(cls):
            key = cls.json_keys.get(f.name, f.name)
            if key in d:
                _check_type(cls.__name__, key, f.type, d[key])
                kwargs[f.name] = d[key]
            elif f.default is dataclasses.MISSING:
                raise ValueError(f"{cls.__name__}: missing {key!r}")
        return cls(**kwargs)

    def replace(self, **changes):
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class Medication(Record):
    id: int
    name: str
    description: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0

    json_keys: ClassVar[Dict[str, str]] = {
        "created_at": "createdAt",
        "updated_at": "updatedAt",
    }


@dataclass(frozen=True)
class Schedule(Record):
    id: int
    medication_id: int
    time: str  # HH:MM, 24h
    days_of_week: str  # "1,2,3" where 1 is Monday
    created_at: int = 0
    updated_at: int = 0

    json_keys: ClassVar[Dict[str, str]] = {
        "medication_id": "medicationId",
        "days_of_week": "daysOfWeek",
        "created_at": "createdAt",
        "updated_at": "updatedAt",
    }


@dataclass(frozen=True)
class Intake(Record):
    id: int
    medication_id: int
    schedule_id: int
    taken_at: int
    scheduled_time: str
    scheduled_date: str
    acknowledged: bool = False
    taken: bool = True

    json_keys: ClassVar[Dict[str, str]] = {
        "medication_id": "medicationId",
        "schedule_id": "scheduleId",
        "taken_at": "takenAt",
        "scheduled_time": "scheduledTime",
        "scheduled_date": "scheduledDate",
    }


@dataclass(frozen=True)
class Reminder(Record):
    id: int
    medication_id: int
    schedule_id: int
    reminder_time: int
    scheduled_time: str
    scheduled_date: str
    acknowledged: bool = False

    json_keys: ClassVar[Dict[str, str]] = {
        "medication_id": "medicationId",
        "schedule_id": "scheduleId",
        "reminder_time": "reminderTime",
        "scheduled_time": "scheduledTime",
        "scheduled_date": "scheduledDate",
    }

    def occurrence_key(self) -> Tuple[int, int, str, str]:
        return (self.medication_id, self.schedule_id, self.scheduled_time, self.scheduled_date)
