"""
Reminder and intake reconciliation.

Decides when reminders exist for an occurrence, and which of today's
occurrences are still not taken once their grace window has passed. All
state lives in the entity collections handed in by the repository.
"""
from datetime import date, datetime
from typing import Callable, List, Optional, Tuple, Union

from . import scheduling
from .collection import EntityCollection
from .errors import InvalidTimeSpec
from .logs import logger
from .models import Intake, Medication, Reminder, Schedule


class Reconciler:
    def __init__(self,
                 medications: EntityCollection[Medication],
                 schedules: EntityCollection[Schedule],
                 intakes: EntityCollection[Intake],
                 reminders: EntityCollection[Reminder],
                 clock: Callable[[], datetime]):
        self.medications = medications
        self.schedules = schedules
        self.intakes = intakes
        self.reminders = reminders
        self.clock = clock

    def now(self) -> int:
        return scheduling.epoch_seconds(self.clock())

    def today(self) -> date:
        return self.clock().date()

    # -------------------------
    # Reminder creation
    # -------------------------
    def _reminder_time(self, schedule_id: int, scheduled_time: str, scheduled_date: str, now: int) -> int:
        # the schedule's own time wins over the caller's copy of it
        schedule = self.schedules.find(schedule_id)
        time = schedule.time if schedule is not None else scheduled_time
        try:
            scheduled = scheduling.resolve_occurrence(time, scheduled_date)
        except InvalidTimeSpec as e:
            logger.warning(f"reminder time for schedule={schedule_id} falls back to now: {e}")
            return now
        return scheduling.reminder_instant(scheduled, now)

    async def _create(self, medication_id: int, schedule_id: int, scheduled_time: str,
                      scheduled_date: str, once_per_day: bool = False) -> Tuple[int, bool]:
        key = (medication_id, schedule_id, scheduled_time, scheduled_date)
        day_key = (medication_id, schedule_id, scheduled_date)
        now = self.now()
        reminder_time = self._reminder_time(schedule_id, scheduled_time, scheduled_date, now)

        def change(records):
            for r in records:
                if once_per_day and (r.medication_id, r.schedule_id, r.scheduled_date) == day_key:
                    return records, (r.id, False)
                if not r.acknowledged and r.occurrence_key() == key:
                    return records, (r.id, False)
            rid = self.reminders.allocate_id(records)
            reminder = Reminder(
                id=rid,
                medication_id=medication_id,
                schedule_id=schedule_id,
                reminder_time=reminder_time,
                scheduled_time=scheduled_time,
                scheduled_date=scheduled_date,
                acknowledged=False,
            )
            return records + (reminder,), (rid, True)

        rid, created = await self.reminders.mutate(change)
        if created:
            logger.info(f"created reminder id={rid} med={medication_id} schedule={schedule_id} "
                        f"{scheduled_date} {scheduled_time} at={reminder_time}")
        return rid, created

    async def create_reminder(self, medication_id: int, schedule_id: int,
                              scheduled_time: str, scheduled_date: str) -> int:
        rid, _ = await self._create(medication_id, schedule_id, scheduled_time, scheduled_date)
        return rid

    def _due(self, schedule: Schedule, day: date) -> bool:
        try:
            return scheduling.is_due_on(schedule.days_of_week, day)
        except InvalidTimeSpec as e:
            logger.warning(f"schedule id={schedule.id} has bad days: {e}")
            return False

    async def remind_on(self, schedule: Schedule, day: date) -> Optional[int]:
        if not self._due(schedule, day):
            return None
        return await self.create_reminder(
            medication_id=schedule.medication_id,
            schedule_id=schedule.id,
            scheduled_time=schedule.time,
            scheduled_date=scheduling.date_string(day),
        )

    async def remind_today(self, schedule: Schedule) -> Optional[int]:
        """Create today's reminder for ``schedule`` if today is one of its days."""
        return await self.remind_on(schedule, self.today())

    async def create_reminders_for_date(self, day: Union[date, str]) -> List[int]:
        """
        Daily pass over every schedule due on ``day``; returns the ids created.

        An occurrence that already has a reminder for that date, acknowledged
        or not, or an intake for that schedule and date, gets nothing new.
        A malformed date yields no reminders.
        """
        if isinstance(day, str):
            try:
                day = scheduling.parse_date(day)
            except InvalidTimeSpec as e:
                logger.warning(f"create reminders: {e}")
                return []
        day_str = scheduling.date_string(day)
        taken = {i.schedule_id for i in self.intakes.snapshot if i.scheduled_date == day_str}
        created = []
        for schedule in self.schedules.snapshot:
            if schedule.id in taken or not self._due(schedule, day):
                continue
            rid, new = await self._create(schedule.medication_id, schedule.id, schedule.time,
                                          day_str, once_per_day=True)
            if new:
                created.append(rid)
        return created

    # -------------------------
    # Overdue detection
    # -------------------------
    def overdue_schedules(self) -> List[Schedule]:
        """Today's schedules with no intake for today, past the grace window."""
        current = self.clock()
        now = scheduling.epoch_seconds(current)
        today = scheduling.date_string(current)
        weekday = scheduling.day_of_week_index(current)

        due_today = []
        for s in self.schedules.snapshot:
            try:
                if weekday in scheduling.parse_days_of_week(s.days_of_week):
                    due_today.append(s)
            except InvalidTimeSpec:
                continue

        recorded = {i.schedule_id for i in self.intakes.snapshot if i.scheduled_date == today}

        overdue = []
        for s in due_today:
            if s.id in recorded:
                continue
            try:
                scheduled = scheduling.resolve_occurrence(s.time, today)
            except InvalidTimeSpec:
                continue
            if scheduling.is_overdue(scheduled, now):
                overdue.append(s)
        return overdue

    def count_not_taken_today(self) -> int:
        return len(self.overdue_schedules())

    def not_taken_today(self) -> List[Tuple[Medication, Schedule]]:
        meds = {m.id: m for m in self.medications.snapshot}
        return [(meds[s.medication_id], s) for s in self.overdue_schedules()
                if s.medication_id in meds]

    # -------------------------
    # Reminder views
    # -------------------------
    def visible_reminders(self) -> List[Reminder]:
        now = self.now()
        return sorted((r for r in self.reminders.snapshot
                       if not scheduling.is_expired(r.reminder_time, now)),
                      key=lambda r: r.scheduled_time)

    def reminders_for_current_time(self) -> List[Reminder]:
        now = self.now()
        return [r for r in self.visible_reminders() if r.reminder_time <= now]

    def active_reminders(self) -> List[Reminder]:
        return [r for r in self.reminders_for_current_time() if not r.acknowledged]
