"""
Repository facade over the medication, schedule, intake and reminder
collections.

Build one :class:`MedicationRepository` per session and hand it to every
consumer. Mutations are coroutines serialized per collection; queries are
plain methods reading the latest snapshots and never wait on a writer.
"""
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from . import scheduling
from .capability import Capability, NullCapability
from .collection import EntityCollection
from .errors import InvalidTimeSpec
from .logs import logger
from .models import Intake, Medication, Reminder, Schedule
from .observable import View
from .reconciler import Reconciler
from .storage import DurableStore

MEDICATIONS_FILE = "medications"
SCHEDULES_FILE = "medication_schedules"
INTAKES_FILE = "medication_intakes"
REMINDERS_FILE = "medication_reminders"


class MedicationRepository:
    def __init__(self, store: DurableStore, capability: Optional[Capability] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.capability = capability or NullCapability()
        self.clock = clock or datetime.now

        self.medications = EntityCollection(MEDICATIONS_FILE, Medication, store)
        self.schedules = EntityCollection(SCHEDULES_FILE, Schedule, store)
        self.intakes = EntityCollection(INTAKES_FILE, Intake, store)
        self.reminders = EntityCollection(REMINDERS_FILE, Reminder, store)

        self.reconciler = Reconciler(self.medications, self.schedules, self.intakes,
                                     self.reminders, self.clock)

        self._medications_view = View([self.medications.channel, self.schedules.channel],
                                      self._sorted_medications)
        self._schedules_view = View([self.schedules.channel],
                                    lambda: sorted(self.schedules.snapshot, key=lambda s: s.time))
        self._intakes_view = View([self.intakes.channel],
                                  lambda: sorted(self.intakes.snapshot, key=lambda i: i.scheduled_time))
        self._reminders_view = View([self.reminders.channel], self.reconciler.visible_reminders)

    @classmethod
    async def open(cls, store: DurableStore, capability: Optional[Capability] = None,
                   clock: Optional[Callable[[], datetime]] = None) -> "MedicationRepository":
        repo = cls(store, capability=capability, clock=clock)
        await repo.load()
        return repo

    async def load(self):
        for c in (self.medications, self.schedules, self.intakes, self.reminders):
            await c.load()

    def _now(self) -> int:
        return scheduling.epoch_seconds(self.clock())

    # -------------------------
    # Subscriptions
    # -------------------------
    def _sorted_medications(self) -> List[Medication]:
        earliest = {}
        for s in self.schedules.snapshot:
            if s.medication_id not in earliest or s.time < earliest[s.medication_id]:
                earliest[s.medication_id] = s.time
        return sorted(self.medications.snapshot,
                      key=lambda m: earliest.get(m.id, scheduling.NO_SCHEDULE_SENTINEL))

    def all_medications(self) -> View:
        """Medications ordered by their earliest schedule time; unscheduled last."""
        return self._medications_view

    def all_schedules(self) -> View:
        return self._schedules_view

    def all_intakes(self) -> View:
        return self._intakes_view

    def all_reminders(self) -> View:
        """Reminders younger than a day, ordered by scheduled time."""
        return self._reminders_view

    # -------------------------
    # Medications
    # -------------------------
    def get_medication_by_id(self, medication_id: int) -> Optional[Medication]:
        return self.medications.find(medication_id)

    async def insert_medication(self, name: str, description: Optional[str] = None) -> int:
        now = self._now()
        mid = await self.medications.append(lambda new_id: Medication(
            id=new_id, name=name, description=description, created_at=now, updated_at=now))
        logger.info(f"inserted medication id={mid} {name}")
        return mid

    async def update_medication(self, medication_id: int, name: str, description: Optional[str] = None):
        now = self._now()
        hits = await self.medications.update_where(
            lambda m: m.id == medication_id,
            lambda m: m.replace(name=name, description=description, updated_at=now))
        if not hits:
            logger.warning(f"update medication id={medication_id}: not found")

    async def delete_medication(self, medication_id: int):
        # independent mutations; a crash in between leaves orphans behind
        await self.medications.remove_where(lambda m: m.id == medication_id)
        n_sched = await self.schedules.remove_where(lambda s: s.medication_id == medication_id)
        n_intake = await self.intakes.remove_where(lambda i: i.medication_id == medication_id)
        logger.info(f"deleted medication id={medication_id} schedules={n_sched} intakes={n_intake}")

    # -------------------------
    # Schedules
    # -------------------------
    def get_schedule_by_id(self, schedule_id: int) -> Optional[Schedule]:
        return self.schedules.find(schedule_id)

    def get_schedules_for_medication(self, medication_id: int) -> List[Schedule]:
        return sorted((s for s in self.schedules.snapshot if s.medication_id == medication_id),
                      key=lambda s: s.time)

    def get_schedules_for_date(self, calendar_date: str) -> List[Schedule]:
        """Schedules whose weekdays include ``calendar_date``, ordered by time.

        A malformed ``calendar_date`` has no schedules.
        """
        try:
            weekday = scheduling.day_of_week_index(calendar_date)
        except InvalidTimeSpec as e:
            logger.warning(f"schedules for date: {e}")
            return []
        due = []
        for s in self.schedules.snapshot:
            try:
                if weekday in scheduling.parse_days_of_week(s.days_of_week):
                    due.append(s)
            except InvalidTimeSpec:
                continue
        return sorted(due, key=lambda s: s.time)

    async def insert_schedule(self, medication_id: int, time: str, days_of_week: str) -> int:
        now = self._now()
        sid = await self.schedules.append(lambda new_id: Schedule(
            id=new_id, medication_id=medication_id, time=time, days_of_week=days_of_week,
            created_at=now, updated_at=now))
        logger.info(f"inserted schedule id={sid} med={medication_id} {time} days={days_of_week}")
        await self._after_schedule_change(self.schedules.find(sid))
        return sid

    async def update_schedule(self, schedule_id: int, time: str, days_of_week: str):
        now = self._now()
        hits = await self.schedules.update_where(
            lambda s: s.id == schedule_id,
            lambda s: s.replace(time=time, days_of_week=days_of_week, updated_at=now))
        if not hits:
            logger.warning(f"update schedule id={schedule_id}: not found")
            return
        logger.info(f"updated schedule id={schedule_id} {time} days={days_of_week}")
        await self._after_schedule_change(self.schedules.find(schedule_id))

    async def _after_schedule_change(self, schedule: Optional[Schedule]):
        if schedule is None:
            # deleted concurrently
            return
        await self.reconciler.remind_today(schedule)
        self._schedule_notification(schedule)

    def _schedule_notification(self, schedule: Schedule):
        medication = self.medications.find(schedule.medication_id)
        if medication is None:
            return
        try:
            hour, minute = scheduling.parse_time(schedule.time)
            days = sorted(scheduling.parse_days_of_week(schedule.days_of_week))
        except InvalidTimeSpec as e:
            logger.warning(f"no notification for schedule id={schedule.id}: {e}")
            return
        try:
            self.capability.schedule_medication_notification(medication.name, hour, minute, days)
        except Exception:
            logger.exception(f"notification scheduling failed for schedule id={schedule.id}")

    async def delete_schedule(self, schedule_id: int):
        await self.schedules.remove_where(lambda s: s.id == schedule_id)
        n_intake = await self.intakes.remove_where(lambda i: i.schedule_id == schedule_id)
        logger.info(f"deleted schedule id={schedule_id} intakes={n_intake}")

    # -------------------------
    # Intakes
    # -------------------------
    def get_intakes_for_date_range(self, start_date: str, end_date: str) -> List[Intake]:
        return sorted((i for i in self.intakes.snapshot if start_date <= i.scheduled_date <= end_date),
                      key=lambda i: i.scheduled_time)

    def get_intakes_for_schedule_and_date(self, schedule_id: int, calendar_date: str) -> List[Intake]:
        return sorted((i for i in self.intakes.snapshot
                       if i.schedule_id == schedule_id and i.scheduled_date == calendar_date),
                      key=lambda i: i.scheduled_time)

    async def record_intake(self, medication_id: int, schedule_id: int, scheduled_time: str,
                            scheduled_date: str, taken: bool = True) -> int:
        now = self._now()
        iid = await self.intakes.append(lambda new_id: Intake(
            id=new_id, medication_id=medication_id, schedule_id=schedule_id, taken_at=now,
            scheduled_time=scheduled_time, scheduled_date=scheduled_date, taken=taken))
        logger.info(f"dose log: id={iid} med={medication_id} schedule={schedule_id} "
                    f"{scheduled_date} {scheduled_time} taken={taken}")
        return iid

    async def acknowledge_intake(self, intake_id: int):
        await self.intakes.update_where(lambda i: i.id == intake_id,
                                        lambda i: i.replace(acknowledged=True))

    async def delete_intake(self, intake_id: int):
        await self.intakes.remove_where(lambda i: i.id == intake_id)

    # -------------------------
    # Reminders
    # -------------------------
    async def create_reminder(self, medication_id: int, schedule_id: int,
                              scheduled_time: str, scheduled_date: str) -> int:
        return await self.reconciler.create_reminder(medication_id, schedule_id,
                                                     scheduled_time, scheduled_date)

    async def create_reminders_for_today(self) -> List[int]:
        """Ids of the reminders newly created for today's due schedules."""
        return await self.reconciler.create_reminders_for_date(self.reconciler.today())

    def get_active_reminders(self) -> List[Reminder]:
        return self.reconciler.active_reminders()

    def get_all_reminders_for_current_time(self) -> List[Reminder]:
        return self.reconciler.reminders_for_current_time()

    def get_reminders_for_date_range(self, start_date: str, end_date: str) -> List[Reminder]:
        return sorted((r for r in self.reminders.snapshot if start_date <= r.scheduled_date <= end_date),
                      key=lambda r: r.scheduled_time)

    async def acknowledge_reminder(self, reminder_id: int):
        await self.reminders.update_where(lambda r: r.id == reminder_id,
                                          lambda r: r.replace(acknowledged=True))

    async def delete_reminder(self, reminder_id: int):
        await self.reminders.remove_where(lambda r: r.id == reminder_id)

    # -------------------------
    # Not taken today
    # -------------------------
    def count_medications_not_taken_for_today(self) -> int:
        return self.reconciler.count_not_taken_today()

    def get_medications_not_taken_for_today(self) -> List[Tuple[Medication, Schedule]]:
        return self.reconciler.not_taken_today()

    def refresh_badge(self) -> int:
        count = self.count_medications_not_taken_for_today()
        try:
            self.capability.set_badge_count(count)
        except Exception:
            logger.exception("badge update failed")
        return count
