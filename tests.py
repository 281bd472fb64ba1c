import os
import json
import asyncio
import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from unittest import mock

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from medminder import scheduling
from medminder.capability import Capability, NullCapability, detect_capability, next_weekday_at, stable_request_code
from medminder.config import Settings
from medminder.crypto import aes_decrypt, aes_encrypt, get_or_create_key
from medminder.errors import InvalidTimeSpec, StorageReadFailure, StorageWriteFailure
from medminder.logs import _RingLog, clear_log, configure_logging, logger, ring_text
from medminder.models import Intake, Medication, Reminder, Schedule
from medminder.observable import Observable
from medminder.repository import (INTAKES_FILE, MEDICATIONS_FILE, REMINDERS_FILE, SCHEDULES_FILE,
                                  MedicationRepository)
from medminder.service import ReminderService, main as service_main
from medminder.storage import EncryptedFileStore, FileStore, InMemoryStore

EVERY_DAY = "1,2,3,4,5,6,7"
# a Monday
DAY = "2024-01-01"


def _run(coro):
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout=30)
    return asyncio.run(coro)


def at(hhmm: str, day: str = DAY) -> datetime:
    d = scheduling.parse_date(day)
    h, m = scheduling.parse_time(hhmm)
    return datetime(d.year, d.month, d.day, h, m)


def ts(hhmm: str, day: str = DAY) -> int:
    return scheduling.resolve_occurrence(hhmm, day)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, hhmm: str, day: str = DAY):
        self.now = at(hhmm, day)


class RecordingCapability(Capability):
    name = "recording"

    def __init__(self):
        self.badges = []
        self.notifications = []

    def set_badge_count(self, count):
        self.badges.append(count)

    def schedule_medication_notification(self, medication_name, hour, minute, days_of_week):
        self.notifications.append((medication_name, hour, minute, list(days_of_week)))


class BrokenCapability(Capability):
    def set_badge_count(self, count):
        raise RuntimeError("no badge")

    def schedule_medication_notification(self, medication_name, hour, minute, days_of_week):
        raise RuntimeError("no alarms")


class FailingWriteStore(InMemoryStore):
    def write(self, name, text):
        raise StorageWriteFailure("disk full")


class CountingStore(InMemoryStore):
    def __init__(self, blobs=None):
        super().__init__(blobs)
        self.writes = []

    def write(self, name, text):
        self.writes.append(name)
        super().write(name, text)


def _blob(records):
    return json.dumps([r.to_dict() for r in records], indent=4)


class TestCrypto(unittest.TestCase):
    def test_aesgcm_roundtrip(self):
        key = AESGCM.generate_key(bit_length=256)
        pt = os.urandom(1024 * 64)
        ct = aes_encrypt(pt, key)
        self.assertEqual(pt, aes_decrypt(ct, key))

    def test_short_ciphertext_is_rejected(self):
        key = AESGCM.generate_key(bit_length=256)
        for blob in (b"", b"x" * 12):
            with self.assertRaises(InvalidTag):
                aes_decrypt(blob, key)

    def test_key_is_created_once(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / ".enc_key"
            k1 = get_or_create_key(path)
            k2 = get_or_create_key(path)
            self.assertEqual(len(k1), 32)
            self.assertEqual(k1, k2)

    def test_encrypted_store_roundtrip_and_tamper(self):
        key = AESGCM.generate_key(bit_length=256)
        with tempfile.TemporaryDirectory() as td:
            store = EncryptedFileStore(Path(td), key)
            store.write("medications", '[{"name": "Aspirin"}]')
            self.assertEqual(store.read("medications"), '[{"name": "Aspirin"}]')

            path = Path(store.path_for("medications"))
            raw = path.read_bytes()
            self.assertNotIn(b"Aspirin", raw)

            path.write_bytes(raw[:-1] + bytes([raw[-1] ^ 0x01]))
            with self.assertRaises(StorageReadFailure):
                store.read("medications")

    def test_tampered_blob_loads_as_empty_collection(self):
        key = AESGCM.generate_key(bit_length=256)
        with tempfile.TemporaryDirectory() as td:
            async def scenario():
                store = EncryptedFileStore(Path(td), key)
                repo = await MedicationRepository.open(store)
                await repo.insert_medication("Aspirin")
                Path(store.path_for(MEDICATIONS_FILE)).write_bytes(b"short")
                again = await MedicationRepository.open(store)
                return again.medications.snapshot

            self.assertEqual(_run(scenario()), ())


class TestScheduling(unittest.TestCase):
    def test_resolve_occurrence_is_local_wall_clock(self):
        self.assertEqual(scheduling.resolve_occurrence("09:00", DAY),
                         int(datetime(2024, 1, 1, 9, 0).timestamp()))

    def test_bad_times_and_dates_raise(self):
        for t in ("9", "09:00:00", "aa:bb", "24:00", "12:60", "", " 9:00"):
            with self.assertRaises(InvalidTimeSpec, msg=t):
                scheduling.resolve_occurrence(t, DAY)
        for d in ("2024-01", "2024-02-30", "x-y-z", "2024/01/01"):
            with self.assertRaises(InvalidTimeSpec, msg=d):
                scheduling.resolve_occurrence("09:00", d)

    def test_invalid_time_spec_is_a_value_error(self):
        with self.assertRaises(ValueError):
            scheduling.parse_time("noon")

    def test_day_of_week_index_is_iso(self):
        self.assertEqual(scheduling.day_of_week_index("2024-01-01"), 1)
        self.assertEqual(scheduling.day_of_week_index("2024-01-07"), 7)
        self.assertEqual(scheduling.day_of_week_index(at("10:00", "2024-01-03")), 3)

    def test_parse_days_of_week(self):
        self.assertEqual(scheduling.parse_days_of_week(" 1, 3 ,5"), frozenset({1, 3, 5}))
        for bad in ("", "0", "8", "1,,2", "mon"):
            with self.assertRaises(InvalidTimeSpec, msg=bad):
                scheduling.parse_days_of_week(bad)

    def test_is_due_on(self):
        self.assertTrue(scheduling.is_due_on("1,5", "2024-01-05"))
        self.assertFalse(scheduling.is_due_on("1,5", "2024-01-06"))

    def test_reminder_instant_leads_by_five_minutes(self):
        scheduled = ts("09:00")
        self.assertEqual(scheduling.reminder_instant(scheduled, ts("08:00")), ts("08:55"))

    def test_reminder_instant_never_in_the_past(self):
        scheduled = ts("09:00")
        self.assertEqual(scheduling.reminder_instant(scheduled, ts("08:58")), ts("08:58"))

    def test_overdue_boundary_is_inclusive(self):
        scheduled = ts("09:00")
        self.assertFalse(scheduling.is_overdue(scheduled, ts("09:09")))
        self.assertTrue(scheduling.is_overdue(scheduled, ts("09:10")))


class TestModels(unittest.TestCase):
    def test_camel_case_keys(self):
        r = Reminder(id=1, medication_id=2, schedule_id=3, reminder_time=10,
                     scheduled_time="09:00", scheduled_date=DAY)
        self.assertEqual(r.to_dict(), {
            "id": 1, "medicationId": 2, "scheduleId": 3, "reminderTime": 10,
            "scheduledTime": "09:00", "scheduledDate": DAY, "acknowledged": False,
        })
        self.assertEqual(Reminder.from_dict(r.to_dict()), r)

    def test_defaults_fill_missing_optional_keys(self):
        i = Intake.from_dict({"id": 1, "medicationId": 1, "scheduleId": 1, "takenAt": 5,
                              "scheduledTime": "09:00", "scheduledDate": DAY})
        self.assertFalse(i.acknowledged)
        self.assertTrue(i.taken)
        m = Medication.from_dict({"id": 1, "name": "A", "createdAt": 0, "updatedAt": 0})
        self.assertIsNone(m.description)

    def test_missing_or_mistyped_fields_rejected(self):
        with self.assertRaises(ValueError):
            Schedule.from_dict({"id": 1, "medicationId": 1, "time": "09:00"})
        with self.assertRaises(ValueError):
            Medication.from_dict({"id": "1", "name": "A"})
        with self.assertRaises(ValueError):
            Medication.from_dict(["not", "a", "dict"])


class TestStorage(unittest.TestCase):
    def test_file_store_missing_and_roundtrip(self):
        with tempfile.TemporaryDirectory() as td:
            store = FileStore(Path(td))
            self.assertIsNone(store.read("medications"))
            store.write("medications", "[]")
            self.assertEqual(store.read("medications"), "[]")
            self.assertTrue(store.path_for("medications").endswith("medications.json"))

    def test_corrupt_content_loads_empty(self):
        for content in ("not json", '{"id": 1}', '[{"id": 1}]', '[{"id": true, "name": "A"}]', "[" * 100000):
            async def scenario():
                store = InMemoryStore({MEDICATIONS_FILE: content})
                repo = await MedicationRepository.open(store)
                mid = await repo.insert_medication("Aspirin")
                return repo.medications.snapshot, mid

            snapshot, mid = _run(scenario())
            self.assertEqual(mid, 1, content)
            self.assertEqual(len(snapshot), 1, content)

    def test_write_failure_keeps_memory_state(self):
        async def scenario():
            repo = await MedicationRepository.open(FailingWriteStore())
            mid = await repo.insert_medication("Aspirin")
            return mid, repo.get_medication_by_id(mid)

        mid, med = _run(scenario())
        self.assertEqual(mid, 1)
        self.assertEqual(med.name, "Aspirin")

    def test_roundtrip_through_files(self):
        clock = FakeClock(at("08:00"))
        with tempfile.TemporaryDirectory() as td:
            async def scenario():
                store = FileStore(Path(td))
                repo = await MedicationRepository.open(store, clock=clock)
                mid = await repo.insert_medication("Aspirin", "100mg")
                sid = await repo.insert_schedule(mid, "09:00", EVERY_DAY)
                await repo.record_intake(mid, sid, "09:00", DAY, taken=False)
                before = [c.snapshot for c in (repo.medications, repo.schedules, repo.intakes, repo.reminders)]

                again = await MedicationRepository.open(FileStore(Path(td)), clock=clock)
                after = [c.snapshot for c in (again.medications, again.schedules, again.intakes, again.reminders)]
                return before, after

            before, after = _run(scenario())
            self.assertEqual(before, after)
            self.assertTrue(all(len(s) == 1 for s in after))

            text = (Path(td) / "medication_schedules.json").read_text(encoding="utf-8")
            self.assertIn("\n    ", text)
            rows = json.loads(text)
            self.assertEqual(rows[0]["daysOfWeek"], EVERY_DAY)
            self.assertEqual(rows[0]["medicationId"], 1)
            for name in (MEDICATIONS_FILE, INTAKES_FILE, REMINDERS_FILE):
                self.assertTrue((Path(td) / f"{name}.json").exists())


class TestObservable(unittest.TestCase):
    def test_subscribers_get_full_snapshots(self):
        obs = Observable(())
        seen = []
        unsubscribe = obs.subscribe(seen.append)
        obs.publish((1,))
        obs.publish((1, 2))
        unsubscribe()
        obs.publish((1, 2, 3))
        self.assertEqual(seen, [(1,), (1, 2)])

    def test_updates_skips_to_latest(self):
        async def scenario():
            obs = Observable("a")
            it = obs.updates().__aiter__()
            first = await it.__anext__()
            obs.publish("b")
            obs.publish("c")
            second = await it.__anext__()
            await it.aclose()
            return first, second

        self.assertEqual(_run(scenario()), ("a", "c"))

    def test_failing_subscriber_does_not_block_others(self):
        obs = Observable(0)
        seen = []
        obs.subscribe(lambda v: 1 / 0)
        obs.subscribe(seen.append)
        obs.publish(1)
        self.assertEqual(seen, [1])


class TestRepository(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock(at("08:00"))
        self.capability = RecordingCapability()

    def open(self, store=None):
        return MedicationRepository.open(store or InMemoryStore(), capability=self.capability, clock=self.clock)

    def test_ids_start_at_one_and_are_not_reused(self):
        async def scenario():
            repo = await self.open()
            ids = [await repo.insert_medication(n) for n in ("A", "B", "C")]
            await repo.delete_medication(3)
            ids.append(await repo.insert_medication("D"))
            await repo.delete_medication(2)
            ids.append(await repo.insert_medication("E"))
            return ids

        self.assertEqual(_run(scenario()), [1, 2, 3, 4, 5])

    def test_each_collection_has_own_id_space(self):
        async def scenario():
            repo = await self.open()
            mid = await repo.insert_medication("A")
            sid = await repo.insert_schedule(mid, "09:00", EVERY_DAY)
            iid = await repo.record_intake(mid, sid, "09:00", DAY)
            rid = await repo.create_reminder(mid, sid, "21:00", DAY)
            return mid, sid, iid, rid

        # schedule insert already created reminder 1 for today
        self.assertEqual(_run(scenario()), (1, 1, 1, 2))

    def test_ids_continue_after_reload(self):
        store = InMemoryStore({MEDICATIONS_FILE: _blob([Medication(id=7, name="X")])})

        async def scenario():
            repo = await self.open(store)
            return await repo.insert_medication("Y")

        self.assertEqual(_run(scenario()), 8)

    def test_update_medication(self):
        async def scenario():
            repo = await self.open()
            mid = await repo.insert_medication("A", None)
            self.clock.set("08:30")
            await repo.update_medication(mid, "A2", "desc")
            await repo.update_medication(99, "nobody", None)
            return repo.get_medication_by_id(mid)

        med = _run(scenario())
        self.assertEqual((med.name, med.description), ("A2", "desc"))
        self.assertEqual(med.created_at, ts("08:00"))
        self.assertEqual(med.updated_at, ts("08:30"))

    def test_delete_medication_cascades(self):
        async def scenario():
            repo = await self.open()
            a = await repo.insert_medication("A")
            b = await repo.insert_medication("B")
            sa = await repo.insert_schedule(a, "09:00", EVERY_DAY)
            sb = await repo.insert_schedule(b, "10:00", EVERY_DAY)
            await repo.record_intake(a, sa, "09:00", DAY)
            await repo.record_intake(b, sb, "10:00", DAY)
            await repo.delete_medication(a)
            return repo

        repo = _run(scenario())
        self.assertEqual([m.name for m in repo.medications.snapshot], ["B"])
        self.assertTrue(all(s.medication_id != 1 for s in repo.schedules.snapshot))
        self.assertTrue(all(i.medication_id != 1 for i in repo.intakes.snapshot))
        self.assertEqual(len(repo.schedules.snapshot), 1)
        self.assertEqual(len(repo.intakes.snapshot), 1)

    def test_delete_schedule_cascades_to_intakes(self):
        async def scenario():
            repo = await self.open()
            mid = await repo.insert_medication("A")
            s1 = await repo.insert_schedule(mid, "09:00", EVERY_DAY)
            s2 = await repo.insert_schedule(mid, "21:00", EVERY_DAY)
            await repo.record_intake(mid, s1, "09:00", DAY)
            await repo.record_intake(mid, s2, "21:00", DAY)
            await repo.delete_schedule(s1)
            return repo

        repo = _run(scenario())
        self.assertIsNone(repo.get_schedule_by_id(1))
        self.assertEqual([i.schedule_id for i in repo.intakes.snapshot], [2])

    def test_create_reminder_is_idempotent_until_acknowledged(self):
        async def scenario():
            repo = await self.open()
            r1 = await repo.create_reminder(1, 1, "09:00", DAY)
            r2 = await repo.create_reminder(1, 1, "09:00", DAY)
            size = len(repo.reminders.snapshot)
            await repo.acknowledge_reminder(r1)
            r3 = await repo.create_reminder(1, 1, "09:00", DAY)
            return r1, r2, size, r3, len(repo.reminders.snapshot)

        r1, r2, size, r3, final = _run(scenario())
        self.assertEqual(r1, r2)
        self.assertEqual(size, 1)
        self.assertNotEqual(r3, r1)
        self.assertEqual(final, 2)

    def test_concurrent_create_reminder_makes_one(self):
        async def scenario():
            repo = await self.open()
            ids = await asyncio.gather(*(repo.create_reminder(1, 1, "09:00", DAY) for _ in range(10)))
            return set(ids), len(repo.reminders.snapshot)

        ids, size = _run(scenario())
        self.assertEqual(ids, {1})
        self.assertEqual(size, 1)

    def test_concurrent_inserts_lose_nothing(self):
        store = InMemoryStore()

        async def scenario():
            repo = await self.open(store)
            return await asyncio.gather(*(repo.insert_medication(f"M{i}") for i in range(50)))

        ids = _run(scenario())
        self.assertEqual(sorted(ids), list(range(1, 51)))
        self.assertEqual(len(json.loads(store.read(MEDICATIONS_FILE))), 50)

    def test_reminder_time_without_schedule_uses_given_time(self):
        async def scenario():
            repo = await self.open()
            rid = await repo.create_reminder(1, 42, "10:00", DAY)
            return repo.reminders.find(rid)

        self.assertEqual(_run(scenario()).reminder_time, ts("09:55"))

    def test_reminder_time_falls_back_to_now_on_bad_input(self):
        async def scenario():
            repo = await self.open()
            rid = await repo.create_reminder(1, 42, "ten", DAY)
            return repo.reminders.find(rid)

        self.assertEqual(_run(scenario()).reminder_time, ts("08:00"))

    def test_reminder_time_prefers_schedule_time(self):
        async def scenario():
            repo = await self.open()
            mid = await repo.insert_medication("A")
            sid = await repo.insert_schedule(mid, "11:00", "6")  # not today
            rid = await repo.create_reminder(mid, sid, "10:00", DAY)
            return repo.reminders.find(rid)

        self.assertEqual(_run(scenario()).reminder_time, ts("10:55"))

    def test_insert_schedule_creates_todays_reminder(self):
        async def scenario():
            repo = await self.open()
            mid = await repo.insert_medication("Aspirin")
            await repo.insert_schedule(mid, "09:00", EVERY_DAY)
            return repo.reminders.snapshot

        (reminder,) = _run(scenario())
        self.assertEqual(reminder.scheduled_date, DAY)
        self.assertEqual(reminder.scheduled_time, "09:00")
        self.assertEqual(reminder.reminder_time, ts("08:55"))
        self.assertEqual(self.capability.notifications, [("Aspirin", 9, 0, [1, 2, 3, 4, 5, 6, 7])])

    def test_insert_schedule_close_to_dose_reminds_now(self):
        self.clock.set("08:58")

        async def scenario():
            repo = await self.open()
            mid = await repo.insert_medication("Aspirin")
            await repo.insert_schedule(mid, "09:00", EVERY_DAY)
            return repo.reminders.snapshot

        (reminder,) = _run(scenario())
        self.assertEqual(reminder.reminder_time, ts("08:58"))

    def test_insert_schedule_other_day_creates_no_reminder(self):
        async def scenario():
            repo = await self.open()
            mid = await repo.insert_medication("Aspirin")
            await repo.insert_schedule(mid, "09:00", "2,3")
            return repo.reminders.snapshot

        self.assertEqual(_run(scenario()), ())
        self.assertEqual(self.capability.notifications, [("Aspirin", 9, 0, [2, 3])])

    def test_malformed_schedule_is_stored_but_degrades(self):
        async def scenario():
            repo = await self.open()
            mid = await repo.insert_medication("Aspirin")
            s1 = await repo.insert_schedule(mid, "9am", EVERY_DAY)
            s2 = await repo.insert_schedule(mid, "09:00", "weekdays")
            self.clock.set("23:00")
            return repo, s1, s2

        repo, s1, s2 = _run(scenario())
        self.assertIsNotNone(repo.get_schedule_by_id(s1))
        self.assertIsNotNone(repo.get_schedule_by_id(s2))
        (reminder,) = repo.reminders.snapshot
        self.assertEqual(reminder.reminder_time, ts("08:00"))
        self.assertEqual(self.capability.notifications, [])
        self.assertEqual(repo.count_medications_not_taken_for_today(), 0)
        self.assertEqual(repo.get_medications_not_taken_for_today(), [])

    def test_update_schedule_reminds_for_new_time(self):
        async def scenario():
            repo = await self.open()
            mid = await repo.insert_medication("Aspirin")
            sid = await repo.insert_schedule(mid, "09:00", EVERY_DAY)
            await repo.update_schedule(sid, "12:00", "1")
            await repo.update_schedule(99, "12:00", "1")
            return repo

        repo = _run(scenario())
        self.assertEqual(repo.get_schedule_by_id(1).time, "12:00")
        self.assertEqual([r.scheduled_time for r in repo.reminders.snapshot], ["09:00", "12:00"])
        self.assertEqual(repo.reminders.snapshot[1].reminder_time, ts("11:55"))
        self.assertEqual(self.capability.notifications[-1], ("Aspirin", 12, 0, [1]))

    def test_capability_errors_do_not_fail_mutations(self):
        async def scenario():
            repo = await MedicationRepository.open(InMemoryStore(), capability=BrokenCapability(), clock=self.clock)
            mid = await repo.insert_medication("Aspirin")
            sid = await repo.insert_schedule(mid, "09:00", EVERY_DAY)
            return repo, sid

        repo, sid = _run(scenario())
        self.assertEqual(sid, 1)
        self.assertEqual(repo.refresh_badge(), 0)

    def test_not_taken_respects_grace_window(self):
        async def scenario():
            repo = await self.open()
            mid = await repo.insert_medication("Aspirin")
            await repo.insert_schedule(mid, "09:00", EVERY_DAY)
            return repo

        repo = _run(scenario())
        self.clock.set("09:09")
        self.assertEqual(repo.count_medications_not_taken_for_today(), 0)
        self.assertEqual(repo.get_medications_not_taken_for_today(), [])
        self.clock.set("09:10")
        self.assertEqual(repo.count_medications_not_taken_for_today(), 1)
        ((med, sched),) = repo.get_medications_not_taken_for_today()
        self.assertEqual((med.name, sched.time), ("Aspirin", "09:00"))

    def test_any_intake_today_clears_not_taken(self):
        self.clock.set("12:00")

        async def scenario():
            repo = await self.open()
            mid = await repo.insert_medication("Aspirin")
            s1 = await repo.insert_schedule(mid, "09:00", EVERY_DAY)
            await repo.insert_schedule(mid, "10:00", EVERY_DAY)
            counts = [repo.count_medications_not_taken_for_today()]
            await repo.record_intake(mid, s1, "09:00", DAY, taken=False)
            counts.append(repo.count_medications_not_taken_for_today())
            await repo.record_intake(mid, s1, "09:00", "2023-12-31")
            counts.append(repo.count_medications_not_taken_for_today())
            return repo, counts

        repo, counts = _run(scenario())
        self.assertEqual(counts, [2, 1, 1])
        self.assertEqual([s.time for _, s in repo.get_medications_not_taken_for_today()], ["10:00"])

    def test_schedules_not_due_today_are_ignored(self):
        self.clock.set("23:00")

        async def scenario():
            repo = await self.open()
            mid = await repo.insert_medication("Aspirin")
            await repo.insert_schedule(mid, "09:00", "2,3,4")
            return repo

        self.assertEqual(_run(scenario()).count_medications_not_taken_for_today(), 0)

    def test_orphaned_schedule_counted_but_not_listed(self):
        self.clock.set("12:00")
        store = InMemoryStore({
            SCHEDULES_FILE: _blob([Schedule(id=1, medication_id=5, time="09:00", days_of_week=EVERY_DAY)]),
        })

        async def scenario():
            return await self.open(store)

        repo = _run(scenario())
        self.assertEqual(repo.count_medications_not_taken_for_today(), 1)
        self.assertEqual(repo.get_medications_not_taken_for_today(), [])

    def test_count_matches_list(self):
        self.clock.set("20:00")

        async def scenario():
            repo = await self.open()
            a = await repo.insert_medication("A")
            b = await repo.insert_medication("B")
            await repo.insert_schedule(a, "08:00", EVERY_DAY)
            sb = await repo.insert_schedule(b, "19:55", EVERY_DAY)
            await repo.insert_schedule(b, "12:00", "1,3")
            await repo.insert_schedule(a, "13:00", "2")
            await repo.record_intake(b, sb, "19:55", DAY)
            return repo

        repo = _run(scenario())
        self.assertEqual(repo.count_medications_not_taken_for_today(),
                         len(repo.get_medications_not_taken_for_today()))
        self.assertEqual(repo.count_medications_not_taken_for_today(), 2)

    def test_sorting(self):
        async def scenario():
            repo = await self.open()
            a = await repo.insert_medication("Late")
            b = await repo.insert_medication("Unscheduled")
            c = await repo.insert_medication("Early")
            for t in ("14:00", "23:00"):
                await repo.insert_schedule(a, t, EVERY_DAY)
            await repo.insert_schedule(c, "09:30", EVERY_DAY)
            await repo.record_intake(a, 1, "14:00", DAY)
            await repo.record_intake(c, 3, "09:30", DAY)
            return repo

        repo = _run(scenario())
        self.assertEqual([s.time for s in repo.all_schedules().value], ["09:30", "14:00", "23:00"])
        self.assertEqual([m.name for m in repo.all_medications().value], ["Early", "Late", "Unscheduled"])
        self.assertEqual([i.scheduled_time for i in repo.all_intakes().value], ["09:30", "14:00"])
        self.assertEqual([s.time for s in repo.get_schedules_for_medication(1)], ["14:00", "23:00"])
        self.assertEqual([r.scheduled_time for r in repo.all_reminders().value], ["09:30", "14:00", "23:00"])

    def test_views_push_new_snapshots(self):
        async def scenario():
            repo = await self.open()
            seen = []
            repo.all_medications().subscribe(lambda meds: seen.append([m.name for m in meds]))
            a = await repo.insert_medication("A")
            await repo.insert_medication("B")
            await repo.insert_schedule(2, "07:00", EVERY_DAY)
            await repo.delete_medication(a)
            return seen

        seen = _run(scenario())
        self.assertEqual(seen[0], ["A"])
        self.assertIn(["B", "A"], seen)
        self.assertEqual(seen[-1], ["B"])

    def test_reminders_expire_from_views_after_a_day(self):
        async def scenario():
            repo = await self.open()
            await repo.create_reminder(1, 1, "09:00", DAY)
            return repo

        repo = _run(scenario())
        self.assertEqual(len(repo.all_reminders().value), 1)
        self.clock.now = at("08:55") + timedelta(hours=24)
        self.assertEqual(repo.all_reminders().value, [])
        self.assertEqual(repo.get_active_reminders(), [])
        self.assertEqual(len(repo.reminders.snapshot), 1)
        self.assertEqual(len(repo.get_reminders_for_date_range(DAY, DAY)), 1)

    def test_active_reminders(self):
        async def scenario():
            repo = await self.open()
            r1 = await repo.create_reminder(1, 1, "09:00", DAY)
            r2 = await repo.create_reminder(1, 2, "08:30", DAY)
            await repo.create_reminder(1, 3, "18:00", DAY)
            self.clock.set("09:00")
            active = [r.id for r in repo.get_active_reminders()]
            await repo.acknowledge_reminder(r2)
            return repo, active, r1, r2

        repo, active, r1, r2 = _run(scenario())
        self.assertEqual(active, [r2, r1])
        self.assertEqual([r.id for r in repo.get_active_reminders()], [r1])
        self.assertEqual([r.id for r in repo.get_all_reminders_for_current_time()], [r2, r1])

    def test_delete_reminder_and_intake(self):
        async def scenario():
            repo = await self.open()
            rid = await repo.create_reminder(1, 1, "09:00", DAY)
            iid = await repo.record_intake(1, 1, "09:00", DAY)
            await repo.acknowledge_intake(iid)
            acknowledged = repo.intakes.find(iid).acknowledged
            await repo.delete_reminder(rid)
            await repo.delete_intake(iid)
            return repo, acknowledged

        repo, acknowledged = _run(scenario())
        self.assertTrue(acknowledged)
        self.assertEqual(repo.reminders.snapshot, ())
        self.assertEqual(repo.intakes.snapshot, ())

    def test_record_intake_always_appends(self):
        async def scenario():
            repo = await self.open()
            a = await repo.record_intake(1, 1, "09:00", DAY)
            b = await repo.record_intake(1, 1, "09:00", DAY)
            return repo, a, b

        repo, a, b = _run(scenario())
        self.assertNotEqual(a, b)
        self.assertEqual(len(repo.get_intakes_for_schedule_and_date(1, DAY)), 2)
        self.assertEqual(repo.intakes.find(a).taken_at, ts("08:00"))

    def test_date_range_queries(self):
        async def scenario():
            repo = await self.open()
            await repo.record_intake(1, 1, "21:00", "2024-01-01")
            await repo.record_intake(1, 1, "08:00", "2024-01-02")
            await repo.record_intake(1, 1, "08:00", "2024-01-05")
            await repo.create_reminder(1, 1, "21:00", "2024-01-01")
            await repo.create_reminder(1, 1, "07:00", "2024-01-03")
            return repo

        repo = _run(scenario())
        self.assertEqual([i.scheduled_date for i in repo.get_intakes_for_date_range("2024-01-01", "2024-01-02")],
                         ["2024-01-02", "2024-01-01"])
        self.assertEqual([r.scheduled_date for r in repo.get_reminders_for_date_range("2024-01-02", "2024-01-03")],
                         ["2024-01-03"])

    def test_schedules_for_date(self):
        async def scenario():
            repo = await self.open()
            await repo.insert_schedule(1, "20:00", "3")
            await repo.insert_schedule(1, "07:00", "3,4")
            await repo.insert_schedule(1, "09:00", "1")
            await repo.insert_schedule(1, "10:00", "bogus")
            return repo

        repo = _run(scenario())
        self.assertEqual([s.time for s in repo.get_schedules_for_date("2024-01-03")], ["07:00", "20:00"])

    def test_create_reminders_for_today_and_badge(self):
        self.clock.set("12:00")
        store = InMemoryStore({
            MEDICATIONS_FILE: _blob([Medication(id=1, name="A")]),
            SCHEDULES_FILE: _blob([
                Schedule(id=1, medication_id=1, time="09:00", days_of_week=EVERY_DAY),
                Schedule(id=2, medication_id=1, time="18:00", days_of_week="2"),
            ]),
        })

        async def scenario():
            repo = await self.open(store)
            first = await repo.create_reminders_for_today()
            second = await repo.create_reminders_for_today()
            return repo, first, second

        repo, first, second = _run(scenario())
        self.assertEqual(first, [1])
        self.assertEqual(second, [])
        self.assertEqual(repo.refresh_badge(), 1)
        self.assertEqual(self.capability.badges, [1])

    def test_daily_pass_leaves_handled_occurrences_alone(self):
        self.clock.set("12:00")
        store = InMemoryStore({
            MEDICATIONS_FILE: _blob([Medication(id=1, name="A")]),
            SCHEDULES_FILE: _blob([
                Schedule(id=1, medication_id=1, time="09:00", days_of_week=EVERY_DAY),
                Schedule(id=2, medication_id=1, time="11:00", days_of_week=EVERY_DAY),
            ]),
            INTAKES_FILE: _blob([Intake(id=1, medication_id=1, schedule_id=2, taken_at=ts("11:02"),
                                        scheduled_time="11:00", scheduled_date=DAY)]),
        })

        async def scenario():
            repo = await self.open(store)
            first = await repo.create_reminders_for_today()
            await repo.acknowledge_reminder(first[0])
            second = await repo.create_reminders_for_today()
            return repo, first, second

        repo, first, second = _run(scenario())
        self.assertEqual(first, [1])
        self.assertEqual(second, [])
        self.assertEqual(len(repo.reminders.snapshot), 1)
        self.assertEqual(repo.get_active_reminders(), [])

    def test_direct_create_still_reissues_after_acknowledgement(self):
        async def scenario():
            repo = await self.open()
            r1 = await repo.create_reminder(1, 1, "09:00", DAY)
            await repo.acknowledge_reminder(r1)
            r2 = await repo.create_reminder(1, 1, "09:00", DAY)
            return r1, r2

        r1, r2 = _run(scenario())
        self.assertNotEqual(r1, r2)

    def test_unchanged_collections_are_not_rewritten(self):
        self.clock.set("12:00")
        store = CountingStore({
            MEDICATIONS_FILE: _blob([Medication(id=1, name="A")]),
            SCHEDULES_FILE: _blob([Schedule(id=n, medication_id=1, time=t, days_of_week=EVERY_DAY)
                                   for n, t in ((1, "07:00"), (2, "09:00"), (3, "11:00"))]),
        })

        async def scenario():
            repo = await self.open(store)
            seen = []
            await repo.create_reminders_for_today()
            after_first = list(store.writes)
            store.writes.clear()
            repo.reminders.subscribe(seen.append)
            await repo.create_reminders_for_today()
            await repo.create_reminder(1, 1, "07:00", DAY)
            await repo.acknowledge_reminder(99)
            await repo.delete_intake(99)
            return after_first, list(store.writes), seen

        after_first, idle, seen = _run(scenario())
        self.assertEqual(after_first, [REMINDERS_FILE] * 3)
        self.assertEqual(idle, [])
        self.assertEqual(seen, [])

    def test_malformed_dates_give_empty_results(self):
        async def scenario():
            repo = await self.open()
            await repo.insert_schedule(1, "09:00", EVERY_DAY)
            created = await repo.reconciler.create_reminders_for_date("2024-13-45")
            return repo, created

        repo, created = _run(scenario())
        self.assertEqual(created, [])
        self.assertEqual(repo.get_schedules_for_date("not-a-date"), [])
        self.assertEqual(repo.get_schedules_for_date("2024-02-30"), [])


class TestService(unittest.TestCase):
    def test_check_creates_reminders_and_badge(self):
        clock = FakeClock(at("12:00"))
        cap = RecordingCapability()
        store = InMemoryStore({
            MEDICATIONS_FILE: _blob([Medication(id=1, name="A")]),
            SCHEDULES_FILE: _blob([Schedule(id=1, medication_id=1, time="09:00", days_of_week=EVERY_DAY)]),
        })

        async def scenario():
            repo = await MedicationRepository.open(store, capability=cap, clock=clock)
            service = ReminderService(repo, interval=3600)
            count = await service.check()
            await service.check()
            return repo, count

        repo, count = _run(scenario())
        self.assertEqual(count, 1)
        self.assertEqual(len(repo.reminders.snapshot), 1)
        self.assertEqual(cap.badges, [1, 1])

    def test_acknowledged_reminder_stays_quiet_on_next_tick(self):
        clock = FakeClock(at("08:00"))

        async def scenario():
            repo = await MedicationRepository.open(InMemoryStore(), capability=RecordingCapability(), clock=clock)
            mid = await repo.insert_medication("A")
            await repo.insert_schedule(mid, "09:00", EVERY_DAY)
            service = ReminderService(repo, interval=3600)
            clock.set("09:30")
            await service.check()
            for r in repo.get_active_reminders():
                await repo.acknowledge_reminder(r.id)
            clock.set("09:31")
            await service.check()
            return repo

        repo = _run(scenario())
        self.assertEqual(repo.get_active_reminders(), [])
        self.assertEqual(len(repo.reminders.snapshot), 1)

    def test_started_service_follows_intakes(self):
        clock = FakeClock(at("12:00"))
        cap = RecordingCapability()

        async def scenario():
            repo = await MedicationRepository.open(InMemoryStore(), capability=cap, clock=clock)
            mid = await repo.insert_medication("A")
            sid = await repo.insert_schedule(mid, "09:00", EVERY_DAY)
            service = ReminderService(repo, interval=3600)
            service.start()
            await asyncio.sleep(0)
            await repo.record_intake(mid, sid, "09:00", DAY)
            # the subscriber runs as part of the publish
            last = cap.badges[-1]
            await service.stop()
            seen = len(cap.badges)
            await repo.delete_intake(1)
            return service, last, seen

        service, last, seen = _run(scenario())
        self.assertFalse(service.running)
        self.assertEqual(last, 0)
        self.assertEqual(len(cap.badges), seen)

    def test_main_once(self):
        with tempfile.TemporaryDirectory() as td:
            with mock.patch("builtins.print") as printed:
                rc = service_main(["--once", "--base-dir", td])
            configure_logging(None)
            self.assertEqual(rc, 0)
            printed.assert_called_once_with(0)
            self.assertTrue((Path(td) / "app.log").exists())

    def test_main_once_encrypted(self):
        with tempfile.TemporaryDirectory() as td:
            with mock.patch("builtins.print"):
                rc = service_main(["--once", "--encrypt", "--base-dir", td])
            configure_logging(None)
            self.assertEqual(rc, 0)
            self.assertTrue((Path(td) / ".enc_key").exists())


class TestConfigAndPlatform(unittest.TestCase):
    def test_settings_from_env(self):
        with tempfile.TemporaryDirectory() as td:
            env = {"MEDMINDER_HOME": td, "MEDMINDER_ENCRYPT": "yes", "MEDMINDER_CHECK_INTERVAL": "oops"}
            with mock.patch.dict(os.environ, env):
                s = Settings.from_env()
            self.assertEqual(s.base_dir, Path(td))
            self.assertTrue(s.encrypt)
            self.assertEqual(s.check_interval, 60.0)
            self.assertEqual(s.key_path, Path(td) / ".enc_key")
            self.assertEqual(s.log_path, Path(td) / "app.log")

    def test_detect_capability_off_android(self):
        with mock.patch.dict(os.environ, {}, clear=False):
            os.environ.pop("ANDROID_PRIVATE", None)
            self.assertIsInstance(detect_capability(), NullCapability)

    def test_next_weekday_at(self):
        now = at("10:00")  # Monday
        self.assertEqual(next_weekday_at(now, 1, 9, 0), at("09:00", "2024-01-08"))
        self.assertEqual(next_weekday_at(now, 1, 11, 0), at("11:00"))
        self.assertEqual(next_weekday_at(now, 3, 9, 0), at("09:00", "2024-01-03"))

    def test_stable_request_code(self):
        a = stable_request_code("Aspirin", 9, 0, 1)
        self.assertEqual(a, stable_request_code("Aspirin", 9, 0, 1))
        self.assertNotEqual(a, stable_request_code("Aspirin", 9, 0, 2))
        self.assertLessEqual(a, 0x7FFFFFFF)

    def test_ring_log(self):
        configure_logging(None)
        logger.info("hello ring")
        self.assertIn("hello ring", ring_text())
        clear_log()
        self.assertNotIn("hello ring", ring_text())

    def test_ring_keeps_only_the_newest_lines(self):
        ring = _RingLog(max_lines=3)
        for n in range(5):
            ring.add(f"line {n}\n")
        ring.add("")
        self.assertEqual(ring.text(), "line 2\nline 3\nline 4")


if __name__ == "__main__":
    unittest.main(verbosity=2)
