import os, hashlib
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .config import DEFAULT_ALARM_RECEIVER, Settings
from .logs import logger

try:
    from jnius import autoclass, cast
except Exception:
    autoclass = None
    cast = None

CHANNEL_ID = "medminder_reminders"
BADGE_NOTIFICATION_ID = 2407
WEEK_MS = 7 * 24 * 60 * 60 * 1000


def android_ready() -> bool:
    return autoclass is not None and bool(os.environ.get("ANDROID_PRIVATE"))


def stable_request_code(medication_name: str, hour: int, minute: int, day: int) -> int:
    # Stable per medication + weekday + time so re-registering replaces the alarm
    key = f"{medication_name}|{day}|{hour:02d}:{minute:02d}"
    h = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(h[:4], "big") & 0x7FFFFFFF


def next_weekday_at(now: datetime, day: int, hour: int, minute: int) -> datetime:
    """Next instant at or after ``now`` falling on ISO weekday ``day`` at hour:minute."""
    at = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    at += timedelta(days=(day - now.isoweekday()) % 7)
    if at < now:
        at += timedelta(days=7)
    return at


class Capability:
    """Outward hooks the core calls; the core never cares which variant it has."""

    name = "abstract"

    def set_badge_count(self, count: int):
        raise NotImplementedError

    def schedule_medication_notification(self, medication_name: str, hour: int, minute: int,
                                         days_of_week: List[int]):
        raise NotImplementedError


class NullCapability(Capability):
    name = "desktop"

    def set_badge_count(self, count: int):
        logger.debug(f"badge count {count} (no-op)")

    def schedule_medication_notification(self, medication_name: str, hour: int, minute: int,
                                         days_of_week: List[int]):
        logger.debug(f"[Simulated alarm] {medication_name} @ {hour:02d}:{minute:02d} days={days_of_week}")


class NotificationCapability(Capability):
    """Android notifications and AlarmManager alarms through pyjnius."""

    name = "android"

    def __init__(self, alarm_receiver: str = DEFAULT_ALARM_RECEIVER,
                 clock: Optional[Callable[[], datetime]] = None):
        if autoclass is None:
            raise RuntimeError("pyjnius is not available")
        self.alarm_receiver = alarm_receiver
        self.clock = clock or datetime.now

    def _context(self):
        PythonActivity = autoclass("org.kivy.android.PythonActivity")
        activity = PythonActivity.mActivity
        if activity is not None:
            return activity.getApplicationContext()
        PythonService = autoclass("org.kivy.android.PythonService")
        return PythonService.mService.getApplicationContext()

    def _builder(self, ctx):
        Context = autoclass("android.content.Context")
        NotificationManager = autoclass("android.app.NotificationManager")
        NotificationChannel = autoclass("android.app.NotificationChannel")
        Notification = autoclass("android.app.Notification")
        Build = autoclass("android.os.Build")

        nm = ctx.getSystemService(Context.NOTIFICATION_SERVICE)
        if int(Build.VERSION.SDK_INT) >= 26:
            ch = NotificationChannel(CHANNEL_ID, "MedMinder Reminders", NotificationManager.IMPORTANCE_HIGH)
            ch.setDescription("Medication reminders")
            ch.setShowBadge(True)
            nm.createNotificationChannel(ch)
            builder = Notification.Builder(ctx, CHANNEL_ID)
        else:
            builder = Notification.Builder(ctx)
        builder.setSmallIcon(ctx.getApplicationInfo().icon)
        return nm, builder

    def set_badge_count(self, count: int):
        ctx = self._context()
        nm, builder = self._builder(ctx)
        if count <= 0:
            nm.cancel(BADGE_NOTIFICATION_ID)
            return
        builder.setContentTitle("MedMinder")
        builder.setContentText(f"{count} medication(s) not taken today")
        builder.setNumber(int(count))
        builder.setAutoCancel(True)
        nm.notify(BADGE_NOTIFICATION_ID, builder.build())

    def schedule_medication_notification(self, medication_name: str, hour: int, minute: int,
                                         days_of_week: List[int]):
        ctx = self._context()
        Intent = autoclass("android.content.Intent")
        PendingIntent = autoclass("android.app.PendingIntent")
        AlarmManager = autoclass("android.app.AlarmManager")
        Context = autoclass("android.content.Context")
        Build = autoclass("android.os.Build")

        am = cast(AlarmManager, ctx.getSystemService(Context.ALARM_SERVICE))
        flags = PendingIntent.FLAG_UPDATE_CURRENT
        if int(Build.VERSION.SDK_INT) >= 23:
            flags |= PendingIntent.FLAG_IMMUTABLE

        now = self.clock()
        for day in days_of_week:
            at = next_weekday_at(now, day, hour, minute)
            intent = Intent()
            intent.setClassName(ctx, self.alarm_receiver)
            intent.putExtra("title", "Medication Reminder")
            intent.putExtra("body", f"Time to take {medication_name}")
            rc = stable_request_code(medication_name, hour, minute, day)
            pi = PendingIntent.getBroadcast(ctx, rc, intent, int(flags))
            am.setRepeating(AlarmManager.RTC_WAKEUP, int(at.timestamp() * 1000), WEEK_MS, pi)
            logger.info(f"alarm weekly rc={rc} {medication_name} @ {at:%a %H:%M}")


def detect_capability(settings: Optional[Settings] = None) -> Capability:
    if android_ready():
        try:
            receiver = settings.alarm_receiver if settings else DEFAULT_ALARM_RECEIVER
            return NotificationCapability(alarm_receiver=receiver)
        except Exception:
            logger.exception("android capability unavailable; using no-op")
    return NullCapability()
