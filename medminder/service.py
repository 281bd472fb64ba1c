# service.py
import argparse, asyncio, sys
from typing import List, Optional

from .capability import detect_capability
from .config import Settings
from .logs import configure_logging, logger
from .repository import MedicationRepository
from .storage import open_store


class ReminderService:
    """
    Periodic driver for the parts of the core nothing else triggers:
    creating each day's reminders and keeping the badge count current.
    """

    def __init__(self, repository: MedicationRepository, interval: float = 60.0):
        self.repository = repository
        self.interval = float(interval)
        self.running = False
        self._task: Optional[asyncio.Task] = None
        self._unsubscribe = None

    def start(self) -> asyncio.Task:
        if self._task is not None and not self._task.done():
            return self._task
        self.running = True
        # intake changes move the not-taken count
        self._unsubscribe = self.repository.intakes.subscribe(lambda _: self.repository.refresh_badge())
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("reminder service started")
        return self._task

    async def stop(self):
        self.running = False
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("reminder service stopped")

    async def _loop(self):
        while self.running:
            try:
                await self.check()
            except Exception:
                logger.exception("reminder service check failed")
            await asyncio.sleep(self.interval)

    async def check(self) -> int:
        created = await self.repository.create_reminders_for_today()
        count = self.repository.refresh_badge()
        for med, sched in self.repository.get_medications_not_taken_for_today():
            logger.info(f"[not taken] {med.name} @ {sched.time}")
        if created:
            logger.info(f"new reminders for today: {len(created)}")
        return count


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="medminder", description="Medication reminder service")
    p.add_argument("--base-dir", default=None, help="data directory (default: $MEDMINDER_HOME or ~/.medminder)")
    p.add_argument("--interval", type=float, default=None, help="seconds between checks")
    p.add_argument("--encrypt", action="store_true", help="keep collections AES-GCM encrypted at rest")
    p.add_argument("--once", action="store_true", help="run a single check and exit")
    return p.parse_args(argv)


async def run(settings: Settings, once: bool = False) -> int:
    store = open_store(settings)
    repo = await MedicationRepository.open(store, capability=detect_capability(settings))
    service = ReminderService(repo, interval=settings.check_interval)
    if once:
        return await service.check()
    task = service.start()
    try:
        await task
    finally:
        await service.stop()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = Settings.from_env(base_dir=args.base_dir)
    if args.interval is not None:
        settings.check_interval = max(1.0, args.interval)
    if args.encrypt:
        settings.encrypt = True
    configure_logging(settings.log_path if settings.log_to_file else None)

    try:
        count = asyncio.run(run(settings, once=args.once))
    except KeyboardInterrupt:
        return 0
    if args.once:
        print(count)
    return 0


if __name__ == "__main__":
    sys.exit(main())
