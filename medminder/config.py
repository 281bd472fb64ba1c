import os, uuid
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional

# -------------------------
# Paths / env
# -------------------------
DATA_DIR_NAME = "medminder_data"
LOG_FILE_NAME = "app.log"
KEY_FILE_NAME = ".enc_key"
DEFAULT_CHECK_INTERVAL = 60.0
DEFAULT_ALARM_RECEIVER = "org.example.medminder.AlarmReceiver"

_TRUTHY = ("1", "true", "yes", "on")


def _env_flag(name: str, default: bool) -> bool:
    v = os.environ.get(name)
    if v is None:
        return default
    return v.strip().lower() in _TRUTHY


def _is_writable_dir(p: Path) -> bool:
    try:
        p.mkdir(parents=True, exist_ok=True)
        t = p / f".writetest.{uuid.uuid4().hex}"
        t.write_text("ok", encoding="utf-8")
        t.unlink(missing_ok=True)
        return True
    except OSError:
        return False


def app_base_dir() -> Path:
    p = os.environ.get("MEDMINDER_HOME")
    if p:
        d = Path(p).expanduser()
        if _is_writable_dir(d):
            return d

    p = os.environ.get("ANDROID_PRIVATE")
    if p:
        d = Path(p) / DATA_DIR_NAME
        if _is_writable_dir(d):
            return d

    d = Path.home() / ".medminder"
    d.mkdir(parents=True, exist_ok=True)
    return d


@dataclass
class Settings:
    base_dir: Path
    encrypt: bool = False
    check_interval: float = DEFAULT_CHECK_INTERVAL
    log_to_file: bool = True
    alarm_receiver: str = DEFAULT_ALARM_RECEIVER
    key_path: Optional[Path] = field(default=None)

    def __post_init__(self):
        self.base_dir = Path(self.base_dir)
        if self.key_path is None:
            self.key_path = self.base_dir / KEY_FILE_NAME

    @property
    def log_path(self) -> Path:
        return self.base_dir / LOG_FILE_NAME

    @classmethod
    def from_env(cls, base_dir: Optional[Path] = None) -> "Settings":
        try:
            interval = float(os.environ.get("MEDMINDER_CHECK_INTERVAL", DEFAULT_CHECK_INTERVAL))
        except ValueError:
            interval = DEFAULT_CHECK_INTERVAL
        return cls(
            base_dir=Path(base_dir) if base_dir else app_base_dir(),
            encrypt=_env_flag("MEDMINDER_ENCRYPT", False),
            check_interval=max(1.0, interval),
            log_to_file=_env_flag("MEDMINDER_LOG_FILE", True),
            alarm_receiver=os.environ.get("MEDMINDER_ALARM_RECEIVER", DEFAULT_ALARM_RECEIVER),
        )
