# config.py
import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()  # loads .env

DEFAULT_SLOT_MINUTES = 15
HOURLY_SLOT_MINUTES = 60


def require_env(name: str) -> str:
    val = os.environ.get(name)
    if not val:
        raise RuntimeError(
            f"Missing required environment variable '{name}'. "
            f"Set it in your .env or shell. See .env.sample for a template."
        )
    return val


def _env_bool(name: str, default: bool) -> bool:
    val = os.environ.get(name)
    if val is None or val == "":
        return default
    return val.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    val = os.environ.get(name)
    if not val:
        return default
    try:
        return int(val)
    except ValueError:
        raise RuntimeError(f"Environment variable '{name}' must be an integer, got {val!r}")


@dataclass
class Settings:
    slot_minutes: int = field(default_factory=lambda: _env_int("SLOTPOLL_SLOT_MINUTES", DEFAULT_SLOT_MINUTES))
    strict_slots: bool = field(default_factory=lambda: _env_bool("SLOTPOLL_STRICT_SLOTS", True))
    subscriber_queue: int = field(default_factory=lambda: _env_int("SLOTPOLL_SUBSCRIBER_QUEUE", 256))
    rederive_attempts: int = field(default_factory=lambda: _env_int("SLOTPOLL_REDERIVE_ATTEMPTS", 3))
    log_level: str = field(default_factory=lambda: os.environ.get("SLOTPOLL_LOG_LEVEL", "INFO"))

    def __post_init__(self):
        if self.slot_minutes <= 0 or 1440 % self.slot_minutes:
            raise RuntimeError(f"Slot granularity must divide a day evenly, got {self.slot_minutes} minutes")
        if self.rederive_attempts < 1:
            self.rederive_attempts = 1


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
