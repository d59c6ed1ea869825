"""
Configuration - environment variables with .env support
"""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when the environment holds an unusable configuration."""


def _number(env: dict, name: str, default: str, cast=float):
    raw = env.get(name, default)
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


def _id_list(env: dict, name: str) -> list[int]:
    raw = env.get(name, "")
    ids = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if not part.isdigit():
            raise ConfigError(f"{name} entries must be channel ids, got {part!r}")
        ids.append(int(part))
    return ids


class Config:
    """Bot settings read once from the environment."""

    def __init__(self, env: dict | None = None):
        if env is None:
            load_dotenv()
            env = dict(os.environ)

        self.DISCORD_TOKEN: str = env.get("DISCORD_BOT_TOKEN", "")
        self.COMMAND_PREFIX: str = env.get("COMMAND_PREFIX", "!")
        self.PRESENCE_INTERVAL: float = _number(env, "PRESENCE_INTERVAL", "5")
        self.PRESENCE_MISS_LIMIT: int = _number(env, "PRESENCE_MISS_LIMIT", "3", cast=int)
        self.PLAYLIST_LIMIT: int = _number(env, "PLAYLIST_LIMIT", "100", cast=int)
        self.AUTO_JOIN_CHANNELS: list[int] = _id_list(env, "AUTO_JOIN_CHANNELS")
        self.YTDL_COOKIES_PATH: str | None = env.get("YTDL_COOKIES_PATH") or None
        self.LOG_LEVEL: str = env.get("LOG_LEVEL", "INFO").upper()
        log_file = env.get("LOG_FILE")
        self.LOG_FILE: Path | None = Path(log_file) if log_file else None

    def validate(self) -> None:
        if not self.DISCORD_TOKEN:
            raise ConfigError("DISCORD_BOT_TOKEN is not set")
        if self.YTDL_COOKIES_PATH and not Path(self.YTDL_COOKIES_PATH).exists():
            logger.warning(f"Cookie file not found: {self.YTDL_COOKIES_PATH}")


config = Config()
