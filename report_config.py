"""report_config.py

Настройки сервиса ежедневного отчёта (.env / окружение).

Секреты (токен бота, chat id, учётные данные админа) берутся только из
окружения, значений по умолчанию для них нет.
"""

from __future__ import annotations

import dataclasses
import os
import re
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv
from zoneinfo import ZoneInfo

BASE_DIR = Path(__file__).resolve().parent

AUTH_MODES: Tuple[str, ...] = ("token", "login")
SCHEDULE_MODES: Tuple[str, ...] = ("daily", "interval")


class ReportError(RuntimeError):
    """Base class for report service errors."""


class ConfigError(ReportError):
    pass


@dataclasses.dataclass
class Config:
    BOT_TOKEN: str
    REPORT_CHAT_IDS: Tuple[int, ...]
    API_BASE_URL: str = "http://api.ahlan.uz"
    AUTH_MODE: str = "token"
    ADMIN_TOKEN: str = ""
    ADMIN_USERNAME: str = ""
    ADMIN_PASSWORD: str = ""
    SCHEDULE_MODE: str = "daily"
    REPORT_TIME: str = "12:00"
    REPORT_INTERVAL_MINUTES: int = 3
    RUN_ON_START: bool = True
    TZ: str = "Asia/Tashkent"
    REQUEST_TIMEOUT: float = 30.0
    PAGE_SIZE: int = 100
    CLIENT_USER_TYPE: str = "mijoz"
    DEBT_CURRENCY: str = "so'm"
    EXPENSE_CURRENCY: str = "$"
    ADMIN_API_KEY: str = ""
    HOST: str = "127.0.0.1"
    PORT: int = 8000

    def tzinfo(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.TZ)
        except Exception:
            return ZoneInfo("Asia/Tashkent")


def parse_chat_ids(raw: str) -> Tuple[int, ...]:
    ids = []
    for part in re.split(r"[,\s;]+", raw or ""):
        if not part:
            continue
        try:
            chat_id = int(part)
        except ValueError:
            raise ConfigError(f"Invalid chat id in REPORT_CHAT_IDS: {part!r}")
        if chat_id not in ids:
            ids.append(chat_id)
    return tuple(ids)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name, "").strip()
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def resolve_auth_mode(requested: str, token: str, username: str, password: str) -> str:
    mode = (requested or "").strip().lower()
    if mode:
        if mode not in AUTH_MODES:
            raise ConfigError(f"AUTH_MODE must be one of {', '.join(AUTH_MODES)}")
    elif token:
        mode = "token"
    elif username or password:
        mode = "login"
    else:
        raise ConfigError("ADMIN_TOKEN or ADMIN_USERNAME/ADMIN_PASSWORD is required")

    if mode == "token" and not token:
        raise ConfigError("ADMIN_TOKEN is required when AUTH_MODE=token")
    if mode == "login" and not (username and password):
        raise ConfigError("ADMIN_USERNAME and ADMIN_PASSWORD are required when AUTH_MODE=login")
    return mode


def load_config(env_file: Optional[Path] = None) -> Config:
    load_dotenv(env_file or BASE_DIR / ".env")

    bot_token = os.getenv("BOT_TOKEN", "").strip()
    if not bot_token:
        raise ConfigError("BOT_TOKEN is required in .env / environment")

    chat_ids = parse_chat_ids(os.getenv("REPORT_CHAT_IDS", ""))
    if not chat_ids:
        raise ConfigError("REPORT_CHAT_IDS is required in .env / environment")

    token = os.getenv("ADMIN_TOKEN", "").strip()
    username = os.getenv("ADMIN_USERNAME", "").strip()
    password = os.getenv("ADMIN_PASSWORD", "").strip()
    auth_mode = resolve_auth_mode(os.getenv("AUTH_MODE", ""), token, username, password)

    schedule_mode = os.getenv("SCHEDULE_MODE", "daily").strip().lower() or "daily"
    if schedule_mode not in SCHEDULE_MODES:
        raise ConfigError(f"SCHEDULE_MODE must be one of {', '.join(SCHEDULE_MODES)}")

    return Config(
        BOT_TOKEN=bot_token,
        REPORT_CHAT_IDS=chat_ids,
        API_BASE_URL=(os.getenv("API_BASE_URL", "").strip() or "http://api.ahlan.uz").rstrip("/"),
        AUTH_MODE=auth_mode,
        ADMIN_TOKEN=token,
        ADMIN_USERNAME=username,
        ADMIN_PASSWORD=password,
        SCHEDULE_MODE=schedule_mode,
        REPORT_TIME=os.getenv("REPORT_TIME", "12:00").strip() or "12:00",
        REPORT_INTERVAL_MINUTES=_env_int("REPORT_INTERVAL_MINUTES", 3),
        RUN_ON_START=_env_bool("RUN_ON_START", True),
        TZ=os.getenv("TIMEZONE", "Asia/Tashkent").strip() or "Asia/Tashkent",
        REQUEST_TIMEOUT=_env_float("REQUEST_TIMEOUT", 30.0),
        PAGE_SIZE=_env_int("PAGE_SIZE", 100),
        CLIENT_USER_TYPE=os.getenv("CLIENT_USER_TYPE", "mijoz").strip() or "mijoz",
        DEBT_CURRENCY=os.getenv("DEBT_CURRENCY", "so'm").strip() or "so'm",
        EXPENSE_CURRENCY=os.getenv("EXPENSE_CURRENCY", "$").strip() or "$",
        ADMIN_API_KEY=os.getenv("ADMIN_API_KEY", "").strip(),
        HOST=os.getenv("HOST", "127.0.0.1").strip() or "127.0.0.1",
        PORT=_env_int("PORT", 8000),
    )
