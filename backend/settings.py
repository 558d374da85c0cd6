"""Настройки сервиса из переменных окружения (+ необязательный .env).

Один неизменяемый объект Settings на весь процесс. Все ключи имеют
префикс TASKFLOW_, для секрета и порта поддерживаются и старые имена
JWT_SECRET / SERVER_PORT.
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

ENV_PREFIX = "TASKFLOW"

logger = logging.getLogger(__name__)

load_dotenv(override=False)


def _k(suffix: str) -> str:
    return f"{ENV_PREFIX}_{suffix}"


def _first_env(*names: str, default: Optional[str] = None) -> Optional[str]:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v
    return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(*names: str, default: int) -> int:
    raw = _first_env(*names)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Некорректное целое в %s=%r, беру %s", names[0], raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Некорректное число в %s=%r, беру %s", name, raw, default)
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    return [p.strip() for p in raw.replace(",", " ").split() if p.strip()]


@dataclass(frozen=True, slots=True)
class Settings:
    jwt_secret: str
    db_path: Path = Path(__file__).parent / "todo.db"
    app_name: str = "TaskFlow API"
    token_ttl_seconds: int = 3600
    verify_timeout_seconds: float = 5.0
    query_timeout_seconds: float = 10.0
    log_level: str = "INFO"
    log_console: bool = True
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    host: str = "0.0.0.0"
    port: int = 8080


def load_settings() -> Settings:
    """Собрать Settings из окружения. Без секрета генерируется случайный."""
    secret = _first_env(_k("JWT_SECRET"), "JWT_SECRET")
    if secret is None:
        secret = secrets.token_hex(32)
        logger.warning("JWT секрет не задан: сгенерирован временный, токены не переживут рестарт")

    db_raw = _first_env(_k("DB_PATH"))
    return Settings(
        jwt_secret=secret,
        db_path=Path(db_raw).expanduser() if db_raw else Path(__file__).parent / "todo.db",
        app_name=_first_env(_k("APP_NAME"), default="TaskFlow API"),
        token_ttl_seconds=_env_int(_k("TOKEN_TTL_SECONDS"), default=3600),
        verify_timeout_seconds=_env_float(_k("VERIFY_TIMEOUT_SECONDS"), 5.0),
        query_timeout_seconds=_env_float(_k("QUERY_TIMEOUT_SECONDS"), 10.0),
        log_level=_first_env(_k("LOG_LEVEL"), default="INFO").upper(),
        log_console=_env_bool(_k("LOG_CONSOLE"), True),
        cors_origins=_env_list(_k("CORS_ORIGINS"), ["*"]),
        host=_first_env(_k("HOST"), default="0.0.0.0"),
        port=_env_int(_k("PORT"), "SERVER_PORT", default=8080),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
