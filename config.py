import os
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import List

from dotenv import load_dotenv
load_dotenv()


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str
    database_name: str
    jwt_secret: str
    pwd_salt: str
    access_token_expire_minutes: int
    cookie_name: str
    cookie_secure: bool
    cors_origins: List[str]
    log_level: str
    guest_confirmation_hours: int
    port: int
    seed_enabled: bool


@lru_cache
def get_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
        database_name=os.getenv("DATABASE_NAME", "kakamalem"),
        jwt_secret=os.getenv("JWT_SECRET", "devsecret"),
        pwd_salt=os.getenv("PWD_SALT", "salt"),
        access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24)),
        cookie_name=os.getenv("COOKIE_NAME", "kakamalem-token"),
        cookie_secure=_bool(os.getenv("COOKIE_SECURE", "false")),
        cors_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        guest_confirmation_hours=int(os.getenv("GUEST_CONFIRMATION_HOURS", 24)),
        port=int(os.getenv("PORT", 8000)),
        seed_enabled=_bool(os.getenv("SEED_ENABLED", "false")),
    )


def configure_logging() -> None:
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
