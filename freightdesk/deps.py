import logging
from typing import Dict, Any

from pydantic_settings import BaseSettings
from sqlmodel import SQLModel, Session, create_engine


class Settings(BaseSettings):
    # overridable from the environment or .env
    DATABASE_URL: str = "sqlite:///./freightdesk.db"
    SESSION_SECRET: str = "default_secret_key_for_development"
    SESSION_TTL_MINUTES: int = 120
    SESSION_COOKIE: str = "session"
    COOKIE_SECURE: bool = False
    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD: str = "admin123"
    MAX_CONSOLE_CBM: float = 68.0
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()

# SQLite connections are shared with the threadpool that runs sync endpoints
connect_args: Dict[str, Any] = {}
if settings.DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(settings.DATABASE_URL, echo=False, connect_args=connect_args)


def configure_logging():
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def init_db():
    # table classes must be registered on the metadata before create_all
    from . import models  # noqa: F401
    SQLModel.metadata.create_all(engine)


def get_session():
    with Session(engine) as session:
        yield session
