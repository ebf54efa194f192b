from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name, str(default)) or default)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env(name, str(default)) or default)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env(name).lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _env_csv(name: str, default: str = "") -> list[str]:
    return [x.strip() for x in _env(name, default).split(",") if x.strip()]


@dataclass
class Config:
    APP_ENV: str = field(default_factory=lambda: _env("APP_ENV", "development").lower())
    APP_VERSION: str = field(default_factory=lambda: _env("APP_VERSION", "0.1.0"))
    DATABASE_URL: str = field(default_factory=lambda: _env("DATABASE_URL", "sqlite:///./robotics_recruitment.db"))
    HOST: str = field(default_factory=lambda: _env("HOST", "127.0.0.1"))
    PORT: int = field(default_factory=lambda: _env_int("PORT", 5000))
    LOG_LEVEL: str = field(default_factory=lambda: _env("LOG_LEVEL", "INFO").upper())
    ALLOWED_ORIGINS: list[str] = field(default_factory=lambda: _env_csv("ALLOWED_ORIGINS", "http://localhost:3000"))

    SESSION_TTL_MINUTES: int = field(default_factory=lambda: _env_int("SESSION_TTL_MINUTES", 720))
    GOOGLE_CLIENT_ID: str = field(default_factory=lambda: _env("GOOGLE_CLIENT_ID"))
    AUTH_ALLOW_TEST_TOKENS: bool = field(default_factory=lambda: _env_bool("AUTH_ALLOW_TEST_TOKENS", False))

    UPLOAD_DIR: str = field(default_factory=lambda: _env("UPLOAD_DIR", "./uploads"))
    FILE_STORAGE_MODE: str = field(default_factory=lambda: _env("FILE_STORAGE_MODE", "local").lower())
    GAS_UPLOAD_URL: str = field(default_factory=lambda: _env("GAS_UPLOAD_URL"))
    GAS_UPLOAD_TOKEN: str = field(default_factory=lambda: _env("GAS_UPLOAD_TOKEN"))
    MAX_UPLOAD_MB: int = field(default_factory=lambda: _env_int("MAX_UPLOAD_MB", 5))

    RATE_LIMIT_GLOBAL: str = field(default_factory=lambda: _env("RATE_LIMIT_GLOBAL", "600/60"))
    RATE_LIMIT_LOGIN: str = field(default_factory=lambda: _env("RATE_LIMIT_LOGIN", "20/60"))
    RATE_LIMIT_DEFAULT: str = field(default_factory=lambda: _env("RATE_LIMIT_DEFAULT", "120/60"))

    REGISTRATION_ID_PREFIX: str = field(default_factory=lambda: _env("REGISTRATION_ID_PREFIX", "CAANG").upper())
    CONFLICT_EPSILON_SECONDS: float = field(default_factory=lambda: _env_float("CONFLICT_EPSILON_SECONDS", 1.0))
    BULK_CHUNK_SIZE: int = field(default_factory=lambda: _env_int("BULK_CHUNK_SIZE", 500))

    @property
    def IS_PRODUCTION(self) -> bool:
        return self.APP_ENV in {"prod", "production"}

    def validate(self) -> None:
        if not self.DATABASE_URL:
            raise RuntimeError("Missing DATABASE_URL")
        if self.FILE_STORAGE_MODE not in {"local", "gas"}:
            raise RuntimeError(f"Invalid FILE_STORAGE_MODE: {self.FILE_STORAGE_MODE}")
        if self.FILE_STORAGE_MODE == "gas" and not self.GAS_UPLOAD_URL:
            raise RuntimeError("FILE_STORAGE_MODE=gas requires GAS_UPLOAD_URL")
        if self.IS_PRODUCTION and self.AUTH_ALLOW_TEST_TOKENS:
            raise RuntimeError("AUTH_ALLOW_TEST_TOKENS must be off in production")
        if not (1 <= self.BULK_CHUNK_SIZE <= 500):
            raise RuntimeError("BULK_CHUNK_SIZE must be between 1 and 500")
        if self.CONFLICT_EPSILON_SECONDS < 0:
            raise RuntimeError("CONFLICT_EPSILON_SECONDS must be >= 0")


def get_config() -> Config:
    cfg = Config()
    cfg.validate()
    return cfg
