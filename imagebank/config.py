"""Configuration helpers for the image transfer tooling."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Type

from .services.s3 import _as_bool

_BASE_DIR = Path(__file__).resolve().parent.parent


def _coerce_positive_int(
    raw_value: str | None,
    *,
    fallback: int,
    minimum: int = 1,
    maximum: int | None = None,
) -> int:
    """Best-effort conversion of an environment value into a bounded integer."""

    if raw_value is None:
        return fallback

    try:
        parsed = int(raw_value)
    except (TypeError, ValueError):
        return fallback

    if parsed < minimum:
        return minimum

    if maximum is not None and parsed > maximum:
        return maximum

    return parsed


def _coerce_seconds(raw_value: str | None, *, fallback: float) -> float:
    if raw_value is None:
        return fallback
    try:
        parsed = float(raw_value)
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed > 0 else fallback


def _resolve_database_uri(
    env_name: str = "DATABASE_URL", *, default: str | None = None
) -> str:
    url = os.getenv(env_name)
    if not url:
        if default is not None:
            return default
        return f"sqlite:///{_BASE_DIR / 'imagebank.db'}"

    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)

    scheme, sep, remainder = url.partition("://")
    if scheme == "postgresql" and sep:
        url = f"postgresql+psycopg://{remainder}"

    return url


def _build_engine_options(uri: str) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True}
    if not uri.startswith("sqlite"):
        options["pool_recycle"] = int(os.getenv("SQLALCHEMY_POOL_RECYCLE", 300))
        options["pool_timeout"] = int(os.getenv("SQLALCHEMY_POOL_TIMEOUT", 30))
    return options


class BaseConfig:
    """Default configuration shared by all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_DATABASE_URI = _resolve_database_uri()
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = _build_engine_options(SQLALCHEMY_DATABASE_URI)

    # Storage disks are local directories, optionally served under a base URL.
    STORAGE_DISKS: dict[str, dict[str, Any]] = {
        "uploads": {
            "root": os.getenv("UPLOADS_ROOT", str(_BASE_DIR / "storage" / "uploads")),
            "url": os.getenv("UPLOADS_BASE_URL"),
        },
    }
    IMAGE_PROVIDERS: dict[str, dict[str, Any]] = {
        "local": {"driver": "local", "disk": "uploads"},
        "s3": {"driver": "s3"},
    }
    IMAGE_DEFAULT_PROVIDER = os.getenv("IMAGE_DEFAULT_PROVIDER", "local")
    IMAGE_UPLOAD_FOLDER = os.getenv("IMAGE_UPLOAD_FOLDER", "images")
    IMAGE_PRESERVE_ORIGINAL_NAME = _as_bool(os.getenv("IMAGE_PRESERVE_ORIGINAL_NAME"))
    IMAGE_GENERATE_UNIQUE_NAME = _as_bool(
        os.getenv("IMAGE_GENERATE_UNIQUE_NAME", "true")
    )
    PRODUCT_IMAGE_BASE_URL = os.getenv("PRODUCT_IMAGE_BASE_URL")

    TRANSFER_CHUNK_SIZE = _coerce_positive_int(
        os.getenv("TRANSFER_CHUNK_SIZE"), fallback=100
    )
    TRANSFER_CONNECT_TIMEOUT = _coerce_seconds(
        os.getenv("TRANSFER_CONNECT_TIMEOUT"), fallback=30.0
    )
    TRANSFER_DOWNLOAD_TIMEOUT = _coerce_seconds(
        os.getenv("TRANSFER_DOWNLOAD_TIMEOUT"), fallback=60.0
    )
    TRANSFER_DOWNLOAD_ATTEMPTS = _coerce_positive_int(
        os.getenv("TRANSFER_DOWNLOAD_ATTEMPTS"), fallback=2, maximum=5
    )
    TRANSFER_RETRY_DELAY = _coerce_seconds(
        os.getenv("TRANSFER_RETRY_DELAY"), fallback=0.1
    )
    TRANSFER_TEMP_DIR = os.getenv("TRANSFER_TEMP_DIR")
    TRANSFER_CACHE_HIGH_WATER = _coerce_positive_int(
        os.getenv("TRANSFER_CACHE_HIGH_WATER"), fallback=10_000
    )
    TRANSFER_CACHE_KEEP = _coerce_positive_int(
        os.getenv("TRANSFER_CACHE_KEEP"), fallback=5_000
    )

    AWS_REGION = os.getenv("AWS_REGION")
    S3_BUCKET_NAME = os.getenv("S3_BUCKET_NAME")
    S3_PUBLIC_BASE_URL = os.getenv("S3_PUBLIC_BASE_URL") or os.getenv(
        "S3_PUBLIC_DOMAIN"
    )
    S3_USE_OAC = os.getenv("S3_USE_OAC")
    S3_OBJECT_ACL = os.getenv("S3_OBJECT_ACL")
    S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL")


class DevelopmentConfig(BaseConfig):
    DEBUG = True


class TestingConfig(BaseConfig):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = _resolve_database_uri(
        "DATABASE_URL_TEST", default="sqlite:///:memory:"
    )
    SQLALCHEMY_ENGINE_OPTIONS = _build_engine_options(SQLALCHEMY_DATABASE_URI)
    TRANSFER_RETRY_DELAY = 0.0


class ProductionConfig(BaseConfig):
    pass


_CONFIG_MAP: dict[str | None, Type[BaseConfig]] = {
    None: BaseConfig,
    "default": BaseConfig,
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}


def get_config(name: str | None) -> Type[BaseConfig]:
    """Pick a configuration object based on the provided name."""
    key = (name or os.getenv("FLASK_ENV") or "default").lower()
    return _CONFIG_MAP.get(key, BaseConfig)
