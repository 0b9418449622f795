"""Named storage providers: local disks and Amazon S3."""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Any, Mapping, Protocol

from . import s3

LOGGER = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Raised when a provider cannot read, locate or store a file."""


class ProviderError(StorageError):
    """Raised when a provider name cannot be resolved to a usable backend."""


class ImageStorageProvider(Protocol):
    name: str

    def get_url(self, path: str) -> str:
        """Return a downloadable URL for a provider-relative path."""

    def store(self, local_path: Path, key: str, *, content_type: str) -> str:
        """Store ``local_path`` under ``key`` and return the stored path."""


class LocalStorageProvider:
    """Provider backed by a directory on the local filesystem."""

    def __init__(self, name: str, *, root: Path, base_url: str | None = None) -> None:
        self.name = name
        self.root = root
        self.base_url = (base_url or "").strip() or None

    def get_url(self, path: str) -> str:
        if not self.base_url:
            raise ProviderError(f"Provider [{self.name}] has no public URL configured")
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    def store(self, local_path: Path, key: str, *, content_type: str) -> str:
        destination = resolve_within(self.root, key)
        if destination is None:
            raise StorageError(f"Refusing to store {key!r} outside {self.root}")
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_path, destination)
        except OSError as exc:
            raise StorageError(f"Failed to copy {local_path} to {destination}: {exc}") from exc
        LOGGER.debug("Stored %s (%s) at %s", local_path, content_type, destination)
        return key


class S3StorageProvider:
    """Provider backed by the configured S3 bucket."""

    def __init__(self, name: str) -> None:
        self.name = name

    def get_url(self, path: str) -> str:
        try:
            return s3.build_public_url(path)
        except (s3.S3Error, ValueError) as exc:
            raise ProviderError(f"Cannot build URL for {path!r}: {exc}") from exc

    def store(self, local_path: Path, key: str, *, content_type: str) -> str:
        try:
            return s3.upload_file(local_path, object_key=key, content_type=content_type)
        except s3.S3Error as exc:
            raise StorageError(str(exc)) from exc


def build_provider(
    name: str,
    providers: Mapping[str, Mapping[str, Any]],
    disks: Mapping[str, Mapping[str, Any]],
) -> ImageStorageProvider:
    """Instantiate the provider registered under ``name``."""
    settings = providers.get(name)
    if not isinstance(settings, Mapping):
        raise ProviderError(f"Provider [{name}] is not configured")

    driver = settings.get("driver")
    if driver == "local":
        disk_name = settings.get("disk")
        disk = disks.get(disk_name) if isinstance(disk_name, str) else None
        if not isinstance(disk, Mapping) or not disk.get("root"):
            raise ProviderError(f"Provider [{name}] references unknown disk {disk_name!r}")
        return LocalStorageProvider(
            name, root=Path(disk["root"]), base_url=disk.get("url")
        )
    if driver == "s3":
        try:
            s3.get_bucket_name()
        except s3.S3ConfigurationError as exc:
            raise ProviderError(f"Provider [{name}]: {exc}") from exc
        return S3StorageProvider(name)

    raise ProviderError(f"Provider [{name}] uses unsupported driver {driver!r}")


def disk_root(
    name: str,
    providers: Mapping[str, Mapping[str, Any]],
    disks: Mapping[str, Mapping[str, Any]],
) -> Path | None:
    """Return the local directory behind a provider's disk, if it has one."""
    settings = providers.get(name)
    if not isinstance(settings, Mapping):
        return None
    disk_name = settings.get("disk")
    if not isinstance(disk_name, str) or not disk_name:
        return None
    disk = disks.get(disk_name)
    if not isinstance(disk, Mapping) or not disk.get("root"):
        return None
    return Path(disk["root"])


def resolve_within(root: Path, relative: str) -> Path | None:
    """Join ``relative`` onto ``root``, rejecting paths that escape it.

    Containment is checked on the normalised path, so symlinks inside the
    root are followed by whoever opens the result.
    """
    base = Path(os.path.abspath(root))
    candidate = Path(os.path.normpath(base / relative.lstrip("/\\")))
    if candidate == base or not candidate.is_relative_to(base):
        return None
    return candidate
