"""Locate the source file behind an image reference.

Files are read straight from the source provider's disk when it is mounted
locally. Everything else is downloaded over HTTP into a temporary file that
the caller releases through :class:`ResolvedSource`.
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Mapping, Optional
from urllib.parse import urlsplit
from uuid import uuid4

import requests

from .providers import ImageStorageProvider, StorageError, resolve_within

LOGGER = logging.getLogger(__name__)
_TEMP_PREFIX = "img-transfer-"
_CHUNK_BYTES = 64 * 1024
_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})

UrlFormatter = Callable[[Any, str, str], Optional[str]]


class DownloadError(RuntimeError):
    """Raised when a source URL cannot be fetched."""


class TransientDownloadError(DownloadError):
    """A download failure worth another attempt."""


@dataclass(frozen=True, slots=True)
class DownloadSettings:
    connect_timeout: float = 30.0
    total_timeout: float = 60.0
    attempts: int = 2
    retry_delay: float = 0.1
    temp_dir: str | None = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> DownloadSettings:
        return cls(
            connect_timeout=float(config.get("TRANSFER_CONNECT_TIMEOUT", 30.0)),
            total_timeout=float(config.get("TRANSFER_DOWNLOAD_TIMEOUT", 60.0)),
            attempts=max(int(config.get("TRANSFER_DOWNLOAD_ATTEMPTS", 2)), 1),
            retry_delay=max(float(config.get("TRANSFER_RETRY_DELAY", 0.1)), 0.0),
            temp_dir=config.get("TRANSFER_TEMP_DIR") or None,
        )


class ResolvedSource:
    """A readable local file plus the action that releases it.

    Use as a context manager; the cleanup runs exactly once when the block
    exits, whether or not the upload inside it succeeded.
    """

    def __init__(self, path: Path, cleanup: Callable[[], None] | None = None) -> None:
        self.path = path
        self._cleanup = cleanup

    @property
    def is_temporary(self) -> bool:
        return self._cleanup is not None

    def __enter__(self) -> Path:
        return self.path

    def __exit__(self, exc_type, exc, tb) -> bool:  # type: ignore[no-untyped-def]
        self.release()
        return False

    def release(self) -> None:
        cleanup, self._cleanup = self._cleanup, None
        if cleanup is not None:
            cleanup()


class SourceFileResolver:
    def __init__(
        self,
        provider: ImageStorageProvider,
        *,
        attribute: str,
        session: requests.Session,
        settings: DownloadSettings | None = None,
        disk_root: Path | None = None,
        url_formatter: UrlFormatter | None = None,
        preserve_names: bool = False,
    ) -> None:
        self.provider = provider
        self.attribute = attribute
        self.session = session
        self.settings = settings or DownloadSettings()
        self.disk_root = disk_root
        self.url_formatter = url_formatter
        self.preserve_names = preserve_names

    def resolve(self, src: str, record: Any) -> ResolvedSource | None:
        if self.disk_root is not None:
            local_path = self.find_on_disk(src)
            if local_path is not None:
                return ResolvedSource(local_path)

        url = self.resolve_url(src, record)
        if not url:
            LOGGER.debug("No URL could be resolved for %s", src)
            return None

        desired_name = original_name(src) if self.preserve_names else None
        return self.download(url, desired_name)

    def find_on_disk(self, src: str) -> Path | None:
        if self.disk_root is None:
            return None
        try:
            candidate = resolve_within(self.disk_root, src)
            if candidate is None:
                return None
            if not candidate.is_file() or not os.access(candidate, os.R_OK):
                return None
        except (OSError, ValueError) as exc:
            LOGGER.warning(
                'Error reading file from disk "%s" at path "%s": %s', self.disk_root, src, exc
            )
            return None
        return candidate

    def resolve_url(self, src: str, record: Any) -> str | None:
        if is_absolute_url(src):
            return src
        try:
            return self.provider.get_url(src) or None
        except StorageError as exc:
            LOGGER.debug("Provider [%s] cannot resolve %s: %s", self.provider.name, src, exc)
        if self.url_formatter is not None:
            return self.url_formatter(record, self.attribute, src) or None
        return None

    def download(self, url: str, desired_name: str | None = None) -> ResolvedSource | None:
        fd, raw_path = tempfile.mkstemp(prefix=_TEMP_PREFIX, dir=self.settings.temp_dir)
        os.close(fd)
        temp_path = Path(raw_path)

        try:
            self._fetch(url, temp_path)
        except DownloadError as exc:
            LOGGER.debug("Download of %s failed: %s", url, exc)
            _unlink_quietly(temp_path)
            return None

        if desired_name:
            temp_path = _rename_to(temp_path, desired_name)

        return ResolvedSource(temp_path, cleanup=lambda: _unlink_quietly(temp_path))

    def _fetch(self, url: str, destination: Path) -> None:
        attempts = self.settings.attempts
        for attempt in range(1, attempts + 1):
            try:
                self._stream_to(url, destination)
                return
            except TransientDownloadError as exc:
                if attempt >= attempts:
                    raise
                LOGGER.debug("Attempt %d for %s failed: %s", attempt, url, exc)
                if self.settings.retry_delay:
                    time.sleep(self.settings.retry_delay)

    def _stream_to(self, url: str, destination: Path) -> None:
        deadline = time.monotonic() + self.settings.total_timeout
        timeout = (self.settings.connect_timeout, self.settings.total_timeout)
        try:
            with self.session.get(url, stream=True, timeout=timeout) as response:
                status = response.status_code
                if status in _RETRYABLE_STATUS:
                    raise TransientDownloadError(f"HTTP {status} from {url}")
                if not 200 <= status < 300:
                    raise DownloadError(f"HTTP {status} from {url}")
                with destination.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=_CHUNK_BYTES):
                        if time.monotonic() > deadline:
                            raise TransientDownloadError(f"Timed out downloading {url}")
                        if chunk:
                            handle.write(chunk)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientDownloadError(str(exc)) from exc
        except requests.RequestException as exc:
            raise DownloadError(str(exc)) from exc
        except OSError as exc:
            raise DownloadError(f"Cannot write {destination}: {exc}") from exc


def is_absolute_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))


def original_name(src: str) -> str:
    path = urlsplit(src).path if is_absolute_url(src) else src
    return PurePosixPath(path.strip().replace("\\", "/")).name


def _rename_to(temp_path: Path, desired_name: str) -> Path:
    name = os.path.basename(desired_name.strip())
    if not name:
        return temp_path
    target = temp_path.with_name(name)
    if target.exists():
        target = temp_path.with_name(f"{_TEMP_PREFIX}{uuid4().hex}-{name}")
    try:
        temp_path.rename(target)
    except OSError:
        return temp_path
    return target


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        LOGGER.debug("Could not remove temporary file %s: %s", path, exc)
