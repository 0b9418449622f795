"""Pytest fixtures for the image transfer tooling."""

from __future__ import annotations

import io
import os
import sys
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest
import requests
from flask import Flask
from PIL import Image

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from imagebank import create_app  # noqa: E402
from imagebank import models  # noqa: E402,F401
from imagebank.extensions import db as _db  # noqa: E402


@pytest.fixture()
def storage_dirs(tmp_path: Path) -> dict[str, Path]:
    dirs = {
        "uploads": tmp_path / "uploads",
        "mirror": tmp_path / "mirror",
        "tmp": tmp_path / "tmp",
    }
    for path in dirs.values():
        path.mkdir()
    return dirs


@pytest.fixture()
def app(storage_dirs: dict[str, Path]) -> Iterator[Flask]:
    application = create_app("testing")
    application.config.update(
        {
            "STORAGE_DISKS": {
                "uploads": {"root": str(storage_dirs["uploads"]), "url": None},
                "mirror": {
                    "root": str(storage_dirs["mirror"]),
                    "url": "https://mirror.example.com/files",
                },
            },
            "IMAGE_PROVIDERS": {
                "local": {"driver": "local", "disk": "uploads"},
                "mirror": {"driver": "local", "disk": "mirror"},
                "s3": {"driver": "s3"},
            },
            "IMAGE_DEFAULT_PROVIDER": "local",
            "S3_BUCKET_NAME": "test-bucket",
            "S3_PUBLIC_BASE_URL": "https://cdn.example.com",
            "PRODUCT_IMAGE_BASE_URL": None,
            "TRANSFER_TEMP_DIR": str(storage_dirs["tmp"]),
            "TRANSFER_RETRY_DELAY": 0.0,
        }
    )
    with application.app_context():
        _db.create_all()
    try:
        yield application
    finally:
        with application.app_context():
            _db.session.remove()
            _db.drop_all()


@pytest.fixture()
def db_session(app):
    """Provide a database session bound to the test app."""
    return _db.session


def _image_bytes(image_format: str, color: tuple[int, int, int]) -> bytes:
    image = Image.new("RGB", (10, 10), color)
    buffer = io.BytesIO()
    image.save(buffer, format=image_format)
    return buffer.getvalue()


@pytest.fixture()
def png_bytes() -> bytes:
    return _image_bytes("PNG", (255, 0, 0))


@pytest.fixture()
def write_image() -> Callable[..., Path]:
    """Write a small real image to ``path``; the format follows the suffix."""

    def _write(path: Path, color: tuple[int, int, int] = (0, 128, 255)) -> Path:
        image_format = "JPEG" if path.suffix.lower() in {".jpg", ".jpeg"} else "PNG"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(_image_bytes(image_format, color))
        return path

    return _write


class FakeResponse:
    def __init__(self, status_code: int = 200, body: bytes = b"") -> None:
        self.status_code = status_code
        self.body = body
        self.closed = False

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.closed = True

    def iter_content(self, chunk_size: int = 1):  # type: ignore[no-untyped-def]
        for start in range(0, len(self.body), chunk_size):
            yield self.body[start : start + chunk_size]


class FakeSession:
    """Stands in for ``requests.Session``; replies are queued per URL."""

    def __init__(self) -> None:
        self.replies: dict[str, list[FakeResponse | Exception]] = {}
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def add(self, url: str, *replies: FakeResponse | Exception) -> None:
        self.replies.setdefault(url, []).extend(replies)

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"url": url, **kwargs})
        queue = self.replies.get(url)
        if not queue:
            return FakeResponse(status_code=404)
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        return reply

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture()
def fake_response() -> type[FakeResponse]:
    return FakeResponse


@pytest.fixture()
def connection_error() -> requests.ConnectionError:
    return requests.ConnectionError("connection reset")
