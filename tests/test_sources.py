"""Tests for locating and downloading source files."""

from __future__ import annotations

import pytest
import requests

from imagebank.services.providers import LocalStorageProvider
from imagebank.services.sources import (
    DownloadSettings,
    ResolvedSource,
    SourceFileResolver,
    original_name,
)

MIRROR_URL = "https://mirror.example.com/files"


@pytest.fixture()
def settings(storage_dirs) -> DownloadSettings:
    return DownloadSettings(
        connect_timeout=1.0,
        total_timeout=5.0,
        attempts=2,
        retry_delay=0.0,
        temp_dir=str(storage_dirs["tmp"]),
    )


def _resolver(storage_dirs, session, settings, **kwargs) -> SourceFileResolver:
    provider = LocalStorageProvider(
        "mirror", root=storage_dirs["mirror"], base_url=kwargs.pop("base_url", MIRROR_URL)
    )
    return SourceFileResolver(
        provider, attribute="images", session=session, settings=settings, **kwargs
    )


def test_disk_hit_skips_network(storage_dirs, fake_session, settings, write_image):
    write_image(storage_dirs["uploads"] / "cats" / "1.jpg")
    resolver = _resolver(storage_dirs, fake_session, settings, disk_root=storage_dirs["uploads"])

    resolved = resolver.resolve("cats/1.jpg", record=None)

    assert resolved is not None
    assert not resolved.is_temporary
    with resolved as path:
        assert path == storage_dirs["uploads"] / "cats" / "1.jpg"
    assert path.exists()
    assert fake_session.calls == []


def test_disk_lookup_follows_symlinks(storage_dirs, fake_session, settings, write_image):
    shared = write_image(storage_dirs["tmp"] / "shared" / "1.jpg")
    link = storage_dirs["uploads"] / "cats" / "1.jpg"
    link.parent.mkdir()
    link.symlink_to(shared)
    resolver = _resolver(
        storage_dirs, fake_session, settings, base_url=None, disk_root=storage_dirs["uploads"]
    )

    resolved = resolver.resolve("cats/1.jpg", record=None)

    assert resolved is not None
    assert not resolved.is_temporary
    assert resolved.path.read_bytes() == shared.read_bytes()
    assert fake_session.calls == []


def test_unusable_disk_path_falls_back_to_url(
    storage_dirs, fake_session, fake_response, settings
):
    url = f"{MIRROR_URL}/bad\x00name.png"
    fake_session.add(url, fake_response(body=b"png"))
    resolver = _resolver(storage_dirs, fake_session, settings, disk_root=storage_dirs["uploads"])

    assert resolver.find_on_disk("bad\x00name.png") is None
    resolved = resolver.resolve("bad\x00name.png", record=None)

    assert resolved is not None
    assert fake_session.calls[0]["url"] == url
    resolved.release()


def test_disk_miss_downloads_from_provider_url(
    storage_dirs, fake_session, fake_response, settings
):
    fake_session.add(f"{MIRROR_URL}/cats/2.jpg", fake_response(body=b"jpeg-bytes"))
    resolver = _resolver(storage_dirs, fake_session, settings, disk_root=storage_dirs["uploads"])

    resolved = resolver.resolve("cats/2.jpg", record=None)

    assert resolved is not None and resolved.is_temporary
    with resolved as path:
        assert path.read_bytes() == b"jpeg-bytes"
        assert path.parent == storage_dirs["tmp"]
    assert not path.exists()
    assert fake_session.calls[0]["stream"] is True
    assert fake_session.calls[0]["timeout"] == (1.0, 5.0)


def test_absolute_urls_are_used_verbatim(storage_dirs, fake_session, fake_response, settings):
    url = "https://legacy.example.com/a.png?size=large"
    fake_session.add(url, fake_response(body=b"png"))
    resolver = _resolver(storage_dirs, fake_session, settings)

    resolved = resolver.resolve(url, record=None)

    assert resolved is not None
    assert fake_session.calls[0]["url"] == url
    resolved.release()


def test_record_formatter_is_used_when_provider_has_no_url(
    storage_dirs, fake_session, fake_response, settings
):
    fake_session.add("https://old.example.com/images/a.png", fake_response(body=b"png"))
    calls = []

    def formatter(record, attribute, src):
        calls.append((record, attribute, src))
        return f"https://old.example.com/{attribute}/{src}"

    resolver = _resolver(
        storage_dirs, fake_session, settings, base_url=None, url_formatter=formatter
    )

    resolved = resolver.resolve("a.png", record="record")

    assert resolved is not None
    assert calls == [("record", "images", "a.png")]
    resolved.release()


def test_unresolvable_source_returns_none(storage_dirs, fake_session, settings):
    resolver = _resolver(storage_dirs, fake_session, settings, base_url=None)

    assert resolver.resolve("a.png", record=None) is None
    assert fake_session.calls == []


def test_http_errors_remove_partial_file(storage_dirs, fake_session, fake_response, settings):
    fake_session.add(f"{MIRROR_URL}/gone.png", fake_response(status_code=404))
    resolver = _resolver(storage_dirs, fake_session, settings)

    assert resolver.resolve("gone.png", record=None) is None
    assert len(fake_session.calls) == 1
    assert list(storage_dirs["tmp"].iterdir()) == []


def test_transient_failures_are_retried(
    storage_dirs, fake_session, fake_response, settings, connection_error
):
    url = f"{MIRROR_URL}/flaky.png"
    fake_session.add(url, connection_error, fake_response(body=b"png"))
    resolver = _resolver(storage_dirs, fake_session, settings)

    resolved = resolver.resolve("flaky.png", record=None)

    assert resolved is not None
    assert len(fake_session.calls) == 2
    resolved.release()


def test_retries_are_bounded(storage_dirs, fake_session, fake_response, settings):
    url = f"{MIRROR_URL}/busy.png"
    fake_session.add(url, fake_response(status_code=503))
    resolver = _resolver(storage_dirs, fake_session, settings)

    assert resolver.resolve("busy.png", record=None) is None
    assert len(fake_session.calls) == settings.attempts
    assert list(storage_dirs["tmp"].iterdir()) == []


def test_timeouts_produce_no_file(storage_dirs, fake_session, settings):
    url = f"{MIRROR_URL}/slow.png"
    fake_session.add(url, requests.Timeout("read timed out"))
    resolver = _resolver(storage_dirs, fake_session, settings)

    assert resolver.resolve("slow.png", record=None) is None
    assert list(storage_dirs["tmp"].iterdir()) == []


def test_keep_names_renames_download(storage_dirs, fake_session, fake_response, settings):
    fake_session.add(f"{MIRROR_URL}/cats/tabby.jpg", fake_response(body=b"jpg"))
    resolver = _resolver(storage_dirs, fake_session, settings, preserve_names=True)

    resolved = resolver.resolve("cats/tabby.jpg", record=None)

    assert resolved is not None
    assert resolved.path.name == "tabby.jpg"
    resolved.release()
    assert not (storage_dirs["tmp"] / "tabby.jpg").exists()


def test_keep_names_disambiguates_existing_files(
    storage_dirs, fake_session, fake_response, settings
):
    (storage_dirs["tmp"] / "tabby.jpg").write_bytes(b"other run")
    fake_session.add(f"{MIRROR_URL}/tabby.jpg", fake_response(body=b"jpg"))
    resolver = _resolver(storage_dirs, fake_session, settings, preserve_names=True)

    resolved = resolver.resolve("tabby.jpg", record=None)

    assert resolved is not None
    assert resolved.path.name.startswith("img-transfer-")
    assert resolved.path.name.endswith("-tabby.jpg")
    assert (storage_dirs["tmp"] / "tabby.jpg").read_bytes() == b"other run"
    resolved.release()


def test_cleanup_runs_once_even_when_block_raises(tmp_path):
    calls = []
    resolved = ResolvedSource(tmp_path / "x", cleanup=lambda: calls.append(1))

    with pytest.raises(RuntimeError):
        with resolved:
            raise RuntimeError("upload exploded")
    resolved.release()

    assert calls == [1]


@pytest.mark.parametrize(
    "src, expected",
    [
        ("cats/1.jpg", "1.jpg"),
        ("https://cdn.example.com/a/b.png?v=3", "b.png"),
        ("plain.gif", "plain.gif"),
    ],
)
def test_original_name(src, expected):
    assert original_name(src) == expected


def test_settings_from_config(app):
    settings = DownloadSettings.from_config(app.config)
    assert settings.attempts == 2
    assert settings.connect_timeout == 30.0
    assert settings.total_timeout == 60.0
    assert settings.temp_dir == app.config["TRANSFER_TEMP_DIR"]
