"""Upload local image files to a named storage provider."""

from __future__ import annotations

import dataclasses
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping
from uuid import uuid4

from PIL import Image, UnidentifiedImageError
from werkzeug.utils import secure_filename

from .providers import (
    ImageStorageProvider,
    ProviderError,
    StorageError,
    build_provider,
    disk_root,
)

LOGGER = logging.getLogger(__name__)
_FALLBACK_CONTENT_TYPE = "application/octet-stream"


class UploadError(RuntimeError):
    """Raised when the target provider rejects or cannot complete an upload."""


@dataclass(frozen=True, slots=True)
class ImageUploadOptions:
    """Where and under which name an uploaded image is stored."""

    provider: str
    folder: str = ""
    preserve_original_name: bool = False
    generate_unique_name: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.provider, str) or not self.provider.strip():
            raise ValueError("provider must be a non-empty string")
        object.__setattr__(self, "provider", self.provider.strip())
        object.__setattr__(self, "folder", normalise_folder(self.folder))

    def with_overrides(
        self,
        *,
        provider: str | None = None,
        folder: str | None = None,
        preserve_original_name: bool | None = None,
        generate_unique_name: bool | None = None,
    ) -> ImageUploadOptions:
        """Return a copy where every non-``None`` argument replaces the current value."""
        changes: dict[str, Any] = {
            "provider": provider,
            "folder": folder,
            "preserve_original_name": preserve_original_name,
            "generate_unique_name": generate_unique_name,
        }
        return dataclasses.replace(
            self, **{key: value for key, value in changes.items() if value is not None}
        )


@dataclass(frozen=True, slots=True)
class StoredImage:
    path: str
    provider: str
    content_type: str


class ImageUploader:
    """Registry of configured providers plus the upload entry point."""

    def __init__(
        self,
        *,
        providers: Mapping[str, Mapping[str, Any]],
        disks: Mapping[str, Mapping[str, Any]],
        defaults: ImageUploadOptions,
    ) -> None:
        self._provider_settings = providers
        self._disks = disks
        self._defaults = defaults
        self._instances: dict[str, ImageStorageProvider] = {}

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> ImageUploader:
        defaults = ImageUploadOptions(
            provider=config.get("IMAGE_DEFAULT_PROVIDER") or "local",
            folder=config.get("IMAGE_UPLOAD_FOLDER") or "",
            preserve_original_name=bool(config.get("IMAGE_PRESERVE_ORIGINAL_NAME")),
            generate_unique_name=bool(config.get("IMAGE_GENERATE_UNIQUE_NAME", True)),
        )
        return cls(
            providers=config.get("IMAGE_PROVIDERS") or {},
            disks=config.get("STORAGE_DISKS") or {},
            defaults=defaults,
        )

    def get_provider(self, name: str) -> ImageStorageProvider:
        provider = self._instances.get(name)
        if provider is None:
            provider = build_provider(name, self._provider_settings, self._disks)
            self._instances[name] = provider
        return provider

    def default_options(self) -> ImageUploadOptions:
        return self._defaults

    def disk_root(self, provider_name: str) -> Path | None:
        return disk_root(provider_name, self._provider_settings, self._disks)

    def upload_from_file(self, path: Path, options: ImageUploadOptions) -> StoredImage:
        try:
            provider = self.get_provider(options.provider)
        except ProviderError as exc:
            raise UploadError(str(exc)) from exc

        content_type = _detect_content_type(path)
        name = build_object_name(path.name, options, content_type)
        key = f"{options.folder}/{name}" if options.folder else name

        try:
            stored_path = provider.store(path, key, content_type=content_type)
        except StorageError as exc:
            raise UploadError(f"Provider [{options.provider}] rejected {key!r}: {exc}") from exc

        LOGGER.debug("Uploaded %s to %s as %s", path, options.provider, stored_path)
        return StoredImage(
            path=stored_path, provider=options.provider, content_type=content_type
        )


def build_object_name(
    original_name: str, options: ImageUploadOptions, content_type: str
) -> str:
    extension = _resolve_extension(original_name, content_type)
    if options.preserve_original_name:
        stem = secure_filename(Path(original_name).stem)
        if stem:
            if options.generate_unique_name:
                return f"{stem}-{uuid4().hex[:8]}{extension}"
            return f"{stem}{extension}"
    return f"{uuid4().hex}{extension}"


def normalise_folder(folder: str | None) -> str:
    if not folder:
        return ""
    return folder.replace("\\", "/").strip().strip("/")


def _detect_content_type(path: Path) -> str:
    try:
        with Image.open(path) as image:
            image_format = image.format
            image.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        raise UploadError(f"{path.name} is not a readable image: {exc}") from exc
    return Image.MIME.get(image_format or "", _FALLBACK_CONTENT_TYPE)


def _resolve_extension(filename_hint: str | None, content_type: str) -> str:
    if filename_hint:
        suffix = Path(filename_hint).suffix
        if suffix:
            return suffix.lower()

    guessed = mimetypes.guess_extension(content_type or "")
    if guessed == ".jpe":
        return ".jpg"
    if guessed:
        return guessed.lower()
    return ""
