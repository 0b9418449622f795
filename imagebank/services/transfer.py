"""Move image references of one model attribute to another storage provider.

The batch driver (:func:`run_transfer`) pages through every record of the
model, and :class:`RecordProcessor` moves each image of a record, rewriting
its ``src`` and saving the record when anything changed. Failures are counted
and logged per image and per record; only precondition problems abort a run.
"""

from __future__ import annotations

import copy
import importlib
import json
import logging
from dataclasses import asdict, dataclass, field
from itertools import islice
from typing import Any, Callable, Mapping

import requests
from flask import current_app

from ..extensions import db
from .providers import ImageStorageProvider, ProviderError
from .records import iter_record_pages, persist_record, record_key
from .resume import ResumeFilter
from .sources import DownloadSettings, SourceFileResolver, UrlFormatter
from .uploader import (
    ImageUploader,
    ImageUploadOptions,
    StoredImage,
    UploadError,
    normalise_folder,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 100
EXIT_FAILURE = 1
EXIT_INVALID = 2


class TransferPreconditionError(RuntimeError):
    """Raised before any record is touched when a run cannot start."""

    def __init__(self, message: str, *, invalid_input: bool = False) -> None:
        super().__init__(message)
        self.exit_code = EXIT_INVALID if invalid_input else EXIT_FAILURE


class ImageExtractionError(ValueError):
    """Raised when an attribute value cannot be read as a list of images."""


@dataclass(slots=True)
class TransferStats:
    records_scanned: int = 0
    records_updated: int = 0
    images_total: int = 0
    uploads: int = 0
    cached: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)

    def summary(self) -> str:
        return (
            f"Records scanned: {self.records_scanned}, updated: {self.records_updated}, "
            f"Images processed: {self.images_total}, Uploaded: {self.uploads}, "
            f"Cached: {self.cached}, Skipped: {self.skipped}, Failed: {self.failed}"
        )


class TransferCache:
    """Source ``src`` to target path, bounded by insertion-order trimming."""

    def __init__(self, *, high_water: int = 10_000, keep: int = 5_000) -> None:
        if keep > high_water:
            raise ValueError("keep must not exceed high_water")
        self.high_water = high_water
        self.keep = keep
        self._entries: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, src: object) -> bool:
        return src in self._entries

    def get(self, src: str) -> str | None:
        return self._entries.get(src)

    def put(self, src: str, target_path: str) -> None:
        self._entries[src] = target_path

    def trim(self) -> int:
        """Drop the oldest entries once the high-water mark is exceeded."""
        if len(self._entries) <= self.high_water:
            return 0
        excess = len(self._entries) - self.keep
        for src in list(islice(self._entries, excess)):
            del self._entries[src]
        LOGGER.debug("Trimmed transfer cache by %d entries", excess)
        return excess


@dataclass(slots=True)
class TransferContext:
    """Mutable state shared by every record of one run."""

    cache: TransferCache = field(default_factory=TransferCache)
    stats: TransferStats = field(default_factory=TransferStats)
    resume: ResumeFilter = field(default_factory=ResumeFilter)


@dataclass(frozen=True, slots=True)
class RecordCapabilities:
    """Optional hooks a model class offers, each ``None`` when absent."""

    image_attributes: tuple[str, ...] | None = None
    upload_options: Callable[[str], ImageUploadOptions] | None = None
    url_formatter: UrlFormatter | None = None
    quiet_save: bool = False

    @classmethod
    def inspect(cls, model_cls: type) -> RecordCapabilities:
        names = getattr(model_cls, "image_attribute_names", None)
        options = getattr(model_cls, "image_upload_options", None)
        formatter = getattr(model_cls, "format_image_url_for_attribute", None)
        return cls(
            image_attributes=tuple(names()) if callable(names) else None,
            upload_options=options if callable(options) else None,
            url_formatter=formatter if callable(formatter) else None,
            quiet_save=callable(getattr(model_cls, "save_quietly", None)),
        )


@dataclass(slots=True)
class ImageList:
    """Image entries of one attribute plus what is needed to write them back."""

    entries: list[dict[str, Any]]
    keys: tuple[Any, ...] | None = None
    encoded: bool = False
    compact: bool = False

    def dump(self) -> Any:
        value: Any = (
            dict(zip(self.keys, self.entries)) if self.keys is not None else list(self.entries)
        )
        if self.encoded:
            separators = (",", ":") if self.compact else None
            return json.dumps(value, ensure_ascii=False, separators=separators)
        return value


def extract_images(record: Any, attribute: str) -> ImageList:
    """Read ``attribute`` as image entries, deep-copied from the record."""
    value = getattr(record, attribute)
    encoded = False
    compact = False
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        if not value.strip():
            return ImageList([])
        text = value.strip()
        try:
            value = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ImageExtractionError(f"{attribute} is not valid JSON: {exc}") from exc
        encoded = True
        # Written without whitespace, e.g. {"src":"a.jpg"}
        compact = text in (
            json.dumps(value, separators=(",", ":")),
            json.dumps(value, ensure_ascii=False, separators=(",", ":")),
        )

    if value is None:
        return ImageList([], encoded=encoded)

    keys: tuple[Any, ...] | None = None
    if isinstance(value, Mapping):
        keys = tuple(value.keys())
        items = list(value.values())
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        raise ImageExtractionError(
            f"{attribute} holds {type(value).__name__}, expected a list of images"
        )

    entries: list[dict[str, Any]] = []
    for item in items:
        if not isinstance(item, Mapping):
            raise ImageExtractionError(
                f"{attribute} contains {type(item).__name__} entry, expected a mapping"
            )
        entries.append(copy.deepcopy(dict(item)))
    return ImageList(entries, keys=keys, encoded=encoded, compact=compact)


class RecordProcessor:
    """Transfers every image of one record and saves the rewritten list."""

    def __init__(
        self,
        context: TransferContext,
        *,
        attribute: str,
        resolver: SourceFileResolver,
        uploader: ImageUploader,
        target_options: ImageUploadOptions,
        capabilities: RecordCapabilities | None = None,
        dry_run: bool = False,
    ) -> None:
        self.context = context
        self.attribute = attribute
        self.resolver = resolver
        self.uploader = uploader
        self.target_options = target_options
        self.capabilities = capabilities or RecordCapabilities()
        self.dry_run = dry_run

    @property
    def stats(self) -> TransferStats:
        return self.context.stats

    def process(self, record: Any) -> None:
        label = type(record).__name__
        key: Any = "unknown"
        try:
            key = record_key(record)
            self._process(record, label, key)
        except Exception as exc:
            LOGGER.error("Error processing %s #%s: %s", label, key, exc)
            self.stats.failed += 1

    def _process(self, record: Any, label: str, key: Any) -> None:
        if self.context.resume.should_skip(key):
            self.stats.skipped += 1
            return

        images = extract_images(record, self.attribute)
        if not images.entries:
            return

        self.stats.records_scanned += 1
        changed = False
        for entry in images.entries:
            if self._transfer_entry(entry, record, label, key):
                changed = True

        if not changed:
            return

        if self.dry_run:
            self.stats.records_updated += 1
            LOGGER.info("[dry-run] Would update %s #%s", label, key)
            return

        try:
            setattr(record, self.attribute, images.dump())
            persist_record(record, quiet=self.capabilities.quiet_save)
        except Exception as exc:
            db.session.rollback()
            LOGGER.error("Failed to save %s #%s: %s", label, key, exc)
            self.stats.failed += 1
            return

        self.stats.records_updated += 1
        LOGGER.info("Updated %s #%s", label, key)

    def _transfer_entry(self, entry: dict[str, Any], record: Any, label: str, key: Any) -> bool:
        raw_src = entry.get("src")
        src = str(raw_src).strip() if raw_src is not None else ""
        if not src:
            self.stats.skipped += 1
            return False

        self.stats.images_total += 1
        try:
            cached = self.context.cache.get(src)
            if cached is not None:
                entry["src"] = cached
                self.stats.cached += 1
                return True

            stored = self._transfer(src, record)
        except Exception as exc:
            LOGGER.warning('Error processing image "%s" for %s #%s: %s', src, label, key, exc)
            self.stats.failed += 1
            return False

        if stored is None:
            LOGGER.warning('Unable to transfer image "%s" for %s #%s', src, label, key)
            self.stats.failed += 1
            return False

        entry["src"] = stored.path
        self.context.cache.put(src, stored.path)
        self.stats.uploads += 1
        LOGGER.info('Transferred "%s" for %s #%s', src, label, key)
        return True

    def _transfer(self, src: str, record: Any) -> StoredImage | None:
        source = self.resolver.resolve(src, record)
        if source is None:
            return None
        with source as local_path:
            try:
                return self.uploader.upload_from_file(local_path, self.target_options)
            except UploadError as exc:
                LOGGER.warning('Upload failed for "%s": %s', src, exc)
                return None


@dataclass(frozen=True, slots=True)
class TransferRequest:
    model: str
    attribute: str = "images"
    source: str | None = None
    target: str | None = None
    folder: str | None = None
    chunk_size: int | None = None
    dry_run: bool = False
    preserve_names: bool = False
    skip_file: str | None = None
    skip_before_id: int | None = None


def run_transfer(
    request: TransferRequest,
    *,
    uploader: ImageUploader | None = None,
    http_session: requests.Session | None = None,
) -> TransferStats:
    """Transfer every image of ``request.attribute`` for all records of the model.

    Must run inside an application context. Raises
    :class:`TransferPreconditionError` before touching any record when the
    model, attribute or providers are unusable.
    """
    config = current_app.config
    model_cls = load_model_class(request.model)
    capabilities = _check_model(model_cls, request)

    default_provider = config.get("IMAGE_DEFAULT_PROVIDER", "local")
    source_name = request.source or default_provider
    target_name = request.target or default_provider
    if source_name == target_name:
        raise TransferPreconditionError(
            "Source and target providers must be different.", invalid_input=True
        )

    uploader = uploader or ImageUploader.from_config(config)
    source_provider = _resolve_provider(uploader, source_name, "source")
    _resolve_provider(uploader, target_name, "target")

    target_options = resolve_target_options(
        capabilities,
        request.attribute,
        target_provider=target_name,
        folder=request.folder,
        uploader=uploader,
        preserve_names=request.preserve_names,
    )
    context = TransferContext(
        cache=TransferCache(
            high_water=config.get("TRANSFER_CACHE_HIGH_WATER", 10_000),
            keep=config.get("TRANSFER_CACHE_KEEP", 5_000),
        ),
        resume=ResumeFilter.load(
            model_name=model_cls.__name__,
            skip_file=request.skip_file,
            skip_before_id=request.skip_before_id,
        ),
    )
    chunk_size = resolve_chunk_size(
        request.chunk_size
        if request.chunk_size is not None
        else config.get("TRANSFER_CHUNK_SIZE")
    )

    LOGGER.info(
        "Transferring [%s] images for %s (from %s to %s)%s",
        request.attribute,
        request.model,
        source_name,
        target_name,
        " [dry-run]" if request.dry_run else "",
    )

    session = http_session or requests.Session()
    try:
        resolver = SourceFileResolver(
            source_provider,
            attribute=request.attribute,
            session=session,
            settings=DownloadSettings.from_config(config),
            disk_root=uploader.disk_root(source_name),
            url_formatter=capabilities.url_formatter,
            preserve_names=request.preserve_names,
        )
        processor = RecordProcessor(
            context,
            attribute=request.attribute,
            resolver=resolver,
            uploader=uploader,
            target_options=target_options,
            capabilities=capabilities,
            dry_run=request.dry_run,
        )
        for page in iter_record_pages(model_cls, chunk_size=chunk_size):
            for record in page:
                processor.process(record)
            context.cache.trim()
            db.session.expunge_all()
    finally:
        if http_session is None:
            session.close()

    LOGGER.info("Finished. %s", context.stats.summary())
    return context.stats


def resolve_target_options(
    capabilities: RecordCapabilities,
    attribute: str,
    *,
    target_provider: str,
    folder: str | None,
    uploader: ImageUploader,
    preserve_names: bool,
) -> ImageUploadOptions:
    """Model defaults (or the uploader's), overridden by run-level choices."""
    if capabilities.upload_options is not None:
        options = capabilities.upload_options(attribute)
    else:
        options = uploader.default_options()

    folder = normalise_folder(folder)
    options = options.with_overrides(provider=target_provider, folder=folder or None)
    if preserve_names:
        options = options.with_overrides(
            preserve_original_name=True, generate_unique_name=False
        )
    return options


def resolve_chunk_size(value: int | None) -> int:
    if value is None or value <= 0:
        return DEFAULT_CHUNK_SIZE
    return value


def load_model_class(path: str) -> type | None:
    module_name, _, class_name = path.strip().lstrip(".").rpartition(".")
    if not module_name or not class_name:
        return None
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        LOGGER.debug("Cannot import %s: %s", module_name, exc)
        return None
    except Exception as exc:
        LOGGER.debug("Importing %s failed", module_name, exc_info=True)
        raise TransferPreconditionError(
            f"Model class [{path}] could not be loaded: {exc}"
        ) from exc
    candidate = getattr(module, class_name, None)
    return candidate if isinstance(candidate, type) else None


def _check_model(model_cls: type | None, request: TransferRequest) -> RecordCapabilities:
    if model_cls is None:
        raise TransferPreconditionError(f"Model class [{request.model}] was not found.")
    if not issubclass(model_cls, db.Model):
        raise TransferPreconditionError(
            f"Class [{request.model}] must be a SQLAlchemy model."
        )

    capabilities = RecordCapabilities.inspect(model_cls)
    if capabilities.image_attributes is None:
        raise TransferPreconditionError(
            f"Model [{request.model}] must use the HasImages mixin."
        )
    if request.attribute not in capabilities.image_attributes:
        raise TransferPreconditionError(
            f"Attribute [{request.attribute}] is not registered as an image "
            f"collection on [{request.model}]."
        )
    return capabilities


def _resolve_provider(
    uploader: ImageUploader, name: str, role: str
) -> ImageStorageProvider:
    try:
        return uploader.get_provider(name)
    except ProviderError as exc:
        raise TransferPreconditionError(
            f"Unable to resolve {role} provider [{name}]: {exc}"
        ) from exc
