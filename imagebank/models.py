"""Database models carrying image collections."""

from __future__ import annotations

from datetime import UTC, datetime

from flask import current_app
from sqlalchemy import event

from .extensions import db
from .services.uploader import ImageUploadOptions


class HasImages:
    """Mixin for models that store image lists in one or more attributes.

    Each registered attribute holds a list of mappings with a ``src`` key,
    either as native JSON or as a JSON-encoded string.
    """

    image_attributes: tuple[str, ...] = ("images",)
    _quiet_save = False

    @classmethod
    def image_attribute_names(cls) -> tuple[str, ...]:
        return tuple(cls.image_attributes)

    def save_quietly(self) -> None:
        """Persist the record without firing the save hooks."""
        self._quiet_save = True
        try:
            db.session.add(self)
            db.session.commit()
        finally:
            self._quiet_save = False


class Product(HasImages, db.Model):
    __tablename__ = "products"

    image_attributes = ("images", "gallery")

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(160), nullable=False)
    images = db.Column(db.JSON, default=list, nullable=False)
    # JSON-encoded list kept as text by older imports
    gallery = db.Column(db.Text)
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    updated_at = db.Column(db.DateTime(timezone=True))

    @classmethod
    def image_upload_options(cls, attribute: str) -> ImageUploadOptions:
        config = current_app.config
        return ImageUploadOptions(
            provider=config["IMAGE_DEFAULT_PROVIDER"],
            folder=f"products/{attribute}",
            preserve_original_name=config.get("IMAGE_PRESERVE_ORIGINAL_NAME", False),
            generate_unique_name=config.get("IMAGE_GENERATE_UNIQUE_NAME", True),
        )

    def format_image_url_for_attribute(self, attribute: str, src: str) -> str | None:
        base_url = (current_app.config.get("PRODUCT_IMAGE_BASE_URL") or "").strip()
        if not base_url:
            return None
        return f"{base_url.rstrip('/')}/{attribute}/{src.lstrip('/')}"


@event.listens_for(Product, "before_update")
def _touch_updated_at(mapper, connection, target: Product) -> None:  # type: ignore[no-untyped-def]
    if target._quiet_save:
        return
    target.updated_at = datetime.now(UTC)
