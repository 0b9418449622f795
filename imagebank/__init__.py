"""Application factory for the image transfer tooling."""

from __future__ import annotations

from flask import Flask

from .extensions import db


def create_app(config_name: str | None = None) -> Flask:
    """Build and configure the Flask application instance.

    Settings are read from the environment when the config module is first
    imported, so entry points load ``.env`` before calling this.
    """
    from .config import get_config

    app = Flask(__name__)
    config_obj = get_config(config_name)
    app.config.from_object(config_obj)

    register_extensions(app)

    return app


def register_extensions(app: Flask) -> None:
    """Initialize application extensions."""
    db.init_app(app)
