"""Persistence helpers for image-bearing models."""

from __future__ import annotations

import logging
from typing import Any, Iterator

from sqlalchemy import inspect as sa_inspect
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db

LOGGER = logging.getLogger(__name__)


def iter_record_pages(model_cls: type, *, chunk_size: int) -> Iterator[list[Any]]:
    """Yield pages of ``model_cls`` ordered by primary key ascending.

    Paging is keyset-based, so records committed while a page is being
    processed do not shift later pages.
    """
    mapper = sa_inspect(model_cls)
    pk_column = mapper.primary_key[0]
    last_key: Any = None

    while True:
        query = select(model_cls).order_by(pk_column.asc()).limit(chunk_size)
        if last_key is not None:
            query = query.where(pk_column > last_key)
        page = list(db.session.scalars(query))
        if not page:
            break

        last_key = record_key(page[-1])
        LOGGER.debug(
            "Fetched %s page with keys %s-%s", model_cls.__name__, record_key(page[0]), last_key
        )
        yield page


def record_key(record: Any) -> Any:
    mapper = sa_inspect(record).mapper
    return mapper.primary_key_from_instance(record)[0]


def persist_record(record: Any, *, quiet: bool) -> None:
    """Commit ``record``, using its quiet save path when requested."""
    try:
        if quiet:
            record.save_quietly()
        else:
            db.session.add(record)
            db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise
