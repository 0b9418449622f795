"""Resume support: decide which records a run should leave alone."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ResumeFilter:
    """Record keys listed in a skip file plus an optional inclusive ID threshold."""

    skipped_ids: frozenset[int] = frozenset()
    skip_before_id: int | None = None

    @classmethod
    def load(
        cls,
        *,
        model_name: str,
        skip_file: str | os.PathLike[str] | None = None,
        skip_before_id: int | None = None,
    ) -> ResumeFilter:
        skipped = load_skipped_ids(skip_file, model_name) if skip_file else frozenset()
        if skip_before_id is not None:
            LOGGER.info("Will skip all records with ID <= %d", skip_before_id)
        return cls(skipped_ids=skipped, skip_before_id=skip_before_id)

    def should_skip(self, key: Any) -> bool:
        if key in self.skipped_ids:
            return True
        return self.skip_before_id is not None and key <= self.skip_before_id


def load_skipped_ids(path: str | os.PathLike[str], model_name: str) -> frozenset[int]:
    """Collect IDs from lines such as ``Product #42`` for the given class name.

    Lines that do not mention ``model_name`` followed by ``#<digits>`` are
    ignored. A missing or unreadable file yields an empty set.
    """
    skip_path = Path(path)
    if not skip_path.is_file() or not os.access(skip_path, os.R_OK):
        LOGGER.warning("Skip file not found or not readable: %s", skip_path)
        return frozenset()

    pattern = re.compile(rf"{re.escape(model_name)}\s+#(\d+)")
    skipped: set[int] = set()
    try:
        with skip_path.open(encoding="utf-8", errors="replace") as handle:
            for line in handle:
                match = pattern.search(line)
                if match:
                    skipped.add(int(match.group(1)))
    except OSError as exc:
        LOGGER.warning("Error reading skip file %s: %s", skip_path, exc)
        return frozenset()

    LOGGER.info("Loaded %d skipped IDs from %s", len(skipped), skip_path)
    return frozenset(skipped)
