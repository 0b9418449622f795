#!/usr/bin/env python3
"""Run the image transfer command from a source checkout.

Equivalent to the ``imagebank-transfer-images`` console script, for hosts
where the package is not installed::

    python tools/transfer_images.py imagebank.models.Product --target s3 --dry-run
"""

from __future__ import annotations

import sys
from pathlib import Path

from dotenv import load_dotenv


def _ensure_project_path() -> None:
    project_root = Path(__file__).resolve().parents[1]
    if str(project_root) not in sys.path:
        sys.path.insert(0, str(project_root))


_ensure_project_path()
load_dotenv()

from imagebank.cli import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
