"""Command line entry point for moving model images between storage providers.

Example::

    imagebank-transfer-images imagebank.models.Product --source local --target s3

Records are processed in primary-key order, so an interrupted run can be
resumed with ``--skip-before-id`` or a ``--skip-file`` listing processed
records as ``Product #42``.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Iterable

from dotenv import load_dotenv
from flask import Flask

# Config classes read the environment on import.
load_dotenv()

from . import create_app  # noqa: E402
from .services.transfer import (  # noqa: E402
    TransferPreconditionError,
    TransferRequest,
    run_transfer,
)

LOGGER = logging.getLogger("imagebank.transfer_images")

EXIT_SUCCESS = 0


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Transfer stored image references from one provider to another "
        "and update the model attribute paths."
    )
    parser.add_argument(
        "model",
        help="Fully qualified model class that uses the HasImages mixin",
    )
    parser.add_argument(
        "--attribute",
        default="images",
        help="Model attribute that stores images (default: images)",
    )
    parser.add_argument(
        "--source",
        default=None,
        help="Source provider name (defaults to IMAGE_DEFAULT_PROVIDER)",
    )
    parser.add_argument(
        "--target",
        default=None,
        help="Target provider name (defaults to IMAGE_DEFAULT_PROVIDER)",
    )
    parser.add_argument(
        "--folder",
        default=None,
        help="Destination folder on the target provider",
    )
    parser.add_argument(
        "--chunk",
        type=int,
        default=None,
        help="Number of records processed per chunk (default: TRANSFER_CHUNK_SIZE)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Simulate the transfer without persisting changes",
    )
    parser.add_argument(
        "--keep-names",
        action="store_true",
        help="Preserve original file names when uploading to the target provider",
    )
    parser.add_argument(
        "--skip-file",
        default=None,
        help='File listing already processed records, one per line, e.g. "Product #42"',
    )
    parser.add_argument(
        "--skip-before-id",
        type=int,
        default=None,
        help="Skip all records with ID less than or equal to this value",
    )
    parser.add_argument(
        "--config-name",
        default=None,
        help="Configuration to load (development, testing, production)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging output",
    )
    return parser.parse_args(argv)


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
        force=True,
    )
    for noisy in ("boto3", "botocore", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def build_request(args: argparse.Namespace) -> TransferRequest:
    folder = args.folder.strip("/") if args.folder is not None else None
    return TransferRequest(
        model=args.model.strip().lstrip("\\"),
        attribute=args.attribute or "images",
        source=args.source or None,
        target=args.target or None,
        folder=folder,
        chunk_size=args.chunk,
        dry_run=args.dry_run,
        preserve_names=args.keep_names,
        skip_file=args.skip_file,
        skip_before_id=args.skip_before_id,
    )


def main(argv: Iterable[str] | None = None, *, app: Flask | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose)

    application = app or create_app(args.config_name)
    request = build_request(args)

    with application.app_context():
        try:
            run_transfer(request)
        except TransferPreconditionError as exc:
            LOGGER.error("%s", exc)
            return exc.exit_code

    return EXIT_SUCCESS


if __name__ == "__main__":
    sys.exit(main())
