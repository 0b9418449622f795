"""Helpers for storing transferred images in Amazon S3."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import boto3
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError
from flask import current_app

LOGGER = logging.getLogger(__name__)
_DEFAULT_CACHE_CONTROL = "public, max-age=31536000, immutable"
_EXTENSION_KEY = "imagebank_s3_client"
_ACL_DISABLED_FLAG = "imagebank_s3_acl_disabled"


class S3Error(RuntimeError):
    """Base exception for S3 helper failures."""


class S3ConfigurationError(S3Error):
    """Raised when required S3 configuration is missing."""


class S3UploadError(S3Error):
    """Raised when uploading a file to S3 fails."""


def upload_file(
    path: Path,
    *,
    object_key: str,
    content_type: str,
    cache_control: str | None = _DEFAULT_CACHE_CONTROL,
) -> str:
    """Upload a local file to S3 under ``object_key`` and return the key."""
    if not object_key:
        raise ValueError("object_key must be provided")
    key = object_key.lstrip("/")
    bucket = get_bucket_name()
    client = _get_client()
    app_extensions = current_app.extensions
    put_params: dict[str, Any] = {
        "Bucket": bucket,
        "Key": key,
        "ContentType": content_type,
    }
    acl = None if app_extensions.get(_ACL_DISABLED_FLAG, False) else _resolve_acl()
    if acl:
        put_params["ACL"] = acl
    if cache_control:
        put_params["CacheControl"] = cache_control

    try:
        _put_file(client, path, put_params)
    except ClientError as exc:
        error_code = exc.response.get("Error", {}).get("Code")
        if error_code != "AccessControlListNotSupported" or "ACL" not in put_params:
            raise S3UploadError(f"Failed to upload object {key!r}: {exc}") from exc
        LOGGER.warning("Bucket %s rejects ACLs; retrying upload without ACL", bucket)
        put_params.pop("ACL", None)
        app_extensions[_ACL_DISABLED_FLAG] = True
        try:
            _put_file(client, path, put_params)
        except (BotoCoreError, ClientError) as retry_exc:
            raise S3UploadError(
                f"Failed to upload object {key!r}: {retry_exc}"
            ) from retry_exc
    except BotoCoreError as exc:
        raise S3UploadError(f"Failed to upload object {key!r}: {exc}") from exc
    except OSError as exc:
        raise S3UploadError(f"Cannot read {path}: {exc}") from exc

    LOGGER.debug("Uploaded %s to S3 bucket %s at key %s", path, bucket, key)
    return key


def build_public_url(key: str) -> str:
    """Construct a public URL for an object key, defaulting to S3 endpoints."""
    if not key:
        raise ValueError("key must be provided")
    normalised = key.lstrip("/")
    base_url = (
        current_app.config.get("S3_PUBLIC_BASE_URL")
        or os.getenv("S3_PUBLIC_BASE_URL")
        or ""
    ).strip()
    if base_url:
        base = base_url.rstrip("/")
        if not base.lower().startswith(("https://", "http://")):
            base = f"https://{base}"
        return f"{base}/{normalised}"

    bucket = get_bucket_name()
    region = _resolve_region()
    if region and region != "us-east-1":
        return f"https://{bucket}.s3.{region}.amazonaws.com/{normalised}"
    return f"https://{bucket}.s3.amazonaws.com/{normalised}"


def get_bucket_name() -> str:
    bucket = current_app.config.get("S3_BUCKET_NAME") or os.getenv("S3_BUCKET_NAME")
    if not bucket:
        raise S3ConfigurationError("S3 bucket name is not configured")
    return str(bucket)


def _put_file(client: BaseClient, path: Path, params: dict[str, Any]) -> None:
    with open(path, "rb") as body:
        client.put_object(Body=body, **params)


def _get_client() -> BaseClient:
    client = current_app.extensions.get(_EXTENSION_KEY)
    if client:
        return client

    client_kwargs: dict[str, Any] = {}
    region = _resolve_region()
    if region:
        client_kwargs["region_name"] = region

    endpoint_url = current_app.config.get("S3_ENDPOINT_URL") or os.getenv(
        "S3_ENDPOINT_URL"
    )
    if endpoint_url:
        client_kwargs["endpoint_url"] = endpoint_url

    client = boto3.client("s3", **client_kwargs)
    current_app.extensions[_EXTENSION_KEY] = client
    return client


def _resolve_acl() -> str | None:
    acl = current_app.config.get("S3_OBJECT_ACL")
    if acl:
        return str(acl)
    if _as_bool(current_app.config.get("S3_USE_OAC") or os.getenv("S3_USE_OAC")):
        return None
    return "public-read"


def _resolve_region() -> str | None:
    region = current_app.config.get("AWS_REGION") or os.getenv("AWS_REGION")
    if region:
        return str(region)
    return boto3.session.Session().region_name


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)
