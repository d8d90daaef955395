from __future__ import annotations

import os
from datetime import datetime
from functools import lru_cache
from typing import Iterator, Optional

from google.api_core.exceptions import NotFound
from google.cloud import storage
from google.oauth2 import service_account


# Defaults can be overridden via env vars without touching code
DEFAULT_BUCKET = os.getenv("BUCKET_NAME") or os.getenv("GOOGLE_CLOUD_BUCKET_NAME", "profile-media")
DEFAULT_KEYFILE = os.getenv("GCS_KEY_FILE") or os.getenv("GOOGLE_CLOUD_KEY_FILE", "secrets/gcs_bucket_key.json")


def _credentials():
    """
    Return credentials for the storage client. Prefer an explicit service-account
    key file; fall back to Application Default Credentials when it is missing.
    """
    path = DEFAULT_KEYFILE
    if path and os.path.exists(path):
        return service_account.Credentials.from_service_account_file(path)
    return None


@lru_cache(maxsize=1)
def storage_client() -> storage.Client:
    creds = _credentials()
    if creds is not None:
        return storage.Client(credentials=creds, project=creds.project_id)
    return storage.Client()  # ADC


def get_bucket(name: Optional[str] = None) -> storage.Bucket:
    return storage_client().bucket(name or DEFAULT_BUCKET)


def bucket_name() -> str:
    return DEFAULT_BUCKET


def public_url(blob_name: str) -> str:
    base = (os.getenv("PUBLIC_MEDIA_BASE_URL") or f"https://storage.googleapis.com/{bucket_name()}").rstrip("/")
    return f"{base}/{blob_name.lstrip('/')}"


def cdn_url(blob_name: str) -> str:
    """CDN address of a blob; the plain access URL when no CDN is configured."""
    base = (os.getenv("CDN_BASE_URL") or "").strip().rstrip("/")
    if not base:
        return public_url(blob_name)
    return f"{base}/{blob_name.lstrip('/')}"


def upload_bytes(data: bytes, blob_name: str, *, content_type: Optional[str] = None, cache_seconds: int = 0) -> str:
    blob = get_bucket().blob(blob_name)
    if cache_seconds:
        blob.cache_control = f"public, max-age={int(cache_seconds)}"
    blob.upload_from_string(data, content_type=content_type)
    return blob.name


def delete_blob(blob_name: str) -> None:
    """Delete one blob. Raises FileNotFoundError when it does not exist."""
    blob = get_bucket().blob(blob_name)
    try:
        blob.delete()
    except NotFound:
        raise FileNotFoundError(blob_name)


def list_blob_names(prefix: str, *, created_before: Optional[datetime] = None) -> Iterator[str]:
    """Names under ``prefix``, optionally only blobs created before ``created_before``."""
    bucket = get_bucket()
    for blob in bucket.list_blobs(prefix=prefix):
        created = getattr(blob, "time_created", None)
        if created_before is not None and created is not None and created >= created_before:
            continue
        yield blob.name
