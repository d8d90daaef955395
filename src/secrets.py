from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from google.cloud import secretmanager

logger = logging.getLogger(__name__)

_REPO_ROOT = Path(__file__).resolve().parents[1]
_SECRETS_DIR = _REPO_ROOT / "secrets"
_SERVICE_ACCOUNT_FILES = {
    "prod": "marketplace-prod-sa.json",
    "dev": "marketplace-dev-sa.json",
}


def setup_secrets(env: str) -> dict[str, Path]:
    """
    Write secrets delivered as env vars (ENV_FILE, SERVICE_ACCOUNT_KEY) to disk.
    Returns the env var names mapped to the files that now hold them.
    """
    _SECRETS_DIR.mkdir(parents=True, exist_ok=True)

    targets: dict[str, Path] = {"ENV_FILE": _SECRETS_DIR / f"env.{env}"}
    if env in _SERVICE_ACCOUNT_FILES:
        targets["SERVICE_ACCOUNT_KEY"] = _SECRETS_DIR / _SERVICE_ACCOUNT_FILES[env]

    written: dict[str, Path] = {}
    for env_var, file_path in targets.items():
        value = os.environ.get(env_var)
        if not value:
            continue
        if file_path.exists():
            logger.info("secrets.setup skip existing file=%s", file_path)
        else:
            file_path.write_text(value)
        written[env_var] = file_path
        if env_var == "SERVICE_ACCOUNT_KEY":
            # Both the storage client and Secret Manager pick this up as ADC.
            os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = str(file_path)
            os.environ.setdefault("GCS_KEY_FILE", str(file_path))
    return written


@lru_cache(maxsize=1)
def _sm_client() -> secretmanager.SecretManagerServiceClient:
    return secretmanager.SecretManagerServiceClient()


@lru_cache(maxsize=256)
def _sm_get(resource: str) -> str:
    """Retrieve a secret value from Google Cloud Secret Manager."""
    resp = _sm_client().access_secret_version(name=resource)
    return resp.payload.data.decode("utf-8")


def get_secret(name: str, default: Optional[str] = None) -> str:
    """
    Resolution order:
      1) NAME (env/.env)
      2) NAME_RESOURCE (Secret Manager resource path)
      3) default
      4) else raise RuntimeError
    """
    if (value := os.getenv(name)) is not None:
        return value
    if resource := os.getenv(f"{name}_RESOURCE"):
        return _sm_get(resource)
    if default is not None:
        return default
    raise RuntimeError(f"Missing {name} (or {name}_RESOURCE)")
