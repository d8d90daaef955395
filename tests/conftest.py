"""Pytest configuration and fixtures."""

import io
import os
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
from google.api_core.exceptions import NotFound
from PIL import Image
from sqlalchemy import text

# Set test environment variables before importing application modules
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("SESSION_SECRET", "test-session-secret")
os.environ.setdefault("BUCKET_NAME", "test-bucket")
os.environ.setdefault("PUBLIC_MEDIA_BASE_URL", "https://media.test")
os.environ.setdefault("WATERMARK_TIERS", "")

from src import db, gcs_storage  # noqa: E402
from src.identity import Identity, ensure_user  # noqa: E402
from src.image_reconciler import ImageRef, ImageSubmission  # noqa: E402
from src.marketplace_schema import ensure_marketplace_schema  # noqa: E402
from src.profile_tags import seed_reference_data  # noqa: E402
from src.profile_validation import ProfileInput  # noqa: E402


class FakeBlob:
    def __init__(self, bucket: "FakeBucket", name: str) -> None:
        self.bucket = bucket
        self.name = name
        self.cache_control: Optional[str] = None
        self.time_created: Optional[datetime] = bucket.created.get(name)

    def upload_from_string(self, data: bytes, content_type: Optional[str] = None) -> None:
        if any(marker in self.name for marker in self.bucket.fail_uploads_matching):
            raise RuntimeError(f"upload refused for {self.name}")
        self.bucket.objects[self.name] = bytes(data)
        self.bucket.content_types[self.name] = content_type
        self.bucket.created[self.name] = self.bucket.clock()

    def download_as_bytes(self) -> bytes:
        if self.name not in self.bucket.objects:
            raise NotFound(self.name)
        return self.bucket.objects[self.name]

    def delete(self) -> None:
        if self.name in self.bucket.fail_deletes:
            raise RuntimeError(f"delete refused for {self.name}")
        if self.name not in self.bucket.objects:
            raise NotFound(self.name)
        del self.bucket.objects[self.name]
        self.bucket.deleted.append(self.name)

    def exists(self) -> bool:
        return self.name in self.bucket.objects


class FakeBucket:
    """In-memory stand-in for a google-cloud-storage bucket."""

    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, Optional[str]] = {}
        self.created: Dict[str, datetime] = {}
        self.deleted: List[str] = []
        self.fail_uploads_matching: set = set()
        self.fail_deletes: set = set()
        self.now = datetime.now(timezone.utc) - timedelta(days=1)

    def clock(self) -> datetime:
        return self.now

    def blob(self, name: str) -> FakeBlob:
        return FakeBlob(self, name)

    def list_blobs(self, prefix: str = ""):
        return [self.blob(name) for name in sorted(self.objects) if name.startswith(prefix)]

    def keys(self) -> set:
        return set(self.objects)


def make_image_bytes(color=(200, 30, 30), size=(400, 600), fmt="PNG") -> bytes:
    output = io.BytesIO()
    Image.new("RGB", size, color).save(output, format=fmt)
    return output.getvalue()


def profile_input(**overrides) -> ProfileInput:
    values = dict(
        name="Alice",
        age=30,
        price=120.0,
        description="Friendly and punctual",
        address="1 Main Street",
        latitude=40.4168,
        longitude=-3.7038,
        published=None,
        user_id=None,
        tags={},
    )
    values.update(overrides)
    return ProfileInput(**values)


def uploads(*colors) -> ImageSubmission:
    images = [make_image_bytes(color=color) for color in colors]
    return ImageSubmission(
        touched=True,
        order=[ImageRef.new(index, index) for index in range(len(images))],
        uploads=images,
    )


@pytest.fixture
def bucket(monkeypatch: pytest.MonkeyPatch) -> FakeBucket:
    fake = FakeBucket()
    monkeypatch.setattr(gcs_storage, "get_bucket", lambda name=None: fake)
    return fake


@pytest.fixture
def database(tmp_path, monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'marketplace.db'}")
    monkeypatch.delenv("INSTANCE_CONNECTION_NAME", raising=False)
    db.reset_engine()
    ensure_marketplace_schema(db.get_engine())
    seed_reference_data()
    yield
    db.reset_engine()


def _make_user(email: str) -> Identity:
    with db.session_scope() as session:
        user_id, _, _, role = ensure_user(session, email=email, name=email.split("@")[0])
    return Identity(user_id=user_id, role=role)


@pytest.fixture
def owner(database) -> Identity:
    return _make_user("owner@example.com")


@pytest.fixture
def other_user(database) -> Identity:
    return _make_user("other@example.com")


@pytest.fixture
def admin(database) -> Identity:
    identity = _make_user("admin@example.com")
    with db.session_scope() as session:
        session.execute(text("UPDATE users SET role = 'admin' WHERE id = :id"), {"id": identity.user_id})
    return Identity(user_id=identity.user_id, role="admin")
