"""
Merges a submitted image ordering against a profile's stored image set.

The work is split so that each step sits on the right side of the transaction
boundary:

* ``plan_reconciliation`` is pure: it decides which stored images survive, which
  uploads are new and the final contiguous positions.
* ``materialize_uploads`` pushes the new uploads to the blob store before any
  row is written.
* ``write_image_set`` applies the plan inside the caller's transaction.
* ``release_unreferenced_blobs`` runs after commit and deletes the blob trio of
  every removed key that no row references any more.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src import image_pipeline
from src.db import readonly_session_scope
from src.errors import StateError, ValidationError
from src.image_pipeline import CleanupReport, ProcessedImage, WatermarkConfig

logger = logging.getLogger(__name__)

_IMAGE_COLUMNS = (
    "thumbnail_url",
    "thumbnail_cdn_url",
    "thumbnail_storage_key",
    "medium_url",
    "medium_cdn_url",
    "medium_storage_key",
    "high_quality_url",
    "high_quality_cdn_url",
    "high_quality_storage_key",
)


@dataclass(frozen=True)
class ImageRef:
    """One entry of a submitted order: a stored image by key or an upload by slot."""

    kind: str
    position: float
    key: Optional[str] = None
    index: Optional[int] = None

    @classmethod
    def existing(cls, key: str, position: float) -> "ImageRef":
        return cls(kind="existing", position=position, key=key)

    @classmethod
    def new(cls, index: int, position: float) -> "ImageRef":
        return cls(kind="new", position=position, index=index)


@dataclass(frozen=True)
class StoredImage:
    id: int
    position: int
    image: ProcessedImage

    @property
    def medium_storage_key(self) -> str:
        return self.image.medium_storage_key

    @classmethod
    def from_row(cls, row: Mapping[str, object]) -> "StoredImage":
        return cls(
            id=int(row["id"]),
            position=int(row["position"]),
            image=ProcessedImage.from_columns(row),
        )


@dataclass
class ImageSubmission:
    touched: bool = False
    order: Optional[List[ImageRef]] = None
    uploads: List[bytes] = field(default_factory=list)


@dataclass(frozen=True)
class PlannedImage:
    position: int
    existing: Optional[StoredImage] = None
    upload_index: Optional[int] = None


@dataclass
class ReconcilePlan:
    touched: bool
    final: List[PlannedImage]
    removed: List[StoredImage]

    @property
    def upload_indexes(self) -> List[int]:
        return [entry.upload_index for entry in self.final if entry.upload_index is not None]

    @property
    def unchanged(self) -> bool:
        if not self.touched:
            return True
        if self.removed or self.upload_indexes:
            return False
        return all(entry.existing.position == entry.position for entry in self.final)


def _ordered(existing: Sequence[StoredImage]) -> List[StoredImage]:
    return sorted(existing, key=lambda image: (image.position, image.id))


def plan_reconciliation(existing: Sequence[StoredImage], submission: ImageSubmission) -> ReconcilePlan:
    current = _ordered(existing)
    if not submission.touched:
        final = [PlannedImage(position=index, existing=image) for index, image in enumerate(current)]
        return ReconcilePlan(touched=False, final=final, removed=[])

    if submission.order is None:
        refs = [ImageRef.existing(image.medium_storage_key, index) for index, image in enumerate(current)]
        refs.extend(ImageRef.new(index, len(current) + index) for index in range(len(submission.uploads)))
    else:
        refs = list(submission.order)

    existing_keys = [ref.key for ref in refs if ref.kind == "existing"]
    upload_refs = [ref.index for ref in refs if ref.kind == "new"]
    repeated = sorted({key for key in existing_keys if existing_keys.count(key) > 1})
    repeated_uploads = sorted({index for index in upload_refs if upload_refs.count(index) > 1})
    if repeated or repeated_uploads:
        raise ValidationError(
            {
                "image_order": [f"Image {key} is listed twice" for key in repeated]
                + [f"Upload {index} is listed twice" for index in repeated_uploads]
            }
        )

    by_key = {image.medium_storage_key: image for image in current}
    unknown = [ref.key for ref in refs if ref.kind == "existing" and ref.key not in by_key]
    if unknown:
        raise ValidationError({"image_order": [f"Image {key} does not belong to this profile" for key in unknown]})
    missing_uploads = [ref.index for ref in refs if ref.kind == "new" and not 0 <= ref.index < len(submission.uploads)]
    if missing_uploads:
        raise ValidationError({"image_order": [f"Upload {index} was not received" for index in missing_uploads]})

    # sorted() is stable, so equal positions keep their submitted order.
    ranked = sorted(refs, key=lambda ref: ref.position)
    final: List[PlannedImage] = []
    for position, ref in enumerate(ranked):
        if ref.kind == "existing":
            final.append(PlannedImage(position=position, existing=by_key[ref.key]))
        else:
            final.append(PlannedImage(position=position, upload_index=ref.index))

    kept = {ref.key for ref in refs if ref.kind == "existing"}
    removed = [image for image in current if image.medium_storage_key not in kept]
    return ReconcilePlan(touched=True, final=final, removed=removed)


def materialize_uploads(
    plan: ReconcilePlan,
    uploads: Sequence[bytes],
    *,
    watermark: Optional[WatermarkConfig] = None,
) -> Dict[int, ProcessedImage]:
    """Upload every new image the plan keeps, keyed by its upload slot."""
    indexes = plan.upload_indexes
    if not indexes:
        return {}
    processed = image_pipeline.process_uploads([uploads[index] for index in indexes], watermark=watermark)
    return dict(zip(indexes, processed))


def discard_uploads(processed: Mapping[int, ProcessedImage], *, context: str) -> CleanupReport:
    report = CleanupReport()
    for image in processed.values():
        report.merge(image_pipeline.delete_image(image.medium_storage_key))
    report.log(context)
    return report


def load_stored_images(session: Session, profile_id: int) -> List[StoredImage]:
    rows = session.execute(
        text(
            f"""
            SELECT id, position, {", ".join(_IMAGE_COLUMNS)}
            FROM profile_images
            WHERE profile_id = :profile_id
            ORDER BY position, id
            """
        ),
        {"profile_id": profile_id},
    ).mappings().all()
    return [StoredImage.from_row(row) for row in rows]


def insert_image_row(session: Session, profile_id: int, position: int, image: ProcessedImage) -> int:
    params = dict(image.as_columns())
    params.update({"profile_id": profile_id, "position": position})
    return int(
        session.execute(
            text(
                f"""
                INSERT INTO profile_images (profile_id, position, {", ".join(_IMAGE_COLUMNS)})
                VALUES (:profile_id, :position, {", ".join(f":{column}" for column in _IMAGE_COLUMNS)})
                RETURNING id
                """
            ),
            params,
        ).scalar_one()
    )


def _confirm_rows(session: Session, profile_id: int, images: Sequence[StoredImage]) -> None:
    ids = [image.id for image in images]
    if not ids:
        return
    found = session.execute(
        text("SELECT id FROM profile_images WHERE profile_id = :profile_id AND id IN :ids").bindparams(
            bindparam("ids", expanding=True)
        ),
        {"profile_id": profile_id, "ids": ids},
    ).scalars().all()
    if len(set(found)) != len(set(ids)):
        raise StateError("Profile images changed while saving; reload and try again.")


def write_image_set(
    session: Session,
    profile_id: int,
    plan: ReconcilePlan,
    processed: Mapping[int, ProcessedImage],
    *,
    source_profile_id: Optional[int] = None,
) -> List[str]:
    """
    Apply ``plan`` to ``profile_id`` inside the caller's transaction.

    When ``source_profile_id`` names another profile the plan was computed against
    that profile's rows; the kept images are cloned onto ``profile_id`` and the
    source rows are left alone. Returns the medium keys whose rows were deleted so
    the caller can release their blobs once the transaction has committed.
    """
    owner_id = profile_id if source_profile_id is None else source_profile_id
    _confirm_rows(session, owner_id, [entry.existing for entry in plan.final if entry.existing is not None])

    if source_profile_id is not None and source_profile_id != profile_id:
        for entry in plan.final:
            image = entry.existing.image if entry.existing is not None else processed[entry.upload_index]
            insert_image_row(session, profile_id, entry.position, image)
        logger.info(
            "images.clone source_profile_id=%s profile_id=%s count=%s",
            source_profile_id,
            profile_id,
            len(plan.final),
        )
        return []

    if not plan.touched:
        return []

    removed_ids = [image.id for image in plan.removed]
    if removed_ids:
        _confirm_rows(session, profile_id, plan.removed)
        session.execute(
            text("DELETE FROM profile_images WHERE profile_id = :profile_id AND id IN :ids").bindparams(
                bindparam("ids", expanding=True)
            ),
            {"profile_id": profile_id, "ids": removed_ids},
        )

    moved = 0
    inserted = 0
    for entry in plan.final:
        if entry.existing is not None:
            if entry.existing.position != entry.position:
                session.execute(
                    text("UPDATE profile_images SET position = :position WHERE id = :id"),
                    {"position": entry.position, "id": entry.existing.id},
                )
                moved += 1
        else:
            insert_image_row(session, profile_id, entry.position, processed[entry.upload_index])
            inserted += 1

    logger.info(
        "images.reconcile profile_id=%s removed=%s moved=%s inserted=%s total=%s",
        profile_id,
        len(removed_ids),
        moved,
        inserted,
        len(plan.final),
    )
    return [image.medium_storage_key for image in plan.removed]


def referenced_keys(session: Session, keys: Sequence[str]) -> set[str]:
    if not keys:
        return set()
    return set(
        session.execute(
            text(
                "SELECT DISTINCT medium_storage_key FROM profile_images WHERE medium_storage_key IN :keys"
            ).bindparams(bindparam("keys", expanding=True)),
            {"keys": list(keys)},
        ).scalars().all()
    )


def release_unreferenced_blobs(keys: Iterable[str], *, context: str = "release") -> CleanupReport:
    """
    Delete the blob trio of each medium key that no ``profile_images`` row still
    references. Must run after the transaction that removed the rows committed.
    Never raises; failures are logged and reported.
    """
    unique_keys = list(dict.fromkeys(key for key in keys if key))
    report = CleanupReport()
    if not unique_keys:
        return report

    try:
        with readonly_session_scope() as session:
            still_used = referenced_keys(session, unique_keys)
    except SQLAlchemyError as exc:
        logger.error("blob.release reference check failed context=%s keys=%s error=%s", context, unique_keys, exc)
        report.failed.extend((key, "reference check failed") for key in unique_keys)
        return report

    for key in unique_keys:
        if key in still_used:
            logger.debug("blob.release kept key=%s context=%s", key, context)
            continue
        report.merge(image_pipeline.delete_image(key))
    report.log(context)
    return report
