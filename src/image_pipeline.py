from __future__ import annotations

import io
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple
from uuid import uuid4

from PIL import Image, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError

from src import gcs_storage
from src.errors import StorageError, ValidationError

logger = logging.getLogger(__name__)

PROFILE_IMAGE_PREFIX = (os.getenv("PROFILE_IMAGE_PREFIX") or "profiles").strip("/ ") or "profiles"
MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES") or 10 * 1024 * 1024)
OUTPUT_FORMAT = "WEBP"
OUTPUT_EXTENSION = ".webp"
OUTPUT_CONTENT_TYPE = "image/webp"
UPLOAD_CACHE_SECONDS = 31536000
WATERMARK_POSITIONS = ("top-left", "top-right", "bottom-left", "bottom-right", "center", "top", "bottom")

try:
    LANCZOS = Image.Resampling.LANCZOS
except AttributeError:  # pragma: no cover
    LANCZOS = Image.LANCZOS


@dataclass(frozen=True)
class ImageTier:
    name: str
    width: int
    height: int
    quality: int
    suffix: str


THUMBNAIL = ImageTier("thumbnail", 176, 288, 70, "_thumb")
MEDIUM = ImageTier("medium", 352, 576, 80, "")
HIGH_QUALITY = ImageTier("high_quality", 704, 1152, 90, "_large")
TIERS: Tuple[ImageTier, ...] = (THUMBNAIL, MEDIUM, HIGH_QUALITY)


@dataclass(frozen=True)
class ImageVariant:
    url: str
    cdn_url: Optional[str]
    storage_key: str


@dataclass(frozen=True)
class ProcessedImage:
    """The three persisted derivatives of one uploaded image."""

    thumbnail: ImageVariant
    medium: ImageVariant
    high_quality: ImageVariant

    @property
    def medium_storage_key(self) -> str:
        return self.medium.storage_key

    def variant(self, tier_name: str) -> ImageVariant:
        return getattr(self, tier_name)

    def as_columns(self) -> Dict[str, Optional[str]]:
        columns: Dict[str, Optional[str]] = {}
        for tier in TIERS:
            variant = self.variant(tier.name)
            columns[f"{tier.name}_url"] = variant.url
            columns[f"{tier.name}_cdn_url"] = variant.cdn_url
            columns[f"{tier.name}_storage_key"] = variant.storage_key
        return columns

    @classmethod
    def from_columns(cls, row: Mapping[str, object]) -> "ProcessedImage":
        variants = {}
        for tier in TIERS:
            cdn_value = row.get(f"{tier.name}_cdn_url")
            variants[tier.name] = ImageVariant(
                url=str(row.get(f"{tier.name}_url") or ""),
                cdn_url=str(cdn_value) if cdn_value else None,
                storage_key=str(row.get(f"{tier.name}_storage_key") or ""),
            )
        return cls(**variants)


@dataclass
class CleanupReport:
    """Outcome of a best-effort blob deletion pass."""

    succeeded: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)

    def merge(self, other: "CleanupReport") -> "CleanupReport":
        self.succeeded.extend(other.succeeded)
        self.failed.extend(other.failed)
        return self

    def log(self, context: str) -> None:
        if self.failed:
            logger.warning(
                "blob.cleanup context=%s deleted=%s failed=%s",
                context,
                self.succeeded,
                [key for key, _ in self.failed],
            )
            return
        logger.info("blob.cleanup context=%s deleted=%s failed=[]", context, self.succeeded)


@dataclass(frozen=True)
class WatermarkConfig:
    tiers: FrozenSet[str] = frozenset()
    text: str = ""
    image_path: str = ""
    position: str = "bottom-right"
    padding: int = 12
    opacity: float = 0.5

    @classmethod
    def from_env(cls) -> "WatermarkConfig":
        tiers = frozenset(
            name.strip().lower()
            for name in (os.getenv("WATERMARK_TIERS") or "").split(",")
            if name.strip()
        )
        position = (os.getenv("WATERMARK_POSITION") or "bottom-right").strip().lower()
        if position not in WATERMARK_POSITIONS:
            logger.warning("watermark.config unknown position=%s, using bottom-right", position)
            position = "bottom-right"
        try:
            opacity = float(os.getenv("WATERMARK_OPACITY") or 0.5)
        except ValueError:
            opacity = 0.5
        try:
            padding = int(os.getenv("WATERMARK_PADDING") or 12)
        except ValueError:
            padding = 12
        return cls(
            tiers=tiers,
            text=(os.getenv("WATERMARK_TEXT") or "").strip(),
            image_path=(os.getenv("WATERMARK_IMAGE_PATH") or "").strip(),
            position=position,
            padding=max(0, padding),
            opacity=min(1.0, max(0.0, opacity)),
        )

    def applies_to(self, tier: ImageTier) -> bool:
        return tier.name in self.tiers and bool(self.text or self.image_path)


def tier_storage_key(base_key: str, tier: ImageTier) -> str:
    return f"{base_key}{tier.suffix}{OUTPUT_EXTENSION}"


def derive_storage_keys(medium_storage_key: str) -> Dict[str, str]:
    """Recover the key of every tier from the medium key by suffix substitution."""
    path = PurePosixPath(medium_storage_key)
    stem = path.name[: -len(path.suffix)] if path.suffix else path.name
    parent = "" if str(path.parent) == "." else f"{path.parent}/"
    base_key = f"{parent}{stem}"
    return {tier.name: tier_storage_key(base_key, tier) for tier in TIERS}


def _center_crop_box(width: int, height: int, target_ratio: float) -> tuple[int, int, int, int]:
    source_ratio = width / height
    if source_ratio > target_ratio:
        crop_height = height
        crop_width = int(round(height * target_ratio))
        left = max(0, (width - crop_width) // 2)
        top = 0
    else:
        crop_width = width
        crop_height = int(round(width / target_ratio))
        left = 0
        top = max(0, (height - crop_height) // 2)
    return left, top, min(width, left + crop_width), min(height, top + crop_height)


def _decode(raw_bytes: bytes) -> Image.Image:
    if not raw_bytes:
        raise ValidationError({"new_images": ["Uploaded image is empty."]})
    if len(raw_bytes) > MAX_IMAGE_BYTES:
        raise ValidationError(
            {"new_images": [f"Image exceeds {MAX_IMAGE_BYTES // (1024 * 1024)} MB limit."]}
        )
    try:
        with Image.open(io.BytesIO(raw_bytes)) as image_raw:
            image = ImageOps.exif_transpose(image_raw)
            image.load()
    except Image.DecompressionBombError as exc:
        raise ValidationError({"new_images": ["Image dimensions are too large."]}) from exc
    except (UnidentifiedImageError, OSError) as exc:
        raise ValidationError({"new_images": ["Uploaded file is not a readable image."]}) from exc

    if image.width <= 0 or image.height <= 0:
        raise ValidationError({"new_images": ["Uploaded image has invalid dimensions."]})
    if image.mode not in {"RGB", "RGBA"}:
        image = image.convert("RGBA" if "A" in image.getbands() else "RGB")
    return image


def _watermark_origin(canvas: tuple[int, int], mark: tuple[int, int], position: str, padding: int) -> tuple[int, int]:
    canvas_w, canvas_h = canvas
    mark_w, mark_h = mark
    centered_x = (canvas_w - mark_w) // 2
    centered_y = (canvas_h - mark_h) // 2
    right = canvas_w - mark_w - padding
    bottom = canvas_h - mark_h - padding
    origins = {
        "top-left": (padding, padding),
        "top-right": (right, padding),
        "bottom-left": (padding, bottom),
        "bottom-right": (right, bottom),
        "center": (centered_x, centered_y),
        "top": (centered_x, padding),
        "bottom": (centered_x, bottom),
    }
    x, y = origins.get(position, origins["bottom-right"])
    return max(0, x), max(0, y)


def _apply_watermark(image: Image.Image, config: WatermarkConfig) -> Image.Image:
    base = image.convert("RGBA")
    overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
    alpha = int(round(255 * config.opacity))

    if config.image_path:
        with Image.open(config.image_path) as mark_raw:
            mark = mark_raw.convert("RGBA")
        max_width = max(1, base.width // 4)
        if mark.width > max_width:
            mark = mark.resize((max_width, max(1, int(mark.height * max_width / mark.width))), LANCZOS)
        faded_alpha = mark.getchannel("A").point(lambda value: value * alpha // 255)
        mark.putalpha(faded_alpha)
        origin = _watermark_origin(base.size, mark.size, config.position, config.padding)
        overlay.paste(mark, origin, mark)
    else:
        draw = ImageDraw.Draw(overlay)
        font = ImageFont.load_default()
        left, top, right, bottom = draw.textbbox((0, 0), config.text, font=font)
        origin = _watermark_origin(base.size, (right - left, bottom - top), config.position, config.padding)
        draw.text((origin[0] - left, origin[1] - top), config.text, font=font, fill=(255, 255, 255, alpha))

    return Image.alpha_composite(base, overlay)


def render_tier(source: Image.Image, tier: ImageTier, watermark: Optional[WatermarkConfig] = None) -> bytes:
    crop_box = _center_crop_box(source.width, source.height, tier.width / tier.height)
    resized = source.crop(crop_box).resize((tier.width, tier.height), LANCZOS)
    if watermark is not None and watermark.applies_to(tier):
        resized = _apply_watermark(resized, watermark)
    output = io.BytesIO()
    resized.save(output, format=OUTPUT_FORMAT, quality=tier.quality)
    return output.getvalue()


def _render_and_upload(source: Image.Image, tier: ImageTier, base_key: str, watermark: Optional[WatermarkConfig]) -> ImageVariant:
    payload = render_tier(source, tier, watermark)
    storage_key = tier_storage_key(base_key, tier)
    gcs_storage.upload_bytes(
        payload,
        storage_key,
        content_type=OUTPUT_CONTENT_TYPE,
        cache_seconds=UPLOAD_CACHE_SECONDS,
    )
    return ImageVariant(
        url=gcs_storage.public_url(storage_key),
        cdn_url=gcs_storage.cdn_url(storage_key),
        storage_key=storage_key,
    )


def _delete_keys(storage_keys: Sequence[str]) -> CleanupReport:
    report = CleanupReport()
    for key in storage_keys:
        try:
            gcs_storage.delete_blob(key)
        except FileNotFoundError:
            logger.debug("blob.delete missing key=%s", key)
            report.succeeded.append(key)
        except Exception as exc:  # noqa: BLE001
            logger.warning("blob.delete failed key=%s error=%s", key, exc)
            report.failed.append((key, str(exc)))
        else:
            report.succeeded.append(key)
    return report


def process_upload(raw_bytes: bytes, *, watermark: Optional[WatermarkConfig] = None) -> ProcessedImage:
    """
    Produce and persist the thumbnail, medium and high quality derivatives of one
    upload. Tiers are rendered and uploaded concurrently; if any of them fails the
    tiers that did land are deleted again and StorageError is raised.
    """
    source = _decode(raw_bytes)
    config = watermark if watermark is not None else WatermarkConfig.from_env()
    base_key = f"{PROFILE_IMAGE_PREFIX}/{uuid4().hex}"

    sources = {tier.name: source.copy() for tier in TIERS}
    variants: Dict[str, ImageVariant] = {}
    errors: List[str] = []
    with ThreadPoolExecutor(max_workers=len(TIERS), thread_name_prefix="image-tier") as pool:
        futures = {
            tier.name: pool.submit(_render_and_upload, sources[tier.name], tier, base_key, config)
            for tier in TIERS
        }
        for tier_name, future in futures.items():
            try:
                variants[tier_name] = future.result()
            except Exception as exc:  # noqa: BLE001
                logger.error("image.tier failed base_key=%s tier=%s error=%s", base_key, tier_name, exc)
                errors.append(f"{tier_name}: {exc}")

    if errors:
        _delete_keys([variant.storage_key for variant in variants.values()]).log("partial_upload")
        raise StorageError(f"Failed to process and upload image ({'; '.join(errors)})")

    logger.info("image.upload base_key=%s tiers=%s", base_key, len(variants))
    return ProcessedImage(**variants)


def process_uploads(uploads: Sequence[bytes], *, watermark: Optional[WatermarkConfig] = None) -> List[ProcessedImage]:
    """
    Process a batch of uploads concurrently. All or nothing: on failure, every image
    already persisted by the batch is deleted before the error propagates.
    """
    if not uploads:
        return []
    config = watermark if watermark is not None else WatermarkConfig.from_env()
    results: List[Optional[ProcessedImage]] = [None] * len(uploads)
    first_error: Optional[BaseException] = None
    with ThreadPoolExecutor(max_workers=min(4, len(uploads)), thread_name_prefix="image-batch") as pool:
        futures = [pool.submit(process_upload, raw, watermark=config) for raw in uploads]
        for index, future in enumerate(futures):
            try:
                results[index] = future.result()
            except Exception as exc:  # noqa: BLE001
                if first_error is None:
                    first_error = exc

    if first_error is not None:
        report = CleanupReport()
        for processed in results:
            if processed is not None:
                report.merge(delete_image(processed.medium_storage_key))
        report.log("failed_batch")
        raise first_error

    return [processed for processed in results if processed is not None]


def delete_image(medium_storage_key: str) -> CleanupReport:
    """
    Delete the blob trio of one image. Each tier is attempted independently and
    failures are reported, never raised.
    """
    keys = derive_storage_keys(medium_storage_key)
    return _delete_keys([keys[tier.name] for tier in TIERS])
