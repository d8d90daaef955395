from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from src.errors import ValidationError
from src.image_reconciler import ImageRef
from src.marketplace_schema import TAG_CATEGORIES

REQUIRED_TEXT_FIELDS = ("name", "description", "address")
MIN_AGE = 18
MAX_AGE = 100
_TRUE_VALUES = {"1", "true", "t", "yes", "on"}
_FALSE_VALUES = {"0", "false", "f", "no", "off", ""}


@dataclass
class ProfileInput:
    name: str
    age: int
    price: float
    description: str
    address: str
    latitude: float
    longitude: float
    published: Optional[bool] = None
    user_id: Optional[int] = None
    tags: Dict[str, List[int]] = field(default_factory=dict)

    def scalar_columns(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "age": self.age,
            "price": self.price,
            "description": self.description,
            "address": self.address,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


@dataclass
class ImageOrderInput:
    touched: bool = False
    order: Optional[List[ImageRef]] = None


def _get_all(form: Mapping[str, Any], key: str) -> List[Any]:
    getlist = getattr(form, "getlist", None)
    if callable(getlist):
        return list(getlist(key))
    value = form.get(key)
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _text(form: Mapping[str, Any], key: str) -> str:
    value = form.get(key)
    return "" if value is None else str(value).strip()


def _number(raw: str) -> Optional[float]:
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def parse_bool(raw: Any, *, default: Optional[bool] = None) -> Optional[bool]:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    value = str(raw).strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return default if value == "" else False
    raise ValueError(f"not a boolean: {raw!r}")


def parse_profile_form(form: Mapping[str, Any]) -> ProfileInput:
    """
    Validate the scalar fields of a create/update submission.

    All field problems are collected and raised together as one ValidationError
    mapping field name to messages.
    """
    errors: Dict[str, List[str]] = {}

    for key in REQUIRED_TEXT_FIELDS:
        if not _text(form, key):
            errors[key] = [f"{key} is required"]

    price = _number(_text(form, "price"))
    if price is None or price < 0:
        errors["price"] = ["Price must be a valid positive number"]

    age = _number(_text(form, "age"))
    if age is None or age < MIN_AGE or age > MAX_AGE or age != int(age):
        errors["age"] = [f"Age must be between {MIN_AGE} and {MAX_AGE}"]

    latitude = _number(_text(form, "latitude"))
    if latitude is None:
        errors["latitude"] = ["Latitude must be a valid number"]
    longitude = _number(_text(form, "longitude"))
    if longitude is None:
        errors["longitude"] = ["Longitude must be a valid number"]

    published: Optional[bool] = None
    try:
        published = parse_bool(form.get("published"))
    except ValueError:
        errors["published"] = ["Published must be true or false"]

    user_id: Optional[int] = None
    raw_user_id = _text(form, "user_id")
    if raw_user_id:
        try:
            user_id = int(raw_user_id)
        except ValueError:
            errors["user_id"] = ["User id must be an integer"]

    tags: Dict[str, List[int]] = {}
    for category in TAG_CATEGORIES:
        ids: List[int] = []
        for raw in _get_all(form, category):
            text_value = str(raw).strip()
            if not text_value:
                continue
            try:
                tag_id = int(text_value)
            except ValueError:
                errors.setdefault(category, []).append(f"Invalid {category} id: {text_value}")
                continue
            if tag_id not in ids:
                ids.append(tag_id)
        tags[category] = ids

    if errors:
        raise ValidationError(errors)

    return ProfileInput(
        name=_text(form, "name"),
        age=int(age),
        price=float(price),
        description=_text(form, "description"),
        address=_text(form, "address"),
        latitude=float(latitude),
        longitude=float(longitude),
        published=published,
        user_id=user_id,
        tags=tags,
    )


def parse_image_order(form: Mapping[str, Any], *, upload_count: int) -> ImageOrderInput:
    """
    Read the image widget fields. A submission is considered to have touched the
    image set when ``images_touched`` is true or a non-empty ``image_order`` is
    sent; otherwise the stored images are left alone.
    """
    errors: List[str] = []
    try:
        touched = bool(parse_bool(form.get("images_touched"), default=False))
    except ValueError:
        raise ValidationError({"images_touched": ["images_touched must be true or false"]})

    raw_order = _text(form, "image_order")
    entries: List[Any] = []
    if raw_order:
        try:
            entries = json.loads(raw_order)
        except json.JSONDecodeError:
            raise ValidationError({"image_order": ["image_order must be a JSON list"]})
        if not isinstance(entries, list):
            raise ValidationError({"image_order": ["image_order must be a JSON list"]})

    order: List[ImageRef] = []
    seen_keys = set()
    seen_indexes = set()
    for number, entry in enumerate(entries):
        if not isinstance(entry, dict):
            errors.append(f"Entry {number} must be an object")
            continue
        kind = entry.get("type")
        position = entry.get("position", number)
        if isinstance(position, bool) or not isinstance(position, (int, float)):
            errors.append(f"Entry {number} has an invalid position")
            continue
        if kind == "existing":
            key = str(entry.get("key") or "").strip()
            if not key:
                errors.append(f"Entry {number} is missing its storage key")
            elif key in seen_keys:
                errors.append(f"Image {key} is listed twice")
            else:
                seen_keys.add(key)
                order.append(ImageRef.existing(key, position))
        elif kind == "new":
            index = entry.get("index")
            if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < upload_count:
                errors.append(f"Entry {number} references a missing upload")
            elif index in seen_indexes:
                errors.append(f"Upload {index} is listed twice")
            else:
                seen_indexes.add(index)
                order.append(ImageRef.new(index, position))
        else:
            errors.append(f"Entry {number} has unknown type {kind!r}")

    if errors:
        raise ValidationError({"image_order": errors})

    if not raw_order:
        # No explicit order: stored images keep their order, uploads are appended.
        return ImageOrderInput(touched=touched or upload_count > 0, order=None)
    if upload_count and len(seen_indexes) != upload_count:
        raise ValidationError({"image_order": ["Every uploaded image must appear in image_order"]})

    return ImageOrderInput(touched=touched or bool(order), order=order)
