import json

import pytest
from starlette.datastructures import FormData

from src.errors import ValidationError
from src.profile_validation import parse_image_order, parse_profile_form

VALID = {
    "name": "Alice",
    "age": "30",
    "price": "120.5",
    "description": "Friendly",
    "address": "1 Main Street",
    "latitude": "40.4",
    "longitude": "-3.7",
}


def form(**overrides):
    items = dict(VALID, **overrides)
    return FormData([(k, v) for k, v in items.items() if v is not None])


def test_valid_form_is_parsed():
    data = parse_profile_form(
        FormData(list(VALID.items()) + [("languages", "2"), ("languages", "1"), ("languages", "2"), ("published", "true")])
    )
    assert data.age == 30
    assert data.price == 120.5
    assert data.published is True
    assert data.tags["languages"] == [2, 1]
    assert data.tags["services"] == []


def test_all_field_errors_are_reported_together():
    with pytest.raises(ValidationError) as excinfo:
        parse_profile_form(form(name=" ", age="17", price="-1", latitude="north", longitude=None))
    errors = excinfo.value.errors
    assert errors["name"] == ["name is required"]
    assert errors["age"] == ["Age must be between 18 and 100"]
    assert errors["price"] == ["Price must be a valid positive number"]
    assert errors["latitude"] == ["Latitude must be a valid number"]
    assert errors["longitude"] == ["Longitude must be a valid number"]
    assert "description" not in errors


@pytest.mark.parametrize("age", ["18", "100"])
def test_age_bounds_are_inclusive(age):
    assert parse_profile_form(form(age=age)).age == int(age)


def test_published_absent_means_unchanged():
    assert parse_profile_form(form()).published is None


def test_image_order_parsing():
    order = json.dumps(
        [
            {"type": "existing", "key": "profiles/a.webp", "position": 1},
            {"type": "new", "index": 0, "position": 0},
        ]
    )
    parsed = parse_image_order(FormData([("image_order", order)]), upload_count=1)
    assert parsed.touched
    assert [(ref.kind, ref.key, ref.index) for ref in parsed.order] == [
        ("existing", "profiles/a.webp", None),
        ("new", None, 0),
    ]


def test_no_image_fields_means_untouched():
    parsed = parse_image_order(FormData([]), upload_count=0)
    assert not parsed.touched
    assert parsed.order is None


def test_empty_order_needs_the_explicit_marker_to_clear():
    assert not parse_image_order(FormData([("image_order", "[]")]), upload_count=0).touched
    cleared = parse_image_order(FormData([("image_order", "[]"), ("images_touched", "1")]), upload_count=0)
    assert cleared.touched
    assert cleared.order == []


@pytest.mark.parametrize(
    "raw",
    [
        "{not json",
        json.dumps({"type": "new"}),
        json.dumps([{"type": "new", "index": 3, "position": 0}]),
        json.dumps([{"type": "existing", "key": "a", "position": 0}, {"type": "existing", "key": "a", "position": 1}]),
        json.dumps([{"type": "other", "position": 0}]),
    ],
)
def test_malformed_image_order_is_rejected(raw):
    with pytest.raises(ValidationError) as excinfo:
        parse_image_order(FormData([("image_order", raw)]), upload_count=1)
    assert "image_order" in excinfo.value.errors


def test_every_upload_must_be_ordered():
    order = json.dumps([{"type": "new", "index": 0, "position": 0}])
    with pytest.raises(ValidationError):
        parse_image_order(FormData([("image_order", order)]), upload_count=2)
