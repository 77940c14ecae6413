from decimal import Decimal

import pytest

from apps.pos.app.discounts import (
    CategoryTarget,
    OrderTarget,
    ProductTarget,
    build_target,
    check_discount_rule,
    parse_bool,
    parse_days,
    parse_discount_payload,
    parse_number,
    parse_time,
)
from apps.pos.app.errors import ValidationError

CAT = "ab" * 12
CAT2 = "cd" * 12
PROD = "ef" * 12


def _payload(**overrides):
    body = {"name": "Lunch", "type": "percentage", "scope": "order", "value": 10}
    body.update(overrides)
    return body


def test_minimal_create_payload():
    parsed = parse_discount_payload(_payload(name="  Lunch  "))
    assert parsed.name == "Lunch"
    assert parsed.type == "percentage"
    assert parsed.scope == "order"
    assert parsed.value == Decimal("10")
    assert parsed.auto_apply is False
    assert parsed.is_active is True


@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"name": "   "}, "discount name required"),
        ({"type": "bogo"}, "discount type required"),
        ({"scope": "shelf"}, "discount scope required"),
        ({"value": "abc"}, "discount value required"),
        ({"value": -1}, "discount value required"),
        ({"value": 150}, "percentage discount must be within 0-100"),
        ({"scope": "category"}, "category discount needs a category"),
        ({"scope": "product"}, "product discount needs a product"),
        ({"category_id": "not-an-id"}, "invalid category id"),
        ({"category_ids": [CAT, "zz"]}, "invalid category id"),
        ({"category_ids": CAT}, "invalid category id"),
        ({"product_id": 12345}, "invalid product id"),
        (
            {"auto_apply": True, "auto_apply_start": "10:00", "auto_apply_end": "12:00"},
            "auto-apply is only available for category discounts",
        ),
        (
            {"scope": "category", "category_id": CAT, "auto_apply": True, "auto_apply_start": "10:00"},
            "auto-apply needs a start and end time",
        ),
        (
            {"scope": "category", "category_id": CAT, "auto_apply": "true", "auto_apply_start": "25:00", "auto_apply_end": "12:00"},
            "auto-apply needs a start and end time",
        ),
    ],
)
def test_create_payload_errors(overrides, message):
    with pytest.raises(ValidationError) as exc:
        parse_discount_payload(_payload(**overrides))
    assert exc.value.message == message


def test_fixed_value_may_exceed_hundred():
    parsed = parse_discount_payload(_payload(type="fixed", value="250.50"))
    assert parsed.value == Decimal("250.50")


def test_auto_apply_category_discount():
    parsed = parse_discount_payload(
        _payload(
            scope="category",
            category_ids=[CAT, CAT.upper(), CAT2],
            auto_apply="true",
            auto_apply_days=[1, "2", 2, 7, -1, "x", 5.5, 0],
            auto_apply_start="09:00 ",
            auto_apply_end=" 18:30",
        )
    )
    assert parsed.category_ids == [CAT, CAT2]
    assert parsed.auto_apply is True
    assert parsed.auto_apply_days == [1, 2, 0]
    assert (parsed.auto_apply_start, parsed.auto_apply_end) == ("09:00", "18:30")


def test_auto_apply_requires_well_formed_times():
    parsed = parse_discount_payload(
        _payload(scope="category", category_id=CAT, auto_apply=True,
                 auto_apply_start="22:00", auto_apply_end="02:00")
    )
    assert (parsed.auto_apply_start, parsed.auto_apply_end) == ("22:00", "02:00")
    assert parsed.category_id == CAT


def test_partial_payload_keeps_missing_fields_unset():
    parsed = parse_discount_payload({"value": 20}, partial=True)
    assert parsed.updates() == {"value": Decimal("20")}

    parsed = parse_discount_payload({"is_active": False}, partial=True)
    assert parsed.updates() == {"is_active": False}


def test_partial_payload_still_checks_ranges():
    with pytest.raises(ValidationError):
        parse_discount_payload({"type": "percentage", "value": 101}, partial=True)
    with pytest.raises(ValidationError):
        parse_discount_payload({"scope": "order", "auto_apply": True,
                                "auto_apply_start": "10:00", "auto_apply_end": "11:00"}, partial=True)


def test_disabling_auto_apply_clears_window():
    parsed = parse_discount_payload({"auto_apply": False}, partial=True)
    assert parsed.updates() == {
        "auto_apply": False,
        "auto_apply_days": None,
        "auto_apply_start": None,
        "auto_apply_end": None,
    }


def test_scalar_parsers():
    assert parse_bool("TRUE") is True
    assert parse_bool("nope", fallback=True) is True
    assert parse_bool(1) is False
    assert parse_number(" 12.5 ") == Decimal("12.5")
    assert parse_number(True) is None
    assert parse_number("nan") is None
    assert parse_number("") is None
    assert parse_days("1,2") is None
    assert parse_days([]) is None
    assert parse_time("07:05") == "07:05"
    assert parse_time("7:05") is None
    assert parse_time("23:60") is None


def test_build_target():
    assert build_target("order", category_id=CAT) == OrderTarget()
    assert build_target("category", category_id=CAT) == CategoryTarget(ids=(CAT,))
    assert build_target("category", category_id=CAT, category_ids=[CAT2, CAT2]) == CategoryTarget(ids=(CAT2,))
    assert build_target("category") == CategoryTarget(ids=())
    assert build_target("product", product_id=PROD) == ProductTarget(id=PROD)
    assert build_target("product", product_id="") == ProductTarget(id=None)


@pytest.mark.parametrize("value", [-5, "abc", "", 1e30, "1e30"])
def test_partial_payload_rejects_bad_values(value):
    with pytest.raises(ValidationError):
        parse_discount_payload({"value": value}, partial=True)


def test_create_payload_rejects_huge_value():
    with pytest.raises(ValidationError) as exc:
        parse_discount_payload(_payload(type="fixed", value=1e30))
    assert exc.value.message == "discount value is too large"


def test_partial_payload_defers_window_to_merged_check():
    # the stored row may already carry the window
    parsed = parse_discount_payload({"auto_apply": True}, partial=True)
    assert parsed.updates() == {"auto_apply": True}


@pytest.mark.parametrize(
    "kwargs,message",
    [
        ({"type": "percentage", "scope": "order", "value": Decimal("150")}, "percentage discount must be within 0-100"),
        ({"type": "fixed", "scope": "order", "value": Decimal("-1")}, "discount value required"),
        ({"type": "fixed", "scope": "order", "value": Decimal("5"), "auto_apply": True,
          "auto_apply_start": "10:00", "auto_apply_end": "11:00"}, "auto-apply is only available for category discounts"),
        ({"type": "fixed", "scope": "category", "value": Decimal("5"), "category_ids": [CAT],
          "auto_apply": True, "auto_apply_start": "10:00"}, "auto-apply needs a start and end time"),
        ({"type": "fixed", "scope": "product", "value": Decimal("5")}, "product discount needs a product"),
    ],
)
def test_check_discount_rule(kwargs, message):
    with pytest.raises(ValidationError) as exc:
        check_discount_rule(**kwargs)
    assert exc.value.message == message


def test_check_discount_rule_accepts_complete_rule():
    check_discount_rule("percentage", "category", Decimal("100"), category_ids=[CAT], auto_apply=True,
                        auto_apply_start="22:00", auto_apply_end="02:00")
