from datetime import datetime
from decimal import Decimal

from apps.pos.app.discounts import (
    CategoryTarget,
    DiscountRule,
    OrderTarget,
    available_discounts,
    is_within_time_window,
    parse_minutes,
    weekday_index,
)


def _rule(**kw) -> DiscountRule:
    base = dict(
        id="a" * 24,
        name="Happy hour",
        type="percentage",
        scope="category",
        value=Decimal("10"),
        target=CategoryTarget(ids=("c" * 24,)),
        auto_apply=True,
        auto_apply_start="22:00",
        auto_apply_end="02:00",
    )
    base.update(kw)
    return DiscountRule(**base)


def test_parse_minutes():
    assert parse_minutes("00:00") == 0
    assert parse_minutes("22:30") == 22 * 60 + 30
    assert parse_minutes(None) is None
    assert parse_minutes("") is None
    assert parse_minutes("xx:10") is None


def test_weekday_index_counts_from_sunday():
    # 2024-06-02 was a Sunday, 2024-06-08 a Saturday
    assert weekday_index(datetime(2024, 6, 2, 12, 0)) == 0
    assert weekday_index(datetime(2024, 6, 3, 12, 0)) == 1
    assert weekday_index(datetime(2024, 6, 8, 12, 0)) == 6


def test_window_wrapping_midnight():
    """
    22:00-02:00 spans midnight: 10:00 is outside, 23:30 and 01:15 inside,
    both edges are inclusive.
    """
    rule = _rule()
    assert not is_within_time_window(rule, datetime(2024, 6, 3, 10, 0))
    assert is_within_time_window(rule, datetime(2024, 6, 3, 23, 30))
    assert is_within_time_window(rule, datetime(2024, 6, 4, 1, 15))
    assert is_within_time_window(rule, datetime(2024, 6, 3, 22, 0))
    assert is_within_time_window(rule, datetime(2024, 6, 4, 2, 0))
    assert not is_within_time_window(rule, datetime(2024, 6, 4, 2, 1))


def test_plain_window():
    rule = _rule(auto_apply_start="12:00", auto_apply_end="15:00")
    assert is_within_time_window(rule, datetime(2024, 6, 3, 12, 0))
    assert is_within_time_window(rule, datetime(2024, 6, 3, 15, 0))
    assert not is_within_time_window(rule, datetime(2024, 6, 3, 11, 59))
    assert not is_within_time_window(rule, datetime(2024, 6, 3, 15, 1))


def test_day_filter_and_missing_times():
    """
    Without a time window only the weekday decides; an empty day set means
    every day.
    """
    weekend = _rule(auto_apply_days=frozenset({0, 6}), auto_apply_start=None, auto_apply_end=None)
    assert is_within_time_window(weekend, datetime(2024, 6, 2, 9, 0))  # Sunday
    assert not is_within_time_window(weekend, datetime(2024, 6, 3, 9, 0))  # Monday

    any_day = _rule(auto_apply_start=None, auto_apply_end=None)
    assert is_within_time_window(any_day, datetime(2024, 6, 5, 4, 0))


def test_available_discounts_filters_inactive_and_out_of_window():
    manual = _rule(id="b" * 24, auto_apply=False, scope="order", target=OrderTarget(),
                   auto_apply_start=None, auto_apply_end=None)
    night = _rule(id="c" * 24)
    inactive = _rule(id="d" * 24, auto_apply=False, is_active=False)

    morning = datetime(2024, 6, 3, 10, 0)
    late = datetime(2024, 6, 3, 23, 30)

    assert [d.id for d in available_discounts([manual, night, inactive], morning)] == ["b" * 24]
    assert [d.id for d in available_discounts([manual, night, inactive], late)] == ["b" * 24, "c" * 24]
