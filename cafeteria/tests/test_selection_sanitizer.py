"""
选餐清洗测试
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from ..core.exceptions import ValidationError
from ..models.user import UserRole
from ..services.selection_sanitizer import (
    EMPTY_SELECTION_MESSAGE, parse_week_start, sanitize_selections, week_dates,
)
from .conftest import LUNCH_PRICE, MONDAY, TUESDAY, WEEK, entry, lunch, snack


class TestWeekDates:
    """订餐周测试"""

    def test_week_dates_returns_seven_days(self):
        days = week_dates(WEEK)
        assert len(days) == 7
        assert days[0] == MONDAY
        assert days[-1] == WEEK + timedelta(days=6)

    def test_week_start_must_be_monday(self):
        with pytest.raises(ValidationError):
            parse_week_start(TUESDAY)

    def test_week_start_accepts_iso_string(self):
        assert parse_week_start("2024-03-04") == MONDAY

    def test_invalid_week_string(self):
        with pytest.raises(ValidationError):
            parse_week_start("next monday")


class TestSanitizeSelections:
    """清洗规则测试"""

    def test_keeps_complete_entries(self, price_table):
        result = sanitize_selections(
            [entry(MONDAY, lunch_item=lunch(), snack_item=snack())],
            WEEK, UserRole.GUARDIAN, price_table,
        )
        assert len(result) == 1
        assert result[0].child_ref == "c1"
        assert result[0].lunch_item.name == "Pollo"
        assert result[0].snack_item.name == "Fruta"

    @pytest.mark.parametrize("position", [0, 1, 2])
    def test_drops_entries_without_items_anywhere(self, price_table, position):
        raw = [
            entry(MONDAY, lunch_item=lunch()),
            entry(TUESDAY, lunch_item=lunch("Carne", "L2")),
        ]
        raw.insert(position, entry(WEEK + timedelta(days=2)))
        result = sanitize_selections(raw, WEEK, UserRole.GUARDIAN, price_table)
        assert [s.date for s in result] == [MONDAY, TUESDAY]
        assert all(s.present_categories() for s in result)

    def test_empty_after_dropping_raises(self, price_table):
        with pytest.raises(ValidationError) as exc:
            sanitize_selections([entry(MONDAY), entry(TUESDAY)], WEEK, UserRole.GUARDIAN, price_table)
        assert exc.value.message == EMPTY_SELECTION_MESSAGE

    def test_none_input_raises(self, price_table):
        with pytest.raises(ValidationError):
            sanitize_selections(None, WEEK, UserRole.STAFF, price_table)

    def test_drops_dates_outside_week(self, price_table):
        result = sanitize_selections(
            [
                entry(MONDAY - timedelta(days=1), lunch_item=lunch()),
                entry(MONDAY + timedelta(days=7), lunch_item=lunch()),
                entry(TUESDAY, lunch_item=lunch()),
                {"date": "not-a-date", "childRef": "c1", "lunchItem": lunch()},
            ],
            WEEK, UserRole.GUARDIAN, price_table,
        )
        assert [s.date for s in result] == [TUESDAY]

    def test_item_without_name_is_absent(self, price_table):
        result = sanitize_selections(
            [entry(MONDAY, lunch_item={"code": "L1"}, snack_item=snack())],
            WEEK, UserRole.GUARDIAN, price_table,
        )
        assert result[0].lunch_item is None
        assert result[0].snack_item is not None

    def test_missing_price_is_filled_from_role(self, price_table):
        result = sanitize_selections(
            [entry(MONDAY, lunch_item={"id": "L1", "name": "Pollo"})],
            WEEK, UserRole.GUARDIAN, price_table,
        )
        assert result[0].lunch_item.code == "L1"
        assert result[0].lunch_item.price == LUNCH_PRICE

    def test_guardian_entry_without_child_is_dropped(self, price_table):
        result = sanitize_selections(
            [entry(MONDAY, child=None, lunch_item=lunch()), entry(TUESDAY, lunch_item=lunch())],
            WEEK, UserRole.GUARDIAN, price_table,
        )
        assert [s.date for s in result] == [TUESDAY]

    def test_unknown_child_is_dropped(self, price_table):
        result = sanitize_selections(
            [entry(MONDAY, child="stranger", lunch_item=lunch()), entry(MONDAY, child="c2", lunch_item=lunch())],
            WEEK, UserRole.GUARDIAN, price_table, known_children=["c1", "c2"],
        )
        assert [s.child_ref for s in result] == ["c2"]

    def test_staff_child_ref_is_cleared(self, price_table):
        result = sanitize_selections(
            [entry(MONDAY, child="c1", lunch_item=lunch())],
            WEEK, UserRole.STAFF, price_table,
        )
        assert result[0].child_ref is None
        assert result[0].slot_owner == "staff"

    def test_same_slot_entries_are_merged(self, price_table):
        result = sanitize_selections(
            [
                entry(MONDAY, lunch_item=lunch("Pollo", "L1")),
                entry(MONDAY, snack_item=snack()),
                entry(MONDAY, lunch_item=lunch("Pescado", "L3")),
            ],
            WEEK, UserRole.GUARDIAN, price_table,
        )
        assert len(result) == 1
        assert result[0].lunch_item.name == "Pescado"
        assert result[0].snack_item.name == "Fruta"

    def test_snake_case_fields_are_accepted(self, price_table):
        result = sanitize_selections(
            [{"date": date(2024, 3, 5), "child_id": "c1", "lunch": lunch()}],
            WEEK, UserRole.GUARDIAN, price_table,
        )
        assert result[0].date == TUESDAY
        assert result[0].child_ref == "c1"

    def test_datetime_dates_are_normalised(self, price_table):
        """date 字段传入 datetime 时按日期处理"""
        result = sanitize_selections(
            [{"date": datetime(2024, 3, 5, 12, 30, tzinfo=timezone.utc), "childRef": "c1", "lunchItem": lunch()}],
            datetime(2024, 3, 4, 0, 0), UserRole.GUARDIAN, price_table,
        )
        assert len(result) == 1
        assert result[0].date == TUESDAY
        assert type(result[0].date) is date
