"""
Unit Tests - Row Constraint Screening
"""
import polars as pl
import pytest

from datagen.errors import ConstraintViolation
from datagen.quality import ConstraintScreen


class TestConstraintScreen:
    """Tests for ConstraintScreen"""

    def test_valid_rows_pass_through(self):
        df = pl.DataFrame({"quantity": [1, 2, 3]})

        result = ConstraintScreen("order_detail").add_positive_check("quantity").apply(df)

        assert len(result.valid) == 3
        assert result.violations == {}
        assert result.skipped == 0

    def test_positive_check_drops_and_counts(self):
        df = pl.DataFrame({"quantity": [0, 1, -2, 4]})

        result = ConstraintScreen("order_detail").add_positive_check("quantity").apply(df)

        assert result.valid["quantity"].to_list() == [1, 4]
        assert result.violations == {"quantity_positive": 2}

    def test_range_check_bounds(self):
        df = pl.DataFrame({"order_id": [0, 1, 5, 6]})

        result = ConstraintScreen("order_detail").add_range_check("order_id", 1, 5).apply(df)

        assert result.valid["order_id"].to_list() == [1, 5]
        assert result.violations == {"order_id_in_range": 2}

    def test_row_attributed_to_first_failing_rule(self):
        # row 0 breaks both rules; it is counted once under the first
        df = pl.DataFrame({"order_id": [9, 9, 1], "quantity": [0, 1, 0]})
        screen = (
            ConstraintScreen("order_detail")
            .add_range_check("order_id", 1, 5)
            .add_positive_check("quantity")
        )

        result = screen.apply(df)

        assert result.violations == {"order_id_in_range": 2, "quantity_positive": 1}
        assert result.valid.is_empty()
        assert result.skipped == len(df)

    def test_null_values_fail(self):
        df = pl.DataFrame({"unit_price": [1000, None]})

        result = ConstraintScreen("order_detail").add_positive_check("unit_price").apply(df)

        assert result.violations == {"unit_price_positive": 1}

    def test_strict_mode_raises_with_row(self):
        df = pl.DataFrame({"quantity": [1, 0]})
        screen = ConstraintScreen("order_detail", strict=True).add_positive_check("quantity")

        with pytest.raises(ConstraintViolation) as exc_info:
            screen.apply(df)

        assert exc_info.value.rule == "quantity_positive"
        assert exc_info.value.row == {"quantity": 0}

    def test_custom_constraint(self):
        df = pl.DataFrame({"a": [1, 2, 3], "b": [1, 3, 2]})
        screen = ConstraintScreen("pairs").add_constraint("a_le_b", pl.col("a") <= pl.col("b"))

        result = screen.apply(df)

        assert result.valid["a"].to_list() == [1, 2]
        assert [c.name for c in screen.constraints] == ["a_le_b"]

    def test_unique_check_drops_taken_values(self):
        df = pl.DataFrame({"email": ["a@example.com", "b@example.com", "c@example.com"]})
        screen = ConstraintScreen("customer").add_unique_check("email", ["b@example.com", "z@example.com"])

        result = screen.apply(df)

        assert result.valid["email"].to_list() == ["a@example.com", "c@example.com"]
        assert result.violations == {"email_unique": 1}

    def test_passes_is_a_mask_without_counting(self):
        df = pl.DataFrame({"quantity": [0, 2, None, 1]})
        screen = ConstraintScreen("order_detail", strict=True).add_positive_check("quantity")

        assert screen.passes(df).to_list() == [False, True, False, True]

    def test_passes_without_constraints(self):
        df = pl.DataFrame({"quantity": [0, 1]})

        assert ConstraintScreen("order_detail").passes(df).to_list() == [True, True]
