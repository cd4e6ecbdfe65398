"""
Row Constraint Screening

Vectorized invariant checks applied to generated row blocks before they reach
the store. Rows failing a rule are dropped and counted per rule, never coerced.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import polars as pl
import structlog

from datagen.errors import ConstraintViolation

logger = structlog.get_logger(__name__)


@dataclass
class RowConstraint:
    """Named predicate that is True for valid rows"""
    name: str
    predicate: pl.Expr
    description: str = ""


@dataclass
class ScreenResult:
    """Outcome of screening one block"""
    valid: pl.DataFrame
    violations: Dict[str, int] = field(default_factory=dict)

    @property
    def skipped(self) -> int:
        return sum(self.violations.values())


class ConstraintScreen:
    """
    Ordered set of row constraints.

    A row failing several rules is attributed to the first one only, so the
    per-rule counts add up to the number of skipped rows.

    Example:
        screen = ConstraintScreen("order_detail")
        screen.add_positive_check("quantity")
        screen.add_range_check("order_id", 1, 500)
        result = screen.apply(block)
    """

    def __init__(self, entity: str, strict: bool = False):
        self.entity = entity
        self.strict = strict
        self._constraints: List[RowConstraint] = []

    @property
    def constraints(self) -> List[RowConstraint]:
        return list(self._constraints)

    def add_constraint(
        self,
        name: str,
        predicate: pl.Expr,
        description: str = "",
    ) -> "ConstraintScreen":
        """Add a custom constraint"""
        self._constraints.append(RowConstraint(name, predicate, description))
        return self

    def add_positive_check(self, column: str) -> "ConstraintScreen":
        """Require column > 0"""
        return self.add_constraint(
            f"{column}_positive",
            pl.col(column) > 0,
            f"{column} must be positive",
        )

    def add_range_check(
        self,
        column: str,
        min_value: Optional[int] = None,
        max_value: Optional[int] = None,
    ) -> "ConstraintScreen":
        """Require min_value <= column <= max_value (either bound optional)"""
        predicate = pl.lit(True)
        if min_value is not None:
            predicate = predicate & (pl.col(column) >= min_value)
        if max_value is not None:
            predicate = predicate & (pl.col(column) <= max_value)
        return self.add_constraint(
            f"{column}_in_range",
            predicate,
            f"{column} must lie within [{min_value}, {max_value}]",
        )

    def add_unique_check(self, column: str, existing: Iterable[str]) -> "ConstraintScreen":
        """Require column values not already taken in the store"""
        taken = pl.Series(column, list(existing), dtype=pl.Utf8)
        return self.add_constraint(
            f"{column}_unique",
            ~pl.col(column).is_in(taken),
            f"{column} must not already exist ({len(taken)} taken)",
        )

    def passes(self, df: pl.DataFrame) -> pl.Series:
        """Boolean mask of rows satisfying every constraint; never raises or counts"""
        predicate = pl.lit(True)
        for constraint in self._constraints:
            predicate = predicate & constraint.predicate.fill_null(False)
        return df.with_columns(predicate.alias("_valid")).get_column("_valid")

    def apply(self, df: pl.DataFrame) -> ScreenResult:
        """
        Split a block into valid rows and per-rule violation counts.

        Raises:
            ConstraintViolation: In strict mode, on the first failing row
        """
        violations: Counter = Counter()
        remaining = df

        for constraint in self._constraints:
            if remaining.is_empty():
                break
            mask = remaining.select(
                constraint.predicate.fill_null(False).alias("_valid")
            ).to_series()
            failed = len(remaining) - int(mask.sum())
            if failed == 0:
                continue

            if self.strict:
                row = remaining.filter(~mask).row(0, named=True)
                logger.error(
                    "Generated row violates constraint",
                    entity=self.entity,
                    rule=constraint.name,
                    row=row,
                )
                raise ConstraintViolation(constraint.name, row=row)

            violations[constraint.name] += failed
            remaining = remaining.filter(mask)

        return ScreenResult(valid=remaining, violations=dict(violations))
