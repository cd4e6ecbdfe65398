"""
Data Quality Module
"""
from .constraints import ConstraintScreen, RowConstraint, ScreenResult
from .integrity import IntegrityReport, ValidationStatus, check_referential_integrity

__all__ = [
    "ConstraintScreen",
    "RowConstraint",
    "ScreenResult",
    "IntegrityReport",
    "ValidationStatus",
    "check_referential_integrity",
]
