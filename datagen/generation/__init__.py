"""
Dataset Generation Module
"""
from .generator import DatasetGenerator
from .parameters import (
    CategoryParameters,
    CustomerParameters,
    Entity,
    GenerationPlan,
    GenerationResult,
    GenerationStatus,
    OrderDetailParameters,
    OrderParameters,
    ProductParameters,
)
from .writer import BatchWriter

__all__ = [
    "DatasetGenerator",
    "BatchWriter",
    "Entity",
    "GenerationPlan",
    "GenerationResult",
    "GenerationStatus",
    "CategoryParameters",
    "ProductParameters",
    "CustomerParameters",
    "OrderParameters",
    "OrderDetailParameters",
]
