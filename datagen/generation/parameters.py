"""
Generation Parameters and Results

Per-entity parameter models, the run result model, and the full-population
plan consumed by ``DatasetGenerator``.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple, Type

from pydantic import BaseModel, Field, model_validator

from datagen.config.settings import GeneratorSettings


class Entity(str, Enum):
    """Generated entities, in dependency order"""
    CATEGORY = "category"
    PRODUCT = "product"
    CUSTOMER = "customer"
    ORDER = "order"
    ORDER_DETAIL = "order_detail"


class GenerationStatus(str, Enum):
    """How a generation run ended"""
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


IdRange = Tuple[int, int]


def _check_range(value: Optional[IdRange]) -> None:
    if value is not None and (value[0] < 1 or value[0] > value[1]):
        raise ValueError(f"Invalid id range: {value}")


class GenerationParameters(BaseModel):
    """Parameters common to every entity"""
    batch_size: Optional[int] = Field(default=None, ge=1, description="Override configured batch size")
    resume_from: int = Field(default=0, ge=0, description="Valid rows of the stream already committed")
    strict: bool = Field(default=False, description="Raise ConstraintViolation instead of skipping")


class CategoryParameters(GenerationParameters):
    pass


class ProductParameters(GenerationParameters):
    category_range: Optional[IdRange] = Field(default=None, description="Category ids to draw from")

    @model_validator(mode="after")
    def validate_range(self) -> "ProductParameters":
        _check_range(self.category_range)
        return self


class CustomerParameters(GenerationParameters):
    start_index: int = Field(default=1, ge=1, description="First index used for names and emails")
    realistic_names: bool = Field(default=False, description="Draw first/last names from Faker")
    seed: Optional[int] = Field(default=None, description="Faker seed; defaults to the generator seed")


class OrderParameters(GenerationParameters):
    customer_range: Optional[IdRange] = Field(default=None, description="Customer ids to draw from")
    placed_at: Optional[datetime] = Field(default=None, description="Order timestamp; defaults to generation time")

    @model_validator(mode="after")
    def validate_range(self) -> "OrderParameters":
        _check_range(self.customer_range)
        return self


class OrderDetailParameters(GenerationParameters):
    products: Optional[int] = Field(default=None, ge=1, description="Product span N; defaults to the product range size")
    details_per_pair: int = Field(default=1, ge=1, description="Repetitions K per (i, j) pair")
    order_range: Optional[IdRange] = Field(default=None, description="Order ids to draw from")
    product_range: Optional[IdRange] = Field(default=None, description="Product ids to draw from")
    seed: Optional[int] = Field(default=None, description="Unit price seed; defaults to the generator seed")
    unit_price_step: int = Field(default=1000, ge=1, description="Unit price granularity")
    unit_price_multiples: Tuple[int, int] = Field(default=(1, 10), description="Inclusive multiple bounds of the step")

    @model_validator(mode="after")
    def validate_ranges(self) -> "OrderDetailParameters":
        _check_range(self.order_range)
        _check_range(self.product_range)
        low, high = self.unit_price_multiples
        if low > high:
            raise ValueError(f"Invalid unit price multiples: {self.unit_price_multiples}")
        return self


PARAMETER_TYPES: Dict[Entity, Type[GenerationParameters]] = {
    Entity.CATEGORY: CategoryParameters,
    Entity.PRODUCT: ProductParameters,
    Entity.CUSTOMER: CustomerParameters,
    Entity.ORDER: OrderParameters,
    Entity.ORDER_DETAIL: OrderDetailParameters,
}


class GenerationResult(BaseModel):
    """Result of generating one entity"""
    entity: Entity
    status: GenerationStatus = GenerationStatus.COMPLETED
    rows_inserted: int = 0
    rows_skipped: int = 0
    violations: Dict[str, int] = Field(default_factory=dict)
    batches: int = 0
    retries: int = 0
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0


class GenerationPlan(BaseModel):
    """
    Row counts for a full population run.

    ``detail_multiplier``, ``detail_products`` and ``details_per_pair`` are the
    M, N and K bounds of the order-detail index scheme.
    """
    categories: int = Field(ge=1)
    products_per_category: int = Field(ge=1)
    customers: int = Field(ge=1)
    orders_per_customer: int = Field(ge=1)
    detail_multiplier: int = Field(ge=1)
    detail_products: int = Field(ge=1)
    details_per_pair: int = Field(default=1, ge=1)

    @classmethod
    def from_settings(cls, settings: GeneratorSettings) -> "GenerationPlan":
        return cls(
            categories=settings.categories,
            products_per_category=settings.products_per_category,
            customers=settings.customers,
            orders_per_customer=settings.orders_per_customer,
            detail_multiplier=settings.detail_multiplier,
            detail_products=settings.detail_products,
            details_per_pair=settings.details_per_pair,
        )
