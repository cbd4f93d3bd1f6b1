"""Typed request payloads handed to the CRM client, one per create operation."""

from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

DiscountType = Literal["percentage", "fixed_amount"]

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


def _to_camel(value: str) -> str:
    parts = value.split("_")
    return parts[0] + "".join(word.capitalize() for word in parts[1:])


def slugify(value: str) -> str:
    return _SLUG_PATTERN.sub("-", value.strip().lower()).strip("-")


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=_to_camel, frozen=True)


class CreateClubSpec(_CamelModel):
    """Club resource backing one membership tier."""

    title: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=2000)

    @classmethod
    def for_tier(cls, name: str, description: str | None = None) -> "CreateClubSpec":
        return cls(title=name, slug=slugify(name), description=description)


class CreatePromotionSpec(_CamelModel):
    """Auto-applied discount scoped to a club."""

    title: str = Field(..., min_length=1, max_length=255)
    product_discount_type: DiscountType | None = None
    product_discount: float | None = Field(default=None, ge=0)
    shipping_discount_type: DiscountType | None = None
    shipping_discount: float | None = Field(default=None, ge=0)
    minimum_cart_amount: float | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _require_discount(self) -> "CreatePromotionSpec":
        if self.product_discount is None and self.shipping_discount is None:
            raise ValueError("promotion requires a product or shipping discount")
        if self.product_discount is not None and self.product_discount_type is None:
            raise ValueError("productDiscountType is required with productDiscount")
        if self.shipping_discount is not None and self.shipping_discount_type is None:
            raise ValueError("shippingDiscountType is required with shippingDiscount")
        for kind, amount in (
            (self.product_discount_type, self.product_discount),
            (self.shipping_discount_type, self.shipping_discount),
        ):
            if kind == "percentage" and amount is not None and amount > 100:
                raise ValueError("percentage discounts cannot exceed 100")
        return self


class CreateLoyaltyTierSpec(_CamelModel):
    """Loyalty earning rule that qualifies members of a club."""

    title: str = Field(..., min_length=1, max_length=255)
    earn_rate: float = Field(..., gt=0, le=1)
    sort_order: int = Field(default=0, ge=0)


__all__ = [
    "CreateClubSpec",
    "CreateLoyaltyTierSpec",
    "CreatePromotionSpec",
    "DiscountType",
    "slugify",
]
