"""Pydantic schemas for FoodReview.

Models for:
- Reviews (the records stored in the remote collection)
- Review form input
- Content API descriptors
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

from pydantic import BaseModel, Field, field_serializer, field_validator

CENTS = Decimal("0.01")


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC with millisecond precision and a trailing Z."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _to_price(value) -> Decimal:
    if isinstance(value, float):
        value = repr(value)
    try:
        price = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"invalid price: {value!r}")
    if not price.is_finite() or price < 0:
        raise ValueError(f"invalid price: {value!r}")
    return price.quantize(CENTS, rounding=ROUND_HALF_UP)


def _to_flag(value) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("yes", "y", "true", "1"):
        return True
    if text in ("no", "n", "false", "0", ""):
        return False
    raise ValueError(f"expected Yes/No, got {value!r}")


# --- Review ---

class Ratings(BaseModel):
    # Range is enforced on the form (ReviewCreate); stored entries are read as-is
    taste: int
    texture: int
    size: int
    value: int

    class Config:
        frozen = True
        extra = "allow"


class BinaryFlags(BaseModel):
    EL: bool
    AG: bool

    class Config:
        frozen = True
        extra = "allow"

    @field_validator("EL", "AG", mode="before")
    @classmethod
    def _parse_flag(cls, v):
        return _to_flag(v)


class Review(BaseModel):
    """One stored review. Keys this model does not know are kept and written back."""
    restaurant: str
    food_item: str = Field(..., alias="foodItem")
    price: Decimal
    ratings: Ratings
    binary_flags: BinaryFlags = Field(..., alias="binaryFlags")
    timestamp: str
    image: Optional[str] = None

    class Config:
        frozen = True
        populate_by_name = True
        extra = "allow"

    @field_validator("price", mode="before")
    @classmethod
    def _parse_price(cls, v):
        return _to_price(v)

    @field_validator("image", mode="before")
    @classmethod
    def _empty_image(cls, v):
        # Older entries store "" for "no image"
        return v or None

    @field_serializer("price")
    def _dump_price(self, price: Decimal) -> str:
        return f"{price:.2f}"

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# --- Review form ---

class ReviewCreate(BaseModel):
    """Raw values as they come from the add-review form."""
    restaurant: str = Field(..., min_length=1, max_length=200)
    food_item: str = Field(..., alias="foodItem", min_length=1, max_length=200)
    price: Union[str, Decimal, float, int]
    taste: int = Field(..., ge=1, le=10)
    texture: int = Field(..., ge=1, le=10)
    size: int = Field(..., ge=1, le=10)
    value: int = Field(..., ge=1, le=10)
    EL: Union[str, bool] = "No"
    AG: Union[str, bool] = "No"

    class Config:
        populate_by_name = True
        str_strip_whitespace = True

    @field_validator("price")
    @classmethod
    def _check_price(cls, v):
        return _to_price(v)

    @field_validator("EL", "AG")
    @classmethod
    def _check_flag(cls, v):
        return _to_flag(v)

    def to_review(self, image: Optional[str] = None, now: Optional[datetime] = None) -> Review:
        return Review(
            restaurant=self.restaurant,
            food_item=self.food_item,
            price=self.price,
            ratings=Ratings(taste=self.taste, texture=self.texture, size=self.size, value=self.value),
            binary_flags=BinaryFlags(EL=self.EL, AG=self.AG),
            timestamp=utc_timestamp(now),
            image=image,
        )


# --- Content API ---

class ContentDescriptor(BaseModel):
    """Subset of the GitHub contents API object we rely on."""
    path: str
    sha: str
    size: Optional[int] = None
    content: Optional[str] = None
    encoding: Optional[str] = None
    download_url: Optional[str] = None

    class Config:
        extra = "ignore"
