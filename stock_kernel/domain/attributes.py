"""
Category attributes -- closed variant records per product category.

Responsibility:
    Replaces a free-form attribute bag with one frozen record type per
    category family, each validated against its required-field list.

Architecture position:
    Kernel > Domain -- pure, zero I/O.

Failure modes:
    - InvalidAttributesError when required fields are missing or blank, or
      when the mapping carries fields the variant does not define.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Mapping, Union

from stock_kernel.exceptions import InvalidAttributesError


class ProductCategory(str, Enum):
    WALL = "wall"
    TOILET = "toilet"
    BASE = "base"
    TUB = "tub"
    VANITY = "vanity"
    SHOWER_DOOR = "shower_door"
    RAW_MATERIAL = "raw_material"
    ACCESSORY = "accessory"
    MISCELLANEOUS = "miscellaneous"
    TOOL = "tool"

    @property
    def is_tool(self) -> bool:
        return self is ProductCategory.TOOL


@dataclass(frozen=True)
class WallAttributes:
    """Wall panels: product line, colour, size and finish are all required."""

    product_line: str
    color_name: str
    dimensions: str
    finish: str
    description: str | None = None

    REQUIRED = ("product_line", "color_name", "dimensions", "finish")


@dataclass(frozen=True)
class FixtureAttributes:
    """Every non-wall product category (toilets, tubs, vanities, ...)."""

    name: str
    brand: str | None = None
    model: str | None = None
    color: str | None = None
    dimensions: str | None = None
    finish: str | None = None
    description: str | None = None

    REQUIRED = ("name",)


@dataclass(frozen=True)
class ToolAttributes:
    name: str
    brand: str | None = None
    model: str | None = None
    serial_number: str | None = None
    description: str | None = None

    REQUIRED = ("name",)


CategoryAttributes = Union[WallAttributes, FixtureAttributes, ToolAttributes]


def variant_for(category: ProductCategory | str) -> type:
    """Attribute record type used by a category."""
    category = ProductCategory(category)
    if category is ProductCategory.WALL:
        return WallAttributes
    if category is ProductCategory.TOOL:
        return ToolAttributes
    return FixtureAttributes


def parse_attributes(
    category: ProductCategory | str,
    values: Mapping[str, Any],
) -> CategoryAttributes:
    """
    Build the attribute record for `category` from a plain mapping.

    Raises:
        ValueError: If category is not a known ProductCategory.
        InvalidAttributesError: If required fields are missing or blank,
            or unknown fields are present.
    """
    category = ProductCategory(category)
    variant = variant_for(category)
    allowed = {f.name for f in fields(variant)}

    unknown = sorted(k for k in values if k not in allowed)
    missing = [
        name
        for name in variant.REQUIRED
        if values.get(name) is None or not str(values.get(name)).strip()
    ]
    if unknown or missing:
        raise InvalidAttributesError(
            category.value,
            missing_fields=missing,
            unknown_fields=unknown,
        )

    return variant(**{k: values[k] for k in values})
