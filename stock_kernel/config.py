"""
Stock kernel settings (``stock_kernel.config``).

Responsibility
--------------
Loads the handful of runtime knobs the kernel has (database URL,
allocation retry bound, default location, stock-status thresholds) from a
YAML file into a frozen ``StockKernelSettings``.  Services, selectors and
the engine pick them up through their ``from_settings`` constructors.

Invariants enforced
-------------------
* Every parsed settings object is a frozen dataclass.
* Unknown keys and out-of-range values raise ``ValueError``; nothing is
  silently ignored.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid values  -> ``ValueError``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

CONFIG_ENV_VAR = "STOCK_KERNEL_CONFIG"


@dataclass(frozen=True)
class StockKernelSettings:
    """
    Runtime settings.

    Guarantees:
        - allocation_retries >= 0
        - 0 <= low_stock_threshold < overstock_threshold
    """

    database_url: str = "sqlite:///stock.db"
    allocation_retries: int = 1
    default_location: str = "HQ"
    low_stock_threshold: int = 5
    overstock_threshold: int = 100

    def __post_init__(self) -> None:
        if not isinstance(self.allocation_retries, int) or self.allocation_retries < 0:
            raise ValueError(
                f"allocation_retries must be a non-negative integer: "
                f"{self.allocation_retries!r}"
            )
        if self.low_stock_threshold < 0:
            raise ValueError("low_stock_threshold cannot be negative")
        if self.overstock_threshold <= self.low_stock_threshold:
            raise ValueError(
                "overstock_threshold must be greater than low_stock_threshold"
            )
        if not self.default_location.strip():
            raise ValueError("default_location cannot be blank")


def settings_from_dict(data: dict[str, Any]) -> StockKernelSettings:
    """
    Build settings from a parsed mapping.

    Raises:
        ValueError: on unknown keys or invalid values.
    """
    known = {f.name for f in fields(StockKernelSettings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown stock kernel setting(s): {', '.join(unknown)}")
    try:
        return StockKernelSettings(**data)
    except TypeError as exc:
        raise ValueError(f"Invalid stock kernel settings: {exc}") from exc


def load_settings(path: Path | str) -> StockKernelSettings:
    """
    Load settings from a YAML file.

    The file may hold the keys at top level or under a ``stock_kernel`` key.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping")
    if "stock_kernel" in data:
        data = data["stock_kernel"] or {}
    return settings_from_dict(data)


def get_settings() -> StockKernelSettings:
    """Settings from $STOCK_KERNEL_CONFIG when set, else defaults."""
    path = os.environ.get(CONFIG_ENV_VAR)
    if path:
        return load_settings(path)
    return StockKernelSettings()
