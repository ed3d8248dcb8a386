"""
EPA PM2.5 breakpoint table and concentration-to-AQI conversion.

Loads epa_pm25_breakpoints.json on first use. Stateless otherwise.
"""

import json
import logging
import math
import os
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)

CONFIG_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))),
    "config", "epa_pm25_breakpoints.json"
)

_BANDS: Optional[List["Band"]] = None


@dataclass(frozen=True)
class Band:
    """One row of the breakpoint table."""
    category: str
    c_low: float
    c_high: float
    aqi_low: int
    aqi_high: int

    def interpolate(self, concentration: float) -> float:
        """AQI = (AQI_hi - AQI_lo) / (C_hi - C_lo) * (C - C_lo) + AQI_lo"""
        index_range = self.aqi_high - self.aqi_low
        concentration_range = self.c_high - self.c_low
        return index_range / concentration_range * (concentration - self.c_low) + self.aqi_low


def _load_bands() -> List[Band]:
    """Load the breakpoint table from disk. Fail fast if missing."""
    global _BANDS
    if _BANDS is not None:
        return _BANDS

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(
            f"CRITICAL: epa_pm25_breakpoints.json not found at {CONFIG_PATH}. "
            "Cannot compute AQI."
        )

    with open(CONFIG_PATH, "r") as f:
        config = json.load(f)

    bands = sorted(
        (Band(**row) for row in config["bands"]),
        key=lambda b: b.c_low,
    )
    if not bands:
        raise ValueError(f"No breakpoint bands defined in {CONFIG_PATH}")
    _BANDS = bands
    logger.info("PM2.5 breakpoint table loaded from %s (%d bands)", CONFIG_PATH, len(bands))
    return _BANDS


def get_bands() -> List[Band]:
    return list(_load_bands())


def aqi_from_pm25(concentration: float) -> float:
    """
    Convert a PM2.5 concentration (ug/m3) to an AQI value.

    The concentration is truncated to one decimal place, as the EPA
    formulas require, and the result rounded to the nearest integer.

    Returns:
        The AQI, -inf below zero, +inf beyond the table ("beyond the AQI"),
        NaN for a NaN input.
    """
    if math.isnan(concentration):
        return math.nan

    # 10 * 12.1 can land a hair below 121
    truncated = math.floor(round(10 * concentration, 6)) / 10
    bands = _load_bands()

    if truncated < 0:
        return -math.inf
    if truncated > bands[-1].c_high:
        return math.inf

    band = bands[0]
    for candidate in bands:
        if truncated >= candidate.c_low:
            band = candidate
        else:
            break

    aqi = band.interpolate(truncated)
    return float(math.floor(aqi + 0.5))
