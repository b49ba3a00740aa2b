from __future__ import annotations
import math
from typing import Optional

from solderbot.core.data_types import ThermalCompensation

BASE_TIP_TEMP_C = 345
MIN_TIP_TEMP_C = 280
MAX_TIP_TEMP_C = 400
COMPENSATION_GAIN = 2.0   # °C per sqrt(mm²)

SMALL_PAD_MAX_MM2 = 10.0
MEDIUM_PAD_MAX_MM2 = 50.0


def pad_category(area: float) -> Optional[str]:
    if area is None or not area > 0:
        return None
    if area < SMALL_PAD_MAX_MM2:
        return "small"
    if area < MEDIUM_PAD_MAX_MM2:
        return "medium"
    return "large"


def compute_compensation(area: float, base_temp_c: float = BASE_TIP_TEMP_C) -> ThermalCompensation:
    """
    Suggested tip temperature for a pad of the given area.

    Bigger pads sink more heat, so the setpoint rises with sqrt(area),
    clamped to what the heater cartridge is rated for. Returns an empty
    suggestion for area <= 0. Nothing here touches the heater.
    """
    if area is None or not area > 0 or not math.isfinite(area):
        return ThermalCompensation(category=None, compensated_temp_c=None, compensation_c=None)

    compensation = round(math.sqrt(area) * COMPENSATION_GAIN, 1)
    target = max(MIN_TIP_TEMP_C, min(MAX_TIP_TEMP_C, base_temp_c + compensation))
    return ThermalCompensation(
        category=pad_category(area),
        compensated_temp_c=int(round(target)),
        compensation_c=compensation,
    )
