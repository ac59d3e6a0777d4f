# mbalit-dispatch/mbalit_dispatch/pricing.py
"""
Price quotes for waste pickups.

A quote is the base fee plus a per-kilometre charge, scaled by how hard the
waste is to handle and how much of it there is:

    price = (BASE_FEE + distance_km * PER_KM_RATE) * type_multiplier * size_multiplier

clamped to [MIN_PRICE, MAX_PRICE]. All amounts are in GMD.
"""

from __future__ import annotations

from typing import Dict

from . import config
from .models import WasteSize, WasteType
from .utils import round_half_up

# Waste type multiplier lookup table.
# Hazardous or heavy categories cost more to collect and dispose of.
WASTE_TYPE_MULTIPLIERS: Dict[WasteType, float] = {
    WasteType.HOUSEHOLD: 1.0,
    WasteType.KITCHEN: 1.2,
    WasteType.CHEMICAL: 2.0,
    WasteType.ELECTRONIC: 1.5,
    WasteType.CONSTRUCTION: 1.8,
    WasteType.GARDEN: 0.8,
    WasteType.MEDICAL: 2.5,
    WasteType.RECYCLABLE: 0.7,
}

# Waste size multiplier lookup table.
WASTE_SIZE_MULTIPLIERS: Dict[WasteSize, float] = {
    WasteSize.SMALL: 1.0,        # a few bags, up to 10 kg
    WasteSize.MEDIUM: 1.5,       # 10 - 50 kg
    WasteSize.LARGE: 2.5,        # 50 - 150 kg
    WasteSize.EXTRA_LARGE: 4.0,  # 150+ kg, full room cleanup
}


def calculate_price(waste_type: WasteType, waste_size: WasteSize, distance_km: float) -> int:
    """
    Quote a pickup.

    Args:
        waste_type: Category of the waste
        waste_size: Volume of the waste
        distance_km: Distance the collector has to travel

    Returns:
        Whole-dalasi price between MIN_PRICE and MAX_PRICE

    Example:
        >>> calculate_price(WasteType.ELECTRONIC, WasteSize.MEDIUM, 3.0)
        180
    """
    if distance_km < 0:
        raise ValueError(f"distance_km must be >= 0, got {distance_km}")

    type_multiplier = WASTE_TYPE_MULTIPLIERS.get(waste_type)
    size_multiplier = WASTE_SIZE_MULTIPLIERS.get(waste_size)
    if type_multiplier is None or size_multiplier is None:
        return int(config.MIN_PRICE)

    distance_cost = distance_km * config.PER_KM_RATE
    total = round_half_up((config.BASE_FEE + distance_cost) * type_multiplier * size_multiplier)
    return int(max(config.MIN_PRICE, min(config.MAX_PRICE, total)))


def calculate_match_price(base_price: float, distance_km: float, per_km_rate: float = config.PER_KM_RATE) -> int:
    """
    Price once a collector is matched: the base quote plus the distance the
    matched collector actually has to travel.
    """
    return round_half_up(base_price + distance_km * per_km_rate)


def format_price(amount: float) -> str:
    """
    Format an amount for display.

    Example:
        >>> format_price(1250)
        'D1,250'
    """
    return f"{config.CURRENCY_SYMBOL}{round_half_up(amount):,}"
