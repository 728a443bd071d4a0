"""
Package size parsing for the pre-filter.

Sizes are reduced to base quantities (millilitres, grams or item counts) so
"500ml", "0.5 L" and "16.9 fl oz" compare numerically. A bare "oz" is
ambiguous on shelf labels, so it yields both a mass and a volume reading.
"""

import re
import unicodedata
from dataclasses import dataclass
from typing import List, Optional

VOLUME = "volume"
MASS = "mass"
COUNT = "count"

ML_PER_FL_OZ = 29.5735
G_PER_OZ = 28.3495
G_PER_LB = 453.592

_UNIT_FACTORS = {
    "ml": (VOLUME, 1.0),
    "milliliter": (VOLUME, 1.0),
    "millilitre": (VOLUME, 1.0),
    "cl": (VOLUME, 10.0),
    "l": (VOLUME, 1000.0),
    "lt": (VOLUME, 1000.0),
    "liter": (VOLUME, 1000.0),
    "litre": (VOLUME, 1000.0),
    "floz": (VOLUME, ML_PER_FL_OZ),
    "fluidounce": (VOLUME, ML_PER_FL_OZ),
    "g": (MASS, 1.0),
    "gr": (MASS, 1.0),
    "gram": (MASS, 1.0),
    "kg": (MASS, 1000.0),
    "kilogram": (MASS, 1000.0),
    "oz": (MASS, G_PER_OZ),
    "ounce": (MASS, G_PER_OZ),
    "lb": (MASS, G_PER_LB),
    "lbs": (MASS, G_PER_LB),
    "pound": (MASS, G_PER_LB),
    "ct": (COUNT, 1.0),
    "count": (COUNT, 1.0),
    "pk": (COUNT, 1.0),
    "pack": (COUNT, 1.0),
}

_UNIT_PATTERN = (
    r"(fl\.?\s*oz|fluid\s*ounces?|milliliters?|millilitres?|ml|cl|liters?|litres?|lt|l|"
    r"kilograms?|kg|grams?|gr|g|ounces?|oz|pounds?|lbs?|ct|count|pk|pack)\b"
)
_NUMBER = r"(\d+(?:[.,]\d+)?)"

MULTI_PACK_RE = re.compile(rf"(\d+)\s*[x×]\s*{_NUMBER}\s*{_UNIT_PATTERN}")
SINGLE_RE = re.compile(rf"{_NUMBER}\s*{_UNIT_PATTERN}")
SIZE_TOKEN_RE = re.compile(rf"\b{_NUMBER}\s*{_UNIT_PATTERN}", re.IGNORECASE)


@dataclass(frozen=True)
class Quantity:
    value: float
    dimension: str


def _strip_accents_lower(text: str) -> str:
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return text.lower()


def _canonical_unit(unit: str) -> str:
    unit = re.sub(r"[\s.]", "", unit.lower())
    if unit.startswith("fluidounce") or unit == "floz":
        return "floz"
    if unit.endswith("s") and unit[:-1] in _UNIT_FACTORS and unit != "lbs":
        return unit[:-1]
    return unit


def _to_float(number: str) -> float:
    return float(number.replace(",", "."))


def _readings(value: float, unit: str) -> List[Quantity]:
    canonical = _canonical_unit(unit)
    if canonical not in _UNIT_FACTORS:
        return []
    dimension, factor = _UNIT_FACTORS[canonical]
    readings = [Quantity(value * factor, dimension)]
    if canonical in ("oz", "ounce"):
        readings.append(Quantity(value * ML_PER_FL_OZ, VOLUME))
    return readings


def parse_size(text: Optional[str]) -> List[Quantity]:
    """Parse a size label into every plausible base quantity (empty if unparsable)."""
    if not text:
        return []
    lowered = _strip_accents_lower(text)

    multi = MULTI_PACK_RE.search(lowered)
    if multi:
        count = float(multi.group(1))
        return _readings(count * _to_float(multi.group(2)), multi.group(3))

    single = SINGLE_RE.search(lowered)
    if single:
        return _readings(_to_float(single.group(1)), single.group(2))
    return []


def quantity_similarity(a: Quantity, b: Quantity) -> float:
    """1.0 for equal quantities, falling linearly to 0 at a 20% relative difference."""
    if a.dimension != b.dimension:
        return 0.0
    largest = max(a.value, b.value)
    if largest <= 0:
        return 1.0 if a.value == b.value else 0.0
    diff = abs(a.value - b.value) / largest
    return max(0.0, 1.0 - diff * 5)


def size_similarity(extracted: Optional[str], catalog: Optional[str]) -> float:
    if not extracted or not catalog:
        return 0.0

    extracted_readings = parse_size(extracted)
    catalog_readings = parse_size(catalog)
    if extracted_readings and catalog_readings:
        return max(
            quantity_similarity(a, b) for a in extracted_readings for b in catalog_readings
        )

    left = extracted.lower().strip()
    right = catalog.lower().strip()
    if left and right and (left in right or right in left):
        return 0.65
    return 0.0


def remove_size_tokens(text: str) -> str:
    return re.sub(r"\s+", " ", SIZE_TOKEN_RE.sub(" ", text)).strip()
