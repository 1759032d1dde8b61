"""Size parsing and US/UK/EU conversion.

Providers describe the same physical shoe size differently: StockX reports
US variant values, Alias reports a numeric size with a unit, eBay listings
carry free text such as "UK 9" or "10,5". ``parse_size`` reduces any of
these to a comparable number where one exists; anything with a suffix or a
letter size ("14W", "10.5Y", "OS") keeps only its display string.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

from solesync.core.models import SizeSystem


class Brand(StrEnum):
    NIKE = "nike"
    JORDAN = "jordan"
    ADIDAS = "adidas"
    YEEZY = "yeezy"
    NEW_BALANCE = "new-balance"
    GENERIC = "generic"


class Gender(StrEnum):
    MEN = "men"
    WOMEN = "women"
    GS = "gs"
    PRESCHOOL = "preschool"
    TODDLER = "toddler"
    INFANT = "infant"


@dataclass(frozen=True)
class ParsedSize:
    """Result of parse_size. ``numeric`` is None for non-numeric sizes."""

    numeric: float | None
    display: str
    system: SizeSystem | None = None

    @property
    def is_numeric(self) -> bool:
        return self.numeric is not None


# --- Parsing ---

_SYSTEM_PREFIX = re.compile(r"^(UK|US|EU|JP)\s*", re.IGNORECASE)
_MENS_PREFIX = re.compile(r"^(M|MENS)\s+", re.IGNORECASE)
_WOMENS_PREFIX = re.compile(r"^(W|WMNS|WOMENS)\s+", re.IGNORECASE)
_MIXED_FRACTION = re.compile(r"^(\d+)\s+1/2$")
_NUMBER = re.compile(r"^\d+(\.\d+)?$")

_HALF = "½"


def parse_size(raw: str | float | int | None) -> ParsedSize:
    """Parse a provider size string into (numeric, display, system).

    Rules:
    - whitespace is trimmed; the trimmed input is the display string
    - a leading UK/US/EU/JP prefix sets ``system`` and is dropped before
      numeric parsing; a leading M/MENS word is dropped as well
    - a women's prefix ("W 8", "WMNS 8") is not numeric: a women's 8
      is a different shoe from a men's 8
    - "10,5", "10 1/2" and "10½" all read as 10.5
    - numeric only when the whole remainder is a number; anything with a
      suffix ("14W", "10.5Y") or a letter size ("OS", "XL") is None
    """
    if raw is None:
        return ParsedSize(numeric=None, display="")
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        value = float(raw)
        return ParsedSize(numeric=value, display=format_size(value))

    display = str(raw).strip()
    rest = display
    system: SizeSystem | None = None

    match = _SYSTEM_PREFIX.match(rest)
    if match:
        system = SizeSystem(match.group(1).upper())
        rest = rest[match.end():]
    if _WOMENS_PREFIX.match(rest):
        return ParsedSize(numeric=None, display=display, system=system)
    rest = _MENS_PREFIX.sub("", rest).strip()

    return ParsedSize(numeric=_parse_number(rest), display=display, system=system)


def _parse_number(text: str) -> float | None:
    if not text:
        return None
    if text.endswith(_HALF):
        whole = text[:-1].strip()
        if whole == "":
            return 0.5
        return float(whole) + 0.5 if whole.isdigit() else None
    mixed = _MIXED_FRACTION.match(text)
    if mixed:
        return float(mixed.group(1)) + 0.5
    text = text.replace(",", ".")
    if _NUMBER.match(text):
        return float(text)
    return None


def format_size(value: float) -> str:
    """Render 10.0 as "10" and 10.5 as "10.5"."""
    return f"{value:g}"


def size_identity(parsed: ParsedSize) -> tuple[int, float | str]:
    """Key that puts numeric sizes before non-numeric ones.

    Numeric sizes compare by value; non-numeric sizes by case-folded display.
    """
    if parsed.numeric is not None:
        return (0, parsed.numeric)
    return (1, parsed.display.casefold())


# --- Conversion charts (US -> UK) ---

NIKE_MENS_US_TO_UK: dict[float, float] = {
    3.5: 3, 4: 3, 4.5: 3.5, 5: 4, 5.5: 4.5, 6: 5, 6.5: 5.5, 7: 6,
    7.5: 6.5, 8: 7, 8.5: 7.5, 9: 8, 9.5: 8.5, 10: 9, 10.5: 9.5, 11: 10,
    11.5: 10.5, 12: 11, 12.5: 11.5, 13: 12, 14: 13, 15: 14, 16: 15,
    17: 16, 18: 17,
}

NIKE_WOMENS_US_TO_UK: dict[float, float] = {
    5: 2.5, 5.5: 3, 6: 3.5, 6.5: 4, 7: 4.5, 7.5: 5, 8: 5.5, 8.5: 6,
    9: 6.5, 9.5: 7, 10: 7.5, 10.5: 8, 11: 8.5, 11.5: 9, 12: 9.5, 12.5: 10,
}

# UK 6 appears twice: US 6.5 (EU 39) and US 7 (EU 40).
NIKE_GS_US_TO_UK: dict[float, float] = {
    3.5: 3, 4: 3.5, 4.5: 4, 5: 4.5, 5.5: 5, 6: 5.5, 6.5: 6, 7: 6,
}

# --- EU columns (US -> EU) ---

NIKE_MENS_US_TO_EU: dict[float, float] = {
    3.5: 35.5, 4: 36, 4.5: 36.5, 5: 37.5, 5.5: 38, 6: 38.5, 6.5: 39, 7: 40,
    7.5: 40.5, 8: 41, 8.5: 42, 9: 42.5, 9.5: 43, 10: 44, 10.5: 44.5, 11: 45,
    11.5: 45.5, 12: 46, 12.5: 47, 13: 47.5, 14: 48.5, 15: 49.5, 16: 50.5,
    17: 51.5, 18: 52.5,
}

NIKE_WOMENS_US_TO_EU: dict[float, float] = {
    5: 35.5, 5.5: 36, 6: 36.5, 6.5: 37.5, 7: 38, 7.5: 38.5, 8: 39, 8.5: 40,
    9: 40.5, 9.5: 41, 10: 42, 10.5: 42.5, 11: 43, 11.5: 44, 12: 44.5, 12.5: 45,
}

NIKE_GS_US_TO_EU: dict[float, float] = {
    3.5: 35.5, 4: 36, 4.5: 36.5, 5: 37.5, 5.5: 38, 6: 38.5, 6.5: 39, 7: 40,
}

ADIDAS_MENS_US_TO_UK: dict[float, float] = {
    4: 3.5, 4.5: 4, 5: 4.5, 5.5: 5, 6: 5.5, 6.5: 6, 7: 6.5, 7.5: 7,
    8: 7.5, 8.5: 8, 9: 8.5, 9.5: 9, 10: 9.5, 10.5: 10, 11: 10.5,
    11.5: 11, 12: 11.5, 12.5: 12, 13: 12.5, 14: 13.5, 15: 14.5,
}

ADIDAS_WOMENS_US_TO_UK: dict[float, float] = {
    5: 3.5, 5.5: 4, 6: 4.5, 6.5: 5, 7: 5.5, 7.5: 6, 8: 6.5, 8.5: 7,
    9: 7.5, 9.5: 8, 10: 8.5, 10.5: 9, 11: 9.5, 11.5: 10, 12: 10.5,
}

NEW_BALANCE_MENS_US_TO_UK: dict[float, float] = {
    4: 3.5, 4.5: 4, 5: 4.5, 5.5: 5, 6: 5.5, 6.5: 6, 7: 6.5, 7.5: 7,
    8: 7.5, 8.5: 8, 9: 8.5, 9.5: 9, 10: 9.5, 10.5: 10, 11: 10.5,
    11.5: 11, 12: 11.5, 12.5: 12, 13: 12.5, 14: 13, 15: 14, 16: 15,
}

NEW_BALANCE_WOMENS_US_TO_UK: dict[float, float] = {
    5: 3, 5.5: 3.5, 6: 4, 6.5: 4.5, 7: 5, 7.5: 5.5, 8: 6, 8.5: 6.5,
    9: 7, 9.5: 7.5, 10: 8, 10.5: 8.5, 11: 9, 11.5: 9.5, 12: 10,
}


def detect_brand(brand_name: str | None = None, title: str | None = None) -> Brand:
    text = f"{brand_name or ''} {title or ''}".lower()
    if "jordan" in text:
        return Brand.JORDAN
    if "nike" in text:
        return Brand.NIKE
    if "yeezy" in text:
        return Brand.YEEZY
    if "adidas" in text:
        return Brand.ADIDAS
    if "new balance" in text:
        return Brand.NEW_BALANCE
    return Brand.GENERIC


def detect_gender(title: str | None = None) -> Gender:
    """Gender from a product title; men's when nothing matches."""
    text = (title or "").lower()
    if "women's" in text or "wmns" in text:
        return Gender.WOMEN
    if "grade school" in text or " gs" in text:
        return Gender.GS
    if "preschool" in text or " ps" in text:
        return Gender.PRESCHOOL
    if "toddler" in text or " td" in text:
        return Gender.TODDLER
    if "infant" in text:
        return Gender.INFANT
    return Gender.MEN


def size_chart(brand: Brand, gender: Gender) -> dict[float, float]:
    """US -> UK chart for a brand/gender. Unknown brands use Nike's."""
    if brand in (Brand.ADIDAS, Brand.YEEZY):
        return ADIDAS_WOMENS_US_TO_UK if gender == Gender.WOMEN else ADIDAS_MENS_US_TO_UK
    if brand == Brand.NEW_BALANCE:
        if gender == Gender.WOMEN:
            return NEW_BALANCE_WOMENS_US_TO_UK
        return NEW_BALANCE_MENS_US_TO_UK
    if gender == Gender.WOMEN:
        return NIKE_WOMENS_US_TO_UK
    if gender in (Gender.GS, Gender.PRESCHOOL) and brand != Brand.GENERIC:
        return NIKE_GS_US_TO_UK
    return NIKE_MENS_US_TO_UK


def us_to_uk(us: float, brand: Brand = Brand.GENERIC, gender: Gender = Gender.MEN) -> float | None:
    value = size_chart(brand, gender).get(float(us))
    return None if value is None else float(value)


def uk_to_us_all(uk: float, brand: Brand = Brand.GENERIC, gender: Gender = Gender.MEN) -> list[float]:
    """Every US size mapping to a UK size, ascending."""
    chart = size_chart(brand, gender)
    return sorted(float(us) for us, mapped in chart.items() if mapped == float(uk))


def uk_to_us(uk: float, brand: Brand = Brand.GENERIC, gender: Gender = Gender.MEN) -> float | None:
    """Smallest US size mapping to a UK size."""
    matches = uk_to_us_all(uk, brand, gender)
    return matches[0] if matches else None


def eu_chart(brand: Brand, gender: Gender) -> dict[float, float] | None:
    """US -> EU chart for a brand/gender, or None when EU sizes are not charted.

    Only Nike's (and Jordan's) EU columns are carried. Adidas runs in thirds
    of a size, so its EU labels are left to match by display string.
    """
    if brand in (Brand.ADIDAS, Brand.YEEZY, Brand.NEW_BALANCE):
        return None
    if gender == Gender.WOMEN:
        return NIKE_WOMENS_US_TO_EU
    if gender in (Gender.GS, Gender.PRESCHOOL) and brand != Brand.GENERIC:
        return NIKE_GS_US_TO_EU
    return NIKE_MENS_US_TO_EU


def us_to_eu(us: float, brand: Brand = Brand.GENERIC, gender: Gender = Gender.MEN) -> float | None:
    chart = eu_chart(brand, gender)
    value = chart.get(float(us)) if chart else None
    return None if value is None else float(value)


def eu_to_us(eu: float, brand: Brand = Brand.GENERIC, gender: Gender = Gender.MEN) -> float | None:
    chart = eu_chart(brand, gender) or {}
    matches = sorted(float(us) for us, mapped in chart.items() if mapped == float(eu))
    return matches[0] if matches else None


def convert_size(
    value: float,
    from_system: SizeSystem,
    to_system: SizeSystem,
    brand: Brand = Brand.GENERIC,
    gender: Gender = Gender.MEN,
) -> float | None:
    """Convert between US, UK and EU through the brand charts. JP is not supported.

    Returns None when the chart has no entry for the size.
    """
    from_system = SizeSystem(from_system)
    to_system = SizeSystem(to_system)
    if from_system == to_system:
        return float(value)
    if SizeSystem.JP in (from_system, to_system):
        return None

    if from_system == SizeSystem.US:
        us: float | None = float(value)
    elif from_system == SizeSystem.UK:
        us = uk_to_us(value, brand, gender)
    else:
        us = eu_to_us(value, brand, gender)
    if us is None:
        return None

    if to_system == SizeSystem.US:
        return us
    if to_system == SizeSystem.UK:
        return us_to_uk(us, brand, gender)
    return us_to_eu(us, brand, gender)


def to_us_numeric(
    parsed: ParsedSize,
    brand: Brand = Brand.GENERIC,
    gender: Gender = Gender.MEN,
) -> float | None:
    """Numeric US size for a parsed size; unprefixed sizes are taken as US."""
    if parsed.numeric is None:
        return None
    if parsed.system is None or parsed.system == SizeSystem.US:
        return parsed.numeric
    return convert_size(parsed.numeric, parsed.system, SizeSystem.US, brand, gender)
