"""
Origin payload → shard record normalization.

The origin service returns camelCase JSON with nested objects; shard records
are flat snake_case objects matching the staging schema of each source
(``warehouse.relations.SOURCES``). Horse records additionally carry two
nested arrays:

  ``career``: one entry per (race year, race type). The origin interleaves
      season rows with prize-only rows (``raceYear`` null) that belong to the
      season row above them; their amounts are converted to PLN with the
      fixed ``FX_RATES`` table and summed into ``prize_amounts``.
  ``races``: one entry per race participation, carrying both the
      participation fields (``race_records``) and the race metadata
      (``races``).

Falsy origin values (``0``, ``""``, ``false``) are normalized to ``None``
except for the two boolean horse flags, which default to ``False``.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Fixed conversion rates to PLN, keyed by lower-cased currency token.
FX_RATES: dict[str, float] = {
    "pln": 1.0,
    "zł": 1.0,
    "zl": 1.0,
    "eur": 4.25,
    "€": 4.25,
    "kč": 0.18,
    "czk": 0.18,
    "skr": 0.42,
    "sek": 0.42,
    "ft": 0.011,
    "huf": 0.011,
    "aed": 1.16,
    "$": 4.0,
    "usd": 4.0,
}

PRIZE_CURRENCY = "PLN"
UNKNOWN_PLACE = "UNKNOWN"

_NUMBER_RE = re.compile(r"^-?[\d\s.,]+$")


def _get(obj: Any, *path: str) -> Any:
    """Follow ``path`` through nested dicts/lists (``"0"`` indexes a list)."""
    for part in path:
        if isinstance(obj, dict):
            obj = obj.get(part)
        elif isinstance(obj, list) and part.isdigit():
            index = int(part)
            obj = obj[index] if index < len(obj) else None
        else:
            return None
    return obj


def _or_none(value: Any) -> Any:
    return value or None


# ── Prizes ────────────────────────────────────────────────────────────────────

def parse_prize(text: str) -> float:
    """Convert an origin prize string to an amount in PLN.

    Example::

        parse_prize("1500 zł")      # → 1500.0
        parse_prize("2,5 EUR")      # → 10.625
        parse_prize("12 000 Kč")    # → 2160.0

    Unknown currencies are logged and converted at rate 1. Unparseable
    amounts count as 0.
    """
    tokens = text.strip().split()
    if not tokens:
        return 0.0
    currency = "pln"
    if len(tokens) > 1 and not _NUMBER_RE.match(tokens[-1]):
        currency = tokens[-1].lower()
        tokens = tokens[:-1]
    amount_text = "".join(tokens).replace(",", ".")
    try:
        amount = float(amount_text)
    except ValueError:
        logger.debug("Unparseable prize amount %r", text)
        amount = 0.0

    rate = FX_RATES.get(currency)
    if rate is None:
        logger.warning("Unmapped currency '%s', defaulting rate=1.", currency)
        rate = 1.0
    return amount * rate


# ── Career ────────────────────────────────────────────────────────────────────

def normalize_career(raw: Any) -> list[dict[str, Any]]:
    """Group origin career rows by (race year, race type) with PLN prize totals."""
    if not isinstance(raw, list):
        logger.debug("Career data is not a list; ignoring")
        return []

    buckets: dict[tuple[Any, str], dict[str, Any]] = {}
    last_key: Optional[tuple[Any, str]] = None
    for rec in raw:
        if not isinstance(rec, dict):
            continue
        if rec.get("raceYear") is not None:
            key = (rec["raceYear"], rec.get("raceType") or "UNKNOWN")
            if key not in buckets:
                buckets[key] = {
                    "race_year": rec["raceYear"],
                    "race_type": rec.get("raceType") or None,
                    "horse_age": rec.get("horseAge") or None,
                    "race_count": rec.get("raceCount") or 0,
                    "race_won_count": rec.get("raceWonCount") or 0,
                    "race_prize_count": rec.get("racePrizeCount") or 0,
                    "prize_amounts": 0.0,
                    "prize_currencies": PRIZE_CURRENCY,
                }
            last_key = key
        elif last_key is not None and rec.get("prize"):
            buckets[last_key]["prize_amounts"] += parse_prize(str(rec["prize"]))

    return list(buckets.values())


# ── Races ─────────────────────────────────────────────────────────────────────

def _finish_place(place: Any) -> Any:
    if isinstance(place, (int, float)) and not isinstance(place, bool) and place > 0:
        return place
    return UNKNOWN_PLACE


def normalize_race(r: dict[str, Any]) -> dict[str, Any]:
    """Map one origin race participation to a ``races`` + ``race_records`` record."""
    race = r.get("race") or {}
    return {
        "horse_id": _or_none(_get(r, "horse", "id")),
        "race_id": _or_none(race.get("id")),
        "start_order": _or_none(r.get("order")),
        "finish_place": _finish_place(r.get("place")),
        "jockey_weight_kg": _or_none(r.get("jockeyWeight")),
        "prize_amount": _or_none(r.get("prize")),
        "prize_currency": _or_none(_get(race, "currency", "code")),
        "jockey_id": _or_none(_get(r, "jockey", "id")),
        "trainer_id": _or_none(_get(r, "trainer", "id")),
        "race_number": _or_none(race.get("number")),
        "race_name": _or_none(race.get("name")),
        "race_date": _or_none(race.get("date")),
        "currency_code": _or_none(_get(race, "currency", "code")),
        "currency_symbol": _or_none(_get(race, "currency", "symbol")),
        "duration_ms": _or_none(race.get("duration")),
        "track_distance_m": _or_none(race.get("trackDistance")),
        "temperature_c": _or_none(race.get("temperature")),
        "weather": _or_none(race.get("weather")),
        "race_group": _or_none(race.get("group")),
        "subtype": _or_none(race.get("subType")),
        "category_id": _or_none(_get(race, "category", "id")),
        "category_breed": _or_none(_get(race, "category", "horseBreed")),
        "category_name": _or_none(_get(race, "category", "name")),
        "country_code": _or_none(_get(race, "country", "alfa3")),
        "city_name": _or_none(_get(race, "city", "name")),
        "track_type": _or_none(_get(race, "trackType", "name")),
        "video_url": _or_none(race.get("video")),
        "race_rules": _or_none(race.get("fullConditions")),
        "payments": _or_none(race.get("payments")),
        "race_style": _or_none(_get(race, "style", "name")),
    }


def normalize_races(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        logger.debug("Races data is not a list; ignoring")
        return []
    return [normalize_race(r) for r in raw if isinstance(r, dict)]


# ── Entities ──────────────────────────────────────────────────────────────────

def normalize_horse(
    horse_id: int, detail: dict[str, Any], career: Any, races: Any
) -> dict[str, Any]:
    """Build a horse shard record from the detail, career and races payloads."""
    career_rows = career.get("data") if isinstance(career, dict) else career
    return {
        "horse_id": horse_id,
        "horse_name": _or_none(detail.get("name")),
        "horse_country": _or_none(detail.get("suffix")),
        "birth_year": _or_none(detail.get("dateOfBirth")),
        "horse_sex": _or_none(detail.get("sex")),
        "breed": _or_none(detail.get("breed")),
        "mother_id": _or_none(_get(detail, "mother", "id")),
        "father_id": _or_none(_get(detail, "father", "id")),
        "trainer_id": _or_none(_get(detail, "trainer", "id")),
        "breeder_id": _or_none(_get(detail, "breeders", "0", "id")),
        "color_name_pl": _or_none(_get(detail, "color", "polishName")),
        "color_name_en": _or_none(_get(detail, "color", "englishName")),
        "polish_breeding": bool(detail.get("horseFromPolishBreeding")),
        "foreign_training": bool(detail.get("horseRanInForeignTraining")),
        "owner_name": _or_none(_get(detail, "raceOwners", "0", "name")),
        "career": normalize_career(career_rows),
        "races": normalize_races(races),
    }


def normalize_person(key_column: str, entity_id: int, payload: dict[str, Any]) -> dict[str, Any]:
    """Jockey and trainer records share one shape."""
    return {
        key_column: entity_id,
        "first_name": _or_none(payload.get("firstName")),
        "last_name": _or_none(payload.get("lastName")),
        "licence_country": _or_none(_get(payload, "licenceCountry", "alfa3")),
    }


def normalize_breeder(breeder_id: int, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "breeder_id": breeder_id,
        "name": _or_none(payload.get("name")),
        "city": _or_none(payload.get("city")),
    }
