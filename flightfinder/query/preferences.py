"""Helpers that turn raw agent parameters into typed preference models."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from flightfinder.types import FlightPreferences


_CABIN_ALIASES = {
    "economy": "economy",
    "coach": "economy",
    "standard": "economy",
    "basic": "economy",
    "premium economy": "premium_economy",
    "premium": "premium_economy",
    "economy plus": "premium_economy",
    "business": "business",
    "business class": "business",
    "first": "first",
    "first class": "first",
}


def map_cabin_class(cabin_class: str) -> Optional[str]:
    """Map loose cabin wording onto a standard cabin; None if unknown."""
    if not isinstance(cabin_class, str):
        return None
    key = " ".join(cabin_class.strip().lower().replace("_", " ").replace("-", " ").split())
    return _CABIN_ALIASES.get(key)


def _as_list(value: Any) -> List[Any]:
    return list(value) if isinstance(value, (list, tuple, set)) else [value]


def _pick(parameters: Mapping[str, Any], mapping: Dict[str, str]) -> Dict[str, Any]:
    """Copy keys that were explicitly given (False and 0 included)."""
    return {dest: parameters[src] for src, dest in mapping.items() if parameters.get(src) is not None}


def parse_preferences(parameters: Mapping[str, Any]) -> FlightPreferences:
    """Collect the soft preference fields scattered through raw parameters.

    Stop preferences: any of ``directFlightsOnly``, ``nonstop`` or ``direct``
    set to True forces ``max_stops`` to 0 and wins over an explicit
    ``maxStops``. Airline and airport filters accept a single code or a list.
    Nested groups (luggage, seat, times) are only set when at least one of
    their fields is present.
    """
    prefs: Dict[str, Any] = {}

    if isinstance(parameters.get("maxPrice"), (int, float)) and not isinstance(parameters.get("maxPrice"), bool):
        prefs["maxPrice"] = parameters["maxPrice"]

    if any(parameters.get(k) is True for k in ("directFlightsOnly", "nonstop", "direct")):
        prefs["directFlightsOnly"] = True
        prefs["maxStops"] = 0
    elif parameters.get("maxStops") is not None:
        prefs["maxStops"] = parameters["maxStops"]

    for key in ("preferredAirlines", "excludedAirlines", "preferredAirports", "excludedAirports"):
        if parameters.get(key):
            prefs[key] = _as_list(parameters[key])

    luggage = _pick(parameters, {
        "checkedBags": "checkedBags",
        "carryOn": "carryOn",
        "personalItem": "personalItem",
        "extraWeight": "extraWeight",
        "sportEquipment": "sportEquipment",
    })
    if luggage:
        prefs["luggagePreference"] = luggage

    seat = _pick(parameters, {
        "seatPosition": "position",
        "seatSection": "section",
        "extraLegroom": "extraLegroom",
        "seatsTogether": "prefersTogether",
    })
    if seat:
        prefs["seatPreference"] = seat

    times = _pick(parameters, {
        "departureTimeRange": "departureTimeRange",
        "arrivalTimeRange": "arrivalTimeRange",
        "returnDepartureTimeRange": "returnDepartureTimeRange",
        "returnArrivalTimeRange": "returnArrivalTimeRange",
        "avoidOvernight": "avoidOvernight",
        "preferWeekday": "preferWeekday",
        "preferWeekend": "preferWeekend",
    })
    if times:
        prefs["timePreferences"] = times

    prefs.update(_pick(parameters, {
        "mealPreference": "mealPreference",
        "minLayoverTime": "minLayoverTime",
        "maxLayoverTime": "maxLayoverTime",
        "flexibleDates": "flexibleDates",
        "priorityBoarding": "priorityBoarding",
        "refundable": "refundable",
    }))

    return FlightPreferences.model_validate(prefs)
