"""
Query generation for flight searches.

Expands a loosely specified SearchIntent (several airports, relative dates,
flexibility windows, stay durations) into the cross-product of concrete
FlightQuery values, pruning impossible combinations as it goes.
"""

from datetime import date, timedelta
from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from flightfinder.config import settings
from flightfinder.obs.logger import log_event
from flightfinder.query.preferences import map_cabin_class, parse_preferences
from flightfinder.types import FlightQuery, SearchIntent
from flightfinder.utils.dates import DateExpressionError, resolve_date_expression, today_in, with_flexibility

MAX_PASSENGERS = 9  # seated passengers per booking


class QueryGeneratorError(Exception):
    """The single error type raised by query generation.

    ``field`` names the offending input (``origins``, ``cabinClass``,
    ``departureDateRange``...) when there is one; ``code`` separates bad
    input from unsatisfiable combinations and internal failures.
    """

    INVALID_INPUT = "invalid_input"
    NO_COMBINATIONS = "no_combinations"
    INTERNAL = "internal"

    def __init__(self, message: str, field: Optional[str] = None, code: str = INVALID_INPUT):
        super().__init__(message)
        self.message = message
        self.field = field
        self.code = code

    def to_dict(self) -> dict:
        return {"error": self.message, "field": self.field, "code": self.code}


SearchParameters = Union[SearchIntent, Mapping[str, Any]]


def coerce_intent(parameters: SearchParameters) -> SearchIntent:
    if isinstance(parameters, SearchIntent):
        return parameters
    if not isinstance(parameters, Mapping):
        raise QueryGeneratorError("Search parameters must be an object")

    try:
        data = dict(parameters)
        if "preferences" not in data:
            data["preferences"] = parse_preferences(data)
        return SearchIntent.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or None
        raise QueryGeneratorError(f"Invalid value for {field}: {first.get('msg')}", field=field)


def _unique_codes(codes: Sequence[str]) -> List[str]:
    # Upper-case and deduplicate preserving order
    out: List[str] = []
    for code in codes:
        c = str(code).strip().upper()
        if c and c not in out:
            out.append(c)
    return out


def _validate(intent: SearchIntent) -> Tuple[List[str], List[str], str]:
    origins = _unique_codes(intent.origins)
    if not origins:
        raise QueryGeneratorError("No origin specified", field="origins")

    destinations = _unique_codes(intent.destinations)
    if not destinations:
        raise QueryGeneratorError("No destination specified", field="destinations")

    if not intent.departure_expression or not intent.departure_expression.strip():
        raise QueryGeneratorError("No departure date specified", field="departureDateRange")

    cabin = "economy"
    if intent.cabin_class is not None:
        cabin = map_cabin_class(intent.cabin_class)
        if cabin is None:
            raise QueryGeneratorError(f"Invalid cabin class: {intent.cabin_class}", field="cabinClass")

    if intent.adults < 1:
        raise QueryGeneratorError("At least one adult passenger is required", field="numAdults")
    if intent.children < 0:
        raise QueryGeneratorError("Number of children cannot be negative", field="numChildren")
    if intent.infants < 0:
        raise QueryGeneratorError("Number of infants cannot be negative", field="numInfants")
    if intent.infants > intent.adults:
        raise QueryGeneratorError("Each infant must travel with an adult", field="numInfants")
    if intent.adults + intent.children > MAX_PASSENGERS:
        raise QueryGeneratorError(
            f"Cannot search for more than {MAX_PASSENGERS} passengers", field="numAdults"
        )

    if intent.stay_duration_days is not None and intent.stay_duration_days < 1:
        raise QueryGeneratorError("Stay duration must be at least 1 day", field="stayDuration")
    for value, field in (
        (intent.date_flexibility_days, "dateFlexibilityDays"),
        (intent.departure_flexibility_days, "departureDateFlexibility"),
        (intent.return_flexibility_days, "returnDateFlexibility"),
    ):
        if value is not None and value < 0:
            raise QueryGeneratorError("Date flexibility cannot be negative", field=field)

    return origins, destinations, cabin


def _resolve(expression: str, field: str, label: str, today: date, expand: bool) -> List[date]:
    try:
        return resolve_date_expression(expression, today=today, expand_range=expand)
    except DateExpressionError:
        raise QueryGeneratorError(f"Invalid {label} date: {expression}", field=field)


def _departure_dates(intent: SearchIntent, today: date) -> List[date]:
    dates = _resolve(intent.departure_expression, "departureDateRange", "departure", today,
                     intent.expand_date_ranges)
    if not dates:
        # "one-way" only makes sense for the return leg
        raise QueryGeneratorError(
            f"Invalid departure date: {intent.departure_expression}", field="departureDateRange"
        )
    flex = intent.departure_flexibility_days
    if flex is None:
        flex = intent.date_flexibility_days
    return with_flexibility(dates, flex)


def _return_dates(intent: SearchIntent, today: date) -> List[Optional[date]]:
    if not intent.return_expression:
        return [None]
    dates = _resolve(intent.return_expression, "returnDateRange", "return", today,
                     intent.expand_date_ranges)
    if not dates:
        return [None]
    flex = intent.return_flexibility_days
    if flex is None:
        flex = intent.date_flexibility_days
    return list(with_flexibility(dates, flex))


def _generate(parameters: SearchParameters, today: Optional[date]) -> List[FlightQuery]:
    intent = coerce_intent(parameters)
    origins, destinations, cabin = _validate(intent)
    if today is None:
        today = today_in(settings.TZ)

    departures = _departure_dates(intent, today)
    stay = intent.stay_duration_days
    # A stay duration replaces independent return-date resolution
    returns = [None] if stay is not None else _return_dates(intent, today)
    preferences = None if intent.preferences.is_empty() else intent.preferences

    queries: List[FlightQuery] = []
    for origin in origins:
        for destination in destinations:
            if origin == destination:
                continue
            for dep in departures:
                candidates = [dep + timedelta(days=stay)] if stay is not None else returns
                for ret in candidates:
                    if ret is not None and ret <= dep:
                        continue
                    queries.append(FlightQuery(
                        origin=origin,
                        destination=destination,
                        departure_date=dep.isoformat(),
                        return_date=ret.isoformat() if ret else None,
                        adults=intent.adults,
                        children=intent.children,
                        infants=intent.infants,
                        cabin_class=cabin,
                        preferences=preferences,
                    ))

    if not queries:
        raise QueryGeneratorError(
            "No valid flight combinations for the given airports and dates",
            code=QueryGeneratorError.NO_COMBINATIONS,
        )

    log_event(
        "queries_generated",
        level="DEBUG",
        count=len(queries),
        origins=origins,
        destinations=destinations,
        departure_dates=len(departures),
    )
    return queries


def generate_queries(parameters: SearchParameters, today: Optional[date] = None) -> List[FlightQuery]:
    """Expand search parameters into every concrete flight query.

    ``parameters`` is a SearchIntent or the raw dict produced by the planning
    agent. ``today`` pins relative date resolution (defaults to the current
    day in ``settings.TZ``). Raises QueryGeneratorError; never returns an
    empty list.
    """
    try:
        return _generate(parameters, today)
    except QueryGeneratorError as e:
        log_event("query_generation_rejected", level="INFO", error=e.message, field=e.field, code=e.code)
        raise
    except Exception as e:
        log_event("query_generation_failed", level="ERROR", error=e)
        raise QueryGeneratorError(
            "Failed to generate flight queries", code=QueryGeneratorError.INTERNAL
        ) from e
