from pydantic import BaseModel, ConfigDict, Field, AliasChoices, ValidationInfo, field_validator
from typing import Any, Dict, List, Literal, Optional, Tuple
import hashlib
import json

CabinClass = Literal["economy", "premium_economy", "business", "first"]
CABIN_CLASSES: Tuple[str, ...] = ("economy", "premium_economy", "business", "first")

HourRange = Tuple[int, int]  # 24h clock, e.g. (8, 12) for 8 AM to 12 PM


class LuggagePreference(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    checked_bags: Optional[int] = Field(None, alias="checkedBags")
    carry_on: Optional[bool] = Field(None, alias="carryOn")
    personal_item: Optional[bool] = Field(None, alias="personalItem")
    extra_weight: Optional[bool] = Field(None, alias="extraWeight")
    sport_equipment: Optional[str] = Field(None, alias="sportEquipment")  # skis, golf clubs...


class SeatPreference(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    position: Optional[Literal["window", "aisle", "middle"]] = None
    section: Optional[Literal["front", "middle", "back", "emergency", "bulkhead"]] = None
    extra_legroom: Optional[bool] = Field(None, alias="extraLegroom")
    prefers_together: Optional[bool] = Field(None, alias="prefersTogether")


class TimePreferences(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    departure_time_range: Optional[HourRange] = Field(None, alias="departureTimeRange")
    arrival_time_range: Optional[HourRange] = Field(None, alias="arrivalTimeRange")
    return_departure_time_range: Optional[HourRange] = Field(None, alias="returnDepartureTimeRange")
    return_arrival_time_range: Optional[HourRange] = Field(None, alias="returnArrivalTimeRange")
    avoid_overnight: Optional[bool] = Field(None, alias="avoidOvernight")
    prefer_weekday: Optional[bool] = Field(None, alias="preferWeekday")
    prefer_weekend: Optional[bool] = Field(None, alias="preferWeekend")


class FlightPreferences(BaseModel):
    """Soft preferences carried onto every generated query.

    None of these take part in expansion; they are forwarded to the search
    backend (as filters where it supports them) and to result ranking.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    max_price: Optional[float] = Field(None, alias="maxPrice")
    max_stops: Optional[int] = Field(None, alias="maxStops")
    direct_flights_only: Optional[bool] = Field(None, alias="directFlightsOnly")
    preferred_airlines: Optional[Tuple[str, ...]] = Field(None, alias="preferredAirlines")
    excluded_airlines: Optional[Tuple[str, ...]] = Field(None, alias="excludedAirlines")
    preferred_airports: Optional[Tuple[str, ...]] = Field(None, alias="preferredAirports")
    excluded_airports: Optional[Tuple[str, ...]] = Field(None, alias="excludedAirports")
    luggage: Optional[LuggagePreference] = Field(None, alias="luggagePreference")
    seat: Optional[SeatPreference] = Field(None, alias="seatPreference")
    times: Optional[TimePreferences] = Field(None, alias="timePreferences")
    meal_preference: Optional[str] = Field(None, alias="mealPreference")
    min_layover_minutes: Optional[int] = Field(None, alias="minLayoverTime")
    max_layover_minutes: Optional[int] = Field(None, alias="maxLayoverTime")
    flexible_dates: Optional[bool] = Field(None, alias="flexibleDates")
    priority_boarding: Optional[bool] = Field(None, alias="priorityBoarding")
    refundable: Optional[bool] = None

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


class SearchIntent(BaseModel):
    """Loosely specified search request, before expansion.

    Accepts the snake_case field names as well as the camelCase keys emitted
    by the planning agent (``departureDateRange``, ``numAdults``...).
    Semantic validation (missing airports, unknown cabin, bad dates) belongs
    to the query generator so every failure surfaces as one error type.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    origins: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("origins", "origin"),
    )
    destinations: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("destinations", "destination", "dest"),
    )
    departure_expression: Optional[str] = Field(
        None,
        validation_alias=AliasChoices(
            "departure_expression", "departureDate", "departureDateRange", "departureDateExpression"
        ),
    )
    return_expression: Optional[str] = Field(
        None,
        validation_alias=AliasChoices(
            "return_expression", "returnDate", "returnDateRange", "returnDateExpression"
        ),
    )
    stay_duration_days: Optional[int] = Field(
        None, validation_alias=AliasChoices("stay_duration_days", "stayDuration", "stayDurationDays")
    )
    adults: int = Field(1, validation_alias=AliasChoices("adults", "numAdults"))
    children: int = Field(0, validation_alias=AliasChoices("children", "numChildren"))
    infants: int = Field(0, validation_alias=AliasChoices("infants", "numInfants"))
    cabin_class: Optional[str] = Field(None, validation_alias=AliasChoices("cabin_class", "cabinClass"))
    date_flexibility_days: Optional[int] = Field(
        None, validation_alias=AliasChoices("date_flexibility_days", "dateFlexibilityDays")
    )
    departure_flexibility_days: Optional[int] = Field(
        None, validation_alias=AliasChoices("departure_flexibility_days", "departureDateFlexibility")
    )
    return_flexibility_days: Optional[int] = Field(
        None, validation_alias=AliasChoices("return_flexibility_days", "returnDateFlexibility")
    )
    expand_date_ranges: bool = Field(
        False, validation_alias=AliasChoices("expand_date_ranges", "expandDateRanges")
    )
    preferences: FlightPreferences = Field(default_factory=FlightPreferences)

    @field_validator("origins", "destinations", mode="before")
    @classmethod
    def _wrap_single_code(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("adults", "children", "infants", mode="before")
    @classmethod
    def _default_absent_count(cls, v: Any, info: ValidationInfo) -> Any:
        # The planning agent marks absent counts with null
        if v is None:
            return 1 if info.field_name == "adults" else 0
        return v

    @field_validator("cabin_class", mode="before")
    @classmethod
    def _blank_cabin_is_absent(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    def fingerprint(self) -> str:
        """Stable hash of the intent, used as the query-cache key."""
        data = self.model_dump(mode="json")
        return hashlib.md5(json.dumps(data, sort_keys=True).encode()).hexdigest()


class FlightQuery(BaseModel):
    """One fully resolved origin/destination/date/passenger combination."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    origin: str
    destination: str = Field(alias="dest")
    departure_date: str = Field(alias="depDate")  # YYYY-MM-DD
    return_date: Optional[str] = Field(None, alias="retDate")
    adults: int = Field(1, alias="numAdults")
    children: int = Field(0, alias="numChildren")
    infants: int = Field(0, alias="numInfants")
    cabin_class: CabinClass = Field("economy", alias="cabinClass")
    preferences: Optional[FlightPreferences] = None

    @property
    def is_round_trip(self) -> bool:
        return self.return_date is not None

    @property
    def route(self) -> str:
        return f"{self.origin}-{self.destination}"

    def to_wire(self) -> Dict[str, Any]:
        """camelCase dict with preferences flattened in, as the web client expects."""
        data = self.model_dump(by_alias=True, exclude_none=True)
        data.update(data.pop("preferences", None) or {})
        return data

    def cache_key(self) -> str:
        # Deterministic key; short hash keeps storage keys compact
        parts = [
            self.origin.upper(),
            self.destination.upper(),
            self.departure_date,
            self.return_date or "ONEWAY",
            str(self.adults),
            str(self.children),
            str(self.infants),
            self.cabin_class,
        ]
        if self.preferences is not None and not self.preferences.is_empty():
            parts.append(json.dumps(self.preferences.model_dump(mode="json", exclude_none=True), sort_keys=True))
        return hashlib.md5("|".join(parts).encode()).hexdigest()
