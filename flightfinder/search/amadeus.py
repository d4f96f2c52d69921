import httpx
import time
from typing import Dict, Any, List, Optional
from flightfinder.config import settings
from flightfinder.obs.logger import log_event
from flightfinder.types import FlightQuery

SANDBOX_BASE = "https://test.api.amadeus.com"
PRODUCTION_BASE = "https://api.amadeus.com"

CABIN_CODES = {
    "economy": "ECONOMY",
    "premium_economy": "PREMIUM_ECONOMY",
    "business": "BUSINESS",
    "first": "FIRST",
}


class AmadeusClient:
    """Executes one FlightQuery against the Flight Offers Search API."""

    def __init__(self, client_id: Optional[str] = None, client_secret: Optional[str] = None,
                 env: Optional[str] = None, http: Optional[httpx.Client] = None,
                 max_offers: int = 5):
        self.client_id = client_id or settings.AMADEUS_CLIENT_ID
        self.client_secret = client_secret or settings.AMADEUS_CLIENT_SECRET
        env = env or settings.AMADEUS_ENV
        self.base_url = PRODUCTION_BASE if env == "production" else SANDBOX_BASE
        self.max_offers = max_offers
        self._token = None
        self._exp = 0
        # Persistent HTTP client with HTTP/2 and sensible timeouts
        self._http = http or httpx.Client(
            http2=True,
            timeout=httpx.Timeout(connect=3.0, read=12.0, write=12.0, pool=12.0),
        )

    def close(self) -> None:
        self._http.close()

    def _get_token(self):
        if self._token and time.time() < self._exp - 60:
            return self._token
        data = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        r = self._http.post(
            f"{self.base_url}/v1/security/oauth2/token",
            data=data,
            headers={"Accept": "application/json"},
        )
        r.raise_for_status()
        j = r.json()
        self._token = j["access_token"]
        self._exp = time.time() + j.get("expires_in", 1799)
        return self._token

    def _build_travelers(self, query: FlightQuery) -> List[Dict[str, Any]]:
        """
        Adults first, then children, then infants on an adult's lap. Ids are
        sequential strings starting at '1'; each infant points at one adult.
        """
        travelers: List[Dict[str, Any]] = []
        for _ in range(query.adults):
            travelers.append({"id": str(len(travelers) + 1), "travelerType": "ADULT"})
        for _ in range(query.children):
            travelers.append({"id": str(len(travelers) + 1), "travelerType": "CHILD"})
        for i in range(query.infants):
            travelers.append({
                "id": str(len(travelers) + 1),
                "travelerType": "HELD_INFANT",
                "associatedAdultId": str(i + 1),
            })
        return travelers

    def _build_origin_destinations(self, query: FlightQuery) -> List[Dict[str, Any]]:
        """
        One-way uses a single leg; a return date adds the reverse leg.
        """
        legs: List[Dict[str, Any]] = [
            {
                "id": "1",
                "originLocationCode": query.origin,
                "destinationLocationCode": query.destination,
                "departureDateTimeRange": {"date": query.departure_date},
            }
        ]
        if query.return_date:
            legs.append({
                "id": "2",
                "originLocationCode": query.destination,
                "destinationLocationCode": query.origin,
                "departureDateTimeRange": {"date": query.return_date},
            })
        return legs

    def _build_search_criteria(self, query: FlightQuery, leg_ids: List[str]) -> Dict[str, Any]:
        criteria: Dict[str, Any] = {"maxFlightOffers": self.max_offers}
        flight_filters: Dict[str, Any] = {
            "cabinRestrictions": [{
                "cabin": CABIN_CODES[query.cabin_class],
                "coverage": "MOST_SEGMENTS",
                "originDestinationIds": leg_ids,
            }]
        }
        prefs = query.preferences
        if prefs is not None:
            if prefs.max_stops is not None:
                flight_filters["connectionRestriction"] = {"maxNumberOfConnections": prefs.max_stops}
            # The API accepts either an include or an exclude list, not both
            if prefs.preferred_airlines:
                flight_filters["carrierRestrictions"] = {"includedCarrierCodes": list(prefs.preferred_airlines)}
            elif prefs.excluded_airlines:
                flight_filters["carrierRestrictions"] = {"excludedCarrierCodes": list(prefs.excluded_airlines)}
            if prefs.max_price is not None:
                criteria["maxPrice"] = int(prefs.max_price)
        criteria["flightFilters"] = flight_filters
        return criteria

    def build_request_body(self, query: FlightQuery) -> Dict[str, Any]:
        legs = self._build_origin_destinations(query)
        return {
            "currencyCode": "USD",
            "originDestinations": legs,
            "travelers": self._build_travelers(query),
            "sources": ["GDS"],
            "searchCriteria": self._build_search_criteria(query, [leg["id"] for leg in legs]),
        }

    def search_airports(self, keyword: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Airport and city matches for a keyword via the Locations API."""
        token = self._get_token()
        r = self._http.get(
            f"{self.base_url}/v1/reference-data/locations",
            params={"subType": "AIRPORT,CITY", "keyword": keyword, "page[limit]": limit},
            headers={"Authorization": f"Bearer {token}"},
        )
        r.raise_for_status()
        locations = []
        for item in r.json().get("data", []):
            address = item.get("address") or {}
            locations.append({
                "code": item.get("iataCode"),
                "name": item.get("name"),
                "type": item.get("subType"),
                "city": address.get("cityName"),
                "country": address.get("countryCode"),
            })
        log_event("amadeus_locations", level="DEBUG", keyword=keyword, matches=len(locations))
        return locations

    def search_flights(self, query: FlightQuery) -> Dict[str, Any]:
        token = self._get_token()
        body = self.build_request_body(query)
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        log_event("amadeus_request", level="DEBUG", route=query.route,
                  dep_date=query.departure_date, ret_date=query.return_date)

        # Single retry with short backoff
        attempt = 0
        last_err = None
        while attempt < 2:
            try:
                r = self._http.post(
                    f"{self.base_url}/v2/shopping/flight-offers",
                    json=body,
                    headers=headers,
                    timeout=httpx.Timeout(connect=3.0, read=45.0, write=45.0, pool=12.0),
                )
                r.raise_for_status()
                response_data = r.json()
                log_event("amadeus_response", level="DEBUG", route=query.route,
                          offers=len(response_data.get("data", [])))
                return response_data
            except httpx.HTTPStatusError as e:
                log_event("amadeus_http_error", level="ERROR", route=query.route,
                          status=e.response.status_code)
                # Retry once only for 5xx
                if 500 <= e.response.status_code < 600 and attempt == 0:
                    attempt += 1
                    time.sleep(1.5)
                    last_err = e
                    continue
                raise
            except (httpx.ReadTimeout, httpx.ConnectTimeout, httpx.RemoteProtocolError) as e:
                log_event("amadeus_connection_error", level="ERROR", route=query.route, error=e)
                if attempt == 0:
                    attempt += 1
                    time.sleep(1.5)
                    last_err = e
                    continue
                raise
        # If we somehow exit loop without returning, raise last error
        if last_err:
            raise last_err
        raise RuntimeError("Flight search failed without a specific error")
