import asyncio
import time
from datetime import date
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel

from flightfinder.cache.registry import FlightCaches
from flightfinder.config import settings
from flightfinder.infrastructure.resilience import CircuitBreaker, CircuitOpenError
from flightfinder.obs.logger import log_event
from flightfinder.obs.metrics import inc_counter, record_timing
from flightfinder.query.generator import SearchParameters, coerce_intent, generate_queries
from flightfinder.types import FlightQuery
from flightfinder.utils.dates import today_in


class FlightSearchBackend(Protocol):
    def search_flights(self, query: FlightQuery) -> Dict[str, Any]: ...

    def search_airports(self, keyword: str) -> List[Dict[str, Any]]: ...


class SearchUnavailableError(Exception):
    """No search backend is configured."""


class SearchOutcome(BaseModel):
    query: Dict[str, Any]
    cached: bool = False
    results: Optional[Any] = None
    error: Optional[str] = None


class FlightSearchService:
    """Plans searches through the query generator and runs them through the caches.

    Generated query lists are memoised in ``caches.queries`` (keyed by the
    intent and the day relative dates were resolved against); backend
    responses are memoised per query in ``caches.results`` and airport
    lookups per keyword in ``caches.airports``.
    """

    def __init__(self, backend: Optional[FlightSearchBackend], caches: FlightCaches,
                 breaker: Optional[CircuitBreaker] = None, max_concurrency: int = 3):
        self.backend = backend
        self.caches = caches
        self.breaker = breaker
        self.max_concurrency = max(1, max_concurrency)

    def plan(self, parameters: SearchParameters, today: Optional[date] = None) -> List[FlightQuery]:
        intent = coerce_intent(parameters)
        day = today or today_in(settings.TZ)
        plan_key = f"{intent.fingerprint()}:{day.isoformat()}"

        cached = self.caches.queries.get(plan_key)
        if cached is not None:
            return [FlightQuery.model_validate(q) for q in cached]

        queries = generate_queries(intent, today=day)
        self.caches.queries.set(plan_key, [q.model_dump(mode="json") for q in queries])
        return queries

    async def search(self, parameters: SearchParameters, today: Optional[date] = None) -> List[SearchOutcome]:
        if self.backend is None:
            raise SearchUnavailableError("No flight search backend configured")
        queries = self.plan(parameters, today)

        # Limit concurrent backend calls to avoid overwhelming the API
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def limited(query: FlightQuery) -> SearchOutcome:
            async with semaphore:
                return await self._search_one(query)

        outcomes = await asyncio.gather(*[limited(q) for q in queries])
        failed = sum(1 for o in outcomes if o.error)
        log_event("search_completed", queries=len(queries), failed=failed,
                  cached=sum(1 for o in outcomes if o.cached))
        return list(outcomes)

    async def find_airports(self, keyword: str) -> List[Dict[str, Any]]:
        """Airport/city matches for a keyword, served from the airports cache when fresh.

        Backend and breaker errors propagate; an empty match list is cached too.
        """
        if self.backend is None:
            raise SearchUnavailableError("No flight search backend configured")
        key = " ".join(keyword.strip().lower().split())
        cached = self.caches.airports.get(key)
        if cached is not None:
            return cached

        loop = asyncio.get_running_loop()

        async def lookup() -> List[Dict[str, Any]]:
            return await loop.run_in_executor(None, self.backend.search_airports, key)

        if self.breaker is not None:
            locations = await self.breaker.async_call(lookup)
        else:
            locations = await lookup()
        self.caches.airports.set(key, locations)
        return locations

    async def _search_one(self, query: FlightQuery) -> SearchOutcome:
        key = query.cache_key()
        cached = self.caches.results.get(key)
        if cached is not None:
            return SearchOutcome(query=query.to_wire(), cached=True, results=cached)

        try:
            if self.breaker is not None:
                results = await self.breaker.async_call(self._fetch_async, query)
            else:
                results = await self._fetch_async(query)
        except CircuitOpenError as e:
            inc_counter("search_rejected_total", {"reason": "circuit_open"})
            return SearchOutcome(query=query.to_wire(), error=str(e))
        except Exception as e:
            inc_counter("search_errors_total", {"route": query.route})
            log_event("search_failed", level="ERROR", route=query.route,
                      dep_date=query.departure_date, error=e)
            return SearchOutcome(query=query.to_wire(), error=str(e) or type(e).__name__)

        self.caches.results.set(key, results)
        return SearchOutcome(query=query.to_wire(), results=results)

    async def _fetch_async(self, query: FlightQuery) -> Dict[str, Any]:
        # Backend clients are blocking; keep the event loop free
        loop = asyncio.get_running_loop()
        start = time.monotonic()
        try:
            return await loop.run_in_executor(None, self.backend.search_flights, query)
        finally:
            record_timing("backend_latency_ms", (time.monotonic() - start) * 1000.0)
