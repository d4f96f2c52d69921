from contextlib import asynccontextmanager
from typing import Any, Dict

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from flightfinder.cache.registry import build_caches, create_storage
from flightfinder.cache.storage import KeyValueStore, RedisStorage
from flightfinder.config import settings
from flightfinder.infrastructure.resilience import CircuitBreaker, CircuitOpenError, RateLimiter
from flightfinder.obs.logger import log_event
from flightfinder.obs.metrics import get_metrics_snapshot
from flightfinder.obs.middleware import ObservabilityMiddleware
from flightfinder.query.generator import QueryGeneratorError
from flightfinder.search.amadeus import AmadeusClient
from flightfinder.search.service import FlightSearchService, SearchUnavailableError

load_dotenv()

VERSION = "0.2.0"


def build_rate_limiter(storage: KeyValueStore) -> RateLimiter:
    """Share the limit across workers when the cache already lives in Redis."""
    if isinstance(storage, RedisStorage):
        return RateLimiter(redis_client=storage.client)
    return RateLimiter()


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_event("startup", service="flight-finder", version=VERSION, cache_backend=settings.CACHE_BACKEND)

    app.state.storage = create_storage(settings)
    app.state.caches = build_caches(app.state.storage, settings)

    backend = None
    if settings.AMADEUS_CLIENT_ID and settings.AMADEUS_CLIENT_SECRET:
        backend = AmadeusClient()
    else:
        log_event("search_backend_disabled", level="WARNING", reason="missing Amadeus credentials")
    app.state.backend = backend

    app.state.breaker = CircuitBreaker(
        name="amadeus_api",
        failure_threshold=settings.BREAKER_FAILURE_THRESHOLD,
        recovery_timeout=settings.BREAKER_RECOVERY_SECONDS,
    )
    app.state.rate_limiter = build_rate_limiter(app.state.storage)
    app.state.search = FlightSearchService(
        backend,
        app.state.caches,
        breaker=app.state.breaker,
        max_concurrency=settings.SEARCH_MAX_CONCURRENCY,
    )

    yield

    if backend is not None:
        backend.close()
    log_event("shutdown", service="flight-finder")


app = FastAPI(
    title="Flight Finder",
    version=VERSION,
    lifespan=lifespan
)


@app.exception_handler(QueryGeneratorError)
async def query_generator_error_handler(request: Request, exc: QueryGeneratorError):
    status = 500 if exc.code == QueryGeneratorError.INTERNAL else 400
    return JSONResponse(exc.to_dict(), status_code=status)


@app.get("/")
async def root():
    return {
        "service": "Flight Finder",
        "version": VERSION,
        "status": "running",
        "features": [
            "Natural-language query expansion",
            "LRU + TTL caching with persistence",
            "Concurrent cached flight search",
        ]
    }


@app.get("/health")
async def health(request: Request):
    breaker = getattr(request.app.state, "breaker", None)
    return {
        "status": "healthy",
        "service": "flight-finder",
        "version": VERSION,
        "search_backend": getattr(request.app.state, "backend", None) is not None,
        "circuit": breaker.state.value if breaker else "closed",
    }


@app.get("/metrics")
async def metrics(request: Request):
    snapshot = get_metrics_snapshot()
    caches = getattr(request.app.state, "caches", None)
    breaker = getattr(request.app.state, "breaker", None)
    snapshot.update({
        "cache": caches.get_stats() if caches else {},
        "circuit_breaker": breaker.get_state() if breaker else None,
    })
    return snapshot


@app.post("/queries")
async def generate(request: Request, parameters: Dict[str, Any]):
    """Expand search parameters into concrete flight queries."""
    queries = request.app.state.search.plan(parameters)
    return {"count": len(queries), "queries": [q.to_wire() for q in queries]}


@app.post("/search")
async def search(request: Request, parameters: Dict[str, Any]):
    client_ip = request.client.host if request.client else "unknown"
    allowed, limit_info = request.app.state.rate_limiter.check_rate_limit(
        f"ip:{client_ip}",
        max_requests=settings.RATE_LIMIT_REQUESTS,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    )
    if not allowed:
        return JSONResponse(
            {"error": "Rate limit exceeded. Try again in a minute."},
            status_code=429,
            headers={"Retry-After": str(limit_info["retry_after"])},
        )

    try:
        outcomes = await request.app.state.search.search(parameters)
    except SearchUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return {
        "count": len(outcomes),
        "failed": sum(1 for o in outcomes if o.error),
        "results": [o.model_dump() for o in outcomes],
    }


@app.get("/airports")
async def airports(request: Request, keyword: str = Query(..., min_length=2)):
    """Airport and city codes matching a keyword."""
    try:
        locations = await request.app.state.search.find_airports(keyword)
    except (SearchUnavailableError, CircuitOpenError) as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        log_event("airport_lookup_failed", level="ERROR", keyword=keyword, error=e)
        raise HTTPException(status_code=502, detail="Airport lookup failed")
    return {"count": len(locations), "locations": locations}


@app.delete("/cache/{name}")
async def clear_cache(request: Request, name: str):
    cache = request.app.state.caches.by_name(name)
    if cache is None:
        raise HTTPException(status_code=404, detail=f"Unknown cache: {name}")
    cache.clear()
    return {"status": "cleared", "cache": name}


@app.post("/admin/circuit/reset")
async def reset_circuit_breaker(request: Request):
    """Admin endpoint to manually close the search backend circuit"""
    request.app.state.breaker.reset()
    return {"status": "reset", "breaker": request.app.state.breaker.name}


# Apply middleware
app = ObservabilityMiddleware(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8001,
        reload=True,
        log_level="info"
    )
