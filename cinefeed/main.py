"""Entry point for the FastAPI-powered catalog service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import timedelta
from typing import Any

import httpx
from fastapi import Body, FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware

from .activity import aggregate_activity
from .aggregator import SourceAggregator
from .cache import CacheStore
from .config import settings
from .coordinator import RequestCoordinator
from .models import ActivityRecord, HomeCatalog
from .retry import RetryPolicy
from .services.releases import ReleaseFeedClient
from .services.tmdb import TMDBClient
from .storage import SQLiteStorage, create_storage

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    timeout = httpx.Timeout(
        settings.request_timeout_seconds,
        connect=min(5.0, settings.request_timeout_seconds),
    )
    tmdb_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(base_url=str(settings.tmdb_api_url), timeout=timeout)
    )
    release_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=timeout)
    )

    storage = create_storage(
        settings.cache_database_url, quota_bytes=settings.cache_quota_bytes
    )
    cache = CacheStore.from_settings(settings, storage)
    coordinator = RequestCoordinator(cache, policy=RetryPolicy.from_settings(settings))
    tmdb = TMDBClient(settings, tmdb_http_client, coordinator)
    releases = ReleaseFeedClient(settings, release_http_client, coordinator)

    fastapi_app.state.coordinator = coordinator
    fastapi_app.state.aggregator = SourceAggregator(settings, tmdb, releases)

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await coordinator.close()
        if isinstance(storage, SQLiteStorage):
            storage.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Resilient home catalog and friend activity for CineFeed clients",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_aggregator(fastapi_app: FastAPI) -> SourceAggregator:
    aggregator = getattr(fastapi_app.state, "aggregator", None)
    if not isinstance(aggregator, SourceAggregator):
        raise RuntimeError("Source aggregator not initialised")
    return aggregator


def get_coordinator(fastapi_app: FastAPI) -> RequestCoordinator:
    coordinator = getattr(fastapi_app.state, "coordinator", None)
    if not isinstance(coordinator, RequestCoordinator):
        raise RuntimeError("Request coordinator not initialised")
    return coordinator


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/health")
    async def health() -> dict[str, Any]:
        coordinator = get_coordinator(fastapi_app)
        return {
            "status": "ok",
            "activeRequests": coordinator.active_requests,
            "cachedEntries": len(coordinator.cache),
        }

    @fastapi_app.get("/catalog/home")
    async def home_catalog(profile_id: str | None = None) -> HomeCatalog:
        aggregator = get_aggregator(fastapi_app)
        return await aggregator.load_home(profile_id=profile_id)

    @fastapi_app.post("/activity")
    async def group_activity(
        rows: list[dict[str, Any]] = Body(...),
        user_id: str | None = None,
    ) -> list[ActivityRecord]:
        return aggregate_activity(
            rows,
            window=timedelta(seconds=settings.activity_recency_seconds),
            exclude_user_id=user_id,
        )

    @fastapi_app.delete("/cache", status_code=204)
    async def clear_cache() -> Response:
        coordinator = get_coordinator(fastapi_app)
        try:
            coordinator.cache.clear()
        except Exception as exc:  # pragma: no cover - storage failures are rare
            logger.exception("Failed to clear the response cache")
            raise HTTPException(status_code=500, detail="Cache could not be cleared") from exc
        return Response(status_code=204)


app = create_app()
