import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from watchtower.config import settings
from watchtower.routers import cache, logos, plex, watchlist
from watchtower.routers import settings as settings_router
from watchtower.services.disk_cache import RevalidatingCache, plex_cache
from watchtower.services.image_cache import create_image_cache
from watchtower.services.imdb_client import IMDBClient
from watchtower.services.logo_cache import LogoCache
from watchtower.services.settings_storage import UserSettingsStore
from watchtower.services.tmdb_client import TMDBClient
from watchtower.services.trakt_client import TraktClient
from watchtower.services.watchlist import WatchlistUnifier
from watchtower.services.watchlist_cache import WatchlistCache

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def init_state(app: FastAPI) -> None:
    """Build the cache layer and origin clients once per process."""
    state = app.state
    state.image_cache = create_image_cache(settings)
    state.plex_cache = RevalidatingCache(
        plex_cache(settings.data_path, settings.plex_cache_fresh_seconds, settings.plex_cache_stale_seconds)
    )
    state.watchlist_cache = WatchlistCache(
        settings.data_path,
        settings.watchlist_cache_fresh_seconds,
        settings.watchlist_cache_stale_seconds,
    )
    state.logo_cache = LogoCache(
        settings.data_path,
        ttl_seconds=settings.logo_ttl_seconds,
        negative_ttl_seconds=settings.logo_negative_ttl_seconds,
        timeout=settings.request_timeout,
    )
    state.settings_store = UserSettingsStore(settings.data_path)
    state.unifier = WatchlistUnifier(settings.rating_policy)
    state.imdb_client = IMDBClient()
    state.trakt_client = (
        TraktClient(settings.trakt_client_id, timeout=settings.request_timeout)
        if settings.trakt_client_id else None
    )
    state.tmdb_client = (
        TMDBClient(settings.tmdb_api_key, state.logo_cache, timeout=settings.request_timeout)
        if settings.tmdb_api_key else None
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: build caches and clients
    init_state(app)
    logger.info(
        f"[Startup] data={settings.data_path} images={settings.image_cache_dir} "
        f"tmdb={'on' if app.state.tmdb_client else 'off'} trakt={'on' if app.state.trakt_client else 'off'}"
    )
    yield
    # Shutdown: let background disk writes and refreshes finish
    await app.state.image_cache.drain()
    await app.state.plex_cache.drain()
    await app.state.watchlist_cache.drain()


app = FastAPI(
    title="Watchtower",
    description="Caching layer and API for a Plex front end with unified Plex, Trakt and IMDB watchlists",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(plex.router, prefix="/api/plex", tags=["Plex"])
app.include_router(watchlist.router, prefix="/api/watchlist", tags=["Watchlist"])
app.include_router(logos.router, prefix="/api/logos", tags=["Logos"])
app.include_router(cache.router, prefix="/api/cache", tags=["Cache"])
app.include_router(settings_router.router, prefix="/api/settings", tags=["Settings"])


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": settings.app_name}
