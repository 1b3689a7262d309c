from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # App settings
    app_name: str = "Watchtower"
    debug: bool = False
    log_level: str = "INFO"

    # Storage
    data_path: str = "./data"
    image_cache_dir: str = "/tmp/watchtower-image-cache"

    # Plex
    plex_server_url: str = "http://plex:32400"
    plex_token: str = ""
    plex_client_id: str = "watchtower-001"

    # Optional integrations
    tmdb_api_key: Optional[str] = None
    trakt_client_id: Optional[str] = None

    # Outbound requests
    request_timeout: float = 10.0

    # Image cache
    image_memory_max_bytes: int = 100 * 1024 * 1024
    image_memory_max_items: int = 1000
    image_memory_ttl_seconds: int = 24 * 60 * 60
    image_disk_ttl_seconds: int = 7 * 24 * 60 * 60

    # Disk JSON caches (stale-while-revalidate windows)
    plex_cache_fresh_seconds: int = 30
    plex_cache_stale_seconds: int = 5 * 60
    watchlist_cache_fresh_seconds: int = 5 * 60
    watchlist_cache_stale_seconds: int = 24 * 60 * 60

    # TMDB logo cache
    logo_ttl_seconds: int = 7 * 24 * 60 * 60
    logo_negative_ttl_seconds: int = 24 * 60 * 60

    # "external_first" keeps TMDB/IMDB ratings, "local_first" prefers Plex's own
    rating_policy: str = "external_first"

    class Config:
        env_file = ".env"
        extra = "allow"


settings = Settings()
