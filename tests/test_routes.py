import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import PNG_BYTES, RecordingTransport, json_response
from watchtower.config import settings
from watchtower.main import app
from watchtower.services.plex_client import PlexClient, get_plex_client

HEADERS = {"X-Plex-Token": "user-token"}

LIBRARY_MOVIE = {
    "ratingKey": "101",
    "guid": "plex://movie/5d776825880197001ec967c6",
    "title": "Dune",
    "year": 2021,
    "thumb": "/library/metadata/101/thumb/1",
    "viewCount": 1,
    "Guid": [{"id": "imdb://tt1160419"}],
}

WATCHLISTED_MOVIE = {
    "guid": "plex://movie/5d776825880197001ec967c6",
    "type": "movie",
    "title": "Dune",
    "year": 2021,
    "watchlistedAt": 1_700_000_000,
}


def fake_plex(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if request.url.host == "discover.provider.plex.tv":
        return json_response({"MediaContainer": {"Metadata": [WATCHLISTED_MOVIE]}})
    if path == "/identity":
        return json_response({"MediaContainer": {}})
    if path == "/library/sections":
        return json_response({"MediaContainer": {"Directory": [
            {"key": "1", "title": "Movies", "type": "movie"},
            {"key": "2", "title": "Music", "type": "artist"},
        ]}})
    if path == "/library/sections/1/all":
        return json_response({"MediaContainer": {"Metadata": [LIBRARY_MOVIE]}})
    if path.startswith("/library/metadata/"):
        return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})
    return json_response({}, 404)


@pytest.fixture
def plex_transport():
    return RecordingTransport(fake_plex)


@pytest.fixture
def client(tmp_path, monkeypatch, plex_transport):
    monkeypatch.setattr(settings, "data_path", str(tmp_path / "data"))
    monkeypatch.setattr(settings, "image_cache_dir", str(tmp_path / "images"))
    monkeypatch.setattr(settings, "plex_token", "")
    monkeypatch.setattr(settings, "tmdb_api_key", None)
    monkeypatch.setattr(settings, "trakt_client_id", None)

    app.dependency_overrides[get_plex_client] = lambda: PlexClient(
        "http://plex.local:32400", "user-token", transport=plex_transport
    )
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "Watchtower"}


def test_missing_token_is_rejected(client):
    assert client.get("/api/plex/libraries").status_code == 401


def test_plex_status(client):
    response = client.get("/api/plex/status", headers=HEADERS)
    assert response.json() == {"connected": True, "url": "http://plex.local:32400"}


def test_image_is_fetched_once(client, plex_transport):
    path = "/library/metadata/101/thumb/1"

    first = client.get("/api/plex/image", params={"path": path}, headers=HEADERS)
    second = client.get("/api/plex/image", params={"path": path}, headers=HEADERS)

    assert first.status_code == second.status_code == 200
    assert second.content == PNG_BYTES
    assert second.headers["content-type"] == "image/png"
    assert second.headers["cache-control"] == "public, max-age=31536000, immutable"
    assert plex_transport.paths().count(path) == 1


def test_image_path_must_be_absolute(client):
    response = client.get("/api/plex/image", params={"path": "library/x"}, headers=HEADERS)
    assert response.status_code == 400


def test_libraries_are_cached(client, plex_transport):
    first = client.get("/api/plex/libraries", headers=HEADERS).json()
    second = client.get("/api/plex/libraries", headers=HEADERS).json()

    assert first["libraries"][0] == {"key": "1", "title": "Movies", "type": "movie"}
    assert second["isStale"] is False
    assert abs(second["cachedAt"] - first["cachedAt"]) <= 1
    assert plex_transport.paths().count("/library/sections") == 1


def test_watchlist_is_merged_and_annotated(client, plex_transport):
    body = client.get("/api/watchlist", headers=HEADERS).json()

    assert body["counts"] == {"all": 1, "plex": 1, "trakt": 0, "imdb": 0}
    item = body["items"][0]
    assert item["id"] == "tt1160419"
    assert item["sources"] == ["plex"]
    assert item["isLocal"] is True
    assert item["localRatingKey"] == "101"
    assert item["isWatched"] is True
    assert item["thumb"] == "/api/plex/image?path=%2Flibrary%2Fmetadata%2F101%2Fthumb%2F1"
    assert body["traktEnabled"] is False
    assert body["imdbEnabled"] is False

    # Second read comes from the watchlist cache
    client.get("/api/watchlist", headers=HEADERS)
    discover_calls = [r for r in plex_transport.requests if r.url.host == "discover.provider.plex.tv"]
    assert len(discover_calls) == 1

    status = client.get("/api/cache/watchlist/status", headers=HEADERS).json()
    assert status["exists"] is True

    assert client.delete("/api/watchlist/cache", headers=HEADERS).json() == {"success": True}
    status = client.get("/api/cache/watchlist/status", headers=HEADERS).json()
    assert status["exists"] is False


def test_settings_round_trip(client):
    response = client.put("/api/settings/7", json={
        "trakt_username": "  alice ",
        "imdb_watchlist_ids": ["ur12345678", " ur12345678", "ls42"],
    })
    assert response.status_code == 200
    assert response.json()["settings"]["imdbWatchlistIds"] == ["ur12345678", "ls42"]

    body = client.get("/api/settings/7").json()
    assert body["settings"]["traktUsername"] == "alice"
    assert body["validation"] == {"trakt": None, "imdb": []}


def test_settings_reject_bad_imdb_ids(client):
    response = client.put("/api/settings/7", json={"imdb_watchlist_ids": ["tt1160419"]})
    assert response.status_code == 400
    assert client.get("/api/settings/7").json()["settings"]["imdbWatchlistIds"] == []


def test_logo_without_tmdb(client):
    response = client.get("/api/logos", params={"title": "Dune", "type": "movie", "year": 2021})
    assert response.json() == {"url": None}


def test_cached_logo_route(client):
    assert client.get("/api/cache/tmdb/logos/Bad_Name.png").status_code == 400
    assert client.get("/api/cache/tmdb/logos/movie-dune-2021.png").status_code == 404


def test_cache_stats_and_maintenance(client):
    client.get("/api/plex/image", params={"path": "/library/metadata/101/thumb/1"}, headers=HEADERS)

    stats = client.get("/api/cache/stats").json()
    assert stats["images"]["memoryItems"] == 1
    assert stats["logos"]["totalEntries"] == 0

    assert client.delete("/api/cache/images").json() == {"success": True}
    assert client.get("/api/cache/stats").json()["images"]["memoryItems"] == 0
    assert client.delete("/api/cache/logos/negative").json() == {"success": True, "removed": 0}
    assert client.post("/api/cache/logos/clean").json() == {"success": True, "removed": 0}
