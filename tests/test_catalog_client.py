"""Unit tests for Spotify Web API requests."""

from __future__ import annotations

import asyncio

from fakes import FakeResponse, make_artist, make_audio_features, make_track
from listening_etl.catalog_client import (
    chunk_ids,
    fetch_artists_data,
    fetch_top_artists,
    fetch_top_tracks,
    fetch_tracks_features,
)


def _tracks(count: int) -> list[dict]:
    return [make_track(f"t{i}", [f"a{i}"]) for i in range(count)]


def test_top_tracks_paginates_in_rounds_of_fifty(spotify) -> None:
    """A request for 120 items should take rounds of 50, 50 and 20 at advancing offsets."""
    spotify.top_tracks["tok"] = _tracks(150)

    tracks = asyncio.run(fetch_top_tracks(spotify, "tok", 120))

    params = spotify.requests_to("v1/me/top/tracks")
    assert [p["offset"] for p in params] == ["0", "50", "100"]
    assert [p["limit"] for p in params] == ["50", "50", "20"]
    assert len(tracks) == 120
    assert [track.id for track in tracks] == [f"t{i}" for i in range(120)]


def test_top_tracks_exact_multiple_of_page_size(spotify) -> None:
    """A request for exactly 100 items should take two full rounds."""
    spotify.top_tracks["tok"] = _tracks(100)

    tracks = asyncio.run(fetch_top_tracks(spotify, "tok", 100))

    params = spotify.requests_to("v1/me/top/tracks")
    assert [p["limit"] for p in params] == ["50", "50"]
    assert len(tracks) == 100


def test_top_items_sends_bearer_token_and_time_range(spotify) -> None:
    """Requests should be authorized with the user's token and use the configured time range."""
    spotify.top_artists["tok"] = [make_artist("a1")]

    asyncio.run(fetch_top_artists(spotify, "tok", 10))

    path, params, headers = spotify.requests[0]
    assert path == "v1/me/top/artists"
    assert headers["Authorization"] == "Bearer tok"
    assert params["time_range"] == "short_term"


def test_top_items_stops_when_history_runs_out(spotify) -> None:
    """A short round means there is no more history and no further round is made."""
    spotify.top_tracks["tok"] = _tracks(30)

    tracks = asyncio.run(fetch_top_tracks(spotify, "tok", 100))

    assert len(spotify.requests_to("v1/me/top/tracks")) == 1
    assert len(tracks) == 30


def test_top_items_failed_round_returns_partial_results(spotify) -> None:
    """A failing round should keep the items of the rounds before it."""
    spotify.top_tracks["tok"] = _tracks(100)
    spotify.failures["v1/me/top/tracks"] = {2}

    tracks = asyncio.run(fetch_top_tracks(spotify, "tok", 100))

    assert len(tracks) == 50


def test_top_items_invalid_response_is_treated_as_failure(spotify) -> None:
    """A response that does not match the schema should end pagination without raising."""
    spotify.top_tracks["tok"] = [make_track(123, ["a1"])]

    tracks = asyncio.run(fetch_top_tracks(spotify, "tok", 10))

    assert tracks == []


def test_top_items_malformed_json_returns_partial_results(spotify) -> None:
    """A body that is not valid JSON should end pagination and keep the earlier rounds."""
    spotify.top_tracks["tok"] = _tracks(100)
    spotify.malformed["v1/me/top/tracks"] = {2}

    tracks = asyncio.run(fetch_top_tracks(spotify, "tok", 100))

    assert len(tracks) == 50
    assert len(spotify.requests_to("v1/me/top/tracks")) == 2


def test_artists_data_malformed_json_returns_partial_results(spotify) -> None:
    """A chunk with a malformed JSON body should keep the artists fetched before it."""
    spotify.malformed["v1/artists"] = {2}

    artists = asyncio.run(fetch_artists_data(spotify, "tok", [f"a{i}" for i in range(120)]))

    assert len(artists) == 50


def test_unexpected_content_type_is_treated_as_failure(spotify) -> None:
    """Non-JSON responses should be logged and yield no items."""
    spotify.top_artists["tok"] = [make_artist("a1")]
    spotify.content_types["v1/me/top/artists"] = "text/html"

    artists = asyncio.run(fetch_top_artists(spotify, "tok", 10))

    assert artists == []


def test_unknown_fields_are_dropped(spotify) -> None:
    """Fields not in the schema should not survive validation."""
    spotify.top_tracks["tok"] = _tracks(1)

    (track,) = asyncio.run(fetch_top_tracks(spotify, "tok", 1))

    assert not hasattr(track, "preview_url")
    assert track.album.id == "album-1"


def test_chunk_ids_keeps_order() -> None:
    """Chunks should hold at most 50 ids each, in input order."""
    ids = [f"id{i}" for i in range(120)]

    chunks = chunk_ids(ids)

    assert [len(chunk) for chunk in chunks] == [50, 50, 20]
    assert [item for chunk in chunks for item in chunk] == ids


def test_artists_data_is_requested_in_chunks(spotify) -> None:
    """120 artist ids should take three requests and come back in order."""
    ids = [f"a{i}" for i in range(120)]

    artists = asyncio.run(fetch_artists_data(spotify, "tok", ids))

    params = spotify.requests_to("v1/artists")
    assert [len(p["ids"].split(",")) for p in params] == [50, 50, 20]
    assert [artist.id for artist in artists] == ids


def test_artists_data_failed_chunk_stops_remaining_chunks(spotify) -> None:
    """A failing chunk should keep the artists already fetched and skip the rest."""
    spotify.failures["v1/artists"] = {2}

    artists = asyncio.run(fetch_artists_data(spotify, "tok", [f"a{i}" for i in range(120)]))

    assert len(spotify.requests_to("v1/artists")) == 2
    assert len(artists) == 50


def test_artists_data_drops_null_entries(spotify) -> None:
    """Unknown artist ids come back as null and should be left out."""
    spotify.unknown_artist_ids = {"a1"}

    artists = asyncio.run(fetch_artists_data(spotify, "tok", ["a0", "a1", "a2"]))

    assert [artist.id for artist in artists] == ["a0", "a2"]


def test_no_ids_makes_no_request(spotify) -> None:
    """Empty id lists should not hit the API."""
    asyncio.run(fetch_artists_data(spotify, "tok", []))
    asyncio.run(fetch_tracks_features(spotify, "tok", []))

    assert spotify.requests == []


def test_tracks_features_are_read_from_audio_features_field(spotify) -> None:
    """Audio features should be read from the 'audio_features' field of the response."""
    features = asyncio.run(fetch_tracks_features(spotify, "tok", ["t1", "t2"]))

    assert [item.id for item in features] == ["t1", "t2"]
    assert features[0].tempo == 120.0


def test_tracks_features_ignore_artists_field(spotify) -> None:
    """A response carrying the features under 'artists' is malformed and yields nothing."""
    spotify.audio_features_field = "artists"

    features = asyncio.run(fetch_tracks_features(spotify, "tok", ["t1", "t2"]))

    assert features == []


class _SingleResponseSession:
    def __init__(self, payload: dict) -> None:
        self.payload = payload
        self.urls: list[str] = []

    def get(self, url: str, **kwargs: object) -> FakeResponse:
        self.urls.append(url)
        return FakeResponse(payload=self.payload)


def test_tracks_features_request_audio_features_endpoint() -> None:
    """Audio features should come from the audio-features endpoint."""
    session = _SingleResponseSession({"audio_features": [make_audio_features("t1")]})

    features = asyncio.run(fetch_tracks_features(session, "tok", ["t1"]))

    assert session.urls == ["https://api.spotify.com/v1/audio-features"]
    assert features[0].id == "t1"
