"""Unit tests for snapshot runs over batches of users."""

from __future__ import annotations

import asyncio

import pytest

from fakes import (
    FakeDatabase,
    FakeTokenRefresher,
    make_account_row,
    make_artist,
    make_track,
)
from listening_etl.accounts import RefreshedAccount
from listening_etl.errors import SnapshotDataMismatchError
from listening_etl.orchestrator import build_snapshot, resolve_accounts, snapshot_users


def _account(user_id: str) -> RefreshedAccount:
    return RefreshedAccount(user_id, f"spotify-{user_id}", f"token-{user_id}", "refresh")


def _two_users_sharing_one_track(spotify) -> None:
    spotify.top_tracks["token-u1"] = [
        make_track(f"u1-t{i}", [f"u1-a{i}"], album_id=f"u1-x{i}") for i in range(9)
    ] + [make_track("shared-track", ["shared-artist"], album_id="shared-album")]
    spotify.top_tracks["token-u2"] = [
        make_track("shared-track", ["shared-artist"], album_id="shared-album")
    ] + [make_track(f"u2-t{i}", [f"u2-a{i}"], album_id=f"u2-x{i}") for i in range(9)]
    spotify.top_artists["token-u1"] = [make_artist("shared-artist", ["indie"])]
    spotify.top_artists["token-u2"] = [make_artist("shared-artist", ["indie"])]


def test_two_users_with_one_shared_track(spotify, snapshot_time) -> None:
    """Overlapping users should share track and artist rows but keep separate rankings."""
    _two_users_sharing_one_track(spotify)

    data = asyncio.run(
        build_snapshot(spotify, [_account("u1"), _account("u2")], 10, snapshot_time)
    )

    assert len(data.tracks) == 19
    assert len([row for row in data.track_rankings if row.user_id == "u1"]) == 10
    assert len([row for row in data.track_rankings if row.user_id == "u2"]) == 10
    ranked_ids = {row.track_id for row in data.track_rankings}
    assert ranked_ids == {track.track_id for track in data.tracks}
    assert [artist.artist_id for artist in data.artists].count("shared-artist") == 1
    assert len(data.artists) == 19
    assert len(data.artist_rankings) == 2
    assert ("shared-track", "indie") in data.track_genres


def test_details_are_fetched_once_per_unique_id(spotify, snapshot_time) -> None:
    """Artist details and audio features should be requested once per id for the whole batch."""
    _two_users_sharing_one_track(spotify)

    asyncio.run(build_snapshot(spotify, [_account("u1"), _account("u2")], 10, snapshot_time))

    feature_ids = [
        track_id
        for params in spotify.requests_to("v1/audio-features")
        for track_id in params["ids"].split(",")
    ]
    artist_ids = [
        artist_id
        for params in spotify.requests_to("v1/artists")
        for artist_id in params["ids"].split(",")
    ]
    assert len(feature_ids) == len(set(feature_ids)) == 19
    assert len(artist_ids) == len(set(artist_ids)) == 18
    assert "shared-artist" not in artist_ids


def test_artist_genres_come_from_fetched_details(spotify, snapshot_time) -> None:
    """Artists only seen on tracks should get their genres from the artist details."""
    spotify.top_tracks["token-u1"] = [make_track("T", ["A", "B"])]
    spotify.artist_genres = {"A": ["pop", "rock"], "B": ["rock", "soul"]}

    data = asyncio.run(build_snapshot(spotify, [_account("u1")], 10, snapshot_time))

    assert sorted(genre for _, genre in data.track_genres) == ["pop", "rock", "soul"]
    assert len(data.artist_genres) == 4


def test_missing_audio_features_abort_run(snapshot_time, spotify) -> None:
    """Eight features for ten tracks should fail the run before anything is written."""
    spotify.top_tracks["token-u1"] = [make_track(f"t{i}", ["A"]) for i in range(10)]
    spotify.tracks_without_features = {"t3", "t7"}
    database = FakeDatabase(accounts=[make_account_row("u1")])

    with pytest.raises(SnapshotDataMismatchError):
        asyncio.run(snapshot_users(spotify, database, ["u1"], FakeTokenRefresher(), 10))

    assert database.transactions == []
    assert database.rows("track") == []


def test_missing_artist_details_abort_run(snapshot_time, spotify) -> None:
    """An artist that cannot be resolved should fail the run."""
    spotify.top_tracks["token-u1"] = [make_track("T", ["A", "B"])]
    spotify.unknown_artist_ids = {"B"}

    with pytest.raises(SnapshotDataMismatchError):
        asyncio.run(build_snapshot(spotify, [_account("u1")], 10, snapshot_time))


def test_failed_detail_chunk_aborts_run(snapshot_time, spotify) -> None:
    """A failed audio features request leaves features missing and fails the run."""
    spotify.top_tracks["token-u1"] = [make_track("T", ["A"])]
    spotify.failures["v1/audio-features"] = {1}

    with pytest.raises(SnapshotDataMismatchError):
        asyncio.run(build_snapshot(spotify, [_account("u1")], 10, snapshot_time))


def test_audio_features_without_id_abort_run(spotify) -> None:
    """A features object without an id resolves no track and should fail the run unwritten."""
    spotify.top_tracks["token-u1"] = [make_track("T1", ["A"]), make_track("T2", ["A"])]
    spotify.features_without_id = {"T2"}
    database = FakeDatabase(accounts=[make_account_row("u1")])

    with pytest.raises(SnapshotDataMismatchError, match="audio features"):
        asyncio.run(snapshot_users(spotify, database, ["u1"], FakeTokenRefresher(), 10))

    assert database.transactions == []
    assert database.rows("track") == []


def test_failed_page_only_shrinks_batch(snapshot_time, spotify) -> None:
    """A user whose top tracks fail should not stop the other users."""
    spotify.top_tracks["token-u1"] = [make_track("T1", ["A"])]
    spotify.top_tracks["token-u2"] = [make_track("T2", ["B"])]
    spotify.failures["v1/me/top/tracks"] = {1}

    data = asyncio.run(
        build_snapshot(spotify, [_account("u1"), _account("u2")], 10, snapshot_time)
    )

    assert [track.track_id for track in data.tracks] == ["T2"]
    assert {row.user_id for row in data.track_rankings} == {"u2"}


def test_malformed_page_only_shrinks_batch(snapshot_time, spotify) -> None:
    """A top artists body that is not valid JSON should not stop the run."""
    spotify.top_tracks["token-u1"] = [make_track("T1", ["A"])]
    spotify.top_artists["token-u1"] = [make_artist("A", ["pop"])]
    spotify.malformed["v1/me/top/artists"] = {1}

    data = asyncio.run(build_snapshot(spotify, [_account("u1")], 10, snapshot_time))

    assert [track.track_id for track in data.tracks] == ["T1"]
    assert data.artist_rankings == []


def test_resolve_accounts_drops_missing_and_failed_users() -> None:
    """Users without account or with a failing refresh should be dropped."""
    database = FakeDatabase(
        accounts=[
            make_account_row("u1"),
            make_account_row("u3"),
            make_account_row("u4", provider="other"),
        ]
    )
    refresher = FakeTokenRefresher(failing_user_ids={"u3"})

    accounts = asyncio.run(
        resolve_accounts(database, ["u1", "u2", "u3", "u4"], refresher)
    )

    assert [account.user_id for account in accounts] == ["u1"]
    assert accounts[0].access_token == "token-u1"
    assert refresher.refreshed == ["u1", "u3"]


def test_snapshot_users_commits_bundle(spotify) -> None:
    """A successful run should commit base data and rankings."""
    spotify.top_tracks["token-u1"] = [make_track("T1", ["A"]), make_track("T2", ["B"])]
    spotify.top_artists["token-u1"] = [make_artist("A", ["pop"])]
    database = FakeDatabase(accounts=[make_account_row("u1")])

    data = asyncio.run(snapshot_users(spotify, database, ["u1"], FakeTokenRefresher(), 10))

    assert database.transactions == ["commit", "commit"]
    assert len(database.rows("track")) == 2
    assert len(database.rows("track_features")) == 2
    assert len(database.rows("artist")) == 2
    assert len(database.rows("track_ranking")) == 2
    assert len(database.rows("artist_ranking")) == 1
    assert {row[1] for row in database.rows("track_ranking")} == {data.timestamp}


def test_snapshot_users_without_accounts_commits_nothing(spotify) -> None:
    """An empty batch should not touch the catalog or the tables."""
    database = FakeDatabase()

    data = asyncio.run(snapshot_users(spotify, database, ["u1"], FakeTokenRefresher(), 10))

    assert data.tracks == []
    assert spotify.requests == []
    assert database.transactions == []
