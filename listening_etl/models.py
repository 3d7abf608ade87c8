"""
Row types written by the persistence layer.

Each row is a named tuple whose field order matches the column order of its table in
'db/schema.sql', since rows are bulk inserted by casting an array of tuples to the table's row
type.
"""

from dataclasses import dataclass, field
import datetime
from typing import NamedTuple


class Album(NamedTuple):
    album_id: str
    album_name: str
    album_type: str
    total_tracks: int
    release_year: int
    image_url: str | None


class Artist(NamedTuple):
    artist_id: str
    artist_name: str
    popularity: int
    followers: int
    image_url: str | None


class Track(NamedTuple):
    track_id: str
    track_name: str
    explicit: bool
    popularity: int
    album_id: str | None


class TrackFeatures(NamedTuple):
    track_id: str
    duration_ms: int
    acousticness: float
    danceability: float
    instrumentalness: float
    liveness: float
    loudness: float
    speechiness: float
    energy: float
    valence: float
    key: int
    mode: int
    tempo: float
    time_signature: int


class TrackArtist(NamedTuple):
    track_id: str
    artist_id: str


class AlbumArtist(NamedTuple):
    album_id: str
    artist_id: str


class TrackGenre(NamedTuple):
    track_id: str
    genre: str


class ArtistGenre(NamedTuple):
    artist_id: str
    genre: str


class TrackRanking(NamedTuple):
    user_id: str
    snapshot_timestamp: datetime.datetime
    ranking: int
    track_id: str


class ArtistRanking(NamedTuple):
    user_id: str
    snapshot_timestamp: datetime.datetime
    ranking: int
    artist_id: str


@dataclass
class SnapshotData:
    """
    Everything one snapshot run commits: deduplicated base entities, link rows, and the ranking
    history rows of every account in the batch.
    """

    timestamp: datetime.datetime
    albums: list[Album] = field(default_factory=list)
    artists: list[Artist] = field(default_factory=list)
    tracks: list[Track] = field(default_factory=list)
    track_features: list[TrackFeatures] = field(default_factory=list)
    track_artists: list[TrackArtist] = field(default_factory=list)
    album_artists: list[AlbumArtist] = field(default_factory=list)
    track_genres: list[TrackGenre] = field(default_factory=list)
    artist_genres: list[ArtistGenre] = field(default_factory=list)
    track_rankings: list[TrackRanking] = field(default_factory=list)
    artist_rankings: list[ArtistRanking] = field(default_factory=list)
