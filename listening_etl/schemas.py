"""
Response schemas for the Spotify Web API endpoints used by the snapshot pipeline.

Fields not declared here are ignored when a response is validated. Most fields are optional
because the API omits them for some objects (local tracks, restricted content); the normalizer
substitutes defaults for missing values and skips objects without an id.
"""

from pydantic import BaseModel


class ImageObject(BaseModel):
    url: str
    height: int | None = None
    width: int | None = None


class FollowersObject(BaseModel):
    href: str | None = None
    total: int | None = None


class SimplifiedArtistObject(BaseModel):
    """Abbreviated artist embedded in track and album payloads. Carries no genres."""

    id: str | None = None
    name: str | None = None


class ArtistObject(BaseModel):
    id: str | None = None
    name: str | None = None
    popularity: int | None = None
    followers: FollowersObject | None = None
    genres: list[str] = []
    images: list[ImageObject] = []


class AlbumObject(BaseModel):
    id: str | None = None
    name: str | None = None
    album_type: str | None = None
    total_tracks: int | None = None
    release_date: str | None = None
    images: list[ImageObject] = []
    artists: list[SimplifiedArtistObject] = []


class TrackObject(BaseModel):
    id: str | None = None
    name: str | None = None
    explicit: bool | None = None
    popularity: int | None = None
    duration_ms: int | None = None
    album: AlbumObject | None = None
    artists: list[SimplifiedArtistObject] = []


class AudioFeaturesObject(BaseModel):
    id: str | None = None
    duration_ms: int | None = None
    acousticness: float | None = None
    danceability: float | None = None
    instrumentalness: float | None = None
    liveness: float | None = None
    loudness: float | None = None
    speechiness: float | None = None
    energy: float | None = None
    valence: float | None = None
    key: int | None = None
    mode: int | None = None
    tempo: float | None = None
    time_signature: int | None = None


class TopTracksResponse(BaseModel):
    """Body of 'GET /v1/me/top/tracks'."""

    items: list[TrackObject]


class TopArtistsResponse(BaseModel):
    """Body of 'GET /v1/me/top/artists'."""

    items: list[ArtistObject]


class ArtistsResponse(BaseModel):
    """Body of 'GET /v1/artists'. Unknown ids come back as null entries."""

    artists: list[ArtistObject | None]


class AudioFeaturesResponse(BaseModel):
    """Body of 'GET /v1/audio-features'. Tracks without analysis come back as null entries."""

    audio_features: list[AudioFeaturesObject | None]
