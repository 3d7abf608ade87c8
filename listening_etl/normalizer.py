"""
Turns catalog objects into deduplicated rows for the relational store.

All state built during one snapshot run lives in a 'SnapshotContext' that the orchestrator
creates per run and passes into every function here. The same track, album, or artist can be
seen many times across the tracks of one user and across users; each is kept once, and link
rows are kept as ordered sets so a pair is never emitted twice.

Objects without an id are skipped. Missing optional fields fall back to zero, empty, or
placeholder values so a partially populated object never blocks a write.
"""

from dataclasses import dataclass, field
import datetime
import logging

from listening_etl.models import (
    Album,
    AlbumArtist,
    Artist,
    ArtistGenre,
    ArtistRanking,
    SnapshotData,
    Track,
    TrackArtist,
    TrackFeatures,
    TrackGenre,
    TrackRanking,
)
from listening_etl.schemas import (
    AlbumObject,
    ArtistObject,
    AudioFeaturesObject,
    ImageObject,
    TrackObject,
)


logger = logging.getLogger(__name__)


@dataclass
class SnapshotContext:
    """
    Deduplication state of one snapshot run. Never shared between runs.

    Link-row fields are dictionaries with 'None' values used as insertion-ordered sets.
    """

    timestamp: datetime.datetime
    tracks: dict[str, Track] = field(default_factory=dict)
    albums: dict[str, Album] = field(default_factory=dict)
    artists: dict[str, Artist] = field(default_factory=dict)
    artist_genres: dict[str, list[str]] = field(default_factory=dict)
    track_features: dict[str, TrackFeatures] = field(default_factory=dict)
    track_artists: dict[TrackArtist, None] = field(default_factory=dict)
    album_artists: dict[AlbumArtist, None] = field(default_factory=dict)
    track_rankings: list[TrackRanking] = field(default_factory=list)
    artist_rankings: list[ArtistRanking] = field(default_factory=list)


def first_image_url(images: list[ImageObject]) -> str | None:
    return images[0].url if images else None


def parse_release_year(release_date: str | None) -> int:
    """Returns the year of a Spotify release date ('2021', '2021-03' or '2021-03-19'), or 0."""
    try:
        return int((release_date or "").split("-")[0])
    except ValueError:
        return 0


def process_album(context: SnapshotContext, album: AlbumObject) -> str | None:
    """
    Records an album and its album-artist links. The last occurrence of an album wins.

    Returns:
        str | None: The album id, or None if the album has no id.
    """
    if not album.id:
        return None

    context.albums[album.id] = Album(
        album_id=album.id,
        album_name=album.name or "Untitled",
        album_type=album.album_type or "",
        total_tracks=album.total_tracks or 0,
        release_year=parse_release_year(album.release_date),
        image_url=first_image_url(album.images),
    )
    for artist in album.artists:
        if artist.id:
            context.album_artists[AlbumArtist(album.id, artist.id)] = None

    return album.id


def process_tracks(context: SnapshotContext, tracks: list[TrackObject]) -> None:
    """
    Records tracks, their albums, and their track-artist and album-artist links.

    Tracks are never re-fetched, so the first occurrence of a track id keeps its fields.
    """
    for track in tracks:
        if not track.id:
            continue

        album_id = process_album(context, track.album) if track.album else None

        for artist in track.artists:
            if artist.id:
                context.track_artists[TrackArtist(track.id, artist.id)] = None

        if track.id in context.tracks:
            continue

        context.tracks[track.id] = Track(
            track_id=track.id,
            track_name=track.name or "Untitled",
            explicit=track.explicit or False,
            popularity=track.popularity or 0,
            album_id=album_id,
        )


def process_artists(context: SnapshotContext, artists: list[ArtistObject]) -> None:
    """
    Records full artist objects and their genres. The latest object for an artist wins.

    Only full artist objects (from the top artists or artists-by-id endpoints) go through here;
    the artist stubs embedded in tracks carry neither genres nor followers.
    """
    for artist in artists:
        if not artist.id:
            continue

        context.artists[artist.id] = Artist(
            artist_id=artist.id,
            artist_name=artist.name or "Unknown",
            popularity=artist.popularity or 0,
            followers=(artist.followers.total if artist.followers else None) or 0,
            image_url=first_image_url(artist.images),
        )
        context.artist_genres[artist.id] = list(dict.fromkeys(artist.genres))


def process_audio_features(
    context: SnapshotContext, audio_features: list[AudioFeaturesObject]
) -> None:
    """Records one TrackFeatures row per audio features object, skipping objects without an id."""
    for features in audio_features:
        if not features.id:
            continue

        context.track_features[features.id] = TrackFeatures(
            track_id=features.id,
            duration_ms=features.duration_ms or 0,
            acousticness=features.acousticness or 0.0,
            danceability=features.danceability or 0.0,
            instrumentalness=features.instrumentalness or 0.0,
            liveness=features.liveness or 0.0,
            loudness=features.loudness or 0.0,
            speechiness=features.speechiness or 0.0,
            energy=features.energy or 0.0,
            valence=features.valence or 0.0,
            key=features.key or 0,
            mode=features.mode or 0,
            tempo=features.tempo or 0.0,
            time_signature=features.time_signature or 0,
        )


def process_top_tracks(
    context: SnapshotContext, user_id: str, tracks: list[TrackObject]
) -> None:
    """
    Records a user's top tracks and their ranking rows.

    The ranking of a track is its zero-based position in the fetched list, so a skipped track
    without an id leaves a gap instead of shifting the positions after it.
    """
    process_tracks(context, tracks)
    for ranking, track in enumerate(tracks):
        if track.id:
            context.track_rankings.append(
                TrackRanking(user_id, context.timestamp, ranking, track.id)
            )


def process_top_artists(
    context: SnapshotContext, user_id: str, artists: list[ArtistObject]
) -> None:
    """Records a user's top artists and their ranking rows, ranked the same way as tracks."""
    process_artists(context, artists)
    for ranking, artist in enumerate(artists):
        if artist.id:
            context.artist_rankings.append(
                ArtistRanking(user_id, context.timestamp, ranking, artist.id)
            )


def unresolved_artist_ids(context: SnapshotContext) -> list[str]:
    """
    Returns the ids of artists linked to a track or album that have no full artist object yet.
    """
    referenced = dict.fromkeys(
        [link.artist_id for link in context.track_artists]
        + [link.artist_id for link in context.album_artists]
    )
    return [artist_id for artist_id in referenced if artist_id not in context.artists]


def derive_track_genres(context: SnapshotContext) -> list[TrackGenre]:
    """
    Derives track genres as the union of the genres of each track's artists.

    Spotify has no genres on tracks, so this join over the track-artist links is the only
    source of track genres.
    """
    track_genres = {}
    for link in context.track_artists:
        for genre in context.artist_genres.get(link.artist_id, []):
            track_genres[TrackGenre(link.track_id, genre)] = None
    return list(track_genres)


def finalize(context: SnapshotContext) -> SnapshotData:
    """Builds the complete bundle of rows to commit for the run."""
    logger.debug(
        "Snapshot holds %d tracks, %d artists, %d albums and %d audio features.",
        len(context.tracks),
        len(context.artists),
        len(context.albums),
        len(context.track_features),
    )
    return SnapshotData(
        timestamp=context.timestamp,
        albums=list(context.albums.values()),
        artists=list(context.artists.values()),
        tracks=list(context.tracks.values()),
        track_features=list(context.track_features.values()),
        track_artists=list(context.track_artists),
        album_artists=list(context.album_artists),
        track_genres=derive_track_genres(context),
        artist_genres=[
            ArtistGenre(artist_id, genre)
            for artist_id, genres in context.artist_genres.items()
            for genre in genres
        ],
        track_rankings=list(context.track_rankings),
        artist_rankings=list(context.artist_rankings),
    )
