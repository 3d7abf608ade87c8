"""
Requests to the Spotify Web API for the data a listening snapshot needs.

The API caps the number of items per call at 50, so "top N" requests are paginated over several
rounds and requests keyed by ids are split into chunks. All responses are validated against the
schemas in 'listening_etl.schemas'.

Failures never propagate out of this module: a failed round or chunk is logged as
"Error requesting <resource>" and whatever was already fetched is returned. Callers that need
complete data compare the returned count with what they asked for.
"""

import logging
from typing import Any, Literal

import aiohttp
from pydantic import ValidationError

from listening_etl import config
from listening_etl.errors import UnexpectedContentTypeError
from listening_etl.schemas import (
    ArtistObject,
    ArtistsResponse,
    AudioFeaturesObject,
    AudioFeaturesResponse,
    TopArtistsResponse,
    TopTracksResponse,
    TrackObject,
)


# Maximum number of items allowed per request
MAX_REQUEST_ITEMS = 50


logger = logging.getLogger(__name__)


# Anything that makes a single request unusable. The rest of the batch is still returned
REQUEST_ERRORS = (
    aiohttp.ClientError,
    TimeoutError,
    ValidationError,
    ValueError,
    UnexpectedContentTypeError,
)


async def fetch(session: aiohttp.ClientSession, url: str, **kwargs: Any) -> dict[str, Any]:
    """
    Asynchronously fetches JSON content from a given URL using an aiohttp session.

    Parameters:
        session (aiohttp.ClientSession): The HTTP client session for making requests.
        url (str): The URL to fetch data from.
        **kwargs (Any): Additional keyword arguments to be passed to the session.get() method.

    Returns:
        dict[str, Any]: The decoded JSON body of the response.

    Raises:
        aiohttp.ClientError: If an HTTP request fails.
        UnexpectedContentTypeError: If the response's content type is not 'application/json'.
    """
    logger.debug("Fetching '%s' with %s.", url, kwargs.get("params"))
    async with session.get(url, **kwargs) as response:
        response: aiohttp.ClientResponse
        response.raise_for_status()

        content_type = response.headers.get("Content-Type", "")
        if "application/json" in content_type:
            return await response.json()

        raise UnexpectedContentTypeError(
            f"Content type '{content_type}' was not expected."
        )


async def fetch_spotify(
    session: aiohttp.ClientSession, url: str, spotify_access_token: str, **kwargs: Any
) -> dict[str, Any]:
    """
    Asynchronously fetches data from the Spotify Web API with a user's bearer token.

    Parameters:
        session (aiohttp.ClientSession): The HTTP client session for making requests.
        url (str): The URL of the Spotify Web API endpoint to be accessed.
        spotify_access_token (str): The access token for authenticating with the Spotify Web API.
        **kwargs (Any): Additional keyword arguments to be passed to the underlying fetch function.

    Returns:
        dict[str, Any]: A dictionary containing the JSON response data from the Spotify Web API.

    Raises:
        aiohttp.ClientError: If an HTTP request to the Spotify Web API fails.
        UnexpectedContentTypeError: If the response is not JSON.
    """
    return await fetch(
        session,
        url,
        headers={"Authorization": f"Bearer {spotify_access_token}"},
        **kwargs,
    )


def chunk_ids(ids: list[str], size: int = MAX_REQUEST_ITEMS) -> list[list[str]]:
    """Splits ids into consecutive chunks of at most 'size' ids, keeping their order."""
    return [ids[i : i + size] for i in range(0, len(ids), size)]


async def fetch_top_items(
    session: aiohttp.ClientSession,
    spotify_access_token: str,
    item_type: Literal["tracks", "artists"],
    nitems: int,
    time_range: str = config.TIME_RANGE,
) -> list[TrackObject] | list[ArtistObject]:
    """
    Asynchronously fetches a user's top tracks or artists, in the order Spotify ranks them.

    The request is split into sequential rounds of at most 50 items. Each round's offset is the
    number of items returned so far, and the loop ends once 'nitems' items were collected or a
    round returns fewer items than it asked for (the user has no more history).

    Parameters:
        session (aiohttp.ClientSession): The HTTP client session for making requests.
        spotify_access_token (str): The user's access token.
        item_type (str): Either 'tracks' or 'artists'.
        nitems (int): The number of items to fetch.
        time_range (str): The Spotify affinity time frame, e.g. 'short_term'.

    Returns:
        list[TrackObject] | list[ArtistObject]: The fetched items. If a round fails, the items
            of the previous rounds are returned.
    """
    response_schema = TopTracksResponse if item_type == "tracks" else TopArtistsResponse
    url = f"{config.SPOTIFY_BASE_API_URL}v1/me/top/{item_type}"

    items = []
    try:
        while len(items) < nitems:
            limit = min(MAX_REQUEST_ITEMS, nitems - len(items))
            data = await fetch_spotify(
                session,
                url,
                spotify_access_token,
                params={
                    "time_range": time_range,
                    "limit": str(limit),
                    "offset": str(len(items)),
                },
            )
            page = response_schema.model_validate(data).items
            items.extend(page)

            if len(page) < limit:
                break
    except REQUEST_ERRORS as error:
        logger.error("Error requesting most played %s: %s", item_type, error)
        logger.error("Got %d %s out of %d requested.", len(items), item_type, nitems)

    return items


async def fetch_top_tracks(
    session: aiohttp.ClientSession, spotify_access_token: str, nitems: int
) -> list[TrackObject]:
    """Asynchronously fetches a user's top 'nitems' tracks. See 'fetch_top_items'."""
    return await fetch_top_items(session, spotify_access_token, "tracks", nitems)


async def fetch_top_artists(
    session: aiohttp.ClientSession, spotify_access_token: str, nitems: int
) -> list[ArtistObject]:
    """Asynchronously fetches a user's top 'nitems' artists. See 'fetch_top_items'."""
    return await fetch_top_items(session, spotify_access_token, "artists", nitems)


async def fetch_artists_data(
    session: aiohttp.ClientSession, spotify_access_token: str, artist_ids: list[str]
) -> list[ArtistObject]:
    """
    Asynchronously fetches full artist objects, including genres and followers, by id.

    Ids are requested in chunks of 50, one request per chunk, and the results are concatenated
    in request order. A failed chunk stops the remaining chunks; the artists fetched before it
    are returned. Null entries (unknown ids) are dropped.

    Parameters:
        session (aiohttp.ClientSession): The HTTP client session for making requests.
        spotify_access_token (str): Any valid access token.
        artist_ids (list[str]): The Spotify ids of the artists to fetch.

    Returns:
        list[ArtistObject]: The fetched artists.
    """
    artists = []
    try:
        for batch in chunk_ids(artist_ids):
            data = await fetch_spotify(
                session,
                f"{config.SPOTIFY_BASE_API_URL}v1/artists",
                spotify_access_token,
                params={"ids": ",".join(batch)},
            )
            response = ArtistsResponse.model_validate(data)
            artists.extend(_drop_nulls(response.artists, "artists"))
    except REQUEST_ERRORS as error:
        logger.error("Error requesting artists data: %s", error)
        logger.error("Got %d artists out of %d requested.", len(artists), len(artist_ids))

    return artists


async def fetch_tracks_features(
    session: aiohttp.ClientSession, spotify_access_token: str, track_ids: list[str]
) -> list[AudioFeaturesObject]:
    """
    Asynchronously fetches the audio features of tracks by id.

    Chunking and failure handling are the same as for 'fetch_artists_data'. The features are
    read from the 'audio_features' field of each response.

    Parameters:
        session (aiohttp.ClientSession): The HTTP client session for making requests.
        spotify_access_token (str): Any valid access token.
        track_ids (list[str]): The Spotify ids of the tracks.

    Returns:
        list[AudioFeaturesObject]: The fetched audio features.
    """
    audio_features = []
    try:
        for batch in chunk_ids(track_ids):
            data = await fetch_spotify(
                session,
                f"{config.SPOTIFY_BASE_API_URL}v1/audio-features",
                spotify_access_token,
                params={"ids": ",".join(batch)},
            )
            response = AudioFeaturesResponse.model_validate(data)
            audio_features.extend(_drop_nulls(response.audio_features, "audio features"))
    except REQUEST_ERRORS as error:
        logger.error("Error requesting audio features data: %s", error)
        logger.error(
            "Got %d audio features out of %d requested.",
            len(audio_features),
            len(track_ids),
        )

    return audio_features


def _drop_nulls(items: list, resource: str) -> list:
    present = [item for item in items if item is not None]
    if len(present) != len(items):
        logger.warning(
            "Spotify returned %d null %s entries.", len(items) - len(present), resource
        )
    return present
