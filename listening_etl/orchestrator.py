"""
Drives one snapshot run over a batch of users.

A run goes through these stages:

1. Look up the stored accounts of the requested users. Users without one are dropped.
2. Obtain a valid access token for each account. Accounts whose refresh fails are dropped.
3. For each account in turn, fetch its top tracks and top artists concurrently and record them,
   with their rankings, in the run's 'SnapshotContext'.
4. Once every account is merged, fetch the details that are shared across users (full artist
   objects and audio features) exactly once per unique id, concurrently.
5. Build the 'SnapshotData' bundle and commit it.

Dropped accounts and failed pages only shrink the batch. A detail fetch that returns fewer items
than requested aborts the run before anything is written.
"""

import asyncio
import datetime
import logging

import aiohttp
import asyncpg

from listening_etl import config
from listening_etl.accounts import RefreshedAccount, TokenRefresher, fetch_stored_accounts
from listening_etl.catalog_client import (
    fetch_artists_data,
    fetch_top_artists,
    fetch_top_tracks,
    fetch_tracks_features,
)
from listening_etl.errors import SnapshotDataMismatchError
from listening_etl.models import SnapshotData
from listening_etl.normalizer import (
    SnapshotContext,
    finalize,
    process_artists,
    process_audio_features,
    process_top_artists,
    process_top_tracks,
    unresolved_artist_ids,
)
from listening_etl.persistence import commit_snapshot


logger = logging.getLogger(__name__)


async def resolve_accounts(
    pool: asyncpg.Pool,
    user_ids: list[str],
    token_refresher: TokenRefresher,
    provider: str = config.PROVIDER,
) -> list[RefreshedAccount]:
    """
    Asynchronously resolves the requested users to accounts with valid access tokens.

    Parameters:
        pool (asyncpg.Pool): The database connection pool.
        user_ids (list[str]): The ids of the users to snapshot.
        token_refresher (TokenRefresher): Provides a valid access token for a stored account.
        provider (str): The OAuth provider of the accounts.

    Returns:
        list[RefreshedAccount]: The usable accounts, in the order they were read from storage.
    """
    async with pool.acquire() as connection:
        stored_accounts = await fetch_stored_accounts(connection, user_ids, provider)

    refreshed_accounts = await asyncio.gather(
        *[token_refresher.refresh(account) for account in stored_accounts]
    )

    accounts = []
    for stored_account, refreshed_account in zip(stored_accounts, refreshed_accounts):
        if refreshed_account is None:
            logger.warning(
                "Dropping user '%s' from the snapshot: access token could not be refreshed.",
                stored_account.user_id,
            )
            continue
        accounts.append(refreshed_account)

    return accounts


async def merge_account_items(
    session: aiohttp.ClientSession,
    context: SnapshotContext,
    account: RefreshedAccount,
    item_target: int,
) -> None:
    """Fetches one account's top tracks and artists and merges them into the run's context."""
    tracks, artists = await asyncio.gather(
        fetch_top_tracks(session, account.access_token, item_target),
        fetch_top_artists(session, account.access_token, item_target),
    )

    if not tracks and not artists:
        logger.warning("No top tracks or artists found for user '%s'.", account.user_id)

    logger.debug(
        "Fetched %d top tracks and %d top artists for user '%s'.",
        len(tracks),
        len(artists),
        account.user_id,
    )

    process_top_tracks(context, account.user_id, tracks)
    process_top_artists(context, account.user_id, artists)


def require_complete(resource: str, requested: list[str], received: list) -> None:
    """Raises SnapshotDataMismatchError unless exactly one item came back per requested id."""
    if len(received) != len(requested):
        raise SnapshotDataMismatchError(
            f"Requested {resource} for {len(requested)} ids but received {len(received)}."
        )


async def build_snapshot(
    session: aiohttp.ClientSession,
    accounts: list[RefreshedAccount],
    item_target: int = config.ITEM_TARGET,
    timestamp: datetime.datetime | None = None,
) -> SnapshotData:
    """
    Asynchronously fetches and normalizes the listening data of a batch of accounts.

    Accounts are processed one after the other. Details shared between accounts are only
    requested after every account is merged, so an artist or track that several users listen
    to is fetched once.

    Parameters:
        session (aiohttp.ClientSession): The HTTP client session for making requests.
        accounts (list[RefreshedAccount]): Accounts with valid access tokens.
        item_target (int): How many top tracks and top artists to fetch per account.
        timestamp (datetime.datetime | None): Provisional timestamp of the ranking rows, replaced
            by the commit time in 'commit_snapshot'. Defaults to the current time.

    Returns:
        SnapshotData: The bundle to commit.

    Raises:
        SnapshotDataMismatchError: If the artist details or audio features do not cover every
            requested id, or leave a linked artist or a track unresolved.
    """
    context = SnapshotContext(timestamp or datetime.datetime.now(datetime.UTC))

    for account in accounts:
        await merge_account_items(session, context, account, item_target)

    if not accounts:
        return finalize(context)

    # Artists and audio features are not user specific, so any valid token works
    access_token = accounts[0].access_token
    artist_ids = unresolved_artist_ids(context)
    track_ids = list(context.tracks)

    logger.info(
        "Fetching details of %d artists and audio features of %d tracks.",
        len(artist_ids),
        len(track_ids),
    )

    artist_data, audio_features = await asyncio.gather(
        fetch_artists_data(session, access_token, artist_ids),
        fetch_tracks_features(session, access_token, track_ids),
    )

    require_complete("artists", artist_ids, artist_data)
    require_complete("audio features", track_ids, audio_features)

    process_artists(context, artist_data)
    process_audio_features(context, audio_features)

    # Entries without an id pass the count check but resolve nothing
    missing_artists = unresolved_artist_ids(context)
    if missing_artists:
        raise SnapshotDataMismatchError(
            f"No artist details resolved for {len(missing_artists)} artists."
        )
    missing_features = [
        track_id for track_id in context.tracks if track_id not in context.track_features
    ]
    if missing_features:
        raise SnapshotDataMismatchError(
            f"No audio features resolved for {len(missing_features)} tracks."
        )

    return finalize(context)


async def snapshot_users(
    session: aiohttp.ClientSession,
    pool: asyncpg.Pool,
    user_ids: list[str],
    token_refresher: TokenRefresher,
    item_target: int = config.ITEM_TARGET,
    csv_dir: str | None = None,
) -> SnapshotData:
    """
    Asynchronously snapshots the listening profiles of a batch of users and commits them.

    Parameters:
        session (aiohttp.ClientSession): The HTTP client session for making requests.
        pool (asyncpg.Pool): The database connection pool.
        user_ids (list[str]): The ids of the users to snapshot.
        token_refresher (TokenRefresher): Provides a valid access token for a stored account.
        item_target (int): How many top tracks and top artists to fetch per account.
        csv_dir (str | None): If set, committed records are also appended to CSV files.

    Returns:
        SnapshotData: The committed bundle.

    Raises:
        SnapshotDataMismatchError: If detail data is incomplete. Nothing is committed.
        Exception: Whatever a failing database statement raised.
    """
    logger.info("Resolving accounts of %d users.", len(user_ids))
    accounts = await resolve_accounts(pool, user_ids, token_refresher)

    if not accounts:
        logger.warning("No account could be resolved; nothing to snapshot.")
        return SnapshotData(timestamp=datetime.datetime.now(datetime.UTC))

    logger.info("Fetching listening data of %d accounts.", len(accounts))
    data = await build_snapshot(session, accounts, item_target)

    logger.info(
        "Committing snapshot of %d tracks and %d artists.",
        len(data.tracks),
        len(data.artists),
    )
    return await commit_snapshot(pool, data, csv_dir)
