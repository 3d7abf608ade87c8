"""
Entry point of the listening snapshot ETL pipeline.

The pipeline periodically captures the listening profile (top tracks and top artists) of a set
of users from the Spotify Web API and loads it into PostgreSQL as deduplicated tracks, artists,
albums, genres and audio features, plus a timestamped ranking history per user.

Technical Details
-----------------

The pipeline is mostly I/O bound and uses several asynchronous libraries:

- `aiohttp` for asynchronous HTTP requests.
- `asyncpg` for asynchronous interaction with PostgreSQL.
- `aiofiles` for asynchronous file operations.

Responses are validated with `pydantic`, and configuration is handled with `configparser` and
`python-dotenv`.

Environment Variables and Configuration
----------------------------------------

- Spotify API credentials (client ID and secret), database connection parameters and the ids of
  the tracked users should be set as environment variables.
- Additional configuration, such as the number of items per user or the logging level, is
  available in the 'config.ini' file.
"""

from dataclasses import dataclass
import logging

import aiohttp
import asyncpg

from listening_etl import config
from listening_etl.accounts import SpotifyTokenRefresher, TokenRefresher
from listening_etl.orchestrator import snapshot_users


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotResult:
    """Outcome of a scheduled snapshot, as reported to the caller that triggered it."""

    ok: bool
    body: str


async def run_snapshot(
    user_ids: list[str],
    session: aiohttp.ClientSession,
    pool: asyncpg.Pool,
    token_refresher: TokenRefresher,
    item_target: int = config.ITEM_TARGET,
    csv_dir: str | None = None,
) -> SnapshotResult:
    """
    Asynchronously runs one snapshot and reports whether it succeeded.

    Failures of single accounts or pages only appear in the logs. Anything that aborts the run
    is reported with its message; retrying is left to the scheduler.

    Parameters:
        user_ids (list[str]): The ids of the users to snapshot.
        session (aiohttp.ClientSession): The HTTP client session for making requests.
        pool (asyncpg.Pool): The database connection pool.
        token_refresher (TokenRefresher): Provides a valid access token for a stored account.
        item_target (int): How many top tracks and top artists to fetch per account.
        csv_dir (str | None): If set, committed records are also appended to CSV files.

    Returns:
        SnapshotResult: Success, or failure with the error message.
    """
    try:
        await snapshot_users(
            session, pool, user_ids, token_refresher, item_target, csv_dir
        )
    except Exception as error:
        logger.exception("Snapshot failed.")
        return SnapshotResult(ok=False, body=str(error) or type(error).__name__)

    return SnapshotResult(ok=True, body="Exited successfully!")


async def main() -> SnapshotResult:
    """
    Main asynchronous entry point of the pipeline.

    This function performs the following major steps:

    1. Establishes an asynchronous HTTP client session and a connection pool to the database.
    2. Snapshots the users listed in 'TRACKED_USER_IDS'.
    3. Reports the outcome.

    Returns:
        SnapshotResult: The outcome of the snapshot.
    """
    logger.debug("TRACKED_USER_IDS: %s.", config.TRACKED_USER_IDS)

    async with (
        aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=config.REQUEST_TIMEOUT)
        ) as session,
        asyncpg.create_pool(
            # Statements of one snapshot run on a single connection; the second one serves the
            # account lookup and token updates
            min_size=1,
            max_size=2,
            host=config.DB_HOST,
            port=config.DB_PORT,
            database=config.DB_NAME,
            user=config.DB_USER,
            password=config.DB_PASSWORD,
        ) as pool,
    ):
        token_refresher = SpotifyTokenRefresher(session, pool)
        result = await run_snapshot(
            config.TRACKED_USER_IDS,
            session,
            pool,
            token_refresher,
            csv_dir=config.CSV_DIR,
        )

    if result.ok:
        logger.info("Script finished successfully.")
    else:
        logger.error("Script failed: %s", result.body)

    return result
