"""
Commits a snapshot bundle to PostgreSQL.

A bundle is written in two transactions on one connection:

1. Base data: albums, artists, tracks and audio features are upserted (every mutable column is
   overwritten by the incoming value), then the link rows are inserted, ignoring rows that
   already exist.
2. Rankings: track and artist ranking rows are inserted, ignoring rows that already exist.
   Ranking rows are stamped with the commit time, so every commit appends a new generation of
   rankings.

A failing statement rolls back its whole transaction and the error is raised to the caller.
The ranking transaction is only started once the base data transaction has committed.

Each table's statement is declared once in 'TABLE_SPECS' with an explicit list of columns that
are overwritten on conflict.
"""

import dataclasses
from dataclasses import dataclass
import datetime
import logging
import os
from typing import Any, NamedTuple

import aiofiles
import asyncpg

from listening_etl.models import SnapshotData


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableSpec:
    """
    How one table is written.

    Attributes:
        name (str): Short name of the table, also used for the CSV mirror file name.
        table (str): Qualified table name. Its row type is used to cast the inserted rows.
        columns (tuple[str, ...]): All columns, in table order.
        key_columns (tuple[str, ...]): The primary key.
        update_columns (tuple[str, ...]): Columns overwritten on a key conflict. Empty means
            conflicting rows are ignored.
    """

    name: str
    table: str
    columns: tuple[str, ...]
    key_columns: tuple[str, ...]
    update_columns: tuple[str, ...] = ()

    @property
    def insert_statement(self) -> str:
        column_list = ", ".join(self.columns)
        if self.update_columns:
            assignments = ", ".join(
                f"{column} = EXCLUDED.{column}" for column in self.update_columns
            )
            conflict_action = (
                f"ON CONFLICT ({', '.join(self.key_columns)}) DO UPDATE SET {assignments}"
            )
        else:
            conflict_action = "ON CONFLICT DO NOTHING"

        # Parametrized queries to prevent SQL injection attacks. Postgres uses server-side
        # argument binding
        return f"""
            INSERT INTO
                {self.table} ({column_list}) (
                    SELECT
                        {column_list}
                    FROM
                        UNNEST($1::{self.table}[])
                )
            {conflict_action}
            RETURNING {column_list};
            """


TABLE_SPECS = {
    spec.name: spec
    for spec in (
        TableSpec(
            name="album",
            table="music_data.album_tb",
            columns=(
                "album_id",
                "album_name",
                "album_type",
                "total_tracks",
                "release_year",
                "image_url",
            ),
            key_columns=("album_id",),
            update_columns=(
                "album_name",
                "album_type",
                "total_tracks",
                "release_year",
                "image_url",
            ),
        ),
        TableSpec(
            name="artist",
            table="music_data.artist_tb",
            columns=("artist_id", "artist_name", "popularity", "followers", "image_url"),
            key_columns=("artist_id",),
            update_columns=("artist_name", "popularity", "followers", "image_url"),
        ),
        TableSpec(
            name="track",
            table="music_data.track_tb",
            columns=("track_id", "track_name", "explicit", "popularity", "album_id"),
            key_columns=("track_id",),
            update_columns=("track_name", "explicit", "popularity", "album_id"),
        ),
        TableSpec(
            name="track_features",
            table="music_data.track_features_tb",
            columns=(
                "track_id",
                "duration_ms",
                "acousticness",
                "danceability",
                "instrumentalness",
                "liveness",
                "loudness",
                "speechiness",
                "energy",
                "valence",
                "key",
                "mode",
                "tempo",
                "time_signature",
            ),
            key_columns=("track_id",),
            update_columns=(
                "duration_ms",
                "acousticness",
                "danceability",
                "instrumentalness",
                "liveness",
                "loudness",
                "speechiness",
                "energy",
                "valence",
                "key",
                "mode",
                "tempo",
                "time_signature",
            ),
        ),
        TableSpec(
            name="track_artist",
            table="music_data.track_artist_tb",
            columns=("track_id", "artist_id"),
            key_columns=("track_id", "artist_id"),
        ),
        TableSpec(
            name="album_artist",
            table="music_data.album_artist_tb",
            columns=("album_id", "artist_id"),
            key_columns=("album_id", "artist_id"),
        ),
        TableSpec(
            name="track_genre",
            table="music_data.track_genre_tb",
            columns=("track_id", "genre"),
            key_columns=("track_id", "genre"),
        ),
        TableSpec(
            name="artist_genre",
            table="music_data.artist_genre_tb",
            columns=("artist_id", "genre"),
            key_columns=("artist_id", "genre"),
        ),
        TableSpec(
            name="track_ranking",
            table="music_data.track_ranking_tb",
            columns=("user_id", "snapshot_timestamp", "ranking", "track_id"),
            key_columns=("user_id", "snapshot_timestamp", "ranking"),
        ),
        TableSpec(
            name="artist_ranking",
            table="music_data.artist_ranking_tb",
            columns=("user_id", "snapshot_timestamp", "ranking", "artist_id"),
            key_columns=("user_id", "snapshot_timestamp", "ranking"),
        ),
    )
}


def base_data_loads(data: SnapshotData) -> list[tuple[TableSpec, list[NamedTuple]]]:
    # Ordered so that every foreign key points at a row written before it
    return [
        (TABLE_SPECS["album"], data.albums),
        (TABLE_SPECS["artist"], data.artists),
        (TABLE_SPECS["track"], data.tracks),
        (TABLE_SPECS["track_features"], data.track_features),
        (TABLE_SPECS["track_artist"], data.track_artists),
        (TABLE_SPECS["album_artist"], data.album_artists),
        (TABLE_SPECS["track_genre"], data.track_genres),
        (TABLE_SPECS["artist_genre"], data.artist_genres),
    ]


def ranking_loads(data: SnapshotData) -> list[tuple[TableSpec, list[NamedTuple]]]:
    return [
        (TABLE_SPECS["track_ranking"], data.track_rankings),
        (TABLE_SPECS["artist_ranking"], data.artist_rankings),
    ]


async def load_rows(
    connection: asyncpg.Connection, spec: TableSpec, rows: list[NamedTuple]
) -> list[asyncpg.Record]:
    """
    Asynchronously writes rows to one table with a single statement.

    Parameters:
        connection (asyncpg.Connection): The database connection object.
        spec (TableSpec): The table to write to.
        rows (list[NamedTuple]): Rows whose fields are in the table's column order.

    Returns:
        list[asyncpg.Record]: The inserted or updated rows, as returned by Postgres. Rows
            ignored because of a conflict are not included.
    """
    if not rows:
        return []

    records = await connection.fetch(spec.insert_statement, rows)
    logger.info("Wrote %d of %d rows to %s.", len(records), len(rows), spec.table)
    for record in records:
        logger.debug("Record %s successfully written to %s.", record, spec.table)

    return records


async def load_in_transaction(
    connection: asyncpg.Connection,
    description: str,
    loads: list[tuple[TableSpec, list[NamedTuple]]],
) -> dict[str, list[asyncpg.Record]]:
    """
    Asynchronously writes several tables in one transaction.

    Statements are issued one after the other and each is awaited before the next. If any of
    them fails, the transaction is rolled back and the error is raised again.

    Returns:
        dict[str, list[asyncpg.Record]]: The written records of each table, by table name.
    """
    written = {}
    transaction = connection.transaction()
    await transaction.start()
    try:
        for spec, rows in loads:
            written[spec.name] = await load_rows(connection, spec, rows)
    except Exception as error:
        logger.error("Rolling back %s transaction: %s", description, error)
        await transaction.rollback()
        raise
    else:
        await transaction.commit()

    logger.info("Committed %s transaction.", description)
    return written


def format_csv_value(value: Any) -> str:
    # A "," with no data is loaded as a null value by Postgres
    if value is None:
        return ""
    if isinstance(value, (datetime.date, datetime.datetime)):
        value = value.isoformat()
    return '"' + str(value).replace('"', '""') + '"'


async def append_records_to_csv(
    csv_dir: str, written: dict[str, list[asyncpg.Record]]
) -> None:
    """
    Asynchronously appends committed records to one CSV file per table for record-keeping.

    The CSV files are a side output: a file that cannot be written is logged and skipped, and
    never affects what is committed to the database.
    """
    try:
        os.makedirs(csv_dir, exist_ok=True)
        for name, records in written.items():
            if not records:
                continue
            async with aiofiles.open(os.path.join(csv_dir, f"{name}.csv"), "a") as file:
                for record in records:
                    await file.write(
                        ",".join(format_csv_value(value) for value in record.values()) + "\n"
                    )
    except OSError as error:
        logger.error("Error appending committed records to CSV files in '%s': %s", csv_dir, error)


def stamp_rankings(data: SnapshotData, timestamp: datetime.datetime) -> SnapshotData:
    """Returns a copy of the bundle whose ranking rows all carry 'timestamp'."""
    return dataclasses.replace(
        data,
        timestamp=timestamp,
        track_rankings=[
            ranking._replace(snapshot_timestamp=timestamp) for ranking in data.track_rankings
        ],
        artist_rankings=[
            ranking._replace(snapshot_timestamp=timestamp) for ranking in data.artist_rankings
        ],
    )


async def commit_snapshot(
    pool: asyncpg.Pool,
    data: SnapshotData,
    csv_dir: str | None = None,
    timestamp: datetime.datetime | None = None,
) -> SnapshotData:
    """
    Asynchronously commits a snapshot bundle.

    Base data and rankings are committed in two separate transactions, in that order. The
    function only returns once every statement of both transactions has completed.

    The ranking rows are stamped with the commit time before they are written, so every commit
    appends a new generation of rankings, even when the same bundle is committed again.

    Parameters:
        pool (asyncpg.Pool): The database connection pool.
        data (SnapshotData): The bundle to commit.
        csv_dir (str | None): If set, committed records are also appended to CSV files in this
            directory.
        timestamp (datetime.datetime | None): Identifies this commit's ranking rows. Defaults to
            the current time.

    Returns:
        SnapshotData: The committed bundle, with its ranking rows stamped.

    Raises:
        Exception: Whatever a failing statement raised, after its transaction was rolled back.
    """
    data = stamp_rankings(data, timestamp or datetime.datetime.now(datetime.UTC))

    async with pool.acquire() as connection:
        logger.info("Loading albums, artists, tracks, audio features, links and genres.")
        written = await load_in_transaction(connection, "base data", base_data_loads(data))
        if csv_dir is not None:
            await append_records_to_csv(csv_dir, written)

        logger.info("Loading track and artist rankings generated at %s.", data.timestamp)
        written = await load_in_transaction(connection, "rankings", ranking_loads(data))
        if csv_dir is not None:
            await append_records_to_csv(csv_dir, written)

    return data
