"""
Stored OAuth accounts and access token refresh.

The snapshot pipeline only needs two things from the authentication side: the stored accounts
of the users to snapshot, and a valid access token for each of them. Refreshed tokens are
written back so the next run (and the web application) can reuse them.
"""

import base64
from dataclasses import dataclass
import logging
import time
from typing import Any, Protocol

import aiohttp
import asyncpg

from listening_etl import config


logger = logging.getLogger(__name__)


SELECT_STORED_ACCOUNTS_QUERY = """
    SELECT
        user_id,
        provider_account_id,
        refresh_token,
        access_token,
        expires_at
    FROM
        music_data.account_tb
    WHERE
        provider = $1
        AND user_id = ANY ($2::VARCHAR(255) []);
    """


UPDATE_ACCOUNT_TOKENS_STATEMENT = """
    UPDATE music_data.account_tb
    SET
        access_token = $1,
        refresh_token = $2,
        expires_at = $3
    WHERE
        provider = $4
        AND provider_account_id = $5;
    """


@dataclass(frozen=True)
class StoredAccount:
    user_id: str
    provider_account_id: str
    refresh_token: str | None
    access_token: str | None
    expires_at: int | None


@dataclass(frozen=True)
class RefreshedAccount:
    user_id: str
    account_id: str
    access_token: str
    refresh_token: str


class TokenRefresher(Protocol):
    async def refresh(self, account: StoredAccount) -> RefreshedAccount | None: ...


async def fetch_stored_accounts(
    connection: asyncpg.Connection, user_ids: list[str], provider: str = config.PROVIDER
) -> list[StoredAccount]:
    """
    Asynchronously looks up the stored accounts of the given users for one provider.

    Users without a stored account are logged and left out; they never fail the batch.

    Parameters:
        connection (asyncpg.Connection): The database connection object.
        user_ids (list[str]): The ids of the users to look up.
        provider (str): The OAuth provider the accounts belong to.

    Returns:
        list[StoredAccount]: The stored accounts, ordered by user id.
    """
    records = await connection.fetch(SELECT_STORED_ACCOUNTS_QUERY, provider, user_ids)
    accounts = sorted(
        (
            StoredAccount(
                user_id=record["user_id"],
                provider_account_id=record["provider_account_id"],
                refresh_token=record["refresh_token"],
                access_token=record["access_token"],
                expires_at=record["expires_at"],
            )
            for record in records
        ),
        key=lambda account: account.user_id,
    )

    found = {account.user_id for account in accounts}
    for user_id in user_ids:
        if user_id not in found:
            logger.warning("No stored %s account for user '%s'.", provider, user_id)

    return accounts


class SpotifyTokenRefresher:
    """
    Refreshes Spotify access tokens with the authorization code flow's refresh tokens.

    A stored access token that stays valid for more than 'expiry_margin' seconds is reused
    without a request. Otherwise a new one is requested from the Spotify token endpoint, and the
    new tokens and expiry are stored. Spotify may rotate the refresh token; if it does not return
    one, the previous refresh token stays in use.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        pool: asyncpg.Pool,
        client_id: str | None = config.SPOTIFY_CLIENT_ID,
        client_secret: str | None = config.SPOTIFY_CLIENT_SECRET,
        token_url: str = config.SPOTIFY_TOKEN_API_URL,
        provider: str = config.PROVIDER,
        expiry_margin: int = config.TOKEN_EXPIRY_MARGIN,
    ):
        self.session = session
        self.pool = pool
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.provider = provider
        self.expiry_margin = expiry_margin

    async def refresh(self, account: StoredAccount) -> RefreshedAccount | None:
        """
        Returns the account with a valid access token, or None if no token could be obtained.
        """
        if (
            account.access_token
            and account.refresh_token
            and account.expires_at is not None
            and account.expires_at - self.expiry_margin > time.time()
        ):
            return RefreshedAccount(
                user_id=account.user_id,
                account_id=account.provider_account_id,
                access_token=account.access_token,
                refresh_token=account.refresh_token,
            )

        if not account.refresh_token:
            logger.error(
                "Error refreshing access token for user '%s': no refresh token stored.",
                account.user_id,
            )
            return None

        try:
            tokens = await self.request_tokens(account.refresh_token)
            refreshed = RefreshedAccount(
                user_id=account.user_id,
                account_id=account.provider_account_id,
                access_token=tokens["access_token"],
                refresh_token=tokens.get("refresh_token") or account.refresh_token,
            )
            expires_at = int(time.time() + tokens["expires_in"])
            await self.store_tokens(refreshed, expires_at)
        except (
            aiohttp.ClientError,
            TimeoutError,
            asyncpg.PostgresError,
            KeyError,
            ValueError,
            TypeError,
        ) as error:
            logger.error(
                "Error refreshing access token for user '%s': %s", account.user_id, error
            )
            return None

        logger.debug("Refreshed access token for user '%s'.", account.user_id)
        return refreshed

    async def request_tokens(self, refresh_token: str) -> dict[str, Any]:
        # See: https://developer.spotify.com/documentation/web-api/tutorials/refreshing-tokens
        base64_encoded_authorization = base64.b64encode(
            f"{self.client_id}:{self.client_secret}".encode()
        ).decode()
        async with self.session.post(
            self.token_url,
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            headers={"Authorization": f"Basic {base64_encoded_authorization}"},
        ) as response:
            response.raise_for_status()
            return await response.json()

    async def store_tokens(self, account: RefreshedAccount, expires_at: int) -> None:
        async with self.pool.acquire() as connection:
            await connection.execute(
                UPDATE_ACCOUNT_TOKENS_STATEMENT,
                account.access_token,
                account.refresh_token,
                expires_at,
                self.provider,
                account.account_id,
            )
