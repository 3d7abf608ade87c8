"""
Runtime configuration for the snapshot pipeline.

Secrets and connection parameters come from environment variables (a '.env' file is loaded if
present). Tunables such as API endpoints, item counts, and logging level come from 'config.ini'
at the repository root. Every 'config.ini' value has a default so the package can be imported
without the file.
"""

from configparser import ConfigParser
import logging
import os

from dotenv import load_dotenv


load_dotenv()


SPOTIFY_CLIENT_ID = os.getenv("SPOTIFY_CLIENT_ID")
SPOTIFY_CLIENT_SECRET = os.getenv("SPOTIFY_CLIENT_SECRET")


DB_HOST = os.getenv("DB_HOST")
DB_PORT = os.getenv("DB_PORT")
DB_NAME = os.getenv("DB_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASSWORD = os.getenv("DB_PASSWORD")


TRACKED_USER_IDS = [
    user_id.strip()
    for user_id in os.getenv("TRACKED_USER_IDS", "").split(",")
    if user_id.strip()
]


BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


config = ConfigParser()
config.read(os.path.join(BASE_DIR, "config.ini"))


SPOTIFY_BASE_API_URL = config.get(
    "API", "SPOTIFY_BASE_API_URL", fallback="https://api.spotify.com/"
)
SPOTIFY_TOKEN_API_URL = config.get(
    "API", "SPOTIFY_TOKEN_API_URL", fallback="https://accounts.spotify.com/api/token"
)
REQUEST_TIMEOUT = config.getfloat("API", "REQUEST_TIMEOUT", fallback=30.0)


if SPOTIFY_BASE_API_URL[-1] != "/":
    SPOTIFY_BASE_API_URL += "/"


PROVIDER = config.get("SNAPSHOT", "PROVIDER", fallback="spotify")
ITEM_TARGET = config.getint("SNAPSHOT", "ITEM_TARGET", fallback=100)
TIME_RANGE = config.get("SNAPSHOT", "TIME_RANGE", fallback="short_term")
TOKEN_EXPIRY_MARGIN = config.getint("SNAPSHOT", "TOKEN_EXPIRY_MARGIN", fallback=60)


CSV_DIR = config.get("OUTPUT", "CSV_DIR", fallback="") or None
if CSV_DIR is not None and not os.path.isabs(CSV_DIR):
    CSV_DIR = os.path.join(BASE_DIR, CSV_DIR)


LOGGING_LEVEL = config.get("LOGGING", "LOGGING_LEVEL", fallback="INFO")


def configure_logging() -> None:
    """
    Configures the root logger from the 'LOGGING_LEVEL' setting.

    An empty level or 'NOTSET' disables logging entirely.
    """
    level = LOGGING_LEVEL
    if level in ("", "NOTSET"):
        logging.disable()
        level = logging.NOTSET

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s (line %(lineno)d): %(message)s",
    )
