import asyncio
import logging
import sys

from listening_etl.config import configure_logging
from listening_etl.errors import UnsupportedPythonVersionError
from listening_etl.etl_pipeline import main


def run() -> None:
    major, minor, *_ = sys.version_info
    if (major, minor) < (3, 11):
        raise UnsupportedPythonVersionError("Please upgrade to Python 3.11 or higher.")

    configure_logging()
    logging.getLogger(__name__).info("Script starting.")

    result = asyncio.run(main())
    sys.exit(0 if result.ok else 1)


if __name__ == "__main__":
    run()
