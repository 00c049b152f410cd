from __future__ import annotations

import os

import uvicorn

from assetsync.env import load_dotenv_if_present
from assetsync.structured_logging import configure_structured_logging


def main() -> None:
    # Load .env early so ASSETSYNC_* vars exist before anything reads them.
    load_dotenv_if_present()
    configure_structured_logging()

    # Import after dotenv load (prevents "config read before env" surprises)
    from assetsync.api.app import create_app

    host = os.getenv("ASSETSYNC_API_HOST", "127.0.0.1")
    port = int(os.getenv("ASSETSYNC_API_PORT", "8090"))

    uvicorn.run(create_app(), host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
