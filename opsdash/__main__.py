"""
opsdash.__main__ — Entry point for ``python -m opsdash``
========================================================

Wiring:
1. Load .env (secrets).
2. Resolve the environment into a DashboardConfig; bad values exit 1.
3. Configure logging at ``LOG_LEVEL``.
4. Build the FastAPI app and serve it with uvicorn, which handles
   SIGTERM/SIGINT by draining in-flight requests before the app's own
   shutdown closes subscribers and the database pool.

Run with::

    python -m opsdash
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from dotenv import load_dotenv

from opsdash.api.main import create_app
from opsdash.config import load_config
from opsdash.errors import ConfigError

logger = logging.getLogger("opsdash")


def main() -> int:
    """Bootstrap and run the dashboard backend; returns the exit status."""

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Configuration.
    try:
        cfg = load_config()
    except ConfigError as exc:
        logging.basicConfig(level=logging.ERROR)
        logger.critical("Invalid configuration: %s", exc)
        return 1

    # 3. Logging.
    logging.basicConfig(
        level=cfg.log_level,
        format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
        datefmt="%H:%M:%S",
    )

    # 4. Serve.
    app = create_app(cfg)
    logger.info("Starting opsdash on %s:%d", cfg.host, cfg.port)
    uvicorn.run(
        app,
        host=cfg.host,
        port=cfg.port,
        log_config=None,
        timeout_graceful_shutdown=int(cfg.shutdown_grace_seconds),
    )
    logger.info("opsdash stopped.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
