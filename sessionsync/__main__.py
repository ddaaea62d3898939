import logging
import os

import uvicorn

from .logging_setup import configure_logging

logger = logging.getLogger("session_sync.server")


def main() -> None:
    configure_logging()
    host = os.getenv("SESSION_SYNC_HOST") or os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("SESSION_SYNC_PORT") or os.getenv("PORT", "8091"))
    logger.info("server_start host=%s port=%s", host, port)
    # log_config=None: uvicorn garde notre format clé=valeur
    uvicorn.run("sessionsync.main:app", host=host, port=port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
