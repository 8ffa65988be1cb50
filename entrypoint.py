import os

import uvicorn

from logging_config import get_logger, setup_logging

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
setup_logging(log_level=LOG_LEVEL, log_file=os.getenv("LOG_FILE"))
logger = get_logger(__name__)


def main():
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    reload = os.getenv("RELOAD", "false").lower() in ("1", "true", "yes")
    logger.info(f"Starting Meme Room on {host}:{port} (reload={reload})")
    # uvicorn keeps the handlers installed by setup_logging
    uvicorn.run("app:app", host=host, port=port, reload=reload, log_config=None, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
