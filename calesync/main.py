from __future__ import annotations

import logging
import os

import uvicorn

from calesync.config_manager import ConfigManager


def configure_logging() -> str:
    level = os.getenv("CALESYNC_LOG_LEVEL", "").strip().upper()
    if not level:
        level = ConfigManager(os.getenv("CALESYNC_CONFIG_PATH", "config.yaml")).load().logging.level
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return level


def main() -> None:
    level = configure_logging()
    host = os.getenv("CALESYNC_HOST", "0.0.0.0")
    port = int(os.getenv("CALESYNC_PORT", "8080"))
    uvicorn.run("calesync.web_admin:app", host=host, port=port, reload=False, log_level=level.lower())


if __name__ == "__main__":
    main()
