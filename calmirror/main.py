from __future__ import annotations

import logging
import os

import uvicorn

from calmirror.config_manager import ConfigManager
from calmirror.models import LoggingConfig


def configure_logging(config: LoggingConfig) -> None:
    logging.basicConfig(level=getattr(logging, config.level, logging.INFO), format=config.format)


def main() -> None:
    config_path = os.getenv("CALMIRROR_CONFIG_PATH", "config.yaml")
    configure_logging(ConfigManager(config_path).load().logging)
    host = os.getenv("CALMIRROR_HOST", "0.0.0.0")
    port = int(os.getenv("CALMIRROR_PORT", "8080"))
    uvicorn.run("calmirror.web_admin:create_app", host=host, port=port, reload=False, factory=True)


if __name__ == "__main__":
    main()
