from __future__ import annotations

import logging
import sys

import uvicorn

from neonote.api.main import create_app
from neonote.config import Config


def run(config: Config | None = None) -> None:
    config = config or Config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )
    logging.getLogger(__name__).info(
        f"Server running at http://{config.host}:{config.port}"
    )
    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    run()
