from __future__ import annotations

import logging
import os

import uvicorn

from deck.config_manager import ConfigManager


def main() -> None:
    config = ConfigManager(os.getenv("DECK_CONFIG_PATH", "config.yaml")).load()
    logging.basicConfig(
        level=config.logging.level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("DECK_HOST", "0.0.0.0")
    port = int(os.getenv("DECK_PORT", "8080"))
    uvicorn.run("deck.web_app:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
