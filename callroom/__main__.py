"""Run the signaling server: ``python -m callroom``."""
from __future__ import annotations

import logging

import uvicorn

from .core.config import settings


def main() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("callroom.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
