"""Start the HR sync service."""

import logging

import uvicorn

from app.config import settings


if __name__ == "__main__":
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    uvicorn.run("app.main:app", host=settings.app_host, port=settings.app_port)
