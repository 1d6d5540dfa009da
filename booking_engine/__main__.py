"""Serve the API with uvicorn: ``python -m booking_engine``."""

import uvicorn

from .config import settings


def build_server() -> uvicorn.Server:
    config = uvicorn.Config(
        "booking_engine.app:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        # structlog is configured by create_app
        log_config=None,
    )
    return uvicorn.Server(config)


def main() -> None:
    build_server().run()


if __name__ == "__main__":
    main()
