"""Development server entrypoint."""
from __future__ import annotations

from .app import create_app
from .config import get_settings


def run() -> None:
    """Convenience wrapper used by the ``storeflow`` console script."""

    settings = get_settings()
    app = create_app(settings=settings)
    app.run(
        host=settings.host,
        port=settings.port,
        debug=settings.environment == "development",
    )


if __name__ == "__main__":
    run()
