"""Command-line entrypoint for running the mirror server."""

from __future__ import annotations

import uvicorn

from ..common.settings import MirrorSettings
from .app import create_app


def main() -> None:
    settings = MirrorSettings()
    app = create_app(settings)
    uvicorn.run(
        app,
        host=settings.bind_host,
        port=settings.port,
        log_config=None,
        access_log=False,
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
