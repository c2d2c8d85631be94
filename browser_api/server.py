from __future__ import annotations

import logging

import uvicorn

from browser_api.app import create_app
from browser_api.settings import RunnerSettings


LOGGER = logging.getLogger("script-runner")

_UVICORN_LOG_LEVELS = {"critical", "error", "warning", "info", "debug", "trace"}


def main() -> None:
    settings = RunnerSettings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    app = create_app(settings)
    LOGGER.info(
        "Headless script runner listening on %s:%s mode=%s env=%s",
        settings.host,
        settings.port,
        settings.browser_mode,
        settings.app_env,
    )
    log_level = settings.log_level.lower()
    # uvicorn installs SIGINT/SIGTERM handlers; shutdown hooks close the browser before exit 0.
    uvicorn.run(
        app,
        host=settings.host,
        port=int(settings.port),
        log_level=log_level if log_level in _UVICORN_LOG_LEVELS else "info",
    )


if __name__ == "__main__":
    main()
