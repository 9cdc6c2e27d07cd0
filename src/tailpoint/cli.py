from __future__ import annotations

import logging
import sys
from typing import List, Optional

import uvicorn

from tailpoint.collector_app import create_app
from tailpoint.config import Settings, load_settings
from tailpoint.errors import ConfigError, FollowerError, OpenError
from tailpoint.follower import Follower
from tailpoint.logformat import compile_format
from tailpoint.metrics import MetricRegistry
from tailpoint.pipeline import missing_fields

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

EXIT_OK = 0
EXIT_RUNTIME = 1
EXIT_CONFIG = 2


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def run(settings: Settings) -> int:
    plan = compile_format(settings.format)
    metrics = MetricRegistry(settings.labels, namespace=settings.namespace)

    missing = missing_fields(plan)
    if missing:
        logger.info("Log format has no %s; those metrics will stay empty", ", ".join(missing))

    follower = Follower(
        settings.filename,
        poll_interval=settings.poll_interval,
        reopen_timeout=settings.reopen_timeout,
    ).start()
    app = create_app(settings, metrics, plan, follower)

    server = uvicorn.Server(uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        access_log=False,
    ))

    failed: List[FollowerError] = []

    def on_follower_error(err: FollowerError) -> None:
        logger.critical("Stopping: cannot continue reading %s: %s", settings.filename, err)
        failed.append(err)
        server.should_exit = True

    follower.on_error(on_follower_error)

    logger.info("Running HTTP server on address %s", settings.listen_address)
    try:
        server.run()
    except SystemExit as e:
        # uvicorn exits on its own when it cannot bind; its exit code varies by release
        if not e.code:
            raise
        logger.critical("HTTP server could not start on %s", settings.listen_address)
        return EXIT_RUNTIME
    finally:
        follower.stop(timeout=1.0)

    if failed:
        return EXIT_RUNTIME
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    try:
        settings = load_settings(argv)
    except ConfigError as e:
        print(f"tailpoint: configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    configure_logging(settings.log_level)
    try:
        return run(settings)
    except ConfigError as e:
        logger.critical("Configuration error: %s", e)
        return EXIT_CONFIG
    except OpenError as e:
        logger.critical("%s", e)
        return EXIT_RUNTIME


if __name__ == "__main__":
    sys.exit(main())
