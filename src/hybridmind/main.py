"""
HybridMind entry point.

This file handles startup concerns (arg-parsing, logging) and launches the appropriate interface
(API server, or API server plus interactive CLI).
"""

import argparse
import logging
import sys

from hybridmind.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _init_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stdout,
    )
    # Request-level httpx logging is noise next to the dispatcher's own lines
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: list[str] | None = None) -> None:
    """
    Main entry point for the HybridMind application.

    This function sets up the command-line interface, initializes logging, and starts the
    application in either API or CLI mode.
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Run the HybridMind orchestration service")
    parser.add_argument(
        "--mode",
        choices=["api", "cli"],
        type=str.lower,
        default="api",
        help="Launch the REST API, or the API plus an interactive CLI (default: api)",
    )
    parser.add_argument(
        "--tier",
        choices=["free", "pro"],
        type=str.lower,
        default="free",
        help="Tier the CLI sends requests as (default: %(default)s)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.API_PORT,
        help="Port the API listens on (default from env: %(default)s)",
    )
    parser.add_argument(
        "--provider",
        default=settings.PROVIDER_OVERRIDE,
        help="Route every model through this provider adapter, e.g. 'echo' to run offline",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        type=str.lower,
        default=settings.LOG_LEVEL,
        help="Logging level (default from env: %(default)s)",
    )
    args = parser.parse_args(argv)

    # Command-line arguments win over the environment
    settings.LOG_LEVEL = args.log_level
    settings.API_PORT = args.port
    settings.PROVIDER_OVERRIDE = args.provider

    _init_logging(settings.LOG_LEVEL)

    logger.info("Starting HybridMind [%s mode]", args.mode)
    logger.debug("Settings: %s", settings.model_dump(exclude={"OPENROUTER_API_KEY"}))

    # Imported late: the API module builds its engine from the settings above
    from hybridmind.api.app import run_api  # pylint: disable=import-outside-toplevel

    if args.mode == "api":
        run_api(host="0.0.0.0", port=settings.API_PORT, reload=settings.DEBUG)
        return

    import threading  # pylint: disable=import-outside-toplevel

    # Start API server in a separate thread
    api_thread = threading.Thread(
        target=run_api,
        kwargs={
            "host": "0.0.0.0",
            "port": settings.API_PORT,
            "reload": False,  # Reload doesn't work well with threading
            "log_level": "warning",
        },
        daemon=True,
    )
    api_thread.start()

    # Lazy import to avoid CLI dependencies if not needed
    from hybridmind.client.cli import run_cli  # pylint: disable=import-outside-toplevel

    run_cli(tier=args.tier)


if __name__ == "__main__":
    main()
