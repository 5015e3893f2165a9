"""Main application entry point for the Nudge reminder server."""

import asyncio
import sys

import uvicorn

from config.config import load_config
from nudge.api.server import create_app
from nudge.app.engine_app import EngineApp
from nudge.utils.logger import log_error, log_info, setup_logging


async def main():
    """Load configuration and serve the API until interrupted."""

    print("=" * 60)
    print("  NUDGE - Reminder Lifecycle Engine")
    print("  Natural language reminders with live and push delivery")
    print("=" * 60)
    print()

    try:
        config = load_config()
    except (FileNotFoundError, ValueError) as e:
        log_error(f"Failed to load configuration: {e}")
        print(f"Error: {e}")
        return

    setup_logging(config.logging.level, config.logging.show_timestamps)

    app = create_app(EngineApp(config=config))
    server = uvicorn.Server(uvicorn.Config(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    ))

    log_info(f"Serving on http://{config.server.host}:{config.server.port}")
    await server.serve()
    log_info("Server stopped")


def run() -> None:
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    run()
