"""subgate — Main entry point."""

import asyncio
import logging
import os

import uvicorn

from .api import create_app
from .config import load_settings
from .service import SubgateService

_log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger("subgate")


def setup_logging(log_file: str, debug: bool = False):
    log_file = os.path.expanduser(log_file)
    os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format=_log_format,
        handlers=[
            logging.StreamHandler(),                          # stderr (console)
            logging.FileHandler(log_file, encoding="utf-8"),  # ~/subgate.log
        ],
    )
    if debug:
        logging.getLogger("subgate").setLevel(logging.DEBUG)


async def run(debug: bool = False):
    """Main run loop: core services plus the HTTP API."""
    settings = load_settings()
    setup_logging(settings.log_file, debug=debug or settings.debug)

    service = SubgateService(settings)
    app = create_app(service)
    server = uvicorn.Server(uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,  # keep our handlers
        log_level="debug" if (debug or settings.debug) else "info",
    ))

    try:
        await service.start()
        logger.info(f"subgate is running on http://{settings.host}:{settings.port}. Press Ctrl+C to stop.")
        await server.serve()
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.critical(f"Fatal error: {type(e).__name__}: {e}", exc_info=True)
    finally:
        await service.stop()


def main():
    """Entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
