"""
querycache demo entry point.

Watches a JSON endpoint through a cached, circuit-broken query resource and
logs every value change:

    python main.py https://api.github.com/zen 30
"""

import asyncio
import sys
from datetime import timedelta

from loguru import logger

from querycache.services import QueryClient, RequestDescriptor


async def main(url: str, refresh_seconds: float) -> None:
    """Main function"""
    logger.info(f"Watching {url} every {refresh_seconds}s...")

    async with QueryClient() as client:
        query = client.query(
            lambda: RequestDescriptor(url=url),
            refresh=timedelta(seconds=refresh_seconds),
            keep_previous=True,
            retry=True,
            circuit_breaker=True,
            on_error=lambda e: logger.error(f"Fetch failed: {e}"),
        )
        query.value.subscribe(lambda value: logger.info(f"Value: {str(value)[:200]}"))
        query.status.subscribe(lambda status: logger.debug(f"Status: {status.value}"))

        try:
            # Keep running
            logger.info("Running. Press Ctrl+C to stop.")
            while True:
                await asyncio.sleep(60)
                logger.info(f"Health: {client.get_health_status()}")
        except asyncio.CancelledError:
            logger.info("Shutting down...")

    logger.info("Stopped")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("usage: python main.py URL [REFRESH_SECONDS]")
        sys.exit(2)
    try:
        asyncio.run(main(sys.argv[1], float(sys.argv[2]) if len(sys.argv) > 2 else 60.0))
    except KeyboardInterrupt:
        pass
