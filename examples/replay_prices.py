"""
Replay a fixed list of prices through the relay instead of the simulator.

Shows that any publisher with the signature publish(feed_id, value,
timestamp) can drive the relay. Start it, then in another terminal:

    feedrelay watch -f 6 -f 7
"""

import asyncio
import itertools
from datetime import datetime, timezone
from decimal import Decimal

import uvicorn

from feedrelay.config import Settings
from feedrelay.main import create_app

PRICES = {
    6: ["200.00", "200.05", "199.98", "200.12", "200.07"],
    7: ["1.0841", "1.0843", "1.0839", "1.0840"],
}


async def replay(publish, interval: float = 1.0) -> None:
    """Cycle through PRICES forever, one tick per interval."""
    feeds = {feed_id: itertools.cycle(values) for feed_id, values in PRICES.items()}
    while True:
        now = datetime.now(timezone.utc)
        for feed_id, values in feeds.items():
            await publish(feed_id, Decimal(next(values)), now)
        await asyncio.sleep(interval)


async def main() -> None:
    app = create_app(Settings(simulator_enabled=False))
    server = uvicorn.Server(uvicorn.Config(app, host="127.0.0.1", port=8080))

    publisher = asyncio.create_task(replay(app.state.dispatcher.publish))
    try:
        await server.serve()
    finally:
        publisher.cancel()


if __name__ == "__main__":
    asyncio.run(main())
