"""Price simulator — a bounded random walk standing in for an upstream feed.

Learn: Runs as a long-lived task in the FastAPI lifespan, like any other
background worker. It only knows a publish callable with the dispatcher's
signature, publish(feed_id, value, timestamp), so any real market-data
client can replace it without touching the relay.

Each tick:
1. Pick a step size in [step_min, step_max]
2. Turn around at the bounds, and flip direction at random
3. Clamp into [min_price, max_price], round to cents, publish
"""

import asyncio
import random
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Awaitable, Callable, Optional

import structlog

from feedrelay.config import Settings

logger = structlog.get_logger()

CENT = Decimal("0.01")

Publisher = Callable[[int, Decimal, datetime], Awaitable[Any]]


class PriceSimulator:
    """Background task that walks one feed's price up and down.

    Usage:
        sim = PriceSimulator(dispatcher.publish, feed_id=6)
        asyncio.create_task(sim.run_loop())
    """

    def __init__(
        self,
        publish: Publisher,
        feed_id: int = 6,
        start_price: Decimal = Decimal("245.67"),
        min_price: Decimal = Decimal("197.89"),
        max_price: Decimal = Decimal("201.67"),
        interval: float = 0.5,
        step_min: Decimal = Decimal("0.01"),
        step_max: Decimal = Decimal("0.10"),
        flip_probability: float = 0.1,
        rng: Optional[random.Random] = None,
    ):
        self.publish = publish
        self.feed_id = feed_id
        self.price = start_price
        self.min_price = min_price
        self.max_price = max_price
        self.interval = interval
        self.step_min = step_min
        self.step_max = step_max
        self.flip_probability = flip_probability
        self.rng = rng or random.Random()
        self.direction = 1
        self._running = False

    @classmethod
    def from_settings(cls, publish: Publisher, settings: Settings) -> "PriceSimulator":
        return cls(
            publish,
            feed_id=settings.simulator_feed_id,
            start_price=settings.simulator_start_price,
            min_price=settings.simulator_min_price,
            max_price=settings.simulator_max_price,
            interval=settings.simulator_interval_seconds,
            step_min=settings.simulator_step_min,
            step_max=settings.simulator_step_max,
            flip_probability=settings.simulator_flip_probability,
        )

    def step(self) -> Decimal:
        """Advance the walk by one tick and return the new price."""
        fraction = Decimal(str(self.rng.random()))
        size = self.step_min + (self.step_max - self.step_min) * fraction

        if self.price >= self.max_price:
            self.direction = -1
        if self.price <= self.min_price:
            self.direction = 1
        if self.rng.random() < self.flip_probability:
            self.direction *= -1

        moved = self.price + self.direction * size
        clamped = max(self.min_price, min(self.max_price, moved))
        self.price = clamped.quantize(CENT, rounding=ROUND_HALF_UP)
        return self.price

    async def tick(self) -> None:
        """Compute one step and publish it."""
        price = self.step()
        await self.publish(self.feed_id, price, datetime.now(timezone.utc))

    async def run_loop(self) -> None:
        """Publish a new price every `interval` seconds until stopped."""
        self._running = True
        logger.info(
            "simulator.started",
            feed_id=self.feed_id,
            interval=self.interval,
            start_price=str(self.price),
        )

        while self._running:
            try:
                await self.tick()
            except Exception:
                logger.exception("simulator.publish_error", feed_id=self.feed_id)
            await asyncio.sleep(self.interval)

    def stop(self) -> None:
        """Signal the loop to stop after the current tick."""
        self._running = False
        logger.info("simulator.stopping", feed_id=self.feed_id)
