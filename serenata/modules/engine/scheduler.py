"""
Sequence Engine: runs every pipeline stage on its own fixed-interval loop.

Stages share nothing but the store. Each loop awaits its tick before sleeping,
so a stage never overlaps itself; different stages run concurrently.
"""

import asyncio
import logging
from typing import Protocol

from serenata.config import Settings

logger = logging.getLogger(__name__)


class Stage(Protocol):
    name: str

    async def tick(self) -> int:
        ...


class SequenceEngine:
    def __init__(self, settings: Settings, stages: list[Stage]):
        self.settings = settings
        self.stages = stages
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._loop(stage), name=f"stage:{stage.name}")
            for stage in self.stages
        ]
        logger.info(
            "Sequence engine started: %d stages every %.0fs",
            len(self.stages), self.settings.tick_interval_seconds,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Sequence engine stopped")

    async def _loop(self, stage: Stage) -> None:
        while True:
            await self._tick(stage)
            await asyncio.sleep(self.settings.tick_interval_seconds)

    async def _tick(self, stage: Stage) -> int:
        try:
            return await stage.tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error in stage %s", stage.name)
            return 0

    async def run_once(self) -> dict[str, int]:
        """Run every stage once, in order. Used by the admin endpoint and tests."""
        results = {}
        for stage in self.stages:
            results[stage.name] = await self._tick(stage)
        return results
