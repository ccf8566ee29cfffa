"""Client-facing progress loop.

The relay starts from the progress persisted on the dish, so a reloaded page
resumes where it left off instead of dropping back to zero. The displayed
value only ever moves forward and approaches the latest reported value in
small steps instead of jumping.
"""
import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import asdict, dataclass

from app.config import settings
from app.utils.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)

STEP_DELAY_SECONDS = 0.06
STEP_DIVISOR = 5


@dataclass
class ProgressFrame:
    status: str
    progress: int
    target: int
    transient_error: bool = False

    def as_dict(self) -> dict:
        return asdict(self)


class ProgressRelay:
    def __init__(
        self,
        poll: Callable[[], Awaitable[dict]],
        status: str,
        progress: int = 0,
        interval: float | None = None,
        step_delay: float = STEP_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.poll = poll
        self.status = status
        self.display = max(0, min(100, progress))
        self.target = self.display
        self.transient_error = False
        self.interval = settings.poll_interval_seconds if interval is None else interval
        self.step_delay = step_delay
        self.sleep = sleep

    def frame(self) -> ProgressFrame:
        return ProgressFrame(self.status, self.display, self.target, self.transient_error)

    def observe(self, state: dict) -> None:
        self.transient_error = bool(state.get("transient_error"))
        self.status = state.get("status", self.status)
        reported = state.get("progress")
        if isinstance(reported, int):
            self.target = max(self.target, min(100, reported))
        if self.status == "succeeded":
            self.target = self.display = 100

    def advance(self) -> int:
        diff = self.target - self.display
        if diff > 0:
            step = max(1, round(diff / STEP_DIVISOR))
            self.display = min(self.target, self.display + step)
        return self.display

    async def frames(self) -> AsyncIterator[ProgressFrame]:
        yield self.frame()
        while self.status == "processing":
            try:
                self.observe(await self.poll())
            except ExternalServiceError as e:
                logger.warning("Progress poll failed, retrying: %s", e.message)
                self.transient_error = True

            while self.display < self.target:
                self.advance()
                yield self.frame()
                await self.sleep(self.step_delay)

            if self.status != "processing":
                yield self.frame()
                return
            await self.sleep(self.interval)
