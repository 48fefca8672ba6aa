from collections import deque
from datetime import timedelta
from typing import Optional
import logging
import sys

from tqdm import tqdm

log = logging.getLogger(__name__)


class ProgressState:
    """
    Counters behind the live ETA. Only the aggregator mutates it.
    ``window`` bounds the rolling duration sample. With no window the average
    runs over every completion as a sum and a count, and no sample is kept.
    """

    def __init__(self, total: int, window: Optional[int] = None):
        self.total = max(0, int(total))
        self.processed = 0
        self.rolling_durations = deque(maxlen=window if window and window > 0 else 0)
        self._sum = 0.0
        self._count = 0

    def record(self, duration: float):
        self.processed += 1
        d = max(0.0, float(duration))
        if not self.rolling_durations.maxlen:
            self._sum += d
            self._count += 1
            return
        if len(self.rolling_durations) == self.rolling_durations.maxlen:
            self._sum -= self.rolling_durations[0]
        self.rolling_durations.append(d)
        self._sum += d
        self._count = len(self.rolling_durations)

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.processed)

    @property
    def percent(self) -> float:
        if not self.total:
            return 100.0
        return min(100.0, 100.0 * self.processed / self.total)

    @property
    def average(self) -> Optional[float]:
        if not self._count:
            return None
        return self._sum / self._count

    def eta(self) -> Optional[timedelta]:
        """Average observed per-domain duration times the remaining count."""
        avg = self.average
        if avg is None:
            return None
        return timedelta(seconds=round(avg * self.remaining))

    def due(self, every: int) -> bool:
        return every > 0 and self.processed > 0 and self.processed % every == 0

    def line(self) -> str:
        msg = (f"Progress: {self.processed}/{self.total} domains processed "
               f"({self.percent:.2f}%) - {self.remaining} remaining")
        eta = self.eta()
        if eta is not None:
            msg += f" - ETA: {eta}"
        return msg


class ProgressMiddleware:
    """
    Progress bar pinned to the bottom of stderr, plus periodic progress lines
    through the logger. Console log output goes through tqdm.write (see
    log_middleware) so the bar stays anchored.
    """

    def __init__(self, total=None, desc="Resolving", unit="domain", disable=False, every=10, window=None):
        self.state = ProgressState(total or 0, window=window)
        self.desc = desc
        self.unit = unit
        self.disable = disable
        self.every = every
        self._bar = None
        self._stderr = sys.stderr

    def start(self):
        """Create the bar immediately so any writes can go above it."""
        if self.disable or self._bar is not None:
            return
        self._bar = tqdm(
            total=self.state.total,
            desc=self.desc,
            unit=self.unit,
            leave=True,
            position=0,
            dynamic_ncols=True,
            file=self._stderr,
            mininterval=0.1,
        )

    def advance(self, duration: float):
        if self._bar is None:
            self.start()
        self.state.record(duration)
        if self._bar is not None:
            self._bar.update(1)
        if self.state.due(self.every):
            log.info(self.state.line())

    def close(self):
        if self.state.processed and not self.state.due(self.every):
            log.info(self.state.line())
        if self._bar is not None:
            self._bar.close()
            self._bar = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.close()
        return False
