# utils/progress.py

import logging
import time
from typing import Optional

from tqdm import tqdm


class ProgressTracker:
    """
    Periodic progress for long batch passes.

    Drives a tqdm bar and, every `every` items or `interval_seconds`
    seconds (whichever comes first), logs processed count, found count,
    rate and ETA.
    """

    def __init__(self, total: int, desc: str,
                 logger: Optional[logging.Logger] = None,
                 every: int = 50,
                 interval_seconds: float = 5.0,
                 show_bar: bool = True,
                 clock=time.monotonic):
        self.total = total
        self.desc = desc
        self.logger = logger or logging.getLogger(__name__)
        self.every = max(1, every)
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.processed = 0
        self.found = 0
        self.start_time = clock()
        self._last_report = self.start_time
        self._bar = tqdm(total=total, desc=desc, disable=not show_bar, leave=False)

    def update(self, n: int = 1, found: int = 0):
        self.processed += n
        self.found += found
        self._bar.update(n)
        if found:
            self._bar.set_postfix(found=self.found)

        now = self.clock()
        if self.processed % self.every == 0 or now - self._last_report >= self.interval_seconds:
            self.report(now)

    @property
    def elapsed(self) -> float:
        return self.clock() - self.start_time

    def eta_seconds(self, now: Optional[float] = None) -> Optional[float]:
        now = self.clock() if now is None else now
        elapsed = now - self.start_time
        if self.processed == 0 or elapsed <= 0:
            return None
        rate = self.processed / elapsed
        return max(0, self.total - self.processed) / rate

    def report(self, now: Optional[float] = None):
        now = self.clock() if now is None else now
        elapsed = now - self.start_time
        rate = self.processed / elapsed if elapsed > 0 else 0.0
        eta = self.eta_seconds(now)
        percent = (self.processed / self.total * 100) if self.total else 100.0
        self.logger.info(
            "%s: %d/%d (%.0f%%) | found %d | %.1f/sec | elapsed %.0fs | ETA %s",
            self.desc, self.processed, self.total, percent, self.found, rate, elapsed,
            f"{eta:.0f}s" if eta is not None else "n/a"
        )
        self._last_report = now

    def close(self):
        self._bar.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
