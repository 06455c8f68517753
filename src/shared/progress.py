import logging
import threading
import time

logger = logging.getLogger(__name__)


class ConsoleProgress:
    """Progress reporter for step-wise operations.

    Logs ``done/total``, throughput and ETA at most every ``log_every``
    steps (and always on the last one). Safe to call from worker tasks and
    threads.
    """

    def __init__(
        self,
        total: int,
        label: str = 'Progress',
        log_every: int = 100,
    ) -> None:
        self.total = max(1, int(total))
        self.done = 0
        self.start = time.monotonic()
        self.label = label
        self.log_every = max(1, int(log_every))
        self._lock = threading.Lock()

    def _format_eta(self, remaining: float) -> str:
        if remaining is None or remaining == float('inf'):
            return '--:--'
        m, s = divmod(int(remaining), 60)
        h, m = divmod(m, 60)
        if h > 0:
            return f'{h:02d}:{m:02d}:{s:02d}'
        return f'{m:02d}:{s:02d}'

    def render(self) -> str:
        elapsed = max(1e-6, time.monotonic() - self.start)
        rps = self.done / elapsed
        remaining = (self.total - self.done) / rps if rps > 0 else float('inf')
        percent = 100.0 * self.done / self.total
        return (
            f'{self.label}: {self.done}/{self.total} ({percent:.1f}%) | {rps:4.1f}/s | ETA'
            f' {self._format_eta(remaining)}'
        )

    def __call__(self, done: int, total: int) -> None:
        """Progress callback signature used by the batch executor."""
        with self._lock:
            self.total = max(1, int(total))
            self.done = min(self.total, int(done))
            should_log = self.done % self.log_every == 0 or self.done == self.total
        if should_log:
            logger.info('%s', self.render())

    def step(self, n: int = 1) -> None:
        with self._lock:
            self.done = min(self.total, self.done + n)
            should_log = self.done % self.log_every == 0 or self.done == self.total
        if should_log:
            logger.info('%s', self.render())
