import os
import threading
from concurrent.futures import ThreadPoolExecutor

MIN_POOL_SIZE = 10
THREAD_NAME_PREFIX = 'SFTP-Subsystem'


def compute_pool_size(cpu_count=None):
    """ max(10, 2 x processors); an unknown processor count counts as one. """
    if cpu_count is None:
        cpu_count = os.cpu_count()
    return max(MIN_POOL_SIZE, 2 * (cpu_count or 1))


class ConcurrencyPool:
    """
    The single bounded worker pool shared by every SFTP channel of every session.
    Work submitted while all workers are busy waits in the executor queue; the
    pool never grows past its size and is never resized.
    """

    def __init__(self, logger, size=None):
        self.logger = logger
        self.size = max(MIN_POOL_SIZE, size) if size is not None else compute_pool_size()
        self._executor = ThreadPoolExecutor(max_workers=self.size, thread_name_prefix=THREAD_NAME_PREFIX)
        self._lock = threading.Lock()
        self.in_flight = 0
        self.peak = 0
        self.completed = 0
        self.logger.info(f"{self.__class__.__name__}: Thread pool size: {self.size}")

    def _tracked(self, fn, args, kwargs):
        with self._lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            return fn(*args, **kwargs)
        finally:
            with self._lock:
                self.in_flight -= 1
                self.completed += 1

    def submit(self, fn, *args, **kwargs):
        return self._executor.submit(self._tracked, fn, args, kwargs)

    def run(self, fn, *args, **kwargs):
        """ Execute fn on a worker and wait for its result, re-raising its exception. """
        return self.submit(fn, *args, **kwargs).result()

    def shutdown(self, wait=True):
        self.logger.info(f"{self.__class__.__name__}: Shutting down worker pool (wait={wait})")
        self._executor.shutdown(wait=wait, cancel_futures=True)
