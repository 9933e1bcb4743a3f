"""
Timer Module

Measures backend latency: time to first byte and total time.
"""

import time
from typing import Optional


class Timer:
    """
    High-precision Timer

    Backends mark the first byte when response headers arrive (buffered)
    or when the first stream read completes (streaming). The router reads
    ``elapsed_ms`` to feed its latency statistics.

    Example:
        timer = Timer().start()
        # ... send request ...
        timer.mark_first_byte()
        # ... consume body ...
        timer.stop()
    """

    def __init__(self):
        self._start_time: Optional[float] = None
        self._first_byte_time: Optional[float] = None
        self._end_time: Optional[float] = None

    def start(self) -> "Timer":
        self._start_time = time.perf_counter()
        self._first_byte_time = None
        self._end_time = None
        return self

    def mark_first_byte(self) -> "Timer":
        """Record the first byte; later calls are ignored."""
        if self._first_byte_time is None:
            self._first_byte_time = time.perf_counter()
        return self

    def stop(self) -> "Timer":
        self._end_time = time.perf_counter()
        if self._first_byte_time is None:
            self._first_byte_time = self._end_time
        return self

    @property
    def first_byte_delay_ms(self) -> Optional[int]:
        if self._start_time is None or self._first_byte_time is None:
            return None
        return int((self._first_byte_time - self._start_time) * 1000)

    @property
    def total_time_ms(self) -> Optional[int]:
        if self._start_time is None or self._end_time is None:
            return None
        return int((self._end_time - self._start_time) * 1000)

    @property
    def elapsed_ms(self) -> float:
        """
        Milliseconds since start, up to stop if stopped

        Returns:
            float: Elapsed time, 0.0 if never started
        """
        if self._start_time is None:
            return 0.0
        end = self._end_time if self._end_time is not None else time.perf_counter()
        return (end - self._start_time) * 1000
