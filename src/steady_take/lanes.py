"""Serial execution lanes used to isolate session, analysis and completion work."""
from __future__ import annotations

import concurrent.futures
import logging
import threading
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SerialLane:
    """Run submitted callables one at a time, in submission order.

    Each lane owns a single worker thread so state touched only from inside the
    lane needs no further locking.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._worker_ident: int | None = None
        self._closed = False
        self._lock = threading.Lock()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=f"lane-{name}",
            initializer=self._bind_worker,
        )

    def _bind_worker(self) -> None:
        self._worker_ident = threading.get_ident()

    @property
    def closed(self) -> bool:
        return self._closed

    def is_current(self) -> bool:
        """Return ``True`` when called from this lane's worker thread."""

        return self._worker_ident is not None and threading.get_ident() == self._worker_ident

    def submit(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> "concurrent.futures.Future[T]":
        with self._lock:
            if not self._closed:
                return self._executor.submit(fn, *args, **kwargs)
        logger.debug("Lane %s closed; dropping %r", self.name, fn)
        future: concurrent.futures.Future[T] = concurrent.futures.Future()
        future.cancel()
        return future

    def flush(self, timeout: float | None = None) -> None:
        """Block until everything submitted before this call has run."""

        if self.is_current():
            raise RuntimeError(f"Cannot flush lane {self.name!r} from inside itself")
        future = self.submit(lambda: None)
        if future.cancelled():
            return
        future.result(timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._executor.shutdown(wait=wait and not self.is_current())


__all__ = ["SerialLane"]
