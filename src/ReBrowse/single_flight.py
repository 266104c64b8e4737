"""In-flight request de-duplication and cooperative cancellation."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from typing import Callable, Generic, TypeVar

from ReBrowse.errors import FetchCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")

_POLL_SECONDS = 0.05


class CancelToken:
    """Signals that a caller no longer wants a result.

    A token created with a *parent* is also cancelled when the parent is.
    """

    def __init__(self, parent: CancelToken | None = None):
        self._event = threading.Event()
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or (self._parent is not None and self._parent.cancelled)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise FetchCancelled()


class SingleFlight(Generic[T]):
    """Run at most one call per key; concurrent callers share its outcome.

    The call runs on its own thread, so a cancelled waiter gets
    :class:`FetchCancelled` while the call itself finishes normally (and,
    for example, still completes its cache write).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: dict[str, concurrent.futures.Future] = {}

    def do(self, key: str, fn: Callable[[], T], cancel: CancelToken | None = None) -> T:
        if cancel is not None:
            cancel.raise_if_cancelled()

        with self._lock:
            future = self._calls.get(key)
            owner = future is None
            if owner:
                future = concurrent.futures.Future()
                self._calls[key] = future

        if owner:
            thread = threading.Thread(
                target=self._run, args=(key, fn, future), name=f"flight:{key}", daemon=True
            )
            thread.start()
        else:
            logger.debug("Joining in-flight request %s", key)

        return self._wait(future, cancel)

    def _run(self, key: str, fn: Callable[[], T], future: concurrent.futures.Future) -> None:
        try:
            result = fn()
        except BaseException as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)
        finally:
            with self._lock:
                if self._calls.get(key) is future:
                    del self._calls[key]

    @staticmethod
    def _wait(future: concurrent.futures.Future, cancel: CancelToken | None) -> T:
        if cancel is None:
            return future.result()
        while True:
            try:
                return future.result(timeout=_POLL_SECONDS)
            except concurrent.futures.TimeoutError:
                if cancel.cancelled:
                    raise FetchCancelled() from None
