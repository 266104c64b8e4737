"""Reachability tracking for the supported providers.

Each provider moves through ``unknown -> reachable <-> unreachable``. State is
fed both by explicit probes and by the outcome of real provider calls, and
listeners are notified only when a provider's state actually changes.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from typing import Callable

import requests

from ReBrowse.models import (
    ConnectivityChange,
    ConnectivityReport,
    ProviderStatus,
    ProviderType,
    ReachabilityState,
)

logger = logging.getLogger(__name__)

PROBE_URLS: dict[ProviderType, str] = {
    ProviderType.GITHUB: "https://api.github.com/zen",
    ProviderType.AZURE: "https://dev.azure.com",
}

Listener = Callable[[ConnectivityChange], None]


class ConnectivityMonitor:
    """Tracks whether each provider is reachable.

    Args:
        ttl_seconds: How long ``get_status`` may serve the last report.
        timeout_seconds: Default probe timeout.
        session: ``requests.Session`` used for probes.
        clock: Time source, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 5,
        timeout_seconds: float = 5,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
        probe_urls: dict[ProviderType, str] | None = None,
    ):
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.session.headers["User-Agent"] = "ReBrowse/1.0"
        self.clock = clock
        self.probe_urls = dict(probe_urls or PROBE_URLS)

        self._lock = threading.Lock()
        self._statuses = {p: ProviderStatus(provider=p) for p in ProviderType}
        self._listeners: list[Listener] = []
        self._last_check: float | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # -- queries -----------------------------------------------------------

    def is_online(self, provider: ProviderType | None = None) -> bool:
        """Unknown counts as online until a probe or call proves otherwise."""
        with self._lock:
            if provider is not None:
                return self._statuses[provider].state != ReachabilityState.UNREACHABLE
            return self._aggregate_online()

    def _aggregate_online(self) -> bool:
        return any(
            s.state != ReachabilityState.UNREACHABLE for s in self._statuses.values()
        )

    def get_status(self) -> ConnectivityReport:
        """Return the last report while it is fresh, otherwise probe."""
        with self._lock:
            last = self._last_check
            if last is not None and self.clock() - last < self.ttl_seconds:
                return self._report(age=self.clock() - last)
        return self.check()

    def check(
        self, provider: ProviderType | None = None, timeout_ms: int | None = None
    ) -> ConnectivityReport:
        """Probe one or all providers now."""
        timeout = timeout_ms / 1000 if timeout_ms else self.timeout_seconds
        targets = [provider] if provider is not None else list(ProviderType)
        for target in targets:
            self._probe(target, timeout)
        with self._lock:
            self._last_check = self.clock()
            return self._report(age=0.0)

    def _probe(self, provider: ProviderType, timeout: float) -> None:
        url = self.probe_urls[provider]
        started = time.monotonic()
        try:
            resp = self.session.get(url, timeout=timeout, allow_redirects=False)
        except requests.Timeout:
            self._apply(provider, ReachabilityState.UNREACHABLE, "probe timed out", error="Timed out")
            return
        except requests.RequestException:
            self._apply(
                provider, ReachabilityState.UNREACHABLE, "probe failed", error="Connection failed"
            )
            return

        elapsed_ms = (time.monotonic() - started) * 1000
        if resp.status_code < 500:
            self._apply(provider, ReachabilityState.REACHABLE, "probe succeeded", response_time_ms=elapsed_ms)
        else:
            self._apply(
                provider,
                ReachabilityState.UNREACHABLE,
                "probe failed",
                error=f"HTTP {resp.status_code}",
                response_time_ms=elapsed_ms,
            )

    # -- updates from provider calls ---------------------------------------

    def mark_unreachable(self, provider: ProviderType, reason: str = "request failed") -> None:
        self._apply(provider, ReachabilityState.UNREACHABLE, reason, error=reason)

    def mark_reachable(self, provider: ProviderType, reason: str = "request succeeded") -> None:
        self._apply(provider, ReachabilityState.REACHABLE, reason)

    def _apply(
        self,
        provider: ProviderType,
        state: ReachabilityState,
        reason: str,
        error: str | None = None,
        response_time_ms: float | None = None,
    ) -> None:
        now = self.clock()
        with self._lock:
            status = self._statuses[provider]
            previous = status.state
            was_online = self._aggregate_online()

            status.state = state
            status.checked_at = now
            status.error = error if state == ReachabilityState.UNREACHABLE else None
            if response_time_ms is not None:
                status.response_time_ms = response_time_ms
            if state == ReachabilityState.REACHABLE:
                status.last_successful_connection = now

            if previous == state:
                return
            change = ConnectivityChange(
                provider=provider,
                previous=previous,
                current=state,
                was_online=was_online,
                is_online=self._aggregate_online(),
                reason=reason,
                changed_at=now,
            )
            listeners = list(self._listeners)

        logger.info("%s is now %s (%s)", provider.value, state.value, reason)
        for listener in listeners:
            try:
                listener(change)
            except Exception:
                logger.exception("Connectivity listener failed")

    # -- subscriptions -----------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # -- background probing ------------------------------------------------

    def start(self, interval_seconds: float = 30) -> None:
        """Probe all providers every *interval_seconds* on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, args=(interval_seconds,), name="rebrowse-connectivity", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.timeout_seconds + 1)
            self._thread = None

    def _run(self, interval_seconds: float) -> None:
        while not self._stop.is_set():
            try:
                self.check()
            except Exception:
                logger.exception("Background connectivity probe failed")
            self._stop.wait(interval_seconds)

    def _report(self, age: float) -> ConnectivityReport:
        return ConnectivityReport(
            is_online=self._aggregate_online(),
            providers=[dataclasses.replace(s) for s in self._statuses.values()],
            checked_at=self._last_check if self._last_check is not None else self.clock(),
            age_seconds=max(0.0, age),
        )
