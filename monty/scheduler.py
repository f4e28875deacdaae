"""Probe scheduler: per-endpoint timers, a coordinator loop and a worker pool."""

import heapq
import itertools
import logging
import queue
import sqlite3
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Event, RLock, Thread

from .checkers import ERROR_NETWORK, check_endpoint
from .database import (
    DatabaseError,
    cleanup_old_checks,
    insert_check,
    list_endpoints,
    upsert_domain_status,
    upsert_ssl_status,
)
from .endpoints import EVENT_CREATED, EVENT_DELETED, EVENT_UPDATED
from .models import CheckOutcome, Endpoint

logger = logging.getLogger(__name__)

# Run retention cleanup this often (seconds)
CLEANUP_INTERVAL_SECONDS = 3600

# Spacing between first probes of endpoints loaded at start (seconds)
STARTUP_STAGGER_SECONDS = 2

# Longest the coordinator sleeps without re-checking its state (seconds)
MAX_WAIT_SECONDS = 1.0


@dataclass
class _Entry:
    """Coordinator-side state of one registered endpoint."""

    snapshot: Endpoint
    token: int = 0
    in_flight: bool = False
    skipped: bool = False


class Scheduler:
    """Fires a probe for each endpoint at its own interval.

    Timers live in one min-heap ordered by due time. Rearming or cancelling
    an endpoint bumps its token, which invalidates older heap entries in
    place. Only the coordinator (run_pending, driven by the loop thread)
    pops the heap and flips in-flight flags; worker threads run checkers
    and hand completions back through a queue.

    At most one probe per endpoint is in flight. A firing that finds the
    previous probe still running is skipped, and the timer is rearmed from
    that probe's completion time.

    Example:
        scheduler = Scheduler(db_conn, workers=8)
        store = EndpointStore(db_conn, on_change=scheduler.handle_change)
        scheduler.start()
        # ... later ...
        scheduler.stop()
    """

    def __init__(
        self,
        db_conn: sqlite3.Connection,
        checker: Callable[[Endpoint], CheckOutcome] = check_endpoint,
        workers: int = 8,
        discovery_interval: int = 60,
        retention_days: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the scheduler.

        Args:
            db_conn: Database connection for reading endpoints and storing outcomes.
            checker: Function probing one endpoint snapshot.
            workers: Number of probe worker threads.
            discovery_interval: Seconds between reconciliations against the database.
            retention_days: Age after which outcomes are deleted.
            clock: Monotonic time source in seconds.
        """
        self._db_conn = db_conn
        self._checker = checker
        self._workers = workers
        self._discovery_interval = discovery_interval
        self._retention_days = retention_days
        self._clock = clock

        self._lock = RLock()
        self._heap: list[tuple[float, int, str, int]] = []
        self._entries: dict[str, _Entry] = {}
        self._removed: set[str] = set()
        self._sequence = itertools.count()
        self._tokens = itertools.count(1)
        self._completions: queue.Queue[tuple[str, float, CheckOutcome]] = queue.Queue()

        self._wakeup = Event()
        self._stop_event = Event()
        self._thread: Thread | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._next_reconcile = 0.0
        self._next_cleanup = 0.0

        self.skipped_count = 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Load endpoints from the database and start the coordinator loop."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Scheduler already running")
            return

        self._stop_event.clear()
        now = self._clock()
        self._reconcile_from_store(stagger=STARTUP_STAGGER_SECONDS)
        self._next_reconcile = now + self._discovery_interval
        self._next_cleanup = now + CLEANUP_INTERVAL_SECONDS

        self._thread = Thread(target=self._run_loop, daemon=True, name="scheduler-loop")
        self._thread.start()
        logger.info("Scheduler started with %d endpoints and %d workers", len(self._entries), self._workers)

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the coordinator loop and the worker pool.

        In-flight probes are not interrupted; their outcomes are dropped.

        Args:
            timeout: Maximum seconds to wait for the loop to stop.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.info("Stopping scheduler...")
            self._stop_event.set()
            self._wakeup.set()
            self._thread.join(timeout=timeout)

            if self._thread.is_alive():
                logger.warning("Scheduler thread did not stop within timeout")
            else:
                logger.info("Scheduler stopped")

        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def is_running(self) -> bool:
        """Check if the coordinator loop is currently running."""
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def handle_change(self, event: str, endpoint: Endpoint) -> None:
        """Apply an endpoint store change notification."""
        if event == EVENT_CREATED:
            self.add(endpoint)
        elif event == EVENT_UPDATED:
            self.update(endpoint)
        elif event == EVENT_DELETED:
            self.remove(endpoint.id)
        else:
            logger.warning("Ignoring unknown endpoint event '%s' for %s", event, endpoint.id)

    def add(self, endpoint: Endpoint, delay: float = 0.0) -> None:
        """Register an endpoint; its first probe is due after delay seconds."""
        with self._lock:
            if endpoint.id in self._entries:
                self.update(endpoint)
                return
            self._removed.discard(endpoint.id)
            self._entries[endpoint.id] = _Entry(snapshot=endpoint)
            self._arm(endpoint.id, self._clock() + delay)
        logger.debug("Registered endpoint %s (%s every %ds)", endpoint.id, endpoint.check_type, endpoint.interval)

    def update(self, endpoint: Endpoint) -> None:
        """Replace an endpoint's snapshot.

        The timer is rearmed one interval from now only when the interval or
        check type changed. A probe already in flight keeps its old snapshot.
        """
        with self._lock:
            entry = self._entries.get(endpoint.id)
            if entry is None:
                self.add(endpoint)
                return
            self._apply_update(entry, endpoint, self._clock())

    def remove(self, endpoint_id: str) -> None:
        """Deregister an endpoint.

        Its timer is cancelled and the outcome of a probe still in flight is
        discarded. Returns only once no further outcome for the id can be stored.
        """
        with self._lock:
            self._removed.add(endpoint_id)
            if self._entries.pop(endpoint_id, None) is not None:
                logger.debug("Deregistered endpoint %s", endpoint_id)

    def reconcile(self, endpoints: Iterable[Endpoint], stagger: float = 0.0) -> None:
        """Make the registered set match the given endpoints.

        New endpoints are armed (spaced by stagger seconds, never beyond their
        own interval), changed ones updated and missing ones removed.
        """
        with self._lock:
            now = self._clock()
            listed: set[str] = set()
            seen: set[str] = set()
            new_count = 0

            for endpoint in endpoints:
                listed.add(endpoint.id)
                if endpoint.id in self._removed:
                    continue
                seen.add(endpoint.id)
                entry = self._entries.get(endpoint.id)
                if entry is None:
                    self._entries[endpoint.id] = _Entry(snapshot=endpoint)
                    self._arm(endpoint.id, now + min(new_count * stagger, endpoint.interval))
                    new_count += 1
                elif entry.snapshot != endpoint:
                    self._apply_update(entry, endpoint, now)

            for endpoint_id in [eid for eid in self._entries if eid not in seen]:
                del self._entries[endpoint_id]
                logger.debug("Endpoint %s no longer configured, deregistered", endpoint_id)

            # A removal only needs remembering while its rows are still listed.
            self._removed &= listed

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def endpoint_ids(self) -> set[str]:
        with self._lock:
            return set(self._entries)

    def is_in_flight(self, endpoint_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(endpoint_id)
            return entry is not None and entry.in_flight

    def next_due(self, endpoint_id: str) -> float | None:
        """Get the time the endpoint's timer fires, or None if it has no armed timer."""
        with self._lock:
            entry = self._entries.get(endpoint_id)
            if entry is None:
                return None
            for due, _, eid, token in self._heap:
                if eid == endpoint_id and token == entry.token:
                    return due
            return None

    # -------------------------------------------------------------------------
    # Coordinator
    # -------------------------------------------------------------------------

    def run_pending(self, now: float | None = None) -> float:
        """Run one coordinator pass.

        Records finished probes in completion order, then dispatches every
        endpoint whose timer is due.

        Args:
            now: Current clock value, defaults to the scheduler clock.

        Returns:
            Seconds until the next timer is due (MAX_WAIT_SECONDS if none).
        """
        self._drain_completions()

        if now is None:
            now = self._clock()

        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                _, _, endpoint_id, token = heapq.heappop(self._heap)
                entry = self._entries.get(endpoint_id)
                if entry is None or entry.token != token:
                    continue

                if entry.in_flight:
                    # Rearmed from the running probe's completion time.
                    entry.skipped = True
                    self.skipped_count += 1
                    logger.debug("Skipping %s: previous probe still running", entry.snapshot.url)
                    continue

                self._dispatch(entry)
                self._arm(endpoint_id, now + entry.snapshot.interval)

            self._discard_stale_timers()
            if not self._heap:
                return MAX_WAIT_SECONDS
            return max(0.0, self._heap[0][0] - now)

    def _arm(self, endpoint_id: str, due: float) -> None:
        entry = self._entries[endpoint_id]
        entry.token = next(self._tokens)
        heapq.heappush(self._heap, (due, next(self._sequence), endpoint_id, entry.token))
        self._wakeup.set()

    def _discard_stale_timers(self) -> None:
        while self._heap:
            _, _, endpoint_id, token = self._heap[0]
            entry = self._entries.get(endpoint_id)
            if entry is not None and entry.token == token:
                return
            heapq.heappop(self._heap)

    def _apply_update(self, entry: _Entry, endpoint: Endpoint, now: float) -> None:
        previous = entry.snapshot
        entry.snapshot = endpoint
        if previous.interval != endpoint.interval or previous.check_type != endpoint.check_type:
            self._arm(endpoint.id, now + endpoint.interval)
            logger.debug("Rearmed endpoint %s (every %ds)", endpoint.id, endpoint.interval)

    def _dispatch(self, entry: _Entry) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="probe")
        entry.in_flight = True
        self._executor.submit(self._run_probe, entry.snapshot)

    def _run_probe(self, endpoint: Endpoint) -> None:
        """Worker side: run the checker and post the completion."""
        try:
            outcome = self._checker(endpoint)
        except Exception as e:
            logger.error("Checker for %s raised: %s", endpoint.url, e)
            outcome = CheckOutcome(
                endpoint_id=endpoint.id,
                succeeded=False,
                latency_ms=0,
                error_message=f"Checker error: {e}",
                checked_at=datetime.now(UTC),
                error_kind=ERROR_NETWORK,
            )
        self._completions.put((endpoint.id, self._clock(), outcome))
        self._wakeup.set()

    def _drain_completions(self) -> None:
        while True:
            try:
                endpoint_id, completed_at, outcome = self._completions.get_nowait()
            except queue.Empty:
                return

            # Stored under the lock so remove() cannot interleave with the write.
            with self._lock:
                entry = self._entries.get(endpoint_id)
                if entry is None:
                    logger.debug("Discarding outcome for removed endpoint %s", endpoint_id)
                    continue

                entry.in_flight = False
                if entry.skipped:
                    entry.skipped = False
                    self._arm(endpoint_id, completed_at + entry.snapshot.interval)

                self._store_outcome(outcome)

    def _store_outcome(self, outcome: CheckOutcome) -> None:
        try:
            insert_check(self._db_conn, outcome)
            if outcome.ssl_status is not None:
                upsert_ssl_status(self._db_conn, outcome.ssl_status)
            if outcome.domain_status is not None:
                upsert_domain_status(self._db_conn, outcome.domain_status)
        except DatabaseError as e:
            logger.error("Failed to store check outcome: %s", e)
            return

        logger.debug(
            "%s: %s (%dms)%s",
            outcome.endpoint_id,
            "UP" if outcome.succeeded else "DOWN",
            outcome.latency_ms,
            f" {outcome.error_message}" if outcome.error_message else "",
        )

    def _reconcile_from_store(self, stagger: float = 0.0) -> None:
        # Read under the lock so a concurrent create is either in the list or
        # registered after this pass, never dropped by it.
        try:
            with self._lock:
                self.reconcile(list_endpoints(self._db_conn), stagger=stagger)
        except DatabaseError as e:
            logger.error("Endpoint reconciliation failed: %s", e)

    def _run_cleanup(self) -> None:
        """Run periodic cleanup of old check records."""
        try:
            deleted = cleanup_old_checks(self._db_conn, self._retention_days)
            if deleted > 0:
                logger.info("Cleaned up %d old check records", deleted)
        except DatabaseError as e:
            logger.error("Cleanup failed: %s", e)

    def _run_loop(self) -> None:
        """Coordinator loop - runs in background thread."""
        logger.debug("Scheduler loop started")

        while not self._stop_event.is_set():
            now = self._clock()
            if now >= self._next_reconcile:
                self._reconcile_from_store()
                self._next_reconcile = now + self._discovery_interval
            if now >= self._next_cleanup:
                self._run_cleanup()
                self._next_cleanup = now + CLEANUP_INTERVAL_SECONDS

            # Cleared before the pass so a completion posted during it is not missed.
            self._wakeup.clear()
            wait = self.run_pending()
            self._wakeup.wait(timeout=min(wait, MAX_WAIT_SECONDS))

        logger.debug("Scheduler loop exited")
