from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from hdi.config import SchedulerConfig
from hdi.errors import VerificationCancelled
from hdi.observability import metrics
from hdi.observability.file_observability_log import FileObservabilityLogger, build_observability_event
from hdi.report.sink import ReportSink
from hdi.store.run_state import RunState, RunStateStore
from hdi.verifier.verifier import DistroVerifier, VerificationResult

logger = logging.getLogger(__name__)

DEFAULT_MIN_INTERVAL = timedelta(hours=12)


def should_run(
    *,
    now: datetime,
    last_run: Optional[datetime],
    distro_hour: int,
    forced: bool = False,
    min_interval: timedelta = DEFAULT_MIN_INTERVAL,
) -> bool:
    """Decide whether a verification run is due.

    A last run in the future means the clock moved backwards, so it counts as due.
    """
    if forced:
        return True
    due = last_run is None or last_run > now or (now - last_run) >= min_interval
    return due and now.hour == distro_hour


class RunWatchdog:
    """Alerts when a run exceeds `max_seconds`, then again every `interval_seconds`."""

    def __init__(
        self,
        *,
        name: str,
        max_seconds: float,
        interval_seconds: float,
        alert: Optional[Callable[[float], None]] = None,
    ) -> None:
        self._name = name
        self._max_seconds = max_seconds
        self._interval_seconds = interval_seconds
        self._alert = alert
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._started = 0.0
        self._stopped = False
        self.alerts = 0

    def _schedule(self, delay: float) -> None:
        timer = threading.Timer(delay, self._fire)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _fire(self) -> None:
        with self._lock:
            if self._stopped:
                return
            self.alerts += 1
            elapsed = time.monotonic() - self._started
            self._schedule(self._interval_seconds)
        logger.warning("%s taking too long: running for %.0f seconds", self._name, elapsed)
        metrics.watchdog_alerts_total.inc()
        if self._alert is not None:
            self._alert(elapsed)

    def start(self) -> None:
        with self._lock:
            self._started = time.monotonic()
            self._stopped = False
            self._schedule(self._max_seconds)

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def __enter__(self) -> "RunWatchdog":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


def _local_now() -> datetime:
    return datetime.now().astimezone()


class DistroScheduler:
    """Runs verification once per window at the host's configured hour."""

    def __init__(
        self,
        *,
        hostname: str,
        distro_hour: int,
        config: SchedulerConfig,
        verifier_factory: Callable[[threading.Event], DistroVerifier],
        state_store: RunStateStore,
        report_sink: ReportSink,
        include_user: bool = True,
        event_logger: Optional[FileObservabilityLogger] = None,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self._hostname = hostname
        self._distro_hour = distro_hour
        self._config = config
        self._verifier_factory = verifier_factory
        self._state_store = state_store
        self._report_sink = report_sink
        self._event_logger = event_logger
        self._clock = clock
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._default_include_user = include_user
        self._forced = False
        self._include_user = include_user

    def request_run(self, *, include_user: Optional[bool] = None) -> None:
        with self._lock:
            self._forced = True
            if include_user is not None:
                self._include_user = include_user
        self._wake.set()

    def _take_request(self) -> tuple[bool, bool]:
        with self._lock:
            forced, include_user = self._forced, self._include_user
            self._forced = False
            self._include_user = self._default_include_user
            self._wake.clear()
        return forced, include_user

    def _wait(self, stop: threading.Event, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not stop.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            if self._wake.wait(min(remaining, 1.0)):
                return

    def run_once(self, *, include_user: Optional[bool] = None, cancel: Optional[threading.Event] = None) -> VerificationResult:
        if include_user is None:
            include_user = self._default_include_user
        started_at = self._clock()
        run_id = str(uuid.uuid4())
        started = time.monotonic()
        with RunWatchdog(
            name="Distro verification",
            max_seconds=self._config.watchdog_max_seconds,
            interval_seconds=self._config.watchdog_interval_seconds,
        ):
            verifier = self._verifier_factory(cancel if cancel is not None else threading.Event())
            result = verifier.verify(include_user=include_user)
            self._state_store.write(RunState(last_run=started_at))
            self._report_sink.deliver(
                hostname=self._hostname, run_id=run_id, records=result.records, stats=result.stats
            )
        if self._event_logger is not None:
            self._event_logger.append(
                build_observability_event(
                    event_type="VERIFY_COMPLETED",
                    stage="verify",
                    subject=self._hostname,
                    run_id=run_id,
                    occurred_at=datetime.now(timezone.utc),
                    duration_ms=int((time.monotonic() - started) * 1000),
                    status="ok",
                    fields={"discrepancies": len(result.records), "scanned": result.stats.scanned},
                )
            )
        logger.info("verification %s finished: %d discrepancies", run_id, len(result.records))
        return result

    def check_and_run(self, *, forced: bool, include_user: bool, stop: threading.Event) -> bool:
        now = self._clock()
        last_run = self._state_store.read().last_run
        if not should_run(
            now=now,
            last_run=last_run,
            distro_hour=self._distro_hour,
            forced=forced,
            min_interval=timedelta(hours=self._config.min_interval_hours),
        ):
            return False
        self.run_once(include_user=include_user, cancel=stop)
        return True

    def run_forever(self, stop: threading.Event) -> None:
        while not stop.is_set():
            self._wait(stop, self._config.prerun_delay_seconds)
            if stop.is_set():
                break
            forced, include_user = self._take_request()
            try:
                self.check_and_run(forced=forced, include_user=include_user, stop=stop)
            except VerificationCancelled:
                if stop.is_set():
                    break
                logger.warning("verification cancelled")
            except Exception:
                logger.exception("distro verification failed")
                stop.wait(self._config.failure_backoff_seconds)
