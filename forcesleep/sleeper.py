"""Force-sleep controller.

Every ``sleep_sync_period`` each project's quota window is topped up from the
cache snapshot. A project whose memory-weighted usage over ``period`` exceeds
``quota`` is put to sleep for ``project_sleep_period``: its scalables are idled
to zero, leftover pods are deleted and a ``force-sleep`` quota stops anything
new from starting. Waking only removes the quota and the sleep marker; the
idle annotations let the platform bring workloads back on demand.
"""
import enum
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional

from cache.models import ProjectSnapshot, format_timestamp
from cache.resource_cache import utc_now
from cluster.constants import (
    FORCE_SLEEP_QUOTA_HARD,
    FORCE_SLEEP_QUOTA_NAME,
    LAST_SLEEP_TIME_ANNOTATION,
)
from controller import PeriodicController
from forcesleep.quota_window import QuotaSample, QuotaWindow, quota_seconds
from normalize.quantity import format_duration

logger = logging.getLogger(__name__)


class SleepState(enum.Enum):
    AWAKE = "Awake"
    FORCE_SLEEP = "ForceSleep"


@dataclass(frozen=True)
class SleeperConfig:
    quota: timedelta
    period: timedelta
    sleep_sync_period: timedelta
    project_sleep_period: timedelta
    term_quota: int
    nonterm_quota: int
    sync_workers: int = 10
    dry_run: bool = True

    def __post_init__(self):
        for name in ("quota", "period", "sleep_sync_period", "project_sleep_period"):
            if getattr(self, name).total_seconds() <= 0:
                raise ValueError(f"{name} must be a positive duration")
        if self.term_quota <= 0 or self.nonterm_quota <= 0:
            raise ValueError("terminating and non-terminating memory quotas must be positive")
        if self.sync_workers <= 0:
            raise ValueError("sync_workers must be positive")


class ProjectSleepStatus:
    """The sleeper's private record for one project."""

    def __init__(self, period: timedelta):
        self.window = QuotaWindow(period)
        self.state = SleepState.AWAKE
        self.slept_at: Optional[datetime] = None
        self.wake_at: Optional[datetime] = None
        self.last_consumption = 0.0


class Sleeper:
    def __init__(self, config: SleeperConfig, cache, client,
                 clock: Optional[Callable[[], datetime]] = None):
        self.config = config
        self.cache = cache
        self.client = client
        self.clock = clock or utc_now
        self._status: Dict[str, ProjectSleepStatus] = {}
        self._lock = threading.Lock()
        self.controller = PeriodicController(
            "force-sleep",
            self.sync_project,
            self.cache.list_projects,
            config.sleep_sync_period,
            config.sync_workers,
            before_cycle=self.prune,
        )

    @property
    def stats(self):
        return self.controller.stats

    def run(self, stop: threading.Event) -> None:
        mode = "dry-run" if self.config.dry_run else "enforcing"
        logger.info(
            f"Force-sleep controller ({mode}): quota {format_duration(self.config.quota)} "
            f"per {format_duration(self.config.period)}, sleep {format_duration(self.config.project_sleep_period)}"
        )
        self.controller.run(stop)

    def run_once(self) -> None:
        self.controller.run_once()

    # -- read-only queries -----------------------------------------------

    def is_force_sleeping(self, name: str) -> bool:
        with self._lock:
            status = self._status.get(name)
            return status is not None and status.state is SleepState.FORCE_SLEEP

    def state(self, name: str) -> Optional[SleepState]:
        with self._lock:
            status = self._status.get(name)
            return status.state if status else None

    def wake_at(self, name: str) -> Optional[datetime]:
        with self._lock:
            status = self._status.get(name)
            return status.wake_at if status else None

    def consumption(self, name: str) -> Optional[float]:
        with self._lock:
            status = self._status.get(name)
            return status.last_consumption if status else None

    def sleeping_count(self) -> int:
        with self._lock:
            return sum(1 for s in self._status.values() if s.state is SleepState.FORCE_SLEEP)

    def tracked_count(self) -> int:
        with self._lock:
            return len(self._status)

    def prune(self, known: Iterable[str]) -> None:
        """Forget projects that are no longer in the cache.

        A project a worker is still syncing is kept until a later cycle, so
        the transition it records lands in the live table.
        """
        known = set(known)
        with self._lock:
            gone = [name for name in self._status
                    if name not in known and not self.controller.queue.in_flight(name)]
            for name in gone:
                del self._status[name]
        for name in gone:
            logger.info(f"Project {name} removed, dropping its sleep state")

    # -- sync ------------------------------------------------------------

    def _status_for(self, snapshot: ProjectSnapshot) -> ProjectSleepStatus:
        with self._lock:
            status = self._status.get(snapshot.name)
            if status is None:
                status = ProjectSleepStatus(self.config.period)
                self._recover(snapshot, status)
                self._status[snapshot.name] = status
            return status

    def _recover(self, snapshot: ProjectSnapshot, status: ProjectSleepStatus) -> None:
        """Pick up a sleep started before this process did."""
        slept_at = snapshot.last_sleep_time
        if slept_at is None or not snapshot.quota.force_sleep_applied:
            return
        status.state = SleepState.FORCE_SLEEP
        status.slept_at = slept_at
        status.wake_at = slept_at + self.config.project_sleep_period
        logger.info(f"Project {snapshot.name} was already force-slept at {format_timestamp(slept_at)}, "
                    f"waking at {format_timestamp(status.wake_at)}")

    def sync_project(self, name: str, now: Optional[datetime] = None) -> Optional[SleepState]:
        """Account, then sleep or wake one project. Returns its state afterwards."""
        now = now or self.clock()
        snapshot = self.cache.get_project(name)
        if snapshot is None:
            logger.debug(f"Project {name} not in cache, skipping")
            return None
        status = self._status_for(snapshot)

        if status.state is SleepState.FORCE_SLEEP:
            if now >= status.wake_at:
                self._wake(snapshot, status, now)
            return status.state

        self._account(snapshot, status, now)
        limit = self.config.quota.total_seconds()
        if status.last_consumption > limit:
            self._sleep(snapshot, status, now)
        return status.state

    def _account(self, snapshot: ProjectSnapshot, status: ProjectSleepStatus, now: datetime) -> None:
        since = status.window.last_sample_end or now - self.config.period
        if since < now:
            used = quota_seconds(
                snapshot.pods, snapshot.quota,
                self.config.term_quota, self.config.nonterm_quota,
                since, now,
            )
            status.window.add(QuotaSample(since, now, used))
        status.last_consumption = status.window.consumption(now)
        logger.debug(f"Project {snapshot.name}: {status.last_consumption:.0f} quota-seconds "
                     f"over {format_duration(self.config.period)}")

    def _sleep(self, snapshot: ProjectSnapshot, status: ProjectSleepStatus, now: datetime) -> None:
        wake_at = now + self.config.project_sleep_period
        basis = (f"consumption {format_duration(timedelta(seconds=status.last_consumption))} "
                 f"> quota {format_duration(self.config.quota)}")
        if self.config.dry_run:
            logger.info(f"[dry-run] Would force-sleep project {snapshot.name} until "
                        f"{format_timestamp(wake_at)}: {basis}")
            self.stats.incr('sleep_dry_run')
        else:
            logger.info(f"Force-sleeping project {snapshot.name} until {format_timestamp(wake_at)}: {basis}")
            self._apply_sleep(snapshot, now)
            self.stats.incr('sleep_enforced')
        # Committed only once the side effects went through
        status.state = SleepState.FORCE_SLEEP
        status.slept_at = now
        status.wake_at = wake_at
        status.window.reset()

    def _apply_sleep(self, snapshot: ProjectSnapshot, now: datetime) -> None:
        ns = snapshot.name
        self.client.apply_quota(ns, FORCE_SLEEP_QUOTA_NAME, FORCE_SLEEP_QUOTA_HARD)
        self.client.annotate_namespace(ns, {LAST_SLEEP_TIME_ANNOTATION: format_timestamp(now)})
        for scalable in snapshot.scalables:
            if scalable.idled or scalable.replicas == 0:
                continue
            self.client.idle_scalable(ns, scalable.kind, scalable.name, scalable.replicas, now)
            logger.info(f"Scaled {scalable.kind} {ns}/{scalable.name} from {scalable.replicas} to 0")
        for pod in snapshot.unowned_active_pods():
            self.client.delete_pod(ns, pod.name)
            logger.info(f"Deleted pod {ns}/{pod.name}")

    def _wake(self, snapshot: ProjectSnapshot, status: ProjectSleepStatus, now: datetime) -> None:
        if self.config.dry_run:
            logger.info(f"[dry-run] Would wake project {snapshot.name}, "
                        f"sleep ended at {format_timestamp(status.wake_at)}")
            self.stats.incr('wake_dry_run')
        else:
            logger.info(f"Waking project {snapshot.name}, sleep ended at {format_timestamp(status.wake_at)}")
            self.client.delete_quota(snapshot.name, FORCE_SLEEP_QUOTA_NAME)
            self.client.annotate_namespace(snapshot.name, {LAST_SLEEP_TIME_ANNOTATION: None})
            self.stats.incr('wake_enforced')
        status.state = SleepState.AWAKE
        status.slept_at = None
        status.wake_at = None
        status.last_consumption = 0.0
        status.window.reset(anchor=now)
