"""Traffic-based auto-idling.

Every ``idle_sync_period`` each project's scalables are checked against the
bytes their pods received over the trailing ``idle_query_period``. Quiet ones
are annotated and scaled to zero; the platform wakes them on new traffic. The
idler never scales anything up.
"""
import enum
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional, Tuple

from cache.models import ProjectSnapshot, ScalableInfo, format_timestamp
from cache.resource_cache import utc_now
from cluster.client import ClusterError
from controller import PeriodicController
from metrics.prometheus_client import PrometheusError
from normalize.quantity import format_duration

logger = logging.getLogger(__name__)

ScalableKey = Tuple[str, str, str]


class IdleState(enum.Enum):
    ACTIVE = "Active"
    IDLED = "Idled"


@dataclass(frozen=True)
class IdlerConfig:
    idle_sync_period: timedelta
    idle_query_period: timedelta
    threshold: int
    project_sleep_period: timedelta
    sync_workers: int = 10
    dry_run: bool = True

    def __post_init__(self):
        for name in ("idle_sync_period", "idle_query_period", "project_sleep_period"):
            if getattr(self, name).total_seconds() <= 0:
                raise ValueError(f"{name} must be a positive duration")
        if self.threshold < 0:
            raise ValueError("threshold must not be negative")
        if self.sync_workers <= 0:
            raise ValueError("sync_workers must be positive")


@dataclass
class IdleRecord:
    state: IdleState
    changed_at: datetime


class Idler:
    def __init__(self, config: IdlerConfig, cache, traffic, client,
                 is_force_sleeping: Callable[[str], bool],
                 clock: Optional[Callable[[], datetime]] = None):
        self.config = config
        self.cache = cache
        self.traffic = traffic
        self.client = client
        self.is_force_sleeping = is_force_sleeping
        self.clock = clock or utc_now
        self._records: Dict[ScalableKey, IdleRecord] = {}
        self._lock = threading.Lock()
        self.controller = PeriodicController(
            "auto-idler",
            self.sync_project,
            self.cache.list_projects,
            config.idle_sync_period,
            config.sync_workers,
            before_cycle=self.prune,
        )

    @property
    def stats(self):
        return self.controller.stats

    def run(self, stop: threading.Event) -> None:
        mode = "dry-run" if self.config.dry_run else "enforcing"
        logger.info(
            f"Auto-idler ({mode}): idle below {self.config.threshold} bytes "
            f"per {format_duration(self.config.idle_query_period)}"
        )
        self.controller.run(stop)

    def run_once(self) -> None:
        self.controller.run_once()

    # -- state table -----------------------------------------------------

    def idle_state(self, namespace: str, kind: str, name: str) -> Optional[IdleState]:
        with self._lock:
            record = self._records.get((namespace, kind, name))
            return record.state if record else None

    def idled_count(self) -> int:
        with self._lock:
            return sum(1 for r in self._records.values() if r.state is IdleState.IDLED)

    def _get(self, key: ScalableKey) -> Optional[IdleRecord]:
        with self._lock:
            return self._records.get(key)

    def _set(self, key: ScalableKey, state: IdleState, now: datetime) -> None:
        with self._lock:
            record = self._records.get(key)
            if record is None or record.state is not state:
                self._records[key] = IdleRecord(state, now)

    def prune(self, known: Iterable[str]) -> None:
        known = set(known)
        with self._lock:
            for key in [k for k in self._records if k[0] not in known]:
                del self._records[key]

    # -- sync ------------------------------------------------------------

    def _skip_reason(self, snapshot: ProjectSnapshot, now: datetime) -> Optional[str]:
        if self.is_force_sleeping(snapshot.name):
            return "project is in force-sleep"
        if snapshot.quota.force_sleep_applied:
            return "project carries the force-sleep quota"
        slept_at = snapshot.last_sleep_time
        if slept_at is not None and now - slept_at < self.config.project_sleep_period:
            return f"project was force-slept at {format_timestamp(slept_at)}"
        return None

    def sync_project(self, name: str, now: Optional[datetime] = None) -> Dict[Tuple[str, str], IdleState]:
        """Evaluate every scalable of one project; returns their states afterwards."""
        now = now or self.clock()
        snapshot = self.cache.get_project(name)
        if snapshot is None:
            return {}
        reason = self._skip_reason(snapshot, now)
        if reason:
            logger.info(f"Skipping idling of {name}: {reason}")
            self.stats.incr('skipped_force_sleep')
            return {}

        result = {}
        for scalable in snapshot.scalables:
            try:
                self._sync_scalable(snapshot, scalable, now)
            except PrometheusError as e:
                logger.warning(f"No traffic data for {scalable.kind} {name}/{scalable.name} this cycle: {e}")
                self.stats.incr('metrics_failures')
            except ClusterError as e:
                logger.error(f"Idling {scalable.kind} {name}/{scalable.name} failed, will retry: {e}")
                self.stats.incr('idle_failures')
            state = self.idle_state(name, scalable.kind, scalable.name)
            if state is not None:
                result[scalable.key] = state
        return result

    def _sync_scalable(self, snapshot: ProjectSnapshot, scalable: ScalableInfo, now: datetime) -> None:
        ns = snapshot.name
        key = (ns, scalable.kind, scalable.name)
        if scalable.idled:
            self._set(key, IdleState.IDLED, now)
            return
        if scalable.replicas == 0:
            # Scaled down by its owner, nothing to idle
            return

        record = self._get(key)
        idled = record is not None and record.state is IdleState.IDLED
        if idled and not self.config.dry_run and snapshot.taken_at > record.changed_at:
            logger.info(f"{scalable.kind} {ns}/{scalable.name} was woken up, marking active")
            self._set(key, IdleState.ACTIVE, now)
            idled = False

        pods = [p for p in snapshot.pods_for(scalable) if p.active]
        started = [p.started_at for p in pods if p.started_at is not None]
        if not started:
            return
        if now - min(started) < self.config.idle_query_period:
            logger.debug(f"{scalable.kind} {ns}/{scalable.name} has not run for a full query window yet")
            return

        received = self.traffic.received_bytes(ns, [p.name for p in pods], self.config.idle_query_period)
        if received is None:
            logger.debug(f"No traffic samples for {scalable.kind} {ns}/{scalable.name}")
            return

        window = format_duration(self.config.idle_query_period)
        basis = f"received {received:.0f} bytes in {window}, threshold {self.config.threshold}"
        if received >= self.config.threshold:
            if idled:
                logger.info(f"{scalable.kind} {ns}/{scalable.name} is active again: {basis}")
            self._set(key, IdleState.ACTIVE, now)
            return
        if idled:
            return

        if self.config.dry_run:
            logger.info(f"[dry-run] Would idle {scalable.kind} {ns}/{scalable.name}: {basis}")
            self.stats.incr('idle_dry_run')
        else:
            logger.info(f"Idling {scalable.kind} {ns}/{scalable.name} "
                        f"({scalable.replicas} replicas): {basis}")
            self.client.idle_scalable(ns, scalable.kind, scalable.name, scalable.replicas, now)
            self.stats.incr('idle_enforced')
        self._set(key, IdleState.IDLED, now)
