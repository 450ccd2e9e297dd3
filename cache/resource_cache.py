"""Shared, periodically refreshed view of every project's workloads.

Each refresh builds a brand-new index next to the published one and swaps it
in with a single assignment. Readers grab the current index reference and
never see a half-built refresh.
"""
import fnmatch
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from cache.models import ProjectSnapshot
from cluster.client import ClusterError, KindNotServedError
from cluster.parsers import build_snapshot

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_excluded(name: str, patterns: Iterable[str]) -> bool:
    """Exact names or shell-style patterns such as ``openshift-*``."""
    return any(fnmatch.fnmatchcase(name, p) for p in patterns)


class ResourceCache:
    """Single writer of project snapshots; any number of concurrent readers."""

    def __init__(self, client, discovery, refresh_period: timedelta,
                 excluded_namespaces: Iterable[str] = (), workers: int = 4,
                 clock: Optional[Callable[[], datetime]] = None):
        self.client = client
        self.discovery = discovery
        self.refresh_period = refresh_period
        self.excluded_namespaces = tuple(excluded_namespaces)
        self.workers = workers
        self.clock = clock or utc_now
        self._index: Mapping[str, ProjectSnapshot] = MappingProxyType({})
        self._publish_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

        # Statistics (written by the refresh thread only)
        self.last_refresh: Optional[datetime] = None
        self.last_refresh_duration = 0.0
        self.refreshes_total = 0
        self.refresh_failures = 0
        self.failed_projects = 0

    # -- read side -------------------------------------------------------

    def get_project(self, name: str) -> Optional[ProjectSnapshot]:
        return self._index.get(name)

    def list_projects(self) -> List[str]:
        return sorted(self._index)

    def snapshots(self) -> List[ProjectSnapshot]:
        index = self._index
        return [index[name] for name in sorted(index)]

    @property
    def project_count(self) -> int:
        return len(self._index)

    @property
    def ready(self) -> bool:
        return self.last_refresh is not None

    def projects_missing_kinds(self) -> int:
        return sum(1 for s in self._index.values() if s.missing_kinds)

    # -- write side ------------------------------------------------------

    def run(self, stop: threading.Event) -> None:
        """Refresh once synchronously, then keep refreshing in a daemon thread."""
        try:
            self.refresh()
        except Exception:
            logger.exception("Initial cache refresh crashed, retrying next period")
        self._thread = threading.Thread(target=self._loop, args=(stop,), name="cache-refresh", daemon=True)
        self._thread.start()
        logger.info(f"Resource cache started, refreshing every {self.refresh_period}")

    def _loop(self, stop: threading.Event) -> None:
        while not stop.wait(self.refresh_period.total_seconds()):
            try:
                self.refresh()
            except Exception:
                logger.exception("Cache refresh crashed, keeping previous index")

    def refresh(self) -> bool:
        """Rebuild and publish the index. Returns False if the project list could not be read."""
        started = time.monotonic()
        self.discovery.refresh()
        try:
            namespaces = self._list_active_namespaces()
        except ClusterError as e:
            self.refresh_failures += 1
            logger.error(f"Listing projects failed, keeping previous index: {e}")
            return False

        previous = self._index
        kinds = self.discovery.available_kinds()
        new_index: Dict[str, ProjectSnapshot] = {}
        failed = 0

        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = {
                executor.submit(self._fetch_project, ns, kinds): ns['metadata']['name']
                for ns in namespaces
            }
            for future in as_completed(futures):
                name = futures[future]
                try:
                    new_index[name] = future.result()
                    continue
                except ClusterError as e:
                    logger.warning(f"Refreshing project {name} failed, keeping previous snapshot: {e}")
                except Exception:
                    logger.exception(f"Refreshing project {name} crashed, keeping previous snapshot")
                failed += 1
                if name in previous:
                    new_index[name] = previous[name]

        with self._publish_lock:
            self._index = MappingProxyType(new_index)

        self.failed_projects = failed
        self.refreshes_total += 1
        self.last_refresh = self.clock()
        self.last_refresh_duration = time.monotonic() - started
        removed = set(previous) - set(new_index)
        if removed:
            logger.info(f"Projects no longer present: {', '.join(sorted(removed))}")
        logger.debug(
            f"Cache refreshed: {len(new_index)} projects, {failed} failed, "
            f"{self.last_refresh_duration:.2f}s"
        )
        return True

    def _list_active_namespaces(self) -> List[Dict[str, Any]]:
        result = []
        for ns in self.client.list_namespaces():
            name = (ns.get('metadata') or {}).get('name')
            if not name or is_excluded(name, self.excluded_namespaces):
                continue
            phase = (ns.get('status') or {}).get('phase') or 'Active'
            if phase != 'Active':
                continue
            result.append(ns)
        return result

    def _fetch_project(self, namespace: Dict[str, Any], kinds) -> ProjectSnapshot:
        name = namespace['metadata']['name']
        taken_at = self.clock()
        objects: Dict[str, List[Dict[str, Any]]] = {}
        missing = []
        for kind in kinds:
            try:
                objects[kind.kind] = self.client.list_objects(name, kind)
            except KindNotServedError as e:
                logger.warning(f"{e}; continuing without {kind.kind}")
                self.discovery.mark_absent(kind.kind)
                missing.append(kind.kind)
        return build_snapshot(namespace, objects, taken_at, missing)
