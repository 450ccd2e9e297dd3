"""Capability lookup: which resource kinds the API server actually serves.

OpenShift kinds (DeploymentConfig, Build) only exist on some clusters, and
aggregated API groups can disappear at runtime. A kind the server does not
serve is treated as "capability absent": the cache simply stops listing it.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Set

from cluster.constants import (
    BUILD,
    DEPLOYMENT,
    DEPLOYMENT_CONFIG,
    POD,
    REPLICATION_CONTROLLER,
    RESOURCE_QUOTA,
    STATEFUL_SET,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceKind:
    kind: str
    group: str
    version: str
    plural: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @property
    def builtin(self) -> bool:
        return self.group in ('', 'apps')


KINDS: Dict[str, ResourceKind] = {
    POD: ResourceKind(POD, '', 'v1', 'pods'),
    RESOURCE_QUOTA: ResourceKind(RESOURCE_QUOTA, '', 'v1', 'resourcequotas'),
    REPLICATION_CONTROLLER: ResourceKind(REPLICATION_CONTROLLER, '', 'v1', 'replicationcontrollers'),
    DEPLOYMENT: ResourceKind(DEPLOYMENT, 'apps', 'v1', 'deployments'),
    STATEFUL_SET: ResourceKind(STATEFUL_SET, 'apps', 'v1', 'statefulsets'),
    DEPLOYMENT_CONFIG: ResourceKind(DEPLOYMENT_CONFIG, 'apps.openshift.io', 'v1', 'deploymentconfigs'),
    BUILD: ResourceKind(BUILD, 'build.openshift.io', 'v1', 'builds'),
}


class CapabilityLookup:
    """Resolve kinds against the group/versions served by the cluster.

    ``fetch_group_versions`` returns strings such as ``"v1"`` or
    ``"apps.openshift.io/v1"``. Until the first successful fetch only the
    built-in groups are assumed to exist.
    """

    def __init__(self, fetch_group_versions: Callable[[], Iterable[str]],
                 kinds: Optional[Dict[str, ResourceKind]] = None):
        self._fetch = fetch_group_versions
        self._kinds = dict(kinds or KINDS)
        self._served: Optional[FrozenSet[str]] = None
        self._absent: Set[str] = set()
        self._lock = threading.Lock()

    def refresh(self) -> bool:
        """Re-read served group/versions. Returns False (keeping the old view) on failure."""
        try:
            served = frozenset(self._fetch())
        except Exception as e:
            logger.warning(f"API discovery failed, keeping previous capability view: {e}")
            return False
        with self._lock:
            newly_absent = sorted(
                k.kind for k in self._kinds.values()
                if self._served is not None and k.api_version in self._served and k.api_version not in served
            )
            self._served = served
            self._absent.clear()
        for kind in newly_absent:
            logger.warning(f"{kind} is no longer served by the API server")
        return True

    def supports(self, kind: str) -> bool:
        resource = self._kinds.get(kind)
        if resource is None:
            return False
        with self._lock:
            if kind in self._absent:
                return False
            if self._served is None:
                return resource.builtin
            return resource.api_version in self._served

    def mark_absent(self, kind: str) -> None:
        """Hide a kind until the next refresh (e.g. its list call returned 404)."""
        with self._lock:
            if kind in self._absent:
                return
            self._absent.add(kind)
        logger.warning(f"Capability for {kind} is absent; it will not be cached until discovery refreshes")

    def available_kinds(self) -> List[ResourceKind]:
        return [k for name, k in self._kinds.items() if self.supports(name)]
