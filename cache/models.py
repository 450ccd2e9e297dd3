"""Immutable per-project snapshot types published by the resource cache."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

from cluster.constants import (
    ACTIVE_BUILD_PHASES,
    ACTIVE_POD_PHASES,
    FINISHED_POD_PHASES,
    IDLED_AT_ANNOTATION,
    LAST_SLEEP_TIME_ANNOTATION,
)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp as written by the API server."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def _frozen(mapping: Optional[Mapping[str, str]]) -> Mapping[str, str]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class PodInfo:
    name: str
    phase: str
    memory_request: int
    terminating: bool
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    # (kind, name) of the scalable controller that owns the pod
    owner: Optional[Tuple[str, str]] = None

    @property
    def active(self) -> bool:
        return self.phase in ACTIVE_POD_PHASES

    def running_interval(self, now: datetime) -> Optional[Tuple[datetime, datetime]]:
        """Span during which the pod held its request, clipped at ``now``."""
        if self.started_at is None:
            return None
        if self.phase in FINISHED_POD_PHASES:
            end = self.finished_at
            if end is None:
                return None
        else:
            end = now
        end = min(end, now)
        if end <= self.started_at:
            return None
        return self.started_at, end


@dataclass(frozen=True)
class ScalableInfo:
    kind: str
    name: str
    replicas: int
    current_replicas: int = 0
    annotations: Mapping[str, str] = field(default_factory=dict)
    pod_names: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'annotations', _frozen(self.annotations))

    @property
    def key(self) -> Tuple[str, str]:
        return self.kind, self.name

    @property
    def idled(self) -> bool:
        return IDLED_AT_ANNOTATION in self.annotations and self.replicas == 0


@dataclass(frozen=True)
class BuildInfo:
    name: str
    phase: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def active(self) -> bool:
        return self.phase in ACTIVE_BUILD_PHASES


@dataclass(frozen=True)
class ProjectQuota:
    """Memory limits from the project's own ResourceQuota objects."""

    terminating_memory: Optional[int] = None
    nonterminating_memory: Optional[int] = None
    force_sleep_applied: bool = False


@dataclass(frozen=True)
class ProjectSnapshot:
    name: str
    taken_at: datetime
    pods: Tuple[PodInfo, ...] = ()
    scalables: Tuple[ScalableInfo, ...] = ()
    builds: Tuple[BuildInfo, ...] = ()
    quota: ProjectQuota = ProjectQuota()
    annotations: Mapping[str, str] = field(default_factory=dict)
    # Kinds that could not be listed for this project (capability absent)
    missing_kinds: FrozenSet[str] = frozenset()

    def __post_init__(self):
        object.__setattr__(self, 'annotations', _frozen(self.annotations))

    @property
    def last_sleep_time(self) -> Optional[datetime]:
        return parse_timestamp(self.annotations.get(LAST_SLEEP_TIME_ANNOTATION))

    @property
    def active_pods(self) -> List[PodInfo]:
        return [p for p in self.pods if p.active]

    @property
    def active_builds(self) -> List[BuildInfo]:
        return [b for b in self.builds if b.active]

    def scalable(self, kind: str, name: str) -> Optional[ScalableInfo]:
        for s in self.scalables:
            if s.kind == kind and s.name == name:
                return s
        return None

    def pods_for(self, scalable: ScalableInfo) -> List[PodInfo]:
        return [p for p in self.pods if p.owner == scalable.key]

    def unowned_active_pods(self) -> List[PodInfo]:
        owned = {s.key for s in self.scalables}
        return [p for p in self.active_pods if p.owner not in owned]

    def summary(self) -> Dict[str, int]:
        return {
            'pods': len(self.pods),
            'active_pods': len(self.active_pods),
            'scalables': len(self.scalables),
            'active_builds': len(self.active_builds),
        }
