"""Parse API objects (plain dicts, camelCase keys) into cache snapshot types."""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from cache.models import (
    BuildInfo,
    PodInfo,
    ProjectQuota,
    ProjectSnapshot,
    ScalableInfo,
    parse_timestamp,
)
from cluster.constants import (
    BUILD,
    DEPLOYMENT,
    DEPLOYMENT_CONFIG,
    DEPLOYMENT_CONFIG_ANNOTATION,
    FORCE_SLEEP_QUOTA_NAME,
    POD,
    POD_TEMPLATE_HASH_LABEL,
    REPLICATION_CONTROLLER,
    RESOURCE_QUOTA,
    SCALABLE_KINDS,
    STATEFUL_SET,
)
from normalize.quantity import optional_memory_bytes


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get('metadata') or {}


def _container_memory(container: Dict[str, Any]) -> int:
    resources = container.get('resources') or {}
    requests = resources.get('requests') or {}
    limits = resources.get('limits') or {}
    # An unset request defaults to the limit
    value = optional_memory_bytes(requests.get('memory'))
    if value is None:
        value = optional_memory_bytes(limits.get('memory'))
    return value or 0


def pod_memory_request(pod: Dict[str, Any]) -> int:
    """Effective memory request: max(sum of containers, largest init container)."""
    spec = pod.get('spec') or {}
    containers = sum(_container_memory(c) for c in spec.get('containers') or [])
    init = max([_container_memory(c) for c in spec.get('initContainers') or []] or [0])
    return max(containers, init)


def _pod_finished_at(pod: Dict[str, Any]) -> Optional[datetime]:
    finished = []
    for status in (pod.get('status') or {}).get('containerStatuses') or []:
        terminated = (status.get('state') or {}).get('terminated') or {}
        ts = parse_timestamp(terminated.get('finishedAt'))
        if ts is not None:
            finished.append(ts)
    return max(finished) if finished else None


def resolve_pod_owner(pod: Dict[str, Any]) -> Optional[Tuple[str, str]]:
    """Find the scalable controller (kind, name) that manages a pod."""
    meta = _metadata(pod)
    refs = meta.get('ownerReferences') or []
    ref = next((r for r in refs if r.get('controller')), refs[0] if refs else None)
    if not ref:
        return None
    kind = ref.get('kind')
    name = ref.get('name')
    if not name:
        return None

    if kind == 'ReplicaSet':
        pod_hash = (meta.get('labels') or {}).get(POD_TEMPLATE_HASH_LABEL)
        if not pod_hash:
            return None
        suffix = f'-{pod_hash}'
        if name.endswith(suffix):
            return DEPLOYMENT, name[:-len(suffix)]
        return DEPLOYMENT, name.rsplit('-', 1)[0]
    if kind == REPLICATION_CONTROLLER:
        dc_name = (meta.get('annotations') or {}).get(DEPLOYMENT_CONFIG_ANNOTATION)
        if dc_name:
            return DEPLOYMENT_CONFIG, dc_name
        return REPLICATION_CONTROLLER, name
    if kind == STATEFUL_SET:
        return STATEFUL_SET, name
    return None


def parse_pod(pod: Dict[str, Any]) -> PodInfo:
    meta = _metadata(pod)
    spec = pod.get('spec') or {}
    status = pod.get('status') or {}
    return PodInfo(
        name=meta.get('name', ''),
        phase=status.get('phase') or 'Unknown',
        memory_request=pod_memory_request(pod),
        terminating=spec.get('activeDeadlineSeconds') is not None,
        started_at=parse_timestamp(status.get('startTime')),
        finished_at=_pod_finished_at(pod),
        owner=resolve_pod_owner(pod),
    )


def parse_scalable(kind: str, obj: Dict[str, Any], pod_names: Iterable[str] = ()) -> ScalableInfo:
    meta = _metadata(obj)
    spec = obj.get('spec') or {}
    status = obj.get('status') or {}
    replicas = spec.get('replicas')
    return ScalableInfo(
        kind=kind,
        name=meta.get('name', ''),
        # The API server defaults an omitted replica count to 1
        replicas=int(replicas) if replicas is not None else 1,
        current_replicas=int(status.get('replicas') or 0),
        annotations=meta.get('annotations') or {},
        pod_names=tuple(sorted(pod_names)),
    )


def parse_build(build: Dict[str, Any]) -> BuildInfo:
    status = build.get('status') or {}
    return BuildInfo(
        name=_metadata(build).get('name', ''),
        phase=status.get('phase') or 'Unknown',
        started_at=parse_timestamp(status.get('startTimestamp')),
        completed_at=parse_timestamp(status.get('completionTimestamp')),
    )


def _quota_memory(hard: Dict[str, Any]) -> Optional[int]:
    for key in ('limits.memory', 'memory', 'requests.memory'):
        value = optional_memory_bytes(hard.get(key))
        if value is not None:
            return value
    return None


def _min_limit(current: Optional[int], value: int) -> int:
    return value if current is None else min(current, value)


def parse_quotas(quotas: Iterable[Dict[str, Any]]) -> ProjectQuota:
    """Fold a project's ResourceQuota objects into its memory limits.

    The force-sleep quota is reported separately and never counted as a
    memory limit. Unscoped quotas apply to both pod classes; the tightest
    limit wins.
    """
    terminating = None
    nonterminating = None
    force_sleep = False
    for quota in quotas:
        if _metadata(quota).get('name') == FORCE_SLEEP_QUOTA_NAME:
            force_sleep = True
            continue
        spec = quota.get('spec') or {}
        memory = _quota_memory(spec.get('hard') or {})
        if memory is None:
            continue
        scopes = spec.get('scopes') or []
        if 'Terminating' in scopes:
            terminating = _min_limit(terminating, memory)
        elif 'NotTerminating' in scopes:
            nonterminating = _min_limit(nonterminating, memory)
        else:
            terminating = _min_limit(terminating, memory)
            nonterminating = _min_limit(nonterminating, memory)
    return ProjectQuota(
        terminating_memory=terminating,
        nonterminating_memory=nonterminating,
        force_sleep_applied=force_sleep,
    )


def _owned_by_deployment_config(rc: Dict[str, Any]) -> bool:
    meta = _metadata(rc)
    if (meta.get('annotations') or {}).get(DEPLOYMENT_CONFIG_ANNOTATION):
        return True
    return any(r.get('kind') == DEPLOYMENT_CONFIG for r in meta.get('ownerReferences') or [])


def build_snapshot(namespace: Dict[str, Any],
                   objects: Dict[str, List[Dict[str, Any]]],
                   taken_at: datetime,
                   missing_kinds: Iterable[str] = ()) -> ProjectSnapshot:
    """Assemble one project's snapshot from the objects listed in a single pass.

    ``objects`` maps kind name -> list of raw objects of that kind.
    """
    pods = [parse_pod(p) for p in objects.get(POD, [])]

    pods_by_owner: Dict[Tuple[str, str], List[str]] = {}
    for pod in pods:
        if pod.owner is not None:
            pods_by_owner.setdefault(pod.owner, []).append(pod.name)

    scalables: List[ScalableInfo] = []
    for kind in SCALABLE_KINDS:
        for obj in objects.get(kind, []):
            # Replication controllers of a DeploymentConfig are scaled through it
            if kind == REPLICATION_CONTROLLER and _owned_by_deployment_config(obj):
                continue
            name = _metadata(obj).get('name', '')
            scalables.append(parse_scalable(kind, obj, pods_by_owner.get((kind, name), ())))

    builds = [parse_build(b) for b in objects.get(BUILD, [])]
    quota = parse_quotas(objects.get(RESOURCE_QUOTA, []))

    meta = _metadata(namespace)
    return ProjectSnapshot(
        name=meta.get('name', ''),
        taken_at=taken_at,
        pods=tuple(sorted(pods, key=lambda p: p.name)),
        scalables=tuple(sorted(scalables, key=lambda s: (s.kind, s.name))),
        builds=tuple(sorted(builds, key=lambda b: b.name)),
        quota=quota,
        annotations=meta.get('annotations') or {},
        missing_kinds=frozenset(missing_kinds),
    )
