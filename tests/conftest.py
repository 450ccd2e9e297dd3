"""
Test fixtures and configuration for pytest
"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from cache.models import PodInfo, ProjectQuota, ProjectSnapshot, ScalableInfo
from cluster.client import ClusterClient

GIB = 1024 ** 3
NOW = datetime(2026, 1, 4, 12, 0, 0, tzinfo=timezone.utc)


class FakeCache:
    """In-memory stand-in for ResourceCache's read side"""

    def __init__(self):
        self.projects = {}
        self.ready = True
        self.project_count = 0
        self.refreshes_total = 0
        self.refresh_failures = 0
        self.failed_projects = 0
        self.last_refresh = None
        self.last_refresh_duration = 0.0

    def put(self, snapshot):
        self.projects[snapshot.name] = snapshot
        self.project_count = len(self.projects)

    def remove(self, name):
        self.projects.pop(name, None)
        self.project_count = len(self.projects)

    def get_project(self, name):
        return self.projects.get(name)

    def list_projects(self):
        return sorted(self.projects)

    def snapshots(self):
        return [self.projects[name] for name in sorted(self.projects)]

    def projects_missing_kinds(self):
        return sum(1 for s in self.projects.values() if s.missing_kinds)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_pod():
    """Factory for PodInfo, running for an hour at 1Gi by default"""
    def _make(name, phase='Running', memory=GIB, started_at=NOW - timedelta(hours=1),
              finished_at=None, terminating=False, owner=None):
        return PodInfo(
            name=name,
            phase=phase,
            memory_request=memory,
            terminating=terminating,
            started_at=started_at,
            finished_at=finished_at,
            owner=owner,
        )
    return _make


@pytest.fixture
def make_scalable():
    def _make(name, kind='Deployment', replicas=1, annotations=None, pod_names=()):
        return ScalableInfo(
            kind=kind,
            name=name,
            replicas=replicas,
            current_replicas=replicas,
            annotations=annotations or {},
            pod_names=tuple(pod_names),
        )
    return _make


@pytest.fixture
def make_snapshot():
    def _make(name, pods=(), scalables=(), quota=None, annotations=None, taken_at=NOW, builds=()):
        return ProjectSnapshot(
            name=name,
            taken_at=taken_at,
            pods=tuple(pods),
            scalables=tuple(scalables),
            builds=tuple(builds),
            quota=quota or ProjectQuota(),
            annotations=annotations or {},
        )
    return _make


@pytest.fixture
def fake_cache():
    return FakeCache()


@pytest.fixture
def cluster_client():
    """MagicMock restricted to ClusterClient's interface; records every mutating call"""
    return MagicMock(spec=ClusterClient)


@pytest.fixture
def raw_pod():
    """Factory for pod objects as returned by the API (camelCase dicts)"""
    def _make(name, phase='Running', memory='512Mi', start='2026-01-04T11:00:00Z',
              owner_kind=None, owner_name=None, labels=None, annotations=None,
              deadline=None, init_memory=None):
        pod = {
            'metadata': {
                'name': name,
                'labels': labels or {},
                'annotations': annotations or {},
            },
            'spec': {
                'containers': [{'name': 'main', 'resources': {'requests': {'memory': memory}}}],
            },
            'status': {'phase': phase, 'startTime': start},
        }
        if owner_kind:
            pod['metadata']['ownerReferences'] = [
                {'kind': owner_kind, 'name': owner_name, 'controller': True}
            ]
        if deadline is not None:
            pod['spec']['activeDeadlineSeconds'] = deadline
        if init_memory is not None:
            pod['spec']['initContainers'] = [
                {'name': 'init', 'resources': {'requests': {'memory': init_memory}}}
            ]
        return pod
    return _make


@pytest.fixture
def raw_namespace():
    def _make(name, phase='Active', annotations=None):
        return {
            'metadata': {'name': name, 'annotations': annotations or {}},
            'status': {'phase': phase},
        }
    return _make


@pytest.fixture
def mock_prometheus_response():
    """Mock Prometheus API response for an instant query"""
    return {
        "status": "success",
        "data": {
            "resultType": "vector",
            "result": [
                {
                    "metric": {"pod": "api-server-abc123"},
                    "value": [1767528000, "4000"]
                }
            ]
        }
    }
