"""
Tests for the probe and metrics endpoints
"""
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from cache.models import BuildInfo
from forcesleep.sleeper import Sleeper, SleeperConfig
from idling.idler import Idler, IdlerConfig
from server import create_app, render_metrics

NOW = datetime(2026, 1, 4, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def sleeper(fake_cache, cluster_client):
    config = SleeperConfig(
        quota=timedelta(hours=2),
        period=timedelta(hours=1),
        sleep_sync_period=timedelta(minutes=1),
        project_sleep_period=timedelta(hours=8),
        term_quota=1024 ** 3,
        nonterm_quota=1024 ** 3,
        dry_run=True,
    )
    return Sleeper(config, fake_cache, cluster_client, clock=lambda: NOW)


@pytest.fixture
def idler(fake_cache, cluster_client, sleeper):
    config = IdlerConfig(
        idle_sync_period=timedelta(minutes=10),
        idle_query_period=timedelta(minutes=30),
        threshold=5000,
        project_sleep_period=timedelta(hours=8),
    )
    return Idler(config, fake_cache, MagicMock(), cluster_client, sleeper.is_force_sleeping,
                 clock=lambda: NOW)


@pytest.fixture
def client(fake_cache, sleeper, idler):
    """Flask test client"""
    app = create_app(fake_cache, sleeper, idler)
    app.config['TESTING'] = True
    with app.test_client() as client:
        yield client


class TestHealthEndpoint:
    """Tests for /health endpoint"""

    def test_health_returns_200(self, client):
        """Health endpoint should always return 200"""
        response = client.get('/health')
        assert response.status_code == 200

    def test_health_returns_json(self, client):
        """Health endpoint should return JSON with a timestamp"""
        data = json.loads(client.get('/health').data)
        assert data['status'] == 'healthy'
        assert 'timestamp' in data


class TestReadyEndpoint:
    """Tests for /ready endpoint"""

    def test_ready_after_cache_refresh(self, client, fake_cache):
        fake_cache.ready = True

        response = client.get('/ready')

        assert response.status_code == 200
        assert json.loads(response.data)['status'] == 'ready'

    def test_not_ready_before_cache_refresh(self, client, fake_cache):
        fake_cache.ready = False

        response = client.get('/ready')

        assert response.status_code == 503
        assert json.loads(response.data)['status'] == 'not_ready'


class TestMetricsEndpoint:
    """Tests for /metrics endpoint"""

    def test_metrics_text_format(self, client, fake_cache, make_snapshot):
        fake_cache.put(make_snapshot('team-a'))

        response = client.get('/metrics')
        body = response.data.decode()

        assert response.status_code == 200
        assert response.mimetype == 'text/plain'
        assert '# TYPE hibernation_cache_projects gauge' in body
        assert 'hibernation_cache_projects 1' in body
        assert 'hibernation_uptime_seconds' in body

    def test_decisions_split_by_mode(self, sleeper, idler, fake_cache, make_snapshot, make_pod):
        fake_cache.put(make_snapshot('team-a', pods=[make_pod(f'p{i}') for i in range(3)]))
        sleeper.sync_project('team-a', NOW)

        body = render_metrics(fake_cache, sleeper, idler)

        assert ('hibernation_decisions_total{controller="force-sleep",decision="sleep",mode="dry_run"} 1'
                in body)
        assert ('hibernation_decisions_total{controller="force-sleep",decision="sleep",mode="enforced"} 0'
                in body)
        assert 'hibernation_projects_sleeping 1' in body
        assert 'hibernation_syncs_total{controller="auto-idler"} 0' in body

    def test_collect_cache_disabled(self, sleeper, idler, fake_cache):
        body = render_metrics(fake_cache, sleeper, idler, collect_cache=False)

        assert 'hibernation_cache_projects' not in body
        assert 'hibernation_projects_sleeping' in body

    def test_each_family_declared_once(self, sleeper, idler, fake_cache):
        """Both controllers share metric families instead of redeclaring them"""
        body = render_metrics(fake_cache, sleeper, idler)

        type_lines = [line for line in body.splitlines() if line.startswith('# TYPE ')]
        assert len(type_lines) == len(set(type_lines))
        assert 'hibernation_syncs_total{controller="force-sleep"} 0' in body
        assert 'hibernation_syncs_total{controller="auto-idler"} 0' in body

    def test_workload_totals(self, sleeper, idler, fake_cache, make_snapshot, make_pod, make_scalable):
        fake_cache.put(make_snapshot(
            'team-a',
            pods=[make_pod('web-a'), make_pod('done', phase='Succeeded')],
            scalables=[make_scalable('web')],
            builds=[BuildInfo('app-1', 'Running'), BuildInfo('app-0', 'Complete')],
        ))
        fake_cache.put(make_snapshot('team-b', builds=[BuildInfo('lib-3', 'New')]))

        body = render_metrics(fake_cache, sleeper, idler)

        assert 'hibernation_cache_pods{state="all"} 2' in body
        assert 'hibernation_cache_pods{state="active"} 1' in body
        assert 'hibernation_cache_scalables 1' in body
        assert 'hibernation_cache_active_builds 2' in body
