"""HTTP endpoints for probes and Prometheus scraping.

- /health  liveness, always 200
- /ready   200 once the resource cache has completed a refresh, 503 before
- /metrics controller and cache state in Prometheus text format
"""
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

from flask import Flask, Response, jsonify
from werkzeug.serving import make_server

from config import parse_bind_addr

logger = logging.getLogger(__name__)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def _metric(lines: List[str], name: str, kind: str, help_text: str, samples: Dict[str, float]) -> None:
    """Append one metric family; ``samples`` maps a label string ("" for none) to a value."""
    lines.append(f"# HELP {name} {help_text}")
    lines.append(f"# TYPE {name} {kind}")
    for labels, value in samples.items():
        suffix = f"{{{labels}}}" if labels else ""
        lines.append(f"{name}{suffix} {value}")
    lines.append("")


CONTROLLER_FAMILIES = [
    ("hibernation_syncs_total", "counter", "Project syncs run by the controller"),
    ("hibernation_sync_failures_total", "counter", "Project syncs that raised an error"),
    ("hibernation_sync_seconds_total", "counter", "Total time spent syncing projects"),
    ("hibernation_sync_last_seconds", "gauge", "Duration of the most recent project sync"),
    ("hibernation_sync_max_seconds", "gauge", "Longest project sync observed"),
    ("hibernation_decisions_total", "counter",
     "Sleep, wake and idle decisions, enforced or suppressed by dry-run"),
]


def _controller_samples(families: Dict[str, Dict[str, float]], controller: str, stats: Dict[str, float],
                        decisions: Dict[str, str]) -> None:
    """Add one controller's samples to the shared per-family sample maps."""
    label = f'controller="{controller}"'
    families["hibernation_syncs_total"][label] = stats.get('syncs_total', 0)
    families["hibernation_sync_failures_total"][label] = stats.get('sync_failures_total', 0)
    families["hibernation_sync_seconds_total"][label] = round(stats.get('sync_seconds_total', 0.0), 6)
    families["hibernation_sync_last_seconds"][label] = round(stats.get('last_sync_seconds', 0.0), 6)
    families["hibernation_sync_max_seconds"][label] = round(stats.get('max_sync_seconds', 0.0), 6)
    samples = families["hibernation_decisions_total"]
    for counter, decision in decisions.items():
        samples[f'{label},decision="{decision}",mode="enforced"'] = stats.get(f'{counter}_enforced', 0)
        samples[f'{label},decision="{decision}",mode="dry_run"'] = stats.get(f'{counter}_dry_run', 0)


def render_metrics(cache, sleeper, idler, collect_cache: bool = True, started_at: Optional[float] = None) -> str:
    lines: List[str] = []
    if started_at is not None:
        _metric(lines, "hibernation_uptime_seconds", "gauge",
                "Controller uptime in seconds", {"": round(time.time() - started_at, 2)})

    if collect_cache:
        _metric(lines, "hibernation_cache_projects", "gauge",
                "Projects in the resource cache", {"": cache.project_count})
        _metric(lines, "hibernation_cache_refreshes_total", "counter",
                "Completed cache refreshes", {"": cache.refreshes_total})
        _metric(lines, "hibernation_cache_refresh_failures_total", "counter",
                "Cache refreshes that could not list projects", {"": cache.refresh_failures})
        _metric(lines, "hibernation_cache_failed_projects", "gauge",
                "Projects whose last refresh failed", {"": cache.failed_projects})
        _metric(lines, "hibernation_cache_projects_missing_kinds", "gauge",
                "Projects cached without some resource kinds", {"": cache.projects_missing_kinds()})
        _metric(lines, "hibernation_cache_refresh_seconds", "gauge",
                "Duration of the last cache refresh", {"": round(cache.last_refresh_duration, 6)})
        totals: Dict[str, int] = {}
        for snapshot in cache.snapshots():
            for key, value in snapshot.summary().items():
                totals[key] = totals.get(key, 0) + value
        _metric(lines, "hibernation_cache_pods", "gauge",
                "Pods across cached projects", {
                    'state="all"': totals.get('pods', 0),
                    'state="active"': totals.get('active_pods', 0),
                })
        _metric(lines, "hibernation_cache_scalables", "gauge",
                "Scalable controllers across cached projects", {"": totals.get('scalables', 0)})
        _metric(lines, "hibernation_cache_active_builds", "gauge",
                "Builds pending or running across cached projects", {"": totals.get('active_builds', 0)})
        if cache.last_refresh is not None:
            _metric(lines, "hibernation_cache_last_refresh_timestamp_seconds", "gauge",
                    "Unix time of the last cache refresh", {"": cache.last_refresh.timestamp()})

    families: Dict[str, Dict[str, float]] = {name: {} for name, _, _ in CONTROLLER_FAMILIES}
    if sleeper is not None:
        _controller_samples(families, "force-sleep", sleeper.stats.snapshot(),
                            {'sleep': 'sleep', 'wake': 'wake'})
    if idler is not None:
        _controller_samples(families, "auto-idler", idler.stats.snapshot(), {'idle': 'idle'})
    if sleeper is not None or idler is not None:
        for name, kind, help_text in CONTROLLER_FAMILIES:
            _metric(lines, name, kind, help_text, families[name])

    if sleeper is not None:
        _metric(lines, "hibernation_projects_sleeping", "gauge",
                "Projects currently in force-sleep", {"": sleeper.sleeping_count()})
    if idler is not None:
        stats = idler.stats.snapshot()
        _metric(lines, "hibernation_scalables_idled", "gauge",
                "Scalables the idler considers idled", {"": idler.idled_count()})
        _metric(lines, "hibernation_idle_metrics_failures_total", "counter",
                "Traffic queries that failed", {"": stats.get('metrics_failures', 0)})
    return '\n'.join(lines)


def create_app(cache, sleeper=None, idler=None, collect_cache: bool = True) -> Flask:
    app = Flask(__name__)
    started_at = time.time()

    @app.route('/health')
    def health():
        """Health check endpoint for liveness probes"""
        return jsonify({"status": "healthy", "timestamp": _timestamp()})

    @app.route('/ready')
    def ready():
        """Readiness check endpoint - ready once the cache has been filled"""
        if cache.ready:
            return jsonify({
                "status": "ready",
                "projects": cache.project_count,
                "timestamp": _timestamp(),
            })
        return jsonify({
            "status": "not_ready",
            "reason": "Resource cache has not completed a refresh",
            "timestamp": _timestamp(),
        }), 503

    @app.route('/metrics')
    def metrics():
        """Prometheus metrics endpoint"""
        body = render_metrics(cache, sleeper, idler, collect_cache=collect_cache, started_at=started_at)
        return Response(body, mimetype='text/plain')

    return app


def serve(app: Flask, bind_addr: str) -> threading.Thread:
    """Serve ``app`` on ``bind_addr`` from a daemon thread."""
    host, port = parse_bind_addr(bind_addr)
    httpd = make_server(host, port, app, threaded=True)
    thread = threading.Thread(target=httpd.serve_forever, name="metrics-server", daemon=True)
    thread.start()
    logger.info(f"Metrics server listening on {host}:{port}")
    return thread
