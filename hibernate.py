"""Entry point: wire the resource cache, force-sleep controller, auto-idler and metrics server.

Usage: hibernate [CONFIG_FILE]
"""
import logging
import signal
import sys
import threading
from typing import List, Optional

from cache.resource_cache import ResourceCache
from cluster.client import ClusterClient, ClusterError, create_api_client
from cluster.discovery import CapabilityLookup
from config import ConfigValidationError, Settings, load_settings, setup_logging
from forcesleep.sleeper import Sleeper, SleeperConfig
from idling.idler import Idler, IdlerConfig
from metrics.prometheus_client import PrometheusClient
from normalize.quantity import format_duration
from server import create_app, serve

logger = logging.getLogger(__name__)


def sleeper_config(settings: Settings) -> SleeperConfig:
    return SleeperConfig(
        quota=settings.quota,
        period=settings.period,
        sleep_sync_period=settings.sleep_sync_period,
        project_sleep_period=settings.sleep_duration,
        term_quota=settings.terminating_quota,
        nonterm_quota=settings.nonterminating_quota,
        sync_workers=settings.workers,
        dry_run=settings.sleep_dry_run,
    )


def idler_config(settings: Settings) -> IdlerConfig:
    return IdlerConfig(
        idle_sync_period=settings.idle_sync_period,
        idle_query_period=settings.idle_query_period,
        threshold=settings.idle_threshold,
        project_sleep_period=settings.sleep_duration,
        sync_workers=settings.workers,
        dry_run=settings.idle_dry_run,
    )


def _install_signal_handlers(stop: threading.Event) -> None:
    def _handle(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop.set()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)


def main(argv: Optional[List[str]] = None, stop: Optional[threading.Event] = None) -> int:
    setup_logging()
    if argv is None:
        argv = sys.argv[1:]

    try:
        settings = load_settings(argv[0] if argv else None)
        logger.info("Configuration validated successfully")
    except ConfigValidationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    try:
        client = ClusterClient(create_api_client())
    except ClusterError as e:
        logger.error(f"Cluster API unavailable: {e}")
        return 1

    if stop is None:
        stop = threading.Event()
        _install_signal_handlers(stop)

    discovery = CapabilityLookup(client.served_group_versions)
    cache = ResourceCache(
        client,
        discovery,
        settings.cache_refresh_period,
        excluded_namespaces=settings.excluded_namespaces,
        workers=settings.cache_workers,
    )
    sleeper = Sleeper(sleeper_config(settings), cache, client)
    idler = Idler(
        idler_config(settings),
        cache,
        PrometheusClient.from_settings(settings),
        client,
        sleeper.is_force_sleeping,
    )

    logger.info("=" * 60)
    logger.info(f"Starting project hibernation (sleep dry-run={settings.sleep_dry_run}, "
                f"idle dry-run={settings.idle_dry_run})")
    logger.info(f"Quota {format_duration(settings.quota)} per {format_duration(settings.period)}, "
                f"idle threshold {settings.idle_threshold} bytes")
    logger.info("=" * 60)

    cache.run(stop)
    sleeper.run(stop)
    idler.run(stop)

    app = create_app(cache, sleeper, idler, collect_cache=settings.collect_cache)
    try:
        serve(app, settings.metrics_bind_addr)
    except OSError as e:
        logger.error(f"Cannot start metrics server on {settings.metrics_bind_addr}: {e}")
        stop.set()
        return 1

    stop.wait()
    logger.info("Hibernation controller stopped")
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
