import logging
import os
import time
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

import requests

from normalize.quantity import format_duration
from normalize.series import sum_vector

logger = logging.getLogger(__name__)


class PrometheusError(Exception):
    """Base exception for Prometheus client errors"""
    pass


class PrometheusConnectionError(PrometheusError):
    """Prometheus could not be reached after all retries"""
    pass


class PrometheusQueryError(PrometheusError):
    """Prometheus rejected the query or returned an unusable payload"""
    pass


def read_token(path: Optional[str]) -> Optional[str]:
    """Bearer token from a service-account token file, None if there is none."""
    if not path or not os.path.exists(path):
        return None
    with open(path, 'r') as f:
        token = f.read().strip()
    return token or None


def _label_value(value: str) -> str:
    return value.replace('\\', '\\\\').replace('"', '\\"')


def _pod_regex(pod_names: Iterable[str]) -> str:
    # Pod names are DNS labels, so the only regex metacharacter they can hold is '.'
    return '|'.join(name.replace('.', r'\.') for name in sorted(pod_names))


class PrometheusClient:
    """Instant queries against the Prometheus HTTP API.

    Connection failures are retried with exponential backoff
    (``backoff_base * 2**attempt`` seconds); HTTP and payload errors are not.
    """

    def __init__(self, url: str, timeout: int = 30, retry_count: int = 3,
                 backoff_base: float = 1, token: Optional[str] = None,
                 verify: Union[bool, str] = True):
        self.url = url.rstrip('/')
        self.timeout = timeout
        self.retry_count = max(1, retry_count)
        self.backoff_base = backoff_base
        self.verify = verify
        self.headers: Dict[str, str] = {}
        if token:
            self.headers['Authorization'] = f'Bearer {token}'

    @classmethod
    def from_settings(cls, settings) -> 'PrometheusClient':
        verify: Union[bool, str] = True
        if settings.prometheus_ca_file and os.path.exists(settings.prometheus_ca_file):
            verify = settings.prometheus_ca_file
        return cls(
            settings.prometheus_url,
            timeout=settings.prometheus_timeout_seconds,
            retry_count=settings.prometheus_retry_count,
            backoff_base=settings.prometheus_retry_backoff_base,
            token=read_token(settings.prometheus_token_file),
            verify=verify,
        )

    def query_instant(self, promql: str) -> List[Dict[str, Any]]:
        """Run an instant query and return ``data.result``.

        Raises:
            PrometheusConnectionError: every attempt failed to connect
            PrometheusQueryError: non-200 status or an error payload
        """
        url = f"{self.url}/api/v1/query"
        last_error: Optional[Exception] = None
        for attempt in range(self.retry_count):
            try:
                r = requests.get(
                    url,
                    params={'query': promql},
                    headers=self.headers,
                    timeout=self.timeout,
                    verify=self.verify,
                )
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                last_error = e
                if attempt == self.retry_count - 1:
                    logger.warning(f"Prometheus connection failed (attempt {attempt + 1}/{self.retry_count}): {e}")
                    break
                delay = self.backoff_base * (2 ** attempt)
                logger.warning(f"Prometheus connection failed (attempt {attempt + 1}/{self.retry_count}), "
                               f"retrying in {delay}s: {e}")
                time.sleep(delay)
                continue
            except requests.RequestException as e:
                raise PrometheusQueryError(f"request failed: {e}")

            if r.status_code != 200:
                raise PrometheusQueryError(f"prometheus returned status {r.status_code}: {r.text}")
            try:
                data = r.json()
            except ValueError as e:
                raise PrometheusQueryError(f"invalid JSON from prometheus: {e}")
            if data.get('status') != 'success':
                raise PrometheusQueryError(f"prometheus error: {data.get('error') or data}")
            return data.get('data', {}).get('result', [])

        raise PrometheusConnectionError(
            f"Prometheus unreachable after {self.retry_count} attempts: {last_error}"
        )

    def received_bytes(self, namespace: str, pod_names: Iterable[str],
                       window: timedelta) -> Optional[float]:
        """Bytes received by ``pod_names`` over the trailing ``window``; None when there is no data."""
        pods = _pod_regex(pod_names)
        if not pods:
            return None
        promql = (
            'sum(increase(container_network_receive_bytes_total'
            f'{{namespace="{_label_value(namespace)}",pod=~"{_label_value(pods)}"}}'
            f'[{format_duration(window)}]))'
        )
        return sum_vector(self.query_instant(promql))
