"""Rolling quota-seconds accounting for one project.

A sample covers ``[start, end)`` and carries the memory-weighted seconds the
project's pods consumed in that span. A pod whose memory request equals the
memory quota for its scope consumes one quota-second per second it runs.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from cache.models import PodInfo, ProjectQuota


@dataclass(frozen=True)
class QuotaSample:
    start: datetime
    end: datetime
    quota_seconds: float


def _overlap_seconds(interval, since: datetime, until: datetime) -> float:
    start, end = interval
    start = max(start, since)
    end = min(end, until)
    if end <= start:
        return 0.0
    return (end - start).total_seconds()


def quota_seconds(pods: Iterable[PodInfo], quota: ProjectQuota,
                  default_terminating: int, default_nonterminating: int,
                  since: datetime, until: datetime) -> float:
    """Memory-weighted running seconds of ``pods`` inside ``[since, until)``.

    Each pod is weighed against the project's memory quota for its scope,
    falling back to the configured default when the project sets none.
    """
    total = 0.0
    for pod in pods:
        if pod.memory_request <= 0:
            continue
        interval = pod.running_interval(until)
        if interval is None:
            continue
        seconds = _overlap_seconds(interval, since, until)
        if not seconds:
            continue
        if pod.terminating:
            memory_quota = quota.terminating_memory or default_terminating
        else:
            memory_quota = quota.nonterminating_memory or default_nonterminating
        total += seconds * pod.memory_request / memory_quota
    return total


class QuotaWindow:
    """Samples covering the trailing ``period``; older ones are evicted before totalling."""

    def __init__(self, period: timedelta):
        if period.total_seconds() <= 0:
            raise ValueError("period must be positive")
        self.period = period
        self._samples: List[QuotaSample] = []
        self._anchor: Optional[datetime] = None

    def add(self, sample: QuotaSample) -> None:
        if sample.end < sample.start:
            raise ValueError("sample ends before it starts")
        self._samples.append(sample)
        self._anchor = sample.end

    def evict(self, now: datetime) -> int:
        """Drop samples that ended at or before ``now - period``; returns how many."""
        cutoff = now - self.period
        kept = [s for s in self._samples if s.end > cutoff]
        dropped = len(self._samples) - len(kept)
        self._samples = kept
        return dropped

    def total(self) -> float:
        return sum(s.quota_seconds for s in self._samples)

    def consumption(self, now: datetime) -> float:
        self.evict(now)
        return self.total()

    def reset(self, anchor: Optional[datetime] = None) -> None:
        """Forget every sample; accounting resumes from ``anchor`` when given."""
        self._samples = []
        self._anchor = anchor

    @property
    def last_sample_end(self) -> Optional[datetime]:
        return self._anchor

    @property
    def samples(self) -> List[QuotaSample]:
        return list(self._samples)

    def __len__(self) -> int:
        return len(self._samples)
