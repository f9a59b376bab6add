"""
Analysis checkpoints.

An :class:`AnalysisEngine` samples the metrics of an :class:`AnalysisConfig`
from a :class:`MetricsProvider`, classifies every metric against its
thresholds, evaluates the success/failure/inconclusive conditions and turns
the outcome into a :class:`Recommendation`.
"""

from __future__ import annotations

import asyncio
import builtins
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

import httpx
import structlog

from .conditions import parse_condition
from .enums import AnalysisStatus, MetricStatus, MetricTrend, Recommendation
from .models import AnalysisConfig, AnalysisMetric, AnalysisResult, MetricResult, utc_now

logger = structlog.get_logger(__name__)

_STATUS_SCORES = {MetricStatus.PASS: 100.0, MetricStatus.WARNING: 70.0, MetricStatus.FAIL: 0.0}


@dataclass(frozen=True)
class TimeRange:
    start: datetime
    end: datetime
    step_seconds: float

    @classmethod
    def trailing(cls, window_seconds: float, step_seconds: float) -> TimeRange:
        end = utc_now()
        return cls(start=end - timedelta(seconds=window_seconds), end=end, step_seconds=step_seconds)


class MetricsProvider(ABC):
    """Source of metric time series."""

    @abstractmethod
    async def query(self, query: str, time_range: TimeRange) -> builtins.list[float]:
        """Return the series for ``query``, oldest first; empty when there is no data."""


class StaticMetricsProvider(MetricsProvider):
    """Serves canned series keyed by the rendered query.

    Values may be a number, a list of numbers or a callable returning either,
    which lets tests script a metric that degrades over time.
    """

    def __init__(self, series: Mapping[str, object] | None = None, default: object = None):
        self.series = dict(series or {})
        self.default = default
        self.queries: builtins.list[str] = []

    def set(self, query: str, value: object) -> None:
        self.series[query] = value

    async def query(self, query: str, time_range: TimeRange) -> builtins.list[float]:
        self.queries.append(query)
        value = self.series.get(query, self.default)
        if callable(value):
            value = value()
        if value is None:
            return []
        if isinstance(value, (int, float)):
            return [float(value)]
        return [float(v) for v in value]


class PrometheusMetricsProvider(MetricsProvider):
    """Range queries against the Prometheus HTTP API."""

    def __init__(self, base_url: str, timeout: float = 10.0, client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def query(self, query: str, time_range: TimeRange) -> builtins.list[float]:
        params = {
            "query": query,
            "start": time_range.start.timestamp(),
            "end": time_range.end.timestamp(),
            "step": max(time_range.step_seconds, 1.0),
        }
        try:
            response = await self._client.get(f"{self.base_url}/api/v1/query_range", params=params)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("analysis.prometheus.query_failed", query=query, error=str(exc))
            return []

        if payload.get("status") != "success":
            logger.warning("analysis.prometheus.query_rejected", query=query, error=payload.get("error"))
            return []
        results = payload.get("data", {}).get("result", [])
        if not results:
            return []
        return [float(value) for _, value in results[0].get("values", [])]

    async def aclose(self) -> None:
        await self._client.aclose()


def _render_query(template: str, **placeholders: str) -> str:
    try:
        return template.format(**placeholders)
    except (KeyError, IndexError, ValueError):
        # Raw PromQL with single braces and no placeholders
        return template


def classify(metric: AnalysisMetric, value: float | None) -> MetricStatus:
    """Classify one observation against the metric thresholds."""
    if value is None:
        return MetricStatus.WARNING
    if metric.higher_is_better:
        if value >= metric.success_threshold:
            return MetricStatus.PASS
        if value < metric.failure_threshold:
            return MetricStatus.FAIL
        return MetricStatus.WARNING
    if value <= metric.success_threshold:
        return MetricStatus.PASS
    if value > metric.failure_threshold:
        return MetricStatus.FAIL
    return MetricStatus.WARNING


def _trend(metric: AnalysisMetric, samples: Sequence[float | None]) -> MetricTrend:
    observed = [value for value in samples if value is not None]
    if len(observed) < 2 or observed[0] == observed[-1]:
        return MetricTrend.STABLE
    rising = observed[-1] > observed[0]
    return MetricTrend.IMPROVING if rising == metric.higher_is_better else MetricTrend.DEGRADING


def summarize_metric(
    metric: AnalysisMetric, samples: Sequence[float | None], consecutive_successes: int = 1
) -> MetricResult:
    """Fold a metric's samples into one result; the last sample decides."""
    last = samples[-1] if samples else None
    status = classify(metric, last)
    if status == MetricStatus.PASS:
        trailing = 0
        for value in reversed(samples):
            if classify(metric, value) != MetricStatus.PASS:
                break
            trailing += 1
        if trailing < consecutive_successes:
            status = MetricStatus.WARNING
    return MetricResult(
        name=metric.name,
        value=last,
        threshold=metric.success_threshold,
        status=status,
        trend=_trend(metric, samples),
        weight=metric.weight,
    )


def overall_score(metrics: Sequence[MetricResult]) -> float:
    total_weight = sum(metric.weight for metric in metrics)
    if total_weight <= 0:
        return 100.0
    return sum(_STATUS_SCORES[metric.status] * metric.weight for metric in metrics) / total_weight


class AnalysisEngine:
    """Evaluates analysis checkpoints against a metrics provider."""

    def __init__(
        self,
        provider: MetricsProvider,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self._sleep = sleep

    async def evaluate(
        self,
        config: AnalysisConfig | None,
        environment: str,
        *,
        application: str,
        version: str,
        final: bool,
    ) -> AnalysisResult:
        started = utc_now()
        if config is None or not config.enabled or not config.metrics:
            return AnalysisResult(
                status=AnalysisStatus.SUCCESSFUL,
                overall_score=100.0,
                recommendation=Recommendation.PROMOTE if final else Recommendation.CONTINUE,
                start_time=started,
                end_time=utc_now(),
            )

        queries = {
            metric.name: _render_query(
                metric.query, application=application, environment=environment, version=version
            )
            for metric in config.metrics
        }
        window = max(config.interval_seconds, 60.0)
        step = config.interval_seconds or 30.0
        samples: builtins.dict[str, builtins.list[float | None]] = {m.name: [] for m in config.metrics}

        for index in range(config.sample_count):
            if index:
                await self._sleep(config.interval_seconds)
            time_range = TimeRange.trailing(window, step)
            for metric in config.metrics:
                series = await self.provider.query(queries[metric.name], time_range)
                samples[metric.name].append(series[-1] if series else None)

        results = [
            summarize_metric(metric, samples[metric.name], config.consecutive_successes)
            for metric in config.metrics
        ]
        values = {result.name: result.value for result in results}

        success = parse_condition(config.success_condition)
        failure = parse_condition(config.failure_condition)
        inconclusive = parse_condition(config.inconclusive_condition)

        if any(r.status == MetricStatus.FAIL for r in results) or (
            failure is not None and failure.evaluate(values)
        ):
            status = AnalysisStatus.FAILED
        elif inconclusive is not None and inconclusive.evaluate(values):
            status = AnalysisStatus.INCONCLUSIVE
        elif (success is None or success.evaluate(values)) and all(
            r.status == MetricStatus.PASS for r in results
        ):
            status = AnalysisStatus.SUCCESSFUL
        else:
            status = AnalysisStatus.INCONCLUSIVE

        if status == AnalysisStatus.FAILED:
            recommendation = Recommendation.ROLLBACK
        elif final:
            recommendation = Recommendation.PROMOTE
        else:
            recommendation = Recommendation.CONTINUE

        result = AnalysisResult(
            status=status,
            metrics=results,
            overall_score=overall_score(results),
            recommendation=recommendation,
            start_time=started,
            end_time=utc_now(),
        )
        logger.info(
            "analysis.completed",
            environment=environment,
            status=status.value,
            score=round(result.overall_score, 2),
            recommendation=recommendation.value,
            samples=config.sample_count,
        )
        return result
