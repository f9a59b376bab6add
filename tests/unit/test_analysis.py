"""
Tests for the analysis engine, metric classification and metric providers.
"""

from __future__ import annotations

import httpx
import pytest
from factories import error_rate_analysis

from marty_rollout.deployment import (
    AnalysisConfig,
    AnalysisEngine,
    AnalysisMetric,
    AnalysisStatus,
    MetricStatus,
    PrometheusMetricsProvider,
    Recommendation,
    StaticMetricsProvider,
    TimeRange,
)
from marty_rollout.deployment.analysis import classify, overall_score, summarize_metric
from marty_rollout.deployment.enums import MetricTrend

ERROR_RATE = AnalysisMetric(
    name="error-rate", query="error_rate", success_threshold=0.01, failure_threshold=0.05
)
SUCCESS_RATE = AnalysisMetric(
    name="success-rate", query="success_rate", success_threshold=0.99, failure_threshold=0.95
)


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_engine(series=None, default=None):
    provider = StaticMetricsProvider(series, default=default)
    sleep = SleepRecorder()
    return AnalysisEngine(provider, sleep=sleep), provider, sleep


class TestClassification:
    """Thresholds in both directions."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (0.0, MetricStatus.PASS),
            (0.01, MetricStatus.PASS),
            (0.03, MetricStatus.WARNING),
            (0.05, MetricStatus.WARNING),
            (0.08, MetricStatus.FAIL),
            (None, MetricStatus.WARNING),
        ],
    )
    def test_lower_is_better(self, value, expected):
        assert classify(ERROR_RATE, value) == expected

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (1.0, MetricStatus.PASS),
            (0.99, MetricStatus.PASS),
            (0.97, MetricStatus.WARNING),
            (0.90, MetricStatus.FAIL),
        ],
    )
    def test_higher_is_better(self, value, expected):
        assert classify(SUCCESS_RATE, value) == expected

    def test_last_sample_decides(self):
        result = summarize_metric(ERROR_RATE, [0.2, 0.1, 0.005])

        assert result.status == MetricStatus.PASS
        assert result.value == 0.005
        assert result.trend == MetricTrend.IMPROVING

    def test_consecutive_successes(self):
        assert summarize_metric(ERROR_RATE, [0.2, 0.005], 2).status == MetricStatus.WARNING
        assert summarize_metric(ERROR_RATE, [0.005, 0.005], 2).status == MetricStatus.PASS

    def test_degrading_trend(self):
        assert summarize_metric(SUCCESS_RATE, [0.999, 0.97]).trend == MetricTrend.DEGRADING

    def test_weighted_score(self):
        heavy = summarize_metric(ERROR_RATE, [0.0])
        light = summarize_metric(
            AnalysisMetric(
                name="latency", query="latency", success_threshold=1, failure_threshold=3, weight=0.5
            ),
            [5.0],
        )

        assert overall_score([heavy, light]) == pytest.approx(100 / 1.5)
        assert overall_score([]) == 100.0


class TestAnalysisEngine:
    """Checkpoint outcomes and recommendations."""

    @pytest.mark.asyncio
    async def test_disabled_analysis_passes(self):
        engine, provider, _ = make_engine()

        intermediate = await engine.evaluate(
            error_rate_analysis(enabled=False), "canary", application="checkout", version="2.1.0", final=False
        )
        final = await engine.evaluate(None, "canary", application="checkout", version="2.1.0", final=True)

        assert intermediate.status == AnalysisStatus.SUCCESSFUL
        assert intermediate.recommendation == Recommendation.CONTINUE
        assert final.recommendation == Recommendation.PROMOTE
        assert final.overall_score == 100.0
        assert provider.queries == []

    @pytest.mark.asyncio
    async def test_healthy_metrics_continue_then_promote(self):
        engine, _, _ = make_engine({"error_rate": 0.004})
        config = error_rate_analysis()

        step = await engine.evaluate(config, "canary", application="checkout", version="2.1.0", final=False)
        last = await engine.evaluate(config, "canary", application="checkout", version="2.1.0", final=True)

        assert step.status == AnalysisStatus.SUCCESSFUL
        assert step.recommendation == Recommendation.CONTINUE
        assert step.metrics[0].value == 0.004
        assert last.recommendation == Recommendation.PROMOTE

    @pytest.mark.asyncio
    async def test_failing_metric_recommends_rollback(self):
        engine, _, _ = make_engine({"error_rate": 0.09})

        result = await engine.evaluate(
            error_rate_analysis(), "canary", application="checkout", version="2.1.0", final=True
        )

        assert result.status == AnalysisStatus.FAILED
        assert result.recommendation == Recommendation.ROLLBACK
        assert result.overall_score == 0.0
        assert result.metrics[0].status == MetricStatus.FAIL

    @pytest.mark.asyncio
    async def test_failure_condition_wins_over_passing_metrics(self):
        engine, _, _ = make_engine({"error_rate": 0.004})
        config = error_rate_analysis(failure_condition="error-rate > 0.001")

        result = await engine.evaluate(config, "green", application="checkout", version="2.1.0", final=False)

        assert result.status == AnalysisStatus.FAILED
        assert result.recommendation == Recommendation.ROLLBACK

    @pytest.mark.asyncio
    async def test_warning_zone_is_inconclusive(self):
        engine, _, _ = make_engine({"error_rate": 0.03})

        step = await engine.evaluate(
            error_rate_analysis(), "canary", application="checkout", version="2.1.0", final=False
        )
        last = await engine.evaluate(
            error_rate_analysis(), "canary", application="checkout", version="2.1.0", final=True
        )

        assert step.status == AnalysisStatus.INCONCLUSIVE
        assert step.recommendation == Recommendation.CONTINUE
        assert step.overall_score == 70.0
        assert last.recommendation == Recommendation.PROMOTE

    @pytest.mark.asyncio
    async def test_inconclusive_condition(self):
        engine, _, _ = make_engine({"error_rate": 0.0})
        config = error_rate_analysis(inconclusive_condition="error-rate == 0")

        result = await engine.evaluate(config, "canary", application="checkout", version="2.1.0", final=False)

        assert result.status == AnalysisStatus.INCONCLUSIVE

    @pytest.mark.asyncio
    async def test_missing_data_is_not_a_failure(self):
        engine, _, _ = make_engine()

        result = await engine.evaluate(
            error_rate_analysis(), "canary", application="checkout", version="2.1.0", final=False
        )

        assert result.status == AnalysisStatus.INCONCLUSIVE
        assert result.metrics[0].value is None
        assert result.recommendation == Recommendation.CONTINUE

    @pytest.mark.asyncio
    async def test_samples_across_the_window(self):
        readings = iter([0.08, 0.004, 0.003])
        engine, provider, sleep = make_engine({"error_rate": lambda: next(readings)})
        config = error_rate_analysis(duration_seconds=90, interval_seconds=30, consecutive_successes=2)

        result = await engine.evaluate(config, "canary", application="checkout", version="2.1.0", final=False)

        assert len(provider.queries) == 3
        assert sleep.delays == [30, 30]
        assert result.status == AnalysisStatus.SUCCESSFUL
        assert result.metrics[0].trend == MetricTrend.IMPROVING

    @pytest.mark.asyncio
    async def test_query_placeholders_are_rendered(self):
        metric = AnalysisMetric(
            name="error-rate",
            query='errors{{app="{application}",env="{environment}",version="{version}"}}',
            success_threshold=0.01,
            failure_threshold=0.05,
        )
        engine, provider, _ = make_engine(default=0.0)
        config = AnalysisConfig(metrics=(metric,), interval_seconds=0)

        await engine.evaluate(config, "canary", application="checkout", version="2.1.0", final=False)

        assert provider.queries == ['errors{app="checkout",env="canary",version="2.1.0"}']

    @pytest.mark.asyncio
    async def test_raw_promql_is_left_alone(self):
        metric = AnalysisMetric(
            name="error-rate",
            query='sum(rate(errors{job="api"}[5m]))',
            success_threshold=0.01,
            failure_threshold=0.05,
        )
        engine, provider, _ = make_engine(default=0.0)

        await engine.evaluate(
            AnalysisConfig(metrics=(metric,), interval_seconds=0),
            "canary",
            application="checkout",
            version="2.1.0",
            final=False,
        )

        assert provider.queries == ['sum(rate(errors{job="api"}[5m]))']


class TestPrometheusMetricsProvider:
    """Range queries over the Prometheus HTTP API."""

    @staticmethod
    def _provider(handler) -> PrometheusMetricsProvider:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return PrometheusMetricsProvider("http://prometheus:9090/", client=client)

    @pytest.mark.asyncio
    async def test_parses_matrix_result(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["query"] = request.url.params["query"]
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "data": {
                        "resultType": "matrix",
                        "result": [{"metric": {}, "values": [[1, "0.02"], [2, "0.01"]]}],
                    },
                },
            )

        provider = self._provider(handler)
        series = await provider.query("error_rate", TimeRange.trailing(60, 30))
        await provider.aclose()

        assert series == [0.02, 0.01]
        assert seen == {"path": "/api/v1/query_range", "query": "error_rate"}

    @pytest.mark.asyncio
    async def test_empty_result(self):
        provider = self._provider(
            lambda request: httpx.Response(200, json={"status": "success", "data": {"result": []}})
        )

        assert await provider.query("error_rate", TimeRange.trailing(60, 30)) == []
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_server_error_yields_no_data(self):
        provider = self._provider(lambda request: httpx.Response(503, text="unavailable"))

        assert await provider.query("error_rate", TimeRange.trailing(60, 30)) == []
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_rejected_query_yields_no_data(self):
        provider = self._provider(
            lambda request: httpx.Response(200, json={"status": "error", "error": "parse error"})
        )

        assert await provider.query("error_rate(", TimeRange.trailing(60, 30)) == []
        await provider.aclose()
