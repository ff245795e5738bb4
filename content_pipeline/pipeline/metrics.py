"""Progress and metrics calculation.

Everything here reads run state and never mutates it. Durations are seconds.
Estimates are rough heuristics: linear extrapolation of elapsed time plus a
review-time allowance per open blocking item.
"""

import math
import statistics
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Literal, Optional

import structlog
from pydantic import BaseModel, Field

from content_pipeline.config.settings import Settings, get_settings
from content_pipeline.models import (
    BlockingItemType,
    EntityProcessingRecord,
    EntityStatus,
    PipelineMetrics,
    PipelineRun,
    PipelineState,
    PipelineTemplate,
    Priority,
    utc_now,
)

logger = structlog.get_logger(__name__)

# Share of total run time attributed to each stage
STEP_WEIGHTS = {
    PipelineState.CLEANING_TRANSCRIPT: 0.15,
    PipelineState.EXTRACTING_INSIGHTS: 0.25,
    PipelineState.REVIEWING_INSIGHTS: 0.20,
    PipelineState.GENERATING_POSTS: 0.20,
    PipelineState.REVIEWING_POSTS: 0.15,
    PipelineState.SCHEDULING: 0.05,
}

# Review time per template relative to the configured default
REVIEW_TIME_FACTORS = {
    PipelineTemplate.STANDARD: 1.0,
    PipelineTemplate.FAST_TRACK: 0.4,
    PipelineTemplate.PODCAST: 1.2,
    PipelineTemplate.VIDEO: 1.0,
    PipelineTemplate.ARTICLE: 0.6,
    PipelineTemplate.CUSTOM: 1.0,
}

HISTORY_STATES = frozenset(
    {
        PipelineState.COMPLETED,
        PipelineState.PARTIALLY_COMPLETED,
        PipelineState.FAILED,
        PipelineState.CANCELLED,
    }
)


class HistoricalMetrics(BaseModel):
    """Aggregate performance of past completed runs of one template."""

    template: PipelineTemplate
    average_duration: float = Field(..., ge=0)
    median_duration: float = Field(..., ge=0)
    success_rate: float = Field(default=0.0, ge=0, le=100)
    failure_rate: float = Field(default=0.0, ge=0, le=100)
    average_insight_count: float = Field(default=0.0, ge=0)
    average_post_count: float = Field(default=0.0, ge=0)
    average_review_time: float = Field(..., ge=0)
    sample_size: int = Field(default=0, ge=0)


class PerformanceRecommendation(BaseModel):
    type: Literal["warning", "info", "success"]
    area: str
    message: str
    impact: Literal["high", "medium", "low"]
    actionable: bool


class StepMetrics(BaseModel):
    step_name: str
    success_rate: float = 0.0
    failure_count: int = 0
    failure_reasons: dict[str, int] = Field(default_factory=dict)


class TrendPoint(BaseModel):
    date: date
    average_duration: float
    success_rate: float
    runs: int


class BlockingSummary(BaseModel):
    """Structured data behind messages like "Pipeline blocked: N items"."""

    run_id: str
    state: PipelineState
    count: int
    by_type: dict[BlockingItemType, int] = Field(default_factory=dict)
    by_priority: dict[Priority, int] = Field(default_factory=dict)
    item_ids: list[str] = Field(default_factory=list)
    entity_ids: list[str] = Field(default_factory=list)


# =============================================================================
# Progress
# =============================================================================

def calculate_progress(completed_steps: int, total_steps: int) -> int:
    """Percent complete, rounded half up and clamped to [0, 100]."""
    if total_steps <= 0:
        return 0
    completed = min(max(completed_steps, 0), total_steps)
    return min(100, math.floor(completed * 100 / total_steps + 0.5))


def run_progress(run: PipelineRun) -> int:
    return calculate_progress(run.completed_steps, run.total_steps)


def _average(values: list[float]) -> float:
    return statistics.fmean(values) if values else 0.0


def _median(values: list[float]) -> float:
    return statistics.median(values) if values else 0.0


# =============================================================================
# Durations
# =============================================================================

def default_review_time(template: PipelineTemplate, settings: Optional[Settings] = None) -> float:
    settings = settings or get_settings()
    return settings.default_review_time_seconds * REVIEW_TIME_FACTORS.get(template, 1.0)


def average_review_time(
    records: Iterable[EntityProcessingRecord],
    default: float = 0.0,
) -> float:
    """Mean time from registration to decision over resolved records."""
    durations = [
        (r.completed_at - r.started_at).total_seconds()
        for r in records
        if r.started_at is not None
        and r.completed_at is not None
        and r.status in (EntityStatus.APPROVED, EntityStatus.REJECTED)
    ]
    durations = [d for d in durations if d >= 0]
    return _average(durations) if durations else default


def step_duration(
    run: PipelineRun,
    state: PipelineState,
    historical: Optional[HistoricalMetrics] = None,
) -> float:
    """Weighted share of a run's duration attributed to one stage.

    Falls back to the historical average duration when the run has not
    finished, and to zero without either.
    """
    weight = STEP_WEIGHTS.get(state, 0.0)
    if run.actual_duration:
        return run.actual_duration * weight
    if historical is not None:
        return historical.average_duration * weight
    return 0.0


def elapsed_seconds(run: PipelineRun, now: Optional[datetime] = None) -> float:
    if run.actual_duration is not None:
        return run.actual_duration
    if run.started_at is None:
        return 0.0
    end = run.completed_at or run.failed_at or now or utc_now()
    return max(0.0, (end - run.started_at).total_seconds())


# =============================================================================
# Run metrics
# =============================================================================

def calculate_run_metrics(run: PipelineRun, now: Optional[datetime] = None) -> PipelineMetrics:
    """Metrics snapshot for one run."""
    insights = list(run.insights.values())
    posts = list(run.posts.values())
    total_steps = run.total_steps

    success_rate = run.completed_steps / total_steps * 100 if total_steps else 0.0
    failure_rate = min(100.0, len(run.failed_steps) / total_steps * 100) if total_steps else 0.0
    total_time = elapsed_seconds(run, now)
    measured = run.model_copy(update={"actual_duration": total_time})

    return PipelineMetrics(
        transcript_processing_time=step_duration(measured, PipelineState.CLEANING_TRANSCRIPT),
        insight_extraction_time=step_duration(measured, PipelineState.EXTRACTING_INSIGHTS),
        average_insight_review_time=average_review_time(insights),
        post_generation_time=step_duration(measured, PipelineState.GENERATING_POSTS),
        average_post_review_time=average_review_time(posts),
        total_processing_time=total_time,
        success_rate=success_rate,
        failure_rate=failure_rate,
        insight_count=len(insights),
        post_count=len(posts),
        approved_insight_count=sum(1 for r in insights if r.status == EntityStatus.APPROVED),
        approved_post_count=sum(1 for r in posts if r.status == EntityStatus.APPROVED),
    )


def default_historical_metrics(
    template: PipelineTemplate,
    settings: Optional[Settings] = None,
) -> HistoricalMetrics:
    settings = settings or get_settings()
    return HistoricalMetrics(
        template=template,
        average_duration=settings.default_average_duration_seconds,
        median_duration=settings.default_average_duration_seconds,
        average_insight_count=settings.default_insight_count,
        average_post_count=settings.default_post_count,
        average_review_time=default_review_time(template, settings),
        sample_size=0,
    )


def historical_metrics(
    template: PipelineTemplate,
    runs: Iterable[PipelineRun],
    settings: Optional[Settings] = None,
) -> HistoricalMetrics:
    """Aggregate the most recent completed runs of a template.

    Returns configured defaults when there are no completed runs.
    """
    settings = settings or get_settings()
    finished = [r for r in runs if r.template == template and r.state in HISTORY_STATES]
    completed = [r for r in finished if r.state == PipelineState.COMPLETED]
    completed.sort(key=lambda r: r.completed_at or r.created_at, reverse=True)
    completed = completed[: settings.history_sample_limit]

    if not completed:
        return default_historical_metrics(template, settings)

    durations = [r.actual_duration for r in completed if r.actual_duration is not None]
    records = [rec for r in completed for rec in (*r.insights.values(), *r.posts.values())]
    failed = sum(1 for r in finished if r.state == PipelineState.FAILED)

    return HistoricalMetrics(
        template=template,
        average_duration=_average(durations) if durations else settings.default_average_duration_seconds,
        median_duration=_median(durations) if durations else settings.default_average_duration_seconds,
        success_rate=len(completed) / len(finished) * 100,
        failure_rate=failed / len(finished) * 100,
        average_insight_count=_average([len(r.insight_ids) for r in completed]),
        average_post_count=_average([len(r.post_ids) for r in completed]),
        average_review_time=average_review_time(records, default_review_time(template, settings)),
        sample_size=len(completed),
    )


def estimate_completion(
    run: PipelineRun,
    historical: HistoricalMetrics,
    now: Optional[datetime] = None,
) -> datetime:
    """Estimate when the run will finish.

    Linear extrapolation of elapsed time over progress, plus the average
    review time for every open blocking item.
    """
    now = now or utc_now()
    if run.completed_at is not None:
        return run.completed_at

    if run.started_at is None or run.progress <= 0:
        return now + timedelta(seconds=historical.average_duration)

    elapsed = (now - run.started_at).total_seconds()
    if elapsed <= 0:
        return now + timedelta(seconds=historical.average_duration)

    estimated_total = elapsed / run.progress * 100
    remaining = max(0.0, estimated_total - elapsed)
    blocking_adjustment = len(run.blocking_items) * historical.average_review_time

    return now + timedelta(seconds=remaining + blocking_adjustment)


# =============================================================================
# Reporting
# =============================================================================

def blocking_summary(run: PipelineRun) -> BlockingSummary:
    by_type: dict[BlockingItemType, int] = defaultdict(int)
    by_priority: dict[Priority, int] = defaultdict(int)
    for item in run.blocking_items:
        by_type[item.type] += 1
        by_priority[item.priority] += 1

    return BlockingSummary(
        run_id=run.id,
        state=run.state,
        count=len(run.blocking_items),
        by_type=dict(by_type),
        by_priority=dict(by_priority),
        item_ids=[item.id for item in run.blocking_items],
        entity_ids=[item.entity_id for item in run.blocking_items],
    )


def performance_recommendations(
    run: PipelineRun,
    historical: HistoricalMetrics,
) -> list[PerformanceRecommendation]:
    """Human-facing hints about a run compared to its template's history."""
    recommendations = []
    duration = run.actual_duration

    if duration and duration > historical.average_duration * 1.5:
        recommendations.append(
            PerformanceRecommendation(
                type="warning",
                area="duration",
                message=(
                    f"Pipeline is taking 50% longer than average "
                    f"({round(duration)}s vs {round(historical.average_duration)}s)"
                ),
                impact="high",
                actionable=True,
            )
        )

    if len(run.blocking_items) > 3:
        recommendations.append(
            PerformanceRecommendation(
                type="warning",
                area="review",
                message=f"{len(run.blocking_items)} items are waiting for review. Consider batch reviewing.",
                impact="medium",
                actionable=True,
            )
        )

    if run.retry_count > 1:
        recommendations.append(
            PerformanceRecommendation(
                type="info",
                area="reliability",
                message=f"Pipeline has been retried {run.retry_count} times. Check for recurring issues.",
                impact="medium",
                actionable=True,
            )
        )

    if historical.sample_size and len(run.insight_ids) < historical.average_insight_count * 0.5:
        recommendations.append(
            PerformanceRecommendation(
                type="info",
                area="content",
                message=(
                    f"Fewer insights than usual ({len(run.insight_ids)} vs average "
                    f"{round(historical.average_insight_count)})"
                ),
                impact="low",
                actionable=False,
            )
        )

    if duration and duration < historical.average_duration * 0.8:
        recommendations.append(
            PerformanceRecommendation(
                type="success",
                area="performance",
                message="Pipeline completed 20% faster than average!",
                impact="high",
                actionable=False,
            )
        )

    return recommendations


def step_metrics(runs: Iterable[PipelineRun]) -> list[StepMetrics]:
    """Per-step success rates and failure reasons over finished runs."""
    finished = [
        r for r in runs
        if r.state in (PipelineState.COMPLETED, PipelineState.PARTIALLY_COMPLETED, PipelineState.FAILED)
    ]
    if not finished:
        return []

    successes: dict[str, int] = defaultdict(int)
    metrics: dict[str, StepMetrics] = {}

    for run in finished:
        for step in run.successful_steps:
            metrics.setdefault(step, StepMetrics(step_name=step))
            successes[step] += 1
        for step in run.failed_steps:
            entry = metrics.setdefault(step, StepMetrics(step_name=step))
            entry.failure_count += 1
            if run.last_error:
                entry.failure_reasons[run.last_error] = entry.failure_reasons.get(run.last_error, 0) + 1

    for step, entry in metrics.items():
        entry.success_rate = successes[step] / len(finished) * 100
    return list(metrics.values())


def performance_trend(
    runs: Iterable[PipelineRun],
    days: int = 30,
    now: Optional[datetime] = None,
) -> list[TrendPoint]:
    """Daily average duration and success rate over the last ``days`` days."""
    now = now or utc_now()
    start = now - timedelta(days=days)
    daily: dict[date, list[PipelineRun]] = defaultdict(list)

    for run in runs:
        if run.created_at < start:
            continue
        if run.state not in (PipelineState.COMPLETED, PipelineState.PARTIALLY_COMPLETED, PipelineState.FAILED):
            continue
        daily[run.created_at.date()].append(run)

    trend = []
    for day in sorted(daily):
        day_runs = daily[day]
        durations = [r.actual_duration for r in day_runs if r.actual_duration]
        successes = sum(1 for r in day_runs if r.state == PipelineState.COMPLETED)
        trend.append(
            TrendPoint(
                date=day,
                average_duration=_average(durations),
                success_rate=successes / len(day_runs) * 100,
                runs=len(day_runs),
            )
        )
    return trend


# =============================================================================
# Historical store
# =============================================================================

class RunHistory:
    """In-memory store of finished runs with cached per-template metrics.

    Read-only for the engine: the driver records finished runs, the metrics
    functions read them. An empty history never blocks estimation.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings or get_settings()
        self._clock = clock
        self._runs: dict[str, PipelineRun] = {}
        self._cache: dict[PipelineTemplate, tuple[datetime, HistoricalMetrics]] = {}

    def record(self, run: PipelineRun) -> None:
        """Store a snapshot of a run that reached a final or retryable state."""
        if run.state not in HISTORY_STATES:
            return
        self._runs[run.id] = run.model_copy(deep=True)
        self._cache.pop(run.template, None)

    def runs(self, template: Optional[PipelineTemplate] = None) -> list[PipelineRun]:
        return [r for r in self._runs.values() if template is None or r.template == template]

    def historical_metrics(self, template: PipelineTemplate) -> HistoricalMetrics:
        now = self._clock()
        cached = self._cache.get(template)
        if cached is not None:
            cached_at, metrics = cached
            if (now - cached_at).total_seconds() < self.settings.metrics_cache_ttl_seconds:
                return metrics

        metrics = historical_metrics(template, self._runs.values(), self.settings)
        self._cache[template] = (now, metrics)
        return metrics

    def prune(self, older_than_days: int = 30) -> int:
        """Drop finished runs created before the cutoff; returns the count."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        stale = [
            run_id for run_id, run in self._runs.items()
            if run.created_at < cutoff
            and run.state in (PipelineState.COMPLETED, PipelineState.FAILED, PipelineState.CANCELLED)
        ]
        for run_id in stale:
            del self._runs[run_id]
        if stale:
            self._cache.clear()
            logger.info("run_history_pruned", removed=len(stale))
        return len(stale)

    def clear_cache(self) -> None:
        self._cache.clear()
