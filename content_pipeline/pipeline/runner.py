"""
Pipeline Runner

In-process driver seam around the state machine.

Design Decisions:
- One asyncio.Lock per run, so events for a run are processed one at a time
- Independent runs progress concurrently
- The registry only ever holds the run returned by the last accepted event
- Commands are forwarded to an async handler supplied by the driver
- Runs that stop are recorded into the history used for estimates; runs
  older than history_retention_days are pruned as new ones are recorded
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Optional

import structlog

from content_pipeline.config.settings import Settings, get_settings
from content_pipeline.models import (
    PipelineCommand,
    PipelineEvent,
    PipelineRun,
    PipelineState,
    PipelineTemplate,
    utc_now,
)

from .errors import RunNotFoundError
from .machine import PipelineStateMachine, TransitionResult
from .metrics import (
    BlockingSummary,
    RunHistory,
    blocking_summary,
    estimate_completion,
)

logger = structlog.get_logger(__name__)

CommandHandler = Callable[[PipelineRun, PipelineCommand], Awaitable[None]]


class PipelineRunner:
    """Owns a registry of runs and delivers events to them."""

    def __init__(
        self,
        machine: Optional[PipelineStateMachine] = None,
        command_handler: Optional[CommandHandler] = None,
        history: Optional[RunHistory] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.machine = machine or PipelineStateMachine(settings=self.settings)
        self.history = history or RunHistory(settings=self.settings)
        self._command_handler = command_handler
        self._runs: dict[str, PipelineRun] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def create_run(
        self,
        transcript_id: str,
        template: Optional[PipelineTemplate | str] = None,
        options: Optional[dict] = None,
    ) -> PipelineRun:
        """Register a new IDLE run; deliver Start to begin processing."""
        run = self.machine.create_run(transcript_id, template=template, options=options)
        self._runs[run.id] = run
        self._locks[run.id] = asyncio.Lock()
        logger.info(
            "pipeline_run_created",
            run_id=run.id,
            transcript_id=transcript_id,
            template=run.template.value,
        )
        return run.model_copy(deep=True)

    async def dispatch(self, run_id: str, event: PipelineEvent) -> TransitionResult:
        """
        Deliver one event to a run.

        The command handler is awaited while the run's lock is held, so a
        handler that feeds events back for the same run must schedule them
        instead of awaiting dispatch directly.

        Args:
            run_id: Target run
            event: Inbound event

        Returns:
            The transition result; rejected events leave the run unchanged

        Raises:
            RunNotFoundError: If the run is not registered
        """
        lock = self._locks.get(run_id)
        if lock is None:
            raise RunNotFoundError(run_id)

        async with lock:
            run = self._runs[run_id]
            result = self.machine.process(run, event)
            if not result.accepted:
                return result

            self._runs[run_id] = result.run
            if result.run.state != run.state:
                self.history.record(result.run)
                self.history.prune(older_than_days=self.settings.history_retention_days)

            if self._command_handler is not None:
                for command in result.commands:
                    await self._command_handler(result.run, command)

        return result

    def get_run(self, run_id: str) -> PipelineRun:
        """Snapshot of a run; mutating it does not affect the registry."""
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run.model_copy(deep=True)

    def list_runs(self, state: Optional[PipelineState] = None) -> list[PipelineRun]:
        runs = [r for r in self._runs.values() if state is None or r.state == state]
        return [r.model_copy(deep=True) for r in sorted(runs, key=lambda r: r.created_at)]

    def remove_run(self, run_id: str) -> bool:
        """Drop a terminal run from the registry."""
        run = self._runs.get(run_id)
        if run is None or not run.is_terminal:
            return False
        del self._runs[run_id]
        del self._locks[run_id]
        return True

    def estimate_completion(self, run_id: str) -> datetime:
        run = self.get_run(run_id)
        return estimate_completion(run, self.history.historical_metrics(run.template), now=utc_now())

    def blocking_summary(self, run_id: str) -> BlockingSummary:
        return blocking_summary(self.get_run(run_id))


async def run_concurrently(
    runner: PipelineRunner,
    deliveries: list[tuple[str, PipelineEvent]],
) -> list[TransitionResult]:
    """Deliver events for many runs at once; per-run order is preserved."""
    by_run: dict[str, list[PipelineEvent]] = {}
    for run_id, event in deliveries:
        by_run.setdefault(run_id, []).append(event)

    async def _deliver(run_id: str, events: list[PipelineEvent]) -> list[TransitionResult]:
        return [await runner.dispatch(run_id, event) for event in events]

    batches = await asyncio.gather(*(_deliver(rid, events) for rid, events in by_run.items()))
    return [result for batch in batches for result in batch]
