"""Command-line interface for the content pipeline engine."""

# Load .env BEFORE any application imports that read settings
from dotenv import load_dotenv

load_dotenv()

from collections import deque
from typing import Optional

import structlog
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from content_pipeline import __version__
from content_pipeline.config import (
    PIPELINE_TEMPLATES,
    calculate_estimated_duration,
    configure_logging,
    get_settings,
)
from content_pipeline.models import (
    RETRYABLE_STATES,
    EntityKind,
    EntityReviewed,
    PipelineEvent,
    PipelineRun,
    PipelineState,
    PipelineTemplate,
    ReviewDecision,
    RunStageCommand,
    Stage,
    StageSucceeded,
    Start,
    Urgency,
)
from content_pipeline.pipeline import (
    PipelineStateMachine,
    TransitionResult,
    recommend_template,
)

logger = structlog.get_logger(__name__)

app = typer.Typer(
    name="content-pipeline",
    help="Content pipeline engine - Turn transcripts into reviewed, scheduled posts",
    add_completion=False,
)
console = Console()

REVIEW_KINDS = {
    PipelineState.REVIEWING_INSIGHTS: EntityKind.INSIGHT,
    PipelineState.REVIEWING_POSTS: EntityKind.POST,
}


# =============================================================================
# Scripted driver
# =============================================================================

def _stage_results(command: RunStageCommand, insight_count: int) -> list[PipelineEvent]:
    """Events a well-behaved worker would report for one stage command."""
    if command.stage == Stage.CLEAN:
        return [StageSucceeded(stage=Stage.CLEAN, output_ids=list(command.input_ids))]

    if command.stage == Stage.EXTRACT:
        return [
            StageSucceeded(
                stage=Stage.EXTRACT,
                output_ids=[f"insight-{i}" for i in range(1, insight_count + 1)],
            )
        ]

    if command.stage == Stage.GENERATE:
        # One result per insight; the exit guard counts the first one
        single_platform = command.platforms[0] if len(command.platforms) == 1 else None
        return [
            StageSucceeded(
                stage=Stage.GENERATE,
                source_id=insight_id,
                platform=single_platform,
                output_ids=[f"post-{insight_id}-{platform}" for platform in command.platforms],
            )
            for insight_id in command.input_ids
        ]

    return [StageSucceeded(stage=Stage.SCHEDULE, output_ids=list(command.input_ids))]


def _review_events(run: PipelineRun, kind: EntityKind, reject: int) -> list[PipelineEvent]:
    """Reviewer decisions for every open review item of one kind."""
    entity_ids = sorted(
        item.entity_id for item in run.blocking_items if item.entity_kind == kind
    )
    events = []
    for index, entity_id in enumerate(entity_ids):
        rejected = kind == EntityKind.INSIGHT and index < reject
        events.append(
            EntityReviewed(
                entity_id=entity_id,
                kind=kind,
                decision=ReviewDecision.REJECT if rejected else ReviewDecision.APPROVE,
                reviewer="simulator",
            )
        )
    return events


def run_simulation(
    machine: PipelineStateMachine,
    transcript_id: str,
    template: PipelineTemplate,
    insight_count: int = 3,
    reject: int = 0,
    auto_approve: bool = False,
) -> tuple[PipelineRun, list[tuple[PipelineEvent, TransitionResult]]]:
    """Drive one run until it stops, answering every command in process.

    Returns:
        The final run and every (event, result) pair in delivery order.
    """
    options = {"auto_approve": True} if auto_approve else None
    run = machine.create_run(transcript_id, template=template, options=options)
    queue: deque[PipelineEvent] = deque([Start()])
    trail = []

    while queue:
        event = queue.popleft()
        result = machine.process(run, event)
        trail.append((event, result))
        run = result.run

        for command in result.commands:
            if isinstance(command, RunStageCommand):
                queue.extend(_stage_results(command, insight_count))

        if queue:
            continue
        if run.state in REVIEW_KINDS:
            queue.extend(_review_events(run, REVIEW_KINDS[run.state], reject))
        elif run.state == PipelineState.READY_TO_SCHEDULE:
            queue.append(Start())

    logger.info("simulation_finished", run_id=run.id, state=run.state.value, events=len(trail))
    return run, trail


# =============================================================================
# Commands
# =============================================================================

@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Log level (default: PIPELINE_LOG_LEVEL or INFO)",
    ),
    json_logs: Optional[bool] = typer.Option(
        None,
        "--json-logs/--console-logs",
        help="Render logs as JSON lines or human readable text",
    ),
) -> None:
    settings = get_settings()
    configure_logging(
        level=log_level or settings.log_level,
        json=settings.log_json if json_logs is None else json_logs,
    )


@app.command()
def simulate(
    transcript_id: str = typer.Option("transcript-demo", "--transcript", "-t", help="Transcript id"),
    template: PipelineTemplate = typer.Option(
        PipelineTemplate.STANDARD,
        "--template",
        help="Pipeline template",
    ),
    insights: int = typer.Option(3, "--insights", "-n", min=0, help="Insights the extractor reports"),
    reject: int = typer.Option(0, "--reject", "-r", min=0, help="Insights the reviewer rejects"),
    auto_approve: bool = typer.Option(False, "--auto-approve", help="Skip every human review"),
) -> None:
    """Run one pipeline end to end against a scripted in-memory driver."""
    console.print(
        Panel.fit(
            f"[bold blue]Content Pipeline Simulation[/bold blue]\n"
            f"Template: {template.value}  Insights: {insights}  Rejected: {reject}",
            border_style="blue",
        )
    )

    machine = PipelineStateMachine()
    run, trail = run_simulation(
        machine,
        transcript_id,
        template,
        insight_count=insights,
        reject=reject,
        auto_approve=auto_approve,
    )

    _display_trail(trail)
    _display_outcome(run)

    if run.state == PipelineState.FAILED:
        raise typer.Exit(code=1)


@app.command()
def templates() -> None:
    """List the available pipeline templates."""
    table = Table(title="Pipeline Templates")
    table.add_column("Template", style="cyan")
    table.add_column("Name")
    table.add_column("Steps", justify="right")
    table.add_column("Est. Duration", justify="right")
    table.add_column("Auto Review")

    for template, config in PIPELINE_TEMPLATES.items():
        auto = []
        if config.options.auto_approve or config.options.skip_insight_review:
            auto.append("insights")
        if config.options.auto_approve or config.options.skip_post_review:
            auto.append("posts")
        estimated = calculate_estimated_duration(config.steps) if config.steps else config.estimated_duration
        table.add_row(
            template.value,
            config.name,
            str(len(config.steps)),
            f"{estimated / 60:.1f} min",
            ", ".join(auto) or "-",
        )

    console.print(table)


@app.command()
def recommend(
    content_length: int = typer.Argument(..., min=0, help="Transcript length in characters"),
    source_type: Optional[str] = typer.Option(None, "--source", "-s", help="podcast, video, article, ..."),
    urgency: Optional[Urgency] = typer.Option(None, "--urgency", "-u", help="Content urgency"),
) -> None:
    """Recommend a template for a piece of content."""
    template = recommend_template(content_length, source_type=source_type, urgency=urgency)
    config = PIPELINE_TEMPLATES[template]
    console.print(f"[green]Recommended template:[/green] [bold]{template.value}[/bold]")
    console.print(f"[dim]{config.description}[/dim]")


@app.command()
def info() -> None:
    """Display engine version and effective configuration."""
    settings = get_settings()

    console.print(
        Panel.fit(
            "[bold blue]Content Pipeline Engine[/bold blue]",
            border_style="blue",
        )
    )

    table = Table(show_header=False, box=None)
    table.add_column("Setting", style="dim")
    table.add_column("Value")

    table.add_row("Version", __version__)
    table.add_row("Default Template", settings.default_template.value)
    table.add_row("Default Max Retries", str(settings.default_max_retries))
    table.add_row("Avg Duration Fallback", f"{settings.default_average_duration_seconds:.0f}s")
    table.add_row("Review Time Fallback", f"{settings.default_review_time_seconds:.0f}s")
    table.add_row("History Sample Limit", str(settings.history_sample_limit))
    table.add_row("History Retention", f"{settings.history_retention_days} days")
    table.add_row("Metrics Cache TTL", f"{settings.metrics_cache_ttl_seconds:.0f}s")
    table.add_row("Log Level", settings.log_level)

    console.print(table)


def _display_trail(trail: list[tuple[PipelineEvent, TransitionResult]]) -> None:
    table = Table(title="State Trail")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Event")
    table.add_column("State")
    table.add_column("Progress", justify="right")
    table.add_column("Blocking", justify="right")

    for index, (event, result) in enumerate(trail, 1):
        label = event.type
        if isinstance(event, StageSucceeded):
            label = f"{event.type}:{event.stage.value}"
        elif isinstance(event, EntityReviewed):
            label = f"{event.decision.value} {event.entity_id}"
        state = result.run.state.value if result.accepted else f"[red]rejected[/red] ({result.error.code})"
        table.add_row(
            str(index),
            label,
            state,
            f"{result.run.progress}%",
            str(len(result.run.blocking_items)),
        )

    console.print(table)


def _display_outcome(run: PipelineRun) -> None:
    """Display the final state and metrics of a run."""
    colour = "green" if run.state == PipelineState.COMPLETED else "yellow"
    if run.state == PipelineState.FAILED:
        colour = "red"
    console.print(f"\n[bold]Final state:[/bold] [{colour}]{run.state.value}[/{colour}]")
    if run.last_error:
        console.print(f"[dim]Reason:[/dim] {run.last_error}")
    if run.state in RETRYABLE_STATES:
        console.print(f"[dim]Retries used:[/dim] {run.retry_count}/{run.options.max_retries}")

    metrics = run.metrics
    if metrics is None:
        return

    table = Table(show_header=False, box=None)
    table.add_column("Metric", style="dim")
    table.add_column("Value", justify="right")

    table.add_row("Insights", f"{metrics.approved_insight_count}/{metrics.insight_count} approved")
    table.add_row("Posts", f"{metrics.approved_post_count}/{metrics.post_count} approved")
    table.add_row("Scheduled", str(len(run.scheduled_post_ids)))
    table.add_row("Success Rate", f"{metrics.success_rate:.0f}%")
    table.add_row("Progress", f"{run.progress}%")

    console.print(table)


if __name__ == "__main__":
    app()
