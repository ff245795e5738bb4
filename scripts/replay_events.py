#!/usr/bin/env python
"""Replay a recorded event log against a fresh pipeline run.

The log is a JSON Lines file with one event payload per line, for example:

    {"type": "start"}
    {"type": "stage_succeeded", "stage": "clean"}
    {"type": "stage_succeeded", "stage": "extract", "output_ids": ["i1", "i2"]}

Useful for reproducing how a production run reached its state.
"""

import argparse
import json
import sys
from pathlib import Path

from pydantic import ValidationError

from content_pipeline.config import configure_logging
from content_pipeline.models import PipelineTemplate, parse_event
from content_pipeline.pipeline import PipelineStateMachine


def load_events(path: Path) -> list:
    """Parse every non-empty line of an event log."""
    events = []
    with open(path, "r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, 1):
            if not line.strip():
                continue
            try:
                events.append(parse_event(json.loads(line)))
            except (json.JSONDecodeError, ValidationError) as e:
                raise ValueError(f"line {line_number}: {e}") from e
    return events


def main():
    parser = argparse.ArgumentParser(
        description="Replay a pipeline event log and print the resulting run"
    )
    parser.add_argument(
        "events_path",
        type=Path,
        help="Path to the JSON Lines event log",
    )
    parser.add_argument(
        "--transcript",
        default="transcript-replay",
        help="Transcript id of the replayed run",
    )
    parser.add_argument(
        "--template",
        choices=[t.value for t in PipelineTemplate],
        default=PipelineTemplate.STANDARD.value,
        help="Template the run was created with",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        help="Write the final run as JSON to this path",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log every transition",
    )

    args = parser.parse_args()

    if not args.events_path.exists():
        print(f"Error: File not found: {args.events_path}")
        sys.exit(1)

    configure_logging(level="DEBUG" if args.verbose else "WARNING", json=False)

    try:
        events = load_events(args.events_path)
    except ValueError as e:
        print(f"Error: Invalid event log: {e}")
        sys.exit(1)

    machine = PipelineStateMachine()
    run = machine.create_run(args.transcript, template=args.template)

    print(f"Replaying {len(events)} events on {run.id} ({args.template})")
    print()

    rejected = 0
    for index, event in enumerate(events, 1):
        result = machine.process(run, event)
        run = result.run
        if result.accepted:
            print(f"{index:>4}  {event.type:<18} -> {run.state.value} ({run.progress}%)")
        else:
            rejected += 1
            print(f"{index:>4}  {event.type:<18} REJECTED: {result.error.message}")

    print(f"\n{'='*50}")
    print("SUMMARY")
    print(f"{'='*50}")
    print(f"Final state: {run.state.value}")
    print(f"Insights: {len(run.insight_ids)}  Posts: {len(run.post_ids)}")
    print(f"Open blocking items: {len(run.blocking_items)}")
    print(f"Rejected events: {rejected}")
    if run.last_error:
        print(f"Last error: {run.last_error}")

    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(run.model_dump_json(indent=2))
        print(f"\nRun saved to: {args.output}")


if __name__ == "__main__":
    main()
