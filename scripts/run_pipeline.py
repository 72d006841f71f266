#!/usr/bin/env python3
"""Run a pipeline definition from the command line.

Reviews are answered on the console (approve / edit / reject / skip) unless
--auto-approve is given.

Usage:
    python scripts/run_pipeline.py pipeline.json --input "A story about tides"
    python scripts/run_pipeline.py pipeline.json --input "..." --backend http \
        --endpoint http://localhost:8000/v1/chat/completions --auto-approve

Writes the run summary (state, output blocks, reviews) to --output when given.

Exit codes: 0 completed, 1 usage or definition error, 2 run failed, 3 aborted.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Dict, List


ROOT_DIR = Path(__file__).resolve().parents[1]
root_str = str(ROOT_DIR)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from chorus.llm.claude_backend import load_env_file_lenient  # noqa: E402

load_env_file_lenient()

from loguru import logger  # noqa: E402
from rich.console import Console  # noqa: E402
from rich.table import Table  # noqa: E402

from chorus.context.durable import DurableStore, JsonFileBackend  # noqa: E402
from chorus.errors import ChorusError, DefinitionError  # noqa: E402
from chorus.llm.backend import BackendRouter, CallBackend  # noqa: E402
from chorus.llm.claude_backend import ClaudeBackend  # noqa: E402
from chorus.llm.http_backend import HttpChatBackend  # noqa: E402
from chorus.pipeline.executor import PipelineExecutor  # noqa: E402
from chorus.pipeline.gavel import GavelDecision, GavelRequest, GavelResponse  # noqa: E402
from chorus.pipeline.orchestrator import Orchestrator  # noqa: E402
from chorus.pipeline.state import RunStatus  # noqa: E402

console = Console()


def _parse_static(pairs: List[str]) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"--static expects key=value, got '{pair}'")
        key, value = pair.split("=", 1)
        values[key.strip()] = value
    return values


def _build_backend(args: argparse.Namespace) -> CallBackend:
    backends: Dict[str, CallBackend] = {}
    if args.backend == "claude":
        backends["claude"] = ClaudeBackend()
        backends["http"] = HttpChatBackend(endpoint=args.endpoint)
    else:
        backends["http"] = HttpChatBackend(endpoint=args.endpoint)
    return BackendRouter(backends, default=args.backend)


async def _console_review(executor: PipelineExecutor, request: GavelRequest) -> None:
    console.rule(f"Review: {request.phase_id}")
    console.print(request.prompt)
    console.print(request.output or "[dim](empty output)[/dim]")

    choices = "a=approve, e=edit, r=reject" + (", s=skip" if request.can_skip else "")
    while executor.gate.pending is not None and executor.gate.pending.request_id == request.request_id:
        answer = (await asyncio.to_thread(input, f"Decision ({choices}): ")).strip().lower()
        try:
            if answer in ("a", "approve"):
                executor.submit_gavel_response(GavelResponse(GavelDecision.APPROVED, request_id=request.request_id))
            elif answer in ("s", "skip"):
                executor.submit_gavel_response(GavelResponse(GavelDecision.SKIPPED, request_id=request.request_id))
            elif answer in ("r", "reject"):
                note = await asyncio.to_thread(input, "Reason: ")
                executor.submit_gavel_response(
                    GavelResponse(GavelDecision.REJECTED, commentary=note, request_id=request.request_id)
                )
            elif answer in ("e", "edit"):
                edits: Dict[str, str] = {}
                for field_name in request.editable_fields:
                    value = await asyncio.to_thread(input, f"{field_name} (blank keeps current): ")
                    if value.strip():
                        edits[field_name] = value
                final = await asyncio.to_thread(input, "Final phase output (blank keeps current): ")
                executor.submit_gavel_response(
                    GavelResponse(
                        GavelDecision.APPROVED,
                        edited_values=edits,
                        final_output=final or None,
                        request_id=request.request_id,
                    )
                )
            else:
                console.print("[yellow]Unrecognized choice[/yellow]")
        except ChorusError as e:
            console.print(f"[red]{e}[/red]")


def _print_summary(executor: PipelineExecutor) -> None:
    table = Table(title=f"Run {executor.run_id} ({executor.state.status.value})")
    table.add_column("Phase")
    table.add_column("Status")
    table.add_column("Actions")
    table.add_column("Decision")
    for record in executor.state.phases.values():
        actions = ", ".join(f"{a.action_id}:{a.status.value}" for a in record.actions.values())
        table.add_row(record.phase_id, record.status.value, actions, record.decision or "-")
    console.print(table)

    usage = executor.dispatcher.get_usage_summary()
    console.print(
        f"Calls: {usage['calls']}  Failures: {usage['failures']}  Retries: {usage['retries']}  "
        f"Tokens: {usage['total_tokens']}"
    )
    if executor.state.failure:
        failure = executor.state.failure
        console.print(
            f"[red]{failure.taxonomy}[/red] in phase {failure.phase_id or '-'} "
            f"action {failure.action_id or '-'}: {failure.message}"
        )


async def main() -> int:
    parser = argparse.ArgumentParser(description="Run a multi-phase pipeline definition")
    parser.add_argument("definition", help="Path to a pipeline definition JSON file")
    parser.add_argument("--input", default="", help="User request exposed as {{input}}")
    parser.add_argument("--static", action="append", default=[], metavar="KEY=VALUE",
                        help="Extra write-once static values (repeatable)")
    parser.add_argument("--backend", choices=["claude", "http"], default="claude")
    parser.add_argument("--endpoint", default=None, help="Chat-completions endpoint for the http backend")
    parser.add_argument("--max-concurrent", type=int, default=None)
    parser.add_argument("--store-dir", default=None, help="Directory for durable store namespaces")
    parser.add_argument("--auto-approve", action="store_true", help="Approve every review automatically")
    parser.add_argument("--output", default=None, help="Write the run summary JSON here")
    args = parser.parse_args()

    try:
        payload = json.loads(Path(args.definition).read_text(encoding="utf-8"))
        static = _parse_static(args.static)
    except (OSError, json.JSONDecodeError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        return 1

    dispatch_options = {}
    if args.max_concurrent is not None:
        dispatch_options["max_concurrent"] = args.max_concurrent

    orchestrator = Orchestrator(
        _build_backend(args),
        durable=DurableStore(JsonFileBackend(args.store_dir)),
        **dispatch_options,
    )

    try:
        executor = orchestrator.create_run(payload, args.input, static=static)
    except DefinitionError as e:
        console.print(f"[red]{e}[/red]")
        return 1

    review_tasks: List[asyncio.Task] = []

    def _on_review(request: GavelRequest) -> None:
        if args.auto_approve:
            asyncio.get_running_loop().call_soon(
                executor.submit_gavel_response,
                GavelResponse(GavelDecision.APPROVED, request_id=request.request_id),
            )
        else:
            review_tasks.append(asyncio.ensure_future(_console_review(executor, request)))

    executor.gate.on_request = _on_review
    executor.events.add_listener(
        lambda event: logger.info(f"{event.type.value} {event.payload.get('phase_id', '')}")
    )

    try:
        await executor.run()
    except KeyboardInterrupt:
        executor.abort("Interrupted")
    finally:
        for task in review_tasks:
            task.cancel()
        await orchestrator.aclose()

    _print_summary(executor)

    if args.output:
        out_path = Path(args.output).expanduser().resolve()
        out_path.write_text(json.dumps(executor.summary(), indent=2, default=str) + "\n", encoding="utf-8")
        console.print(f"Summary: {out_path}")

    if executor.state.status is RunStatus.COMPLETED:
        return 0
    return 3 if executor.state.status is RunStatus.ABORTED else 2


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
