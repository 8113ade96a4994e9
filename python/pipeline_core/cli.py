"""pipeline-core CLI entrypoint.

Exit codes: 0 for ``completed`` and ``partial`` runs (partial prints a
warning summary), 1 for ``failed`` runs, 2 for validation and state
errors.
"""

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from pipeline_core.config.settings import get_settings
from pipeline_core.enhanced_logging import configure_logging
from pipeline_core.exceptions_unified import (
    GraphValidationError,
    PipelineException,
    get_exception_hierarchy,
)
from pipeline_core.pipeline.orchestrator import (
    OrchestratorConfig,
    PipelineOrchestrator,
    PipelineRequest,
    PipelineResult,
)
from pipeline_core.pipeline.session import PipelineStatus
from pipeline_core.pipeline.stages import PipelineMode
from pipeline_core.scheduling.dependency_analyzer import AnalyzerConfig, DependencyAnalyzer


def build_orchestrator(args) -> PipelineOrchestrator:
    overrides = {}
    if getattr(args, "max_retries", None) is not None:
        overrides["max_retries"] = args.max_retries
    if getattr(args, "approval_mode", None):
        overrides["approval_mode"] = args.approval_mode
    config = OrchestratorConfig.from_settings(get_settings(), **overrides)
    return PipelineOrchestrator(config=config)


def report_result(result: PipelineResult, as_json: bool = False) -> int:
    if as_json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(f"Pipeline {result.pipeline_id} ({result.mode.value}): {result.overall_status.value}")
        for stage in result.stages:
            line = f"  {stage.name:<22} {stage.status.value:<10} retries={stage.retry_count}"
            if stage.error:
                line += f"  {stage.error}"
            print(line)

    if result.overall_status == PipelineStatus.PARTIAL:
        print("WARNING: pipeline completed partially", file=sys.stderr)
        for warning in result.warnings:
            print(f"  {warning}", file=sys.stderr)
    if result.overall_status == PipelineStatus.FAILED:
        for warning in result.warnings:
            print(f"ERROR: {warning}", file=sys.stderr)
        return 1
    return 0


def run_request(args, request: PipelineRequest) -> int:
    orchestrator = build_orchestrator(args)
    try:
        result = asyncio.run(orchestrator.execute_pipeline(request))
    finally:
        orchestrator.dispose()
    return report_result(result, args.json)


def cmd_start(args):
    request = PipelineRequest(
        project_dir=args.project_dir,
        user_request=args.request or "",
        mode=PipelineMode(args.mode),
        project_id=args.project_id,
    )
    return run_request(args, request)


def cmd_resume(args):
    session_id = args.session_id
    if args.latest:
        orchestrator = build_orchestrator(args)
        session_id = orchestrator.repository_for(args.project_dir).find_latest()
        if session_id is None:
            print("ERROR: No readable session to resume.", file=sys.stderr)
            return 2
    if not session_id:
        print("ERROR: Give a session id or --latest.", file=sys.stderr)
        return 2

    print(f"Resuming session {session_id}")
    request = PipelineRequest(
        project_dir=args.project_dir,
        project_id=args.project_id,
        resume_session_id=session_id,
    )
    return run_request(args, request)


def cmd_start_from(args):
    request = PipelineRequest(
        project_dir=args.project_dir,
        user_request=args.request or "",
        mode=PipelineMode(args.mode),
        project_id=args.project_id,
        start_from_stage=args.stage,
    )
    return run_request(args, request)


def cmd_monitor(args):
    orchestrator = build_orchestrator(args)
    snapshot = orchestrator.monitor_pipeline(args.session_id, project_dir=args.project_dir)
    if args.json:
        print(json.dumps(snapshot.to_dict(), indent=2))
        return 0

    print(f"Session:   {snapshot.session_id}")
    print(f"Mode:      {snapshot.mode}")
    print(f"Status:    {snapshot.status}")
    print(f"Current:   {snapshot.current_stage or '-'}")
    print(
        f"Progress:  {snapshot.completed_stages}/{snapshot.total_stages} completed, "
        f"{snapshot.failed_stages} failed, {snapshot.skipped_stages} skipped"
    )
    print(f"Elapsed:   {snapshot.elapsed:.1f}s")
    for summary in snapshot.stage_summaries:
        print(f"  {summary['name']:<22} {summary['status']:<10} retries={summary['retry_count']}")
    return 0


def cmd_analyze(args):
    analyzer = DependencyAnalyzer(AnalyzerConfig.from_settings(get_settings()))
    graph = analyzer.load_graph(args.graph)
    result = analyzer.analyze(graph.nodes, graph.edges)
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return 0

    print(f"Items: {result.statistics.total_items}  Dependencies: {result.statistics.total_dependencies}")
    print("Execution order: " + (" -> ".join(result.execution_order) or "(empty)"))
    for group in result.parallel_groups:
        print(f"  Group {group.index}: {', '.join(group.item_ids)} (effort {group.total_effort:g})")
    if result.critical_path.path:
        print(
            f"Critical path: {' -> '.join(result.critical_path.path)} "
            f"(effort {result.critical_path.total_effort:g}, bottleneck {result.critical_path.bottleneck})"
        )
    for cycle in result.cycles:
        print(f"WARNING: cycle {' -> '.join(cycle.nodes)}", file=sys.stderr)
    if result.blocked_by_cycle:
        print(f"WARNING: blocked by cycle: {', '.join(result.blocked_by_cycle)}", file=sys.stderr)
    return 0


def print_error_hierarchy() -> int:
    def walk(name: str, depth: int) -> None:
        print("  " * depth + name)
        for child in sorted(hierarchy.get(name, [])):
            walk(child, depth + 1)

    hierarchy = get_exception_hierarchy()
    walk("PipelineException", 0)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pipeline-core", description="Pipeline scheduling core")
    parser.add_argument("--project-dir", "-C", default=".", help="Project directory (default: .)")
    parser.add_argument("--project-id", help="Project id (default: project directory name)")
    parser.add_argument("--json", action="store_true", help="Print machine-readable output")
    parser.add_argument("--help-errors", action="store_true", help="List the error types and exit")
    subparsers = parser.add_subparsers(dest="command")

    def add_run_options(p: argparse.ArgumentParser) -> None:
        p.add_argument("--max-retries", type=int, help="Override retries per stage")
        p.add_argument(
            "--approval-mode", choices=["auto", "manual", "critical", "custom"], help="Approval gate mode"
        )

    modes = [m.value for m in PipelineMode]

    # pipeline-core start
    p_start = subparsers.add_parser("start", help="Start a new pipeline run")
    p_start.add_argument("--mode", choices=modes, default=PipelineMode.GREENFIELD.value)
    p_start.add_argument("--request", "-r", help="User request text")
    add_run_options(p_start)
    p_start.set_defaults(func=cmd_start)

    # pipeline-core resume
    p_resume = subparsers.add_parser("resume", help="Resume a persisted session")
    p_resume.add_argument("session_id", nargs="?", help="Session id to resume")
    p_resume.add_argument("--latest", action="store_true", help="Resume the most recently updated session")
    add_run_options(p_resume)
    p_resume.set_defaults(func=cmd_resume)

    # pipeline-core start-from
    p_from = subparsers.add_parser("start-from", help="Start at a stage; earlier stages count as done")
    p_from.add_argument("stage", help="Stage name")
    p_from.add_argument("--mode", choices=modes, default=PipelineMode.GREENFIELD.value)
    p_from.add_argument("--request", "-r", help="User request text")
    add_run_options(p_from)
    p_from.set_defaults(func=cmd_start_from)

    # pipeline-core monitor
    p_monitor = subparsers.add_parser("monitor", help="Show progress of a session")
    p_monitor.add_argument("session_id", help="Session id")
    p_monitor.set_defaults(func=cmd_monitor)

    # pipeline-core analyze
    p_analyze = subparsers.add_parser("analyze", help="Analyze a work-item dependency graph")
    p_analyze.add_argument("graph", help="Path to a {nodes, edges} JSON file")
    p_analyze.set_defaults(func=cmd_analyze)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.help_errors:
        return print_error_hierarchy()
    if not getattr(args, "func", None):
        parser.print_help()
        return 2

    configure_logging(get_settings())
    try:
        return args.func(args)
    except GraphValidationError as exc:
        print(f"ERROR: {exc.message}", file=sys.stderr)
        for error in exc.errors:
            print(f"  - {error}", file=sys.stderr)
        return 2
    except PipelineException as exc:
        print(f"ERROR: {exc.message}", file=sys.stderr)
        for suggestion in exc.recovery_suggestions:
            print(f"  hint: {suggestion}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
