"""Command line entry point: ``ralph-loop``."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from . import __version__
from .agents import AgentCatalog, AgentRole
from .config import RalphSettings, get_settings
from .menu import AutoMenu, ConsoleMenu, Menu
from .orchestrator import LoopOutcome, LoopStatus, Orchestrator, RunMode, RunRequest
from .plan import TaskNotFoundError
from .presets import PresetError, PresetLibrary, create_session_from_preset
from .runner import AgentNotFoundError, AgentRunner, ValidationConfigError, load_validation_commands
from .storage import CheckpointManager, MemorySection, MemoryStore, SessionError, SessionStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_INCOMPLETE = 2
EXIT_CANCELLED = 130

EXIT_CODES = {
    LoopStatus.COMPLETE: EXIT_OK,
    LoopStatus.FATAL: EXIT_FATAL,
    LoopStatus.INCOMPLETE: EXIT_INCOMPLETE,
    LoopStatus.CANCELLED: EXIT_CANCELLED,
}


def configure_logging(level: str) -> None:
    """Configure root logging for the loop; logs go to stderr, agent output to stdout."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def load_settings(args: argparse.Namespace) -> RalphSettings:
    if getattr(args, "project_root", None):
        return RalphSettings(RALPH_PROJECT_ROOT=str(args.project_root)).resolve()
    return get_settings()


def session_store(settings: RalphSettings) -> SessionStore:
    return SessionStore(settings.state_dir, settings.project_root / "specs")


def memory_store(settings: RalphSettings) -> MemoryStore:
    return MemoryStore(settings.state_dir / "memory.md", settings.state_dir / "settings.json")


def _write_stdout(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def _select_menu(args: argparse.Namespace) -> Menu:
    if args.yes or not sys.stdin.isatty():
        return AutoMenu()
    return ConsoleMenu()


def print_outcome(outcome: LoopOutcome) -> None:
    print("")
    print(f"Status: {outcome.status.value} ({outcome.reason})")
    print(f"Phase: {outcome.phase.value}  Iterations: {outcome.iterations}")
    print(f"Tasks: {outcome.plan.completed}/{outcome.plan.total} complete, {outcome.plan.pending} pending")
    if outcome.checkpoint is not None and outcome.status is not LoopStatus.COMPLETE:
        print(f"Checkpoint: {outcome.checkpoint.phase.value} iteration {outcome.checkpoint.iteration}")
    for phase, stats in outcome.statistics.phases.items():
        print(
            f"  {phase.value:<14} calls={stats.calls} ok={stats.succeeded} failed={stats.failed} "
            f"cancelled={stats.cancelled} time={stats.duration:.1f}s"
        )


def cmd_run(args: argparse.Namespace) -> int:
    settings = load_settings(args)
    store = session_store(settings)
    try:
        workspace = store.workspace(args.session or store.active_id())
    except SessionError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FATAL

    try:
        validations = load_validation_commands(settings.state_dir / "validation.yml")
    except ValidationConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FATAL

    runner: AgentRunner | None
    try:
        runner = AgentRunner(Path(settings.agent_path) if settings.agent_path else None)
    except AgentNotFoundError as exc:
        if not args.dry_run:
            print(f"Error: {exc}", file=sys.stderr)
            return EXIT_FATAL
        logger.warning("Agent CLI unavailable; dry run continues without it", extra={"error": str(exc)})
        runner = None

    orchestrator = Orchestrator(
        workspace,
        runner,
        AgentCatalog(settings.agents_dir),
        checkpoints=CheckpointManager(workspace.checkpoint_path),
        memory=memory_store(settings),
        validations=validations,
        menu=_select_menu(args),
        display=_write_stdout,
        project_root=settings.project_root,
        phase_attempt_limit=settings.phase_attempt_limit,
        iteration_delay=settings.iteration_delay,
    )
    request = RunRequest(
        mode=RunMode(args.mode),
        model=args.model or settings.default_model,
        max_iterations=args.max_iterations,
        dry_run=args.dry_run,
        timeout=args.timeout if args.timeout is not None else settings.agent_timeout,
        time_budget=args.time_budget,
        spec_request=args.describe,
        manual=args.manual,
        update_agents=args.update_agents,
    )
    outcome = orchestrator.run(request)
    print_outcome(outcome)
    return EXIT_CODES[outcome.status]


def cmd_sessions_list(args: argparse.Namespace) -> int:
    store = session_store(load_settings(args))
    summaries = store.list()
    if args.json:
        payload = [
            {
                **summary.metadata.model_dump(mode="json", by_alias=True),
                "active": summary.active,
                "pending": summary.stats.pending,
                "completed": summary.stats.completed,
            }
            for summary in summaries
        ]
        print(json.dumps(payload, indent=2))
        return EXIT_OK

    if not summaries:
        print("No sessions. The default session is in use.")
        return EXIT_OK
    for summary in summaries:
        marker = "*" if summary.active else " "
        stats = summary.stats
        print(
            f"{marker} {summary.metadata.id}  {summary.metadata.name}  "
            f"[{stats.completed}/{stats.total}] ({summary.metadata.specs_mode})"
        )
    return EXIT_OK


def cmd_sessions_create(args: argparse.Namespace) -> int:
    store = session_store(load_settings(args))
    try:
        metadata = store.create(
            args.name,
            description=args.description or "",
            specs_mode="shared" if args.shared else "isolated",
        )
        if not args.no_activate:
            store.activate(metadata.id)
    except SessionError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FATAL
    print(metadata.id)
    return EXIT_OK


def cmd_sessions_switch(args: argparse.Namespace) -> int:
    store = session_store(load_settings(args))
    try:
        store.activate(args.session_id)
    except SessionError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FATAL
    print(f"Active session: {args.session_id}")
    return EXIT_OK


def cmd_sessions_delete(args: argparse.Namespace) -> int:
    store = session_store(load_settings(args))
    try:
        store.delete(args.session_id)
    except SessionError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FATAL
    print(f"Deleted session: {args.session_id}")
    return EXIT_OK


def cmd_sessions_clear(args: argparse.Namespace) -> int:
    session_store(load_settings(args)).deactivate()
    print("Using the default session")
    return EXIT_OK


def cmd_plan_show(args: argparse.Namespace) -> int:
    store = session_store(load_settings(args))
    try:
        workspace = store.workspace(args.session or store.active_id())
    except SessionError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FATAL
    plan = workspace.load_plan()
    for task in plan.tasks:
        print(f"{task.index:>3}. [{'x' if task.done else ' '}] {task.text}")
    stats = plan.stats()
    print(f"{stats.completed}/{stats.total} complete, {stats.pending} pending")
    return EXIT_OK


def cmd_plan_done(args: argparse.Namespace) -> int:
    store = session_store(load_settings(args))
    try:
        workspace = store.workspace(args.session or store.active_id())
    except SessionError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FATAL
    plan = workspace.load_plan()
    task = plan.find(f"task-{args.number}")
    if task is None:
        print(f"Error: no task number {args.number}", file=sys.stderr)
        return EXIT_FATAL
    try:
        plan.mark_done(task).save(workspace.plan_path)
    except TaskNotFoundError as exc:
        print(f"Error: task not found: {exc}", file=sys.stderr)
        return EXIT_FATAL
    print(f"Marked done: {task.text}")
    return EXIT_OK


def cmd_memory_status(args: argparse.Namespace) -> int:
    memory = memory_store(load_settings(args))
    stats = memory.stats()
    payload = {
        "enabled": stats.enabled,
        "patterns": stats.patterns,
        "commands": stats.commands,
        "gotchas": stats.gotchas,
        "decisions": stats.decisions,
        "total": stats.total,
        "path": str(memory.path),
    }
    print(json.dumps(payload, indent=2))
    return EXIT_OK


def _set_memory(enabled: bool) -> Callable[[argparse.Namespace], int]:
    def handler(args: argparse.Namespace) -> int:
        memory_store(load_settings(args)).set_enabled(enabled)
        print(f"Memory {'enabled' if enabled else 'disabled'}")
        return EXIT_OK

    return handler


def cmd_memory_add(args: argparse.Namespace) -> int:
    memory = memory_store(load_settings(args))
    try:
        section = MemorySection.parse(args.section)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FATAL
    if not memory.enabled:
        print("Memory is disabled; enable it with 'ralph-loop memory on'", file=sys.stderr)
        return EXIT_FATAL
    if memory.add(section, args.text, source=args.source):
        print(f"Added to {section.value}")
    else:
        print("Entry already present")
    return EXIT_OK


def cmd_memory_clear(args: argparse.Namespace) -> int:
    memory = memory_store(load_settings(args))
    if not args.yes:
        answer = input("Clear all memory entries? This cannot be undone. (yes/N): ")
        if answer.strip().lower() != "yes":
            print("Cancelled")
            return EXIT_INCOMPLETE
    memory.clear()
    print("Memory cleared")
    return EXIT_OK


def cmd_presets_list(args: argparse.Namespace) -> int:
    library = PresetLibrary(load_settings(args).presets_dir)
    presets = library.list()
    if not presets:
        print(f"No presets found in {library.directory}")
        return EXIT_OK
    for preset in presets:
        print(f"{preset.id:<24} {preset.name} [{preset.category}]")
        if preset.description:
            print(f"{'':<24} {preset.description}")
    return EXIT_OK


def cmd_presets_apply(args: argparse.Namespace) -> int:
    settings = load_settings(args)
    try:
        metadata = create_session_from_preset(
            session_store(settings),
            PresetLibrary(settings.presets_dir),
            args.preset_id,
            name=args.name,
        )
    except (PresetError, SessionError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FATAL
    print(metadata.id)
    return EXIT_OK


def cmd_status(args: argparse.Namespace) -> int:
    settings = load_settings(args)
    store = session_store(settings)
    active = store.active_id()
    workspace = store.workspace(active)
    stats = workspace.load_plan().stats()
    checkpoint = CheckpointManager(workspace.checkpoint_path).load()
    catalog = AgentCatalog(settings.agents_dir)
    payload = {
        "version": __version__,
        "session": active or "default",
        "plan": {"pending": stats.pending, "completed": stats.completed, "total": stats.total},
        "specs": [path.name for path in workspace.user_specs()],
        "checkpoint": checkpoint.model_dump(mode="json", by_alias=True) if checkpoint else None,
        "memory_enabled": memory_store(settings).enabled,
        "agents": {role.value: catalog.available(role) for role in AgentRole},
    }
    print(json.dumps(payload, indent=2))
    return EXIT_OK


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return number


def _positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("must be > 0")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ralph-loop", description="Ralph loop orchestrator for AI coding agents")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--project-root", type=Path, help="Project directory (default: RALPH_PROJECT_ROOT or .)")
    parser.add_argument("--log-level", help="Override RALPH_LOG_LEVEL")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="Run the spec/plan/build loop")
    p_run.add_argument("--mode", choices=[mode.value for mode in RunMode], default=RunMode.AUTO.value)
    p_run.add_argument("--session", help="Session id (default: active session)")
    p_run.add_argument("--model", help="Model passed to the agent CLI")
    p_run.add_argument("--max-iterations", type=_positive_int, default=None, help="0 = unlimited")
    p_run.add_argument("--timeout", type=_positive_float, default=None, help="Per agent call timeout in seconds")
    p_run.add_argument("--time-budget", type=_positive_float, default=None, help="Overall time budget in seconds")
    p_run.add_argument("--dry-run", action="store_true", help="Render the first prompt without running anything")
    p_run.add_argument("--manual", action="store_true", help="Show prompts and confirm tasks by hand")
    p_run.add_argument("--describe", help="What to build, used when a spec must be created")
    p_run.add_argument("--update-agents", action="store_true", help="Refresh AGENTS.md before planning")
    p_run.add_argument("--yes", action="store_true", help="Accept menu defaults without prompting")
    p_run.set_defaults(func=cmd_run)

    p_sessions = sub.add_parser("sessions", help="Manage sessions")
    sessions_sub = p_sessions.add_subparsers(dest="sessions_cmd")

    p_list = sessions_sub.add_parser("list", help="List sessions")
    p_list.add_argument("--json", action="store_true", help="Output JSON")
    p_list.set_defaults(func=cmd_sessions_list)

    p_create = sessions_sub.add_parser("create", help="Create a session")
    p_create.add_argument("name")
    p_create.add_argument("--description")
    p_create.add_argument("--shared", action="store_true", help="Read specs from the project-level specs/")
    p_create.add_argument("--no-activate", action="store_true", help="Do not switch to the new session")
    p_create.set_defaults(func=cmd_sessions_create)

    p_switch = sessions_sub.add_parser("switch", help="Make a session active")
    p_switch.add_argument("session_id")
    p_switch.set_defaults(func=cmd_sessions_switch)

    p_delete = sessions_sub.add_parser("delete", help="Delete a session")
    p_delete.add_argument("session_id")
    p_delete.set_defaults(func=cmd_sessions_delete)

    p_clear = sessions_sub.add_parser("clear", help="Switch back to the default session")
    p_clear.set_defaults(func=cmd_sessions_clear)

    p_plan = sub.add_parser("plan", help="Inspect the implementation plan")
    p_plan.add_argument("--session", help="Session id (default: active session)")
    plan_sub = p_plan.add_subparsers(dest="plan_cmd")
    p_show = plan_sub.add_parser("show", help="Print tasks")
    p_show.set_defaults(func=cmd_plan_show)
    p_done = plan_sub.add_parser("done", help="Mark task N done")
    p_done.add_argument("number", type=int)
    p_done.set_defaults(func=cmd_plan_done)

    p_memory = sub.add_parser("memory", help="Cross-session memory")
    memory_sub = p_memory.add_subparsers(dest="memory_cmd")
    memory_sub.add_parser("status", help="Show memory statistics").set_defaults(func=cmd_memory_status)
    memory_sub.add_parser("on", help="Enable memory").set_defaults(func=_set_memory(True))
    memory_sub.add_parser("off", help="Disable memory").set_defaults(func=_set_memory(False))
    p_add = memory_sub.add_parser("add", help="Add a memory entry")
    p_add.add_argument("section", help="Patterns, Commands, Gotchas or Decisions")
    p_add.add_argument("text")
    p_add.add_argument("--source")
    p_add.set_defaults(func=cmd_memory_add)
    p_mclear = memory_sub.add_parser("clear", help="Reset memory to the empty template")
    p_mclear.add_argument("--yes", action="store_true", help="Skip confirmation")
    p_mclear.set_defaults(func=cmd_memory_clear)

    p_presets = sub.add_parser("presets", help="Preset specs")
    presets_sub = p_presets.add_subparsers(dest="presets_cmd")
    presets_sub.add_parser("list", help="List presets").set_defaults(func=cmd_presets_list)
    p_apply = presets_sub.add_parser("apply", help="Create and activate a session from a preset")
    p_apply.add_argument("preset_id")
    p_apply.add_argument("--name")
    p_apply.set_defaults(func=cmd_presets_apply)

    p_status = sub.add_parser("status", help="Show JSON status for the active session")
    p_status.set_defaults(func=cmd_status)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return EXIT_FATAL

    try:
        settings = load_settings(args)
    except ValidationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return EXIT_FATAL
    configure_logging(args.log_level.upper() if args.log_level else settings.log_level)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
