"""Ralph loop diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from pathlib import Path

from ralph_loop.config import RalphSettings
from ralph_loop.storage import CheckpointManager, MemoryStore, SessionError, SessionStore


def load_settings(args: argparse.Namespace) -> RalphSettings:
    if args.project_root:
        return RalphSettings(RALPH_PROJECT_ROOT=str(args.project_root)).resolve()
    return RalphSettings().resolve()


def load_store(settings: RalphSettings) -> SessionStore:
    return SessionStore(settings.state_dir, settings.project_root / "specs")


def cmd_sessions(args: argparse.Namespace) -> None:
    store = load_store(load_settings(args))
    payload = [
        {
            **summary.metadata.model_dump(mode="json", by_alias=True),
            "active": summary.active,
            "pending": summary.stats.pending,
            "completed": summary.stats.completed,
        }
        for summary in store.list()
    ]
    print(json.dumps(payload, indent=2))


def cmd_checkpoint(args: argparse.Namespace) -> None:
    store = load_store(load_settings(args))
    try:
        workspace = store.workspace(args.session or store.active_id())
    except SessionError as exc:
        print(f"Session unavailable: {exc}")
        raise SystemExit(1)
    checkpoint = CheckpointManager(workspace.checkpoint_path).load()
    print(json.dumps(checkpoint.model_dump(mode="json", by_alias=True) if checkpoint else None, indent=2))


def cmd_memory(args: argparse.Namespace) -> None:
    settings = load_settings(args)
    memory = MemoryStore(settings.state_dir / "memory.md", settings.state_dir / "settings.json")
    stats = memory.stats()
    print(
        json.dumps(
            {
                "enabled": stats.enabled,
                "patterns": stats.patterns,
                "commands": stats.commands,
                "gotchas": stats.gotchas,
                "decisions": stats.decisions,
                "total": stats.total,
            },
            indent=2,
        )
    )


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = load_settings(args)
    store = load_store(settings)
    summaries = store.list()

    phase_counts: dict[str, int] = {}
    workspaces = [store.workspace(None)] + [store.workspace(summary.metadata.id) for summary in summaries]
    last_runs: dict[str, str] = {}
    for workspace in workspaces:
        checkpoint = CheckpointManager(workspace.checkpoint_path).load()
        if checkpoint is not None:
            phase_counts[checkpoint.phase.value] = phase_counts.get(checkpoint.phase.value, 0) + 1
        if workspace.last_run_path.exists():
            try:
                record = json.loads(workspace.last_run_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                record = {"outcome": "unreadable"}
            last_runs[workspace.session_id or "default"] = record.get("outcome", "unknown")

    metrics = {
        "sessions_total": len(summaries),
        "active_session": store.active_id() or "default",
        "tasks_pending": sum(summary.stats.pending for summary in summaries),
        "tasks_completed": sum(summary.stats.completed for summary in summaries),
        "checkpoint_phase_counts": phase_counts,
        "last_run_outcomes": last_runs,
    }
    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ralph loop diagnostics")
    parser.add_argument("--project-root", type=Path)
    sub = parser.add_subparsers(dest="cmd")

    p_sessions = sub.add_parser("sessions", help="List sessions with plan counts")
    p_sessions.set_defaults(func=cmd_sessions)

    p_checkpoint = sub.add_parser("checkpoint", help="Show the checkpoint of a session")
    p_checkpoint.add_argument("--session")
    p_checkpoint.set_defaults(func=cmd_checkpoint)

    p_memory = sub.add_parser("memory", help="Show memory entry counts")
    p_memory.set_defaults(func=cmd_memory)

    p_metrics = sub.add_parser("metrics", help="Show task/checkpoint/last-run counts")
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
