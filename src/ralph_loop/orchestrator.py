"""The Ralph loop state machine.

One orchestrator drives one session strictly sequentially::

    Idle -> Recovering? -> SpecCreation? -> Planning? -> Building -> Complete

Every agent call goes through :meth:`Orchestrator._invoke`, which runs the
async runner to completion with :func:`asyncio.run`. A Ctrl-C cancels that
run (the runner kills its child first) and surfaces here as
:class:`KeyboardInterrupt`, which is turned into a checkpoint plus a
``cancelled`` outcome.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence

from .agents import (
    AgentCatalog,
    AgentLoadError,
    AgentRole,
    PromptValidationError,
    ReferenceBlock,
    SignalDetector,
    build_prompt,
)
from .changes import diff_files, snapshot_files
from .files import atomic_write
from .menu import AutoMenu, Menu, MenuOption
from .plan import PlanStats, ProgressEntry, Task, TaskNotFoundError, TaskPlan, reset_plan, restore_completed
from .runner import (
    AgentAuthError,
    AgentNotFoundError,
    AgentRunResult,
    AgentRunner,
    AgentRunnerError,
    ValidationCommand,
    run_validations,
    serialize_result,
    summarize_failures,
)
from .storage import Checkpoint, CheckpointManager, MemoryStore, Phase, SessionWorkspace

logger = logging.getLogger(__name__)

OutputSink = Callable[[str], None]

VERIFY_TASK = (
    "Every checklist item in IMPLEMENTATION_PLAN.md is marked done. Verify that the work is "
    "actually complete and consistent. Fix anything that is missing, then emit the completion "
    "signal only if nothing remains."
)


class OrchestratorError(RuntimeError):
    """Raised for conditions that make the requested run impossible."""


class LoopStatus(str, Enum):
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"
    CANCELLED = "cancelled"
    FATAL = "fatal"


class RunMode(str, Enum):
    AUTO = "auto"
    SPEC = "spec"
    PLAN = "plan"
    BUILD = "build"


# phase a checkpoint must be in for a single-phase mode to resume it
_MODE_PHASES = {
    RunMode.SPEC: Phase.SPEC_CREATION,
    RunMode.PLAN: Phase.PLANNING,
    RunMode.BUILD: Phase.BUILDING,
}


@dataclass(slots=True)
class RunRequest:
    mode: RunMode = RunMode.AUTO
    model: str | None = None
    max_iterations: int | None = None
    dry_run: bool = False
    timeout: float | None = None
    time_budget: float | None = None
    spec_request: str | None = None
    manual: bool = False
    update_agents: bool = False


@dataclass(slots=True)
class PhaseStatistics:
    calls: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    duration: float = 0.0

    def record(self, result: AgentRunResult) -> None:
        self.calls += 1
        self.duration += result.duration
        if result.ok:
            self.succeeded += 1
        else:
            self.failed += 1


@dataclass(slots=True)
class SessionStatistics:
    """Per-phase agent call counters for one ``run``."""

    phases: dict[Phase, PhaseStatistics] = field(default_factory=dict)
    iterations: int = 0

    def phase(self, phase: Phase) -> PhaseStatistics:
        return self.phases.setdefault(phase, PhaseStatistics())

    @property
    def total_calls(self) -> int:
        return sum(stats.calls for stats in self.phases.values())

    def as_dict(self) -> dict[str, object]:
        return {
            "iterations": self.iterations,
            "phases": {
                phase.value: {
                    "calls": stats.calls,
                    "succeeded": stats.succeeded,
                    "failed": stats.failed,
                    "cancelled": stats.cancelled,
                    "duration": round(stats.duration, 3),
                }
                for phase, stats in self.phases.items()
            },
        }


@dataclass(slots=True)
class LoopOutcome:
    status: LoopStatus
    phase: Phase
    iterations: int
    reason: str
    plan: PlanStats
    checkpoint: Checkpoint | None
    statistics: SessionStatistics


class _Finished(Exception):
    """Internal control flow: a phase reached a terminal outcome."""

    def __init__(self, status: LoopStatus, reason: str) -> None:
        super().__init__(reason)
        self.status = status
        self.reason = reason


class Orchestrator:
    """Run the spec / plan / build loop for one session workspace."""

    def __init__(
        self,
        workspace: SessionWorkspace,
        runner: AgentRunner | None,
        catalog: AgentCatalog,
        *,
        checkpoints: CheckpointManager | None = None,
        memory: MemoryStore | None = None,
        validations: Sequence[ValidationCommand] = (),
        menu: Menu | None = None,
        display: OutputSink | None = None,
        project_root: Path | None = None,
        detector: SignalDetector | None = None,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] | None = None,
        sleep: Callable[[float], None] | None = None,
        phase_attempt_limit: int = 3,
        iteration_delay: float = 0.0,
    ) -> None:
        self._workspace = workspace
        self._runner = runner
        self._catalog = catalog
        self._checkpoints = checkpoints or CheckpointManager(workspace.checkpoint_path)
        self._memory = memory
        self._validations = list(validations)
        self._menu: Menu = menu or AutoMenu()
        self._display: OutputSink = display or (lambda text: None)
        self._project_root = Path(project_root) if project_root is not None else Path.cwd()
        self._detector = detector or SignalDetector()
        self._clock = clock or datetime.now
        self._monotonic = monotonic or time.monotonic
        self._sleep = sleep or time.sleep
        self._phase_attempt_limit = max(1, phase_attempt_limit)
        self._iteration_delay = iteration_delay

        self._request = RunRequest()
        self._phase = Phase.IDLE
        self._iteration = 0
        self._started = 0.0
        self._feedback: list[str] = []
        self._statistics = SessionStatistics()
        self._last_checkpoint: Checkpoint | None = None
        self._kept_checkpoint: Checkpoint | None = None

    @property
    def workspace(self) -> SessionWorkspace:
        return self._workspace

    def run(self, request: RunRequest) -> LoopOutcome:
        self._request = request
        self._phase = Phase.IDLE
        self._iteration = 0
        self._started = self._monotonic()
        self._feedback = []
        self._statistics = SessionStatistics()
        self._last_checkpoint = None
        self._kept_checkpoint = None

        logger.info(
            "Starting loop",
            extra={
                "session": self._workspace.session_id or "default",
                "mode": request.mode.value,
                "dry_run": request.dry_run,
            },
        )
        try:
            if self._memory is not None and not request.dry_run and self._memory.enabled:
                self._memory.ensure()
            self._start()
        except _Finished as finished:
            return self._outcome(finished.status, finished.reason)
        except KeyboardInterrupt:
            logger.warning("Interrupted", extra={"phase": self._phase.value, "iteration": self._iteration})
            if self._phase.in_progress and not request.dry_run:
                last = self._last_checkpoint
                if last is None or last.phase is not self._phase or last.iteration != self._iteration:
                    self._checkpoint(self._phase, self._iteration)
            return self._outcome(LoopStatus.CANCELLED, "interrupted", phase=Phase.CANCELLED)
        except (AgentRunnerError, AgentLoadError, PromptValidationError, OrchestratorError) as exc:
            logger.error("Loop stopped: %s", exc, extra={"phase": self._phase.value})
            return self._outcome(LoopStatus.FATAL, str(exc))
        # _start always ends by raising _Finished
        raise AssertionError("orchestrator finished without an outcome")

    # ------------------------------------------------------------------
    # Phase selection

    def _start(self) -> None:
        checkpoint = self._checkpoints.load()
        if checkpoint is not None and checkpoint.phase.in_progress and self._recovers(checkpoint):
            self._phase = Phase.RECOVERING
            choice = self._menu.choose(
                f"Interrupted {checkpoint.phase.value} phase found (iteration {checkpoint.iteration})",
                [
                    MenuOption("Resume where it stopped", "resume", hotkey="r"),
                    MenuOption("Discard checkpoint and start over", "discard", hotkey="d"),
                ],
                default="resume",
            )
            if choice == "resume":
                logger.info(
                    "Resuming from checkpoint",
                    extra={"phase": checkpoint.phase.value, "iteration": checkpoint.iteration},
                )
                self._feedback = list(checkpoint.feedback)
                self._last_checkpoint = checkpoint
                phase = checkpoint.phase
                if (
                    phase is Phase.SPEC_CREATION
                    and self._request.mode is RunMode.AUTO
                    and not self._request.spec_request
                    and self._workspace.has_specs()
                ):
                    # the request text is not persisted; keep the specs already written
                    phase = Phase.PLANNING
                start_iteration = checkpoint.iteration - 1 if phase is Phase.BUILDING else 0
                self._run_from(phase, start_iteration=max(0, start_iteration))
            if choice is None:
                raise _Finished(LoopStatus.CANCELLED, "quit from recovery menu")
            if not self._request.dry_run:
                self._checkpoints.clear()

        self._dispatch()

    def _recovers(self, checkpoint: Checkpoint) -> bool:
        expected = _MODE_PHASES.get(self._request.mode)
        if expected is None or expected is checkpoint.phase:
            return True
        logger.info(
            "Keeping checkpoint from another phase",
            extra={"phase": checkpoint.phase.value, "mode": self._request.mode.value},
        )
        self._kept_checkpoint = checkpoint
        return False

    def _dispatch(self) -> None:
        mode = self._request.mode
        if mode is RunMode.SPEC:
            self._run_from(Phase.SPEC_CREATION)
        if mode is RunMode.PLAN:
            self._run_from(Phase.PLANNING)
        if mode is RunMode.BUILD:
            if self._workspace.load_plan().stats().total == 0:
                raise _Finished(LoopStatus.INCOMPLETE, "no tasks in plan; run planning first")
            self._run_from(Phase.BUILDING)

        if not self._workspace.has_specs():
            self._run_from(Phase.SPEC_CREATION)

        stats = self._workspace.load_plan().stats()
        if stats.total == 0:
            self._run_from(Phase.PLANNING)
        if stats.pending == 0:
            raise _Finished(LoopStatus.COMPLETE, "all tasks already complete")

        choice = self._menu.choose(
            f"{stats.pending} of {stats.total} tasks pending",
            [
                MenuOption("Continue building", "continue", hotkey="c"),
                MenuOption(
                    "Add a new spec",
                    "add_spec",
                    hotkey="a",
                    disabled_reason=None if self._request.spec_request else "no spec request given",
                ),
                MenuOption("Start fresh (re-plan from specs)", "fresh", hotkey="f"),
                MenuOption("Quit", "quit", hotkey="q"),
            ],
            default="continue",
        )
        if choice == "continue":
            self._run_from(Phase.BUILDING)
        if choice == "add_spec":
            self._run_from(Phase.SPEC_CREATION)
        if choice == "fresh":
            if not self._request.dry_run:
                reset_plan(self._workspace.plan_path, now=self._clock())
                self._workspace.progress_log().reset(now=self._clock())
                self._checkpoints.clear()
            self._run_from(Phase.PLANNING)
        raise _Finished(LoopStatus.CANCELLED, "quit from project menu")

    def _run_from(self, phase: Phase, *, start_iteration: int = 0) -> None:
        """Run ``phase`` and the phases after it; always raises :class:`_Finished`."""

        mode = self._request.mode
        if phase is Phase.SPEC_CREATION:
            self._spec_phase()
            if mode is RunMode.SPEC:
                self._single_phase_done("spec created")
            phase = Phase.PLANNING
        if phase is Phase.PLANNING:
            if mode is RunMode.AUTO and self._request.update_agents:
                self._agents_update_pass()
            self._plan_phase()
            if mode is RunMode.PLAN:
                self._single_phase_done("plan created")
        self._build_phase(start_iteration)

    def _single_phase_done(self, reason: str) -> None:
        """Finish a spec or plan run; a checkpoint kept from another phase is put back."""

        if self._kept_checkpoint is not None:
            self._last_checkpoint = self._checkpoints.save(self._kept_checkpoint)
        else:
            self._checkpoints.clear()
            self._last_checkpoint = None
        raise _Finished(LoopStatus.COMPLETE, reason)

    # ------------------------------------------------------------------
    # Phases

    def _spec_phase(self) -> None:
        request_text = (self._request.spec_request or "").strip()
        if not request_text:
            raise OrchestratorError("No specs found; describe what to build to create one")
        if not self._request.dry_run:
            self._workspace.specs_dir.mkdir(parents=True, exist_ok=True)
        references = [ReferenceBlock("Spec request", request_text), *self._common_references()]
        self._signal_phase(Phase.SPEC_CREATION, AgentRole.SPEC_CREATION, references)

    def _plan_phase(self) -> None:
        specs = self._workspace.user_specs()
        spec_list = "\n".join(str(path) for path in specs) or "(no spec files)"
        references = [ReferenceBlock("Spec files", spec_list, kind="data"), *self._common_references()]
        self._signal_phase(Phase.PLANNING, AgentRole.PLANNING, references)

        stats = self._workspace.load_plan().stats()
        logger.info("Planning finished", extra={"tasks": stats.total, "pending": stats.pending})
        if stats.total == 0:
            raise _Finished(LoopStatus.INCOMPLETE, "planning produced no tasks")

    def _agents_update_pass(self) -> None:
        if not self._catalog.available(AgentRole.AGENTS_UPDATER):
            logger.info("No agents-updater prompt; skipping AGENTS.md update")
            return
        prompt = build_prompt(
            self._catalog.load(AgentRole.AGENTS_UPDATER).body,
            references=self._common_references(),
            require_task=False,
        )
        if self._request.dry_run:
            self._display(prompt)
            return
        self._phase = Phase.PLANNING
        result = self._invoke(Phase.PLANNING, prompt)
        if not self._detector.detect_role(result.output, AgentRole.AGENTS_UPDATER):
            logger.warning("AGENTS.md update finished without its completion signal")

    def _signal_phase(self, phase: Phase, role: AgentRole, references: list[ReferenceBlock]) -> None:
        """Invoke ``role`` until it emits its sentinel or the attempt limit runs out."""

        prompt = build_prompt(self._catalog.load(role).body, references=references, require_task=False)
        self._phase = phase
        if self._request.dry_run:
            self._display(prompt)
            raise _Finished(LoopStatus.INCOMPLETE, "dry run")

        for attempt in range(1, self._phase_attempt_limit + 1):
            self._check_time_budget()
            self._iteration = attempt
            self._checkpoint(phase, attempt)
            result = self._invoke(phase, prompt)
            if self._detector.detect_role(result.output, role):
                logger.info("Phase signalled completion", extra={"phase": phase.value, "attempt": attempt})
                return
            logger.warning(
                "Phase finished without completion signal",
                extra={"phase": phase.value, "attempt": attempt, "outcome": result.outcome.value},
            )
        raise _Finished(
            LoopStatus.INCOMPLETE,
            f"{phase.value} did not signal completion after {self._phase_attempt_limit} attempts",
        )

    def _build_phase(self, start_iteration: int) -> None:
        self._phase = Phase.BUILDING
        body = self._catalog.load(AgentRole.BUILDING).body
        max_iterations = self._request.max_iterations or 0
        iteration = start_iteration
        sentinel_seen = False
        ran = False
        verifications = 0
        skipped: set[str] = set()

        while True:
            plan = self._workspace.load_plan()
            task = self._next_task(plan, skipped)
            if task is None:
                if skipped and plan.stats().pending:
                    raise _Finished(LoopStatus.INCOMPLETE, f"{len(skipped)} task(s) skipped")
                if sentinel_seen or not ran:
                    self._complete()
                if verifications >= self._phase_attempt_limit:
                    raise _Finished(LoopStatus.INCOMPLETE, "agent did not confirm completion of the plan")
                verifications += 1

            if max_iterations and iteration - start_iteration >= max_iterations:
                raise _Finished(LoopStatus.INCOMPLETE, f"iteration cap reached ({max_iterations})")
            self._check_time_budget()

            iteration += 1
            self._iteration = iteration
            self._statistics.iterations += 1
            task_text = task.text if task is not None else VERIFY_TASK
            prompt = build_prompt(body, task_text, self._build_references())
            if self._request.dry_run:
                self._display(prompt)
                raise _Finished(LoopStatus.INCOMPLETE, "dry run")

            stats = plan.stats()
            task_id = task.id if task is not None else None
            self._checkpoint(Phase.BUILDING, iteration, task_id=task_id, pending=stats.pending)
            logger.info(
                "Starting iteration",
                extra={"iteration": iteration, "task_id": task_id, "pending": stats.pending},
            )

            if self._request.manual:
                sentinel_seen = self._manual_iteration(prompt, plan, task, skipped)
            else:
                sentinel_seen = self._agent_iteration(prompt, plan, task_text, iteration)
            ran = True

            stats = self._workspace.load_plan().stats()
            self._checkpoint(Phase.BUILDING, iteration, task_id=task_id, pending=stats.pending)
            if stats.pending == 0 and sentinel_seen:
                self._complete()
            if sentinel_seen:
                logger.info("Completion signal observed but tasks remain", extra={"pending": stats.pending})
            if self._iteration_delay and not self._request.manual:
                self._sleep(self._iteration_delay)

    def _agent_iteration(self, prompt: str, plan: TaskPlan, task_text: str, iteration: int) -> bool:
        before = snapshot_files(self._project_root)
        result = self._invoke(Phase.BUILDING, prompt)
        sentinel_seen = self._detector.detect_role(result.output, AgentRole.BUILDING)

        if self._validations:
            results = asyncio.run(run_validations(self._validations, cwd=self._project_root))
            self._feedback = summarize_failures(results)
        else:
            self._feedback = []

        current = self._workspace.load_plan()
        restored, reopened = restore_completed(plan, current)
        if reopened:
            logger.warning(
                "Agent reopened completed tasks; restoring them",
                extra={"tasks": [task.text for task in reopened]},
            )
            restored.save(self._workspace.plan_path)

        stats = restored.stats()
        changes = [
            f"Agent outcome: {result.outcome.value} (exit code {result.exit_code})",
            f"Completion signal: {'observed' if sentinel_seen else 'absent'}",
            f"Plan: {stats.completed}/{stats.total} tasks complete",
        ]
        changes.extend(f"Restored completed task: {task.text}" for task in reopened)
        self._workspace.progress_log().append(
            ProgressEntry(
                title=f"Iteration {iteration}: {task_text}",
                timestamp=self._clock(),
                changes=changes,
                files=diff_files(before, snapshot_files(self._project_root)),
                learnings=list(self._feedback),
            )
        )
        return sentinel_seen

    def _manual_iteration(self, prompt: str, plan: TaskPlan, task: Task | None, skipped: set[str]) -> bool:
        self._display(prompt)
        if task is None:
            return True
        choice = self._menu.choose(
            f"{task.id}: {task.text}",
            [
                MenuOption("Mark task done", "done", hotkey="d"),
                MenuOption("Skip task", "skip", hotkey="s"),
                MenuOption("Quit", "quit", hotkey="q"),
            ],
            default="done",
        )
        if choice == "done":
            try:
                updated = self._workspace.load_plan().mark_done(task)
            except TaskNotFoundError:
                logger.warning("Task vanished from plan before it could be marked", extra={"task": task.text})
                return False
            updated.save(self._workspace.plan_path)
            self._workspace.progress_log().append(
                ProgressEntry(title=f"Manual: {task.text}", timestamp=self._clock(), changes=["Marked done by user"])
            )
            return True
        if choice == "skip":
            skipped.add(task.id)
            return False
        raise _Finished(LoopStatus.CANCELLED, "quit from manual mode")

    # ------------------------------------------------------------------
    # Helpers

    @staticmethod
    def _next_task(plan: TaskPlan, skipped: set[str]) -> Task | None:
        for task in plan.tasks:
            if not task.done and task.id not in skipped:
                return task
        return None

    def _invoke(self, phase: Phase, prompt: str) -> AgentRunResult:
        if self._runner is None:
            raise AgentNotFoundError("No agent CLI available")
        stats = self._statistics.phase(phase)
        try:
            result = asyncio.run(
                self._runner.run(
                    prompt,
                    model=self._request.model,
                    timeout=self._request.timeout,
                    on_output=self._display,
                    cwd=self._project_root,
                )
            )
        except KeyboardInterrupt:
            stats.cancelled += 1
            raise
        except AgentAuthError as exc:
            if exc.result is not None:
                stats.record(exc.result)
            raise

        stats.record(result)
        atomic_write(self._workspace.last_run_path, serialize_result(result) + "\n")
        if not result.ok:
            logger.warning(
                "Agent run did not succeed",
                extra={"phase": phase.value, "outcome": result.outcome.value, "exit_code": result.exit_code},
            )
        return result

    def _common_references(self) -> list[ReferenceBlock]:
        workspace = self._workspace
        references = [
            ReferenceBlock(
                "Session files",
                f"Plan: {workspace.plan_path}\nProgress: {workspace.progress_path}\nSpecs: {workspace.specs_dir}",
                kind="data",
            )
        ]
        if self._memory is not None:
            content = self._memory.content()
            if content.strip():
                references.append(ReferenceBlock("Cross-session memory", content))
        return references

    def _build_references(self) -> list[ReferenceBlock]:
        references = self._common_references()
        if self._feedback:
            references.insert(
                0,
                ReferenceBlock("Validation failures from the previous iteration", "\n\n".join(self._feedback)),
            )
        return references

    def _check_time_budget(self) -> None:
        budget = self._request.time_budget
        if budget and self._monotonic() - self._started >= budget:
            raise _Finished(LoopStatus.INCOMPLETE, f"time budget exhausted ({budget:g}s)")

    def _checkpoint(self, phase: Phase, iteration: int, *, task_id: str | None = None, pending: int = 0) -> None:
        self._last_checkpoint = self._checkpoints.record(
            phase,
            iteration=iteration,
            active_task_id=task_id,
            pending_count=pending,
            mode=self._request.mode.value,
            model=self._request.model,
            feedback=self._feedback,
        )

    def _complete(self) -> None:
        self._phase = Phase.COMPLETE
        if not self._request.dry_run:
            self._checkpoints.clear()
            self._last_checkpoint = None
        raise _Finished(LoopStatus.COMPLETE, "all tasks complete")

    def _outcome(self, status: LoopStatus, reason: str, *, phase: Phase | None = None) -> LoopOutcome:
        if status is LoopStatus.COMPLETE:
            phase = Phase.COMPLETE
        outcome = LoopOutcome(
            status=status,
            phase=phase or self._phase,
            iterations=self._statistics.iterations,
            reason=reason,
            plan=self._workspace.load_plan().stats(),
            checkpoint=self._last_checkpoint or self._checkpoints.load(),
            statistics=self._statistics,
        )
        logger.info(
            "Loop finished",
            extra={"status": status.value, "reason": reason, "iterations": outcome.iterations},
        )
        return outcome


__all__ = [
    "LoopOutcome",
    "LoopStatus",
    "Orchestrator",
    "OrchestratorError",
    "PhaseStatistics",
    "RunMode",
    "RunRequest",
    "SessionStatistics",
]
