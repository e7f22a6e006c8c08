from __future__ import annotations

import itertools
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import pytest

from ralph_loop.agents import AgentCatalog, TASK_HEADER
from ralph_loop.menu import ScriptedMenu
from ralph_loop.orchestrator import LoopStatus, Orchestrator, RunMode, RunRequest
from ralph_loop.plan import TaskPlan
from ralph_loop.runner import AgentAuthError, AgentRunResult, FakeAgentRunner, RunOutcome, ValidationCommand
from ralph_loop.storage import CheckpointManager, MemorySection, MemoryStore, Phase, SessionStore, SessionWorkspace

BUILD_SIGNAL = "<promise>COMPLETE</promise>"

PROMPTS = {
    "ralph.agent.md": "BUILDER PROMPT",
    "ralph-planner.agent.md": "PLANNER PROMPT",
    "ralph-spec-creator.agent.md": "SPEC CREATOR PROMPT",
    "ralph-agents-updater.agent.md": "AGENTS UPDATER PROMPT",
}

TWO_TASKS = "# Implementation Plan\n\n## Tasks\n- [ ] Create the schema\n- [ ] Add the endpoint\n"


@dataclass
class Project:
    root: Path
    store: SessionStore
    workspace: SessionWorkspace
    catalog: AgentCatalog

    @property
    def plan(self) -> TaskPlan:
        return TaskPlan.load(self.workspace.plan_path)

    def write_plan(self, text: str) -> None:
        self.workspace.plan_path.parent.mkdir(parents=True, exist_ok=True)
        self.workspace.plan_path.write_text(text, encoding="utf-8")


def make_project(tmp_path: Path, *, specs: bool = True, plan: str | None = TWO_TASKS) -> Project:
    root = tmp_path / "project"
    agents_dir = root / ".github" / "agents"
    agents_dir.mkdir(parents=True)
    for filename, body in PROMPTS.items():
        (agents_dir / filename).write_text(f"---\nname: {filename}\n---\n{body}\n", encoding="utf-8")
    if specs:
        (root / "specs").mkdir()
        (root / "specs" / "feature.md").write_text("# Feature\n", encoding="utf-8")

    store = SessionStore(root / ".ralph", root / "specs")
    project = Project(root=root, store=store, workspace=store.workspace(None), catalog=AgentCatalog(agents_dir))
    if plan is not None:
        project.write_plan(plan)
    return project


def make_orchestrator(project: Project, runner, **kwargs) -> Orchestrator:
    kwargs.setdefault("clock", lambda: datetime(2024, 1, 1, 12, 0, 0))
    return Orchestrator(project.workspace, runner, project.catalog, project_root=project.root, **kwargs)


def reply(output: str = "", exit_code: int = 0) -> AgentRunResult:
    outcome = RunOutcome.SUCCESS if exit_code == 0 else RunOutcome.FAILED_EXIT_CODE
    return AgentRunResult(args=("copilot",), exit_code=exit_code, output=output, outcome=outcome, duration=0.5)


class Builder:
    """Fake agent that completes the next pending task per call."""

    def __init__(self, project: Project, *, always_signal: bool = False) -> None:
        self.project = project
        self.always_signal = always_signal

    def __call__(self, prompt: str) -> AgentRunResult:
        plan = self.project.plan
        task = plan.next_pending()
        if task is not None:
            plan.mark_done(task).save(self.project.workspace.plan_path)
        done = self.project.plan.stats().pending == 0
        return reply(BUILD_SIGNAL if done or self.always_signal else "worked on it")


def build_request(**kwargs) -> RunRequest:
    kwargs.setdefault("mode", RunMode.BUILD)
    kwargs.setdefault("max_iterations", 10)
    return RunRequest(**kwargs)


def test_build_completes_tasks_in_order(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    builder = Builder(project)
    runner = FakeAgentRunner([builder, builder])

    outcome = make_orchestrator(project, runner).run(build_request(model="m1"))

    assert outcome.status is LoopStatus.COMPLETE
    assert outcome.phase is Phase.COMPLETE
    assert outcome.iterations == 2
    prompts = [call["prompt"] for call in runner.invocations]
    assert "Create the schema" in prompts[0].split(TASK_HEADER, 1)[1]
    assert "Add the endpoint" in prompts[1].split(TASK_HEADER, 1)[1]
    assert all(prompt.startswith("BUILDER PROMPT") for prompt in prompts)
    assert runner.invocations[0]["model"] == "m1"
    assert project.plan.stats().pending == 0
    progress = project.workspace.progress_path.read_text(encoding="utf-8")
    assert "Iteration 1: Create the schema" in progress
    assert "Iteration 2: Add the endpoint" in progress
    assert outcome.checkpoint is None
    assert not project.workspace.checkpoint_path.exists()
    last_run = json.loads(project.workspace.last_run_path.read_text(encoding="utf-8"))
    assert last_run["outcome"] == "success"


def test_signal_with_pending_tasks_keeps_going(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    builder = Builder(project, always_signal=True)
    runner = FakeAgentRunner([builder, builder, builder])

    outcome = make_orchestrator(project, runner).run(build_request())

    assert outcome.status is LoopStatus.COMPLETE
    assert len(runner.invocations) == 2


def test_three_tasks_complete_after_exactly_three_iterations(tmp_path: Path) -> None:
    project = make_project(tmp_path, plan="- [ ] one\n- [ ] two\n- [ ] three\n")
    builder = Builder(project)
    runner = FakeAgentRunner([builder] * 5)

    outcome = make_orchestrator(project, runner).run(build_request())

    assert outcome.status is LoopStatus.COMPLETE
    assert outcome.iterations == 3
    assert len(runner.invocations) == 3


def test_nonzero_exit_does_not_gate_progress(tmp_path: Path) -> None:
    project = make_project(tmp_path)

    def crashing_but_working(prompt: str) -> AgentRunResult:
        Builder(project)(prompt)
        return reply(f"wrapper error\n{BUILD_SIGNAL}", exit_code=3)

    runner = FakeAgentRunner([crashing_but_working] * 3)

    outcome = make_orchestrator(project, runner).run(build_request())

    assert outcome.status is LoopStatus.COMPLETE
    assert len(runner.invocations) == 2
    assert outcome.statistics.phases[Phase.BUILDING].failed == 2


def test_iteration_cap_leaves_remaining_tasks_pending(tmp_path: Path) -> None:
    project = make_project(tmp_path, plan="".join(f"- [ ] task {n}\n" for n in range(1, 6)))
    builder = Builder(project)
    runner = FakeAgentRunner([builder] * 5)

    outcome = make_orchestrator(project, runner).run(build_request(max_iterations=2))

    assert outcome.status is LoopStatus.INCOMPLETE
    assert outcome.iterations == 2
    assert outcome.plan.pending == 3
    assert project.plan.stats().pending == 3


def test_all_done_without_signal_runs_verification(tmp_path: Path) -> None:
    project = make_project(tmp_path)

    def finish_everything(prompt: str) -> AgentRunResult:
        plan = project.plan
        for task in plan.tasks:
            plan = plan.mark_done(task)
        plan.save(project.workspace.plan_path)
        return reply("all done, forgot the signal")

    runner = FakeAgentRunner([finish_everything, reply(BUILD_SIGNAL)])

    outcome = make_orchestrator(project, runner).run(build_request())

    assert outcome.status is LoopStatus.COMPLETE
    assert len(runner.invocations) == 2
    assert "Verify that the work" in runner.invocations[1]["prompt"]


def test_verification_is_bounded(tmp_path: Path) -> None:
    project = make_project(tmp_path, plan="- [ ] only task\n")

    def finish(prompt: str) -> AgentRunResult:
        project.plan.mark_done("only task").save(project.workspace.plan_path)
        return reply("no signal")

    runner = FakeAgentRunner([finish])

    outcome = make_orchestrator(project, runner, phase_attempt_limit=2).run(build_request())

    assert outcome.status is LoopStatus.INCOMPLETE
    assert "did not confirm" in outcome.reason
    assert len(runner.invocations) == 3


def test_iteration_cap(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    runner = FakeAgentRunner()

    outcome = make_orchestrator(project, runner).run(build_request(max_iterations=2))

    assert outcome.status is LoopStatus.INCOMPLETE
    assert "iteration cap" in outcome.reason
    assert len(runner.invocations) == 2
    assert outcome.checkpoint.phase is Phase.BUILDING
    assert outcome.checkpoint.iteration == 2
    assert outcome.plan.pending == 2


def test_failed_agent_run_does_not_stop_loop(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    builder = Builder(project)
    runner = FakeAgentRunner([reply("crashed", exit_code=1), builder, builder])

    outcome = make_orchestrator(project, runner).run(build_request())

    assert outcome.status is LoopStatus.COMPLETE
    assert len(runner.invocations) == 3
    building = outcome.statistics.phases[Phase.BUILDING]
    assert (building.calls, building.succeeded, building.failed) == (3, 2, 1)


def test_completed_tasks_cannot_be_reopened(tmp_path: Path) -> None:
    project = make_project(tmp_path, plan="- [x] first\n- [ ] second\n")

    def rewrite(prompt: str) -> AgentRunResult:
        project.write_plan("- [ ] first\n- [x] second\n")
        return reply(BUILD_SIGNAL)

    runner = FakeAgentRunner([rewrite])

    outcome = make_orchestrator(project, runner).run(build_request())

    assert outcome.status is LoopStatus.COMPLETE
    assert project.workspace.plan_path.read_text(encoding="utf-8") == "- [x] first\n- [x] second\n"
    assert "Restored completed task: first" in project.workspace.progress_path.read_text(encoding="utf-8")


def test_auto_mode_with_everything_done_skips_agent(tmp_path: Path) -> None:
    project = make_project(tmp_path, plan="- [x] a\n- [x] b\n")
    runner = FakeAgentRunner()

    outcome = make_orchestrator(project, runner).run(RunRequest())

    assert outcome.status is LoopStatus.COMPLETE
    assert runner.invocations == []


def test_build_mode_without_tasks(tmp_path: Path) -> None:
    project = make_project(tmp_path, plan="# nothing yet\n")
    outcome = make_orchestrator(project, FakeAgentRunner()).run(build_request())
    assert outcome.status is LoopStatus.INCOMPLETE
    assert "no tasks" in outcome.reason


def test_missing_specs_without_request_is_fatal(tmp_path: Path) -> None:
    project = make_project(tmp_path, specs=False, plan=None)
    runner = FakeAgentRunner()

    outcome = make_orchestrator(project, runner).run(RunRequest())

    assert outcome.status is LoopStatus.FATAL
    assert runner.invocations == []


def test_full_pipeline_spec_plan_build(tmp_path: Path) -> None:
    project = make_project(tmp_path, specs=False, plan=None)

    def agent(prompt: str) -> AgentRunResult:
        if prompt.startswith("SPEC CREATOR PROMPT"):
            assert "todo app" in prompt
            project.workspace.specs_dir.mkdir(parents=True, exist_ok=True)
            (project.workspace.specs_dir / "todo.md").write_text("# Todo\n", encoding="utf-8")
            return reply("<promise>SPEC_CREATED</promise>")
        if prompt.startswith("PLANNER PROMPT"):
            assert "todo.md" in prompt
            project.write_plan("## Tasks\n- [ ] Model todos\n- [ ] List todos\n")
            return reply("<promise>PLANNING_COMPLETE</promise>")
        return Builder(project)(prompt)

    runner = FakeAgentRunner([agent] * 6)

    outcome = make_orchestrator(project, runner).run(RunRequest(spec_request="a todo app", max_iterations=5))

    assert outcome.status is LoopStatus.COMPLETE
    heads = [call["prompt"].split("\n", 1)[0] for call in runner.invocations]
    assert heads == ["SPEC CREATOR PROMPT", "PLANNER PROMPT", "BUILDER PROMPT", "BUILDER PROMPT"]
    assert set(outcome.statistics.phases) == {Phase.SPEC_CREATION, Phase.PLANNING, Phase.BUILDING}


def test_spec_mode_stops_after_spec(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    runner = FakeAgentRunner([reply("<promise>SPEC_CREATED</promise>")])

    outcome = make_orchestrator(project, runner).run(RunRequest(mode=RunMode.SPEC, spec_request="add search"))

    assert outcome.status is LoopStatus.COMPLETE
    assert len(runner.invocations) == 1
    assert not project.workspace.checkpoint_path.exists()


def test_spec_mode_keeps_building_checkpoint(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    CheckpointManager(project.workspace.checkpoint_path).record(Phase.BUILDING, iteration=1, pending_count=2)

    def spec_creator(prompt: str) -> AgentRunResult:
        (project.root / "specs" / "cli.md").write_text("# CLI\n", encoding="utf-8")
        return reply("<promise>SPEC_CREATED</promise>")

    runner = FakeAgentRunner([spec_creator, Builder(project)])

    outcome = make_orchestrator(project, runner).run(RunRequest(mode=RunMode.SPEC, spec_request="add a CLI"))

    assert outcome.status is LoopStatus.COMPLETE
    assert outcome.reason == "spec created"
    assert len(runner.invocations) == 1
    assert runner.invocations[0]["prompt"].startswith("SPEC CREATOR PROMPT")
    assert project.plan.stats().pending == 2
    checkpoint = CheckpointManager(project.workspace.checkpoint_path).load()
    assert checkpoint.phase is Phase.BUILDING
    assert checkpoint.iteration == 1


def test_plan_mode_ignores_building_checkpoint(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    CheckpointManager(project.workspace.checkpoint_path).record(Phase.BUILDING, iteration=4)
    runner = FakeAgentRunner([reply("<promise>PLANNING_COMPLETE</promise>")])

    outcome = make_orchestrator(project, runner).run(RunRequest(mode=RunMode.PLAN))

    assert outcome.status is LoopStatus.COMPLETE
    assert outcome.reason == "plan created"
    assert [call["prompt"].split("\n", 1)[0] for call in runner.invocations] == ["PLANNER PROMPT"]
    assert CheckpointManager(project.workspace.checkpoint_path).load().iteration == 4


def test_planning_without_tasks_is_incomplete(tmp_path: Path) -> None:
    project = make_project(tmp_path, plan=None)
    runner = FakeAgentRunner([reply("<promise>PLANNING_COMPLETE</promise>")])

    outcome = make_orchestrator(project, runner).run(RunRequest())

    assert outcome.status is LoopStatus.INCOMPLETE
    assert outcome.reason == "planning produced no tasks"


def test_planning_attempts_are_bounded(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    runner = FakeAgentRunner()

    outcome = make_orchestrator(project, runner, phase_attempt_limit=2).run(RunRequest(mode=RunMode.PLAN))

    assert outcome.status is LoopStatus.INCOMPLETE
    assert len(runner.invocations) == 2
    assert outcome.checkpoint.phase is Phase.PLANNING


def test_update_agents_runs_before_planning(tmp_path: Path) -> None:
    project = make_project(tmp_path, plan=None)

    def planner(prompt: str) -> AgentRunResult:
        project.write_plan("- [x] already there\n")
        return reply("<promise>PLANNING_COMPLETE</promise>")

    runner = FakeAgentRunner([reply("no signal"), planner])

    outcome = make_orchestrator(project, runner).run(RunRequest(update_agents=True))

    assert outcome.status is LoopStatus.COMPLETE
    heads = [call["prompt"].split("\n", 1)[0] for call in runner.invocations]
    assert heads == ["AGENTS UPDATER PROMPT", "PLANNER PROMPT"]


def test_dry_run_writes_nothing(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    before = project.workspace.plan_path.read_text(encoding="utf-8")
    shown: list[str] = []
    runner = FakeAgentRunner()

    outcome = make_orchestrator(project, runner, display=shown.append).run(RunRequest(dry_run=True))

    assert outcome.status is LoopStatus.INCOMPLETE
    assert outcome.reason == "dry run"
    assert runner.invocations == []
    assert TASK_HEADER in shown[0]
    assert "Create the schema" in shown[0]
    assert project.workspace.plan_path.read_text(encoding="utf-8") == before
    assert not project.workspace.checkpoint_path.exists()
    assert not project.workspace.progress_path.exists()


def test_dry_run_without_agent(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    outcome = make_orchestrator(project, None).run(build_request(dry_run=True))
    assert outcome.status is LoopStatus.INCOMPLETE


def test_missing_agent_is_fatal(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    outcome = make_orchestrator(project, None).run(build_request())
    assert outcome.status is LoopStatus.FATAL
    assert outcome.checkpoint.phase is Phase.BUILDING


def test_resume_from_checkpoint(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    CheckpointManager(project.workspace.checkpoint_path).record(
        Phase.BUILDING,
        iteration=3,
        active_task_id="task-1",
        pending_count=2,
        feedback=["tests (`pytest`) failed with exit code 1:\nAssertionError in test_schema"],
    )
    builder = Builder(project)
    runner = FakeAgentRunner([builder, builder])

    outcome = make_orchestrator(project, runner).run(RunRequest())

    assert outcome.status is LoopStatus.COMPLETE
    first_prompt = runner.invocations[0]["prompt"]
    assert "AssertionError in test_schema" in first_prompt
    assert first_prompt.startswith("BUILDER PROMPT")
    progress = project.workspace.progress_path.read_text(encoding="utf-8")
    assert "Iteration 3: Create the schema" in progress


def test_resumed_run_gets_its_own_iteration_cap(tmp_path: Path) -> None:
    project = make_project(tmp_path, plan="- [ ] one\n- [ ] two\n- [ ] three\n- [ ] four\n")
    CheckpointManager(project.workspace.checkpoint_path).record(Phase.BUILDING, iteration=5, pending_count=4)
    builder = Builder(project)
    runner = FakeAgentRunner([builder] * 4)

    outcome = make_orchestrator(project, runner).run(RunRequest(max_iterations=2))

    assert outcome.status is LoopStatus.INCOMPLETE
    assert outcome.reason == "iteration cap reached (2)"
    assert len(runner.invocations) == 2
    assert outcome.iterations == 2
    assert project.plan.stats().pending == 2
    progress = project.workspace.progress_path.read_text(encoding="utf-8")
    assert "Iteration 5: one" in progress
    assert "Iteration 6: two" in progress
    assert outcome.checkpoint.iteration == 6


def test_resume_can_be_discarded(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    CheckpointManager(project.workspace.checkpoint_path).record(Phase.PLANNING, iteration=1)
    builder = Builder(project)
    runner = FakeAgentRunner([builder, builder])
    menu = ScriptedMenu(["discard", "continue"])

    outcome = make_orchestrator(project, runner, menu=menu).run(build_request(mode=RunMode.AUTO))

    assert outcome.status is LoopStatus.COMPLETE
    assert len(menu.prompts) == 2
    assert all(call["prompt"].startswith("BUILDER PROMPT") for call in runner.invocations)


def test_corrupt_checkpoint_starts_fresh(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    project = make_project(tmp_path)
    project.workspace.checkpoint_path.write_text("{garbage", encoding="utf-8")
    builder = Builder(project)

    with caplog.at_level("WARNING"):
        outcome = make_orchestrator(project, FakeAgentRunner([builder, builder])).run(build_request())

    assert outcome.status is LoopStatus.COMPLETE
    assert "Checkpoint unreadable" in caplog.text


def test_project_menu_quit(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    runner = FakeAgentRunner()

    outcome = make_orchestrator(project, runner, menu=ScriptedMenu(["quit"])).run(RunRequest())

    assert outcome.status is LoopStatus.CANCELLED
    assert runner.invocations == []


def test_project_menu_start_fresh_replans(tmp_path: Path) -> None:
    project = make_project(tmp_path)

    def planner(prompt: str) -> AgentRunResult:
        assert project.plan.stats().total == 0
        project.write_plan("- [ ] Fresh task\n")
        return reply("<promise>PLANNING_COMPLETE</promise>")

    runner = FakeAgentRunner([planner, Builder(project)])

    outcome = make_orchestrator(project, runner, menu=ScriptedMenu(["fresh"])).run(RunRequest(max_iterations=5))

    assert outcome.status is LoopStatus.COMPLETE
    assert [task.text for task in project.plan.tasks] == ["Fresh task"]


def test_interrupt_writes_checkpoint_and_resumes(tmp_path: Path) -> None:
    project = make_project(tmp_path)

    def interrupted(prompt: str) -> AgentRunResult:
        raise KeyboardInterrupt

    runner = FakeAgentRunner([interrupted])

    outcome = make_orchestrator(project, runner).run(build_request())

    assert outcome.status is LoopStatus.CANCELLED
    assert outcome.statistics.phases[Phase.BUILDING].cancelled == 1
    checkpoint = CheckpointManager(project.workspace.checkpoint_path).load()
    assert checkpoint.phase is Phase.BUILDING
    assert checkpoint.iteration == 1
    assert checkpoint.active_task_id == "task-1"
    assert checkpoint.pending_count == 2

    builder = Builder(project)
    resumed_runner = FakeAgentRunner([builder, builder])
    resumed = make_orchestrator(project, resumed_runner).run(RunRequest())

    assert resumed.status is LoopStatus.COMPLETE
    assert "Create the schema" in resumed_runner.invocations[0]["prompt"].split(TASK_HEADER, 1)[1]


def test_auth_failure_is_fatal_and_keeps_checkpoint(tmp_path: Path) -> None:
    project = make_project(tmp_path)

    def unauthenticated(prompt: str) -> AgentRunResult:
        raise AgentAuthError("Agent CLI is not authenticated", reply("not logged in", exit_code=1))

    outcome = make_orchestrator(project, FakeAgentRunner([unauthenticated])).run(build_request())

    assert outcome.status is LoopStatus.FATAL
    assert "not authenticated" in outcome.reason
    assert CheckpointManager(project.workspace.checkpoint_path).load().phase is Phase.BUILDING


def test_validation_failures_feed_next_prompt(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    builder = Builder(project)
    runner = FakeAgentRunner([builder, builder])
    validations = [ValidationCommand(name="lint", command="echo lint-broken; exit 1")]

    outcome = make_orchestrator(project, runner, validations=validations).run(build_request())

    assert outcome.status is LoopStatus.COMPLETE
    assert "lint-broken" not in runner.invocations[0]["prompt"]
    second = runner.invocations[1]["prompt"]
    assert "## REFERENCE: Validation failures from the previous iteration" in second
    assert "lint-broken" in second
    assert "lint-broken" in project.workspace.progress_path.read_text(encoding="utf-8")


def test_memory_is_injected(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    memory = MemoryStore(project.root / ".ralph" / "memory.md", project.root / ".ralph" / "settings.json")
    memory.add(MemorySection.COMMANDS, "Use `make check` before finishing")
    runner = FakeAgentRunner([Builder(project), Builder(project)])

    make_orchestrator(project, runner, memory=memory).run(build_request())

    assert "## REFERENCE: Cross-session memory" in runner.invocations[0]["prompt"]
    assert "Use `make check` before finishing" in runner.invocations[0]["prompt"]


def test_disabled_memory_is_not_injected(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    memory = MemoryStore(project.root / ".ralph" / "memory.md", project.root / ".ralph" / "settings.json")
    memory.add(MemorySection.COMMANDS, "Use `make check` before finishing")
    memory.set_enabled(False)
    runner = FakeAgentRunner([Builder(project), Builder(project)])

    make_orchestrator(project, runner, memory=memory).run(build_request())

    assert "Cross-session memory" not in runner.invocations[0]["prompt"]


def test_files_touched_are_logged(tmp_path: Path) -> None:
    project = make_project(tmp_path, plan="- [ ] write code\n")

    def coder(prompt: str) -> AgentRunResult:
        (project.root / "src").mkdir(exist_ok=True)
        (project.root / "src" / "feature.py").write_text("x = 1\n", encoding="utf-8")
        return Builder(project)(prompt)

    make_orchestrator(project, FakeAgentRunner([coder])).run(build_request())

    progress = project.workspace.progress_path.read_text(encoding="utf-8")
    assert "### Files touched\n- src/feature.py" in progress


def test_manual_mode_marks_tasks(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    shown: list[str] = []
    runner = FakeAgentRunner()

    outcome = make_orchestrator(project, runner, menu=ScriptedMenu(["done", "done"]), display=shown.append).run(
        build_request(manual=True)
    )

    assert outcome.status is LoopStatus.COMPLETE
    assert runner.invocations == []
    assert project.plan.stats().pending == 0
    assert len(shown) == 2


def test_manual_mode_skip(tmp_path: Path) -> None:
    project = make_project(tmp_path, plan="- [ ] only\n")

    outcome = make_orchestrator(project, FakeAgentRunner(), menu=ScriptedMenu(["skip"])).run(
        build_request(manual=True)
    )

    assert outcome.status is LoopStatus.INCOMPLETE
    assert "skipped" in outcome.reason
    assert project.plan.stats().pending == 1


def test_time_budget(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    ticks = itertools.count(0, 100)
    runner = FakeAgentRunner()

    outcome = make_orchestrator(project, runner, monotonic=lambda: next(ticks)).run(build_request(time_budget=50))

    assert outcome.status is LoopStatus.INCOMPLETE
    assert "time budget" in outcome.reason
    assert runner.invocations == []


def test_iteration_delay_between_iterations(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    builder = Builder(project)
    sleeps: list[float] = []

    make_orchestrator(project, FakeAgentRunner([builder, builder]), sleep=sleeps.append, iteration_delay=1.5).run(
        build_request()
    )

    assert sleeps == [1.5]


def test_isolated_session_uses_its_own_files(tmp_path: Path) -> None:
    project = make_project(tmp_path)
    store = SessionStore(
        project.root / ".ralph",
        project.root / "specs",
        clock=lambda: datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    metadata = store.create("Side quest")
    workspace = store.workspace(metadata.id)
    workspace.plan_path.write_text("- [ ] side task\n", encoding="utf-8")
    default_plan = project.workspace.plan_path.read_text(encoding="utf-8")

    def side_builder(prompt: str) -> AgentRunResult:
        TaskPlan.load(workspace.plan_path).mark_done("side task").save(workspace.plan_path)
        return reply(BUILD_SIGNAL)

    outcome = Orchestrator(workspace, FakeAgentRunner([side_builder]), project.catalog, project_root=project.root).run(
        build_request()
    )

    assert outcome.status is LoopStatus.COMPLETE
    assert project.workspace.plan_path.read_text(encoding="utf-8") == default_plan
    assert not workspace.checkpoint_path.exists()
    assert workspace.last_run_path.exists()
    assert "Iteration 1: side task" in workspace.progress_path.read_text(encoding="utf-8")
    assert not project.workspace.last_run_path.exists()
    assert not project.workspace.checkpoint_path.exists()
    assert workspace.last_run_path != project.workspace.last_run_path
