"""Async runner for the external coding agent CLI."""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import re
import shutil
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Sequence, Union

from .utils import sanitize_environment, tail

logger = logging.getLogger(__name__)

OutputSink = Callable[[str], None]

DEFAULT_BINARY = "copilot"

_AUTH_FAILURE_RE = re.compile(
    r"not (?:logged in|authenticated)"
    r"|authentication (?:failed|required)"
    r"|please (?:log ?in|login|authenticate)"
    r"|no authentication information found",
    re.IGNORECASE,
)


class AgentRunnerError(RuntimeError):
    """Base class for agent runner errors."""


class AgentNotFoundError(AgentRunnerError):
    """Raised when the agent CLI executable cannot be located or started."""


class AgentAuthError(AgentRunnerError):
    """Raised when the agent CLI reports that it is not authenticated."""

    def __init__(self, message: str, result: "AgentRunResult | None" = None) -> None:
        super().__init__(message)
        self.result = result


class RunOutcome(str, Enum):
    SUCCESS = "success"
    FAILED_EXIT_CODE = "failed_exit_code"
    FAILED_TIMEOUT = "failed_timeout"


class ToolPermission(str, Enum):
    ALLOW_ALL = "allow_all"
    DEFAULT = "default"


@dataclass(slots=True)
class AgentRunResult:
    """Holds the outcome of an agent CLI invocation."""

    args: tuple[str, ...]
    exit_code: int | None
    output: str
    outcome: RunOutcome
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome is RunOutcome.SUCCESS

    @property
    def timed_out(self) -> bool:
        return self.outcome is RunOutcome.FAILED_TIMEOUT


class AgentRunner:
    """Spawn the agent CLI and stream its output while accumulating it."""

    def __init__(
        self,
        executable: Path | None = None,
        *,
        binary_name: str = DEFAULT_BINARY,
        prompt_flag: str = "-p",
        allow_all_flag: str = "--allow-all-tools",
        terminate_grace: float = 5.0,
        chunk_size: int = 4096,
    ) -> None:
        self._executable_path = self._resolve_executable(executable, binary_name)
        self._prompt_flag = prompt_flag
        self._allow_all_flag = allow_all_flag
        self._terminate_grace = terminate_grace
        self._chunk_size = chunk_size

    @staticmethod
    def _resolve_executable(explicit: Path | None, binary_name: str) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise AgentNotFoundError(f"Agent executable not found at {candidate}")

        binary = shutil.which(binary_name)
        if binary is None:
            raise AgentNotFoundError(f"Agent CLI '{binary_name}' not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    def build_args(
        self,
        prompt: str,
        *,
        model: str | None = None,
        agent: str | None = None,
        tool_permission: ToolPermission = ToolPermission.ALLOW_ALL,
    ) -> list[str]:
        args = [str(self._executable_path), self._prompt_flag, prompt]
        if tool_permission is ToolPermission.ALLOW_ALL:
            args.append(self._allow_all_flag)
        if model:
            args.extend(["--model", model])
        if agent:
            args.extend(["--agent", agent])
        return args

    async def version(self) -> AgentRunResult:
        return await self._invoke([str(self._executable_path), "--version"], timeout=30)

    async def run(
        self,
        prompt: str,
        *,
        model: str | None = None,
        agent: str | None = None,
        timeout: float | None = None,
        on_output: OutputSink | None = None,
        cwd: Path | None = None,
        tool_permission: ToolPermission = ToolPermission.ALLOW_ALL,
    ) -> AgentRunResult:
        args = self.build_args(prompt, model=model, agent=agent, tool_permission=tool_permission)
        result = await self._invoke(args, timeout=timeout, on_output=on_output, cwd=cwd)
        if result.exit_code not in (0, None) and _AUTH_FAILURE_RE.search(result.output):
            raise AgentAuthError("Agent CLI is not authenticated", result)
        return result

    async def _invoke(
        self,
        args: Sequence[str],
        *,
        timeout: float | None = None,
        on_output: OutputSink | None = None,
        cwd: Path | None = None,
    ) -> AgentRunResult:
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=sanitize_environment(),
                cwd=str(cwd) if cwd is not None else None,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise AgentNotFoundError(f"Failed to start agent CLI {args[0]}: {exc}") from exc

        chunks: list[str] = []
        outcome: RunOutcome
        try:
            await asyncio.wait_for(self._drain(process, chunks, on_output), timeout)
            outcome = RunOutcome.SUCCESS if process.returncode == 0 else RunOutcome.FAILED_EXIT_CODE
        except asyncio.TimeoutError:
            logger.warning("Agent run timed out", extra={"timeout": timeout, "pid": process.pid})
            await self._terminate(process)
            outcome = RunOutcome.FAILED_TIMEOUT
        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        return AgentRunResult(
            args=tuple(args),
            exit_code=process.returncode,
            output="".join(chunks),
            outcome=outcome,
            duration=time.monotonic() - started,
        )

    async def _drain(
        self,
        process: asyncio.subprocess.Process,
        chunks: list[str],
        on_output: OutputSink | None,
    ) -> None:
        # One reader feeds both the accumulation buffer and the display sink.
        assert process.stdout is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        sink = on_output
        while True:
            data = await process.stdout.read(self._chunk_size)
            final = not data
            text = decoder.decode(data, final=final)
            if text:
                chunks.append(text)
                if sink is not None:
                    try:
                        sink(text)
                    except Exception:
                        logger.exception("Output sink failed; continuing without live display")
                        sink = None
            if final:
                break
        await process.wait()

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), self._terminate_grace)
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()


ScriptedResponse = Union[AgentRunResult, Callable[[str], AgentRunResult]]


class FakeAgentRunner(AgentRunner):
    """Test double that replays scripted agent responses."""

    def __init__(self, responses: Iterable[ScriptedResponse] | None = None) -> None:  # type: ignore[override]
        self._responses = list(responses or [])
        self._invocations: list[dict[str, object]] = []
        self._executable_path = Path("/tmp/fake-agent")
        self._prompt_flag = "-p"
        self._allow_all_flag = "--allow-all-tools"
        self._terminate_grace = 0.0
        self._chunk_size = 4096

    async def run(  # type: ignore[override]
        self,
        prompt: str,
        *,
        model: str | None = None,
        agent: str | None = None,
        timeout: float | None = None,
        on_output: OutputSink | None = None,
        cwd: Path | None = None,
        tool_permission: ToolPermission = ToolPermission.ALLOW_ALL,
    ) -> AgentRunResult:
        self._invocations.append({"prompt": prompt, "model": model, "agent": agent, "timeout": timeout})
        args = tuple(self.build_args(prompt, model=model, agent=agent, tool_permission=tool_permission))
        if self._responses:
            response = self._responses.pop(0)
            result = response(prompt) if callable(response) else response
        else:
            result = AgentRunResult(args=args, exit_code=0, output="", outcome=RunOutcome.SUCCESS)
        if on_output is not None and result.output:
            on_output(result.output)
        return result

    async def version(self) -> AgentRunResult:  # type: ignore[override]
        return AgentRunResult(args=("fake-agent", "--version"), exit_code=0, output="fake-agent 0.0.0", outcome=RunOutcome.SUCCESS)

    @property
    def invocations(self) -> list[dict[str, object]]:
        return self._invocations


def serialize_result(result: AgentRunResult, *, output_limit: int = 4000) -> str:
    """Serialize a run result (output tail only) for the session's last-run record."""

    # args[1:3] are the prompt flag and the prompt itself
    args = [result.args[0], *result.args[3:]] if len(result.args) > 3 else list(result.args)
    return json.dumps(
        {
            "args": args,
            "exit_code": result.exit_code,
            "outcome": result.outcome.value,
            "duration": round(result.duration, 3),
            "output_tail": tail(result.output, output_limit),
        }
    )


__all__ = [
    "AgentAuthError",
    "AgentNotFoundError",
    "AgentRunResult",
    "AgentRunner",
    "AgentRunnerError",
    "FakeAgentRunner",
    "RunOutcome",
    "ToolPermission",
    "serialize_result",
]
