"""Validation commands run after each build iteration (backpressure).

Commands are declared in ``.ralph/validation.yml``::

    - name: tests
      command: pytest -q
    - name: lint
      command: ruff check .

A failing command never fails the iteration. Its output is summarised and
handed to the next prompt so the agent can correct itself.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .utils import sanitize_environment, tail

logger = logging.getLogger(__name__)


class ValidationConfigError(RuntimeError):
    """Raised when the validation command file cannot be parsed."""


class ValidationCommand(BaseModel):
    name: str = Field(..., description="Short label shown in logs and prompts.")
    command: str = Field(..., description="Shell command executed in the project root.")
    timeout: float | None = Field(default=None, description="Optional per-command timeout in seconds.")

    @field_validator("name", "command")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Validation command name and command must not be empty")
        return normalized


@dataclass(slots=True)
class ValidationResult:
    name: str
    command: str
    exit_code: int | None
    output: str
    duration: float
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


def load_validation_commands(path: Path) -> list[ValidationCommand]:
    """Load commands from YAML; a missing file means no validation."""

    path = Path(path)
    if not path.exists():
        return []

    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValidationConfigError(f"Failed to parse YAML in {path}: {exc}") from exc

    if document is None:
        return []
    if isinstance(document, dict):
        document = document.get("commands") or []
    if not isinstance(document, list):
        raise ValidationConfigError(f"{path} must contain a list of {{name, command}} entries")

    commands: list[ValidationCommand] = []
    errors: list[str] = []
    for index, entry in enumerate(document):
        try:
            commands.append(ValidationCommand.model_validate(entry))
        except ValidationError as exc:
            errors.append(f"entry {index}: {exc}")
    if errors:
        raise ValidationConfigError(f"Invalid validation commands in {path}: " + "; ".join(errors))
    return commands


async def run_validation(command: ValidationCommand, *, cwd: Path) -> ValidationResult:
    started = time.monotonic()
    try:
        process = await asyncio.create_subprocess_shell(
            command.command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=sanitize_environment(),
            cwd=str(cwd),
        )
    except OSError as exc:
        logger.warning("Validation command could not start", extra={"command": command.command, "error": str(exc)})
        return ValidationResult(
            name=command.name,
            command=command.command,
            exit_code=None,
            output=str(exc),
            duration=time.monotonic() - started,
        )

    chunks: list[bytes] = []

    async def _collect() -> None:
        assert process.stdout is not None
        while True:
            chunk = await process.stdout.read(4096)
            if not chunk:
                break
            chunks.append(chunk)
        await process.wait()

    timed_out = False
    try:
        await asyncio.wait_for(_collect(), command.timeout)
    except asyncio.TimeoutError:
        timed_out = True
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()

    return ValidationResult(
        name=command.name,
        command=command.command,
        exit_code=process.returncode,
        output=b"".join(chunks).decode("utf-8", errors="replace"),
        duration=time.monotonic() - started,
        timed_out=timed_out,
    )


async def run_validations(commands: Iterable[ValidationCommand], *, cwd: Path) -> list[ValidationResult]:
    """Run every command sequentially; later commands still run after a failure."""

    results: list[ValidationResult] = []
    for command in commands:
        result = await run_validation(command, cwd=cwd)
        level = logging.INFO if result.ok else logging.WARNING
        logger.log(
            level,
            "Validation %s %s",
            command.name,
            "passed" if result.ok else "failed",
            extra={"command": command.command, "exit_code": result.exit_code, "timed_out": result.timed_out},
        )
        results.append(result)
    return results


def summarize_failures(results: Sequence[ValidationResult], *, output_limit: int = 2000) -> list[str]:
    """Render failed validations as feedback blocks for the next prompt."""

    summaries: list[str] = []
    for result in results:
        if result.ok:
            continue
        if result.timed_out:
            status = "a timeout"
        elif result.exit_code is None:
            status = "an error starting it"
        else:
            status = f"exit code {result.exit_code}"
        body = tail(result.output.strip(), output_limit) or "(no output)"
        summaries.append(f"{result.name} (`{result.command}`) failed with {status}:\n{body}")
    return summaries


__all__ = [
    "ValidationCommand",
    "ValidationConfigError",
    "ValidationResult",
    "load_validation_commands",
    "run_validation",
    "run_validations",
    "summarize_failures",
]
