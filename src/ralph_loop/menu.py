"""Menu contract used by the orchestrator for interactive decisions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence, TextIO

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MenuOption:
    label: str
    value: Any
    hotkey: str | None = None
    disabled_reason: str | None = None

    @property
    def enabled(self) -> bool:
        return self.disabled_reason is None


class Menu(Protocol):
    def choose(self, title: str, options: Sequence[MenuOption], default: Any = None) -> Any | None:
        """Return the chosen option's value, or None when the user backs out."""


def _first_enabled(options: Sequence[MenuOption], default: Any) -> Any | None:
    for option in options:
        if option.enabled and option.value == default:
            return option.value
    for option in options:
        if option.enabled:
            return option.value
    return None


class AutoMenu:
    """Non-interactive menu that always takes the default (or first enabled) option."""

    def __init__(self) -> None:
        self.prompts: list[str] = []

    def choose(self, title: str, options: Sequence[MenuOption], default: Any = None) -> Any | None:
        self.prompts.append(title)
        choice = _first_enabled(options, default)
        logger.debug("Auto-selected menu option", extra={"title": title, "choice": str(choice)})
        return choice


class ScriptedMenu:
    """Replays a fixed list of answers; used by tests and scripted runs."""

    def __init__(self, answers: Sequence[Any]) -> None:
        self._answers = list(answers)
        self.prompts: list[str] = []

    def choose(self, title: str, options: Sequence[MenuOption], default: Any = None) -> Any | None:
        self.prompts.append(title)
        if not self._answers:
            return _first_enabled(options, default)
        answer = self._answers.pop(0)
        for option in options:
            if option.value == answer and option.enabled:
                return answer
        return None


class ConsoleMenu:
    """Numbered stdin/stdout menu."""

    def __init__(
        self,
        *,
        reader: Callable[[str], str] = input,
        stream: TextIO | None = None,
    ) -> None:
        self._reader = reader
        self._stream = stream

    def _write(self, text: str) -> None:
        print(text, file=self._stream)

    def choose(self, title: str, options: Sequence[MenuOption], default: Any = None) -> Any | None:
        self._write("")
        self._write(f"  {title}")
        self._write("")
        for number, option in enumerate(options, start=1):
            key = f"[{option.hotkey.upper()}]" if option.hotkey else f"[{number}]"
            suffix = f" ({option.disabled_reason})" if option.disabled_reason else ""
            self._write(f"  {key} {option.label}{suffix}")

        while True:
            try:
                raw = self._reader("  Choice: ").strip()
            except EOFError:
                return None
            if not raw:
                return _first_enabled(options, default)
            option = self._match(raw, options)
            if option is None:
                self._write("  Invalid selection")
                continue
            if not option.enabled:
                self._write(f"  Unavailable: {option.disabled_reason}")
                continue
            return option.value

    @staticmethod
    def _match(raw: str, options: Sequence[MenuOption]) -> MenuOption | None:
        if raw.isdigit():
            index = int(raw) - 1
            if 0 <= index < len(options):
                return options[index]
            return None
        for option in options:
            if option.hotkey and option.hotkey.lower() == raw.lower():
                return option
        return None


__all__ = ["AutoMenu", "ConsoleMenu", "Menu", "MenuOption", "ScriptedMenu"]
