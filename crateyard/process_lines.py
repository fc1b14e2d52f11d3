"""Actions available to a callback that inspects a process's output line by line."""

from __future__ import annotations

import enum
from collections.abc import Iterable


class LineState(enum.Enum):
    """What should happen to the most recently read output line."""

    ORIGINAL = "original"
    REMOVED = "removed"
    REPLACED = "replaced"


class ProcessLinesActions:
    """Actions a line callback may take on the line it was handed.

    By default the line is kept as is. The callback may instead remove it or
    replace it with any number of other lines; the choice applies only to the
    line currently being processed.
    """

    def __init__(self) -> None:
        self._state = LineState.ORIGINAL
        self._lines: list[str] = []

    def replace_with_lines(self, new_lines: Iterable[str]) -> None:
        """Replace the last read line with the given lines.

        The new lines are logged and captured instead of the original one.
        """
        self._state = LineState.REPLACED
        self._lines = [str(line) for line in new_lines]

    def remove_line(self) -> None:
        """Drop the last read line: it is neither logged nor captured."""
        self._state = LineState.REMOVED
        self._lines = []

    def take_lines(self) -> tuple[LineState, list[str]]:
        """Return the pending action and reset to the default.

        The returned list holds the replacement lines for ``REPLACED`` and is
        empty otherwise.
        """
        state, lines = self._state, self._lines
        self._state = LineState.ORIGINAL
        self._lines = []
        return state, lines

    def _resolve(self, line: str) -> list[str]:
        """Apply the pending action to ``line`` and reset the state."""
        state, lines = self.take_lines()
        if state is LineState.REMOVED:
            return []
        if state is LineState.REPLACED:
            return lines
        return [line]