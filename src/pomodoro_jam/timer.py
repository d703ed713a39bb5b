"""Timer shared by a jam session.

The manager only needs the ``JamTimer`` protocol; ``PomodoroTimer`` is a
minimal implementation used by the CLI.
"""

from typing import Any, Literal, Protocol

Phase = Literal["work", "short_break", "long_break"]

PHASE_SECONDS: dict[str, int] = {
    "work": 25 * 60,
    "short_break": 5 * 60,
    "long_break": 15 * 60,
}
POMODOROS_PER_LONG_BREAK = 4


class JamTimer(Protocol):
    """Protocol for timers whose state can be shared over a jam session."""

    def get_state(self) -> dict[str, Any]: ...
    def set_state(self, state: dict[str, Any]) -> None: ...
    def set_jam_mode(self, enabled: bool) -> None: ...


class PomodoroTimer:
    """Work/break countdown timer."""

    def __init__(self) -> None:
        self.phase: Phase = "work"
        self.remaining = PHASE_SECONDS["work"]
        self.running = False
        self.completed_pomodoros = 0
        self.jam_mode = False

    def start(self) -> None:
        self.running = True

    def pause(self) -> None:
        self.running = False

    def reset(self) -> None:
        self.running = False
        self.remaining = PHASE_SECONDS[self.phase]

    def skip(self) -> None:
        """Move to the next phase without finishing the current one."""
        if self.phase == "work":
            self.completed_pomodoros += 1
            if self.completed_pomodoros % POMODOROS_PER_LONG_BREAK == 0:
                self.phase = "long_break"
            else:
                self.phase = "short_break"
        else:
            self.phase = "work"

        self.remaining = PHASE_SECONDS[self.phase]
        self.running = False

    def tick(self, seconds: int = 1) -> None:
        """Advance the countdown. In jam mode the host's clock is authoritative."""
        if self.jam_mode or not self.running:
            return

        self.remaining = max(0, self.remaining - seconds)
        if self.remaining == 0:
            self.skip()

    def get_state(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "remaining": self.remaining,
            "running": self.running,
            "completedPomodoros": self.completed_pomodoros,
        }

    def set_state(self, state: dict[str, Any]) -> None:
        self.phase = state.get("phase", self.phase)
        self.remaining = int(state.get("remaining", self.remaining))
        self.running = bool(state.get("running", self.running))
        self.completed_pomodoros = int(state.get("completedPomodoros", self.completed_pomodoros))

    def set_jam_mode(self, enabled: bool) -> None:
        self.jam_mode = enabled

    def format_remaining(self) -> str:
        minutes, seconds = divmod(self.remaining, 60)
        return f"{minutes:02d}:{seconds:02d}"
