"""표준 입출력 기반 터미널 UI."""

from __future__ import annotations

from typing import Callable

from guard_rp.walker import Finished, Outcome

RULE = "=" * 40


class ConsoleIO:
    """print / input 으로 동작하는 TerminalIO 구현.

    stdin 이 닫히면(EOF) 종료 키워드를 입력한 것으로 본다.
    """

    def __init__(
        self,
        *,
        title: str = "AIRPORT BORDER CONTROL SIMULATOR",
        input_fn: Callable[[str], str] = input,
        print_fn: Callable[..., None] = print,
    ) -> None:
        self.title = title
        self._input = input_fn
        self._print = print_fn

    def _read(self, prompt: str, on_eof: str) -> str:
        try:
            return self._input(prompt)
        except EOFError:
            self._print()
            return on_eof

    def show_banner(self) -> None:
        self._print(f"\n{RULE}")
        self._print(f"   {self.title}")
        self._print(RULE)
        self._print("Try to pass through border control.")
        self._print("Type your responses naturally. ('quit' to walk away)\n")

    def display_line(self, speaker: str, text: str) -> None:
        self._print(f"\n[{speaker}]: {text}")

    def display_notice(self, text: str) -> None:
        self._print(text)

    def display_reasoning(self, text: str) -> None:
        self._print(f"(Judge reasoning: {text})")

    def read_player_line(self) -> str:
        return self._read("\n[You]: ", on_eof="quit")

    def display_outcome(self, outcome: Outcome) -> None:
        self._print(f"\n{RULE}")
        self._print("             GAME OVER")
        self._print(RULE)
        if isinstance(outcome, Finished):
            if outcome.success:
                self._print("  Result: CLEARED - You passed border control!")
            else:
                self._print("  Result: DENIED - You were stopped at the border.")
            self._print(f"  Score:  {outcome.steps_completed} / {outcome.total_steps} steps completed")
            self._print(f"  Ended at: {outcome.terminal_node_id}")
        else:
            self._print("  You walked away from the border control booth.")
        self._print(f"{RULE}\n")
        self._print("  [r] Restart    [q] Quit\n")

    def read_restart_choice(self) -> bool:
        """r 이면 True(재시작), q 면 False."""
        while True:
            choice = self._read("> ", on_eof="q").strip().lower()
            if choice == "r":
                return True
            if choice == "q":
                return False
            self._print("  Press [r] to restart or [q] to quit.")
