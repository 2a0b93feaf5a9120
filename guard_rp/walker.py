"""시나리오 그래프 워커(게임 상태 머신).

상태:
    Playing(node_id) -> Finished(success) | Quit

한 턴:
1) 현재 노드 대사를 출력하고 assistant 메시지로 대화에 추가
2) Terminal 이면 종료(입력을 더 받지 않는다)
3) 플레이어 입력 -> user 메시지 -> judge -> 다음 노드

judge 실패(생성/파싱/잘못된 선택지)는 세션을 끝내지 않는다.
첫 번째(통과) 선택지로 강제 전이하고 이유를 로그에 남긴다.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol, Union

from guard_rp.decision_parser import JudgeDecision
from guard_rp.judge import InvalidChoice, Judge, JudgeError
from guard_rp.messages import ChatMessage
from guard_rp.scenario import ScenarioGraph, ScenarioNode

log = logging.getLogger(__name__)

QUIT_KEYWORDS = frozenset({"quit", "exit"})


# 상태 / 결과 정의
@dataclass
class SessionState:
    """한 라운드 동안의 가변 상태. 라운드마다 새로 만든다.

    conversation 에는 assistant / user 턴만 들어간다.
    system 메시지는 judge 호출 시점에 붙인다.
    """

    graph: ScenarioGraph
    current_node_id: str
    conversation: list[ChatMessage] = field(default_factory=list)
    # 살아남은 비종료 턴 수
    steps_completed: int = 0

    @classmethod
    def start(cls, graph: ScenarioGraph) -> "SessionState":
        return cls(graph=graph, current_node_id=graph.start_id)

    @property
    def current_node(self) -> ScenarioNode:
        return self.graph[self.current_node_id]


@dataclass(frozen=True)
class Transition:
    target: str
    decision: JudgeDecision


@dataclass(frozen=True)
class Fallback:
    target: str
    reason: str
    error: JudgeError


@dataclass(frozen=True)
class Finished:
    success: bool
    steps_completed: int
    total_steps: int
    terminal_node_id: str


@dataclass(frozen=True)
class Quit:
    steps_completed: int = 0


Outcome = Union[Finished, Quit]


class TerminalIO(Protocol):
    """워커가 호출하는 터미널 입출력 경계."""

    def show_banner(self) -> None: ...

    def display_line(self, speaker: str, text: str) -> None: ...

    def display_notice(self, text: str) -> None: ...

    def display_reasoning(self, text: str) -> None: ...

    def read_player_line(self) -> str: ...

    def display_outcome(self, outcome: Outcome) -> None: ...

    def read_restart_choice(self) -> bool: ...


class ScenarioWalker:
    """시나리오 한 판(또는 여러 판)을 진행한다."""

    def __init__(
        self,
        judge: Judge,
        graph: ScenarioGraph,
        io: TerminalIO,
        *,
        speaker: str = "Guard",
    ) -> None:
        self.judge = judge
        self.graph = graph
        self.io = io
        self.speaker = speaker

    def resolve(self, state: SessionState, node: ScenarioNode) -> Union[Transition, Fallback]:
        """judge 결과를 전이로 바꾼다. 실패는 전부 첫 선택지 fallback."""
        valid = node.next_ids
        try:
            decision = self.judge.judge(state.conversation, node, valid)
            # judge 구현과 상관없이 그래프 밖으로는 나가지 않는다
            if decision.choice not in valid:
                raise InvalidChoice(
                    f"judge returned {decision.choice!r} outside {valid}",
                    node_id=node.id,
                    decision=decision,
                )
        except JudgeError as e:
            fallback = node.favorable_id
            log.warning(
                "Judge failed at node %s (%s: %s); attempted=%r; falling back to %s. Raw output:\n%s",
                node.id,
                type(e).__name__,
                e,
                e.attempted,
                fallback,
                e.raw,
            )
            return Fallback(target=fallback, reason=str(e), error=e)
        return Transition(target=decision.choice, decision=decision)

    def play_round(self) -> Outcome:
        state = SessionState.start(self.graph)
        total_steps = self.graph.longest_path_length
        log.info("Game started. Initial node: %s", state.current_node_id)

        while True:
            node = state.current_node
            log.info("Current node: %s (terminal=%s, next=%s)", node.id, node.is_terminal, node.next_ids)

            self.io.display_line(self.speaker, node.transcript)
            state.conversation.append(ChatMessage.assistant(node.transcript))

            if node.is_terminal:
                success = node.kind.is_success
                log.info("Game over at node: %s (success=%s)", node.id, success)
                return Finished(
                    success=success,
                    steps_completed=state.steps_completed,
                    total_steps=total_steps,
                    terminal_node_id=node.id,
                )

            text = self.io.read_player_line().strip()

            if not text:
                # 같은 대사가 두 번 쌓이지 않게 방금 넣은 가드 대사를 뺀다
                self.io.display_notice("(Please say something.)")
                state.conversation.pop()
                continue

            if text.lower() in QUIT_KEYWORDS:
                log.info("Player quit at node %s", node.id)
                return Quit(steps_completed=state.steps_completed)

            log.info('User input: "%s"', text)
            state.conversation.append(ChatMessage.user(text))

            self.io.display_notice("(Thinking...)")
            result = self.resolve(state, node)

            if isinstance(result, Transition):
                log.info("Transition: %s -> %s (reason: %s)", node.id, result.target, result.decision.rationale)
                rationale: Optional[str] = result.decision.rationale
            else:
                log.info("Fallback transition: %s -> %s", node.id, result.target)
                rationale = (
                    result.error.decision.rationale if isinstance(result.error, InvalidChoice) else None
                )

            state.current_node_id = result.target
            # 플레이어가 이번 턴을 통과함 (fallback 포함)
            state.steps_completed += 1

            if rationale:
                self.io.display_reasoning(rationale)

    def run(self) -> None:
        """플레이어가 그만둘 때까지 라운드를 반복한다."""
        while True:
            self.io.show_banner()
            outcome = self.play_round()
            self.io.display_outcome(outcome)
            if not self.io.read_restart_choice():
                break
            log.info("Player chose to restart")
