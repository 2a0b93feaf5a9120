"""심판(judge) 프로토콜.

현재 노드의 판정 기준 + 지금까지의 대화를 모델에 넘기고,
허용된 다음 노드 id 중 하나를 JSON 으로 받아낸다.

메시지 구성(작은 모델 기준으로 최소화):
    [system]    역할 설명 + 이 노드의 기준 + 선택지 + 출력 형식
    [assistant] 가드 대사 1
    [user]      여행자 응답 1
    ...
이전 노드의 system 지시는 넣지 않는다. 오래된 지시가 섞이면 작은 모델이 헷갈린다.
"""

from __future__ import annotations

import logging
from typing import Collection, Optional, Sequence

from guard_rp.decision_parser import JudgeDecision, ParseError, parse_decision
from guard_rp.llm_engine import JUDGE_POLICY, GenerationError, SamplingPolicy
from guard_rp.messages import ChatMessage, Role
from guard_rp.scenario import Decision, ScenarioNode

log = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a border security guard at an airport. "
    "You are having a conversation with a traveller. "
    "Your job is to categorize the Traveller's last response based on the following rules:"
)

OUTPUT_INSTRUCTION = (
    'Reply with JSON only, on a single line: {"decision": "<PICK>", "reason": "<why>"}. '
    "JSON must be valid."
)


class JudgeError(RuntimeError):
    """판정 실패. 상위(walker)에서 fallback 전이로 처리된다."""

    def __init__(
        self,
        message: str,
        *,
        node_id: str,
        raw: Optional[str] = None,
        attempted: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.node_id = node_id
        self.raw = raw
        self.attempted = attempted


class GenerationFailed(JudgeError):
    pass


class ParseFailed(JudgeError):
    pass


class InvalidChoice(JudgeError):
    def __init__(
        self,
        message: str,
        *,
        node_id: str,
        decision: JudgeDecision,
        raw: Optional[str] = None,
    ) -> None:
        super().__init__(message, node_id=node_id, raw=raw, attempted=decision.choice)
        self.decision = decision


def build_judge_instruction(node: ScenarioNode) -> str:
    """노드 기준 -> 선택지(통과 먼저) -> 출력 형식 순으로 짧게."""
    parts: list[str] = []
    if node.system_context:
        parts.append(node.system_context.strip())

    lines = ["Pick one:"]
    if isinstance(node.kind, Decision):
        for option in node.kind.options:
            if option.description:
                lines.append(f"- {option.id}: {option.description}")
            else:
                lines.append(f"- {option.id}")
    parts.append("\n".join(lines))
    parts.append(OUTPUT_INSTRUCTION)
    return "\n\n".join(parts)


def build_judge_messages(
    conversation: Sequence[ChatMessage],
    node: ScenarioNode,
    system_prompt: str = SYSTEM_PROMPT,
) -> list[ChatMessage]:
    messages = [ChatMessage.system(f"{system_prompt}\n{build_judge_instruction(node)}")]
    messages.extend(m for m in conversation if m.role is not Role.SYSTEM)
    return messages


class Judge:
    """엔진 호출 -> 파싱 -> 선택지 검증."""

    def __init__(
        self,
        engine,
        *,
        policy: SamplingPolicy = JUDGE_POLICY,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        self.engine = engine
        self.policy = policy
        self.system_prompt = system_prompt

    def judge(
        self,
        conversation: Sequence[ChatMessage],
        node: ScenarioNode,
        valid_choices: Collection[str],
    ) -> JudgeDecision:
        messages = build_judge_messages(conversation, node, self.system_prompt)
        log.debug(
            "Judge messages (%d total):\n%s",
            len(messages),
            "\n".join(f"  msg[{i}] {m}" for i, m in enumerate(messages)),
        )

        try:
            raw = self.engine.generate(messages, self.policy)
        except GenerationError as e:
            raise GenerationFailed(f"generation failed at {node.id}: {e}", node_id=node.id) from e

        try:
            decision = parse_decision(raw)
        except ParseError as e:
            raise ParseFailed(f"could not parse judge output at {node.id}: {e}", node_id=node.id, raw=raw) from e

        if decision.choice not in valid_choices:
            raise InvalidChoice(
                f"judge generated invalid decision {decision.choice!r} (valid: {list(valid_choices)})",
                node_id=node.id,
                raw=raw,
                decision=decision,
            )

        log.info("Judge succeeded: %s (reason: %s)", decision.choice, decision.rationale)
        return decision
