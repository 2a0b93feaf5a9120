"""심판(judge) 출력 파서.

모델 원문에는 <think>...</think> 추론 블록과 잡설이 섞여 나온다.
여기서는 그 안에서 평탄한 JSON 객체 하나를 찾아
{"decision": ..., "reason": ...} 를 꺼낸다.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, StrictStr, ValidationError

log = logging.getLogger(__name__)

# 대소문자 구분, non-greedy, 여러 줄
_THINK_RE = re.compile(r"<think>(.*?)</think>", re.DOTALL)
# 중첩 중괄호가 없는 단일 레벨 객체
_FLAT_JSON_RE = re.compile(r"\{[^{}]*\}", re.DOTALL)


class ParseError(ValueError):
    """모델 출력에서 판정을 꺼내지 못함."""

    def __init__(self, message: str, raw: str) -> None:
        super().__init__(message)
        self.raw = raw


class NoJsonFound(ParseError):
    pass


class MalformedJson(ParseError):
    pass


class _DecisionPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    decision: StrictStr
    reason: StrictStr


@dataclass(frozen=True)
class JudgeDecision:
    """파싱된 판정. 한 턴 동안만 쓰인다."""

    choice: str
    rationale: str


def strip_think_blocks(raw: str) -> str:
    """<think> 블록을 모두 지운다. 내용은 진단용 로그로만 남긴다."""
    for m in _THINK_RE.finditer(raw):
        thought = m.group(1).strip()
        if thought:
            log.debug("Model thinking:\n%s", thought)
    return _THINK_RE.sub("", raw)


def parse_decision(raw: str) -> JudgeDecision:
    cleaned = strip_think_blocks(raw)
    log.debug("After stripping <think> blocks:\n%s", cleaned)

    m = _FLAT_JSON_RE.search(cleaned)
    if not m:
        raise NoJsonFound(f"no JSON object found in LLM output. Raw output:\n{raw}", raw)
    json_str = m.group(0)
    log.debug("Extracted JSON: %s", json_str)

    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as e:
        raise MalformedJson(f"failed to parse JSON: {json_str} ({e})", raw) from e

    try:
        payload = _DecisionPayload.model_validate(data)
    except ValidationError as e:
        raise MalformedJson(f"JSON does not match decision schema: {json_str}", raw) from e

    return JudgeDecision(choice=payload.decision, rationale=payload.reason)
