"""시나리오 그래프.

노드 id -> 노드 의 고정 매핑과 시작 노드로 이루어진다.
플레이 중에는 읽기만 한다.

불변 조건(생성 시 검사, 위반하면 ScenarioError):
- 시작 노드가 존재한다.
- Decision 노드의 next id 는 모두 그래프 안에 있다.
- Decision 노드는 선택지가 최소 1개, Terminal 노드는 0개.
- Decision 간선에 사이클이 없다. (최장 경로 계산이 끝나야 한다)

작성 규칙: Decision 선택지의 첫 번째가 "통과" 쪽이다.
프롬프트 나열 순서와 fallback 대상 둘 다 이 순서를 따른다.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

log = logging.getLogger(__name__)


class ScenarioError(ValueError):
    """시나리오 구조 오류. 로드 시점에 치명적으로 처리한다."""


@dataclass(frozen=True)
class NextNode:
    id: str
    # judge 프롬프트에 들어가는 설명
    description: str = ""


@dataclass(frozen=True)
class Terminal:
    is_success: bool


@dataclass(frozen=True)
class Decision:
    options: tuple[NextNode, ...]

    @property
    def next_ids(self) -> list[str]:
        return [o.id for o in self.options]


@dataclass(frozen=True)
class ScenarioNode:
    id: str
    # 노드 진입 시 가드가 하는 대사
    transcript: str
    kind: Union[Terminal, Decision]
    # 이 노드의 판정 기준. judge system 메시지에 들어간다.
    system_context: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return isinstance(self.kind, Terminal)

    @property
    def next_ids(self) -> list[str]:
        if isinstance(self.kind, Decision):
            return self.kind.next_ids
        return []

    @property
    def favorable_id(self) -> str:
        """첫 번째(통과) 선택지. fallback 대상."""
        if not isinstance(self.kind, Decision):
            raise ScenarioError(f"terminal node {self.id!r} has no options")
        return self.kind.options[0].id


@dataclass(frozen=True)
class ScenarioGraph:
    nodes: Mapping[str, ScenarioNode]
    start_id: str
    _longest: int = field(init=False, repr=False, compare=False, default=0)

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", MappingProxyType(dict(self.nodes)))
        self._validate_nodes()
        object.__setattr__(self, "_longest", self._longest_decision_path())

    @classmethod
    def from_nodes(cls, nodes: Iterable[ScenarioNode], start_id: str) -> "ScenarioGraph":
        mapping: dict[str, ScenarioNode] = {}
        for node in nodes:
            if node.id in mapping:
                raise ScenarioError(f"duplicate node id: {node.id!r}")
            mapping[node.id] = node
        return cls(mapping, start_id)

    def get(self, node_id: str) -> Optional[ScenarioNode]:
        return self.nodes.get(node_id)

    def __getitem__(self, node_id: str) -> ScenarioNode:
        return self.nodes[node_id]

    @property
    def start_node(self) -> ScenarioNode:
        return self.nodes[self.start_id]

    @property
    def longest_path_length(self) -> int:
        """시작 노드부터 Terminal 까지 거칠 수 있는 Decision 노드 수의 최댓값.

        점수 표시용 분모로만 쓴다.
        """
        return self._longest

    def _validate_nodes(self) -> None:
        if self.start_id not in self.nodes:
            raise ScenarioError(f"start node {self.start_id!r} is not in the scenario")

        for key, node in self.nodes.items():
            if key != node.id:
                raise ScenarioError(f"node stored under {key!r} has id {node.id!r}")
            if isinstance(node.kind, Decision):
                if not node.kind.options:
                    raise ScenarioError(f"decision node {node.id!r} has no options")
                for option in node.kind.options:
                    if option.id not in self.nodes:
                        raise ScenarioError(
                            f"node {node.id!r} points to unknown node {option.id!r}"
                        )

    def _longest_decision_path(self) -> int:
        # 재귀 대신 명시적 스택 + 방문 상태(진행 중 / 완료)로 후위 순회.
        # 진행 중인 노드를 다시 만나면 사이클이다.
        depth: dict[str, int] = {}
        on_stack: set[str] = set()

        for root in self.nodes:
            if root in depth:
                continue
            stack: list[tuple[str, bool]] = [(root, False)]
            while stack:
                node_id, children_done = stack.pop()
                node = self.nodes[node_id]

                if children_done:
                    on_stack.discard(node_id)
                    if node.is_terminal:
                        depth[node_id] = 0
                    else:
                        depth[node_id] = 1 + max(depth[n] for n in node.next_ids)
                    continue

                if node_id in depth:
                    continue
                if node_id in on_stack:
                    raise ScenarioError(f"decision cycle through node {node_id!r}")

                on_stack.add(node_id)
                stack.append((node_id, True))
                for next_id in node.next_ids:
                    if next_id in on_stack:
                        raise ScenarioError(
                            f"decision cycle: {node_id!r} -> {next_id!r}"
                        )
                    if next_id not in depth:
                        stack.append((next_id, False))

        return depth[self.start_id]


# ---------------------------------------------------------------------------
# 선언형 시나리오 파일(JSON)
# ---------------------------------------------------------------------------


class _NextNodeSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    description: str = ""


class _TerminalSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    is_success: bool = Field(..., alias="Terminal")


class _DecisionSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    options: list[_NextNodeSpec] = Field(..., alias="Decision", min_length=1)


class _NodeSpec(BaseModel):
    id: str = Field(..., min_length=1)
    transcript: str
    node_type: Union[_TerminalSpec, _DecisionSpec]
    system_context: Optional[str] = None

    def to_node(self) -> ScenarioNode:
        if isinstance(self.node_type, _TerminalSpec):
            kind: Union[Terminal, Decision] = Terminal(self.node_type.is_success)
        else:
            kind = Decision(
                tuple(NextNode(o.id, o.description) for o in self.node_type.options)
            )
        return ScenarioNode(
            id=self.id,
            transcript=self.transcript,
            kind=kind,
            system_context=self.system_context,
        )


class _ScenarioSpec(BaseModel):
    start_node_id: str = Field(..., min_length=1)
    nodes: Union[list[_NodeSpec], dict[str, _NodeSpec]]


def scenario_from_dict(data: dict) -> ScenarioGraph:
    """{"start_node_id", "nodes"} 형태의 dict 에서 그래프를 만든다.

    node_type 은 {"Terminal": true|false} 또는
    {"Decision": [{"id": ..., "description": ...}, ...]}.
    nodes 는 리스트 또는 id -> 노드 매핑 둘 다 받는다.
    """
    try:
        spec = _ScenarioSpec.model_validate(data)
    except ValidationError as e:
        raise ScenarioError(f"invalid scenario definition:\n{e}") from e

    if isinstance(spec.nodes, dict):
        for key, node in spec.nodes.items():
            if key != node.id:
                raise ScenarioError(f"node stored under {key!r} has id {node.id!r}")
        node_specs = list(spec.nodes.values())
    else:
        node_specs = spec.nodes

    return ScenarioGraph.from_nodes((n.to_node() for n in node_specs), spec.start_node_id)


def load_scenario(path: str | Path) -> ScenarioGraph:
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ScenarioError(f"cannot read scenario file: {path}") from e
    except json.JSONDecodeError as e:
        raise ScenarioError(f"scenario file is not valid JSON: {path}") from e

    graph = scenario_from_dict(data)
    log.info("Loaded scenario %s: %d nodes, start=%s", path, len(graph.nodes), graph.start_id)
    return graph
