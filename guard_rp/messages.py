"""대화 메시지 모델.

system / user / assistant 역할이 붙은 대화 단위.
순서가 곧 대화의 시간 순서다.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ChatMessage:
    """역할 + 본문. 생성 후 변경하지 않는다."""

    role: Role
    content: str

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(Role.SYSTEM, content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str) -> "ChatMessage":
        return cls(Role.ASSISTANT, content)

    def to_dict(self) -> dict[str, str]:
        """chat template 이 받는 {"role", "content"} 형태로 변환한다."""
        return {"role": self.role.value, "content": self.content}

    def __str__(self) -> str:
        return f"[{self.role.value}]: {self.content}"


def to_template_messages(messages: Iterable[ChatMessage]) -> list[dict[str, str]]:
    return [m.to_dict() for m in messages]
