"""실행 설정 + 로깅 설정.

CLI 인자가 우선이고, 없으면 환경 변수, 그것도 없으면 기본값.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from guard_rp.llm_engine import ModelConfig

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass(frozen=True)
class AppConfig:
    model: ModelConfig
    scenario_path: Optional[str] = None
    log_level: str = "WARNING"

    @classmethod
    def from_args(
        cls,
        model_path: str,
        *,
        n_gpu_layers: Optional[int] = None,
        n_ctx: Optional[int] = None,
        max_tokens: Optional[int] = None,
        lora_path: Optional[str] = None,
        load_in_4bit: bool = False,
        scenario_path: Optional[str] = None,
        log_level: Optional[str] = None,
    ) -> "AppConfig":
        model = ModelConfig(
            model_path=model_path,
            n_gpu_layers=n_gpu_layers if n_gpu_layers is not None else _env_int("GUARD_RP_GPU_LAYERS", 0),
            n_ctx=n_ctx if n_ctx is not None else _env_int("GUARD_RP_N_CTX", 8092),
            max_tokens=max_tokens if max_tokens is not None else _env_int("GUARD_RP_MAX_TOKENS", 1024),
            lora_path=lora_path or os.getenv("GUARD_RP_LORA_PATH") or None,
            load_in_4bit=load_in_4bit or os.getenv("GUARD_RP_LOAD_IN_4BIT", "0") == "1",
        )
        return cls(
            model=model,
            scenario_path=scenario_path or os.getenv("GUARD_RP_SCENARIO") or None,
            log_level=(log_level or os.getenv("GUARD_RP_LOG_LEVEL", "WARNING")).upper(),
        )

    def summary_lines(self) -> list[str]:
        return [
            f"Loading model: {self.model.model_path}",
            f"  GPU layers : {self.model.n_gpu_layers}",
            f"  Context    : {self.model.n_ctx}",
            f"  Max tokens : {self.model.max_tokens}",
            f"  Scenario   : {self.scenario_path or '(built-in airport security)'}",
        ]


def configure_logging(level: str = "WARNING") -> None:
    # 기본 WARNING: INFO 로그가 게임 화면을 덮지 않게
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"unknown log level: {level}")
    logging.basicConfig(level=numeric, format=LOG_FORMAT)
