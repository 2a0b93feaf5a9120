"""메인 대화 루프.

사용 예:
    python main_loop.py ./models/qwen2.5-3b-instruct-q4_k_m.gguf 99 8092 1024
    python main_loop.py Qwen/Qwen2.5-1.5B-Instruct --scenario scenarios/custom.json

로그: --log-level INFO (메시지 + 전이) / DEBUG (+ judge 지시문, 렌더링 프롬프트, 파싱 JSON)
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from guard_rp.airport import airport_security_scenario
from guard_rp.config import AppConfig, configure_logging
from guard_rp.console import ConsoleIO
from guard_rp.judge import Judge
from guard_rp.llm_engine import LLMEngine, ModelLoadError
from guard_rp.scenario import ScenarioError, ScenarioGraph, load_scenario
from guard_rp.walker import ScenarioWalker, TerminalIO

log = logging.getLogger("guard_rp.main")


class MainLoop:
    def __init__(self, engine: LLMEngine, graph: ScenarioGraph, io: Optional[TerminalIO] = None) -> None:
        # 핵심 컴포넌트 연결. 엔진은 프로세스 수명 동안 하나.
        self.engine = engine
        self.graph = graph
        self.io = io or ConsoleIO()
        self.judge = Judge(engine)
        self.walker = ScenarioWalker(self.judge, graph, self.io)

    def run(self) -> None:
        self.walker.run()
        self.io.display_notice("Thanks for playing!")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        "guard-rp",
        description="Talk your way through airport border control. A local LLM plays the guard and judges your replies.",
    )
    p.add_argument("model_path", help="HF model directory / hub id, or a .gguf weights file")
    p.add_argument("gpu_layers", nargs="?", type=int, default=None, help="0 = CPU only (env GUARD_RP_GPU_LAYERS)")
    p.add_argument("context_size", nargs="?", type=int, default=None, help="context tokens (env GUARD_RP_N_CTX)")
    p.add_argument("max_tokens", nargs="?", type=int, default=None, help="max generated tokens per call (env GUARD_RP_MAX_TOKENS)")
    p.add_argument("--scenario", default=None, help="JSON scenario file (default: built-in airport security)")
    p.add_argument("--lora", default=None, help="LoRA adapter directory")
    p.add_argument("--load-in-4bit", action="store_true", help="bitsandbytes 4bit load (CUDA only)")
    p.add_argument("--log-level", default=None, help="DEBUG / INFO / WARNING (env GUARD_RP_LOG_LEVEL)")
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = AppConfig.from_args(
            args.model_path,
            n_gpu_layers=args.gpu_layers,
            n_ctx=args.context_size,
            max_tokens=args.max_tokens,
            lora_path=args.lora,
            load_in_4bit=args.load_in_4bit,
            scenario_path=args.scenario,
            log_level=args.log_level,
        )
        configure_logging(config.log_level)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    for line in config.summary_lines():
        print(line)

    try:
        # 시나리오를 먼저 검증한다. 잘못된 그래프면 모델을 올리기 전에 끝낸다.
        graph = load_scenario(config.scenario_path) if config.scenario_path else airport_security_scenario()
        with LLMEngine.from_config(config.model) as engine:
            MainLoop(engine, graph).run()
    except (ModelLoadError, ScenarioError) as e:
        log.error("fatal: %s", e, exc_info=e.__cause__ is not None)
        print(f"error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        log.error("terminal I/O failed: %s", e)
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
