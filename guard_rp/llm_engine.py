"""LLM 추론 엔진.

역할:
- 채팅 메시지를 모델 입력 프롬프트로 변환한다.
- 토큰 단위 자동회귀 디코딩을 직접 돌려 assistant 텍스트를 반환한다.

generate() 한 번 = 프롬프트 전체에 대한 새 forward.
호출 시작마다 KV 캐시를 새로 만들기 때문에 이전 호출의 상태는 이어지지 않는다.
엔진은 재진입 불가다. 동시에 한 호출만 돌린다.
"""

from __future__ import annotations

import gc
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import torch
from transformers import (
    AutoModelForCausalLM,
    AutoTokenizer,
    BitsAndBytesConfig,
    LogitsProcessorList,
    MinPLogitsWarper,
    RepetitionPenaltyLogitsProcessor,
    TemperatureLogitsWarper,
    TopKLogitsWarper,
    TopPLogitsWarper,
)
from transformers.cache_utils import DynamicCache

from guard_rp.messages import ChatMessage, to_template_messages

log = logging.getLogger(__name__)


class ModelLoadError(RuntimeError):
    """모델/토크나이저 로드 실패. 복구하지 않는다."""


class GenerationError(RuntimeError):
    pass


class TemplateError(GenerationError):
    pass


class TokenizeError(GenerationError):
    pass


class DecodeError(GenerationError):
    pass


@dataclass(frozen=True)
class ModelConfig:
    """모델 로드 설정. 프로세스 수명 동안 고정."""

    model_path: str
    # 0 = CPU only
    n_gpu_layers: int = 0
    n_ctx: int = 8092
    max_tokens: int = 1024
    lora_path: Optional[str] = None
    load_in_4bit: bool = False

    def __post_init__(self) -> None:
        if self.n_ctx <= 0:
            raise ValueError(f"n_ctx must be > 0 (got {self.n_ctx})")
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be > 0 (got {self.max_tokens})")
        if self.n_gpu_layers < 0:
            raise ValueError(f"n_gpu_layers must be >= 0 (got {self.n_gpu_layers})")


@dataclass(frozen=True)
class SamplingPolicy:
    """샘플링 파라미터.

    적용 순서: repetition penalty -> top-k -> top-p -> min-p -> temperature -> 시드 고정 추출.
    """

    repeat_last_n: int = 64
    repeat_penalty: float = 1.1
    top_k: int = 40
    top_p: float = 0.95
    min_p: float = 0.0
    temperature: float = 1.0
    seed: int = 1234


# 값은 같지만 judge 호출은 출력 형식에 민감하므로 별도 객체로 둔다.
FREE_POLICY = SamplingPolicy()
JUDGE_POLICY = SamplingPolicy()


class TokenSampler:
    """한 번의 generate() 동안 쓰는 샘플러 체인."""

    def __init__(self, policy: SamplingPolicy) -> None:
        self.policy = policy
        self._penalty = None
        if policy.repeat_penalty != 1.0 and policy.repeat_last_n != 0:
            self._penalty = RepetitionPenaltyLogitsProcessor(penalty=policy.repeat_penalty)

        self._warpers = LogitsProcessorList()
        if policy.top_k > 0:
            self._warpers.append(TopKLogitsWarper(top_k=policy.top_k))
        if policy.top_p < 1.0:
            self._warpers.append(TopPLogitsWarper(top_p=policy.top_p))
        if policy.min_p > 0.0:
            self._warpers.append(MinPLogitsWarper(min_p=policy.min_p))
        if policy.temperature > 0.0:
            self._warpers.append(TemperatureLogitsWarper(temperature=policy.temperature))

        self._generator = torch.Generator(device="cpu").manual_seed(policy.seed)
        self._history: list[int] = []

    def _window(self) -> list[int]:
        n = self.policy.repeat_last_n
        if n < 0:
            return list(self._history)
        return self._history[-n:] if n else []

    def sample(self, logits: torch.Tensor) -> int:
        """logits: (1, vocab). 다음 토큰 id 를 반환한다."""
        scores = logits.detach().float().cpu()
        # fp16 오버플로 등. argmax/multinomial 전에 막는다.
        if torch.isnan(scores).any() or not torch.isfinite(scores).any():
            raise DecodeError("model produced non-finite logits")
        window = torch.tensor([self._window()], dtype=torch.long)

        if self._penalty is not None and window.shape[-1] > 0:
            scores = self._penalty(window, scores)

        # temperature 0 이하는 greedy
        if self.policy.temperature <= 0.0:
            return int(torch.argmax(scores, dim=-1).item())

        scores = self._warpers(window, scores)
        probs = torch.softmax(scores, dim=-1)
        return int(torch.multinomial(probs, num_samples=1, generator=self._generator).item())

    def accept(self, token_id: int) -> None:
        self._history.append(token_id)


class IncrementalDecoder:
    """토큰 id 를 받아 완성된 텍스트 조각만 내보낸다.

    한 글자의 UTF-8 바이트가 여러 토큰으로 쪼개지면 디코드 결과 끝에 U+FFFD 가 남는다.
    그동안은 출력을 보류했다가 나머지 바이트가 도착하면 한 번에 내보낸다.
    줄바꿈에서 버퍼를 줄여 매 스텝 전체 재디코드 비용을 줄인다.
    이때 줄바꿈 토큰 하나는 왼쪽 문맥으로 남긴다. SentencePiece(legacy) 토크나이저는
    맨 앞 "▁word" 의 공백을 지우기 때문이다.
    """

    def __init__(self, tokenizer) -> None:
        self.tokenizer = tokenizer
        self._ids: list[int] = []
        self._emitted = 0

    def _decode(self) -> str:
        return self.tokenizer.decode(self._ids, skip_special_tokens=True)

    def push(self, token_id: int) -> str:
        self._ids.append(token_id)
        text = self._decode()
        if text.endswith("\ufffd"):
            return ""
        piece = text[self._emitted :]
        if text.endswith("\n") and len(self._ids) > 1:
            self._ids = [token_id]
            self._emitted = len(self._decode())
        else:
            self._emitted = len(text)
        return piece

    def flush(self) -> str:
        if not self._ids:
            return ""
        piece = self._decode()[self._emitted :]
        self._ids.clear()
        self._emitted = 0
        return piece


def _resolve_source(model_path: str) -> tuple[str, dict]:
    """디렉터리/허브 id 는 그대로, .gguf 파일은 (상위 디렉터리, gguf_file) 로 나눈다."""
    path = Path(model_path).expanduser()
    if path.suffix.lower() == ".gguf":
        if not path.is_file():
            raise ModelLoadError(f"model file not found: {path}")
        return str(path.parent), {"gguf_file": path.name}
    return model_path, {}


class LLMEngine:
    """로컬 causal LM 추론 엔진.

    토크나이저/모델을 프로세스 수명 동안 소유한다.
    시작할 때 from_config() 로 한 번 만들고, 호출하는 쪽에는 참조로 넘긴다.
    """

    def __init__(self, tokenizer, model, config: ModelConfig) -> None:
        self.tokenizer = tokenizer
        self.model = model
        self.config = config
        self.n_ctx = config.n_ctx
        self.max_tokens = config.max_tokens
        self._cache = None
        self._eog_ids = self._collect_eog_ids()

    @classmethod
    def from_config(cls, config: ModelConfig) -> "LLMEngine":
        log.info("Loading model from: %s", config.model_path)
        log.info(
            "  config: n_gpu_layers=%d, n_ctx=%d, max_tokens=%d",
            config.n_gpu_layers,
            config.n_ctx,
            config.max_tokens,
        )
        source, extra = _resolve_source(config.model_path)

        try:
            tokenizer = AutoTokenizer.from_pretrained(source, **extra)
        except Exception as e:
            raise ModelLoadError(f"failed to load tokenizer: {config.model_path}") from e

        use_cuda = config.n_gpu_layers > 0 and torch.cuda.is_available()
        if config.n_gpu_layers > 0 and not use_cuda:
            log.warning("n_gpu_layers=%d requested but CUDA is unavailable; running on CPU", config.n_gpu_layers)

        model_kwargs = {
            "dtype": torch.float16 if use_cuda else torch.float32,
            "device_map": "auto" if use_cuda else "cpu",
            **extra,
        }
        if config.load_in_4bit:
            if use_cuda:
                model_kwargs["quantization_config"] = BitsAndBytesConfig(
                    load_in_4bit=True,
                    bnb_4bit_quant_type="nf4",
                    bnb_4bit_use_double_quant=True,
                    bnb_4bit_compute_dtype=torch.bfloat16,
                )
            else:
                log.warning("load_in_4bit ignored: bitsandbytes 4bit needs CUDA")

        try:
            model = AutoModelForCausalLM.from_pretrained(source, **model_kwargs)
        except Exception as e:
            raise ModelLoadError(f"failed to load model: {config.model_path}") from e

        if config.lora_path:
            from peft import PeftModel

            try:
                model = PeftModel.from_pretrained(model, config.lora_path)
            except Exception as e:
                raise ModelLoadError(f"failed to load LoRA adapter: {config.lora_path}") from e

        model.eval()
        log.info("Model loaded successfully")
        return cls(tokenizer, model, config)

    def __enter__(self) -> "LLMEngine":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """모델 핸들을 놓는다. 이후 generate() 는 쓸 수 없다."""
        self._cache = None
        self.model = None
        gc.collect()
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    def _collect_eog_ids(self) -> frozenset[int]:
        ids: set[int] = set()
        eos = getattr(self.tokenizer, "eos_token_id", None)
        if eos is not None:
            ids.add(int(eos))
        gen_cfg = getattr(self.model, "generation_config", None)
        cfg_eos = getattr(gen_cfg, "eos_token_id", None)
        if isinstance(cfg_eos, int):
            ids.add(cfg_eos)
        elif cfg_eos:
            ids.update(int(t) for t in cfg_eos)
        return frozenset(ids)

    def is_eog(self, token_id: int) -> bool:
        return token_id in self._eog_ids

    def reset_state(self) -> None:
        """KV 캐시를 비운다. 매 generate() 시작 시 호출된다."""
        self._cache = DynamicCache()

    def build_prompt(self, messages: Sequence[ChatMessage]) -> str:
        """채팅 메시지를 모델 프롬프트 문자열로 변환한다."""
        if not messages:
            raise TemplateError("no messages to render")
        if getattr(self.tokenizer, "chat_template", None) is None:
            raise TemplateError("model has no chat template")
        try:
            return self.tokenizer.apply_chat_template(
                to_template_messages(messages),
                tokenize=False,
                add_generation_prompt=True,
            )
        except Exception as e:
            raise TemplateError("failed to apply chat template") from e

    def _tokenize(self, prompt: str) -> torch.Tensor:
        # 템플릿이 BOS 를 이미 넣으므로 special token 은 다시 붙이지 않는다.
        try:
            enc = self.tokenizer(prompt, return_tensors="pt", add_special_tokens=False)
        except Exception as e:
            raise TokenizeError("tokenization failed") from e

        input_ids = enc["input_ids"]
        n_tokens = int(input_ids.shape[-1])
        if n_tokens == 0:
            raise TokenizeError("prompt tokenized to zero tokens")
        if n_tokens > self.n_ctx:
            raise TokenizeError(f"prompt is {n_tokens} tokens but the context holds {self.n_ctx}")
        return input_ids.to(self.model.device)

    def _forward(self, input_ids: torch.Tensor, what: str) -> torch.Tensor:
        try:
            out = self.model(input_ids=input_ids, past_key_values=self._cache, use_cache=True)
        except Exception as e:
            raise DecodeError(what) from e
        self._cache = out.past_key_values
        return out.logits[:, -1, :]

    @torch.inference_mode()
    def generate(self, messages: Sequence[ChatMessage], policy: SamplingPolicy) -> str:
        """메시지 -> 프롬프트 -> 토큰 -> 디코딩 루프 -> 텍스트.

        최대 max_tokens 스텝. EOG 토큰이면 즉시 멈춘다(빈 문자열일 수 있다).
        """
        log.info("=== LLM CALL: %d messages ===", len(messages))
        for i, msg in enumerate(messages):
            log.debug("  msg[%d] %s", i, msg)

        self.reset_state()

        prompt = self.build_prompt(messages)
        log.debug("=== RENDERED PROMPT ===\n%s\n=== END PROMPT ===", prompt)

        input_ids = self._tokenize(prompt)
        n_cur = int(input_ids.shape[-1])
        log.info("Prompt tokenized: %d tokens", n_cur)

        sampler = TokenSampler(policy)
        decoder = IncrementalDecoder(self.tokenizer)
        pieces: list[str] = []

        logits = self._forward(input_ids, "initial decode failed")
        for _ in range(self.max_tokens):
            try:
                tok = sampler.sample(logits)
            except DecodeError:
                raise
            except Exception as e:
                raise DecodeError("sampling failed") from e
            sampler.accept(tok)

            if self.is_eog(tok):
                log.debug("Hit EOG token, stopping generation")
                break

            pieces.append(decoder.push(tok))

            if n_cur >= self.n_ctx:
                raise DecodeError(f"context window exhausted ({self.n_ctx} tokens)")
            step = torch.tensor([[tok]], dtype=torch.long, device=input_ids.device)
            logits = self._forward(step, "decode step failed")
            n_cur += 1

        pieces.append(decoder.flush())
        output = "".join(pieces)
        log.info("=== LLM RAW OUTPUT (%d chars) ===\n%s\n=== END OUTPUT ===", len(output), output)
        return output

    def chat(self, messages: Sequence[ChatMessage]) -> str:
        """제약 없는 자유 생성."""
        return self.generate(messages, FREE_POLICY)
