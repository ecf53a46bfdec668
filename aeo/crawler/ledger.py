"""
Token 预算账本

单次抓取运行内的 AI 花费准入控制：
- reserve：评分前按保守预估申请额度，超出上限则拒绝（由编排器暂停运行）
- commit：评分完成后按实际用量记账（以实际值为准）
- remaining：剩余额度，None 表示不限

预估必须向上取整、只高不低：正文 token 数 + 提示词固定开销 + 最大输出 token。
编码器通过构造函数注入，测试可替换为确定性的桩实现。
"""
from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_MODEL = "gpt-4"
FALLBACK_ENCODING = "cl100k_base"

# 每 1K token 的美元单价（input/output），仅用于展示估算成本
MODEL_PRICING: Dict[str, Dict[str, float]] = {
    "gpt-4": {"input": 0.03, "output": 0.06},
    "gpt-4-turbo": {"input": 0.01, "output": 0.03},
    "gpt-4o": {"input": 0.0025, "output": 0.01},
    "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
    "gpt-3.5-turbo": {"input": 0.0005, "output": 0.0015},
}


class TokenEncoder(Protocol):
    def encode(self, text: str) -> Sequence[int]:
        ...


def _load_tiktoken_encoder(model_name: str) -> TokenEncoder:
    import tiktoken

    try:
        return tiktoken.encoding_for_model(model_name)
    except KeyError:
        logger.warning("未识别的模型 %s，改用 %s 编码", model_name, FALLBACK_ENCODING)
        return tiktoken.get_encoding(FALLBACK_ENCODING)


class EncoderRegistry:
    """按模型名缓存编码器实例（创建开销较大）。

    由调用方持有并注入账本，不使用进程级共享状态。
    """

    def __init__(self, loader: Callable[[str], TokenEncoder] = _load_tiktoken_encoder):
        self._loader = loader
        self._encoders: Dict[str, TokenEncoder] = {}
        self._lock = threading.Lock()

    def get(self, model_name: str = DEFAULT_TOKEN_MODEL) -> TokenEncoder:
        with self._lock:
            encoder = self._encoders.get(model_name)
            if encoder is None:
                encoder = self._loader(model_name)
                self._encoders[model_name] = encoder
            return encoder

    def clear(self) -> None:
        with self._lock:
            self._encoders.clear()


@dataclass(frozen=True)
class Reservation:
    granted: bool
    tokens: int
    remaining: Optional[int]

    def __bool__(self) -> bool:
        return self.granted


def _normalize_limit(limit: Optional[int]) -> Optional[int]:
    if limit is None:
        return None
    limit = int(limit)
    return limit if limit > 0 else None


def estimate_cost(token_count: int, model_name: str = DEFAULT_TOKEN_MODEL, operation: str = "input") -> float:
    pricing = MODEL_PRICING.get(model_name) or MODEL_PRICING[DEFAULT_TOKEN_MODEL]
    rate = pricing.get(operation, pricing["input"])
    return round(token_count * rate / 1000, 6)


class TokenBudgetLedger:
    """单个运行的 token 账本（线程安全）。"""

    def __init__(
        self,
        token_limit: Optional[int] = None,
        used: int = 0,
        *,
        encoder: Optional[TokenEncoder] = None,
        model_name: str = DEFAULT_TOKEN_MODEL,
        prompt_overhead: int = 0,
        max_completion_tokens: int = 0,
    ):
        if used < 0:
            raise ValueError("used 不能为负数")
        self.token_limit = _normalize_limit(token_limit)
        self.model_name = model_name
        self.prompt_overhead = max(0, int(prompt_overhead))
        self.max_completion_tokens = max(0, int(max_completion_tokens))
        self._encoder = encoder
        self._used = int(used)
        self._reserved = 0
        self._lock = threading.Lock()

    @property
    def used(self) -> int:
        with self._lock:
            return self._used

    @property
    def limited(self) -> bool:
        return self.token_limit is not None

    def count_tokens(self, text: str) -> int:
        """正文 token 数；编码失败时以 UTF-8 字节数作为上界"""
        if not text:
            return 0
        if self._encoder is not None:
            try:
                return len(self._encoder.encode(text))
            except Exception as exc:  # noqa: BLE001
                logger.warning("token 编码失败，改用字节数上界：%s", exc)
        return len(text.encode("utf-8"))

    def estimate(self, text: str) -> int:
        """评分一段正文的保守预估（整数，向上取整）"""
        return int(math.ceil(self.count_tokens(text) + self.prompt_overhead + self.max_completion_tokens))

    def reserve(self, estimated_tokens: int) -> Reservation:
        estimated_tokens = int(math.ceil(estimated_tokens))
        if estimated_tokens < 0:
            raise ValueError("预估 token 不能为负数")
        with self._lock:
            if self.token_limit is None:
                self._reserved += estimated_tokens
                return Reservation(True, estimated_tokens, None)
            committed = self._used + self._reserved
            if committed + estimated_tokens > self.token_limit:
                return Reservation(False, estimated_tokens, max(0, self.token_limit - committed))
            self._reserved += estimated_tokens
            return Reservation(True, estimated_tokens, self.token_limit - committed - estimated_tokens)

    def release(self, reservation: Optional[Reservation]) -> None:
        if reservation is None or not reservation.granted:
            return
        with self._lock:
            self._reserved = max(0, self._reserved - reservation.tokens)

    def commit(self, actual_tokens: int, reservation: Optional[Reservation] = None) -> int:
        """按实际用量记账，返回累计用量"""
        actual_tokens = int(actual_tokens)
        if actual_tokens < 0:
            raise ValueError("实际 token 不能为负数")
        with self._lock:
            if reservation is not None and reservation.granted:
                self._reserved = max(0, self._reserved - reservation.tokens)
                if actual_tokens > reservation.tokens:
                    logger.warning("实际用量 %s 超出预估 %s", actual_tokens, reservation.tokens)
            self._used += actual_tokens
            if self.token_limit is not None and self._used > self.token_limit:
                logger.error("token 用量 %s 超出上限 %s", self._used, self.token_limit)
            return self._used

    def remaining(self) -> Optional[int]:
        with self._lock:
            if self.token_limit is None:
                return None
            return max(0, self.token_limit - self._used - self._reserved)

    def stats(self) -> dict:
        with self._lock:
            used = self._used
        result = {
            "total_tokens": used,
            "limit": self.token_limit,
            "limited_mode": self.token_limit is not None,
            "estimated_cost_usd": estimate_cost(used, self.model_name),
            "remaining": None,
            "percent_used": None,
        }
        if self.token_limit is not None:
            result["remaining"] = max(0, self.token_limit - used)
            result["percent_used"] = round(used * 100 / self.token_limit)
        return result


__all__ = [
    "TokenEncoder",
    "EncoderRegistry",
    "Reservation",
    "TokenBudgetLedger",
    "estimate_cost",
    "MODEL_PRICING",
]
