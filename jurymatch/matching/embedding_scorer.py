# embedding_scorer.py
# =============================================================================
# 向量评分器: 陪审员自由文本与画像参考描述的语义相似度。
# / Embedding scorer: semantic similarity between juror free text and personas.
#
# 职责 / Responsibilities:
#   - 通过 EmbeddingProvider 计算（或复用缓存的）陪审员文本向量
#   - 与每个画像的参考向量做余弦相似度，线性映射到 [0, 1]
#   - 置信度随自由文本量增长并饱和；无文本时得分 0.5、置信度 0
#   - 外部服务失败 / 超时降级为中性零置信度结果，记录日志，不抛异常
#
# HashingEmbedder 是无需外部服务的确定性特征哈希实现，在未配置
# embedding 端点时使用。
# =============================================================================

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import re
import time
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from jurymatch.primitives.models import (
    METHOD_EMBEDDING,
    MethodScore,
    Persona,
)

logger = logging.getLogger(__name__)

DEFAULT_DIMENSIONS = 1024

# 短文本阈值：低于任一阈值时置信度上限 0.5 / Short-text thresholds
_SHORT_TEXT_CHARS = 200
_SHORT_TEXT_WORDS = 30

_TOKEN_RE = re.compile(r"(?:[^\W_]|')+")


class EmbeddingProvider(Protocol):
    """向量服务接口。所有实现均暴露 async embed(texts) -> vectors。

    自带传输层重试的实现可暴露整数属性 max_retries，EmbeddingScorer 据此
    扣减自身的重试次数。
    """

    async def embed(self, texts: List[str]) -> List[List[float]]:
        ...


# =============================================================================
# HashingEmbedder: 确定性特征哈希 / Deterministic feature hashing
# =============================================================================


class HashingEmbedder:
    """基于词与二元词组特征哈希的离线向量化实现。

    相同文本永远得到相同向量；词汇重叠越多，余弦相似度越高。
    """

    def __init__(self, dimensions: int = DEFAULT_DIMENSIONS) -> None:
        if dimensions < 8:
            raise ValueError("dimensions 至少为 8")
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, texts: List[str]) -> List[List[float]]:
        return [self.embed_one(t) for t in texts]

    def embed_one(self, text: str) -> List[float]:
        vector = [0.0] * self._dimensions
        tokens = _TOKEN_RE.findall(text.lower())
        features = tokens + [f"{a} {b}" for a, b in zip(tokens, tokens[1:])]
        for feature in features:
            digest = hashlib.sha256(feature.encode("utf-8")).digest()
            index = int.from_bytes(digest[:4], "big") % self._dimensions
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[index] += sign
        return _normalize(vector)


# =============================================================================
# 工具函数
# =============================================================================


def _normalize(vector: Sequence[float]) -> List[float]:
    norm = math.sqrt(sum(x * x for x in vector))
    if norm == 0:
        return list(vector)
    return [x / norm for x in vector]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> Optional[float]:
    """余弦相似度；维度不一致或零向量时返回 None。"""
    if len(a) != len(b) or not a:
        return None
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return None
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


def text_confidence(text: str, saturation_chars: int = 2000) -> float:
    """自由文本量 → 置信度，单调不减并在 saturation_chars 处饱和。"""
    stripped = text.strip()
    if not stripped:
        return 0.0
    chars = len(stripped)
    words = len(stripped.split())
    if chars < _SHORT_TEXT_CHARS or words < _SHORT_TEXT_WORDS:
        return min(0.5, chars / 400 * 0.5)
    return 0.5 + 0.5 * min(1.0, chars / max(1, saturation_chars))


def _digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# =============================================================================
# EmbeddingScorer
# =============================================================================


class EmbeddingScorer:
    """计算陪审员叙述文本与各画像的语义相似度得分。"""

    def __init__(
        self,
        provider: EmbeddingProvider,
        timeout: float = 10.0,
        max_retries: int = 1,
        cache_ttl: float = 3600.0,
        saturation_chars: int = 2000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._timeout = timeout
        self._max_retries = max(0, min(max_retries, 1))
        self._cache_ttl = cache_ttl
        self._saturation_chars = saturation_chars
        self._clock = clock
        # 文本摘要 → (向量, 写入时间) / text digest -> (vector, stored_at)
        self._cache: Dict[str, Tuple[List[float], float]] = {}

    @property
    def provider(self) -> EmbeddingProvider:
        return self._provider

    @staticmethod
    def narrative_digest(text: str) -> str:
        """叙述文本摘要，用于判断自由文本是否变化。"""
        return _digest(text.strip())

    async def score_all(
        self,
        narrative: str,
        personas: List[Persona],
    ) -> Dict[str, MethodScore]:
        """为所有画像计算向量得分。永不抛出外部依赖异常。"""
        text = narrative.strip()
        if not text:
            return {
                p.persona_id: MethodScore.neutral(METHOD_EMBEDDING, detail="no free text")
                for p in personas
            }

        confidence = text_confidence(text, self._saturation_chars)
        texts = [text]
        for persona in personas:
            if not persona.embedding:
                texts.append(persona.reference_text())

        try:
            vectors = await self._embed_cached(texts)
        except Exception as exc:
            logger.warning("向量计算失败，向量方法降级为中性得分: %s", exc)
            return {
                p.persona_id: MethodScore.neutral(
                    METHOD_EMBEDDING, detail=f"embedding failed: {exc}", degraded=True,
                )
                for p in personas
            }

        juror_vector = vectors[0]
        if not any(juror_vector):
            # 文本中没有可向量化的词（如纯标点）：按无可用文本处理
            return {
                p.persona_id: MethodScore.neutral(METHOD_EMBEDDING, detail="no usable free text")
                for p in personas
            }
        generated = iter(vectors[1:])
        results: Dict[str, MethodScore] = {}
        for persona in personas:
            reference = list(persona.embedding) if persona.embedding else next(generated)
            similarity = cosine_similarity(juror_vector, reference)
            if similarity is None:
                logger.warning(
                    "画像 '%s' 的参考向量不可用（维度 %d vs %d），降级为中性得分",
                    persona.persona_id, len(reference), len(juror_vector),
                )
                results[persona.persona_id] = MethodScore.neutral(
                    METHOD_EMBEDDING, detail="incompatible reference vector", degraded=True,
                )
                continue
            results[persona.persona_id] = MethodScore(
                method=METHOD_EMBEDDING,
                score=(similarity + 1.0) / 2.0,
                confidence=confidence,
                detail=f"cosine={similarity:.4f}",
            )
        return results

    # -------------------------------------------------------------------------
    # 缓存与外部调用
    # -------------------------------------------------------------------------

    async def _embed_cached(self, texts: List[str]) -> List[List[float]]:
        now = self._clock()
        digests = [_digest(t) for t in texts]
        pending: List[int] = []
        for i, d in enumerate(digests):
            cached = self._cache.get(d)
            if cached is None or now - cached[1] > self._cache_ttl:
                pending.append(i)

        if pending:
            unique: Dict[str, str] = {}
            for i in pending:
                unique.setdefault(digests[i], texts[i])
            fresh = await self._embed_with_retry(list(unique.values()))
            if len(fresh) != len(unique):
                raise ValueError(
                    f"向量服务返回数量不匹配: 期望 {len(unique)}，实际 {len(fresh)}"
                )
            self._evict_expired(now)
            for d, vector in zip(unique.keys(), fresh):
                self._cache[d] = (list(vector), now)

        return [self._cache[d][0] for d in digests]

    def _attempts(self) -> int:
        """本层尝试次数。提供方传输层已重试时不再叠加，总重试不超过一次。"""
        transport_retries = getattr(self._provider, "max_retries", 0)
        if not isinstance(transport_retries, int):
            transport_retries = 0
        return 1 + max(0, self._max_retries - transport_retries)

    async def _embed_with_retry(self, texts: List[str]) -> List[List[float]]:
        attempts = self._attempts()
        last_error: Optional[Exception] = None
        for attempt in range(attempts):
            try:
                return await asyncio.wait_for(
                    self._provider.embed(texts), timeout=self._timeout,
                )
            except asyncio.TimeoutError as exc:
                last_error = exc
                logger.warning(
                    "向量服务超时 (%.1fs)，第 %d/%d 次",
                    self._timeout, attempt + 1, attempts,
                )
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "向量服务调用失败，第 %d/%d 次: %s",
                    attempt + 1, attempts, exc,
                )
        raise RuntimeError(
            f"向量服务在 {attempts} 次尝试后仍失败: {last_error!r}"
        )

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def _evict_expired(self, now: float) -> None:
        expired = [
            d for d, (_, stored_at) in self._cache.items()
            if now - stored_at > self._cache_ttl
        ]
        for d in expired:
            del self._cache[d]

    def clear_cache(self) -> None:
        self._cache.clear()


