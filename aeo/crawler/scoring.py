"""
AI 评分协作方（OpenAI Chat Completions）

按评分细则版本组织提示词；输出 token 由 max_tokens 封顶，
保证实际用量不超过账本预估。
"""
from __future__ import annotations

import json
import logging
import re
from typing import Dict, List, Optional

from openai import OpenAI

from ..config import settings
from .collaborators import ScoreResult

logger = logging.getLogger(__name__)

RUBRIC_CRITERIA: Dict[str, List[dict]] = {
    "v1": [
        {"key": "direct_answers", "label": "直接回答", "description": "Does the page answer likely user questions concisely near the top?"},
        {"key": "structure", "label": "结构清晰", "description": "Headings, lists and sections that an AI engine can segment and quote."},
        {"key": "authority", "label": "权威可信", "description": "Author, sources, credentials and other E-E-A-T signals."},
        {"key": "specificity", "label": "信息具体", "description": "Concrete facts, numbers, definitions rather than marketing copy."},
        {"key": "freshness", "label": "时效性", "description": "Evidence the content is current and maintained."},
        {"key": "citability", "label": "可引用性", "description": "Self-contained passages that can be cited verbatim."},
    ],
}


def get_rubric(rubric_version: str) -> List[dict]:
    criteria = RUBRIC_CRITERIA.get(rubric_version)
    if criteria is None:
        logger.warning("未知的评分细则版本 %s，使用 v1 条目", rubric_version)
        criteria = RUBRIC_CRITERIA["v1"]
    return criteria


def build_system_prompt(rubric_version: str) -> str:
    lines = [
        "You are an AI search readiness auditor.",
        f"Score the page against rubric {rubric_version}. Each criterion is scored 0-100.",
        "Criteria:",
    ]
    for item in get_rubric(rubric_version):
        lines.append(f"- {item['key']}: {item['description']}")
    lines.append(
        "Respond ONLY with compact JSON: "
        '{"criteriaScores": {<key>: int}, "overallScore": int, '
        '"recommendations": [{"criterion": str, "priority": "high|medium|low", "recommendation": str}]}'
    )
    return "\n".join(lines)


def overall_from_criteria(criteria_scores: Dict[str, int]) -> int:
    """各条目简单平均，四舍五入"""
    values = [v for v in criteria_scores.values() if isinstance(v, (int, float))]
    if not values:
        return 0
    return int(round(sum(values) / len(values)))


def _clamp(value) -> int:
    try:
        return max(0, min(100, int(round(float(value)))))
    except (TypeError, ValueError):
        return 0


def parse_score_payload(raw: str, rubric_version: str) -> tuple[Dict[str, int], int, List[dict]]:
    """解析模型返回的 JSON（容忍 ``` 包裹），缺失条目按 0 分"""
    text = re.sub(r"^```(?:json)?\s*|\s*```$", "", (raw or "").strip())
    payload = json.loads(text or "{}")
    given = payload.get("criteriaScores") or {}
    criteria = {item["key"]: _clamp(given.get(item["key"], 0)) for item in get_rubric(rubric_version)}
    overall = payload.get("overallScore")
    overall = _clamp(overall) if overall is not None else overall_from_criteria(criteria)
    recommendations = [r for r in (payload.get("recommendations") or []) if isinstance(r, dict)]
    return criteria, overall, recommendations


class OpenAIScorer:
    """默认评分实现"""

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        model: Optional[str] = None,
        max_completion_tokens: Optional[int] = None,
    ):
        self.model = model or settings.OPENAI_MODEL
        self.max_completion_tokens = max_completion_tokens or settings.SCORING_MAX_COMPLETION_TOKENS
        self._client = client or OpenAI(api_key=settings.OPENAI_API_KEY, base_url=settings.OPENAI_BASE_URL)

    def score(self, content: str, rubric_version: str) -> ScoreResult:
        resp = self._client.chat.completions.create(
            model=self.model,
            temperature=0.3,
            max_tokens=self.max_completion_tokens,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": build_system_prompt(rubric_version)},
                {"role": "user", "content": f"Page content:\n{content}"},
            ],
        )
        raw = resp.choices[0].message.content or ""
        criteria, overall, recommendations = parse_score_payload(raw, rubric_version)
        tokens_used = int(getattr(resp.usage, "total_tokens", 0) or 0)
        return ScoreResult(
            criteria_scores=criteria,
            overall_score=overall,
            recommendations=recommendations,
            tokens_used=tokens_used,
            model=self.model,
        )


__all__ = [
    "RUBRIC_CRITERIA",
    "OpenAIScorer",
    "build_system_prompt",
    "get_rubric",
    "overall_from_criteria",
    "parse_score_payload",
]
