"""
内容缓存：(content_hash, rubric_version) -> PageScore

缓存即 page_scores 表本身：无 TTL、无淘汰，跨运行、跨项目共享。
更换评分细则版本后旧条目自然不再命中，无需显式清理。
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..models import PageScore
from .collaborators import ScoreResult

logger = logging.getLogger(__name__)


class ContentCache:
    def lookup(self, db: Session, content_hash: str, rubric_version: str) -> Optional[PageScore]:
        return (
            db.query(PageScore)
            .filter(PageScore.ai_cache_key == content_hash, PageScore.rubric_version == rubric_version)
            .first()
        )

    def store(self, db: Session, content_hash: str, rubric_version: str, result: ScoreResult) -> PageScore:
        """写入评分（由调用方控制事务提交时机）。

        已存在同键条目时直接返回既有条目，保证同一内容同一细则只有一份评分。
        """
        existing = self.lookup(db, content_hash, rubric_version)
        if existing is not None:
            logger.info("评分缓存已存在 %s@%s，沿用既有结果", content_hash[:12], rubric_version)
            return existing
        score = PageScore(
            ai_cache_key=content_hash,
            rubric_version=rubric_version,
            overall_score=int(result.overall_score),
            criteria_scores=dict(result.criteria_scores),
            recommendations=list(result.recommendations),
            ai_tokens_used=int(result.tokens_used),
            model=result.model,
        )
        db.add(score)
        db.flush()
        return score


__all__ = ["ContentCache"]
