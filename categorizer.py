from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional

from rapidfuzz.distance import Levenshtein
from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Category, CategoryType, TransactionType


logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(r"[a-z0-9&']+")
FUZZY_MIN_LENGTH = 5


@dataclass(frozen=True)
class CategoryMatch:
    category_id: int
    category_name: str
    score: int
    matched: tuple[str, ...]


def tokenize(text: str) -> list[str]:
    return TOKEN_RE.findall((text or "").lower())


def score_keywords(text: str, keywords: Iterable[str]) -> tuple[int, list[str]]:
    """
    Exact whole-word or phrase hits score 2, a single-edit typo of a
    keyword of five or more characters scores 1.
    """
    tokens = tokenize(text)
    if not tokens:
        return 0, []
    joined = f" {' '.join(tokens)} "
    token_set = set(tokens)

    score = 0
    matched: list[str] = []
    for raw in keywords:
        keyword = " ".join(tokenize(raw))
        if not keyword:
            continue
        if " " in keyword:
            if f" {keyword} " in joined:
                score += 2
                matched.append(keyword)
            continue
        if keyword in token_set:
            score += 2
            matched.append(keyword)
            continue
        if len(keyword) >= FUZZY_MIN_LENGTH and any(
            Levenshtein.distance(keyword, token, score_cutoff=1) <= 1
            for token in token_set
            if abs(len(token) - len(keyword)) <= 1
        ):
            score += 1
            matched.append(keyword)
    return score, matched


class KeywordCategorizer:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _candidates(self, txn_type: Optional[TransactionType]) -> list[Category]:
        stmt = select(Category).where(
            Category.user_id == self.user_id, Category.is_active.is_(True)
        )
        if txn_type in (TransactionType.income, TransactionType.expense):
            stmt = stmt.where(Category.type == CategoryType(txn_type.value))
        return self.session.scalars(stmt.order_by(Category.id)).all()

    def predict(
        self, description: str, txn_type: Optional[TransactionType] = None
    ) -> Optional[CategoryMatch]:
        best: Optional[tuple[int, int, int]] = None
        best_match: Optional[CategoryMatch] = None
        for category in self._candidates(txn_type):
            score, matched = score_keywords(description, category.keywords or [])
            if score <= 0:
                continue
            # higher score, then deeper category, then oldest
            rank = (score, category.level, -category.id)
            if best is None or rank > best:
                best = rank
                best_match = CategoryMatch(
                    category_id=category.id,
                    category_name=category.name,
                    score=score,
                    matched=tuple(matched),
                )
        if best_match:
            logger.debug(
                "categorize: description=%r category=%s score=%s",
                description,
                best_match.category_name,
                best_match.score,
            )
        return best_match
