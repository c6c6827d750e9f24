"""
ChronoHeal - Pattern Store
==========================

Read/write contract for learned patterns, plus an in-memory implementation
for development and tests. A production deployment backs PatternStore with
a database; the knowledge base only relies on the methods below.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from threading import Lock
from typing import Any, Optional

from shared.constants import PatternType
from shared.schemas.patterns import AppliedPatternSummary, LearnedPattern, LearnedPatternDraft
from shared.utils.clock import utcnow
from shared.utils.logging import get_logger

logger = get_logger(__name__)


class PatternStore(ABC):
    """CRUD and aggregate operations on LearnedPattern records."""

    @abstractmethod
    async def list_patterns(
        self,
        is_active: Optional[bool] = None,
        pattern_type: Optional[PatternType] = None,
        limit: Optional[int] = None
    ) -> list[LearnedPattern]:
        ...

    @abstractmethod
    async def get_pattern(self, pattern_id: str) -> Optional[LearnedPattern]:
        ...

    @abstractmethod
    async def create_pattern(self, draft: LearnedPatternDraft) -> LearnedPattern:
        ...

    @abstractmethod
    async def update_pattern(self, pattern_id: str, updates: dict[str, Any]) -> Optional[LearnedPattern]:
        ...

    @abstractmethod
    async def record_match(self, pattern_id: str) -> Optional[LearnedPattern]:
        ...

    @abstractmethod
    async def record_application(
        self,
        pattern_id: str,
        success: bool,
        applied_at: Optional[datetime] = None
    ) -> Optional[LearnedPattern]:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    @abstractmethod
    async def count_by_type(self) -> dict[str, int]:
        ...

    @abstractmethod
    async def count_high_confidence(self, threshold: float) -> int:
        ...

    @abstractmethod
    async def most_applied(self, limit: int = 10) -> list[AppliedPatternSummary]:
        ...

    async def deactivate(self, pattern_id: str) -> Optional[LearnedPattern]:
        return await self.update_pattern(pattern_id, {"is_active": False})


class InMemoryPatternStore(PatternStore):
    """
    Thread-safe in-memory pattern storage.

    Records are replaced, never mutated in place, so a pattern handed out
    by ``list_patterns`` is a stable snapshot.
    """

    def __init__(self, patterns: Optional[list[LearnedPattern]] = None):
        self._patterns: dict[str, LearnedPattern] = {}
        self._lock = Lock()
        for pattern in patterns or []:
            self._patterns[pattern.pattern_id] = pattern

    def _snapshot(self) -> list[LearnedPattern]:
        with self._lock:
            return list(self._patterns.values())

    async def list_patterns(
        self,
        is_active: Optional[bool] = None,
        pattern_type: Optional[PatternType] = None,
        limit: Optional[int] = None
    ) -> list[LearnedPattern]:
        patterns = self._snapshot()

        if is_active is not None:
            patterns = [p for p in patterns if p.is_active == is_active]
        if pattern_type is not None:
            patterns = [p for p in patterns if p.type == pattern_type]

        patterns.sort(key=lambda p: (p.created_at, p.pattern_id))

        return patterns[:limit] if limit is not None else patterns

    async def get_pattern(self, pattern_id: str) -> Optional[LearnedPattern]:
        with self._lock:
            return self._patterns.get(pattern_id)

    async def create_pattern(self, draft: LearnedPatternDraft) -> LearnedPattern:
        pattern = LearnedPattern(**draft.model_dump())
        with self._lock:
            self._patterns[pattern.pattern_id] = pattern
        logger.info(f"Created pattern {pattern.pattern_id}", extra={"pattern_name": pattern.name})
        return pattern

    async def update_pattern(self, pattern_id: str, updates: dict[str, Any]) -> Optional[LearnedPattern]:
        with self._lock:
            pattern = self._patterns.get(pattern_id)
            if not pattern:
                return None

            data = pattern.model_dump()
            data.update(updates)
            data["updated_at"] = utcnow()

            updated = LearnedPattern(**data)
            self._patterns[pattern_id] = updated
            return updated

    async def record_match(self, pattern_id: str) -> Optional[LearnedPattern]:
        with self._lock:
            pattern = self._patterns.get(pattern_id)
            if not pattern:
                return None
            updated = pattern.model_copy(update={
                "times_matched": pattern.times_matched + 1,
                "updated_at": utcnow(),
            })
            self._patterns[pattern_id] = updated
            return updated

    async def record_application(
        self,
        pattern_id: str,
        success: bool,
        applied_at: Optional[datetime] = None
    ) -> Optional[LearnedPattern]:
        with self._lock:
            pattern = self._patterns.get(pattern_id)
            if not pattern:
                return None

            times_applied = pattern.times_applied + 1
            successes = round((pattern.success_rate or 0.0) * pattern.times_applied)
            if success:
                successes += 1

            updated = pattern.model_copy(update={
                "times_applied": times_applied,
                "success_rate": successes / times_applied,
                "last_applied_at": applied_at or utcnow(),
                "updated_at": utcnow(),
            })
            self._patterns[pattern_id] = updated
            return updated

    async def count(self) -> int:
        with self._lock:
            return len(self._patterns)

    async def count_by_type(self) -> dict[str, int]:
        counts = {t.value: 0 for t in PatternType}
        for pattern in self._snapshot():
            counts[pattern.type.value] += 1
        return counts

    async def count_high_confidence(self, threshold: float) -> int:
        return sum(1 for p in self._snapshot() if p.confidence >= threshold)

    async def most_applied(self, limit: int = 10) -> list[AppliedPatternSummary]:
        applied = [p for p in self._snapshot() if p.times_applied > 0]
        applied.sort(key=lambda p: (-p.times_applied, p.pattern_id))
        return [
            AppliedPatternSummary(
                pattern_id=p.pattern_id,
                name=p.name,
                times_applied=p.times_applied,
                success_rate=p.success_rate,
            )
            for p in applied[:limit]
        ]
