"""
ChronoHeal - Knowledge Base
===========================

Correlates observed symptoms with learned incident patterns.

Matching is keyword based:
1. Each trigger condition of an active pattern is split into tokens; tokens
   longer than 3 characters (lowercased) are the pattern's keywords.
   Leading and trailing punctuation is stripped first, so "high," and
   "high" are the same keyword.
2. A keyword hits when it is a substring of any input string.
3. Score = distinct keywords hit / distinct keywords of the pattern.

``match_patterns`` is a pure function. ``KnowledgeBase`` composes it with
the pattern store and publishes ``pattern:matched`` on the event bus when,
and only when, a call produces at least one match.
"""

import time
from typing import Iterable, Optional

from shared.constants import Defaults, PatternType
from shared.schemas.events import (
    PatternAppliedEvent,
    PatternDeactivatedEvent,
    PatternMatchedEvent,
    PatternStoredEvent,
)
from shared.schemas.patterns import (
    LearnedPattern,
    LearnedPatternDraft,
    MatchMetadata,
    MatchResult,
    PatternMatchInput,
    PatternQueryResult,
    PatternRecommendations,
    PatternStats,
)
from shared.utils.logging import get_logger

from src.core.notifications import EventBus
from src.core.pattern_store import PatternStore

logger = get_logger(__name__)

_TOKEN_PUNCTUATION = ".,;:!?()[]{}\"'`"


def extract_keywords(conditions: Iterable[str]) -> list[str]:
    """Distinct keywords across all conditions, in first-seen order."""
    keywords: list[str] = []
    seen: set[str] = set()
    for condition in conditions:
        for token in condition.lower().split():
            token = token.strip(_TOKEN_PUNCTUATION)
            if len(token) >= Defaults.KEYWORD_MIN_LENGTH and token not in seen:
                seen.add(token)
                keywords.append(token)
    return keywords


def score_pattern(pattern: LearnedPattern, search_strings: list[str]) -> Optional[MatchResult]:
    """Score one pattern against lowercased input strings; None if nothing hits."""
    keywords = extract_keywords(pattern.trigger_conditions)
    if not keywords:
        return None

    matched = [k for k in keywords if any(k in s for s in search_strings)]
    if not matched:
        return None

    score = min(1.0, len(matched) / len(keywords))

    matched_exceptions = [
        e for e in pattern.exceptions
        if e and any(e.lower() in s for s in search_strings)
    ]

    explanation = f"{len(matched)}/{len(keywords)} keywords matched: {', '.join(matched)}"
    if matched_exceptions:
        explanation += f"; exceptions present: {', '.join(matched_exceptions)}"

    return MatchResult(
        pattern=pattern,
        score=score,
        matched_keywords=matched,
        matched_exceptions=matched_exceptions,
        explanation=explanation,
    )


def match_patterns(
    patterns: Iterable[LearnedPattern],
    match_input: PatternMatchInput,
    min_score: float = 0.0,
    max_results: Optional[int] = None,
    types: Optional[Iterable[PatternType]] = None
) -> list[MatchResult]:
    """
    Match patterns against an input.

    Inactive patterns are skipped. Results are ordered by score, then the
    pattern's stored confidence (both descending), then pattern ID.
    """
    search_strings = match_input.search_strings()
    if not search_strings:
        return []

    type_filter = set(types) if types else None

    matches: list[MatchResult] = []
    for pattern in patterns:
        if not pattern.is_active:
            continue
        if type_filter is not None and pattern.type not in type_filter:
            continue

        result = score_pattern(pattern, search_strings)
        if result is not None and result.score >= min_score:
            matches.append(result)

    matches.sort(key=lambda m: (-m.score, -m.pattern.confidence, m.pattern.pattern_id))

    if max_results is not None:
        matches = matches[:max_results]

    return matches


def find_similar_pattern(
    draft: LearnedPatternDraft,
    existing: Iterable[LearnedPattern],
    overlap_threshold: float = Defaults.DUPLICATE_CONDITION_OVERLAP
) -> Optional[LearnedPattern]:
    """An existing pattern with the same name or heavily overlapping conditions."""
    new_conditions = [c.lower() for c in draft.trigger_conditions]

    for pattern in existing:
        if pattern.name.lower() == draft.name.lower():
            return pattern

        existing_conditions = {c.lower() for c in pattern.trigger_conditions}
        denominator = max(len(existing_conditions), len(new_conditions))
        if denominator == 0:
            continue

        overlap = sum(1 for c in new_conditions if c in existing_conditions)
        if overlap / denominator > overlap_threshold:
            return pattern

    return None


class KnowledgeBase:
    """
    Pattern knowledge base backed by a PatternStore.

    Aggregates (``get_stats``) come straight from the store's aggregate
    queries. The only write path from incident runs is
    ``record_pattern_application``.
    """

    def __init__(
        self,
        store: PatternStore,
        event_bus: Optional[EventBus] = None,
        high_confidence_threshold: float = Defaults.HIGH_CONFIDENCE_THRESHOLD,
        default_min_score: float = 0.0,
        default_max_results: Optional[int] = None
    ):
        self.store = store
        self.event_bus = event_bus or EventBus()
        self.high_confidence_threshold = high_confidence_threshold
        self.default_min_score = default_min_score
        self.default_max_results = default_max_results

    async def find_matching_patterns(
        self,
        match_input: PatternMatchInput,
        min_score: Optional[float] = None,
        max_results: Optional[int] = None,
        types: Optional[list[PatternType]] = None
    ) -> PatternQueryResult:
        """Find active patterns relevant to the input, best first."""
        started = time.perf_counter()

        if match_input.is_empty():
            return PatternQueryResult(
                matches=[],
                metadata=MatchMetadata(
                    total_patterns_searched=0,
                    matches_found=0,
                    processing_time_ms=(time.perf_counter() - started) * 1000,
                ),
            )

        patterns = await self.store.list_patterns(is_active=True)
        if types:
            patterns = [p for p in patterns if p.type in types]

        matches = match_patterns(
            patterns,
            match_input,
            min_score=self.default_min_score if min_score is None else min_score,
            max_results=self.default_max_results if max_results is None else max_results,
        )

        for match in matches:
            try:
                await self.store.record_match(match.pattern.pattern_id)
            except Exception as e:
                logger.warning(
                    f"Could not record match for pattern {match.pattern.pattern_id}: {e}",
                    extra={"pattern_id": match.pattern.pattern_id}
                )

        elapsed_ms = (time.perf_counter() - started) * 1000

        if matches:
            self.event_bus.publish(PatternMatchedEvent(matches=matches, input=match_input))

        logger.info(
            f"Pattern search found {len(matches)} of {len(patterns)}",
            extra={
                "matches_found": len(matches),
                "total_searched": len(patterns),
                "duration_ms": round(elapsed_ms, 2)
            }
        )

        return PatternQueryResult(
            matches=matches,
            metadata=MatchMetadata(
                total_patterns_searched=len(patterns),
                matches_found=len(matches),
                processing_time_ms=elapsed_ms,
            ),
        )

    async def store_pattern(self, draft: LearnedPatternDraft) -> LearnedPattern:
        """Store a new pattern; usage statistics start empty."""
        logger.info(
            f"Storing pattern {draft.name}",
            extra={"pattern_name": draft.name, "pattern_type": draft.type.value}
        )

        record = await self.store.create_pattern(draft)
        self.event_bus.publish(PatternStoredEvent(pattern=record))
        return record

    async def store_patterns_from_extraction(self, drafts: list[LearnedPatternDraft]) -> list[LearnedPattern]:
        """
        Store a batch of extracted patterns.

        Near-duplicates of existing patterns are skipped. A failure on one
        draft is logged and the remaining drafts are still stored.
        """
        stored: list[LearnedPattern] = []

        for draft in drafts:
            try:
                existing = await self.store.list_patterns()
                similar = find_similar_pattern(draft, existing)
                if similar:
                    logger.info(
                        f"Similar pattern already exists, skipping {draft.name}",
                        extra={"pattern_name": draft.name, "existing_id": similar.pattern_id}
                    )
                    continue

                stored.append(await self.store_pattern(draft))

            except Exception as e:
                logger.error(
                    f"Failed to store pattern {draft.name}: {e}",
                    extra={"pattern_name": draft.name},
                    exc_info=True
                )

        logger.info(
            f"Stored {len(stored)} of {len(drafts)} extracted patterns",
            extra={"stored": len(stored), "submitted": len(drafts)}
        )
        return stored

    async def get_stats(self) -> PatternStats:
        return PatternStats(
            total_patterns=await self.store.count(),
            by_type=await self.store.count_by_type(),
            high_confidence_count=await self.store.count_high_confidence(self.high_confidence_threshold),
            high_confidence_threshold=self.high_confidence_threshold,
            most_applied=await self.store.most_applied(10),
        )

    async def record_pattern_application(self, pattern_id: str, success: bool) -> Optional[LearnedPattern]:
        """Update a pattern's usage statistics after an action outcome is known."""
        updated = await self.store.record_application(pattern_id, success)
        if updated is None:
            logger.warning(f"Pattern {pattern_id} not found for application record")
            return None

        self.event_bus.publish(PatternAppliedEvent(pattern_id=pattern_id, success=success))
        logger.info(
            f"Pattern application recorded for {pattern_id}",
            extra={"pattern_id": pattern_id, "success": success, "success_rate": updated.success_rate}
        )
        return updated

    async def deactivate_pattern(self, pattern_id: str, reason: str) -> Optional[LearnedPattern]:
        updated = await self.store.deactivate(pattern_id)
        if updated is not None:
            self.event_bus.publish(PatternDeactivatedEvent(pattern_id=pattern_id, reason=reason))
            logger.info(f"Pattern {pattern_id} deactivated", extra={"reason": reason})
        return updated

    async def get_pattern(self, pattern_id: str) -> Optional[LearnedPattern]:
        return await self.store.get_pattern(pattern_id)

    async def get_recommendations(self, match_input: PatternMatchInput) -> PatternRecommendations:
        """Recommended actions from the best diagnostic and resolution matches."""
        result = await self.find_matching_patterns(
            match_input,
            min_score=0.4,
            max_results=5,
            types=[PatternType.DIAGNOSTIC, PatternType.RESOLUTION],
        )

        recommendations: list[str] = []
        for match in result.matches:
            for action in match.pattern.recommended_actions:
                if action not in recommendations:
                    recommendations.append(action)

        return PatternRecommendations(
            recommendations=recommendations,
            source_pattern_ids=[m.pattern.pattern_id for m in result.matches],
        )
