from __future__ import annotations

from collections import OrderedDict

from .config import CORROBORATION_BOOST, DEFAULT_MIN_CONFIDENCE
from .models import DedupedImage, ImageCandidate


def merge_confidence(scores: list[float], strategy_count: int) -> float:
    if not scores:
        return 0.0
    corroborations = max(0, strategy_count - 1)
    boosted = max(scores) + CORROBORATION_BOOST * corroborations
    return min(1.0, round(boosted, 4))


def _merge_group(canonical_url: str, group: list[ImageCandidate]) -> DedupedImage:
    strategies = {candidate.strategy_name for candidate in group}
    best = min(group, key=lambda item: (-item.confidence_score, item.discovered_at))
    alt_text = best.alt_text or next((item.alt_text for item in group if item.alt_text), "")
    return DedupedImage(
        canonical_url=canonical_url,
        best_strategy_name=best.strategy_name,
        merged_confidence=merge_confidence([item.confidence_score for item in group], len(strategies)),
        contributing_strategies=strategies,
        discovered_at=min(item.discovered_at for item in group),
        alt_text=alt_text,
        source_url=best.source_url,
    )


def dedupe_candidates(
    candidates: list[ImageCandidate],
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
) -> list[DedupedImage]:
    groups: OrderedDict[str, list[ImageCandidate]] = OrderedDict()
    for candidate in candidates:
        key = candidate.canonical_url
        if not key:
            continue
        groups.setdefault(key, []).append(candidate)

    merged = [_merge_group(key, group) for key, group in groups.items()]
    kept = [image for image in merged if image.merged_confidence >= min_confidence]
    kept.sort(key=lambda item: (-item.merged_confidence, item.discovered_at, item.canonical_url))
    return kept
