from __future__ import annotations

from typing import Iterable, Mapping

from .config import UNCLASSIFIED
from .models import ArticleDescriptor, ImageCandidate, RegionTag

TITLE_HIT_WEIGHT = 1.5
TEXT_HIT_WEIGHT = 1.0


def _alt_texts(candidates: Iterable) -> list[str]:
    texts = []
    for candidate in candidates:
        alt = getattr(candidate, "alt_text", "") or ""
        if alt:
            texts.append(alt)
    return texts


def classify(
    descriptor: ArticleDescriptor,
    candidates: Iterable[ImageCandidate],
    taxonomy: Mapping[str, Iterable[str]],
) -> list[RegionTag]:
    """Tag an article against a region keyword taxonomy.

    Matching is a case-insensitive substring test over the title, the feed
    summary/description and candidate alt text. Keywords found in the title
    weigh more than keywords found elsewhere. The result depends only on the
    inputs, so re-processing an article always yields the same tags.
    """
    title = (descriptor.title or "").lower()
    body_parts = [
        descriptor.field_value("summary"),
        descriptor.field_value("description"),
        *_alt_texts(candidates),
    ]
    body = "\n".join(part for part in body_parts if part).lower()

    tags: list[RegionTag] = []
    for region_id in sorted(taxonomy):
        matched: list[str] = []
        strength = 0.0
        for keyword in taxonomy[region_id]:
            needle = (keyword or "").strip().lower()
            if not needle or needle in matched:
                continue
            if needle in title:
                strength += TITLE_HIT_WEIGHT
            elif needle in body:
                strength += TEXT_HIT_WEIGHT
            else:
                continue
            matched.append(needle)
        if matched:
            tags.append(RegionTag(region_id=region_id, matched_keywords=tuple(matched), match_strength=strength))

    if not tags:
        return [RegionTag(region_id=UNCLASSIFIED)]
    tags.sort(key=lambda tag: (-tag.match_strength, tag.region_id))
    return tags
