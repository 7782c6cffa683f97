from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import cached_property
from typing import Any

from bs4 import BeautifulSoup

from .utils import canonicalize_url, parse_iso_datetime


class Stage(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    DEDUPLICATING = "deduplicating"
    CLASSIFYING = "classifying"
    PERSISTED = "persisted"
    FAILED = "failed"


@dataclass(frozen=True)
class ArticleDescriptor:
    url: str
    title: str
    published_at: datetime | None = None
    feed_fields: dict[str, str] = field(default_factory=dict)

    def field_value(self, name: str) -> str:
        return (self.feed_fields.get(name) or "").strip()


@dataclass
class FetchResult:
    final_url: str
    http_status: int
    fetched_at: datetime
    html: str | None = None
    feed_payload: str | None = None
    used_fallback_variant: bool = False

    @property
    def is_feed(self) -> bool:
        return self.feed_payload is not None

    @cached_property
    def soup(self) -> BeautifulSoup | None:
        if not self.html:
            return None
        return BeautifulSoup(self.html, "html.parser")


@dataclass
class ImageCandidate:
    source_url: str
    strategy_name: str
    confidence_score: float
    discovered_at: datetime
    raw_attributes: dict[str, str] = field(default_factory=dict)

    @property
    def canonical_url(self) -> str:
        return canonicalize_url(self.source_url)

    @property
    def alt_text(self) -> str:
        return self.raw_attributes.get("alt", "")


@dataclass
class DedupedImage:
    canonical_url: str
    best_strategy_name: str
    merged_confidence: float
    contributing_strategies: set[str]
    discovered_at: datetime
    alt_text: str = ""
    source_url: str = ""
    local_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "canonical_url": self.canonical_url,
            "best_strategy_name": self.best_strategy_name,
            "merged_confidence": self.merged_confidence,
            "contributing_strategies": sorted(self.contributing_strategies),
            "discovered_at": self.discovered_at.isoformat(),
            "alt_text": self.alt_text,
            "source_url": self.source_url,
            "local_path": self.local_path,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> DedupedImage:
        return cls(
            canonical_url=payload["canonical_url"],
            best_strategy_name=payload["best_strategy_name"],
            merged_confidence=float(payload["merged_confidence"]),
            contributing_strategies=set(payload.get("contributing_strategies") or []),
            discovered_at=parse_iso_datetime(payload["discovered_at"]),
            alt_text=payload.get("alt_text") or "",
            source_url=payload.get("source_url") or "",
            local_path=payload.get("local_path"),
        )


@dataclass(frozen=True)
class RegionTag:
    region_id: str
    matched_keywords: tuple[str, ...] = ()
    match_strength: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "region_id": self.region_id,
            "matched_keywords": list(self.matched_keywords),
            "match_strength": self.match_strength,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RegionTag:
        return cls(
            region_id=payload["region_id"],
            matched_keywords=tuple(payload.get("matched_keywords") or ()),
            match_strength=float(payload.get("match_strength") or 0.0),
        )


@dataclass(frozen=True)
class MetadataRecord:
    article_url: str
    title: str
    images: tuple[DedupedImage, ...]
    region_tags: tuple[RegionTag, ...]
    strategy_success_counts: dict[str, int]
    created_at: datetime
    schema_version: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "article_url": self.article_url,
            "title": self.title,
            "images": [image.to_dict() for image in self.images],
            "region_tags": [tag.to_dict() for tag in self.region_tags],
            "strategy_success_counts": dict(sorted(self.strategy_success_counts.items())),
            "created_at": self.created_at.isoformat(),
            "schema_version": self.schema_version,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> MetadataRecord:
        return cls(
            article_url=payload["article_url"],
            title=payload.get("title") or "",
            images=tuple(DedupedImage.from_dict(item) for item in payload.get("images") or []),
            region_tags=tuple(RegionTag.from_dict(item) for item in payload.get("region_tags") or []),
            strategy_success_counts={
                key: int(value) for key, value in (payload.get("strategy_success_counts") or {}).items()
            },
            created_at=parse_iso_datetime(payload["created_at"]),
            schema_version=int(payload["schema_version"]),
        )


@dataclass
class ArticleOutcome:
    url: str
    status: str
    stage: Stage
    reason: str = ""
    record_id: str | None = None
    image_count: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == "persisted"

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "status": self.status,
            "stage": self.stage.value,
            "reason": self.reason,
            "record_id": self.record_id,
            "image_count": self.image_count,
        }


@dataclass
class BatchReport:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    per_strategy_success_counts: dict[str, int] = field(default_factory=dict)
    elapsed_seconds: float = 0.0
    outcomes: list[ArticleOutcome] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if not self.attempted:
            return 0.0
        return round(self.succeeded / self.attempted * 100, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "success_rate": self.success_rate,
            "per_strategy_success_counts": dict(sorted(self.per_strategy_success_counts.items())),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }
