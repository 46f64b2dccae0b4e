"""Result types exchanged between the content extractor and the worker."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Protocol, Union

from snapshotter.reasons import FailureReason


@dataclass(frozen=True)
class SnapshotMetadata:
    canonical_url: str | None
    title: str | None
    byline: str | None
    excerpt: str | None
    word_count: int
    language: str | None
    content_sha256: str
    # Display fields offered to the parent save (backfill only)
    site_name: str | None = None
    image_url: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class SnapshotContent:
    """Readable copy of a page as stored in object storage."""

    title: str | None
    byline: str | None
    content: str
    text_content: str
    excerpt: str | None
    site_name: str | None
    language: str | None
    word_count: int
    image_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {
            "title": data["title"],
            "byline": data["byline"],
            "content": data["content"],
            "textContent": data["text_content"],
            "excerpt": data["excerpt"],
            "siteName": data["site_name"],
            "language": data["language"],
            "wordCount": data["word_count"],
            "imageUrl": data["image_url"],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SnapshotContent":
        return cls(
            title=data.get("title"),
            byline=data.get("byline"),
            content=data.get("content") or "",
            text_content=data.get("textContent") or "",
            excerpt=data.get("excerpt"),
            site_name=data.get("siteName"),
            language=data.get("language"),
            word_count=int(data.get("wordCount") or 0),
            image_url=data.get("imageUrl"),
        )


@dataclass(frozen=True)
class ExtractionSuccess:
    content: SnapshotContent
    metadata: SnapshotMetadata
    ok: bool = field(default=True, init=False)


@dataclass(frozen=True)
class ExtractionFailure:
    reason: str | FailureReason
    message: str
    ok: bool = field(default=False, init=False)


ExtractionResult = Union[ExtractionSuccess, ExtractionFailure]


class ContentExtractor(Protocol):
    async def process(self, url: str) -> ExtractionResult: ...
