from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


IssueStatus = Literal["preexisting", "in_progress", "watching", "done", "failed"]
PullRequestState = Literal["open", "closed", "merged"]

EPOCH_TIMESTAMP = "1970-01-01T00:00:00Z"


@dataclass(frozen=True)
class Issue:
    number: int
    title: str
    body: str
    state: str
    html_url: str
    labels: tuple[str, ...]
    is_pull_request: bool = False


@dataclass(frozen=True)
class PullRequestReviewComment:
    comment_id: int
    body: str
    path: str
    line: int | None
    original_line: int | None
    user_login: str
    review_id: int | None
    created_at: str
    updated_at: str

    @property
    def activity_at(self) -> str:
        return self.updated_at or self.created_at

    @property
    def line_display(self) -> str:
        if self.line is not None:
            return str(self.line)
        if self.original_line is not None:
            return str(self.original_line)
        return "?"


@dataclass(frozen=True)
class PullRequestReview:
    review_id: int
    state: str
    body: str
    user_login: str
    submitted_at: str

    @property
    def activity_at(self) -> str:
        return self.submitted_at


@dataclass(frozen=True)
class ReviewActivity:
    """Inline comments and substantive reviews newer than a baseline timestamp."""

    inline_comments: tuple[PullRequestReviewComment, ...]
    reviews: tuple[PullRequestReview, ...]

    @property
    def is_empty(self) -> bool:
        return not self.inline_comments and not self.reviews

    def latest_timestamp(self) -> str | None:
        stamps = [c.activity_at for c in self.inline_comments if c.activity_at]
        stamps.extend(r.activity_at for r in self.reviews if r.activity_at)
        if not stamps:
            return None
        return max(stamps)
