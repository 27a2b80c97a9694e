from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from pathlib import Path
from typing import cast
from urllib.parse import urlencode

from autopr.models import (
    Issue,
    PullRequestReview,
    PullRequestReviewComment,
    PullRequestState,
    ReviewActivity,
)
from autopr.observability import log_event, log_warning_event
from autopr.shell import CommandError, run


LOGGER = logging.getLogger("autopr.github_gateway")
GH_TIMEOUT_SECONDS = 30.0
_PAGE_SIZE = 100


class GitHubPollingError(RuntimeError):
    """Recoverable GitHub read failure; caller should retry next poll."""


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str

    @classmethod
    def from_full_name(cls, full_name: str) -> GitHubGateway:
        owner, _, name = full_name.partition("/")
        if not owner or not name:
            raise ValueError(f"Expected 'owner/name', got {full_name!r}")
        return cls(owner=owner, name=name)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def list_open_issues_with_any_labels(self, labels: tuple[str, ...]) -> list[Issue]:
        deduped: dict[int, Issue] = {}
        for label in labels:
            for issue in self.list_open_issues_with_label(label):
                if issue.number not in deduped:
                    deduped[issue.number] = issue
        issues = [deduped[number] for number in sorted(deduped)]
        log_event(
            LOGGER,
            "issues_deduped",
            fetched_label_count=len(labels),
            deduped_issue_count=len(issues),
        )
        return issues

    def list_open_issues_with_label(self, label: str) -> list[Issue]:
        issues: list[Issue] = []
        for item in self._paged_get(
            f"/repos/{self.full_name}/issues",
            {"state": "open", "labels": label, "sort": "created", "direction": "asc"},
        ):
            issue = _parse_issue(item)
            # The issues endpoint also returns pull requests; those are never work items.
            if issue.is_pull_request:
                continue
            issues.append(issue)
        log_event(LOGGER, "github_read", endpoint="issues", label=label, count=len(issues))
        return issues

    def get_issue(self, issue_number: int) -> Issue:
        payload = self._api_json("GET", f"/repos/{self.full_name}/issues/{issue_number}")
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise GitHubPollingError("Unexpected GitHub response: expected object for issue")
        issue = _parse_issue(payload_obj)
        log_event(LOGGER, "github_read", endpoint="issue", issue_number=issue.number)
        return issue

    def find_open_pull_request_for_branch(self, branch: str) -> int | None:
        matches: list[int] = []
        for item in self._paged_get(
            f"/repos/{self.full_name}/pulls",
            {"state": "open", "head": f"{self.owner}:{branch}"},
        ):
            head = _as_object_dict(item.get("head"))
            if head is None or head.get("ref") != branch:
                continue
            matches.append(_as_int(item.get("number"), field="number"))
        selected = max(matches) if matches else None
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_lookup_by_head",
            head=branch,
            found=selected is not None,
            pr_number=selected,
        )
        return selected

    def get_pull_request_state(self, pr_number: int) -> PullRequestState:
        payload = self._api_json("GET", f"/repos/{self.full_name}/pulls/{pr_number}")
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise GitHubPollingError("Unexpected GitHub response: expected object for pull request")
        raw_state = _as_string(payload_obj.get("state")).strip().lower()
        merged = payload_obj.get("merged") is True or bool(payload_obj.get("merged_at"))
        state: PullRequestState
        if merged:
            state = "merged"
        elif raw_state == "open":
            state = "open"
        else:
            state = "closed"
        log_event(LOGGER, "github_read", endpoint="pull_request", pr_number=pr_number, state=state)
        return state

    def list_review_comments(self, pr_number: int) -> list[PullRequestReviewComment]:
        comments: list[PullRequestReviewComment] = []
        for item in self._paged_get(f"/repos/{self.full_name}/pulls/{pr_number}/comments", {}):
            user_obj = _as_object_dict(item.get("user"))
            comments.append(
                PullRequestReviewComment(
                    comment_id=_as_int(item.get("id"), field="id"),
                    body=_as_string(item.get("body")),
                    path=_as_string(item.get("path")),
                    line=_as_optional_int(item.get("line")),
                    original_line=_as_optional_int(item.get("original_line")),
                    user_login=_as_string(user_obj.get("login") if user_obj else None),
                    review_id=_as_optional_int(item.get("pull_request_review_id")),
                    created_at=_as_string(item.get("created_at")),
                    updated_at=_as_string(item.get("updated_at")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_review_comments",
            pr_number=pr_number,
            count=len(comments),
        )
        return comments

    def list_reviews(self, pr_number: int) -> list[PullRequestReview]:
        reviews: list[PullRequestReview] = []
        for item in self._paged_get(f"/repos/{self.full_name}/pulls/{pr_number}/reviews", {}):
            user_obj = _as_object_dict(item.get("user"))
            reviews.append(
                PullRequestReview(
                    review_id=_as_int(item.get("id"), field="id"),
                    state=_as_string(item.get("state")),
                    body=_as_string(item.get("body")),
                    user_login=_as_string(user_obj.get("login") if user_obj else None),
                    submitted_at=_as_string(item.get("submitted_at")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_reviews",
            pr_number=pr_number,
            count=len(reviews),
        )
        return reviews

    def latest_activity_timestamp(self, pr_number: int) -> str | None:
        activity = ReviewActivity(
            inline_comments=tuple(self.list_review_comments(pr_number)),
            reviews=tuple(self.list_reviews(pr_number)),
        )
        return activity.latest_timestamp()

    def fetch_new_review_activity(self, pr_number: int, since: str) -> ReviewActivity:
        comments = tuple(
            comment
            for comment in self.list_review_comments(pr_number)
            if comment.activity_at > since
        )
        reviews = tuple(
            review
            for review in self.list_reviews(pr_number)
            if review.activity_at > since and review.body.strip()
        )
        return ReviewActivity(inline_comments=comments, reviews=reviews)

    def get_default_branch(self) -> str:
        try:
            payload = self._api_json("GET", f"/repos/{self.full_name}")
        except GitHubPollingError:
            return "main"
        payload_obj = _as_object_dict(payload)
        branch = _as_string(payload_obj.get("default_branch") if payload_obj else None)
        return branch or "main"

    def post_review_comment_reply(self, pr_number: int, review_comment_id: int, body: str) -> int:
        path = f"/repos/{self.full_name}/pulls/{pr_number}/comments"
        try:
            payload = self._api_json(
                "POST", path, payload={"body": body, "in_reply_to": review_comment_id}
            )
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "github_review_reply_failed",
                pr_number=pr_number,
                review_comment_id=review_comment_id,
                error_type=type(exc).__name__,
            )
            raise
        payload_obj = _as_object_dict(payload)
        reply_id = _as_int(payload_obj.get("id") if payload_obj else None, field="id")
        log_event(
            LOGGER,
            "github_review_reply_posted",
            pr_number=pr_number,
            review_comment_id=review_comment_id,
            reply_id=reply_id,
        )
        return reply_id

    def _paged_get(self, path: str, query: dict[str, str]) -> list[dict[str, object]]:
        items: list[dict[str, object]] = []
        page = 1
        while True:
            query_items: dict[str, object] = {**query, "per_page": _PAGE_SIZE, "page": page}
            payload = self._api_json("GET", f"{path}?{urlencode(query_items)}")
            if not isinstance(payload, list):
                raise GitHubPollingError(f"Unexpected GitHub response: expected list for {path}")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    items.append(item_obj)
            if len(payload) < _PAGE_SIZE:
                return items
            page += 1

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        cmd = ["gh", "api", "--method", method_upper, path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)

        if method_upper != "GET":
            return json.loads(run(cmd, input_text=stdin_payload, timeout=GH_TIMEOUT_SECONDS))

        try:
            raw = run(cmd, timeout=GH_TIMEOUT_SECONDS)
            return json.loads(raw)
        except (CommandError, json.JSONDecodeError) as exc:
            log_warning_event(
                LOGGER,
                "github_poll_get_failed",
                path=path,
                error_type=type(exc).__name__,
            )
            raise GitHubPollingError(f"GitHub polling GET failed for path {path}: {exc}") from exc


def detect_repo_full_name(cwd: Path | None = None) -> str:
    out = run(
        ["gh", "repo", "view", "--json", "nameWithOwner", "--jq", ".nameWithOwner"],
        cwd=cwd,
        timeout=GH_TIMEOUT_SECONDS,
    ).strip()
    if "/" not in out:
        raise RuntimeError(f"Could not determine GitHub repository (gh returned {out!r})")
    return out


def filter_latest_review_round(
    reviews: list[PullRequestReview], comments: list[PullRequestReviewComment]
) -> tuple[list[PullRequestReview], list[PullRequestReviewComment]]:
    """Keep only the review with the highest id and the inline comments attached to it."""
    if not reviews:
        return reviews, comments
    latest_id = max(review.review_id for review in reviews)
    return (
        [review for review in reviews if review.review_id == latest_id],
        [comment for comment in comments if comment.review_id == latest_id],
    )


def _parse_issue(item: dict[str, object]) -> Issue:
    label_names: list[str] = []
    labels_obj = item.get("labels")
    if isinstance(labels_obj, list):
        for entry in labels_obj:
            entry_obj = _as_object_dict(entry)
            if entry_obj is None:
                continue
            name = entry_obj.get("name")
            if isinstance(name, str):
                label_names.append(name)
    return Issue(
        number=_as_int(item.get("number"), field="number"),
        title=_as_string(item.get("title")),
        body=_as_string(item.get("body")),
        state=_as_string(item.get("state")).lower(),
        html_url=_as_string(item.get("html_url")),
        labels=tuple(label_names),
        is_pull_request=item.get("pull_request") is not None,
    )


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitHubPollingError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitHubPollingError(
                f"Unexpected GitHub response value for {field}: {value}"
            ) from exc
    raise GitHubPollingError(f"Unexpected GitHub response type for {field}")


def _as_optional_int(value: object) -> int | None:
    if value is None:
        return None
    return _as_int(value, field="optional int field")
