from __future__ import annotations

import json

from autopr.models import Issue, ReviewActivity


_PROTECTED_PATHS = "CLAUDE.md, .claude/, scripts/, .gitignore, CI configs"


def _review_scope_lines(*, pr_number: int) -> str:
    return f"""
Edit scope constraints (MUST be followed):
- Only modify files named in the review comments; the 'path' field of each inline comment defines your editing scope.
- Only change code the reviewer asked about. Do not refactor or reformat surrounding code.
- Do NOT modify project infrastructure files: {_PROTECTED_PATHS}.
- If a comment is ambiguous or references files outside the PR, ask for clarification with auto-pr reply instead of guessing.

For each item in inline_comments:
1. Read the file in 'path' around 'line'.
2. Apply the reviewer's feedback to that file only.
3. After all modifications, commit and push once.
4. Reply to each inline comment: auto-pr reply <comment_id> "brief description of what you changed" --pr {pr_number}

Handle any concrete change requests in top_level_reviews under the same constraints.
The 'id' field of each inline comment is the comment_id to reply to.
""".strip()


def review_activity_payload(activity: ReviewActivity) -> dict[str, object]:
    return {
        "inline_comments": [
            {
                "id": comment.comment_id,
                "path": comment.path,
                "line": comment.line if comment.line is not None else comment.original_line,
                "body": comment.body,
                "user": comment.user_login,
                "updated_at": comment.activity_at,
            }
            for comment in activity.inline_comments
        ],
        "top_level_reviews": [
            {
                "id": review.review_id,
                "state": review.state,
                "body": review.body,
                "user": review.user_login,
                "submitted_at": review.submitted_at,
            }
            for review in activity.reviews
        ],
    }


def build_implement_prompt(*, repo_full_name: str, issue: Issue, branch: str) -> str:
    return f"""
You are working in a git worktree for issue #{issue.number} in repo {repo_full_name}.

Issue title:
{issue.title}

Issue body:
{issue.body}

Your task:
1. Read the issue and understand the requirement.
2. Explore the codebase and implement the solution.
3. Commit with a message referencing the issue (e.g. "fix #{issue.number}: ...").
4. git push -u origin {branch}
5. Create a PR with: gh pr create --title "<descriptive title>" --body "Fixes #{issue.number}"

Constraints: Only modify files relevant to the issue. Do not touch {_PROTECTED_PATHS}.
""".strip()


def build_review_prompt(
    *,
    repo_full_name: str,
    pr_number: int,
    branch: str,
    activity: ReviewActivity,
) -> str:
    data = json.dumps(
        review_activity_payload(activity), indent=2, sort_keys=True, ensure_ascii=False
    )
    return f"""
New review comments on PR #{pr_number} (branch: {branch}) in repo {repo_full_name}:

{data}

{_review_scope_lines(pr_number=pr_number)}
""".strip()


def build_single_pr_prompt(
    *, repo_full_name: str, pr_number: int, activity: ReviewActivity
) -> str:
    data = json.dumps(
        review_activity_payload(activity), indent=2, sort_keys=True, ensure_ascii=False
    )
    return f"""
New review comments on GitHub PR #{pr_number} (repo: {repo_full_name}). Process each one:

{data}

{_review_scope_lines(pr_number=pr_number)}
""".strip()
