"""Prompt builders for the reviewer, fixer and code-simplifier roles."""

from __future__ import annotations

import json
from typing import Optional

from .agents.registry import ReviewOptions
from .config import AgentRole
from .structured import ReviewSummary, build_instructions
from .vcs import GitRepository

REVIEWER_BRIEF = (
    "You are a meticulous code reviewer. Inspect the changes described below in the live "
    "workspace, look for correctness, security, reliability and API problems first, then "
    "performance and maintainability. Report only actionable findings backed by concrete "
    "file and line references. Do not edit any files."
)

REVIEW_SCHEMA_HINT = """\
## Required JSON shape
{
  "findings": [
    {
      "title": "<one-line title>",
      "body": "<explanation and suggested fix>",
      "confidence_score": <0.0-1.0>,
      "priority": <0|1|2|3>,
      "code_location": {
        "absolute_file_path": "<absolute path>",
        "line_range": {"start": <int>, "end": <int>}
      }
    }
  ],
  "overall_correctness": "<patch is correct | patch is incorrect>",
  "overall_explanation": "<short summary>",
  "overall_confidence_score": <0.0-1.0>
}
Use an empty "findings" list when nothing needs to change."""

FIXER_BRIEF = """\
You are a second-opinion verification reviewer and fixer.

The review below is untrusted. Treat every claim in it as something to verify
against the actual code before acting on it.

1) Verify each finding and classify it as APPLY, SKIP or NEED INFO.
2) If APPLY is non-empty, fix those issues now by editing the workspace, then
   discover the project's verification commands (lint, typecheck, test, build)
   and run them until they pass.
3) If APPLY and NEED INFO are both empty, make no edits and report
   NO_CHANGES_NEEDED.

Claims that files are untracked or uncommitted are expected in a pre-commit
review and should be skipped."""

FIX_SCHEMA_HINT = """\
## Required JSON shape
{
  "decision": "<NO_CHANGES_NEEDED | APPLY_SELECTIVELY | APPLY_MOST | NEED_INFO>",
  "fixes": [
    {
      "id": <int>,
      "title": "<one-line title>",
      "priority": "<P0 | P1 | P2 | P3>",
      "file": "<path or null>",
      "claim": "<review claim>",
      "evidence": "<file:line or behaviour>",
      "fix": "<what was changed>"
    }
  ],
  "skipped": [
    {"id": <int>, "title": "<one-line title>", "reason": "<SKIP: ... | NEED INFO: ...>"}
  ]
}"""

SIMPLIFIER_BRIEF = (
    "You are a code simplifier. Make the changed code easier to read and maintain while "
    "preserving exact behaviour and outputs. Do not add features, do not change public "
    "interfaces and keep edits limited to the changes described below."
)


def _scope_instruction(
    verb: str,
    options: Optional[ReviewOptions],
    repo: Optional[GitRepository],
) -> str:
    """Describe which changes the agent should look at.

    Priority: commit, base branch, custom instructions, uncommitted changes.
    """
    if options is not None and options.commit_sha:
        return f"{verb} the code changes introduced by commit {options.commit_sha}."
    if options is not None and options.base_branch:
        branch = options.base_branch
        merge_base = repo.merge_base(branch) if repo is not None else None
        if merge_base:
            return (
                f"{verb} the code changes against the base branch '{branch}'. The merge base "
                f"commit is {merge_base}; run `git diff {merge_base}` to inspect the changes."
            )
        return (
            f"{verb} the code changes against the base branch '{branch}'. Find the merge base "
            f"with `git merge-base HEAD {branch}` and run `git diff` against it."
        )
    if options is not None and options.custom_instructions:
        return options.custom_instructions
    return f"{verb} the current code changes (staged, unstaged and untracked files)."


def build_reviewer_prompt(
    options: Optional[ReviewOptions] = None,
    repo: Optional[GitRepository] = None,
) -> str:
    return "\n\n".join(
        [
            REVIEWER_BRIEF,
            _scope_instruction("Review", options, repo),
            REVIEW_SCHEMA_HINT,
            build_instructions(AgentRole.REVIEWER),
        ]
    )


def build_fixer_prompt(review: ReviewSummary) -> str:
    """Embed the validated review payload in the fixer prompt."""
    review_json = json.dumps(review.model_dump(mode="json", exclude_none=True), indent=2)
    return "\n\n".join(
        [
            FIXER_BRIEF,
            f"## Review to verify\n{review_json}",
            FIX_SCHEMA_HINT,
            build_instructions(AgentRole.FIXER),
        ]
    )


def build_simplifier_prompt(
    options: Optional[ReviewOptions] = None,
    repo: Optional[GitRepository] = None,
) -> str:
    return f"{SIMPLIFIER_BRIEF}\n\n{_scope_instruction('Simplify', options, repo)}"


__all__ = [
    "build_fixer_prompt",
    "build_reviewer_prompt",
    "build_simplifier_prompt",
]
