from __future__ import annotations

import json

from conftest import finding
from rr.agents.registry import ReviewOptions
from rr.prompts import build_fixer_prompt, build_reviewer_prompt, build_simplifier_prompt
from rr.structured import FIX_SUMMARY_START_TOKEN, REVIEW_SUMMARY_START_TOKEN, ReviewSummary


def test_reviewer_prompt_defaults_to_uncommitted_changes() -> None:
    prompt = build_reviewer_prompt()

    assert "current code changes" in prompt
    assert REVIEW_SUMMARY_START_TOKEN in prompt
    assert "Do not edit any files." in prompt


def test_commit_scope_takes_priority() -> None:
    options = ReviewOptions(base_branch="main", commit_sha="abc123", custom_instructions="be nice")

    prompt = build_reviewer_prompt(options)

    assert "commit abc123" in prompt
    assert "base branch" not in prompt


def test_base_branch_scope_without_repository() -> None:
    prompt = build_reviewer_prompt(ReviewOptions(base_branch="develop"))

    assert "base branch 'develop'" in prompt
    assert "git merge-base HEAD develop" in prompt


def test_custom_instructions_replace_scope() -> None:
    prompt = build_simplifier_prompt(ReviewOptions(custom_instructions="Focus on parser.py"))

    assert "Focus on parser.py" in prompt
    assert REVIEW_SUMMARY_START_TOKEN not in prompt


def test_fixer_prompt_embeds_review_payload() -> None:
    review = ReviewSummary.model_validate(
        {
            "findings": [finding("Off by one")],
            "overall_correctness": "patch is incorrect",
            "overall_explanation": "Loop bound is wrong.",
            "overall_confidence_score": 0.75,
        }
    )

    prompt = build_fixer_prompt(review)

    embedded = prompt.split("## Review to verify\n", 1)[1].split("\n\n## Required JSON shape", 1)[0]
    assert json.loads(embedded)["findings"][0]["title"] == "Off by one"
    assert "NO_CHANGES_NEEDED" in prompt
    assert FIX_SUMMARY_START_TOKEN in prompt
