"""Delimited JSON summaries exchanged with reviewer and fixer agents.

Agents are free to print anything, but their final answer must carry one JSON
object framed by role specific tokens.  Extraction looks at the last start
token in the text, takes everything up to the next end token, parses it (with
a light repair pass for the usual model noise) and validates the result.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError

from .config import AgentRole

__all__ = [
    "CodeLocation",
    "Finding",
    "FixEntry",
    "FixSummary",
    "FIX_SUMMARY_END_TOKEN",
    "FIX_SUMMARY_START_TOKEN",
    "LineRange",
    "REVIEW_SUMMARY_END_TOKEN",
    "REVIEW_SUMMARY_START_TOKEN",
    "ReviewSummary",
    "SkippedEntry",
    "StructuredPayload",
    "build_instructions",
    "build_retry_prompt",
    "extract",
    "extract_from_output",
    "find_framed_payload",
    "parse_json_candidate",
    "tokens_for",
]

LOGGER = logging.getLogger(__name__)

REVIEW_SUMMARY_START_TOKEN = "<<<RR_REVIEW_SUMMARY_JSON_START>>>"
REVIEW_SUMMARY_END_TOKEN = "<<<RR_REVIEW_SUMMARY_JSON_END>>>"
FIX_SUMMARY_START_TOKEN = "<<<RR_FIX_SUMMARY_JSON_START>>>"
FIX_SUMMARY_END_TOKEN = "<<<RR_FIX_SUMMARY_JSON_END>>>"

FixDecision = Literal["NO_CHANGES_NEEDED", "APPLY_SELECTIVELY", "APPLY_MOST", "NEED_INFO"]
FixPriority = Literal["P0", "P1", "P2", "P3"]
OverallCorrectness = Literal["patch is correct", "patch is incorrect"]


class PayloadModel(BaseModel):
    """Shape check for agent payloads; unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore", frozen=True)


class LineRange(PayloadModel):
    start: StrictInt
    end: StrictInt


class CodeLocation(PayloadModel):
    absolute_file_path: StrictStr
    line_range: LineRange


class Finding(PayloadModel):
    title: StrictStr
    body: StrictStr
    confidence_score: float = Field(ge=0, le=1)
    priority: Optional[StrictInt] = Field(default=None, ge=0, le=3)
    code_location: CodeLocation


class ReviewSummary(PayloadModel):
    findings: List[Finding]
    overall_correctness: OverallCorrectness
    overall_explanation: StrictStr
    overall_confidence_score: float = Field(ge=0, le=1)


class FixEntry(PayloadModel):
    id: StrictInt
    title: StrictStr
    priority: FixPriority
    file: Optional[StrictStr] = None
    claim: StrictStr
    evidence: StrictStr
    fix: StrictStr


class SkippedEntry(PayloadModel):
    id: StrictInt
    title: StrictStr
    reason: StrictStr


class FixSummary(PayloadModel):
    decision: FixDecision
    fixes: List[FixEntry]
    skipped: List[SkippedEntry]


StructuredPayload = Union[ReviewSummary, FixSummary]


def tokens_for(role: AgentRole) -> Tuple[str, str]:
    """Return the (start, end) delimiter pair used by ``role``."""
    if role is AgentRole.REVIEWER:
        return REVIEW_SUMMARY_START_TOKEN, REVIEW_SUMMARY_END_TOKEN
    if role is AgentRole.FIXER:
        return FIX_SUMMARY_START_TOKEN, FIX_SUMMARY_END_TOKEN
    raise ValueError(f"Role {role.value!r} does not emit structured output")


def _model_for(role: AgentRole) -> type[PayloadModel]:
    return ReviewSummary if role is AgentRole.REVIEWER else FixSummary


def find_framed_payload(text: str, start_token: str, end_token: str) -> Optional[str]:
    """Return the text between the last ``start_token`` and the next ``end_token``."""
    start = text.rfind(start_token)
    if start < 0:
        return None
    begin = start + len(start_token)
    end = text.find(end_token, begin)
    if end < 0:
        return None
    return text[begin:end].strip()


# ------------------------------------------------------------------ repair
_INVISIBLE_RE = re.compile("[\u200b-\u200d\u2060]")
_FENCE_RE = re.compile(r"^```(?:json)?\s*\n([\s\S]*?)\n```$", re.IGNORECASE)
_QUOTE_TRANSLATION = str.maketrans(
    {
        0x201C: '"',
        0x201D: '"',
        0x201E: '"',
        0x201F: '"',
        0x00AB: '"',
        0x00BB: '"',
        0x2018: "'",
        0x2019: "'",
        0x201A: "'",
        0x201B: "'",
    }
)


def _normalise_text(candidate: str) -> str:
    text = candidate.lstrip("\ufeff")
    text = _INVISIBLE_RE.sub("", text)
    return text.replace("\r\n", "\n").replace("\r", "\n").strip()


def _unwrap_code_fence(candidate: str) -> str:
    match = _FENCE_RE.match(candidate)
    return match.group(1).strip() if match else candidate


def _scan_outside_strings(text: str):
    """Yield ``(index, char)`` for characters that sit outside JSON strings."""
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if not in_string:
            yield index, char


def _isolate_last_object(candidate: str) -> str:
    depth = 0
    start = -1
    last: Optional[str] = None
    for index, char in _scan_outside_strings(candidate):
        if char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth:
            depth -= 1
            if depth == 0 and start >= 0:
                last = candidate[start : index + 1]
                start = -1
    return last.strip() if last else candidate


def _strip_trailing_commas(candidate: str) -> str:
    drop = set()
    for index, char in _scan_outside_strings(candidate):
        if char != ",":
            continue
        rest = candidate[index + 1 :].lstrip()
        if rest[:1] in ("}", "]"):
            drop.add(index)
    if not drop:
        return candidate
    return "".join(char for index, char in enumerate(candidate) if index not in drop)


def _repair_candidate(candidate: str) -> str:
    text = _unwrap_code_fence(_normalise_text(candidate))
    text = text.translate(_QUOTE_TRANSLATION)
    text = _isolate_last_object(text)
    return _strip_trailing_commas(text).strip()


def parse_json_candidate(candidate: str) -> Any | None:
    """Parse ``candidate`` as JSON, retrying once after a light repair."""
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass
    repaired = _repair_candidate(candidate)
    if not repaired or repaired == candidate.strip():
        return None
    try:
        parsed = json.loads(repaired)
    except json.JSONDecodeError:
        return None
    LOGGER.debug("Structured payload parsed after repair")
    return parsed


# --------------------------------------------------------------- extraction
def extract(role: AgentRole, text: str) -> Optional[StructuredPayload]:
    """Return the validated payload framed in ``text``, or ``None``."""
    if not text:
        return None
    start_token, end_token = tokens_for(role)
    framed = find_framed_payload(text, start_token, end_token)
    if not framed:
        return None
    parsed = parse_json_candidate(framed)
    if parsed is None:
        return None
    try:
        return _model_for(role).model_validate(parsed)
    except ValidationError as error:
        LOGGER.debug("Structured %s payload failed validation: %s", role.value, error)
        return None


def extract_from_output(
    role: AgentRole,
    raw: str,
    extracted: Optional[str] = None,
) -> Optional[StructuredPayload]:
    """Try the agent's extracted final text first, then the raw output.

    JSONL agents embed their answer inside JSON string values, so the
    delimiters are only visible verbatim in the extracted text.
    """
    for candidate in (extracted, raw):
        if candidate:
            payload = extract(role, candidate)
            if payload is not None:
                return payload
    return None


# ------------------------------------------------------------------ prompts
def build_instructions(role: AgentRole) -> str:
    """Return the protocol block embedded in reviewer and fixer prompts."""
    start_token, end_token = tokens_for(role)
    lines = [
        "## Structured output protocol (STRICT)",
        "- Output MUST be one JSON object that matches the required schema.",
        "- Wrap that JSON object using these exact delimiters:",
        f"  - {start_token}",
        f"  - {end_token}",
        "- Do not wrap the JSON in markdown fences.",
    ]
    if role is AgentRole.REVIEWER:
        lines.append("- Do not include any text before the start token or after the end token.")
    else:
        lines.append("- The delimited JSON block MUST be the final output in the response.")
    return "\n".join(lines)


def build_retry_prompt(role: AgentRole) -> str:
    """Return the reminder sent when a response lacked a valid payload."""
    start_token, end_token = tokens_for(role)
    lines = ["IMPORTANT: Your previous response was missing or invalid structured JSON output."]
    if role is AgentRole.FIXER:
        lines.append("Do not make additional file edits in this retry.")
    lines.extend(
        [
            "Return ONLY one schema-valid JSON object wrapped in:",
            start_token,
            "<json>",
            end_token,
        ]
    )
    return "\n".join(lines)
