"""Response parsing utilities for LLM output.

Reviewer and arbitrator responses are free text with labelled sections
(``ANALYSIS:``, ``CONCERNS:``, ``CONSENSUS: 92%`` ...). Parsing is
best-effort: malformed input yields a score of 0 and empty lists, never
an exception.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional

from src.core.models import ArbitrationResult, ConsensusResult

# A line that opens a new labelled section, e.g. "CONCERNS:" or "## RECOMMENDATIONS:"
_SECTION_LINE = re.compile(
    r"^[ \t]*(?:#{1,6}[ \t]*)?(?:\*\*)?[A-Z][A-Z_]+(?:[ \t][A-Z_]+)*(?:\*\*)?[ \t]*:",
    re.MULTILINE,
)


def extract_code_blocks(text: str, language: Optional[str] = None) -> list[str]:
    """Extract fenced code blocks from LLM output.

    Args:
        text: Raw LLM response.
        language: If specified, only return blocks with this language tag.

    Returns:
        List of code block contents (without fences).
    """
    if language:
        pattern = rf"```{re.escape(language)}\s*\n(.*?)```"
    else:
        pattern = r"```(?:\w+)?\s*\n(.*?)```"

    matches = re.findall(pattern, text, re.DOTALL)
    return [m.strip() for m in matches]


def extract_json_block(text: str) -> Optional[dict[str, Any]]:
    """Extract and parse the first JSON object from LLM output."""
    if not text:
        return None
    candidates = extract_code_blocks(text, "json") + [text.strip()]
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def extract_section(text: str, header: str) -> str:
    """Return the body of a labelled section, up to the next section label.

    The header may be written as ``HEADER:``, ``## Header`` or ``**HEADER**:``;
    matching is case-insensitive and anchored at the start of a line.
    """
    if not text:
        return ""
    start = re.compile(
        rf"^[ \t]*(?:#{{1,6}}[ \t]*)?(?:\*\*)?{re.escape(header)}(?:\*\*)?[ \t]*:?[ \t]*",
        re.MULTILINE | re.IGNORECASE,
    )
    match = start.search(text)
    if not match:
        return ""

    remaining = text[match.end():]
    end = _next_section(remaining)
    body = remaining[: end.start()] if end else remaining
    return body.strip()


def _next_section(remaining: str) -> Optional[re.Match]:
    # Skip the rest of the header line itself before looking for the next label
    newline = remaining.find("\n")
    if newline < 0:
        return None
    return _SECTION_LINE.search(remaining, newline + 1)


def parse_list(text: str) -> list[str]:
    """Parse bulleted, numbered, bold-titled or substantial plain lines into items."""
    if not text:
        return []

    items: list[str] = []
    for line in text.split("\n"):
        trimmed = line.strip()
        if not trimmed:
            continue
        if re.match(r"^#{1,6}\s", trimmed):
            continue
        if re.match(r"^[A-Z][A-Z_\s]+:", trimmed):
            continue
        if re.fullmatch(r"[A-Z]+", trimmed):
            continue

        bullet = re.match(r"^[-*+]\s+(.+)$", trimmed)
        number = re.match(r"^\d+[.)]\s+(.+)$", trimmed)
        bold = re.match(r"^\*\*([^*]+)\*\*[:\s]*(.*)$", trimmed)

        if bullet:
            item = bullet.group(1).strip()
            if len(item) > 3 and not re.fullmatch(r"[A-Z][A-Z_\s]+", item):
                items.append(item)
        elif number:
            item = number.group(1).strip()
            if len(item) > 3:
                items.append(item)
        elif bold:
            title, desc = bold.group(1).strip(), bold.group(2).strip()
            if desc:
                items.append(f"{title}: {desc}")
            elif len(title) > 10:
                items.append(title)
        elif len(trimmed) > 15 and not trimmed.startswith("**") and not trimmed.endswith(":"):
            items.append(trimmed)

    return items


def parse_percentage(text: str, label: str) -> Optional[float]:
    """Find ``LABEL: N%`` and return N/100 clamped to [0, 1], or None."""
    if not text:
        return None
    match = re.search(rf"{re.escape(label)}\s*:?\s*\**\s*(\d+(?:\.\d+)?)\s*%", text, re.IGNORECASE)
    if not match:
        return None
    return min(1.0, max(0.0, float(match.group(1)) / 100.0))


def parse_consensus_response(text: str, approve_threshold: float = 0.95) -> ConsensusResult:
    """Parse a reviewer's text review into a ConsensusResult."""
    score = parse_percentage(text, "CONSENSUS") or 0.0
    return ConsensusResult(
        score=score,
        analysis=extract_section(text, "ANALYSIS"),
        strengths=parse_list(extract_section(text, "STRENGTHS")),
        concerns=parse_list(extract_section(text, "CONCERNS")),
        recommendations=parse_list(extract_section(text, "RECOMMENDATIONS")),
        approved=score >= approve_threshold,
        raw_response=text or "",
    )


def parse_arbitration_response(text: str) -> ArbitrationResult:
    """Parse an arbitrator's decision.

    Without an explicit ``DECISION:`` line the plan is approved only when
    the final score reaches 90%.
    """
    score = parse_percentage(text, "FINAL_SCORE") or 0.0
    decision = re.search(r"DECISION\s*:\s*\**\s*(APPROVE|REVISE)", text or "", re.IGNORECASE)
    approved = decision.group(1).upper() == "APPROVE" if decision else score >= 0.90

    def _concerns(header: str) -> list[str]:
        return [c for c in parse_list(extract_section(text, header)) if c.lower() != "none"]

    return ArbitrationResult(
        approved=approved,
        score=score,
        analysis=extract_section(text, "ANALYSIS"),
        critical_concerns=_concerns("CRITICAL_CONCERNS"),
        minor_concerns=_concerns("MINOR_CONCERNS"),
        subjective_concerns=_concerns("SUBJECTIVE_CONCERNS"),
        reasoning=extract_section(text, "REASONING"),
        suggested_changes=[
            c for c in parse_list(extract_section(text, "SUGGESTED_CHANGES"))
            if "none" not in c.lower()
        ],
        raw_response=text or "",
    )


def extract_root_cause(text: str, fallback_chars: int = 500) -> str:
    """Return the ``### Root Cause Analysis`` section, or the head of the text."""
    if not text:
        return ""
    match = re.search(r"###\s*Root Cause Analysis\s*\n(.*?)(?=\n###\s|\Z)", text, re.DOTALL | re.IGNORECASE)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return text[:fallback_chars].strip()
