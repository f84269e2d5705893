"""
Ingestion of legacy markdown bug reports.

Older clients filed bugs as plain tasks titled "[BUG] ..." whose description
packed the metadata into bold markers, either inline:

    **Severity:** Critical
    **Steps:** 1. Open Safari 2. Click Login

or as headed blocks:

    **Steps to Reproduce:**
    1. Open Safari
    2. Click Login

The markers are parsed once, when a bug report is created, into the structured
BugReport columns. Nothing downstream reads the markdown.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from models import BugSeverity, DeployEnvironment

logger = logging.getLogger(__name__)

_MARKER = re.compile(r"^\s*\*\*(?P<key>[^*:]+):\*\*\s*(?P<value>.*)$")
_BUG_PREFIX = re.compile(r"^\s*\[BUG\]\s*", re.IGNORECASE)

_SECTIONS = {
    "description": "description",
    "severity": "severity",
    "environment": "environment",
    "steps": "steps",
    "steps to reproduce": "steps",
    "expected": "expected",
    "expected result": "expected",
    "actual": "actual",
    "actual result": "actual",
    "related task id": "related_task_id",
}


@dataclass
class LegacyBugReport:
    description: str = ""
    severity: Optional[BugSeverity] = None
    environment: Optional[DeployEnvironment] = None
    steps: str = ""
    expected: str = ""
    actual: str = ""
    related_task_id: Optional[int] = None
    extras: Dict[str, str] = field(default_factory=dict)


def looks_like_legacy_markdown(text: Optional[str]) -> bool:
    if not text:
        return False
    return any(_MARKER.match(line) for line in text.splitlines())


def _enum_or_none(enum_cls, raw: str):
    try:
        return enum_cls(raw.strip().upper())
    except ValueError:
        return None


def parse_bug_markdown(text: Optional[str]) -> LegacyBugReport:
    """Split a legacy markdown description into structured bug fields."""
    sections: Dict[str, list] = {"description": []}
    current = "description"

    for line in (text or "").splitlines():
        match = _MARKER.match(line)
        if match:
            key = match.group("key").strip().lower()
            current = _SECTIONS.get(key, key)
            sections.setdefault(current, [])
            if match.group("value").strip():
                sections[current].append(match.group("value").strip())
            continue
        if line.strip().startswith("**") and line.strip().endswith("**"):
            # Bare banner such as **BUG REPORT**
            continue
        sections.setdefault(current, []).append(line.rstrip())

    joined = {key: "\n".join(lines).strip() for key, lines in sections.items()}
    report = LegacyBugReport(
        description=joined.pop("description", ""),
        steps=joined.pop("steps", ""),
        expected=joined.pop("expected", ""),
        actual=joined.pop("actual", ""),
    )

    severity = joined.pop("severity", "")
    if severity:
        report.severity = _enum_or_none(BugSeverity, severity)
        if report.severity is None:
            logger.info(f"Unrecognized legacy severity {severity!r}")

    environment = joined.pop("environment", "")
    if environment:
        report.environment = _enum_or_none(DeployEnvironment, environment)

    related = joined.pop("related_task_id", "")
    if related.isdigit():
        report.related_task_id = int(related)

    report.extras = {key: value for key, value in joined.items() if value}
    return report


def apply_legacy_markdown(fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fill missing structured bug fields from a legacy markdown description.

    Explicit values in ``fields`` always win. The title loses its "[BUG]"
    prefix and the description is replaced by its free-text part.
    Returns a new dict; ``fields`` is not modified.
    """
    result = dict(fields)
    if result.get("title"):
        result["title"] = _BUG_PREFIX.sub("", result["title"]).strip() or result["title"]

    description = result.get("description")
    if not looks_like_legacy_markdown(description):
        return result

    parsed = parse_bug_markdown(description)
    result["description"] = parsed.description
    for name in ("severity", "environment", "steps", "expected", "actual"):
        if not result.get(name) and getattr(parsed, name):
            result[name] = getattr(parsed, name)

    logger.debug(f"Parsed legacy bug markdown: severity={parsed.severity}, extras={sorted(parsed.extras)}")
    return result
