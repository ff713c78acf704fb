from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

VerdictStatus = Literal["APPROVED", "NEEDS_WORK", "BLOCKED"]

VERDICT_STATUSES: tuple[str, ...] = ("APPROVED", "NEEDS_WORK", "BLOCKED")
DEFAULT_STATUS: VerdictStatus = "NEEDS_WORK"
VERDICT_PATTERN = re.compile(
    r"<critic_verdict>\s*status:\s*(APPROVED|NEEDS_WORK|BLOCKED)\s*</critic_verdict>",
    re.IGNORECASE,
)


@dataclass(frozen=True, slots=True)
class Verdict:
    status: VerdictStatus
    approved: bool
    critique: str
    marker_found: bool


def parse_verdict(text: str) -> Verdict:
    """Extract the reviewer's verdict block from ``text``.

    A missing block is not an error: the verdict falls back to NEEDS_WORK so
    unreviewable output is never approved silently.
    """
    match = VERDICT_PATTERN.search(text)
    if match is None:
        return Verdict(
            status=DEFAULT_STATUS,
            approved=False,
            critique=text.strip(),
            marker_found=False,
        )
    status: VerdictStatus = match.group(1).upper()  # type: ignore[assignment]
    critique = (text[: match.start()] + text[match.end() :]).strip()
    return Verdict(
        status=status,
        approved=status == "APPROVED",
        critique=critique,
        marker_found=True,
    )
