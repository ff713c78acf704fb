from __future__ import annotations

import asyncio
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from shadow_critic.verdict import VerdictStatus


class ReviewerError(RuntimeError):
    """Raised when a reviewer process cannot be driven to completion."""


class ReviewerProcessError(ReviewerError):
    """Raised when the reviewer process cannot be launched or exits badly."""


@dataclass(frozen=True, slots=True)
class ReviewUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0


@dataclass(frozen=True, slots=True)
class ReviewRequest:
    cwd: Path
    system_prompt: str
    context: str
    model: str | None = None
    timeout_seconds: float = 60.0
    image_paths: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class ReviewOutcome:
    critique: str
    approved: bool = False
    status: VerdictStatus = "NEEDS_WORK"
    model: str | None = None
    usage: ReviewUsage | None = None
    error: str | None = None
    timed_out: bool = False
    aborted: bool = False
    duration_ms: int = 0
    exit_code: int | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def actionable(self) -> bool:
        """True when the critique should be sent back to the primary agent."""
        return (
            not self.approved
            and not self.failed
            and not self.aborted
            and bool(self.critique.strip())
        )


class ReviewerBackend(ABC):
    @abstractmethod
    async def review(
        self,
        request: ReviewRequest,
        cancel: asyncio.Event | None = None,
    ) -> ReviewOutcome:
        """Run one reviewer pass; failures are reported in the outcome, never raised."""

    @abstractmethod
    def review_sync(
        self,
        request: ReviewRequest,
        cancel: threading.Event | None = None,
    ) -> ReviewOutcome:
        """Blocking variant of :meth:`review` with the same contract."""
