from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum

from shadow_critic.backends.base import ReviewOutcome
from shadow_critic.config import ReviewConfiguration

REVIEW_PROMPT_PREFIX = "[Critic"


@dataclass(slots=True)
class ReviewRuntimeState:
    reviews_this_prompt: int = 0
    last_prompt_time: float = 0.0
    in_flight: bool = False
    last_verdict_approved: bool | None = None
    stop_sent: bool = False


class Admission(Enum):
    ADMITTED = "admitted"
    BUSY = "busy"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True, slots=True)
class AdmissionDecision:
    admission: Admission
    send_stop: bool = False

    @property
    def admitted(self) -> bool:
        return self.admission is Admission.ADMITTED


def is_review_feedback(prompt: str) -> bool:
    """Messages the critic itself injected are not new user requests."""
    return prompt.lstrip().startswith(REVIEW_PROMPT_PREFIX)


class LoopGovernor:
    """Caps reviews per user request and escalates when the cap is hit unapproved."""

    def __init__(
        self,
        config: ReviewConfiguration,
        runtime: ReviewRuntimeState | None = None,
    ) -> None:
        self.config = config
        self.runtime = runtime or ReviewRuntimeState()

    @property
    def cap_reached(self) -> bool:
        return self.runtime.reviews_this_prompt >= self.config.max_reviews_per_prompt

    def on_user_prompt(self, prompt: str) -> bool:
        """Reset per-request bookkeeping; returns False for critic follow-ups."""
        if is_review_feedback(prompt):
            return False
        self.runtime.reviews_this_prompt = 0
        self.runtime.last_prompt_time = time.time()
        self.runtime.last_verdict_approved = None
        self.runtime.stop_sent = False
        return True

    def admit(self) -> AdmissionDecision:
        if self.runtime.in_flight:
            return AdmissionDecision(Admission.BUSY)
        if self.cap_reached:
            send_stop = self.runtime.last_verdict_approved is False and not self.runtime.stop_sent
            if send_stop:
                self.runtime.stop_sent = True
            return AdmissionDecision(Admission.EXHAUSTED, send_stop=send_stop)
        self.runtime.in_flight = True
        return AdmissionDecision(Admission.ADMITTED)

    def complete(self, outcome: ReviewOutcome) -> None:
        self.runtime.reviews_this_prompt += 1
        if outcome.aborted:
            # Aborts keep the previous verdict.
            return
        self.runtime.last_verdict_approved = outcome.approved

    def release(self) -> None:
        self.runtime.in_flight = False

    def stop_instruction(self) -> str:
        return (
            f"{REVIEW_PROMPT_PREFIX}]: STOP. Maximum review attempts "
            f"({self.config.max_reviews_per_prompt}) reached without approval. "
            "Wait for user input before continuing."
        )
