from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

from shadow_critic.backends.base import ReviewOutcome
from shadow_critic.host import HostContext

logger = logging.getLogger(__name__)

CRITIC_MESSAGE_TYPE = "critic-review"
FEEDBACK_PREFIX = "[Critic feedback]: "

EntryT = TypeVar("EntryT")


@dataclass(frozen=True, slots=True)
class ReviewDetails:
    outcome: ReviewOutcome
    context: str


@dataclass(frozen=True, slots=True)
class DisplayMessage:
    content: str
    details: ReviewDetails
    custom_type: str = CRITIC_MESSAGE_TYPE
    display: bool = True


def is_critic_message(entry: Any) -> bool:
    if isinstance(entry, Mapping):
        return entry.get("customType") == CRITIC_MESSAGE_TYPE
    return getattr(entry, "custom_type", None) == CRITIC_MESSAGE_TYPE


def filter_model_context(messages: Iterable[EntryT]) -> list[EntryT]:
    """Drop critic display messages from the context assembled for the primary model."""
    return [message for message in messages if not is_critic_message(message)]


class FeedbackRouter:
    def __init__(self, host: HostContext) -> None:
        self.host = host

    def display(self, outcome: ReviewOutcome, context: str) -> DisplayMessage:
        message = DisplayMessage(
            content=outcome.critique,
            details=ReviewDetails(outcome=outcome, context=context),
        )
        self.host.send_message(message, trigger_turn=False)
        return message

    def route(self, outcome: ReviewOutcome, context: str, *, cap_reached: bool) -> bool:
        """Display ``outcome`` and, when warranted, hand the critique to the primary agent.

        Returns True when feedback was sent.
        """
        self.display(outcome, context)

        if outcome.approved:
            logger.info("Critic approved the work; no feedback sent")
            return False
        if outcome.failed:
            logger.info("Critic failed (%s); no feedback sent", outcome.error)
            return False
        if outcome.aborted:
            logger.info("Critic was aborted; no feedback sent")
            return False
        if not outcome.actionable:
            logger.info("Critic returned no critique text; no feedback sent")
            return False
        if cap_reached:
            logger.info("Critic has issues but max reviews reached; not sending feedback")
            return False

        logger.info("Sending critic feedback to agent (status=%s)", outcome.status)
        self.host.send_user_message(f"{FEEDBACK_PREFIX}{outcome.critique}", deliver_as="follow_up")
        return True
