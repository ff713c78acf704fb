from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from shadow_critic.config import ReviewConfiguration
from shadow_critic.context import (
    branch_messages,
    content_text,
    extract_image_paths,
    format_recent_context,
    format_tool_invocation,
    safe_json,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReviewTrigger:
    context: str
    image_paths: tuple[str, ...] = field(default_factory=tuple)
    blocking: bool = False


class TriggerDispatcher:
    """Decides when a review fires and what context it sees."""

    def __init__(self, config: ReviewConfiguration) -> None:
        self.config = config

    def _curate(self, messages: Sequence[Any]) -> str:
        return format_recent_context(
            messages,
            self.config.context_mode,
            max_messages=self.config.max_context_messages,
        )

    @staticmethod
    def _trigger(context: str, **kwargs: Any) -> ReviewTrigger | None:
        if not context.strip():
            return None
        return ReviewTrigger(context=context, **kwargs)

    def on_turn_end(self, branch_entries: Sequence[Any]) -> ReviewTrigger | None:
        if not self.config.enabled or self.config.trigger_mode != "turn_end":
            return None
        # The whole stored branch, so cumulative diffs are visible.
        return self._trigger(self._curate(branch_messages(branch_entries)))

    def on_tool_result(
        self,
        tool_name: str,
        tool_input: Any,
        content: Any,
        branch_entries: Sequence[Any] = (),
    ) -> ReviewTrigger | None:
        if not self.config.enabled:
            return None

        if self.config.trigger_mode == "visual":
            haystack = f"{safe_json(tool_input)}\n{content_text(content)}"
            image_paths = extract_image_paths(haystack)
            if not image_paths:
                logger.info("[visual] No images found after tool %s, skipping", tool_name)
                return None
            logger.info(
                "[visual] Found %d image(s) after tool %s: %s",
                len(image_paths),
                tool_name,
                ", ".join(image_paths),
            )
            return self._trigger(
                self._curate(branch_messages(branch_entries)),
                image_paths=tuple(image_paths),
            )

        if self.config.trigger_mode != "tool_result":
            return None
        if tool_name not in self.config.trigger_tools:
            return None
        return self._trigger(format_tool_invocation(tool_name, tool_input, content))

    def on_agent_end(self, messages: Sequence[Any]) -> ReviewTrigger | None:
        if not self.config.enabled or self.config.trigger_mode != "agent_end":
            return None
        # The host may exit as soon as agent_end returns.
        return self._trigger(self._curate(messages), blocking=True)
