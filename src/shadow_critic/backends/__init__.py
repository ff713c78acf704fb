from shadow_critic.backends.agent_cli import AgentCliReviewer, JsonLineBuffer
from shadow_critic.backends.base import (
    ReviewerBackend,
    ReviewerError,
    ReviewerProcessError,
    ReviewOutcome,
    ReviewRequest,
    ReviewUsage,
)

__all__ = [
    "AgentCliReviewer",
    "JsonLineBuffer",
    "ReviewOutcome",
    "ReviewRequest",
    "ReviewUsage",
    "ReviewerBackend",
    "ReviewerError",
    "ReviewerProcessError",
]
