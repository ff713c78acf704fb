from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

if TYPE_CHECKING:
    from shadow_critic.feedback import DisplayMessage

DeliveryMode = Literal["steer", "follow_up"]
NotifyLevel = Literal["info", "warning", "error"]


@runtime_checkable
class HostContext(Protocol):
    """Interface the critic consumes from the host agent runtime.

    Only a narrow slice of the host is needed: a display channel, a way to
    queue user messages for the primary agent, the session log, and a few UI
    hooks.
    """

    @property
    def cwd(self) -> Path:
        """Working directory of the primary agent."""
        ...

    @property
    def model_id(self) -> str | None:
        """Identifier of the primary agent's model, if known."""
        ...

    def send_message(self, message: DisplayMessage, *, trigger_turn: bool = False) -> None:
        """Show a tagged message in the UI without starting a model turn."""
        ...

    def send_user_message(self, text: str, *, deliver_as: DeliveryMode) -> None:
        """Queue a user message for the primary agent.

        ``steer`` interrupts the current run; ``follow_up`` is delivered as
        soon as the agent is idle.
        """
        ...

    def append_entry(self, custom_type: str, data: dict[str, Any]) -> None:
        """Append a custom entry to the session log."""
        ...

    def get_entries(self) -> Sequence[dict[str, Any]]:
        """All session log entries, oldest first."""
        ...

    def get_branch(self) -> Sequence[dict[str, Any]]:
        """Entries on the active conversation branch, oldest first."""
        ...

    def notify(self, message: str, level: NotifyLevel = "info") -> None:
        ...

    def set_status(self, key: str, text: str | None) -> None:
        ...

    def set_working_message(self, text: str | None = None) -> None:
        ...
