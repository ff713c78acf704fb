import asyncio
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from shadow_critic.backends import AgentCliReviewer, ReviewerBackend, ReviewOutcome, ReviewRequest
from shadow_critic.feedback import DisplayMessage

FAKE_AGENT = Path(__file__).parent / "fake_agent.py"


@dataclass
class RecordingHost:
    cwd: Path
    model_id: str | None = "anthropic claude-sonnet-4"
    entries: list[dict[str, Any]] = field(default_factory=list)
    branch: list[dict[str, Any]] = field(default_factory=list)
    messages: list[DisplayMessage] = field(default_factory=list)
    turn_triggers: list[bool] = field(default_factory=list)
    user_messages: list[tuple[str, str]] = field(default_factory=list)
    notifications: list[tuple[str, str]] = field(default_factory=list)
    statuses: dict[str, str | None] = field(default_factory=dict)
    working_messages: list[str | None] = field(default_factory=list)

    def send_message(self, message: DisplayMessage, *, trigger_turn: bool = False) -> None:
        self.messages.append(message)
        self.turn_triggers.append(trigger_turn)

    def send_user_message(self, text: str, *, deliver_as: str) -> None:
        self.user_messages.append((deliver_as, text))

    def append_entry(self, custom_type: str, data: dict[str, Any]) -> None:
        self.entries.append({"type": "custom", "customType": custom_type, "data": data})

    def get_entries(self) -> list[dict[str, Any]]:
        return list(self.entries)

    def get_branch(self) -> list[dict[str, Any]]:
        return list(self.branch)

    def notify(self, message: str, level: str = "info") -> None:
        self.notifications.append((level, message))

    def set_status(self, key: str, text: str | None) -> None:
        self.statuses[key] = text

    def set_working_message(self, text: str | None = None) -> None:
        self.working_messages.append(text)


class ScriptedReviewer(ReviewerBackend):
    """Returns queued outcomes and records how it was called."""

    def __init__(self, *outcomes: ReviewOutcome) -> None:
        self.outcomes = list(outcomes)
        self.requests: list[ReviewRequest] = []
        self.calls: list[str] = []
        self.cancels: list[Any] = []

    def _next(self, request: ReviewRequest) -> ReviewOutcome:
        self.requests.append(request)
        if len(self.outcomes) > 1:
            return self.outcomes.pop(0)
        return self.outcomes[0]

    async def review(
        self,
        request: ReviewRequest,
        cancel: asyncio.Event | None = None,
    ) -> ReviewOutcome:
        self.calls.append("async")
        self.cancels.append(cancel)
        return self._next(request)

    def review_sync(
        self,
        request: ReviewRequest,
        cancel: threading.Event | None = None,
    ) -> ReviewOutcome:
        self.calls.append("sync")
        self.cancels.append(cancel)
        return self._next(request)


def fake_agent_reviewer(events: list[dict[str, Any]] | None = None) -> AgentCliReviewer:
    return AgentCliReviewer(
        [sys.executable, str(FAKE_AGENT)],
        kill_grace_seconds=1.0,
        event_hook=events.append if events is not None else None,
    )


def message_entry(message: dict[str, Any]) -> dict[str, Any]:
    return {"type": "message", "message": message}


@pytest.fixture
def host(tmp_path: Path) -> RecordingHost:
    return RecordingHost(cwd=tmp_path)


@pytest.fixture(autouse=True)
def _clean_fake_agent_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "FAKE_AGENT_MODE",
        "FAKE_AGENT_TEXT",
        "FAKE_AGENT_SLEEP",
        "FAKE_AGENT_EXIT",
        "FAKE_AGENT_ARGS_FILE",
    ):
        monkeypatch.delenv(name, raising=False)
