from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

from shadow_critic.backends import AgentCliReviewer, ReviewerBackend, ReviewOutcome, ReviewRequest
from shadow_critic.config import (
    DEFAULT_CRITIC_PROMPT,
    MAX_TIMEOUT_SECONDS,
    MIN_TIMEOUT_SECONDS,
    STATE_ENTRY_TYPE,
    ConfigError,
    ProcessConfig,
    ReviewConfiguration,
    parse_context_mode,
    parse_max_reviews,
    parse_timeout_seconds,
    parse_trigger_mode,
)
from shadow_critic.dispatcher import ReviewTrigger, TriggerDispatcher
from shadow_critic.feedback import FeedbackRouter, filter_model_context
from shadow_critic.governor import Admission, LoopGovernor, ReviewRuntimeState
from shadow_critic.host import HostContext, NotifyLevel

logger = logging.getLogger(__name__)

EventHandler = Callable[[Mapping[str, Any], HostContext], Awaitable[Any]]
CommandHandler = Callable[[str, HostContext], Awaitable[None]]

_LOG_LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


class CriticExtension:
    """Session-scoped critic: one instance owns the review configuration, the
    per-request runtime state and the reviewer backend.

    The host calls the coroutines returned by :meth:`handlers` on its events
    and those returned by :meth:`commands` on slash commands.
    """

    def __init__(
        self,
        config: ReviewConfiguration | None = None,
        reviewer: ReviewerBackend | None = None,
        *,
        process: ProcessConfig | None = None,
    ) -> None:
        self.config = config or ReviewConfiguration()
        self.process = process or ProcessConfig()
        self.reviewer = reviewer or AgentCliReviewer(
            self.process.agent_command,
            kill_grace_seconds=self.process.kill_grace_seconds,
            event_hook=self._record_reviewer_event,
        )
        self.governor = LoopGovernor(self.config, ReviewRuntimeState())
        self.dispatcher = TriggerDispatcher(self.config)

    @property
    def runtime(self) -> ReviewRuntimeState:
        return self.governor.runtime

    @staticmethod
    def _record_reviewer_event(event: dict[str, Any]) -> None:
        logger.debug("reviewer event: %s", event)

    def _log(self, host: HostContext, level: NotifyLevel, message: str) -> None:
        logger.log(_LOG_LEVELS[level], message)
        if level == "info" and not self.config.debug:
            return
        host.notify(f"[critic:{level}] {message}", level)

    def handlers(self) -> dict[str, EventHandler]:
        return {
            "session_start": self.on_session_start,
            "before_agent_start": self.on_before_agent_start,
            "context": self.on_context,
            "turn_end": self.on_turn_end,
            "tool_result": self.on_tool_result,
            "agent_end": self.on_agent_end,
        }

    def commands(self) -> dict[str, CommandHandler]:
        return {
            "critic": self.toggle,
            "critic-model": self.set_model,
            "critic-prompt": self.set_prompt,
            "critic-trigger": self.set_trigger_mode,
            "critic-context": self.set_context_mode,
            "critic-timeout": self.set_timeout,
            "critic-max-reviews": self.set_max_reviews,
            "critic-debug": self.toggle_debug,
        }

    # Review pipeline

    async def trigger(
        self,
        host: HostContext,
        context: str,
        *,
        image_paths: Sequence[str] = (),
        blocking: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> ReviewOutcome | None:
        """Run one review if the governor admits it, then display and route the outcome."""
        if not self.config.enabled:
            return None

        decision = self.governor.admit()
        if decision.admission is Admission.BUSY:
            self._log(host, "info", "Skipping critic: already processing")
            return None
        if decision.admission is Admission.EXHAUSTED:
            self._log(
                host,
                "warning",
                "Skipping critic: reached max reviews "
                f"({self.config.max_reviews_per_prompt}) for this prompt",
            )
            if decision.send_stop:
                self._log(host, "warning", "Max reviews reached without approval - stopping agent")
                host.send_user_message(self.governor.stop_instruction(), deliver_as="steer")
            return None

        review_number = self.runtime.reviews_this_prompt + 1
        limit = self.config.max_reviews_per_prompt
        self._log(
            host,
            "info",
            f"Triggering critic (mode={self.config.trigger_mode}, "
            f"review #{review_number}/{limit}, blocking={blocking})",
        )
        host.set_working_message(f"Critic reviewing ({review_number}/{limit})...")
        try:
            request = ReviewRequest(
                cwd=host.cwd,
                system_prompt=self.config.system_prompt,
                context=context,
                model=self.config.model or host.model_id,
                timeout_seconds=self.config.timeout_seconds,
                image_paths=tuple(image_paths),
            )
            if request.image_paths:
                self._log(
                    host,
                    "info",
                    f"Attaching {len(request.image_paths)} image(s): "
                    + ", ".join(request.image_paths),
                )
            if blocking:
                outcome = await self._review_blocking(request, cancel)
            else:
                outcome = await self.reviewer.review(request, cancel)

            self.governor.complete(outcome)
            if outcome.failed:
                self._log(host, "error", f"Critic failed: {outcome.error}")
            FeedbackRouter(host).route(outcome, context, cap_reached=self.governor.cap_reached)
            return outcome
        except Exception as exc:
            self._log(host, "error", f"Critic trigger failed: {exc}")
            return None
        finally:
            self.governor.release()
            host.set_working_message(None)

    async def _review_blocking(
        self,
        request: ReviewRequest,
        cancel: asyncio.Event | None,
    ) -> ReviewOutcome:
        """Run the blocking reviewer on a worker thread, relaying the host's abort signal."""
        stop = threading.Event()
        relay: asyncio.Future[Any] | None = None
        if cancel is not None:

            async def _relay_abort() -> None:
                await cancel.wait()
                stop.set()

            relay = asyncio.ensure_future(_relay_abort())
        try:
            return await asyncio.to_thread(self.reviewer.review_sync, request, stop)
        finally:
            if relay is not None:
                relay.cancel()

    async def _fire(
        self,
        host: HostContext,
        trigger: ReviewTrigger | None,
        event: Mapping[str, Any],
    ) -> ReviewOutcome | None:
        if trigger is None:
            return None
        signal = event.get("signal")
        return await self.trigger(
            host,
            trigger.context,
            image_paths=trigger.image_paths,
            blocking=trigger.blocking,
            cancel=signal if isinstance(signal, asyncio.Event) else None,
        )

    # Host events

    async def on_session_start(self, event: Mapping[str, Any], host: HostContext) -> None:
        flags = event.get("flags")
        if isinstance(flags, Mapping):
            for warning in self.config.apply_flags(flags):
                self._log(host, "warning", f"Ignoring critic flag: {warning}")

        state_entries = [
            entry
            for entry in host.get_entries()
            if entry.get("type") == "custom" and entry.get("customType") == STATE_ENTRY_TYPE
        ]
        if state_entries:
            data = state_entries[-1].get("data")
            if isinstance(data, Mapping):
                self.config.apply_snapshot(data)

        self._update_status(host)
        self._log(
            host,
            "info",
            f"Critic initialized: enabled={self.config.enabled}, "
            f"model={self.config.model}, trigger={self.config.trigger_mode}",
        )

    async def on_before_agent_start(self, event: Mapping[str, Any], host: HostContext) -> None:
        prompt = event.get("prompt")
        if self.governor.on_user_prompt(prompt if isinstance(prompt, str) else ""):
            self._log(host, "info", "New user prompt detected, reset review counter")

    async def on_context(self, event: Mapping[str, Any], host: HostContext) -> dict[str, Any]:
        return {"messages": filter_model_context(event.get("messages") or [])}

    async def on_turn_end(
        self, event: Mapping[str, Any], host: HostContext
    ) -> ReviewOutcome | None:
        return await self._fire(host, self.dispatcher.on_turn_end(host.get_branch()), event)

    async def on_tool_result(
        self, event: Mapping[str, Any], host: HostContext
    ) -> ReviewOutcome | None:
        trigger = self.dispatcher.on_tool_result(
            str(event.get("toolName") or ""),
            event.get("input"),
            event.get("content"),
            host.get_branch(),
        )
        return await self._fire(host, trigger, event)

    async def on_agent_end(
        self, event: Mapping[str, Any], host: HostContext
    ) -> ReviewOutcome | None:
        messages = event.get("messages")
        trigger = self.dispatcher.on_agent_end(messages if isinstance(messages, list) else [])
        return await self._fire(host, trigger, event)

    # Commands

    def _persist(self, host: HostContext) -> None:
        host.append_entry(STATE_ENTRY_TYPE, self.config.snapshot())

    def _update_status(self, host: HostContext) -> None:
        if self.config.enabled:
            model_id = self.config.model or host.model_id or "unknown"
            host.set_status("critic", f"critic ({model_id})")
        else:
            host.set_status("critic", None)

    async def toggle(self, args: str, host: HostContext) -> None:
        self.config.enabled = not self.config.enabled
        self._update_status(host)
        self._persist(host)
        host.notify("Critic enabled" if self.config.enabled else "Critic disabled", "info")

    async def set_model(self, args: str, host: HostContext) -> None:
        self.config.model = args.strip() or None
        self._update_status(host)
        self._persist(host)
        if self.config.model:
            host.notify(f"Critic model set to: {self.config.model}", "info")
        else:
            host.notify("Critic will use default model", "info")

    async def set_prompt(self, args: str, host: HostContext) -> None:
        prompt = args.strip()
        if not prompt:
            host.notify("Critic prompt unchanged (pass the new prompt, or 'default')", "info")
            return
        self.config.system_prompt = DEFAULT_CRITIC_PROMPT if prompt == "default" else prompt
        self._persist(host)
        host.notify("Critic prompt updated", "info")

    async def set_trigger_mode(self, args: str, host: HostContext) -> None:
        try:
            self.config.trigger_mode = parse_trigger_mode(args)
        except ConfigError as exc:
            host.notify(f"{exc}. Current trigger: {self.config.trigger_mode}", "error")
            return
        self._persist(host)
        host.notify(f"Critic trigger set to: {self.config.trigger_mode}", "info")

    async def set_context_mode(self, args: str, host: HostContext) -> None:
        try:
            self.config.context_mode = parse_context_mode(args)
        except ConfigError as exc:
            host.notify(f"{exc}. Current context mode: {self.config.context_mode}", "error")
            return
        self._persist(host)
        host.notify(f"Critic context mode set to: {self.config.context_mode}", "info")

    async def set_timeout(self, args: str, host: HostContext) -> None:
        try:
            seconds = parse_timeout_seconds(args)
        except ConfigError:
            host.notify(
                f"Current timeout: {self.config.timeout_seconds:g}s "
                f"(valid range: {MIN_TIMEOUT_SECONDS}-{MAX_TIMEOUT_SECONDS})",
                "info",
            )
            return
        self.config.timeout_seconds = float(seconds)
        self._persist(host)
        host.notify(f"Critic timeout set to {seconds}s", "info")

    async def set_max_reviews(self, args: str, host: HostContext) -> None:
        try:
            self.config.max_reviews_per_prompt = parse_max_reviews(args)
        except ConfigError as exc:
            host.notify(
                f"{exc}. Current max reviews: {self.config.max_reviews_per_prompt}", "error"
            )
            return
        host.notify(
            f"Critic max reviews per prompt set to {self.config.max_reviews_per_prompt}", "info"
        )

    async def toggle_debug(self, args: str, host: HostContext) -> None:
        self.config.debug = not self.config.debug
        host.notify(f"Critic debug: {'ON' if self.config.debug else 'OFF'}", "info")
