from __future__ import annotations

import json
import tempfile
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

TriggerMode = Literal["turn_end", "tool_result", "agent_end", "visual"]
ContextMode = Literal["full", "messages", "results_only"]

TRIGGER_MODES: tuple[str, ...] = ("turn_end", "tool_result", "agent_end", "visual")
CONTEXT_MODES: tuple[str, ...] = ("full", "messages", "results_only")
DEFAULT_TRIGGER_TOOLS: tuple[str, ...] = ("write", "edit", "bash")
MIN_TIMEOUT_SECONDS = 5
MAX_TIMEOUT_SECONDS = 300
STATE_ENTRY_TYPE = "critic-state"

DEFAULT_CRITIC_PROMPT = """
You are a code review critic. Your job is to evaluate the agent's work and provide constructive feedback.

IMPORTANT: Do NOT use any tools. You will be given all the context you need in the user message. Just respond with your review directly.

Review the agent's recent actions and output. Consider:
- Is the approach correct and efficient?
- Are there any bugs, edge cases, or potential issues?
- Is the code clean, readable, and well-structured?
- Are there better alternatives?

## Response Format

You MUST end your response with a verdict block in this exact format:

<critic_verdict>
status: APPROVED | NEEDS_WORK | BLOCKED
</critic_verdict>

Use:
- APPROVED: Work is correct and complete, no issues found
- NEEDS_WORK: Minor issues or suggestions that the agent should address
- BLOCKED: Critical issues that must be fixed before proceeding

Your review text comes BEFORE the verdict block. Keep it concise and actionable.
""".strip()


class ConfigError(ValueError):
    """Raised when a configuration value is malformed or out of range."""


@dataclass(slots=True)
class ReviewConfiguration:
    enabled: bool = False
    model: str | None = None
    system_prompt: str = DEFAULT_CRITIC_PROMPT
    trigger_mode: TriggerMode = "turn_end"
    trigger_tools: list[str] = field(default_factory=lambda: list(DEFAULT_TRIGGER_TOOLS))
    timeout_seconds: float = 60.0
    max_reviews_per_prompt: int = 3
    context_mode: ContextMode = "messages"
    max_context_messages: int = 10
    debug: bool = False

    def snapshot(self) -> dict[str, Any]:
        """Session-log payload for a ``critic-state`` entry."""
        return {
            "enabled": self.enabled,
            "model": self.model,
            "systemPrompt": self.system_prompt,
            "triggerMode": self.trigger_mode,
            "triggerTools": list(self.trigger_tools),
            "timeoutMs": int(round(self.timeout_seconds * 1000)),
            "contextMode": self.context_mode,
        }

    def apply_snapshot(self, data: Mapping[str, Any]) -> None:
        """Replay a persisted ``critic-state`` payload, skipping malformed fields."""
        enabled = data.get("enabled")
        if isinstance(enabled, bool):
            self.enabled = enabled
        model = data.get("model")
        if isinstance(model, str) and model.strip():
            self.model = model.strip()
        prompt = data.get("systemPrompt")
        if isinstance(prompt, str) and prompt.strip():
            self.system_prompt = prompt
        trigger_mode = data.get("triggerMode")
        if trigger_mode in TRIGGER_MODES:
            self.trigger_mode = trigger_mode
        tools = data.get("triggerTools")
        if isinstance(tools, list):
            self.trigger_tools = [str(tool) for tool in tools if str(tool).strip()]
        timeout_ms = data.get("timeoutMs")
        if isinstance(timeout_ms, (int, float)) and not isinstance(timeout_ms, bool):
            if MIN_TIMEOUT_SECONDS * 1000 <= timeout_ms <= MAX_TIMEOUT_SECONDS * 1000:
                self.timeout_seconds = float(timeout_ms) / 1000.0
        context_mode = data.get("contextMode")
        if context_mode in CONTEXT_MODES:
            self.context_mode = context_mode

    def apply_flags(self, flags: Mapping[str, Any]) -> list[str]:
        """Apply host CLI flags; returns warnings for values that were ignored."""
        warnings: list[str] = []
        if flags.get("critic") is True:
            self.enabled = True
        if flags.get("critic-debug") is True:
            self.debug = True

        trigger_flag = flags.get("critic-trigger")
        if trigger_flag not in (None, ""):
            try:
                self.trigger_mode = parse_trigger_mode(str(trigger_flag))
            except ConfigError as exc:
                warnings.append(str(exc))

        model_flag = flags.get("critic-model")
        if isinstance(model_flag, str) and model_flag.strip():
            self.model = model_flag.strip()

        prompt_flag = flags.get("critic-prompt")
        if isinstance(prompt_flag, str) and prompt_flag.strip():
            self.system_prompt = prompt_flag

        max_reviews_flag = flags.get("critic-max-reviews")
        if max_reviews_flag not in (None, ""):
            try:
                self.max_reviews_per_prompt = parse_max_reviews(max_reviews_flag)
            except ConfigError as exc:
                warnings.append(str(exc))
        return warnings

    def validate(self) -> None:
        """Normalise values loaded from a config file; raises ConfigError on the first bad one."""
        for name in ("enabled", "debug"):
            if not isinstance(getattr(self, name), bool):
                raise ConfigError(f"{name} must be true or false, got '{getattr(self, name)}'")
        if self.model is not None and not isinstance(self.model, str):
            raise ConfigError(f"model must be a string, got '{self.model}'")
        if not isinstance(self.system_prompt, str) or not self.system_prompt.strip():
            raise ConfigError("system_prompt cannot be empty")
        if not isinstance(self.trigger_tools, list) or not all(
            isinstance(tool, str) for tool in self.trigger_tools
        ):
            raise ConfigError("trigger_tools must be a list of tool names")
        self.trigger_mode = parse_trigger_mode(str(self.trigger_mode))
        self.context_mode = parse_context_mode(str(self.context_mode))
        self.timeout_seconds = check_timeout_seconds(self.timeout_seconds)
        self.max_reviews_per_prompt = parse_max_reviews(self.max_reviews_per_prompt)
        window = self.max_context_messages
        if isinstance(window, bool) or not isinstance(window, int) or window <= 0:
            raise ConfigError(f"max_context_messages must be a positive integer, got '{window}'")


def _default_log_file() -> str:
    return str(Path(tempfile.gettempdir()) / "shadow-critic.log")


@dataclass(slots=True)
class ProcessConfig:
    agent_command: list[str] = field(default_factory=lambda: ["pi"])
    kill_grace_seconds: float = 3.0
    log_file: str = field(default_factory=_default_log_file)

    def validate(self) -> None:
        command = self.agent_command
        if (
            not isinstance(command, list)
            or not command
            or not all(isinstance(part, str) and part for part in command)
        ):
            raise ConfigError("agent_command must be a non-empty list of strings")
        grace = self.kill_grace_seconds
        if isinstance(grace, bool) or not isinstance(grace, (int, float)) or grace < 0:
            raise ConfigError(f"kill_grace_seconds must be a non-negative number, got '{grace}'")
        self.kill_grace_seconds = float(grace)
        if not isinstance(self.log_file, str) or not self.log_file:
            raise ConfigError("log_file must be a path")


@dataclass(slots=True)
class CriticConfig:
    review: ReviewConfiguration = field(default_factory=ReviewConfiguration)
    process: ProcessConfig = field(default_factory=ProcessConfig)

    @classmethod
    def default(cls) -> CriticConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> CriticConfig:
        config = cls(
            review=ReviewConfiguration(**data.get("review", {})),
            process=ProcessConfig(**data.get("process", {})),
        )
        config.review.validate()
        config.process.validate()
        return config

    def to_dict(self) -> dict:
        review: dict[str, Any] = {
            "enabled": self.review.enabled,
            "system_prompt": self.review.system_prompt,
            "trigger_mode": self.review.trigger_mode,
            "trigger_tools": list(self.review.trigger_tools),
            "timeout_seconds": self.review.timeout_seconds,
            "max_reviews_per_prompt": self.review.max_reviews_per_prompt,
            "context_mode": self.review.context_mode,
            "max_context_messages": self.review.max_context_messages,
            "debug": self.review.debug,
        }
        # TOML has no null; an unset model is simply omitted.
        if self.review.model:
            review["model"] = self.review.model
        return {
            "review": review,
            "process": {
                "agent_command": list(self.process.agent_command),
                "kill_grace_seconds": self.process.kill_grace_seconds,
                "log_file": self.process.log_file,
            },
        }


def parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Expected a boolean value, got '{value}'")


def parse_trigger_mode(value: str) -> TriggerMode:
    normalized = value.strip().lower()
    if normalized not in TRIGGER_MODES:
        raise ConfigError(
            f"Unknown trigger mode '{value}' (expected one of: {', '.join(TRIGGER_MODES)})"
        )
    return normalized  # type: ignore[return-value]


def parse_context_mode(value: str) -> ContextMode:
    normalized = value.strip().lower()
    if normalized not in CONTEXT_MODES:
        raise ConfigError(
            f"Unknown context mode '{value}' (expected one of: {', '.join(CONTEXT_MODES)})"
        )
    return normalized  # type: ignore[return-value]


def parse_timeout_seconds(value: object) -> int:
    try:
        seconds = int(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"Timeout must be a whole number of seconds, got '{value}'") from exc
    if seconds < MIN_TIMEOUT_SECONDS or seconds > MAX_TIMEOUT_SECONDS:
        raise ConfigError(
            f"Timeout {seconds}s is outside the valid range "
            f"({MIN_TIMEOUT_SECONDS}-{MAX_TIMEOUT_SECONDS})"
        )
    return seconds


def check_timeout_seconds(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Timeout must be a number of seconds, got '{value}'")
    if value < MIN_TIMEOUT_SECONDS or value > MAX_TIMEOUT_SECONDS:
        raise ConfigError(
            f"Timeout {value:g}s is outside the valid range "
            f"({MIN_TIMEOUT_SECONDS}-{MAX_TIMEOUT_SECONDS})"
        )
    return float(value)


def parse_max_reviews(value: object) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Max reviews must be a positive integer, got '{value}'")
    try:
        count = int(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"Max reviews must be a positive integer, got '{value}'") from exc
    if count <= 0:
        raise ConfigError(f"Max reviews must be a positive integer, got '{value}'")
    return count


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: CriticConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("review", "process"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> CriticConfig:
    if not path.exists():
        return CriticConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
        return CriticConfig.from_dict(data)
    except (tomllib.TOMLDecodeError, TypeError, ConfigError) as exc:
        raise ConfigError(f"Invalid critic config {path}: {exc}") from exc


def save_config(path: Path, config: CriticConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
