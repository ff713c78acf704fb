from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any

from shadow_critic.config import ContextMode

TOOL_ARGUMENT_PREVIEW = 200
TOOL_RESULT_PREVIEW = 500
IMAGE_PATH_PATTERN = re.compile(
    r"(?<![\w.~])/[^\s\"'<>]+?\.(?:png|jpe?g|gif|webp)\b", re.IGNORECASE
)


def content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for block in content:
        if isinstance(block, Mapping) and block.get("type") == "text":
            text = block.get("text")
            if isinstance(text, str):
                parts.append(text)
    return "\n".join(parts)


def safe_json(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return repr(value)


def _format_assistant(message: Mapping[str, Any], include_thinking: bool) -> list[str]:
    content = message.get("content")
    if not isinstance(content, list):
        text = content if isinstance(content, str) else ""
        return [f"ASSISTANT: {text}"] if text else []

    parts: list[str] = []
    if include_thinking:
        for block in content:
            if isinstance(block, Mapping) and block.get("type") == "thinking":
                thinking = block.get("thinking")
                if isinstance(thinking, str) and thinking:
                    parts.append(f"THINKING: {thinking}")

    for block in content:
        if isinstance(block, Mapping) and block.get("type") == "toolCall":
            name = block.get("name") or "unknown"
            arguments = safe_json(block.get("arguments", {}))[:TOOL_ARGUMENT_PREVIEW]
            parts.append(f"TOOL CALL: {name}({arguments}...)")

    text = content_text(content)
    if text:
        parts.append(f"ASSISTANT: {text}")
    return parts


def _format_tool_result(message: Mapping[str, Any]) -> str:
    tool_name = message.get("toolName")
    details = message.get("details")
    diff = details.get("diff") if isinstance(details, Mapping) else None
    if tool_name == "edit" and isinstance(diff, str) and diff:
        return f"TOOL RESULT (edit) - DIFF:\n{diff}"

    content = content_text(message.get("content"))
    preview = content
    if len(content) > TOOL_RESULT_PREVIEW:
        preview = content[:TOOL_RESULT_PREVIEW] + "..."
    return f"TOOL RESULT ({tool_name or 'unknown'}): {preview}"


def format_recent_context(
    messages: Sequence[Any],
    mode: ContextMode,
    max_messages: int = 10,
) -> str:
    """Render the tail of a conversation for the reviewer.

    ``results_only`` keeps only the most recent entry; ``messages`` keeps the
    last ``max_messages`` entries without reasoning; ``full`` adds reasoning
    segments. Entries that are not recognisable messages are skipped.
    """
    if mode == "results_only":
        selected = list(messages[-1:])
    else:
        selected = list(messages[-max_messages:]) if max_messages > 0 else []

    parts: list[str] = []
    for message in selected:
        if not isinstance(message, Mapping):
            continue
        role = message.get("role")
        if role == "user":
            parts.append(f"USER: {content_text(message.get('content'))}")
        elif role == "assistant":
            parts.extend(_format_assistant(message, include_thinking=mode == "full"))
        elif role == "toolResult":
            parts.append(_format_tool_result(message))
    return "\n\n".join(parts)


def branch_messages(entries: Iterable[Any]) -> list[dict[str, Any]]:
    """Extract message payloads from host session branch entries."""
    messages: list[dict[str, Any]] = []
    for entry in entries:
        if not isinstance(entry, Mapping) or entry.get("type") != "message":
            continue
        message = entry.get("message")
        if isinstance(message, dict):
            messages.append(message)
    return messages


def format_tool_invocation(tool_name: str, tool_input: Any, content: Any) -> str:
    return f"Tool: {tool_name}\nInput: {safe_json(tool_input)}\nResult:\n{content_text(content)}"


def extract_image_paths(text: str) -> list[str]:
    """Absolute image paths mentioned in ``text`` that exist on disk."""
    seen: list[str] = []
    for match in IMAGE_PATH_PATTERN.finditer(text):
        candidate = match.group(0)
        if candidate in seen:
            continue
        try:
            exists = Path(candidate).is_file()
        except OSError:
            continue
        if exists:
            seen.append(candidate)
    return seen
