from __future__ import annotations

import asyncio
import json
import logging
import shlex
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

import click

from shadow_critic.backends import AgentCliReviewer, JsonLineBuffer, ReviewRequest
from shadow_critic.config import (
    CONTEXT_MODES,
    ConfigError,
    CriticConfig,
    dumps_toml,
    load_config,
    parse_bool,
    parse_context_mode,
    parse_max_reviews,
    parse_timeout_seconds,
    parse_trigger_mode,
    save_config,
)
from shadow_critic.context import branch_messages, format_recent_context
from shadow_critic.render import render_review
from shadow_critic.verdict import parse_verdict

logger = logging.getLogger("shadow_critic")

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
CONFIG_KEYS = (
    "enabled",
    "model",
    "trigger",
    "tools",
    "context",
    "timeout",
    "max-reviews",
    "prompt-file",
    "agent-command",
)


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load(config_path: Path) -> CriticConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _configure_logging(log_file: str, verbose: bool) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, "_shadow_critic", False):
            logger.removeHandler(handler)
            handler.close()

    handlers: list[logging.Handler] = []
    try:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    except OSError as exc:
        click.echo(f"Warning: cannot open log file {log_file}: {exc}", err=True)
    if verbose:
        handlers.append(logging.StreamHandler(sys.stderr))

    for handler in handlers:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._shadow_critic = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def _transcript_messages(path: Path) -> list[dict[str, Any]]:
    buffer = JsonLineBuffer()
    entries = [*buffer.feed(path.read_bytes()), *buffer.flush()]
    messages = branch_messages(entries)
    if messages:
        return messages
    # Bare message-per-line transcripts.
    return [entry for entry in entries if "role" in entry]


def _apply_setting(config: CriticConfig, key: str, value: str) -> str:
    review = config.review
    if key == "enabled":
        review.enabled = parse_bool(value)
        return str(review.enabled).lower()
    if key == "model":
        review.model = value.strip() or None
        return review.model or "(primary model)"
    if key == "trigger":
        review.trigger_mode = parse_trigger_mode(value)
        return review.trigger_mode
    if key == "tools":
        review.trigger_tools = [item.strip() for item in value.split(",") if item.strip()]
        return ", ".join(review.trigger_tools)
    if key == "context":
        review.context_mode = parse_context_mode(value)
        return review.context_mode
    if key == "timeout":
        review.timeout_seconds = float(parse_timeout_seconds(value))
        return f"{review.timeout_seconds:g}s"
    if key == "max-reviews":
        review.max_reviews_per_prompt = parse_max_reviews(value)
        return str(review.max_reviews_per_prompt)
    if key == "prompt-file":
        try:
            prompt = Path(value).read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigError(f"Cannot read prompt file {value}: {exc}") from exc
        if not prompt:
            raise ConfigError(f"Prompt file {value} is empty")
        review.system_prompt = prompt
        return f"{len(prompt)} chars from {value}"
    if key == "agent-command":
        command = shlex.split(value)
        if not command:
            raise ConfigError("Agent command cannot be empty")
        config.process.agent_command = command
        return " ".join(command)
    raise ConfigError(f"Unknown config key '{key}'")


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Log debug output to stderr.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Shadow critic: isolated reviewer for coding-agent sessions."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@cli.command("init")
@click.option("--config", "config_value", default="critic.toml", show_default=True)
@click.option("--force", is_flag=True, default=False)
def init_command(config_value: str, force: bool) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    if config_path.exists() and not force:
        raise click.ClickException(f"Config already exists: {config_path} (use --force)")
    save_config(config_path, CriticConfig.default())
    click.echo(f"Wrote default critic config to {config_path}")


@cli.group("config")
def config_group() -> None:
    """Inspect or change the critic configuration."""


@config_group.command("show")
@click.option("--config", "config_value", default="critic.toml", show_default=True)
def config_show_command(config_value: str) -> None:
    config_path = _resolve_config_path(Path.cwd().resolve(), config_value)
    click.echo(dumps_toml(_load(config_path)), nl=False)


@config_group.command("set")
@click.argument("key", type=click.Choice(CONFIG_KEYS))
@click.argument("value")
@click.option("--config", "config_value", default="critic.toml", show_default=True)
def config_set_command(key: str, value: str, config_value: str) -> None:
    config_path = _resolve_config_path(Path.cwd().resolve(), config_value)
    config = _load(config_path)
    try:
        rendered = _apply_setting(config, key, value)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    save_config(config_path, config)
    click.echo(f"{key} = {rendered}")


@cli.command("review")
@click.argument("transcript", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--config", "config_value", default="critic.toml", show_default=True)
@click.option("--mode", "context_mode", type=click.Choice(CONTEXT_MODES), default=None)
@click.option("--model", default=None, help="'<provider> <model-id>' or a bare model id.")
@click.option("--timeout", "timeout_value", default=None, help="Seconds (5-300).")
@click.option(
    "--image",
    "images",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option("--expanded", is_flag=True, default=False, help="Show the context sent.")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--fail-on-reject", is_flag=True, default=False)
@click.pass_context
def review_command(
    ctx: click.Context,
    transcript: Path,
    config_value: str,
    context_mode: str | None,
    model: str | None,
    timeout_value: str | None,
    images: tuple[Path, ...],
    expanded: bool,
    as_json: bool,
    fail_on_reject: bool,
) -> None:
    """Run one critic review over a JSONL session transcript."""
    repo_root = Path.cwd().resolve()
    config = _load(_resolve_config_path(repo_root, config_value))
    review = config.review
    try:
        if context_mode:
            review.context_mode = parse_context_mode(context_mode)
        if timeout_value is not None:
            review.timeout_seconds = float(parse_timeout_seconds(timeout_value))
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if model:
        review.model = model.strip()

    _configure_logging(config.process.log_file, bool(ctx.obj and ctx.obj.get("verbose")))

    context = format_recent_context(
        _transcript_messages(transcript),
        review.context_mode,
        max_messages=review.max_context_messages,
    )
    if not context.strip():
        raise click.ClickException(f"No conversation messages found in {transcript}")

    reviewer = AgentCliReviewer(
        config.process.agent_command,
        kill_grace_seconds=config.process.kill_grace_seconds,
        event_hook=lambda event: logger.debug("reviewer event: %s", event),
    )
    request = ReviewRequest(
        cwd=repo_root,
        system_prompt=review.system_prompt,
        context=context,
        model=review.model,
        timeout_seconds=review.timeout_seconds,
        image_paths=tuple(str(path.resolve()) for path in images),
    )
    outcome = asyncio.run(reviewer.review(request))

    if as_json:
        click.echo(json.dumps(asdict(outcome), ensure_ascii=False, indent=2))
    else:
        click.echo(render_review(outcome, context, expanded=expanded))

    if outcome.failed:
        ctx.exit(2)
    if fail_on_reject and not outcome.approved:
        ctx.exit(1)


@cli.command("verdict")
@click.argument("source", type=click.File("r", encoding="utf-8"), default="-")
def verdict_command(source: Any) -> None:
    """Parse a critic verdict block from FILE (or stdin)."""
    verdict = parse_verdict(source.read())
    click.echo(
        json.dumps(
            {
                "status": verdict.status,
                "approved": verdict.approved,
                "marker_found": verdict.marker_found,
                "critique": verdict.critique,
            },
            ensure_ascii=False,
            indent=2,
        )
    )
