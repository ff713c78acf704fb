from __future__ import annotations

import click

from shadow_critic.backends.base import ReviewOutcome

BORDER_WIDTH = 60


def _status_style(outcome: ReviewOutcome) -> tuple[str, str]:
    if outcome.failed:
        return "red", "✗"
    if outcome.status == "APPROVED":
        return "green", "✓"
    if outcome.status == "BLOCKED":
        return "red", "⛔"
    return "yellow", "⚠"


def format_stats(outcome: ReviewOutcome) -> str:
    parts: list[str] = []
    if outcome.usage is not None:
        parts.append(
            f"↑{outcome.usage.input_tokens} ↓{outcome.usage.output_tokens} "
            f"${outcome.usage.cost:.4f}"
        )
    if outcome.duration_ms:
        parts.append(f"{outcome.duration_ms / 1000:.1f}s")
    return " · ".join(parts)


def render_review(
    outcome: ReviewOutcome,
    context: str | None = None,
    *,
    expanded: bool = False,
) -> str:
    """Render a review outcome as a bordered, status-coloured terminal block."""
    color, icon = _status_style(outcome)
    border = click.style("─" * BORDER_WIDTH, fg=color)

    header = f"{click.style(icon, fg=color)} {click.style('Critic Review', fg=color, bold=True)}"
    if outcome.model:
        header += " " + click.style(f"({outcome.model})", dim=True)
    if outcome.timed_out:
        header += " " + click.style("[TIMEOUT]", fg="red")

    lines = [border, header]
    if outcome.failed:
        lines.append(click.style(f"Error: {outcome.error}", fg="red"))
    # Placeholders such as "(Critic timed out)" are already covered by the header.
    if outcome.critique and not outcome.critique.startswith("("):
        lines.append(outcome.critique)
    stats = format_stats(outcome)
    if stats:
        lines.append(click.style(stats, dim=True))
    if expanded and context:
        lines.append("")
        lines.append(click.style("─── Context ───", dim=True))
        lines.append(click.style(context, dim=True))
    lines.append(border)
    return "\n".join(lines)
