"""Rich console output and markdown transcript export for council sessions."""

import logging
import re
from collections.abc import Iterable, Mapping
from datetime import datetime
from pathlib import Path

from rich.color import Color, ColorParseError
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from chamber.models import Agent, EnrichmentReport, IntelReport, Message, Session

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def slugify(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _style(color: str) -> str:
    """Agent colors come from config or a model; fall back when rich can't parse them."""
    try:
        Color.parse(color)
    except ColorParseError:
        return "white"
    return color


def speaker_name(agent_id: str, agents: Mapping[str, Agent]) -> str:
    if agent_id == "user":
        return "You"
    agent = agents.get(agent_id)
    return agent.name if agent else agent_id


def _neural_caption(message: Message, agents: Mapping[str, Agent]) -> str:
    state = message.neural_state
    if state is None:
        return ""
    parts = [state.connection_type]
    if state.target_id:
        parts.append(f"-> {speaker_name(state.target_id, agents)}")
    parts.append(f"intensity {state.intensity}")
    if state.status_text:
        parts.append(state.status_text)
    return " | ".join(parts)


def print_speaking(agent_id: str, agents: Mapping[str, Agent]) -> None:
    console.print(Text(f"{speaker_name(agent_id, agents)} is speaking...", style="dim italic"))


def print_message(message: Message, agents: Mapping[str, Agent]) -> None:
    """Print one turn as a panel, with its neural state as subtitle.

    Turn text comes from a model, so it is rendered as plain Text and never
    parsed as rich markup.
    """
    agent = agents.get(message.agent_id)
    if message.from_user:
        console.print(Panel(Text(message.content), title="[bold]You[/bold]", border_style="bright_white"))
        return

    title = f"[bold]{escape(speaker_name(message.agent_id, agents))}[/bold]"
    if agent is not None and agent.full_name != agent.name:
        title += f" ({escape(agent.full_name)})"
    if message.rating is not None:
        title += f" [dim]rating {message.rating:g}[/dim]"

    body = Text(message.content)
    if message.neural_state and message.neural_state.memory_link_text:
        body.append(f"\n\nrecalls: {message.neural_state.memory_link_text}", style="dim")
    for artifact in message.artifacts:
        body.append(f"\nfound: {artifact.title} ({artifact.size}, {artifact.safety_status})", style="dim")
    for link in message.links:
        body.append(f"\n{link}", style="dim")

    console.print(
        Panel(
            body,
            title=title,
            subtitle=escape(_neural_caption(message, agents)),
            border_style=_style(agent.color) if agent and agent.color else "dim",
        )
    )


def print_consensus(session: Session) -> None:
    console.print(Rule("[bold green]Council Synthesis[/bold green]"))
    console.print(Markdown(session.consensus or "_No consensus reached._"))


def print_report(report: EnrichmentReport) -> None:
    """Print the hidden observer report."""
    console.print(Rule("[bold green]Observer Report[/bold green]", style="green"))
    if report.observations:
        console.print("[bold]Observed behaviour[/bold]")
        for item in report.observations:
            console.print(Text(f"  - {item}"))
    if report.suggested_improvements:
        console.print("[bold]Proposed upgrades[/bold]")
        for item in report.suggested_improvements:
            console.print(Text(f"  - {item}"))
    for snippet in report.snippets:
        console.print(Panel(Text(snippet), border_style="green", title="refinement"))
    if report.narrative:
        console.print(Markdown(report.narrative))


def print_agents(agents: Iterable[Agent], participants: Iterable[str] = ()) -> None:
    selected = set(participants)
    table = Table(title="Council roster")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Title")
    table.add_column("Kind", style="dim")
    table.add_column("Portrait", style="dim")
    for agent in agents:
        marker = "* " if agent.id in selected else ""
        table.add_row(
            f"{marker}{agent.id}",
            Text(agent.name, style=_style(agent.color) if agent.color else ""),
            Text(agent.full_name),
            "built-in" if agent.builtin else "custom",
            Text(agent.portrait or ""),
        )
    console.print(table)


def print_intel(report: IntelReport) -> None:
    console.print(Rule(f"[bold cyan]Intel: {escape(report.query[:60])}[/bold cyan]"))
    console.print(Markdown(report.text))
    for link in report.links:
        console.print(Text(link, style="dim"))


def save_transcript(
    session: Session,
    agents: Mapping[str, Agent],
    output_dir: Path,
    slug_override: str | None = None,
) -> Path:
    """Save the session transcript as a markdown file.

    Args:
        session: The session to export (usually finished).
        agents: Agent lookup by id, for display names.
        output_dir: Directory to save the file in.
        slug_override: If provided, use this as the filename stem instead of
            deriving one from the topic.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else slugify(session.topic.splitlines()[0] if session.topic else "session")
    filepath = output_dir / f"{timestamp}_{slug}.md"

    speakers = sorted({m.agent_id for m in session.messages if not m.from_user})
    lines: list[str] = [
        f"# Council Session: {session.topic.splitlines()[0][:80] if session.topic else '(attachments only)'}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Council:** {', '.join(speaker_name(s, agents) for s in speakers)}",
        f"**Rounds:** {session.rounds}",
        f"**Status:** {session.status.value}",
    ]
    if session.attachments:
        lines.append(f"**Attachments:** {', '.join(a.name for a in session.attachments)}")
    lines += ["", "---", "", "## Discussion", ""]

    for msg in session.messages:
        lines.append(f"### {speaker_name(msg.agent_id, agents)}")
        lines.append("")
        lines.append(msg.content)
        lines.append("")
        if msg.neural_state is not None:
            state = msg.neural_state
            target = f" -> {speaker_name(state.target_id, agents)}" if state.target_id else ""
            lines.append(f"*{state.connection_type}{target} | intensity {state.intensity} | {state.status_text}*")
            lines.append("")
        for link in msg.links:
            lines.append(f"- <{link}>")
        if msg.links:
            lines.append("")

    lines += ["## Synthesis", "", session.consensus or "_No consensus reached._", ""]

    if session.report is not None:
        lines += ["## Observer Report", ""]
        lines += [f"- {o}" for o in session.report.observations]
        if session.report.suggested_improvements:
            lines += ["", "**Proposed upgrades**", ""]
            lines += [f"- {s}" for s in session.report.suggested_improvements]
        for snippet in session.report.snippets:
            lines += ["", "```", snippet, "```"]
        lines += ["", session.report.narrative, ""]

    if session.visuals:
        lines += ["## Visuals", ""]
        lines += [f"![visual]({v})" for v in session.visuals]
        lines.append("")

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Transcript saved to: %s", filepath)
    return filepath
