"""Click CLI — wires config, providers, registry and the session controller to the terminal."""

import asyncio
import logging
import sys
from collections.abc import Mapping
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from config.config_loader import AppConfig, load_config
from chamber.agents import AgentRegistry, DuplicateAgentError, JsonAgentStore
from chamber.attachments import AttachmentCollector, AttachmentReadError
from chamber.briefs import parse_brief
from chamber.enrichment import (
    PortraitMaterializer,
    VisualSynthesizer,
    design_agent,
    fuse_agents,
    gather_intel,
    inject_intel,
)
from chamber.healthcheck import run_health_checks
from chamber.models import Agent, Session, SessionStatus
from chamber.output import (
    print_agents,
    print_consensus,
    print_intel,
    print_message,
    print_report,
    print_speaking,
    save_transcript,
)
from chamber.providers.anthropic import AnthropicProvider
from chamber.providers.base import GenerativeProvider, ProviderError
from chamber.providers.gemini import GeminiProvider
from chamber.providers.openai_provider import OpenAIProvider
from chamber.request import request_debate
from chamber.session import SessionController, SubmissionRejected

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

PROVIDER_CLASSES: dict[str, type[GenerativeProvider]] = {
    "gemini": GeminiProvider,
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _build_provider(config: AppConfig, name: str | None) -> GenerativeProvider:
    """Instantiate the named provider (default from config)."""
    name = name or config.defaults.provider
    if name not in config.models:
        raise click.ClickException(f"Unknown provider '{name}'. Configured: {', '.join(sorted(config.models))}")
    if name not in config.available_providers:
        raise click.ClickException(
            f"Provider '{name}' has no API key. Set {config.models[name].api_key_env} in .env."
        )
    model_cfg = config.models[name]
    if model_cfg.sdk not in PROVIDER_CLASSES:
        raise click.ClickException(f"Provider '{name}' uses unknown sdk '{model_cfg.sdk}'")
    try:
        return PROVIDER_CLASSES[model_cfg.sdk](model_cfg)
    except ProviderError as exc:
        raise click.ClickException(str(exc)) from exc


def _build_registry(config: AppConfig) -> AgentRegistry:
    return AgentRegistry(config.agents, JsonAgentStore(config.store_path))


def _check_provider(provider: GenerativeProvider) -> None:
    """Ping the provider; exit unless it answers or the user insists."""
    console.print("\n[bold]Checking provider...[/bold]")
    results = asyncio.run(run_health_checks({provider.name(): provider}))
    ok, err = results[provider.name()]
    if ok:
        console.print(f"  [green]OK  [/green] {provider.name()} ({provider.model_string()})\n")
        return
    short_err = err.splitlines()[0][:120] if err else "unknown error"
    console.print(f"  [red]FAIL[/red] {provider.name()}: {short_err}")
    if not click.confirm("Continue anyway?", default=False):
        sys.exit(1)


def _split(value: str | None) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()] if value else []


class _Renderer:
    """Session subscriber that prints what changed since the last record."""

    def __init__(self, agents: Mapping[str, Agent]) -> None:
        self._agents = agents
        self._status: SessionStatus | None = None
        self._speaker: str | None = None
        self._seen = 0

    def __call__(self, session: Session) -> None:
        if session.status is not self._status:
            self._status = session.status
            if session.status is SessionStatus.PREPARING:
                console.print("[dim]Convening the council...[/dim]")
            elif session.status is SessionStatus.CONCLUDING:
                console.print("[dim]Compressing the synthesis...[/dim]")

        if len(session.messages) < self._seen:
            self._seen = 0
        for message in session.messages[self._seen:]:
            if not message.from_user:
                print_message(message, self._agents)
        self._seen = len(session.messages)

        if session.active_speaker and session.active_speaker != self._speaker:
            print_speaking(session.active_speaker, self._agents)
        self._speaker = session.active_speaker


async def _run_session(
    config: AppConfig,
    provider: GenerativeProvider,
    registry: AgentRegistry,
    topic: str,
    attach_paths: list[Path],
    participants: list[str],
    intel: str,
    fast: bool,
    want_visual: bool,
    want_portraits: bool,
    follow_up: bool,
    output_dir: Path,
) -> Path | None:
    """Run one session (plus follow-ups) and return the saved transcript path."""
    collector = AttachmentCollector()

    async def requester(request):
        return await request_debate(provider, request)

    controller = SessionController(
        registry,
        requester,
        config.prompts,
        participants=participants,
        collector=collector,
        concluding_dwell=config.playback.concluding_dwell_ms / 1000,
        time_scale=0.0 if fast else config.playback.time_scale,
    )

    for path in attach_paths:
        try:
            controller.add_attachment(await collector.ingest(path))
        except AttachmentReadError as exc:
            console.print(f"[yellow]Skipping attachment:[/yellow] {exc}")

    controller.set_topic(inject_intel(topic, intel) if intel else topic)

    agents = {a.id: a for a in registry.agents()}
    controller.subscribe(_Renderer(agents))
    image_dir = output_dir / "images"

    portrait_tasks: list[asyncio.Task] = []
    if want_portraits:
        materializer = PortraitMaterializer(provider, registry, image_dir, config.prompts)
        portrait_tasks = [
            asyncio.create_task(materializer.materialize(a.id))
            for a in controller.participating_agents()
            if not a.portrait
        ]

    names = ", ".join(a.name for a in controller.participating_agents())
    console.print(f"\n[bold cyan]Council Chamber[/bold cyan] — {provider.name()} ({provider.model_string()})")
    console.print(f"Council: {escape(names)}")
    if controller.attachments:
        console.print(f"Attachments: {', '.join(a.name for a in controller.attachments)}")
    console.print(f"Topic: [italic]{escape(topic[:80])}{'...' if len(topic) > 80 else ''}[/italic]\n")

    try:
        session = await controller.submit()
    except SubmissionRejected as exc:
        console.print(f"[bold yellow]Rejected:[/bold yellow] {exc}")
        for task in portrait_tasks:
            task.cancel()
        return None

    while session.status is SessionStatus.FINISHED:
        print_consensus(session)
        if session.report is not None and session.rounds == 1:
            print_report(session.report)
        if not follow_up:
            break
        # Off the loop thread: portrait tasks are still running.
        text = await asyncio.to_thread(
            click.prompt, "\nFollow-up (blank to finish)", default="", show_default=False
        )
        if not text.strip():
            break
        try:
            session = await controller.send_follow_up(text)
        except SubmissionRejected as exc:
            console.print(f"[bold yellow]Rejected:[/bold yellow] {exc}")
            break

    if session.status is SessionStatus.ERROR:
        console.print(f"[bold red]Session error:[/bold red] {escape(session.error_message or '')}")

    if want_visual and session.status is not SessionStatus.ERROR:
        synthesizer = VisualSynthesizer(
            provider, controller, image_dir, config.prompts, config.playback.visual_history_limit
        )
        try:
            visual = await synthesizer.synthesize()
        except SubmissionRejected as exc:
            console.print(f"[yellow]{exc}[/yellow]")
            visual = None
        if visual:
            console.print(f"[dim]Visual saved to: {visual}[/dim]")
        else:
            console.print("[yellow]Visual synthesis failed.[/yellow]")

    if portrait_tasks:
        for portrait in await asyncio.gather(*portrait_tasks):
            if portrait:
                console.print(f"[dim]Portrait saved to: {portrait}[/dim]")

    saved = save_transcript(controller.session, agents, output_dir)
    console.print(f"\n[dim]Saved to: {saved}[/dim]")
    if controller.session.status is SessionStatus.ERROR:
        controller.acknowledge()
    return saved


@click.group()
@click.option("--settings", "settings_path", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Alternative settings.yaml")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.pass_context
def main(ctx: click.Context, settings_path: str | None, verbose: bool) -> None:
    """Council Chamber -- a council of AI personas debates your topic.

    \b
    Examples:
      council debate "Should we rewrite the billing service?"
      council debate --file brief.md --attach diagram.png --fast
      council agents create "a cynical venture capitalist"
      council intel "lithium supply chain 2025"
    """
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        ctx.obj = load_config(Path(settings_path)) if settings_path else load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)


@main.command()
@click.argument("topic", required=False)
@click.option("--file", "brief_file", type=click.Path(exists=True, dir_okay=False), help="Read topic from a .md brief")
@click.option("--attach", "attach", multiple=True, type=click.Path(), help="Attach a file (repeatable)")
@click.option("--agents", "agents_arg", default=None, help="Comma-separated agent ids (default: from config)")
@click.option("--intel", default=None, help="Extra intel appended to the topic")
@click.option("--provider", "provider_name", default=None, help="Which backend runs the council")
@click.option("--fast", is_flag=True, help="Skip the playback delays")
@click.option("--visual", is_flag=True, help="Generate a session visual at the end")
@click.option("--portraits", is_flag=True, help="Generate portraits for agents that lack one")
@click.option("--no-follow-up", "no_follow_up", is_flag=True, help="Do not prompt for follow-up messages")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--skip-health-check", is_flag=True, default=False, help="Skip the API connectivity check")
@click.pass_obj
def debate(
    config: AppConfig,
    topic: str | None,
    brief_file: str | None,
    attach: tuple[str, ...],
    agents_arg: str | None,
    intel: str | None,
    provider_name: str | None,
    fast: bool,
    visual: bool,
    portraits: bool,
    no_follow_up: bool,
    output_path: str | None,
    skip_health_check: bool,
) -> None:
    """Convene the council on TOPIC."""
    attach_paths = [Path(p) for p in attach]
    participants: list[str] = []
    brief_intel = ""

    if brief_file:
        brief = parse_brief(Path(brief_file))
        topic = topic or brief.topic
        participants = brief.participants
        attach_paths = brief.attachments + attach_paths
        brief_intel = brief.intel

    # CLI flags win; brief fills in; config is the fallback
    participants = _split(agents_arg) or participants or list(config.defaults.participants)
    effective_intel = "\n\n".join(i for i in (brief_intel, intel or "") if i)

    if not (topic or "").strip() and not attach_paths:
        console.print("[bold red]Error:[/bold red] Provide a TOPIC argument, --file, or --attach.")
        sys.exit(1)

    provider = _build_provider(config, provider_name)
    if not skip_health_check:
        _check_provider(provider)

    registry = _build_registry(config)
    unknown = [p for p in participants if p not in registry]
    if unknown:
        console.print(f"[yellow]Unknown agents ignored:[/yellow] {', '.join(unknown)}")

    saved = asyncio.run(
        _run_session(
            config=config,
            provider=provider,
            registry=registry,
            topic=topic or "",
            attach_paths=attach_paths,
            participants=[p for p in participants if p in registry],
            intel=effective_intel,
            fast=fast,
            want_visual=visual,
            want_portraits=portraits,
            follow_up=not no_follow_up,
            output_dir=Path(output_path) if output_path else config.defaults.output_dir,
        )
    )
    if saved is None:
        sys.exit(1)


@main.group()
def agents() -> None:
    """Manage the council roster."""


@agents.command("list")
@click.pass_obj
def list_agents(config: AppConfig) -> None:
    """Show built-in and custom agents (* marks default participants)."""
    registry = _build_registry(config)
    print_agents(registry.agents(), config.defaults.participants)


@agents.command("create")
@click.argument("description")
@click.option("--provider", "provider_name", default=None, help="Which backend designs the agent")
@click.pass_obj
def create_agent(config: AppConfig, description: str, provider_name: str | None) -> None:
    """Design a custom agent from DESCRIPTION and add it to the roster."""
    provider = _build_provider(config, provider_name)
    registry = _build_registry(config)
    try:
        agent = asyncio.run(design_agent(provider, description, registry=registry, prompts=config.prompts))
        registry.add(agent)
    except (ProviderError, DuplicateAgentError) as exc:
        console.print(f"[bold red]Agent design failed:[/bold red] {escape(str(exc))}")
        sys.exit(1)
    console.print(f"[green]Added[/green] {agent.id}: {escape(agent.name)} ({escape(agent.full_name)})")
    console.print(f"[dim]{escape(agent.personality)}[/dim]")


@agents.command("fuse")
@click.argument("bases", nargs=-1, required=True)
@click.option("--provider", "provider_name", default=None, help="Which backend designs the agent")
@click.pass_obj
def fuse(config: AppConfig, bases: tuple[str, ...], provider_name: str | None) -> None:
    """Synthesize a hybrid agent from up to three BASES."""
    if len(bases) > 3:
        raise click.BadParameter("At most three bases can be fused", param_hint="BASES")
    provider = _build_provider(config, provider_name)
    registry = _build_registry(config)
    try:
        agent = asyncio.run(fuse_agents(provider, list(bases), registry=registry, prompts=config.prompts))
        registry.add(agent)
    except (ProviderError, DuplicateAgentError) as exc:
        console.print(f"[bold red]Fusion failed:[/bold red] {escape(str(exc))}")
        sys.exit(1)
    console.print(f"[green]Added[/green] {agent.id}: {escape(agent.name)} ({escape(agent.full_name)})")


@agents.command("remove")
@click.argument("agent_id")
@click.pass_obj
def remove_agent(config: AppConfig, agent_id: str) -> None:
    """Remove a custom agent. Built-ins stay."""
    registry = _build_registry(config)
    if registry.remove(agent_id):
        console.print(f"[green]Removed[/green] {agent_id}")
    else:
        console.print(f"[yellow]Not removed:[/yellow] {agent_id} is unknown, built-in, or the last agent")
        sys.exit(1)


@agents.command("portrait")
@click.argument("agent_id")
@click.option("--provider", "provider_name", default=None, help="Which backend paints the portrait")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.pass_obj
def portrait(config: AppConfig, agent_id: str, provider_name: str | None, output_path: str | None) -> None:
    """Generate a portrait for AGENT_ID."""
    provider = _build_provider(config, provider_name)
    registry = _build_registry(config)
    output_dir = Path(output_path) if output_path else config.defaults.output_dir
    materializer = PortraitMaterializer(provider, registry, output_dir / "images", config.prompts)
    handle = asyncio.run(materializer.materialize(agent_id))
    if handle is None:
        console.print(f"[yellow]No portrait for {agent_id}.[/yellow] See the log for details.")
        sys.exit(1)
    console.print(f"Portrait: {handle}")


@main.command()
@click.argument("query")
@click.option("--maps", is_flag=True, help="Ground on maps instead of web search")
@click.option("--provider", "provider_name", default=None, help="Which backend searches")
@click.pass_obj
def intel(config: AppConfig, query: str, maps: bool, provider_name: str | None) -> None:
    """Gather grounded intel on QUERY (pass it to `debate --intel`)."""
    provider = _build_provider(config, provider_name)
    try:
        report = asyncio.run(gather_intel(provider, query, prompts=config.prompts, maps=maps))
    except ProviderError as exc:
        console.print(f"[bold red]Intel lookup failed:[/bold red] {escape(str(exc))}")
        sys.exit(1)
    print_intel(report)


if __name__ == "__main__":
    main()
