"""Tests for the click commands in chamber/cli.py — providers are mocked."""

import asyncio
import json
from pathlib import Path

import click
import pytest
import yaml
from click.testing import CliRunner

from chamber import cli
from chamber.cli import _build_provider, _split, main
from chamber.providers.base import StructuredReply

from tests.conftest import MockProvider, debate_json


class FakeGemini(MockProvider):
    """Stands in for GeminiProvider; built from a ModelConfig like the real one."""

    instances: list["FakeGemini"] = []

    def __init__(self, config) -> None:
        super().__init__("gemini", debate_json([("alpha", "Opening"), ("beta", "Rebuttal")], "Ship it."))
        FakeGemini.instances.append(self)


@pytest.fixture
def settings_file(tmp_path: Path) -> Path:
    settings = {
        "defaults": {
            "provider": "gemini",
            "output_dir": str(tmp_path / "output"),
            "data_dir": str(tmp_path / "data"),
            "participants": ["alpha", "beta"],
        },
        "playback": {"concluding_dwell_ms": 0, "time_scale": 0.0},
        "models": {
            "gemini": {
                "sdk": "gemini",
                "model": "gemini-test",
                "api_key_env": "TEST_CHAMBER_GEMINI_KEY",
                "timeout_sec": 30,
                "max_tokens": 1024,
            },
            "claude": {
                "sdk": "anthropic",
                "model": "claude-test",
                "api_key_env": "TEST_CHAMBER_CLAUDE_KEY",
                "timeout_sec": 30,
                "max_tokens": 1024,
            },
        },
        "prompts": {
            "debate": "Topic: {topic}\n{roster}\n{history}",
            "follow_up": "Topic: {topic}\n{roster}\n{history}",
            "custom_agent": "Design: {description}",
            "hybrid_agent": "Fuse: {bases}",
            "intel": "Intel: {query}",
        },
        "agents": [
            {"id": "alpha", "name": "Alpha", "personality": "Logic."},
            {"id": "beta", "name": "Beta", "personality": "Doubt."},
        ],
    }
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.dump(settings), encoding="utf-8")
    return path


@pytest.fixture
def fake_backend(monkeypatch):
    monkeypatch.setenv("TEST_CHAMBER_GEMINI_KEY", "test-key")
    monkeypatch.delenv("TEST_CHAMBER_CLAUDE_KEY", raising=False)
    monkeypatch.setitem(cli.PROVIDER_CLASSES, "gemini", FakeGemini)
    FakeGemini.instances = []
    return FakeGemini


def _invoke(settings_file: Path, *args: str, input: str | None = None):
    return CliRunner().invoke(main, ["--settings", str(settings_file), *args], input=input)


def test_split():
    assert _split("a, b,,c ") == ["a", "b", "c"]
    assert _split(None) == []


def test_build_provider_without_key(settings_file, fake_backend):
    from config.config_loader import load_config

    config = load_config(settings_file)
    with pytest.raises(click.ClickException, match="TEST_CHAMBER_CLAUDE_KEY"):
        _build_provider(config, "claude")
    with pytest.raises(click.ClickException, match="Unknown provider"):
        _build_provider(config, "nope")
    assert isinstance(_build_provider(config, None), FakeGemini)


def test_debate_runs_and_saves_transcript(settings_file, fake_backend, tmp_path: Path):
    out = tmp_path / "out"
    result = _invoke(
        settings_file, "debate", "Ship on Friday?", "--fast", "--no-follow-up", "--skip-health-check",
        "--output", str(out),
    )

    assert result.exit_code == 0, result.output
    (saved,) = out.glob("*.md")
    content = saved.read_text(encoding="utf-8")
    assert "Opening" in content
    assert "Ship it." in content
    provider = fake_backend.instances[0]
    prompt = provider.generate_structured.await_args.args[0]
    assert "Ship on Friday?" in prompt
    assert "ID: alpha" in prompt


def test_debate_with_follow_up(settings_file, fake_backend, tmp_path: Path):
    out = tmp_path / "out"
    result = _invoke(
        settings_file, "debate", "Ship on Friday?", "--fast", "--skip-health-check", "--output", str(out),
        input="And on Monday?\n\n",
    )

    assert result.exit_code == 0, result.output
    provider = fake_backend.instances[0]
    assert provider.generate_structured.await_count == 2
    content = next(out.glob("*.md")).read_text(encoding="utf-8")
    assert "And on Monday?" in content
    assert "**Rounds:** 2" in content


def test_debate_from_brief_with_intel(settings_file, fake_backend, tmp_path: Path):
    brief = tmp_path / "brief.md"
    brief.write_text("---\nparticipants: alpha, beta\nintel: Deploys failed twice.\n---\nShip on Friday?",
                     encoding="utf-8")
    result = _invoke(
        settings_file, "debate", "--file", str(brief), "--fast", "--no-follow-up", "--skip-health-check",
        "--output", str(tmp_path / "out"),
    )

    assert result.exit_code == 0, result.output
    prompt = fake_backend.instances[0].generate_structured.await_args.args[0]
    assert "[INJECTED INTEL]\nDeploys failed twice." in prompt


def test_debate_missing_attachment_is_skipped(settings_file, fake_backend, tmp_path: Path):
    result = _invoke(
        settings_file, "debate", "Topic", "--attach", str(tmp_path / "missing.png"), "--fast",
        "--no-follow-up", "--skip-health-check", "--output", str(tmp_path / "out"),
    )
    assert result.exit_code == 0, result.output
    assert "Skipping attachment" in result.output


def test_debate_without_topic_fails(settings_file, fake_backend):
    result = _invoke(settings_file, "debate", "--skip-health-check")
    assert result.exit_code == 1
    assert "Provide a TOPIC" in result.output


def test_debate_without_quorum_is_rejected(settings_file, fake_backend, tmp_path: Path):
    result = _invoke(
        settings_file, "debate", "Topic", "--agents", "alpha", "--fast", "--no-follow-up",
        "--skip-health-check", "--output", str(tmp_path / "out"),
    )
    assert result.exit_code == 1
    assert "quorum" in result.output
    fake_backend.instances[0].generate_structured.assert_not_awaited()


def test_debate_provider_failure_reports_error(settings_file, fake_backend, tmp_path: Path, monkeypatch):
    class BrokenGemini(FakeGemini):
        def __init__(self, config) -> None:
            super().__init__(config)
            self.generate_structured.side_effect = ConnectionError("network down")

    monkeypatch.setitem(cli.PROVIDER_CLASSES, "gemini", BrokenGemini)
    result = _invoke(
        settings_file, "debate", "Topic", "--fast", "--no-follow-up", "--skip-health-check",
        "--output", str(tmp_path / "out"),
    )
    assert result.exit_code == 0
    assert "network down" in result.output


def test_agents_list(settings_file, fake_backend):
    result = _invoke(settings_file, "agents", "list")
    assert result.exit_code == 0
    assert "alpha" in result.output
    assert "built-in" in result.output


def test_agents_create_persists(settings_file, fake_backend, tmp_path: Path, monkeypatch):
    design = {"name": "Nova", "full_name": "Nova Prime", "personality": "Curious.", "icon": "star", "color": "yellow"}

    class DesignerGemini(FakeGemini):
        def __init__(self, config) -> None:
            super().__init__(config)
            self.generate_structured.return_value = StructuredReply(text=json.dumps(design))

    monkeypatch.setitem(cli.PROVIDER_CLASSES, "gemini", DesignerGemini)
    result = _invoke(settings_file, "agents", "create", "a curious explorer")

    assert result.exit_code == 0, result.output
    stored = json.loads((tmp_path / "data" / "custom_agents.json").read_text(encoding="utf-8"))
    assert stored[0]["name"] == "Nova"
    assert stored[0]["id"].startswith("custom-")

    removal = _invoke(settings_file, "agents", "remove", stored[0]["id"])
    assert removal.exit_code == 0
    assert json.loads((tmp_path / "data" / "custom_agents.json").read_text(encoding="utf-8")) == []


def test_agents_remove_builtin_refused(settings_file, fake_backend):
    result = _invoke(settings_file, "agents", "remove", "alpha")
    assert result.exit_code == 1
    assert "Not removed" in result.output


def test_agents_fuse_limits_bases(settings_file, fake_backend):
    result = _invoke(settings_file, "agents", "fuse", "a", "b", "c", "d")
    assert result.exit_code != 0


def test_intel_prints_sources(settings_file, fake_backend):
    result = _invoke(settings_file, "intel", "lithium")
    assert result.exit_code == 0, result.output
    assert "Intel text" in result.output
    assert "https://example.com/a" in result.output


def test_bad_settings_path_fails(tmp_path: Path):
    result = CliRunner().invoke(main, ["--settings", str(tmp_path / "missing.yaml"), "agents", "list"])
    assert result.exit_code != 0


def test_debate_renders_bracketed_turn_text(settings_file, fake_backend, tmp_path: Path, monkeypatch):
    class BracketGemini(FakeGemini):
        def __init__(self, config) -> None:
            super().__init__(config)
            self.generate_structured.return_value = StructuredReply(
                text=debate_json([("alpha", "Mount it at /mnt[/data] first"), ("beta", "Agreed.")], "Done.")
            )

    monkeypatch.setitem(cli.PROVIDER_CLASSES, "gemini", BracketGemini)
    out = tmp_path / "out"
    result = _invoke(
        settings_file, "debate", "Where does [/data] go?", "--fast", "--no-follow-up", "--skip-health-check",
        "--output", str(out),
    )

    assert result.exit_code == 0, result.output
    assert "Session error" not in result.output
    content = next(out.glob("*.md")).read_text(encoding="utf-8")
    assert "**Status:** finished" in content
    assert "Mount it at /mnt[/data] first" in content


def test_follow_up_prompt_runs_in_worker_thread(settings_file, fake_backend, tmp_path: Path, monkeypatch):
    offloaded = []
    real_to_thread = asyncio.to_thread

    async def recording_to_thread(func, *args, **kwargs):
        offloaded.append(func)
        return await real_to_thread(func, *args, **kwargs)

    monkeypatch.setattr(cli.asyncio, "to_thread", recording_to_thread)
    result = _invoke(
        settings_file, "debate", "Ship on Friday?", "--fast", "--skip-health-check",
        "--output", str(tmp_path / "out"), input="\n",
    )

    assert result.exit_code == 0, result.output
    assert click.prompt in offloaded
