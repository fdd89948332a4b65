"""Load settings.yaml into typed dataclasses. Checks API keys at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from chamber.models import Agent

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None
    image_model: str | None = None
    search_grounding: bool = False


@dataclass
class PromptsConfig:
    debate: str
    follow_up: str
    custom_agent: str = ""
    hybrid_agent: str = ""
    visual: str = ""
    portrait: str = ""
    intel: str = ""


@dataclass
class DefaultsConfig:
    provider: str
    output_dir: Path
    data_dir: Path
    participants: list[str] = field(default_factory=list)


@dataclass
class PlaybackConfig:
    concluding_dwell_ms: int = 2000
    time_scale: float = 1.0
    visual_history_limit: int = 10


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    prompts: PromptsConfig
    agents: list[Agent]
    playback: PlaybackConfig = field(default_factory=PlaybackConfig)
    available_providers: set[str] = field(default_factory=set)

    @property
    def store_path(self) -> Path:
        """Where custom agents are persisted between runs."""
        return self.defaults.data_dir / "custom_agents.json"


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing, ValueError if it
    defines no built-in agents.
    Logs missing API keys but does not raise — callers check
    available_providers.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        provider=str(defaults_raw["provider"]),
        output_dir=Path(defaults_raw["output_dir"]),
        data_dir=Path(str(defaults_raw.get("data_dir", "./.chamber"))).expanduser(),
        participants=list(defaults_raw.get("participants", [])),
    )

    playback_raw = raw.get("playback", {}) or {}
    playback = PlaybackConfig(
        concluding_dwell_ms=int(playback_raw.get("concluding_dwell_ms", 2000)),
        time_scale=float(playback_raw.get("time_scale", 1.0)),
        visual_history_limit=int(playback_raw.get("visual_history_limit", 10)),
    )

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        debate=prompts_raw["debate"],
        follow_up=prompts_raw["follow_up"],
        custom_agent=prompts_raw.get("custom_agent", ""),
        hybrid_agent=prompts_raw.get("hybrid_agent", ""),
        visual=prompts_raw.get("visual", ""),
        portrait=prompts_raw.get("portrait", ""),
        intel=prompts_raw.get("intel", ""),
    )

    agents = [Agent.from_dict(a, builtin=True) for a in raw.get("agents") or []]
    if not agents:
        raise ValueError(f"No built-in agents defined in {settings_path}")

    models: dict[str, ModelConfig] = {}
    available_providers: set[str] = set()

    for provider_name, model_raw in raw["models"].items():
        model_cfg = ModelConfig(
            name=provider_name,
            sdk=model_raw["sdk"],
            model=model_raw["model"],
            api_key_env=model_raw["api_key_env"],
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            base_url=model_raw.get("base_url"),
            image_model=model_raw.get("image_model"),
            search_grounding=bool(model_raw.get("search_grounding", False)),
        )
        models[provider_name] = model_cfg

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s — set %s in .env",
                provider_name,
                model_raw["api_key_env"],
            )

    return AppConfig(
        defaults=defaults,
        models=models,
        prompts=prompts,
        agents=agents,
        playback=playback,
        available_providers=available_providers,
    )
