"""
Backend catalogue.

The set of enabled backends is an explicit value passed to the orchestrator
per call, never a module-level switch.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from pydantic import BaseModel, ConfigDict, Field

from oracle.core.config import Settings, settings as default_settings
from oracle.engine.schemas import BackendTier


class BackendConfig(BaseModel):
    """Connection and sampling parameters for one prediction backend."""

    model_config = ConfigDict(frozen=True)

    backend_id: str
    display_name: str
    tier: BackendTier = BackendTier.MEDIUM
    model: str
    base_url: str | None = None
    api_key: str | None = Field(default=None, repr=False)
    timeout_seconds: float = Field(default=60.0, gt=0)
    temperature: float = 0.3
    max_tokens: int = 2000
    max_retries: int = Field(default=2, ge=1)
    retry_delay: float = Field(default=1.0, ge=0)
    enabled: bool = True


# (backend_id, display name, tier, model, OpenAI-compatible base URL)
DEFAULT_BACKENDS: tuple[tuple[str, str, BackendTier, str, str], ...] = (
    ("gpt4", "GPT-4", BackendTier.LARGE, "gpt-4-turbo-preview", "https://api.openai.com/v1"),
    ("claude", "Claude", BackendTier.LARGE, "claude-3-sonnet-20240229", "https://api.anthropic.com/v1/"),
    (
        "gemini",
        "Gemini",
        BackendTier.MEDIUM,
        "gemini-1.5-flash",
        "https://generativelanguage.googleapis.com/v1beta/openai/",
    ),
    ("perplexity", "Perplexity", BackendTier.MEDIUM, "sonar", "https://api.perplexity.ai"),
)


class BackendSet:
    """Immutable, ordered collection of backend configurations."""

    def __init__(self, configs: Iterable[BackendConfig]):
        ordered: dict[str, BackendConfig] = {}
        for config in configs:
            if config.backend_id in ordered:
                raise ValueError(f"Duplicate backend id: {config.backend_id}")
            ordered[config.backend_id] = config
        self._configs = ordered

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "BackendSet":
        """Default catalogue; a backend is enabled when its API key is set."""
        s = settings or default_settings
        configs = []
        for backend_id, name, tier, model, base_url in DEFAULT_BACKENDS:
            api_key = s.api_key_for(backend_id)
            configs.append(
                BackendConfig(
                    backend_id=backend_id,
                    display_name=name,
                    tier=tier,
                    model=model,
                    base_url=base_url,
                    api_key=api_key,
                    timeout_seconds=s.backend_timeout_seconds,
                    temperature=s.backend_temperature,
                    max_tokens=s.backend_max_tokens,
                    max_retries=s.backend_max_retries,
                    retry_delay=s.backend_retry_delay,
                    enabled=bool(api_key),
                )
            )
        return cls(configs)

    def subset(self, backend_ids: Iterable[str]) -> "BackendSet":
        """Narrow to the given ids; unknown ids raise KeyError."""
        wanted = list(dict.fromkeys(backend_ids))
        missing = [b for b in wanted if b not in self._configs]
        if missing:
            raise KeyError(f"Unknown backend(s): {', '.join(missing)}")
        return BackendSet(self._configs[b] for b in wanted)

    @property
    def enabled(self) -> list[BackendConfig]:
        return [c for c in self._configs.values() if c.enabled]

    @property
    def ids(self) -> list[str]:
        return list(self._configs)

    def get(self, backend_id: str) -> BackendConfig | None:
        return self._configs.get(backend_id)

    def tiers(self) -> dict[str, BackendTier]:
        return {c.backend_id: c.tier for c in self._configs.values()}

    def __iter__(self) -> Iterator[BackendConfig]:
        return iter(self._configs.values())

    def __len__(self) -> int:
        return len(self._configs)

    def __contains__(self, backend_id: object) -> bool:
        return backend_id in self._configs
