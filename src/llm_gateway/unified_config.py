"""Unified YAML configuration for the LLM Gateway.

Configuration Priority: Environment Variables > YAML > Defaults

Example YAML configuration (llm_gateway.yaml):

    gateway:
      default_provider: openrouter
      providers:
        openrouter:
          provider_kind: openrouter
          headers:
            HTTP-Referer: https://example.com
            X-Title: my-agent
        openai:
          provider_kind: openai_responses
          use_responses_api: true
        anthropic:
          provider_kind: anthropic
          enable_thinking: true
          reasoning_budget_tokens: 4096
      model_routing:
        "anthropic/*": anthropic
      catalog:
        source: openrouter
        refresh_ttl_hours: 24
      selection:
        sticky_days: 7
      tool_loop:
        max_tool_iterations: 25

API keys are not stored here by default; they are resolved from the
environment (see llm_gateway.config). ``${VAR}`` references in YAML values
are substituted from the environment.
"""

import fnmatch
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

ProviderKindName = Literal[
    "openai_chat", "openai_responses", "anthropic", "openrouter", "mock"
]

DEFAULT_MODEL_ID = "openai/gpt-4o-mini"
OPENROUTER_API_BASE = "https://openrouter.ai/api/v1"
OPENAI_API_BASE = "https://api.openai.com/v1"
ANTHROPIC_API_BASE = "https://api.anthropic.com"


# =============================================================================
# Sub-configuration Models
# =============================================================================


class MockConfig(BaseModel):
    """Deterministic behaviour of the mock provider."""

    profile: Literal["normal", "no_first_chunk", "stall_after_chunks"] = "normal"
    stall_after_chunks: int = Field(default=2, ge=0)
    first_chunk_delay_ms: int = Field(default=0, ge=0)
    inter_chunk_delay_ms: int = Field(default=0, ge=0)
    chunk_size: int = Field(default=16, ge=1)
    script: List[str] = Field(default_factory=lambda: ["mock response"])


class ProviderConfig(BaseModel):
    """Configuration for a single backend provider."""

    provider_kind: ProviderKindName = "openrouter"
    enabled: bool = True
    api_key: Optional[str] = Field(default=None, repr=False)
    model_hint: Optional[str] = None
    api_base: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    max_output_tokens: int = Field(default=1024, ge=1)
    temperature: Optional[float] = Field(default=0.7, ge=0.0, le=2.0)
    enable_streaming: bool = True
    enable_thinking: bool = False
    reasoning_effort: Optional[Literal["minimal", "low", "medium", "high"]] = None
    reasoning_budget_tokens: Optional[int] = Field(default=None, ge=1)
    first_token_timeout_ms: int = Field(default=30_000, ge=1)
    stall_timeout_ms: int = Field(default=10_000, ge=1)
    use_responses_api: bool = False
    request_timeout_seconds: float = Field(default=120.0, gt=0.0, le=3600.0)
    mock: MockConfig = Field(default_factory=MockConfig)

    @model_validator(mode="after")
    def set_default_api_base(self) -> "ProviderConfig":
        """Fill api_base from the provider kind when not given."""
        if self.api_base is None:
            self.api_base = {
                "openrouter": OPENROUTER_API_BASE,
                "openai_chat": OPENAI_API_BASE,
                "openai_responses": OPENAI_API_BASE,
                "anthropic": ANTHROPIC_API_BASE,
            }.get(self.provider_kind)
        if self.api_base:
            self.api_base = self.api_base.rstrip("/")
        return self


class CatalogConfig(BaseModel):
    """Configuration for the model catalog."""

    source: Literal["openrouter", "static"] = "openrouter"
    api_base: str = Field(default=OPENROUTER_API_BASE)
    refresh_ttl_hours: float = Field(default=24.0, gt=0.0)
    default_model: str = Field(default=DEFAULT_MODEL_ID)
    max_refresh_retries: int = Field(default=3, ge=1, le=10)
    refresh_backoff_seconds: float = Field(default=1.0, ge=0.0)
    fetch_timeout_seconds: float = Field(default=30.0, gt=0.0)
    background_refresh: bool = False


class SelectionConfig(BaseModel):
    """Configuration for model selection."""

    sticky_days: float = Field(default=7.0, gt=0.0)
    ranking: Literal["internal", "external"] = "internal"


class RetrySettings(BaseModel):
    """Backoff for rate limits and server errors."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=0.5, ge=0.0)
    max_delay_seconds: float = Field(default=8.0, ge=0.0)
    jitter: bool = True


class ToolLoopConfig(BaseModel):
    max_tool_iterations: int = Field(default=25, ge=1, le=1000)


class StreamingConfig(BaseModel):
    overall_ceiling_ms: int = Field(default=600_000, ge=1)


class StorageConfig(BaseModel):
    """Where gateway state (catalog, sticky map, endpoint cache) lives."""

    enabled: bool = True
    directory: str = Field(default="~/.llm-gateway/state")


class CircuitBreakerSettings(BaseModel):
    """Per-model circuit breaker feeding the selection outage signal."""

    enabled: bool = True
    failure_threshold: float = Field(default=0.25, gt=0.0, le=1.0)
    min_requests: int = Field(default=5, ge=1)
    window_seconds: int = Field(default=600, ge=1)
    cooldown_seconds: int = Field(default=1800, ge=0)


class TranscriptConfig(BaseModel):
    """Opt-in request/response transcripts written to rotating text files."""

    enabled: bool = False
    log_dir: str = Field(default="~/.llm-gateway/transcripts")
    console_logging: bool = False
    include_full_prompts: bool = True
    include_full_responses: bool = True
    log_files_to_keep: int = Field(default=10, ge=1)


class ObservabilityConfig(BaseModel):
    log_calls: bool = True
    transcripts: TranscriptConfig = Field(default_factory=TranscriptConfig)


# =============================================================================
# Main Unified Configuration
# =============================================================================


def _default_providers() -> Dict[str, ProviderConfig]:
    return {
        "openrouter": ProviderConfig(provider_kind="openrouter"),
        "openai": ProviderConfig(provider_kind="openai_chat"),
        "anthropic": ProviderConfig(provider_kind="anthropic"),
        "mock": ProviderConfig(provider_kind="mock", temperature=None),
    }


class UnifiedConfig(BaseModel):
    """Complete gateway configuration."""

    default_provider: str = Field(default="openrouter")
    providers: Dict[str, ProviderConfig] = Field(default_factory=dict)
    model_routing: Dict[str, str] = Field(default_factory=dict)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    selection: SelectionConfig = Field(default_factory=SelectionConfig)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    tool_loop: ToolLoopConfig = Field(default_factory=ToolLoopConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    @model_validator(mode="after")
    def ensure_default_providers(self) -> "UnifiedConfig":
        """Ensure the standard providers exist and references resolve."""
        for name, provider in _default_providers().items():
            if name not in self.providers:
                self.providers[name] = provider
        if self.default_provider not in self.providers:
            raise ValueError(
                f"default_provider '{self.default_provider}' is not a configured provider"
            )
        for pattern, provider_name in self.model_routing.items():
            if provider_name not in self.providers:
                raise ValueError(
                    f"model_routing '{pattern}' targets unknown provider '{provider_name}'"
                )
        return self

    @field_validator("model_routing")
    @classmethod
    def validate_routing_patterns(cls, v: Dict[str, str]) -> Dict[str, str]:
        for pattern in v:
            if not pattern.strip():
                raise ValueError("model_routing patterns cannot be empty")
        return v

    def get_provider_for_model(self, model_id: str) -> str:
        """Get the provider name that serves ``model_id``.

        Args:
            model_id: Model identifier (e.g., "anthropic/claude-sonnet-4")

        Returns:
            Provider name from model_routing, or default_provider
        """
        for pattern, provider_name in self.model_routing.items():
            if fnmatch.fnmatch(model_id, pattern):
                return provider_name
        return self.default_provider

    def to_dict(self) -> Dict[str, Any]:
        """Serialize configuration; API keys are never included."""
        data = self.model_dump(exclude_none=True)
        for provider in data.get("providers", {}).values():
            provider.pop("api_key", None)
        return data

    def to_yaml(self) -> str:
        return yaml.dump({"gateway": self.to_dict()}, default_flow_style=False, sort_keys=False)


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _substitute_env_vars(value: Any) -> Any:
    """Recursively substitute ${VAR_NAME} references with env values."""
    if isinstance(value, str):
        for var_name in re.findall(r"\$\{([^}]+)\}", value):
            value = value.replace(f"${{{var_name}}}", os.getenv(var_name, ""))
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def load_config(config_path: Optional[Path] = None, strict: bool = False) -> UnifiedConfig:
    """Load configuration from a YAML file.

    Args:
        config_path: Path to YAML configuration file. If None, uses defaults.
        strict: If True, raise ValueError on invalid configuration. If False,
                fall back to defaults.

    Returns:
        UnifiedConfig object

    Raises:
        ValueError: If strict=True and configuration is invalid
    """
    if config_path is None or not config_path.exists():
        return UnifiedConfig()

    try:
        with open(config_path, "r") as f:
            raw_config = yaml.safe_load(f)
        if raw_config is None:
            return UnifiedConfig()
        raw_config = _substitute_env_vars(raw_config)
        return UnifiedConfig(**raw_config.get("gateway", {}))
    except yaml.YAMLError as e:
        if strict:
            raise ValueError(f"Invalid YAML: {e}")
        return UnifiedConfig()
    except (TypeError, ValueError) as e:
        if strict:
            raise ValueError(f"Configuration error: {e}")
        return UnifiedConfig()


def _find_config_file() -> Optional[Path]:
    """Find configuration file in standard locations.

    Search order:
    1. LLM_GATEWAY_CONFIG environment variable
    2. ./llm_gateway.yaml (current directory)
    3. ~/.config/llm-gateway/llm_gateway.yaml
    """
    env_path = os.getenv("LLM_GATEWAY_CONFIG")
    if env_path:
        path = Path(env_path)
        if path.exists():
            return path

    cwd_path = Path.cwd() / "llm_gateway.yaml"
    if cwd_path.exists():
        return cwd_path

    home_path = Path.home() / ".config" / "llm-gateway" / "llm_gateway.yaml"
    if home_path.exists():
        return home_path

    return None


def _env_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: UnifiedConfig) -> UnifiedConfig:
    """Apply environment variable overrides to configuration."""
    config_dict = config.model_dump()

    default_provider = os.getenv("LLM_GATEWAY_DEFAULT_PROVIDER")
    if default_provider:
        config_dict["default_provider"] = default_provider

    catalog_source = os.getenv("LLM_GATEWAY_CATALOG_SOURCE")
    if catalog_source:
        config_dict.setdefault("catalog", {})["source"] = catalog_source
    catalog_ttl = os.getenv("LLM_GATEWAY_CATALOG_TTL_HOURS")
    if catalog_ttl:
        config_dict.setdefault("catalog", {})["refresh_ttl_hours"] = float(catalog_ttl)
    default_model = os.getenv("LLM_GATEWAY_DEFAULT_MODEL")
    if default_model:
        config_dict.setdefault("catalog", {})["default_model"] = default_model

    sticky_days = os.getenv("LLM_GATEWAY_STICKY_DAYS")
    if sticky_days:
        config_dict.setdefault("selection", {})["sticky_days"] = float(sticky_days)

    max_iterations = os.getenv("LLM_GATEWAY_MAX_TOOL_ITERATIONS")
    if max_iterations:
        config_dict.setdefault("tool_loop", {})["max_tool_iterations"] = int(max_iterations)

    state_dir = os.getenv("LLM_GATEWAY_STATE_DIR")
    if state_dir:
        config_dict.setdefault("storage", {})["directory"] = state_dir

    # Timeouts apply to every provider
    providers = config_dict.setdefault("providers", {})
    first_token = os.getenv("LLM_GATEWAY_FIRST_TOKEN_TIMEOUT_MS")
    stall = os.getenv("LLM_GATEWAY_STALL_TIMEOUT_MS")
    for provider in providers.values():
        if first_token:
            provider["first_token_timeout_ms"] = int(first_token)
        if stall:
            provider["stall_timeout_ms"] = int(stall)

    responses_api = os.getenv("LLM_GATEWAY_USE_RESPONSES_API")
    if responses_api and "openai" in providers:
        providers["openai"]["use_responses_api"] = _env_bool(responses_api)

    # Mock provider stream profile
    mock = providers.get("mock")
    if mock is not None:
        mock_config = mock.setdefault("mock", {})
        profile = os.getenv("LLM_GATEWAY_MOCK_STREAM_PROFILE")
        if profile:
            mock_config["profile"] = profile
        for env_name, key in (
            ("LLM_GATEWAY_MOCK_STALL_AFTER_CHUNKS", "stall_after_chunks"),
            ("LLM_GATEWAY_MOCK_FIRST_CHUNK_DELAY_MS", "first_chunk_delay_ms"),
            ("LLM_GATEWAY_MOCK_INTER_CHUNK_DELAY_MS", "inter_chunk_delay_ms"),
        ):
            value = os.getenv(env_name)
            if value:
                mock_config[key] = int(value)

    log_calls = os.getenv("LLM_GATEWAY_LOG_CALLS")
    if log_calls:
        config_dict.setdefault("observability", {})["log_calls"] = _env_bool(log_calls)
    transcripts = os.getenv("LLM_GATEWAY_TRANSCRIPTS")
    if transcripts:
        observability = config_dict.setdefault("observability", {})
        observability.setdefault("transcripts", {})["enabled"] = _env_bool(transcripts)
    transcript_dir = os.getenv("LLM_GATEWAY_TRANSCRIPT_DIR")
    if transcript_dir:
        observability = config_dict.setdefault("observability", {})
        observability.setdefault("transcripts", {})["log_dir"] = transcript_dir

    return UnifiedConfig(**config_dict)


def get_effective_config(config_path: Optional[Path] = None) -> UnifiedConfig:
    """Get the effective configuration with all overrides applied.

    Priority: Environment Variables > YAML > Defaults

    Args:
        config_path: Optional explicit path to configuration file.
                    If None, searches standard locations.
    """
    if config_path is None:
        config_path = _find_config_file()
    config = load_config(config_path)
    return _apply_env_overrides(config)


# =============================================================================
# Global Configuration Instance
# =============================================================================

_global_config: Optional[UnifiedConfig] = None


def get_config() -> UnifiedConfig:
    """Get the global configuration instance (cached after first load)."""
    global _global_config
    if _global_config is None:
        _global_config = get_effective_config()
    return _global_config


def reload_config() -> UnifiedConfig:
    """Reload the global configuration from disk."""
    global _global_config
    _global_config = get_effective_config()
    return _global_config


def _reset_config() -> None:
    """Drop the cached configuration (for testing only)."""
    global _global_config
    _global_config = None
