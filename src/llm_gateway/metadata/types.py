"""Model metadata and selection types.

This module defines the data structures shared by the catalog and the
selection service:
- ModelDescriptor: Frozen description of one model's limits and capabilities
- CapabilitySet: Tri-state capability flags (True, False, None = unknown)
- Intent: What a caller needs from a model (the selection "mode context")
- SelectionResult / StickyEntry: Outcome of a resolve and its persisted form

Descriptors are only built by catalog sources; everything else treats them
as read-only.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from ..gateway.errors import TOKEN_FIELDS

SCHEMA_VERSION = "1.0.0"


class Capability(str, Enum):
    """Model capabilities relevant to routing."""

    TOOLS = "tools"
    JSON_MODE = "json_mode"
    REASONING = "reasoning"
    VISION = "vision"


@dataclass(frozen=True)
class CapabilitySet:
    """Capability flags; None means the catalog did not say."""

    tools: Optional[bool] = None
    json_mode: Optional[bool] = None
    reasoning: Optional[bool] = None
    vision: Optional[bool] = None

    def get(self, capability: Capability) -> Optional[bool]:
        return getattr(self, capability.value)

    def has(self, capability: Capability) -> bool:
        """True only when the capability is known to be present."""
        return self.get(capability) is True

    def is_unknown(self, capability: Capability) -> bool:
        return self.get(capability) is None

    def present(self) -> FrozenSet[Capability]:
        return frozenset(c for c in Capability if self.has(c))

    def to_dict(self) -> Dict[str, Optional[bool]]:
        return {c.value: self.get(c) for c in Capability}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CapabilitySet":
        return cls(**{c.value: data.get(c.value) for c in Capability})


@dataclass(frozen=True)
class Pricing:
    """USD per 1K tokens; None when unknown."""

    prompt: Optional[float] = None
    completion: Optional[float] = None

    @property
    def is_known(self) -> bool:
        return self.prompt is not None and self.completion is not None

    @property
    def average(self) -> Optional[float]:
        if not self.is_known:
            return None
        return (self.prompt + self.completion) / 2


@dataclass(frozen=True)
class ModelDescriptor:
    """Immutable model metadata.

    Attributes:
        id: Full model identifier (e.g., "anthropic/claude-sonnet-4")
        provider: Vendor prefix of the id, or the catalog source name
        capabilities: Tri-state capability flags
        context_window: Total context limit in tokens (None if unknown)
        max_output_tokens: Output limit in tokens (None if unknown)
        pricing: Prompt/completion price per 1K tokens
        latency_ms: Typical time to first token (None if unknown)
        token_field: Output-token field the upstream expects, when known

    Example:
        >>> ModelDescriptor(
        ...     id="openai/gpt-4o",
        ...     provider="openai",
        ...     capabilities=CapabilitySet(tools=True, json_mode=True, vision=True),
        ...     context_window=128000,
        ...     max_output_tokens=16384,
        ... )
    """

    id: str
    provider: str = ""
    capabilities: CapabilitySet = field(default_factory=CapabilitySet)
    context_window: Optional[int] = None
    max_output_tokens: Optional[int] = None
    pricing: Pricing = field(default_factory=Pricing)
    latency_ms: Optional[float] = None
    token_field: Optional[str] = None
    display_name: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("model id cannot be empty")
        if self.context_window is not None and self.context_window <= 0:
            raise ValueError(f"context_window must be positive, got {self.context_window}")
        if self.max_output_tokens is not None and self.max_output_tokens <= 0:
            raise ValueError(f"max_output_tokens must be positive, got {self.max_output_tokens}")
        if self.token_field is not None and self.token_field not in TOKEN_FIELDS:
            raise ValueError(f"unknown token_field '{self.token_field}'")
        if not self.provider:
            object.__setattr__(self, "provider", vendor_of(self.id))

    @property
    def model_name(self) -> str:
        """Id without the vendor prefix ("gpt-4o" for "openai/gpt-4o")."""
        return self.id.split("/", 1)[1] if "/" in self.id else self.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider,
            "capabilities": self.capabilities.to_dict(),
            "context_window": self.context_window,
            "max_output_tokens": self.max_output_tokens,
            "pricing": {"prompt": self.pricing.prompt, "completion": self.pricing.completion},
            "latency_ms": self.latency_ms,
            "token_field": self.token_field,
            "display_name": self.display_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelDescriptor":
        pricing = data.get("pricing") or {}
        return cls(
            id=data["id"],
            provider=data.get("provider") or "",
            capabilities=CapabilitySet.from_dict(data.get("capabilities") or {}),
            context_window=data.get("context_window"),
            max_output_tokens=data.get("max_output_tokens"),
            pricing=Pricing(pricing.get("prompt"), pricing.get("completion")),
            latency_ms=data.get("latency_ms"),
            token_field=data.get("token_field"),
            display_name=data.get("display_name"),
        )


def vendor_of(model_id: str) -> str:
    """Return the vendor prefix of a model id ("" when there is none)."""
    return model_id.split("/", 1)[0] if "/" in model_id else ""


# =============================================================================
# Selection types
# =============================================================================


@dataclass(frozen=True)
class ScoreWeights:
    """Relative importance of each scoring dimension (sums to 1.0)."""

    capability: float = 0.25
    context: float = 0.25
    price: float = 0.25
    latency: float = 0.25

    def __post_init__(self) -> None:
        values = (self.capability, self.context, self.price, self.latency)
        if any(v < 0 for v in values):
            raise ValueError("score weights must be non-negative")
        if abs(sum(values) - 1.0) > 1e-6:
            raise ValueError(f"score weights must sum to 1.0, got {sum(values):.3f}")

    def as_dict(self) -> Dict[str, float]:
        return {
            "capability": self.capability,
            "context": self.context,
            "price": self.price,
            "latency": self.latency,
        }


@dataclass(frozen=True)
class Intent:
    """What the caller is about to do, and what that needs from a model.

    Attributes:
        name: Intent name; sticky entries are keyed by it
        required_capabilities: Hard requirement; models lacking any are excluded
        preferred_capabilities: Soft preference used in capability scoring
        min_context_tokens: Hard minimum context window
        desired_context_tokens: Context size that scores 1.0 on adequacy
        min_output_tokens: Hard minimum output limit
        weights: Scoring weights
    """

    name: str
    required_capabilities: FrozenSet[Capability] = frozenset()
    preferred_capabilities: FrozenSet[Capability] = frozenset()
    min_context_tokens: int = 0
    desired_context_tokens: int = 32_000
    min_output_tokens: int = 0
    weights: ScoreWeights = field(default_factory=ScoreWeights)


@dataclass(frozen=True)
class SelectionConstraints:
    """Per-call constraints on a resolve."""

    pinned_model: Optional[str] = None
    excluded_models: FrozenSet[str] = frozenset()
    min_context_tokens: Optional[int] = None


@dataclass(frozen=True)
class SelectionResult:
    """Outcome of resolving an intent to a model."""

    intent: str
    model_id: str
    provider: str
    rationale: str
    scores: Dict[str, float]
    total_score: float
    selected_at: datetime
    sticky_valid_until: datetime
    via_sticky: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent,
            "model_id": self.model_id,
            "provider": self.provider,
            "rationale": self.rationale,
            "scores": dict(self.scores),
            "total_score": self.total_score,
            "selected_at": self.selected_at.isoformat(),
            "sticky_valid_until": self.sticky_valid_until.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SelectionResult":
        return cls(
            intent=data["intent"],
            model_id=data["model_id"],
            provider=data.get("provider", ""),
            rationale=data.get("rationale", ""),
            scores={k: float(v) for k, v in (data.get("scores") or {}).items()},
            total_score=float(data.get("total_score", 0.0)),
            selected_at=datetime.fromisoformat(data["selected_at"]),
            sticky_valid_until=datetime.fromisoformat(data["sticky_valid_until"]),
        )


@dataclass(frozen=True)
class StickyEntry:
    """Persisted selection for one intent."""

    intent: str
    result: SelectionResult
    expires_at: datetime
    pinned_model: Optional[str] = None
    capabilities_at_selection: FrozenSet[Capability] = frozenset()

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "intent": self.intent,
            "result": self.result.to_dict(),
            "expires_at": self.expires_at.isoformat(),
            "pinned_model": self.pinned_model,
            "capabilities_at_selection": sorted(c.value for c in self.capabilities_at_selection),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StickyEntry":
        return cls(
            intent=data["intent"],
            result=SelectionResult.from_dict(data["result"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            pinned_model=data.get("pinned_model"),
            capabilities_at_selection=frozenset(
                Capability(c) for c in data.get("capabilities_at_selection", [])
            ),
        )
