"""Intent-driven model selection with sticky choices.

Resolution order for an intent:
1. A valid sticky entry is returned as-is (``via_sticky=True``)
2. A caller pin (``SelectionConstraints.pinned_model``) is honoured if the
   model passes the hard filters
3. Otherwise candidates are hard-filtered, scored, optionally re-ranked by
   an external ranker, and the winner is stored as the new sticky entry

A sticky entry is dropped when it expires, when the caller's pin changes,
when the model left the catalog or lost a capability it had at selection
time, or when the model's outage signal is on.

Example:
    >>> service = ModelSelectionService(catalog, store=store)
    >>> result = await service.resolve("code_writing")
    >>> result.model_id, result.rationale
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Protocol, Tuple, Union, runtime_checkable

from ..gateway import circuit_breaker_registry
from ..gateway.errors import ModelUnavailable
from ..observability import GatewayEventType, emit_gateway_event
from ..storage import KeyValueStore
from .catalog import ModelCatalog
from .intents import get_intent
from .scoring import CandidateScore, score_model
from .types import (
    Intent,
    ModelDescriptor,
    SelectionConstraints,
    SelectionResult,
    StickyEntry,
)

logger = logging.getLogger(__name__)

DEFAULT_STICKY_TTL = timedelta(days=7)
STICKY_STORE_KEY = "sticky_map"

OutageCheck = Callable[[str], bool]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@runtime_checkable
class ExternalRanker(Protocol):
    """Optional third-party ranking of candidates.

    Returns model ids best first. Failures fall back to internal scoring.
    """

    async def rank(self, intent: Intent, candidates: List[ModelDescriptor]) -> List[str]:
        ...


class ModelSelectionService:
    """Resolves intents to models."""

    def __init__(
        self,
        catalog: ModelCatalog,
        store: Optional[KeyValueStore] = None,
        sticky_ttl: timedelta = DEFAULT_STICKY_TTL,
        ranker: Optional[ExternalRanker] = None,
        outage_check: OutageCheck = circuit_breaker_registry.is_model_in_outage,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._catalog = catalog
        self._store = store
        self._sticky_ttl = sticky_ttl
        self._ranker = ranker
        self._outage_check = outage_check
        self._clock = clock
        self._intent_locks: Dict[str, asyncio.Lock] = {}
        self._sticky: Dict[str, StickyEntry] = self._load_sticky()

    # ------------------------------------------------------------------
    # Sticky map persistence
    # ------------------------------------------------------------------

    def _load_sticky(self) -> Dict[str, StickyEntry]:
        if self._store is None:
            return {}
        raw = self._store.get(STICKY_STORE_KEY) or {}
        entries: Dict[str, StickyEntry] = {}
        for intent_name, data in raw.items():
            try:
                entries[intent_name] = StickyEntry.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Dropping unreadable sticky entry for %s: %s", intent_name, e)
        return entries

    def _replace_sticky(self, entries: Dict[str, StickyEntry]) -> None:
        self._sticky = entries
        if self._store is None:
            return
        try:
            self._store.set(
                STICKY_STORE_KEY,
                {name: entry.to_dict() for name, entry in entries.items()},
            )
        except OSError as e:
            logger.warning("Failed to persist sticky map: %s", e)

    def sticky_entry(self, intent_name: str) -> Optional[StickyEntry]:
        return self._sticky.get(intent_name)

    def invalidate(self, intent_name: str, reason: str = "explicit") -> bool:
        """Drop the sticky entry for an intent.

        Returns:
            True if an entry was removed
        """
        if intent_name not in self._sticky:
            return False
        entries = dict(self._sticky)
        entry = entries.pop(intent_name)
        self._replace_sticky(entries)
        emit_gateway_event(
            GatewayEventType.STICKY_INVALIDATED,
            {"intent": intent_name, "model_id": entry.result.model_id, "reason": reason},
        )
        logger.info(
            "Sticky selection for %s (%s) invalidated: %s",
            intent_name,
            entry.result.model_id,
            reason,
        )
        return True

    def report_outage(self, model_id: str) -> None:
        """Flag a model as down; sticky entries pointing at it stop applying."""
        circuit_breaker_registry.report_outage(model_id)

    def clear_outage(self, model_id: str) -> None:
        circuit_breaker_registry.clear_outage(model_id)

    # ------------------------------------------------------------------
    # Filtering and ranking
    # ------------------------------------------------------------------

    def rejection_reason(
        self,
        model: ModelDescriptor,
        intent: Intent,
        constraints: SelectionConstraints,
    ) -> Optional[str]:
        """Why a model fails the hard filters, or None if it passes.

        Required capabilities must be known to be present.
        """
        missing = sorted(
            c.value for c in intent.required_capabilities if not model.capabilities.has(c)
        )
        if missing:
            return f"missing capabilities {missing}"
        min_context = max(intent.min_context_tokens, constraints.min_context_tokens or 0)
        if model.context_window is not None and model.context_window < min_context:
            return f"context {model.context_window} below {min_context}"
        if (
            model.max_output_tokens is not None
            and model.max_output_tokens < intent.min_output_tokens
        ):
            return f"output limit {model.max_output_tokens} below {intent.min_output_tokens}"
        if model.id in constraints.excluded_models:
            return "excluded by caller"
        if self._outage_check(model.id):
            return "outage"
        return None

    def filter_candidates(
        self,
        intent: Intent,
        constraints: SelectionConstraints,
    ) -> Tuple[List[ModelDescriptor], Dict[str, str]]:
        """Split the catalog into passing candidates and rejection reasons."""
        candidates: List[ModelDescriptor] = []
        rejected: Dict[str, str] = {}
        for model in self._catalog.models():
            reason = self.rejection_reason(model, intent, constraints)
            if reason is None:
                candidates.append(model)
            else:
                rejected[model.id] = reason
        return candidates, rejected

    async def _external_choice(
        self,
        intent: Intent,
        candidates: List[ModelDescriptor],
    ) -> Optional[str]:
        if self._ranker is None:
            return None
        candidate_ids = {m.id for m in candidates}
        try:
            ranked = await self._ranker.rank(intent, candidates)
        except Exception as e:
            emit_gateway_event(
                GatewayEventType.RANKER_FALLBACK, {"intent": intent.name, "error": str(e)}
            )
            logger.warning(
                "External ranker failed for %s, using internal scores: %s", intent.name, e
            )
            return None
        for model_id in ranked or []:
            if model_id in candidate_ids:
                return model_id
        emit_gateway_event(
            GatewayEventType.RANKER_FALLBACK,
            {"intent": intent.name, "error": "no usable ranking"},
        )
        logger.warning(
            "External ranker returned no known candidate for %s, using internal scores",
            intent.name,
        )
        return None

    # ------------------------------------------------------------------
    # Resolve
    # ------------------------------------------------------------------

    def _sticky_invalid_reason(
        self,
        entry: StickyEntry,
        intent: Intent,
        constraints: SelectionConstraints,
        now: datetime,
    ) -> Optional[str]:
        if entry.is_expired(now):
            return "expired"
        if entry.pinned_model != constraints.pinned_model:
            return "pin changed"
        model = self._catalog.get(entry.result.model_id)
        if model is None:
            return "model no longer in catalog"
        regressed = entry.capabilities_at_selection - model.capabilities.present()
        if regressed:
            return f"capability regression {sorted(c.value for c in regressed)}"
        reason = self.rejection_reason(model, intent, constraints)
        if reason is not None:
            return reason
        return None

    async def resolve(
        self,
        intent: Union[str, Intent],
        constraints: Optional[SelectionConstraints] = None,
    ) -> SelectionResult:
        """Resolve an intent to a model.

        Args:
            intent: Intent or preset name
            constraints: Optional pin, exclusions and context minimum

        Returns:
            SelectionResult with rationale and per-criterion scores

        Raises:
            ModelUnavailable: If no model (or the pinned model) satisfies
                the hard filters
        """
        intent = get_intent(intent)
        constraints = constraints or SelectionConstraints()
        lock = self._intent_locks.setdefault(intent.name, asyncio.Lock())

        async with lock:
            now = self._clock()
            entry = self._sticky.get(intent.name)
            if entry is not None:
                reason = self._sticky_invalid_reason(entry, intent, constraints, now)
                if reason is None:
                    emit_gateway_event(
                        GatewayEventType.STICKY_HIT,
                        {"intent": intent.name, "model_id": entry.result.model_id},
                    )
                    return replace(entry.result, via_sticky=True)
                self.invalidate(intent.name, reason)

            result, model = await self._select(intent, constraints, now)
            entries = dict(self._sticky)
            entries[intent.name] = StickyEntry(
                intent=intent.name,
                result=result,
                expires_at=result.sticky_valid_until,
                pinned_model=constraints.pinned_model,
                capabilities_at_selection=model.capabilities.present(),
            )
            self._replace_sticky(entries)

            emit_gateway_event(
                GatewayEventType.SELECTION_RESOLVED,
                {
                    "intent": intent.name,
                    "model_id": result.model_id,
                    "total_score": result.total_score,
                    "rationale": result.rationale,
                },
            )
            logger.info(
                "Resolved intent %s to %s: %s", intent.name, result.model_id, result.rationale
            )
            return result

    async def _select(
        self,
        intent: Intent,
        constraints: SelectionConstraints,
        now: datetime,
    ) -> Tuple[SelectionResult, ModelDescriptor]:
        if constraints.pinned_model:
            model = self._catalog.get(constraints.pinned_model)
            if model is None:
                raise ModelUnavailable(
                    f"Pinned model {constraints.pinned_model} is not in the catalog",
                    model=constraints.pinned_model,
                )
            reason = self.rejection_reason(model, intent, constraints)
            if reason is not None:
                raise ModelUnavailable(
                    f"Pinned model {model.id} cannot serve {intent.name}: {reason}",
                    model=model.id,
                )
            score = score_model(model, intent)
            return self._result(intent, model, score, "pinned by caller", now), model

        candidates, rejected = self.filter_candidates(intent, constraints)
        if not candidates:
            raise ModelUnavailable(
                f"No model satisfies intent {intent.name} "
                f"({len(rejected)} rejected: {dict(list(rejected.items())[:5])})"
            )

        scored = sorted(
            (score_model(m, intent) for m in candidates),
            key=lambda s: (-s.total, s.model_id),
        )
        by_id = {m.id: m for m in candidates}
        scores_by_id = {s.model_id: s for s in scored}

        external = await self._external_choice(intent, candidates)
        if external is not None:
            score = scores_by_id[external]
            rationale = (
                f"ranked first by external ranker among {len(candidates)} candidates "
                f"(internal score {score.total:.3f})"
            )
            return self._result(intent, by_id[external], score, rationale, now), by_id[external]

        best = scored[0]
        rationale = (
            f"highest weighted score {best.total:.3f} among {len(candidates)} candidates ("
            + ", ".join(f"{k}={v:.2f}" for k, v in best.scores.items())
            + ")"
        )
        return self._result(intent, by_id[best.model_id], best, rationale, now), by_id[best.model_id]

    def _result(
        self,
        intent: Intent,
        model: ModelDescriptor,
        score: CandidateScore,
        rationale: str,
        now: datetime,
    ) -> SelectionResult:
        return SelectionResult(
            intent=intent.name,
            model_id=model.id,
            provider=model.provider,
            rationale=rationale,
            scores=dict(score.scores),
            total_score=score.total,
            selected_at=now,
            sticky_valid_until=now + self._sticky_ttl,
        )
