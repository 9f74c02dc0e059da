"""Model metadata: catalog, intents, scoring and selection.

Example usage:
    from llm_gateway.metadata import ModelCatalog, ModelSelectionService, StaticCatalogSource

    catalog = ModelCatalog(StaticCatalogSource())
    await catalog.refresh()
    result = await ModelSelectionService(catalog).resolve("code_writing")
"""

from .types import (
    Capability,
    CapabilitySet,
    Intent,
    ModelDescriptor,
    Pricing,
    ScoreWeights,
    SelectionConstraints,
    SelectionResult,
    StickyEntry,
)
from .intents import INTENT_PRESETS, get_intent
from .scoring import UNKNOWN_DIMENSION_SCORE, CandidateScore, score_model
from .sources import CatalogSource, OpenRouterCatalogSource, StaticCatalogSource
from .catalog import CatalogSnapshot, ModelCatalog
from .selection import ExternalRanker, ModelSelectionService
from .worker import CatalogWorker, run_catalog_worker

__all__ = [
    "Capability",
    "CapabilitySet",
    "Intent",
    "ModelDescriptor",
    "Pricing",
    "ScoreWeights",
    "SelectionConstraints",
    "SelectionResult",
    "StickyEntry",
    "INTENT_PRESETS",
    "get_intent",
    "UNKNOWN_DIMENSION_SCORE",
    "CandidateScore",
    "score_model",
    "CatalogSource",
    "OpenRouterCatalogSource",
    "StaticCatalogSource",
    "CatalogSnapshot",
    "ModelCatalog",
    "ExternalRanker",
    "ModelSelectionService",
    "CatalogWorker",
    "run_catalog_worker",
]
