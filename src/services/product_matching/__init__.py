from services.product_matching.catalog_search import CatalogSearchClient, build_search_term
from services.product_matching.consolidation import (
    ConsolidationDecision,
    consolidate,
    consolidate_selection,
)
from services.product_matching.errors import (
    CandidateNotFound,
    InvalidRegion,
    MatchingCancelled,
    MatchingError,
    NoEligibleDetections,
    SearchMisconfigured,
    SearchUnavailable,
    StorageWriteFailed,
    VisualMatchUnavailable,
)
from services.product_matching.models import (
    Candidate,
    DetectionAttributes,
    DetectionSnapshot,
    SearchResult,
)
from services.product_matching.pipeline import (
    ItemState,
    MatchingPipeline,
    PipelineConfig,
    PipelineResult,
)
from services.product_matching.prefilter import PreFilterConfig, prefilter_candidates
from services.product_matching.progress import ProgressChannel, ProgressEvent, encode_sse
from services.product_matching.stage_store import StageFunnel, StageStore
from services.product_matching.visual_match import (
    VisualComparator,
    VisualComparisonClient,
    classify_candidates,
    select_best_match,
)

__all__ = [
    "CatalogSearchClient",
    "build_search_term",
    "ConsolidationDecision",
    "consolidate",
    "consolidate_selection",
    "MatchingError",
    "SearchUnavailable",
    "SearchMisconfigured",
    "VisualMatchUnavailable",
    "InvalidRegion",
    "StorageWriteFailed",
    "MatchingCancelled",
    "NoEligibleDetections",
    "CandidateNotFound",
    "Candidate",
    "DetectionAttributes",
    "DetectionSnapshot",
    "SearchResult",
    "ItemState",
    "MatchingPipeline",
    "PipelineConfig",
    "PipelineResult",
    "PreFilterConfig",
    "prefilter_candidates",
    "ProgressChannel",
    "ProgressEvent",
    "encode_sse",
    "StageFunnel",
    "StageStore",
    "VisualComparator",
    "VisualComparisonClient",
    "classify_candidates",
    "select_best_match",
]
