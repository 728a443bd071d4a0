from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class MatchRunRequest(BaseModel):
    concurrency: Optional[int] = Field(
        default=None, ge=1, le=50, description="Concurrent per-candidate comparisons"
    )


class BatchMatchRequest(BaseModel):
    image_id: Optional[int] = None
    project_id: Optional[int] = None
    concurrency: Optional[int] = Field(default=None, ge=1, description="Detections in flight")

    @model_validator(mode="after")
    def _require_scope(self) -> "BatchMatchRequest":
        if self.image_id is None and self.project_id is None:
            raise ValueError("Either image_id or project_id is required")
        return self


class ManualSelectionRequest(BaseModel):
    candidate_key: str = Field(min_length=1, description="Catalog key (GTIN) of a stored candidate")


class SelectedProductResponse(BaseModel):
    gtin: str
    product_name: Optional[str] = None
    brand_name: Optional[str] = None
    category: Optional[str] = None
    image_url: Optional[str] = None


class MatchResultResponse(BaseModel):
    detection_id: int
    detection_index: int
    status: str
    outcome: str
    reason: str
    search_term: str
    selection_method: Optional[str] = None
    confidence: Optional[float] = None
    selected: Optional[SelectedProductResponse] = None
    funnel: Dict[str, int]


class FunnelResponse(BaseModel):
    detection_id: int
    counts: Dict[str, int]
    match_outcome: Optional[str] = None
    fully_analyzed: bool = False


class StageRecordResponse(BaseModel):
    candidate_key: str
    stage: str
    search_term: Optional[str] = None
    result_rank: Optional[int] = None
    product_name: Optional[str] = None
    brand_name: Optional[str] = None
    measures: Optional[str] = None
    category: Optional[str] = None
    front_image_url: Optional[str] = None
    prefilter_score: Optional[float] = None
    prefilter_reasons: Optional[List[str]] = None
    match_status: Optional[str] = None
    confidence: Optional[float] = None
    visual_similarity: Optional[float] = None
    match_reason: Optional[str] = None
    updated_at: Optional[datetime] = None


class JobResponse(BaseModel):
    task_id: str
    status: str = "queued"
    total: int
    image_id: Optional[int] = None
    project_id: Optional[int] = None


class ManualSelectionResponse(BaseModel):
    detection_id: int
    selected: SelectedProductResponse
    match_outcome: Optional[str] = None
    selection_method: Optional[str] = None
    fully_analyzed: bool
