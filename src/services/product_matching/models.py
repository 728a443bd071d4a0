"""
Value objects shared by the product matching stages.

Stages exchange these plain dataclasses rather than ORM rows so each stage can
be exercised without a database session.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from models.domain import MatchStatus
from services.product_matching.errors import InvalidRegion

REGION_SCALE = 1000.0

UNKNOWN_VALUES = {"", "unknown", "n/a", "none", "null"}


def clean_attribute(value: Optional[str]) -> Optional[str]:
    """Return a stripped attribute value, or None when the extractor did not know it."""
    if value is None:
        return None
    stripped = str(value).strip()
    if stripped.lower() in UNKNOWN_VALUES:
        return None
    return stripped


@dataclass(frozen=True)
class Region:
    y0: float
    x0: float
    y1: float
    x1: float

    @classmethod
    def from_coordinates(
        cls,
        y0: Optional[float],
        x0: Optional[float],
        y1: Optional[float],
        x1: Optional[float],
    ) -> "Region":
        coords = (y0, x0, y1, x1)
        if any(c is None for c in coords):
            raise InvalidRegion("Bounding region has missing coordinates")
        region = cls(float(y0), float(x0), float(y1), float(x1))
        region.validate()
        return region

    def validate(self) -> None:
        for name, value in (("y0", self.y0), ("x0", self.x0), ("y1", self.y1), ("x1", self.x1)):
            if value != value or value < 0 or value > REGION_SCALE:
                raise InvalidRegion(f"Coordinate {name}={value} outside 0-{int(REGION_SCALE)}")
        if self.y1 <= self.y0 or self.x1 <= self.x0:
            raise InvalidRegion(
                f"Empty bounding region ({self.y0}, {self.x0}, {self.y1}, {self.x1})"
            )

    def as_dict(self) -> Dict[str, float]:
        return {"y0": self.y0, "x0": self.x0, "y1": self.y1, "x1": self.x1}


@dataclass(frozen=True)
class DetectionAttributes:
    """Attributes extracted from the shelf crop, with per-field confidence."""
    brand: Optional[str] = None
    product_name: Optional[str] = None
    size: Optional[str] = None
    flavor: Optional[str] = None
    category: Optional[str] = None
    brand_confidence: Optional[float] = None
    product_name_confidence: Optional[float] = None
    size_confidence: Optional[float] = None
    flavor_confidence: Optional[float] = None
    category_confidence: Optional[float] = None

    def __post_init__(self):
        for name in ("brand", "product_name", "size", "flavor", "category"):
            object.__setattr__(self, name, clean_attribute(getattr(self, name)))

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {
            "brand": self.brand,
            "productName": self.product_name,
            "size": self.size,
            "flavor": self.flavor,
            "category": self.category,
        }


@dataclass(frozen=True)
class ReferenceImage:
    """The shelf image plus the detection's region; the vision service crops it."""
    image_url: str
    region: Region


@dataclass(frozen=True)
class DetectionSnapshot:
    detection_id: int
    detection_index: int
    image_id: int
    image_url: str
    store_name: Optional[str]
    coordinates: Tuple[Optional[float], Optional[float], Optional[float], Optional[float]]
    attributes: DetectionAttributes

    @classmethod
    def from_detection(cls, detection) -> "DetectionSnapshot":
        image = detection.image
        return cls(
            detection_id=detection.id,
            detection_index=detection.detection_index,
            image_id=detection.image_id,
            image_url=image.image_url if image else "",
            store_name=image.store_name if image else None,
            coordinates=(detection.y0, detection.x0, detection.y1, detection.x1),
            attributes=DetectionAttributes(
                brand=detection.brand_name,
                product_name=detection.product_name,
                size=detection.size,
                flavor=detection.flavor,
                category=detection.category,
                brand_confidence=detection.brand_confidence,
                product_name_confidence=detection.product_name_confidence,
                size_confidence=detection.size_confidence,
                flavor_confidence=detection.flavor_confidence,
                category_confidence=detection.category_confidence,
            ),
        )

    @property
    def label(self) -> str:
        return self.attributes.product_name or self.attributes.brand or f"Product #{self.detection_index}"

    def reference_image(self) -> ReferenceImage:
        if not self.image_url:
            raise InvalidRegion(f"Detection {self.detection_id} has no source image")
        return ReferenceImage(image_url=self.image_url, region=Region.from_coordinates(*self.coordinates))


@dataclass(frozen=True)
class Candidate:
    """One catalog entry returned by search. Immutable per search call."""
    key: str
    name: str = ""
    brand: Optional[str] = None
    manufacturer: Optional[str] = None
    size: Optional[str] = None
    category: Optional[str] = None
    image_url: Optional[str] = None
    retailers: Tuple[str, ...] = ()
    rank: int = 0
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class SearchResult:
    candidates: List[Candidate]
    search_term: str


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: Candidate
    score: float
    reasons: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PreFilterResult:
    candidates: List[ScoredCandidate]
    widened: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.candidates


@dataclass(frozen=True)
class ComparisonResult:
    status: MatchStatus
    confidence: float
    visual_similarity: float
    reason: str = ""


@dataclass(frozen=True)
class ClassifiedCandidate:
    candidate: Candidate
    status: MatchStatus
    confidence: float = 0.0
    visual_similarity: float = 0.0
    reason: str = ""
    prefilter_score: Optional[float] = None


@dataclass(frozen=True)
class CandidateScore:
    candidate_key: str
    visual_similarity: float
    passed_threshold: bool


@dataclass(frozen=True)
class VisualSelection:
    """Result of the single multi-candidate selector call."""
    selected_key: Optional[str]
    confidence: float = 0.0
    reasoning: str = ""
    visual_similarity: float = 0.0
    candidate_scores: Tuple[CandidateScore, ...] = ()

    @property
    def has_selection(self) -> bool:
        return self.selected_key is not None


@dataclass(frozen=True)
class StageEntry:
    """One candidate row to persist for a pipeline stage."""
    candidate: Candidate
    search_term: Optional[str] = None
    prefilter_score: Optional[float] = None
    prefilter_reasons: Tuple[str, ...] = ()
    match_status: Optional[MatchStatus] = None
    confidence: Optional[float] = None
    visual_similarity: Optional[float] = None
    match_reason: Optional[str] = None
