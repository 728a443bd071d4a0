import enum
from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class ProcessingStage(str, enum.Enum):
    SEARCH = "search"
    PRE_FILTER = "pre_filter"
    AI_FILTER = "ai_filter"
    VISUAL_MATCH = "visual_match"


STAGE_ORDER: dict[ProcessingStage, int] = {
    ProcessingStage.SEARCH: 0,
    ProcessingStage.PRE_FILTER: 1,
    ProcessingStage.AI_FILTER: 2,
    ProcessingStage.VISUAL_MATCH: 3,
}


class MatchStatus(str, enum.Enum):
    IDENTICAL = "identical"
    ALMOST_SAME = "almost_same"
    NOT_MATCH = "not_match"


class MatchOutcome(str, enum.Enum):
    AUTO_MATCH = "auto_match"
    PROMOTED_MATCH = "promoted_match"
    MANUAL_REVIEW = "manual_review"
    NO_MATCH = "no_match"


class SelectionMethod(str, enum.Enum):
    AUTO_SELECT = "auto_select"
    CONSOLIDATION = "consolidation"
    VISUAL_MATCHING = "visual_matching"


class Project(Base):
    __tablename__ = "projects"
    __table_args__ = {'extend_existing': True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    images: Mapped[List["ShelfImage"]] = relationship(
        "ShelfImage", back_populates="project", cascade="all, delete-orphan"
    )


class ShelfImage(Base):
    __tablename__ = "shelf_images"
    __table_args__ = {'extend_existing': True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[Optional[int]] = mapped_column(ForeignKey("projects.id"), nullable=True)
    image_url: Mapped[str] = mapped_column(Text, nullable=False)
    store_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    project: Mapped[Optional["Project"]] = relationship(Project, back_populates="images")
    detections: Mapped[List["Detection"]] = relationship(
        "Detection", back_populates="image", cascade="all, delete-orphan"
    )


class Detection(Base):
    __tablename__ = "detections"
    __table_args__ = (
        Index("idx_detections_image_index", "image_id", "detection_index"),
        {'extend_existing': True},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    image_id: Mapped[int] = mapped_column(ForeignKey("shelf_images.id"), nullable=False)
    detection_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Bounding region, normalized to a 0-1000 grid
    y0: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    x0: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    y1: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    x1: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    brand_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    product_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    size: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    flavor: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    brand_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    product_name_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    size_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    flavor_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    category_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    selected_gtin: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    selected_product_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    selected_brand_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    selected_category: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    selected_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    selection_method: Mapped[Optional[SelectionMethod]] = mapped_column(
        Enum(SelectionMethod), nullable=True
    )
    match_outcome: Mapped[Optional[MatchOutcome]] = mapped_column(Enum(MatchOutcome), nullable=True)
    match_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fully_analyzed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    analysis_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    image: Mapped["ShelfImage"] = relationship(ShelfImage, back_populates="detections")
    stage_records: Mapped[List["StageRecord"]] = relationship(
        "StageRecord", back_populates="detection", cascade="all, delete-orphan"
    )


class StageRecord(Base):
    __tablename__ = "stage_records"
    __table_args__ = (
        UniqueConstraint(
            "detection_id", "candidate_key", "stage", name="uq_stage_records_detection_candidate_stage"
        ),
        {'extend_existing': True},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    detection_id: Mapped[int] = mapped_column(ForeignKey("detections.id"), nullable=False, index=True)
    candidate_key: Mapped[str] = mapped_column(String(64), nullable=False)
    stage: Mapped[ProcessingStage] = mapped_column(Enum(ProcessingStage), nullable=False)

    search_term: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result_rank: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    product_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    brand_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    measures: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    front_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    prefilter_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    prefilter_reasons: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    # Only populated from the ai_filter stage onwards
    match_status: Mapped[Optional[MatchStatus]] = mapped_column(Enum(MatchStatus), nullable=True)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    visual_similarity: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    match_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    detection: Mapped["Detection"] = relationship(Detection, back_populates="stage_records")
