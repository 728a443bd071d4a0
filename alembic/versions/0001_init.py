"""shelf matching schema

Revision ID: 0001
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

PROCESSING_STAGE = sa.Enum("SEARCH", "PRE_FILTER", "AI_FILTER", "VISUAL_MATCH", name="processingstage")
MATCH_STATUS = sa.Enum("IDENTICAL", "ALMOST_SAME", "NOT_MATCH", name="matchstatus")
MATCH_OUTCOME = sa.Enum(
    "AUTO_MATCH", "PROMOTED_MATCH", "MANUAL_REVIEW", "NO_MATCH", name="matchoutcome"
)
SELECTION_METHOD = sa.Enum("AUTO_SELECT", "CONSOLIDATION", "VISUAL_MATCHING", name="selectionmethod")


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        _timestamp("created_at"),
    )
    op.create_table(
        "shelf_images",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id"), nullable=True),
        sa.Column("image_url", sa.Text(), nullable=False),
        sa.Column("store_name", sa.String(255), nullable=True),
        _timestamp("created_at"),
    )
    op.create_table(
        "detections",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("image_id", sa.Integer(), sa.ForeignKey("shelf_images.id"), nullable=False),
        sa.Column("detection_index", sa.Integer(), nullable=False, server_default="0"),
        *[sa.Column(c, sa.Float(), nullable=True) for c in ("y0", "x0", "y1", "x1")],
        sa.Column("brand_name", sa.String(255), nullable=True),
        sa.Column("product_name", sa.String(500), nullable=True),
        sa.Column("size", sa.String(100), nullable=True),
        sa.Column("flavor", sa.String(255), nullable=True),
        sa.Column("category", sa.String(255), nullable=True),
        *[
            sa.Column(f"{attr}_confidence", sa.Float(), nullable=True)
            for attr in ("brand", "product_name", "size", "flavor", "category")
        ],
        sa.Column("selected_gtin", sa.String(64), nullable=True),
        sa.Column("selected_product_name", sa.String(500), nullable=True),
        sa.Column("selected_brand_name", sa.String(255), nullable=True),
        sa.Column("selected_category", sa.String(500), nullable=True),
        sa.Column("selected_image_url", sa.Text(), nullable=True),
        sa.Column("selection_method", SELECTION_METHOD, nullable=True),
        sa.Column("match_outcome", MATCH_OUTCOME, nullable=True),
        sa.Column("match_reason", sa.Text(), nullable=True),
        sa.Column("fully_analyzed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("analysis_completed_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("idx_detections_image_index", "detections", ["image_id", "detection_index"])
    op.create_table(
        "stage_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("detection_id", sa.Integer(), sa.ForeignKey("detections.id"), nullable=False),
        sa.Column("candidate_key", sa.String(64), nullable=False),
        sa.Column("stage", PROCESSING_STAGE, nullable=False),
        sa.Column("search_term", sa.Text(), nullable=True),
        sa.Column("result_rank", sa.Integer(), nullable=True),
        sa.Column("product_name", sa.String(500), nullable=True),
        sa.Column("brand_name", sa.String(255), nullable=True),
        sa.Column("measures", sa.String(255), nullable=True),
        sa.Column("category", sa.String(500), nullable=True),
        sa.Column("front_image_url", sa.Text(), nullable=True),
        sa.Column("raw_payload", sa.JSON(), nullable=True),
        sa.Column("prefilter_score", sa.Float(), nullable=True),
        sa.Column("prefilter_reasons", sa.JSON(), nullable=True),
        sa.Column("match_status", MATCH_STATUS, nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("visual_similarity", sa.Float(), nullable=True),
        sa.Column("match_reason", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint(
            "detection_id", "candidate_key", "stage", name="uq_stage_records_detection_candidate_stage"
        ),
    )
    op.create_index("ix_stage_records_detection_id", "stage_records", ["detection_id"])


def downgrade() -> None:
    op.drop_index("ix_stage_records_detection_id", table_name="stage_records")
    op.drop_table("stage_records")
    op.drop_index("idx_detections_image_index", table_name="detections")
    op.drop_table("detections")
    op.drop_table("shelf_images")
    op.drop_table("projects")
    bind = op.get_bind()
    for enum in (PROCESSING_STAGE, MATCH_STATUS, MATCH_OUTCOME, SELECTION_METHOD):
        enum.drop(bind, checkfirst=True)
