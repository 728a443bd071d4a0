from models.database import Base, SessionLocal, get_db, init_db
from models.domain import (
    STAGE_ORDER,
    Detection,
    MatchOutcome,
    MatchStatus,
    ProcessingStage,
    Project,
    SelectionMethod,
    ShelfImage,
    StageRecord,
)

__all__ = [
    "Base",
    "SessionLocal",
    "get_db",
    "init_db",
    "STAGE_ORDER",
    "Project",
    "ShelfImage",
    "Detection",
    "StageRecord",
    "ProcessingStage",
    "MatchStatus",
    "MatchOutcome",
    "SelectionMethod",
]
