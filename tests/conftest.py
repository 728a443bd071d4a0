"""Test fixtures for matching and API tests."""

import asyncio
import os
import sys
from contextlib import asynccontextmanager, nullcontext
from pathlib import Path
from typing import AsyncGenerator, Dict, Iterable, Optional

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool


def ensure_src_on_path() -> None:
    root = Path(__file__).resolve().parent.parent
    src_path = root / "src"
    if str(src_path) not in sys.path:
        sys.path.append(str(src_path))


ensure_src_on_path()

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

from api.routers import matching
from models import Base, Detection, MatchStatus, ShelfImage, get_db
from services.product_matching.catalog_search import build_search_term
from services.product_matching.models import (
    Candidate,
    ComparisonResult,
    SearchResult,
    VisualSelection,
)
from services.product_matching.visual_match import VisualComparator


class FakeCatalog:
    """In-process stand-in for the catalog search service."""

    def __init__(self, candidates: Iterable[Candidate] = (), errors: Iterable[Exception] = ()):
        self.candidates = list(candidates)
        self.errors = list(errors)
        self.by_term: Dict[str, list] = {}
        self.calls = []

    async def search(self, attributes) -> SearchResult:
        self.calls.append(attributes)
        await asyncio.sleep(0)
        if self.errors:
            raise self.errors.pop(0)
        term = build_search_term(attributes)
        candidates = self.by_term.get(term, self.candidates)
        return SearchResult(candidates=list(candidates), search_term=term)


class FakeComparator(VisualComparator):
    """Answers comparisons from a status table keyed by candidate key."""

    def __init__(
        self,
        statuses: Optional[Dict[str, MatchStatus]] = None,
        default: MatchStatus = MatchStatus.NOT_MATCH,
        selection: Optional[VisualSelection] = None,
        failing_keys: Iterable[str] = (),
        slow_images: Iterable[str] = (),
        delay: float = 0.0,
    ):
        self.statuses = dict(statuses or {})
        self.default = default
        self.selection = selection
        self.failing_keys = set(failing_keys)
        self.slow_images = set(slow_images)
        self.delay = delay
        self.compare_calls = []
        self.select_calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def compare(self, reference, candidate) -> ComparisonResult:
        self.compare_calls.append(candidate.key)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(10 if reference.image_url in self.slow_images else self.delay)
            if candidate.key in self.failing_keys:
                raise RuntimeError(f"comparison exploded for {candidate.key}")
        finally:
            self.in_flight -= 1
        status = self.statuses.get(candidate.key, self.default)
        confident = status != MatchStatus.NOT_MATCH
        return ComparisonResult(
            status=status,
            confidence=0.9 if confident else 0.2,
            visual_similarity=0.95 if confident else 0.3,
            reason=f"fake {status.value}",
        )

    async def select(self, reference, candidates, attributes) -> VisualSelection:
        self.select_calls.append([c.key for c in candidates])
        await asyncio.sleep(0)
        return self.selection or VisualSelection(selected_key=None, reasoning="Nothing matched")


def candidate(key: str, **fields) -> Candidate:
    defaults = dict(
        name="Acme Cola",
        brand="Acme",
        size="500 ml",
        image_url=f"https://catalog.example/{key}.jpg",
        rank=1,
    )
    defaults.update(fields)
    return Candidate(key=key, **defaults)


@pytest.fixture
def make_candidate():
    return candidate


@pytest.fixture
def fake_catalog():
    return FakeCatalog()


@pytest.fixture
def fake_comparator():
    return FakeComparator()


@pytest.fixture(scope="function")
def db_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine):
    connection = db_engine.connect()
    transaction = connection.begin()
    session = Session(bind=connection)

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture
def shelf_image(db_session: Session) -> ShelfImage:
    image = ShelfImage(image_url="https://images.example/shelf-1.jpg", store_name="Target Store #1234")
    db_session.add(image)
    db_session.commit()
    return image


@pytest.fixture
def make_detection(db_session: Session, shelf_image: ShelfImage):
    def _make(image: Optional[ShelfImage] = None, **fields) -> Detection:
        target = image or shelf_image
        values = dict(
            image_id=target.id,
            detection_index=0,
            y0=100.0,
            x0=100.0,
            y1=400.0,
            x1=300.0,
            brand_name="Acme",
            product_name="Acme Cola",
            size="500ml",
            size_confidence=0.9,
        )
        values.update(fields)
        detection = Detection(**values)
        db_session.add(detection)
        db_session.commit()
        return detection

    return _make


@pytest.fixture(scope="function")
def test_app():
    @asynccontextmanager
    async def test_lifespan(app: FastAPI) -> AsyncGenerator:
        yield

    app = FastAPI(
        title="ShelfMatch Test",
        description="Match shelf product detections to catalog products",
        version="0.1.0",
        lifespan=test_lifespan,
    )

    app.include_router(matching.router, prefix="/api/v1/matching", tags=["matching"])

    @app.get("/")
    async def root():
        return {
            "name": "ShelfMatch",
            "version": "0.1.0",
            "status": "running",
        }

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return app


@pytest.fixture(scope="function")
def client(db_session: Session, test_app: FastAPI, fake_catalog, fake_comparator):
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[matching.get_session_factory] = lambda: (lambda: nullcontext(db_session))
    test_app.dependency_overrides[matching.get_matching_services] = lambda: matching.MatchingServices(
        search_fn=fake_catalog.search,
        comparator=fake_comparator,
    )
    with TestClient(test_app) as test_client:
        yield test_client
    test_app.dependency_overrides.clear()
