"""Shared pytest fixtures for the clinical_evidence test suite."""

import asyncio

import pytest

from clinical_evidence import config
from clinical_evidence.models import NormalizedStudy, SourceResult, StudyType, UnifiedStudy


@pytest.fixture(autouse=True)
def mock_env_vars(monkeypatch):
    """Keep real API keys out of tests so no adapter can reach the network."""
    monkeypatch.setenv("SPRINGER_API_KEY", "")
    monkeypatch.setenv("TRIP_API_KEY", "")
    monkeypatch.setenv("PUBMED_API_KEY", "")
    monkeypatch.setattr(config, "SPRINGER_API_KEY", "")
    monkeypatch.setattr(config, "TRIP_API_KEY", "")
    monkeypatch.setattr(config, "PUBMED_API_KEY", "")


def build_study(**overrides) -> UnifiedStudy:
    fields = dict(
        id="10.1000/test.1",
        title="Aspirin for primary prevention of cardiovascular events",
        abstract="A systematic review and meta-analysis of randomized trials.",
        authors=["Smith J", "Doe A"],
        journal="PLOS Medicine",
        publication_date="2023-05-01",
        url="https://example.org/study",
        database="PLOS",
        raw_study_type="Systematic Review",
        study_type=StudyType.SYSTEMATIC_REVIEW,
        quality_score=85,
        relevance_score=90,
        is_open_access=True,
        doi="10.1000/test.1",
    )
    fields.update(overrides)
    return UnifiedStudy(**fields)


def build_record(**overrides) -> NormalizedStudy:
    fields = dict(
        id="10.1000/rec.1",
        title="Aspirin in cardiovascular prevention: a systematic review",
        source="PLOS",
        abstract="Systematic review and meta-analysis of aspirin for cardiovascular prevention.",
        authors=("Smith J",),
        journal="PLOS Medicine",
        publication_date="2023-05-01",
        raw_study_type="Systematic Review",
        doi="10.1000/rec.1",
        quality_score=85,
        relevance_score=90,
        is_open_access=True,
    )
    fields.update(overrides)
    return NormalizedStudy(**fields)


@pytest.fixture
def make_study():
    """Factory for UnifiedStudy with sensible, includable defaults."""
    return build_study


@pytest.fixture
def make_record():
    """Factory for adapter-level NormalizedStudy records."""
    return build_record


class FakeAdapter:
    """In-memory source adapter. Set `error` to raise, `delay` to stall."""

    def __init__(self, source, records=(), error=None, delay=0.0):
        self.SOURCE = source
        self.records = tuple(records)
        self.error = error
        self.delay = delay
        self.calls = []

    async def search(self, query, filters=None):
        self.calls.append((query, filters))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return SourceResult(self.SOURCE, self.records)


@pytest.fixture
def fake_adapter():
    return FakeAdapter
