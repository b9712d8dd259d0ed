from typing import Any

import pytest

from metaslim.models import CandidateRecord, Study
from metaslim.store.local import LocalStore


def _candidate(**overrides: Any) -> CandidateRecord:
    """Builds a valid, in-scope candidate; keyword arguments override fields."""
    data: dict[str, Any] = {
        "drugName": "Tirzepatide",
        "drugClass": "GIP/GLP-1 RA",
        "company": "Eli Lilly",
        "trialName": "SURMOUNT-1",
        "phase": "Phase 3",
        "hasT2D": False,
        "isChineseCohort": False,
        "durationWeeks": 72,
        "formulation": "subcutaneous-injection",
        "frequency": "once weekly",
        "doses": [
            {
                "dose": "15mg",
                "weightLossPercent": 20.9,
                "nauseaPercent": 31.0,
                "vomitingPercent": 12.2,
                "diarrheaPercent": 23.0,
                "constipationPercent": 11.7,
                "saePercent": 2.6,
            }
        ],
    }
    data.update(overrides)
    return CandidateRecord.model_validate(data)


@pytest.fixture
def make_candidate():
    """Provides a factory for candidate records."""
    return _candidate


@pytest.fixture
def make_study():
    """Provides a factory turning a candidate into a stored study."""

    def _study(candidate: CandidateRecord, study_id: str, created_at: int = 1) -> Study:
        return Study.model_validate(
            {**candidate.to_record(), "id": study_id, "createdAt": created_at}
        )

    return _study


@pytest.fixture
def memory_store() -> LocalStore:
    """Provides a LocalStore that keeps its data in memory."""
    return LocalStore()
