import json
from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient
from pytest_httpx import HTTPXMock

from metaslim.documents import Document
from metaslim.errors import (
    ExtractionError,
    NoValidCohortsError,
    StoreError,
    StudyNotFoundError,
)
from metaslim.extractor.gemini import GeminiExtractor
from metaslim.models import Formulation
from metaslim.pipeline import (
    API_KEY_MESSAGE,
    PERMISSION_MESSAGE,
    QUOTA_MESSAGE,
    ProgressStatus,
    describe_failure,
    process_document,
    process_documents,
)

pytestmark = pytest.mark.unit

GENERATE_URL = (
    "https://generativelanguage.googleapis.com/v1beta/models/"
    "gemini-2.5-flash:generateContent"
)


@pytest.fixture
def extractor():
    return AsyncMock(spec=GeminiExtractor)


@pytest.mark.asyncio
async def test_process_document_reconciles_against_store(
    extractor, make_candidate, memory_store
):
    extractor.extract.return_value = [make_candidate(), make_candidate(phase="Phase 4")]
    progress = []

    result = await process_document(
        Document.from_text("SURMOUNT-1"),
        extractor,
        memory_store,
        on_progress=lambda *args: progress.append(args),
        index=2,
    )

    assert (result.added, result.filtered_out) == (1, 1)
    assert progress[0] == (2, ProgressStatus.PROCESSING, "AI is extracting data...")
    assert progress[1][2] == "Found 2 cohort(s), filtering and saving..."
    assert progress[-1] == (2, ProgressStatus.SUCCESS, result.message)


@pytest.mark.asyncio
async def test_each_document_sees_the_previous_documents_writes(
    extractor, make_candidate, memory_store
):
    """The same cohort in two documents is inserted once and then updated."""
    extractor.extract.side_effect = [
        [make_candidate(durationWeeks=60)],
        [make_candidate(durationWeeks=72)],
    ]
    documents = [Document.from_text("first", "a.txt"), Document.from_text("second", "b.txt")]

    outcomes = await process_documents(documents, extractor, memory_store)

    assert [o.message for o in outcomes] == [
        "successfully added 1 cohort(s).",
        "successfully updated 1 cohort(s).",
    ]
    [study] = await memory_store.snapshot()
    assert study.duration_weeks == 72


@pytest.mark.asyncio
async def test_a_failing_document_does_not_stop_the_batch(
    extractor, make_candidate, memory_store, tmp_path
):
    extractor.extract.side_effect = [
        ExtractionError("Gemini request failed with HTTP 429: quota", status_code=429),
        [],
        [make_candidate()],
    ]
    unsupported = tmp_path / "slides.pptx"
    unsupported.write_bytes(b"")
    sources = [
        Document.from_text("one", "one.txt"),
        unsupported,
        Document.from_text("two", "two.txt"),
        Document.from_text("three", "three.txt"),
    ]
    progress = []

    outcomes = await process_documents(
        sources, extractor, memory_store, on_progress=lambda *args: progress.append(args)
    )

    assert [o.status for o in outcomes] == [
        ProgressStatus.ERROR,
        ProgressStatus.ERROR,
        ProgressStatus.ERROR,
        ProgressStatus.SUCCESS,
    ]
    assert outcomes[0].message == QUOTA_MESSAGE
    assert outcomes[1].message == "processing failed: unsupported file format: slides.pptx"
    assert outcomes[2].message == "AI failed to extract any valid cohort from the content"
    assert outcomes[3].result.added == 1
    assert (1, ProgressStatus.ERROR, outcomes[1].message) in progress
    assert len(await memory_store.snapshot()) == 1


@pytest.mark.asyncio
async def test_files_are_loaded_before_extraction(extractor, make_candidate, memory_store, tmp_path):
    path = tmp_path / "abstract.txt"
    path.write_text("STEP 1 abstract", encoding="utf-8")
    extractor.extract.return_value = [make_candidate()]

    [outcome] = await process_documents([path], extractor, memory_store)

    assert outcome.status is ProgressStatus.SUCCESS
    [document] = extractor.extract.await_args.args
    assert document.text == "STEP 1 abstract"


@pytest.mark.asyncio
async def test_duplicate_key_tracking_is_passed_through(extractor, make_candidate, memory_store):
    extractor.extract.return_value = [make_candidate(), make_candidate()]

    [outcome] = await process_documents(
        [Document.from_text("dup")], extractor, memory_store, track_batch_keys=False
    )

    assert outcome.result.added == 2


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (NoValidCohortsError("no valid new study cohort was found"), "no valid new study cohort was found"),
        (ExtractionError("HTTP 429", status_code=429), QUOTA_MESSAGE),
        (RuntimeError("You exceeded your current quota"), QUOTA_MESSAGE),
        (ExtractionError("bad request", status_code=400), API_KEY_MESSAGE),
        (ExtractionError("API_KEY_INVALID"), API_KEY_MESSAGE),
        (StoreError("permission denied for table weight_loss_studies"), PERMISSION_MESSAGE),
        (ExtractionError("forbidden", status_code=403), PERMISSION_MESSAGE),
        (ValueError("boom"), "processing failed: boom"),
        (RuntimeError(), "processing failed: RuntimeError"),
    ],
)
def test_describe_failure(error, expected):
    assert describe_failure(error) == expected


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (
            StudyNotFoundError("local-0429b1c2"),
            "processing failed: No study with id 'local-0429b1c2'",
        ),
        (RuntimeError("HTTP 429 Too Many Requests"), QUOTA_MESSAGE),
    ],
)
def test_429_in_text_counts_only_for_foreign_errors(error, expected):
    assert describe_failure(error) == expected


STEP_1_COHORT = {
    "drugName": "semaglutide",
    "drugClass": "GLP-1 RA",
    "company": "Novo Nordisk",
    "trialName": "STEP 1",
    "phase": "Phase 3",
    "hasT2D": False,
    "isChineseCohort": False,
    "durationWeeks": 68,
    "formulation": "subcutaneous-injection",
    "frequency": "once weekly",
    "doses": [{"dose": "2.4mg", "weightLossPercent": 14.9, "nauseaPercent": 44.2}],
}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"formulation": "Subcutaneous injection"},
        {"doses": [{"dose": "2.4mg", "weightLossPercent": -14.9, "nauseaPercent": 44.2}]},
    ],
)
async def test_loosely_formatted_cohort_is_stored(httpx_mock: HTTPXMock, memory_store, overrides):
    """A cohort with valid key fields survives an odd label or a signed weight change."""
    cohort = {**STEP_1_COHORT, **overrides}
    httpx_mock.add_response(
        method="POST",
        url=GENERATE_URL,
        json={"candidates": [{"content": {"parts": [{"text": json.dumps({"studies": [cohort]})}]}}]},
    )

    async with AsyncClient() as client:
        extractor = GeminiExtractor(client=client, api_key="test-key", backoff_base=0.0)
        [outcome] = await process_documents(
            [Document.from_text("STEP 1 results")], extractor, memory_store
        )

    assert outcome.status is ProgressStatus.SUCCESS, outcome.message
    [study] = await memory_store.snapshot()
    assert study.trial_name == "STEP 1"
    assert study.formulation is Formulation.SUBCUTANEOUS_INJECTION
    assert study.doses[0].weight_loss_percent == 14.9
