import asyncio
import base64
import json

import pytest
from httpx import AsyncClient, ConnectError
from pytest_httpx import HTTPXMock

from metaslim.documents import Document
from metaslim.errors import ExtractionError, UnsupportedDocumentError
from metaslim.extractor.gemini import GeminiExtractor

pytestmark = pytest.mark.unit

GENERATE_URL = (
    "https://generativelanguage.googleapis.com/v1beta/models/"
    "gemini-2.5-flash:generateContent"
)

STUDY = {
    "drugName": "TIRZEPATIDE",
    "drugClass": "GIP/GLP-1 RA",
    "company": "Eli Lilly",
    "trialName": "SURMOUNT-1",
    "phase": "Phase 3",
    "hasT2D": False,
    "isChineseCohort": False,
    "durationWeeks": 72,
    "formulation": "subcutaneous-injection",
    "frequency": "once weekly",
    "doses": [{"dose": "5mg", "weightLossPercent": 15.0, "nauseaPercent": 24.6}],
}


def gemini_response(payload) -> dict:
    """Wraps a JSON payload the way generateContent returns it."""
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return {"candidates": [{"content": {"parts": [{"text": text}], "role": "model"}}]}


def make_extractor(client: AsyncClient, **kwargs) -> GeminiExtractor:
    kwargs.setdefault("backoff_base", 0.0)
    return GeminiExtractor(client=client, api_key="test-key", **kwargs)


@pytest.mark.asyncio
async def test_extract_text_returns_candidates(httpx_mock: HTTPXMock):
    """Happy path: the studies array becomes candidate records."""
    httpx_mock.add_response(
        method="POST", url=GENERATE_URL, json=gemini_response({"studies": [STUDY]})
    )

    async with AsyncClient() as client:
        records = await make_extractor(client).extract_text("SURMOUNT-1 results ...")

    assert len(records) == 1
    assert records[0].drug_name == "Tirzepatide"
    assert records[0].doses[0].nausea_percent == 24.6

    request = httpx_mock.get_request()
    assert request.headers["x-goog-api-key"] == "test-key"
    body = json.loads(request.content)
    assert body["generationConfig"]["responseMimeType"] == "application/json"
    assert body["generationConfig"]["temperature"] == 0.1
    formulation = body["generationConfig"]["responseSchema"]["properties"]["studies"]["items"][
        "properties"
    ]["formulation"]
    assert formulation["enum"] == ["subcutaneous-injection", "oral", "other", ""]
    assert "SURMOUNT-1 results" in body["contents"][0]["parts"][0]["text"]


@pytest.mark.asyncio
async def test_long_text_is_truncated(httpx_mock: HTTPXMock):
    httpx_mock.add_response(
        method="POST", url=GENERATE_URL, json=gemini_response({"studies": []})
    )

    async with AsyncClient() as client:
        await make_extractor(client, max_text_chars=10).extract_text("A" * 10 + "B" * 50)

    prompt = json.loads(httpx_mock.get_request().content)["contents"][0]["parts"][0]["text"]
    assert prompt.endswith("A" * 10)
    assert "B" not in prompt.split("Literature content:")[1]


@pytest.mark.asyncio
async def test_extract_image_sends_inline_data(httpx_mock: HTTPXMock):
    httpx_mock.add_response(
        method="POST", url=GENERATE_URL, json=gemini_response({"studies": [STUDY]})
    )
    document = Document(name="table.png", data=b"\x89PNG", mime_type="image/png")

    async with AsyncClient() as client:
        records = await make_extractor(client).extract(document)

    assert len(records) == 1
    parts = json.loads(httpx_mock.get_request().content)["contents"][0]["parts"]
    assert parts[0]["inlineData"] == {
        "mimeType": "image/png",
        "data": base64.b64encode(b"\x89PNG").decode("ascii"),
    }
    assert "placebo" in parts[1]["text"].lower()


@pytest.mark.asyncio
async def test_unvalidatable_items_are_dropped(httpx_mock: HTTPXMock, caplog):
    """Items with the wrong shape are dropped; blank ones are left to the filter."""
    broken = {**STUDY, "doses": "three arms"}
    blank = {"drugName": "", "trialName": "", "doses": []}
    httpx_mock.add_response(
        method="POST",
        url=GENERATE_URL,
        json=gemini_response({"studies": [broken, STUDY, blank]}),
    )

    async with AsyncClient() as client:
        records = await make_extractor(client).extract_text("text")

    assert [r.trial_name for r in records] == ["SURMOUNT-1", ""]
    assert "Dropping extracted study #0" in caplog.text


@pytest.mark.asyncio
async def test_retries_on_server_errors(httpx_mock: HTTPXMock, mocker):
    """503 responses are retried with backoff until a response succeeds."""
    httpx_mock.add_response(method="POST", url=GENERATE_URL, status_code=503)
    httpx_mock.add_exception(ConnectError("connection reset"), url=GENERATE_URL)
    httpx_mock.add_response(
        method="POST", url=GENERATE_URL, json=gemini_response({"studies": [STUDY]})
    )
    spy_sleep = mocker.spy(asyncio, "sleep")

    async with AsyncClient() as client:
        records = await make_extractor(client, max_retries=3).extract_text("text")

    assert len(records) == 1
    assert len(httpx_mock.get_requests()) == 3
    # One rate-limit sleep per attempt plus two backoff sleeps.
    assert spy_sleep.call_count == 5


@pytest.mark.asyncio
async def test_gives_up_after_max_retries(httpx_mock: HTTPXMock, caplog):
    for _ in range(2):
        httpx_mock.add_response(
            method="POST",
            url=GENERATE_URL,
            status_code=429,
            json={"error": {"message": "Resource has been exhausted (e.g. check quota)."}},
        )

    async with AsyncClient() as client:
        with pytest.raises(ExtractionError) as excinfo:
            await make_extractor(client, max_retries=2).extract_text("text")

    assert excinfo.value.status_code == 429
    assert "quota" in str(excinfo.value)
    assert f"All retries for {GENERATE_URL} failed." in caplog.text


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(httpx_mock: HTTPXMock):
    httpx_mock.add_response(
        method="POST",
        url=GENERATE_URL,
        status_code=400,
        json={"error": {"message": "API key not valid. Please pass a valid API key."}},
    )

    async with AsyncClient() as client:
        with pytest.raises(ExtractionError, match="API key not valid") as excinfo:
            await make_extractor(client, max_retries=3).extract_text("text")

    assert excinfo.value.status_code == 400
    assert len(httpx_mock.get_requests()) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("response", "message"),
    [
        ({"candidates": []}, "empty response"),
        (gemini_response("   "), "empty response"),
        (gemini_response("{not json"), "invalid JSON"),
        (gemini_response({"cohorts": []}), "missing 'studies' array"),
        (gemini_response([STUDY]), "missing 'studies' array"),
        ([{"candidates": []}], "Malformed API response"),
        ({"candidates": ["not an object"]}, "Malformed API response"),
        ({"candidates": [{"content": None}]}, "empty response"),
    ],
)
async def test_unusable_responses_raise(httpx_mock: HTTPXMock, response, message):
    httpx_mock.add_response(method="POST", url=GENERATE_URL, json=response)

    async with AsyncClient() as client:
        with pytest.raises(ExtractionError, match=message):
            await make_extractor(client).extract_text("text")


@pytest.mark.asyncio
async def test_document_without_content_is_unsupported():
    async with AsyncClient() as client:
        with pytest.raises(UnsupportedDocumentError):
            await make_extractor(client).extract(Document(name="empty.bin"))
