# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Provides a class to extract study cohorts from literature with Gemini."""

import asyncio
import base64
import json
import logging
import random
from typing import Any

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..documents import Document
from ..errors import ExtractionError, UnsupportedDocumentError
from ..models import CandidateRecord, Formulation
from ..normalize import capitalize_drug_name

logger = logging.getLogger(__name__)

USER_AGENT = "metaslim/0.1.0"
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
FORMULATION_VALUES = [formulation.value for formulation in Formulation]

DOSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "dose": {"type": "STRING", "description": "Dose label, e.g. '5mg'"},
        "weightLossPercent": {"type": "NUMBER", "description": "Body weight reduction in percent"},
        "nauseaPercent": {"type": "NUMBER", "description": "Nausea incidence in percent"},
        "vomitingPercent": {"type": "NUMBER", "description": "Vomiting incidence in percent"},
        "diarrheaPercent": {"type": "NUMBER", "description": "Diarrhea incidence in percent"},
        "constipationPercent": {"type": "NUMBER", "description": "Constipation incidence in percent"},
        "saePercent": {"type": "NUMBER", "description": "Serious adverse event incidence in percent"},
    },
    "required": [
        "dose",
        "weightLossPercent",
        "nauseaPercent",
        "vomitingPercent",
        "diarrheaPercent",
        "constipationPercent",
        "saePercent",
    ],
}

STUDY_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "drugName": {"type": "STRING", "description": "Generic drug name"},
        "drugClass": {"type": "STRING", "description": "Drug class, e.g. GLP-1 RA, GIP/GLP-1"},
        "company": {"type": "STRING", "description": "Sponsor company"},
        "trialName": {"type": "STRING", "description": "Trial name or identifier, e.g. SURMOUNT-1"},
        "phase": {
            "type": "STRING",
            "description": (
                "Trial phase. Must be one of 'Phase 1', 'Phase 2', 'Phase 3'; "
                "return '' when the literature names none of these."
            ),
        },
        "hasT2D": {"type": "BOOLEAN", "description": "Whether this cohort has type 2 diabetes"},
        "isChineseCohort": {
            "type": "BOOLEAN",
            "description": "Whether this cohort is predominantly Chinese (e.g. STEP-China)",
        },
        "durationWeeks": {"type": "INTEGER", "description": "Trial duration in weeks"},
        "formulation": {
            "type": "STRING",
            "format": "enum",
            "enum": FORMULATION_VALUES,
            "description": "Must be one of 'subcutaneous-injection', 'oral', 'other'.",
        },
        "frequency": {"type": "STRING", "description": "Dosing frequency, e.g. 'once weekly'"},
        "summary": {"type": "STRING", "description": "One-sentence key finding for this cohort"},
        "doses": {"type": "ARRAY", "items": DOSE_SCHEMA},
    },
    "required": [
        "drugName",
        "drugClass",
        "company",
        "trialName",
        "phase",
        "hasT2D",
        "isChineseCohort",
        "durationWeeks",
        "formulation",
        "frequency",
        "doses",
    ],
}

RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "studies": {
            "type": "ARRAY",
            "description": (
                "Every independently analysed study cohort in the document. "
                "One document may contain several cohorts."
            ),
            "items": STUDY_SCHEMA,
        },
    },
    "required": ["studies"],
}

EXTRACTION_PROMPT = """You are an expert assistant for analysing medical literature.
Extract the key results of weight-loss drug trials from the clinical-trial text,
screenshot or image provided, following the JSON schema.

Important rules:
- Analysis strategy: when the literature reports several strategies (e.g.
  intention-to-treat / treatment-policy versus per-protocol), extract the
  intention-to-treat results.
- Tables are the main source of exact numbers, especially adverse-event rates
  (nausea, vomiting, diarrhea, constipation, SAE). Scan every table and match
  each row (usually a dose group) to the right column. Values may be written as
  "N (%)" or as a bare percentage; always extract the percentage, e.g. 22.5 for
  "45 (22.5%)".
- Never extract placebo data. Ignore every row or column labelled "Placebo",
  in tables and in the text. Only report treatment arms with the actual drug.
- Stratified analyses: when the literature analyses populations separately
  (for example patients with type 2 diabetes and patients without diabetes),
  return each independently analysed cohort as its own study object.

For each cohort extract:
1. Drug: generic name, class (e.g. GLP-1 RA, GIP/GLP-1), sponsor company.
2. Design: trial name or number (e.g. SURMOUNT-1), phase, whether the cohort has
   type 2 diabetes (hasT2D), whether it is predominantly Chinese
   (isChineseCohort), duration in weeks, formulation ('subcutaneous-injection',
   'oral' or 'other'), dosing frequency (e.g. 'once weekly', 'once daily').
3. Efficacy: percentage body-weight reduction of every dose group.
4. Safety: nausea, vomiting, diarrhea, constipation and SAE rates of every dose group.

When a value is not reported use 0 for numbers and "" for strings. All numeric
fields must be numbers, not strings."""


def _error_detail(response: httpx.Response) -> str:
    try:
        return response.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return response.text[:200]


def _response_text(payload: Any) -> str:
    """Concatenate the text parts of the first candidate of a response."""
    try:
        candidates = payload.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text") or "" for part in parts)
    except (AttributeError, TypeError) as e:
        raise ExtractionError(f"Malformed API response: {e}") from e


class GeminiExtractor:
    """Extractor turning documents into candidate records with the Gemini API."""

    DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        model: str = "gemini-2.5-flash",
        base_url: str = DEFAULT_BASE_URL,
        temperature: float = 0.1,
        max_text_chars: int = 30000,
        max_retries: int = 3,
        rate_limit_delay: float = 0.0,
        backoff_base: float = 1.0,
    ):
        """Initializes the extractor.

        Args:
            client: An httpx.AsyncClient for making requests.
            api_key: The Gemini API key.
            model: The Gemini model name.
            base_url: The Generative Language API root.
            temperature: Sampling temperature; low values keep numbers faithful.
            max_text_chars: Longer texts are truncated before the call.
            max_retries: Maximum number of attempts for a failed request.
            rate_limit_delay: Seconds to wait before every request.
            backoff_base: Base of the exponential backoff between retries.
        """
        if not api_key:
            logger.warning("Gemini API key is missing. Extraction calls will fail.")
        self.client = client
        self.client.headers["User-Agent"] = USER_AGENT
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_text_chars = max_text_chars
        self.max_retries = max(1, max_retries)
        self.rate_limit_delay = rate_limit_delay
        self.backoff_base = backoff_base

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, settings: Settings) -> "GeminiExtractor":
        return cls(
            client=client,
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            base_url=settings.gemini_base_url,
            temperature=settings.temperature,
            max_text_chars=settings.max_text_chars,
            max_retries=settings.max_retries,
        )

    async def extract(self, document: Document) -> list[CandidateRecord]:
        """Extract candidate records from a text or image document."""
        if document.is_image:
            return await self.extract_image(document.data, document.mime_type or "image/png")
        if document.text is not None:
            return await self.extract_text(document.text)
        raise UnsupportedDocumentError(f"unsupported file format: {document.name}")

    async def extract_text(self, text: str) -> list[CandidateRecord]:
        prompt = f"{EXTRACTION_PROMPT}\n\nLiterature content:\n{text[: self.max_text_chars]}"
        payload = await self._generate([{"text": prompt}])
        return self._parse_response(payload)

    async def extract_image(self, data: bytes, mime_type: str) -> list[CandidateRecord]:
        image_part = {
            "inlineData": {
                "mimeType": mime_type,
                "data": base64.b64encode(data).decode("ascii"),
            }
        }
        payload = await self._generate([image_part, {"text": EXTRACTION_PROMPT}])
        return self._parse_response(payload)

    async def _generate(self, parts: list[dict[str, Any]]) -> dict[str, Any]:
        """Calls generateContent with retries and exponential backoff.

        429 and 5xx responses and transport errors are retried; any other
        HTTP error fails at once.
        """
        url = f"{self.base_url}/models/{self.model}:generateContent"
        body = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": RESPONSE_SCHEMA,
                "temperature": self.temperature,
            },
        }
        last_error: ExtractionError | None = None
        for attempt in range(self.max_retries):
            try:
                await asyncio.sleep(self.rate_limit_delay)
                response = await self.client.post(
                    url, json=body, headers={"x-goog-api-key": self.api_key}
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                error = ExtractionError(
                    f"Gemini request failed with HTTP {status}: {_error_detail(e.response)}",
                    status_code=status,
                )
                if status not in RETRYABLE_STATUS_CODES:
                    raise error from e
                last_error = error
            except httpx.TransportError as e:
                last_error = ExtractionError(f"Gemini request failed: {e}")
            else:
                try:
                    return response.json()
                except ValueError as e:
                    raise ExtractionError(f"Gemini returned a non-JSON body: {e}") from e

            logger.warning(
                "Request to %s failed on attempt %d/%d: %s",
                url,
                attempt + 1,
                self.max_retries,
                last_error,
            )
            if attempt + 1 < self.max_retries:
                backoff_time = self.backoff_base * (2**attempt) + random.uniform(
                    0, self.backoff_base
                )
                await asyncio.sleep(backoff_time)

        logger.error("All retries for %s failed.", url)
        raise last_error

    def _parse_response(self, payload: Any) -> list[CandidateRecord]:
        """Turns a generateContent response into candidate records.

        Items of the ``studies`` array that cannot be validated at all are
        dropped with a warning; blank fields are left for the record filter.
        """
        text = _response_text(payload)
        if not text.strip():
            raise ExtractionError(
                "The API returned an empty response. "
                "The file may not contain any analysable data."
            )

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ExtractionError(f"The API returned invalid JSON: {e}") from e

        studies = data.get("studies") if isinstance(data, dict) else None
        if not isinstance(studies, list):
            raise ExtractionError("Malformed API response (missing 'studies' array).")

        records = []
        for index, item in enumerate(studies):
            try:
                record = CandidateRecord.model_validate(item)
            except ValidationError as e:
                logger.warning("Dropping extracted study #%d: %s", index, e)
                continue
            records.append(
                record.model_copy(update={"drug_name": capitalize_drug_name(record.drug_name)})
            )
        logger.info("Gemini returned %d study cohort(s).", len(records))
        return records
