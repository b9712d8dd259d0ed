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
"""Runs uploaded documents through extraction and reconciliation.

Documents are processed one at a time: each is fully reconciled against a
fresh snapshot before the next one starts, and a failure is confined to the
document that caused it.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .documents import Document, load_document
from .errors import ExtractionError, MetaslimError, ReconciliationError
from .extractor.gemini import GeminiExtractor
from .reconciler import ReconciliationResult, reconcile
from .store.base import BaseStore

logger = logging.getLogger(__name__)

QUOTA_MESSAGE = (
    "API request quota exceeded. Wait a moment and retry, "
    "or check the usage of your Google AI Studio account."
)
API_KEY_MESSAGE = "The Gemini API key is invalid or the project is not configured. Check the key."
PERMISSION_MESSAGE = "Insufficient database permissions. Check the store access rules."


class ProgressStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"


ProgressCallback = Callable[[int, ProgressStatus, str], None]


@dataclass
class DocumentOutcome:
    """Final status of one document of a batch."""

    name: str
    status: ProgressStatus
    message: str
    result: ReconciliationResult | None = None


def _ignore_progress(index: int, status: ProgressStatus, message: str) -> None:
    return None


def describe_failure(error: BaseException) -> str:
    """Turn an exception into the message shown for a failed document."""
    if isinstance(error, ReconciliationError):
        return str(error)

    message = str(error) or error.__class__.__name__
    lowered = message.lower()
    status_code = getattr(error, "status_code", None)
    # Ids inside our own errors may contain "429".
    quota_hit = status_code == 429 or "quota" in lowered
    if not isinstance(error, MetaslimError):
        quota_hit = quota_hit or "429" in lowered

    if quota_hit:
        return QUOTA_MESSAGE
    if (
        status_code == 400
        or "api key not valid" in lowered
        or "api_key_invalid" in lowered
    ):
        return API_KEY_MESSAGE
    if (
        status_code == 403
        or "permission-denied" in lowered
        or "permission denied" in lowered
        or "insufficient permissions" in lowered
    ):
        return PERMISSION_MESSAGE
    return f"processing failed: {message}"


async def process_document(
    document: Document,
    extractor: GeminiExtractor,
    store: BaseStore,
    *,
    track_batch_keys: bool = True,
    on_progress: ProgressCallback = _ignore_progress,
    index: int = 0,
) -> ReconciliationResult:
    """Extract candidates from ``document`` and reconcile them into ``store``.

    Errors propagate; ``process_documents`` is where they are contained.
    """
    on_progress(index, ProgressStatus.PROCESSING, "AI is extracting data...")
    candidates = await extractor.extract(document)

    on_progress(
        index,
        ProgressStatus.PROCESSING,
        f"Found {len(candidates)} cohort(s), filtering and saving...",
    )
    current_studies = await store.snapshot()
    result = await reconcile(
        candidates, current_studies, store, track_batch_keys=track_batch_keys
    )
    on_progress(index, ProgressStatus.SUCCESS, result.message)
    return result


async def process_documents(
    sources: Sequence[Path | Document],
    extractor: GeminiExtractor,
    store: BaseStore,
    *,
    max_pdf_pages: int = 15,
    track_batch_keys: bool = True,
    on_progress: ProgressCallback = _ignore_progress,
) -> list[DocumentOutcome]:
    """Process files and pasted texts sequentially, isolating failures.

    Returns:
        One outcome per source, in input order.
    """
    outcomes = []
    for index, source in enumerate(sources):
        name = source.name
        try:
            if isinstance(source, Path):
                on_progress(index, ProgressStatus.PROCESSING, f"Reading {name}...")
                document = load_document(source, max_pdf_pages=max_pdf_pages)
            else:
                document = source
            result = await process_document(
                document,
                extractor,
                store,
                track_batch_keys=track_batch_keys,
                on_progress=on_progress,
                index=index,
            )
            outcomes.append(
                DocumentOutcome(name, ProgressStatus.SUCCESS, result.message, result)
            )
        except Exception as e:
            if isinstance(e, (ReconciliationError, ExtractionError)):
                logger.warning("Processing %s failed: %s", name, e)
            else:
                logger.error("Processing %s failed: %s", name, e, exc_info=True)
            message = describe_failure(e)
            on_progress(index, ProgressStatus.ERROR, message)
            outcomes.append(DocumentOutcome(name, ProgressStatus.ERROR, message))
    return outcomes
