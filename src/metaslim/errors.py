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
"""Exception hierarchy for the application."""


class MetaslimError(Exception):
    """Base class for all errors raised by metaslim."""


class ReconciliationError(MetaslimError):
    """Raised when a batch of candidates yields no storage mutation."""


class NoValidCohortsError(ReconciliationError):
    """Nothing was accepted and not every rejection was phase-related."""


class AllOutOfScopeError(ReconciliationError):
    """Every candidate of the batch was rejected for its trial phase."""


class StoreError(MetaslimError):
    """Raised when a store mutation or read fails."""


class StudyNotFoundError(StoreError):
    """Raised when updating a study id the store does not know."""

    def __init__(self, study_id: str) -> None:
        super().__init__(f"No study with id '{study_id}'")
        self.study_id = study_id


class ExtractionError(MetaslimError):
    """Raised when the LLM extraction call fails or returns an unusable response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnsupportedDocumentError(MetaslimError):
    """Raised for an uploaded file that is neither a PDF, an image nor text."""
