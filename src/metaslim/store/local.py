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
"""Provides the local fallback store, backed by a JSON file."""

import json
import logging
import uuid
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ..errors import StudyNotFoundError
from ..models import CandidateRecord, Study
from .base import BaseStore

logger = logging.getLogger(__name__)


class LocalStore(BaseStore):
    """A study store kept in a local JSON file.

    The file holds a JSON array of camelCase study documents. When ``path``
    is None the dataset lives in memory only, which is what the tests use.
    File access is synchronous and rewrites the whole array on every mutation.
    """

    def __init__(self, path: Path | None = None) -> None:
        """Initialize the store and read any existing dataset.

        Args:
            path: The JSON file to persist to. It is created on first write.

        """
        super().__init__()
        self.path = path
        self._studies: list[Study] = self._read()
        if self._studies:
            self._last_created_at = max(study.created_at for study in self._studies)

    def _read(self) -> list[Study]:
        if self.path is None or not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return [Study.model_validate(item) for item in raw]
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.error("Failed to parse local studies in %s: %s", self.path, e)
            return []

    def _write(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        documents = [
            study.model_dump(mode="json", by_alias=True, exclude_none=True)
            for study in self._studies
        ]
        self.path.write_text(
            json.dumps(documents, ensure_ascii=False, indent=2), encoding="utf-8"
        )

    async def add(self, record: CandidateRecord) -> str:
        study_id = f"local-{uuid.uuid4().hex}"
        study = Study.model_validate(
            {**record.to_record(), "id": study_id, "createdAt": self._next_created_at()}
        )
        self._studies.insert(0, study)
        self._write()
        logger.debug("Added study %s (%s)", study_id, study.trial_name)
        await self._publish()
        return study_id

    async def update(self, study_id: str, patch: Mapping[str, Any]) -> None:
        for index, study in enumerate(self._studies):
            if study.id == study_id:
                merged = {
                    **study.model_dump(mode="json", by_alias=True),
                    **self._clean_patch(patch),
                }
                self._studies[index] = Study.model_validate(merged)
                break
        else:
            raise StudyNotFoundError(study_id)
        self._write()
        logger.debug("Updated study %s", study_id)
        await self._publish()

    async def delete(self, study_id: str) -> None:
        await self.delete_many([study_id])

    async def delete_many(self, study_ids: Iterable[str]) -> int:
        doomed = set(study_ids)
        remaining = [study for study in self._studies if study.id not in doomed]
        removed = len(self._studies) - len(remaining)
        self._studies = remaining
        self._write()
        await self._publish()
        return removed

    async def delete_all(self) -> None:
        self._studies = []
        self._write()
        await self._publish()

    async def snapshot(self) -> list[Study]:
        return self._sort_newest_first(study.model_copy(deep=True) for study in self._studies)
