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
"""Defines the abstract base class for study stores."""

import abc
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from ..models import CandidateRecord, Study

logger = logging.getLogger(__name__)

Subscriber = Callable[[list[Study]], None]
Unsubscribe = Callable[[], None]

# Fields owned by the store; a patch can never overwrite them.
STORE_ASSIGNED_FIELDS = frozenset({"id", "createdAt"})


class BaseStore(abc.ABC):
    """Abstract Base Class for all study stores.

    This class defines the interface that every storage backend must
    implement. Callers receive a concrete store as a parameter; there is no
    process-wide connection. Subscribers registered through ``subscribe``
    receive the full dataset, newest first, after every mutation made
    through the store.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._last_created_at = 0

    @abc.abstractmethod
    async def add(self, record: CandidateRecord) -> str:
        """Persist a new study.

        Args:
            record: The candidate to store. ``id`` and ``createdAt`` are
                    assigned by the store.

        Returns:
            The id of the new study.

        """
        raise NotImplementedError

    @abc.abstractmethod
    async def update(self, study_id: str, patch: Mapping[str, Any]) -> None:
        """Overwrite fields of an existing study.

        Args:
            study_id: The id of the study to update.
            patch: camelCase fields to merge into the stored document.

        Raises:
            StudyNotFoundError: If no study has this id.

        """
        raise NotImplementedError

    @abc.abstractmethod
    async def delete(self, study_id: str) -> None:
        """Remove a single study. Unknown ids are ignored."""
        raise NotImplementedError

    @abc.abstractmethod
    async def delete_many(self, study_ids: Iterable[str]) -> int:
        """Remove every study whose id is listed.

        Returns:
            The number of studies removed. Unknown ids are ignored.

        """
        raise NotImplementedError

    @abc.abstractmethod
    async def delete_all(self) -> None:
        """Remove the whole dataset."""
        raise NotImplementedError

    @abc.abstractmethod
    async def snapshot(self) -> list[Study]:
        """Return the current dataset ordered by ``createdAt``, newest first."""
        raise NotImplementedError

    async def subscribe(self, callback: Subscriber) -> Unsubscribe:
        """Register ``callback`` and deliver the current dataset to it at once.

        Returns:
            A function removing the subscription. Calling it twice is harmless.

        """
        self._subscribers.append(callback)
        self._deliver(callback, await self.snapshot())

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def _publish(self) -> None:
        """Push the current dataset to every subscriber."""
        if not self._subscribers:
            return
        studies = await self.snapshot()
        for callback in list(self._subscribers):
            self._deliver(callback, studies)

    @staticmethod
    def _deliver(callback: Subscriber, studies: list[Study]) -> None:
        try:
            callback(list(studies))
        except Exception:
            # The write already happened; a subscriber failure is only logged.
            logger.exception("Study subscriber %r failed", callback)

    def _next_created_at(self) -> int:
        """Millisecond timestamp, strictly increasing within this store."""
        now = time.time_ns() // 1_000_000
        self._last_created_at = max(now, self._last_created_at + 1)
        return self._last_created_at

    @staticmethod
    def _clean_patch(patch: Mapping[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in patch.items() if k not in STORE_ASSIGNED_FIELDS}

    @staticmethod
    def _sort_newest_first(studies: Iterable[Study]) -> list[Study]:
        return sorted(studies, key=lambda study: study.created_at, reverse=True)
