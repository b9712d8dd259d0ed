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
"""Merges a batch of extracted candidates into the study dataset."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from .errors import AllOutOfScopeError, NoValidCohortsError
from .filter import Accept, IdentityKey, RejectReason, classify, identity_key
from .models import CandidateRecord, Study
from .store.base import BaseStore

logger = logging.getLogger(__name__)

NOTHING_EXTRACTED_MESSAGE = "AI failed to extract any valid cohort from the content"
NO_VALID_COHORTS_MESSAGE = "no valid new study cohort was found"
ALL_OUT_OF_SCOPE_MESSAGE = "all extracted cohorts were non phase-1–3 studies"
MESSAGE_SEPARATOR = "，"


@dataclass
class ReconciliationResult:
    """Outcome counters of one reconciliation pass."""

    added: int = 0
    updated: int = 0
    filtered_out: int = 0
    # Structurally invalid candidates; logged, never reported to the user.
    skipped: int = 0

    @property
    def message(self) -> str:
        parts = []
        if self.added:
            parts.append(f"successfully added {self.added} cohort(s)")
        if self.updated:
            parts.append(f"successfully updated {self.updated} cohort(s)")
        if self.filtered_out:
            parts.append(f"{self.filtered_out} non phase-1–3 studies ignored")
        return MESSAGE_SEPARATOR.join(parts) + "."

    def __str__(self) -> str:
        return self.message


async def reconcile(
    candidates: Sequence[CandidateRecord],
    current_studies: Sequence[Study],
    store: BaseStore,
    *,
    track_batch_keys: bool = True,
) -> ReconciliationResult:
    """Insert or update every accepted candidate, one at a time.

    Matching runs against ``current_studies``, the snapshot taken before the
    batch; it is never re-read or modified. With ``track_batch_keys`` a
    candidate repeating the identity key of a study inserted earlier in the
    same batch updates that study instead of inserting a second one.

    Store errors propagate unchanged and abort the rest of the batch;
    mutations already applied are kept.

    Args:
        candidates: The records extracted from one document or text block.
        current_studies: The dataset snapshot held by the caller.
        store: The store receiving the mutations.
        track_batch_keys: Whether to match against keys inserted in this batch.

    Returns:
        The counters, whose ``message`` summarizes the pass.

    Raises:
        NoValidCohortsError: If the batch is empty, or nothing was accepted
            and not every candidate was out of phase scope.
        AllOutOfScopeError: If every candidate was out of phase scope.

    """
    if not candidates:
        raise NoValidCohortsError(NOTHING_EXTRACTED_MESSAGE)

    result = ReconciliationResult()
    inserted_in_batch: dict[IdentityKey, str] = {}

    for candidate in candidates:
        decision = classify(candidate, current_studies)

        if not isinstance(decision, Accept):
            if decision.reason is RejectReason.OUT_OF_SCOPE_PHASE:
                result.filtered_out += 1
                logger.info(
                    "Ignoring %s / %s: phase %r is outside 1-3",
                    candidate.drug_name,
                    candidate.trial_name,
                    candidate.phase,
                )
            else:
                result.skipped += 1
                logger.debug("Skipping structurally invalid candidate: %r", candidate)
            continue

        key = identity_key(candidate)
        match_id = decision.match_id
        if match_id is None and track_batch_keys:
            match_id = inserted_in_batch.get(key)

        if match_id is not None:
            await store.update(match_id, candidate.to_record())
            result.updated += 1
            logger.info("Updated study %s from %s", match_id, candidate.trial_name)
        else:
            new_id = await store.add(candidate)
            inserted_in_batch[key] = new_id
            result.added += 1
            logger.info("Added study %s from %s", new_id, candidate.trial_name)

    if result.added == 0 and result.updated == 0:
        if result.filtered_out == len(candidates):
            raise AllOutOfScopeError(ALL_OUT_OF_SCOPE_MESSAGE)
        raise NoValidCohortsError(NO_VALID_COHORTS_MESSAGE)

    logger.info("Reconciliation finished: %s", result.message)
    return result
