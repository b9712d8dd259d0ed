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
"""Decides whether an extracted candidate is well-formed and in scope."""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from .models import CandidateRecord, Study

IN_SCOPE_PHASE_DIGITS = ("1", "2", "3")

IdentityKey = tuple[str, str, bool, bool]


class RejectReason(str, Enum):
    MISSING_REQUIRED_FIELDS = "missing_required_fields"
    OUT_OF_SCOPE_PHASE = "out_of_scope_phase"


@dataclass(frozen=True)
class Accept:
    """The candidate may be stored; ``match_id`` names the study to update."""

    match_id: str | None = None


@dataclass(frozen=True)
class Reject:
    reason: RejectReason


def identity_key(record: CandidateRecord) -> IdentityKey:
    """Return the natural identity key of a candidate or stored study."""
    return (
        record.drug_name.strip().lower(),
        record.trial_name.strip().lower(),
        record.has_t2d,
        record.is_chinese_cohort,
    )


def is_in_scope_phase(phase: str) -> bool:
    """Substring test, so combined notations such as "Phase 2/3" pass."""
    return any(digit in phase for digit in IN_SCOPE_PHASE_DIGITS)


def classify(
    candidate: CandidateRecord, current_studies: Iterable[Study]
) -> Accept | Reject:
    """Classify a candidate against the dataset snapshot.

    Rules apply in order and the first failing one wins:

    1. blank ``drug_name`` or ``trial_name``, or no ``doses``:
       ``Reject(MISSING_REQUIRED_FIELDS)``.
    2. ``phase`` without any of "1", "2", "3": ``Reject(OUT_OF_SCOPE_PHASE)``.
    3. otherwise ``Accept``, carrying the id of the stored study sharing the
       candidate's identity key, if any.
    """
    if (
        not candidate.drug_name.strip()
        or not candidate.trial_name.strip()
        or not candidate.doses
    ):
        return Reject(RejectReason.MISSING_REQUIRED_FIELDS)

    if not is_in_scope_phase(candidate.phase):
        return Reject(RejectReason.OUT_OF_SCOPE_PHASE)

    key = identity_key(candidate)
    for study in current_studies:
        if identity_key(study) == key:
            return Accept(match_id=study.id)
    return Accept()
