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
"""Defines the Pydantic data models for the application.

Attribute names are snake_case; the serialized (stored) form uses the
camelCase aliases, e.g. ``drug_name`` <-> ``drugName``.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class Formulation(str, Enum):
    """Drug formulation of a study cohort."""

    SUBCUTANEOUS_INJECTION = "subcutaneous-injection"
    ORAL = "oral"
    OTHER = "other"
    UNSPECIFIED = ""


# Labels used by Chinese-language extraction output.
_FORMULATION_LABELS = {
    "皮下注射": Formulation.SUBCUTANEOUS_INJECTION,
    "口服": Formulation.ORAL,
    "其他": Formulation.OTHER,
}


def _as_number(value: Any) -> Any:
    """None -> 0.0; numbers and numeric strings ("14.9", "-3 %") -> float."""
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().rstrip("%").strip() or 0)
        except ValueError:
            return value
    return value


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DoseObservation(_CamelModel):
    """Efficacy and safety outcomes of one dose arm.

    Every percentage is non-negative; 0 means "not reported". A weight change
    reported as negative is stored as its magnitude; a negative adverse-event
    rate is treated as not reported.
    """

    dose: str = ""
    weight_loss_percent: float = Field(default=0.0, ge=0)
    nausea_percent: float = Field(default=0.0, ge=0)
    vomiting_percent: float = Field(default=0.0, ge=0)
    diarrhea_percent: float = Field(default=0.0, ge=0)
    constipation_percent: float = Field(default=0.0, ge=0)
    sae_percent: float = Field(default=0.0, ge=0)

    @field_validator("dose", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator(
        "nausea_percent",
        "vomiting_percent",
        "diarrhea_percent",
        "constipation_percent",
        "sae_percent",
        mode="before",
    )
    @classmethod
    def _rate_or_zero(cls, value: Any) -> Any:
        number = _as_number(value)
        if isinstance(number, float) and number < 0:
            return 0
        return number

    @field_validator("weight_loss_percent", mode="before")
    @classmethod
    def _weight_change_as_loss(cls, value: Any) -> Any:
        # Papers report the change as -14.9; the dataset stores the loss, 14.9.
        number = _as_number(value)
        return abs(number) if isinstance(number, float) else number


class CandidateRecord(_CamelModel):
    """An unvalidated, unpersisted study cohort produced by the extractor.

    Blank names or an empty ``doses`` list are accepted here on purpose: the
    record filter decides whether a candidate is well-formed.
    """

    drug_name: str = ""
    drug_class: str = ""
    company: str = ""
    trial_name: str = ""
    phase: str = ""
    has_t2d: bool = Field(default=False, alias="hasT2D")
    is_chinese_cohort: bool = False
    duration_weeks: int = 0
    formulation: Formulation = Formulation.UNSPECIFIED
    frequency: str = ""
    doses: list[DoseObservation] = Field(default_factory=list)
    summary: str | None = None

    @field_validator(
        "drug_name", "drug_class", "company", "trial_name", "phase", "frequency",
        mode="before",
    )
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("has_t2d", "is_chinese_cohort", mode="before")
    @classmethod
    def _none_as_false(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("duration_weeks", mode="before")
    @classmethod
    def _duration_as_int(cls, value: Any) -> Any:
        if value is None:
            return 0
        if isinstance(value, float):
            return round(value)
        return value

    @field_validator("formulation", mode="before")
    @classmethod
    def _map_formulation(cls, value: Any) -> Any:
        if value is None:
            return Formulation.UNSPECIFIED
        if isinstance(value, Formulation):
            return value
        if not isinstance(value, str):
            return Formulation.OTHER
        label = value.strip()
        if label in _FORMULATION_LABELS:
            return _FORMULATION_LABELS[label]
        # "Subcutaneous injection" -> "subcutaneous-injection"
        slug = "-".join(label.lower().replace("_", " ").split())
        try:
            return Formulation(slug)
        except ValueError:
            return Formulation.OTHER

    @field_validator("doses", mode="before")
    @classmethod
    def _none_as_no_doses(cls, value: Any) -> Any:
        return [] if value is None else value

    def to_record(self) -> dict[str, Any]:
        """Serialize to the camelCase JSON document written to the store.

        An unset ``summary`` is left out so that an update keeps the one
        already stored.
        """
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude={"id", "created_at"},
            exclude_none=True,
        )


class Study(CandidateRecord):
    """A persisted study cohort, the unit stored in the dataset."""

    id: str
    created_at: int = Field(..., gt=0)
