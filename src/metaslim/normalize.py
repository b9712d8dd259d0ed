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
"""Display-name helpers for drugs and sponsors."""

from .models import Study

# Checked in order; the first sponsor with a matching token wins.
COMPANY_ALIASES: list[tuple[str, tuple[str, ...]]] = [
    ("Eli Lilly", ("LILLY", "礼来")),
    ("Novo Nordisk", ("NOVO", "诺和诺德")),
    ("Innovent", ("INNOVENT", "信达")),
    ("Amgen", ("AMGEN", "安进")),
    ("Boehringer Ingelheim", ("BOEHRINGER", "BI", "勃林格")),
    ("AstraZeneca", ("ASTRAZENECA", "AZ", "阿斯利康")),
    ("Hengrui", ("HENGRUI", "恒瑞")),
    ("Pfizer", ("PFIZER", "辉瑞")),
    ("Roche", ("ROCHE", "罗氏")),
    ("Sanofi", ("SANOFI", "赛诺菲")),
]

# Drugs whose sponsor is fixed regardless of what the literature says.
DRUG_SPONSORS = {"ecnoglutide": "Pfizer"}


def capitalize_drug_name(name: str) -> str:
    """'TIRZEPATIDE' -> 'Tirzepatide'."""
    if not name:
        return name
    return name[0].upper() + name[1:].lower()


def normalize_company(company: str) -> str:
    if not company:
        return ""
    upper = company.strip().upper()
    for canonical, tokens in COMPANY_ALIASES:
        if any(token in upper for token in tokens):
            return canonical
    return company.strip()


def display_study(study: Study) -> Study:
    """Return a copy of ``study`` with display-ready drug and company names."""
    drug_name = capitalize_drug_name(study.drug_name)
    company = next(
        (
            sponsor
            for drug, sponsor in DRUG_SPONSORS.items()
            if drug in drug_name.lower()
        ),
        None,
    ) or normalize_company(study.company)
    return study.model_copy(update={"drug_name": drug_name, "company": company})
