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
"""Command line interface for curating the study dataset."""

import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import List, Optional

import httpx
import typer

from .config import Settings, get_settings
from .documents import Document
from .extractor.gemini import GeminiExtractor
from .normalize import display_study
from .pipeline import DocumentOutcome, ProgressStatus, process_documents
from .store.factory import create_store

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = typer.Typer(
    help="Curate weight-loss drug trial results extracted from literature.",
    no_args_is_help=True,
)

CONFIG_FILE_OPTION = typer.Option(None, "--config-file", help="Path to YAML config file.")


def _load_settings(config_file: str | None) -> Settings:
    settings = get_settings(config_file)
    logging.getLogger().setLevel(settings.log_level.upper())
    return settings


def _echo_progress(index: int, status: ProgressStatus, message: str) -> None:
    if status is ProgressStatus.PROCESSING:
        typer.echo(f"[{index + 1}] {message}", err=True)


async def _extract_sources(
    sources: Sequence[Path | Document], settings: Settings, strict: bool
) -> list[DocumentOutcome]:
    store = create_store(settings)
    async with httpx.AsyncClient(timeout=settings.request_timeout) as client:
        extractor = GeminiExtractor.from_settings(client, settings)
        return await process_documents(
            sources,
            extractor,
            store,
            max_pdf_pages=settings.max_pdf_pages,
            track_batch_keys=strict,
            on_progress=_echo_progress,
        )


def _report(outcomes: list[DocumentOutcome]) -> None:
    for outcome in outcomes:
        label = "OK" if outcome.status is ProgressStatus.SUCCESS else "FAILED"
        typer.echo(f"{label:6} {outcome.name}: {outcome.message}")
    if any(outcome.status is ProgressStatus.ERROR for outcome in outcomes):
        raise typer.Exit(code=1)


@app.command()
def extract(
    paths: List[Path] = typer.Argument(
        ..., exists=True, dir_okay=False, help="PDF, image or text files."
    ),
    strict: Optional[bool] = typer.Option(
        None,
        "--strict/--no-strict",
        help="Treat a repeated cohort inside one document as an update.",
    ),
    config_file: Optional[str] = CONFIG_FILE_OPTION,
):
    """Extract study cohorts from files and merge them into the dataset."""
    settings = _load_settings(config_file)
    track = settings.strict_batch_matching if strict is None else strict
    outcomes = asyncio.run(_extract_sources(list(paths), settings, track))
    _report(outcomes)


@app.command("extract-text")
def extract_text(
    text: Optional[str] = typer.Option(None, "--text", help="Literature text to analyse."),
    strict: Optional[bool] = typer.Option(
        None,
        "--strict/--no-strict",
        help="Treat a repeated cohort inside the text as an update.",
    ),
    config_file: Optional[str] = CONFIG_FILE_OPTION,
):
    """Extract study cohorts from pasted text (read from stdin without --text)."""
    content = text if text is not None else sys.stdin.read()
    if not content.strip():
        typer.echo("No text to analyse.", err=True)
        raise typer.Exit(code=2)
    settings = _load_settings(config_file)
    track = settings.strict_batch_matching if strict is None else strict
    outcomes = asyncio.run(
        _extract_sources([Document.from_text(content)], settings, track)
    )
    _report(outcomes)


@app.command("list")
def list_studies(
    as_json: bool = typer.Option(False, "--json", help="Print the raw stored documents."),
    config_file: Optional[str] = CONFIG_FILE_OPTION,
):
    """List the stored studies, newest first."""
    settings = _load_settings(config_file)
    studies = asyncio.run(create_store(settings).snapshot())
    if as_json:
        documents = [
            study.model_dump(mode="json", by_alias=True, exclude_none=True)
            for study in studies
        ]
        typer.echo(json.dumps(documents, ensure_ascii=False, indent=2))
        return
    if not studies:
        typer.echo("No studies stored.")
        return
    for study in map(display_study, studies):
        flags = []
        if study.has_t2d:
            flags.append("T2D")
        if study.is_chinese_cohort:
            flags.append("China")
        best = max((dose.weight_loss_percent for dose in study.doses), default=0)
        typer.echo(
            f"{study.id}  {study.drug_name} ({study.company})  {study.trial_name}  "
            f"{study.phase}  {','.join(flags) or '-'}  "
            f"{len(study.doses)} dose(s), up to {best:g}% weight loss"
        )


@app.command()
def delete(
    study_ids: List[str] = typer.Argument(..., help="Ids of the studies to delete."),
    config_file: Optional[str] = CONFIG_FILE_OPTION,
):
    """Delete studies by id."""
    settings = _load_settings(config_file)
    removed = asyncio.run(create_store(settings).delete_many(study_ids))
    typer.echo(f"Deleted {removed} study(ies).")
    unknown = len(set(study_ids)) - removed
    if unknown > 0:
        typer.echo(f"Ignored {unknown} unknown id(s).")


@app.command("delete-all")
def delete_all(
    yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation."),
    config_file: Optional[str] = CONFIG_FILE_OPTION,
):
    """Delete every stored study."""
    if not yes:
        typer.confirm("Delete every stored study?", abort=True)
    settings = _load_settings(config_file)
    asyncio.run(create_store(settings).delete_all())
    typer.echo("Deleted all studies.")


def main():
    app()


if __name__ == "__main__":
    main()
