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
"""Manages the application's configuration using Pydantic."""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Manages configuration for the application.

    Reads settings from environment variables with the prefix 'METASLIM_'.
    Values passed to the constructor (e.g. from a YAML file) take precedence.
    """

    model_config = SettingsConfigDict(env_prefix="METASLIM_")

    # Remote store; when unset the local JSON store is used.
    db_dsn: str | None = None
    db_schema: str = "metaslim"
    db_table: str = "weight_loss_studies"

    local_store_path: Path = Path.home() / ".metaslim" / "studies.json"

    # LLM extraction
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    temperature: float = 0.1
    max_text_chars: int = 30000
    max_pdf_pages: int = 15
    request_timeout: float = 120.0
    max_retries: int = 3

    # Treat a repeated identity key inside one batch as an update.
    strict_batch_matching: bool = True

    log_level: str = "INFO"


def load_config(config_file: str | None) -> dict[str, Any]:
    """Loads configuration overrides from a YAML file."""
    if config_file:
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                return yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning("Config file not found: %s", config_file)
    return {}


def get_settings(config_file: str | None = None) -> Settings:
    """Build the settings from the environment and an optional YAML file."""
    return Settings(**load_config(config_file))
