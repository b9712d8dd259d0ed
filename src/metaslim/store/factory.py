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
"""Selects the store implementation from the settings."""

import logging

from ..config import Settings
from .base import BaseStore
from .local import LocalStore
from .postgres import PostgresStore

logger = logging.getLogger(__name__)


def create_store(settings: Settings) -> BaseStore:
    """Return the remote store when a DSN is configured, else the local one."""
    if settings.db_dsn:
        logger.info(
            "Using PostgreSQL store %s.%s", settings.db_schema, settings.db_table
        )
        return PostgresStore(
            dsn=settings.db_dsn, schema=settings.db_schema, table=settings.db_table
        )
    logger.info("No database configured; using local store %s", settings.local_store_path)
    return LocalStore(settings.local_store_path)
