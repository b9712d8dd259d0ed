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

"""Turns uploaded files into content the extractor can send to the LLM.

PDFs and text files become plain text; images are passed through as raw
bytes together with their mime type.
"""

import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path

from pypdf import PdfReader

from .errors import UnsupportedDocumentError

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = {".txt", ".md"}
IMAGE_MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
}


@dataclass(frozen=True)
class Document:
    """One uploaded file or pasted text block."""

    name: str
    text: str | None = None
    data: bytes | None = None
    mime_type: str | None = None

    @property
    def is_image(self) -> bool:
        return self.data is not None

    @classmethod
    def from_text(cls, text: str, name: str = "pasted text") -> "Document":
        return cls(name=name, text=text, mime_type="text/plain")


def extract_text_from_pdf(path: Path, max_pages: int = 15) -> str:
    """
    Extracts the text of the first ``max_pages`` pages of a PDF.

    Each page is introduced by a ``--- Page N ---`` marker line.
    """
    reader = PdfReader(path)
    page_count = min(len(reader.pages), max_pages)
    full_text = ""
    for number in range(1, page_count + 1):
        page_text = reader.pages[number - 1].extract_text() or ""
        full_text += f"\n--- Page {number} ---\n{page_text}"
    logger.debug("Read %d of %d pages from %s", page_count, len(reader.pages), path)
    return full_text


def load_document(path: Path, max_pdf_pages: int = 15) -> Document:
    """
    Loads a file as a Document, based on its mime type.

    Raises:
        UnsupportedDocumentError: If the file is neither a PDF, an image nor text.
    """
    suffix = path.suffix.lower()
    mime_type = IMAGE_MIME_TYPES.get(suffix) or mimetypes.guess_type(path.name)[0]

    if mime_type == "application/pdf" or suffix == ".pdf":
        return Document(
            name=path.name,
            text=extract_text_from_pdf(path, max_pages=max_pdf_pages),
            mime_type="application/pdf",
        )
    if mime_type and mime_type.startswith("image/"):
        return Document(name=path.name, data=path.read_bytes(), mime_type=mime_type)
    if suffix in TEXT_SUFFIXES:
        return Document(
            name=path.name, text=path.read_text(encoding="utf-8"), mime_type="text/plain"
        )
    raise UnsupportedDocumentError(f"unsupported file format: {path.name}")
