"""Local text extraction from uploaded evidence.

Images go through Tesseract OCR (``pytesseract`` + Pillow); PDFs with an
embedded text layer go through ``pdfplumber``.  Both libraries are
blocking, so the work runs on a worker thread via
:func:`asyncio.to_thread`.

Extraction is best effort: :meth:`TextExtractor.extract` never raises.
A path outside the uploads directory, a missing file, an unsupported
media type or an engine failure all come back as ``None`` and are
reported as "no readable text".
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Final

import structlog

if TYPE_CHECKING:
    from src.models.complaint import EvidenceDocument

logger = structlog.get_logger(__name__)

MAX_DOCUMENT_CHARS: Final[int] = 1500
NO_TEXT_PLACEHOLDER: Final[str] = "(No readable text detected in this document)"
_MIN_USEFUL_CHARS: Final[int] = 5


def _ocr_image(path: Path) -> str:
    import pytesseract
    from PIL import Image

    with Image.open(path) as img:
        return pytesseract.image_to_string(img, lang="eng")


def _read_pdf(path: Path) -> str:
    import pdfplumber

    with pdfplumber.open(path) as pdf:
        return "\n".join(page.extract_text() or "" for page in pdf.pages)


def truncate(text: str, limit: int = MAX_DOCUMENT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "... (truncated)"


class TextExtractor:
    """Pull plain text out of evidence files stored under ``uploads_dir``.

    Parameters
    ----------
    uploads_dir:
        Directory that document paths are resolved against.  Paths that
        resolve outside it, through ``..`` or an absolute path, are
        rejected.
    """

    __slots__ = ("_uploads_dir",)

    def __init__(self, uploads_dir: str | Path = "uploads") -> None:
        self._uploads_dir = Path(uploads_dir)

    def _resolve(self, path: str) -> Path | None:
        """Resolve ``path`` inside ``uploads_dir``; ``None`` if it escapes."""
        root = self._uploads_dir.resolve()
        candidate = (root / path).resolve()
        if not candidate.is_relative_to(root):
            return None
        return candidate

    async def extract(self, path: str, mimetype: str) -> str | None:
        """Return extracted text, or ``None`` when nothing could be read."""
        try:
            file_path = self._resolve(path)
        except (OSError, ValueError):
            file_path = None
        if file_path is None:
            logger.warning("extraction.path_rejected", path=path)
            return None
        try:
            if not file_path.is_file():
                logger.warning("extraction.file_missing", path=str(file_path))
                return None

            if mimetype.startswith("image/"):
                text = await asyncio.to_thread(_ocr_image, file_path)
            elif mimetype == "application/pdf":
                text = await asyncio.to_thread(_read_pdf, file_path)
            else:
                logger.debug("extraction.unsupported_type", path=str(file_path), mimetype=mimetype)
                return None
        except Exception:
            logger.warning("extraction.failed", path=str(file_path), mimetype=mimetype, exc_info=True)
            return None

        return text.strip()

    async def process_documents(self, documents: list[EvidenceDocument]) -> str:
        """Combine the text of every document into one prompt-ready block."""
        if not documents:
            return ""

        parts: list[str] = []
        for doc in documents:
            text = await self.extract(doc.path or doc.filename, doc.mimetype)
            name = doc.original_name or doc.filename
            if text and len(text) > _MIN_USEFUL_CHARS:
                body = truncate(text)
            else:
                body = NO_TEXT_PLACEHOLDER
            parts.append(f"\n[Document: {name}]\nExtracted Content: {body}\n")

        logger.info("extraction.documents_processed", count=len(documents))
        return "".join(parts)
