"""Text extraction for uploaded learning materials (PDF, Word, text, markdown)."""

import io
import logging
import os

import docx
import pdfplumber
from PyPDF2 import PdfReader

from text_utils import normalize_text

logger = logging.getLogger(__name__)

PDF_MIMETYPE = "application/pdf"
DOCX_MIMETYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
DOC_MIMETYPE = "application/msword"

ALLOWED_MIMETYPES = (
    PDF_MIMETYPE,
    "text/plain",
    "text/markdown",
    DOCX_MIMETYPE,
    DOC_MIMETYPE,
)

EXTENSION_MIMETYPES = {
    ".pdf": PDF_MIMETYPE,
    ".docx": DOCX_MIMETYPE,
    ".doc": DOC_MIMETYPE,
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
}


class UnsupportedFileType(ValueError):
    def __init__(self, mimetype: str):
        super().__init__(
            f"Unsupported file type: {mimetype}. Allowed: PDF, Word (.docx), Text, Markdown"
        )
        self.mimetype = mimetype


def resolve_mimetype(mimetype: str | None, filename: str | None) -> str:
    """Trust the declared mimetype when allowed, otherwise go by extension."""
    mimetype = (mimetype or "").split(";", 1)[0].strip().lower()
    if mimetype in ALLOWED_MIMETYPES:
        return mimetype
    ext = os.path.splitext(filename or "")[1].lower()
    if ext in EXTENSION_MIMETYPES:
        return EXTENSION_MIMETYPES[ext]
    raise UnsupportedFileType(mimetype or "unknown")


# ============================================================================
# PDF
# ============================================================================

def _walk_outline(items, level: int, reader: PdfReader, results: list[tuple[str, int, int]]):
    for it in items:
        if isinstance(it, list):
            _walk_outline(it, level + 1, reader, results)
            continue
        title = getattr(it, "title", None) or it.get("/Title", "Untitled")
        try:
            page_index = reader.get_destination_page_number(it)
        except Exception:
            continue
        if page_index is not None and page_index >= 0:
            results.append((str(title).strip(), page_index, level))


def get_pdf_bookmarks(file_bytes: bytes) -> list[tuple[str, int]]:
    """Top-level bookmarks as (title, start page index), ordered by page."""
    try:
        reader = PdfReader(io.BytesIO(file_bytes))
        outline = reader.outline
    except Exception as e:
        logger.info("No readable PDF outline: %s", e)
        return []
    results: list[tuple[str, int, int]] = []
    if outline:
        _walk_outline(outline, 0, reader, results)
    results = [r for r in results if r[2] == 0 and r[0]]
    results.sort(key=lambda r: r[1])
    marks: list[tuple[str, int]] = []
    seen = set()
    for title, page, _ in results:
        key = (title.lower(), page)
        if key not in seen:
            marks.append((title, page))
            seen.add(key)
    return marks


def _page_text(pdf, start: int, end: int) -> str:
    buf = [pdf.pages[p].extract_text() or "" for p in range(start, end + 1)]
    return "\n".join(b for b in buf if b).strip()


def _sections_by_bookmarks(pdf, marks: list[tuple[str, int]]) -> list[tuple[str | None, str]]:
    """Split pages into (title, body) sections; pages before the first bookmark get no title."""
    n_pages = len(pdf.pages)
    sections: list[tuple[str | None, str]] = []
    first = max(0, min(marks[0][1], n_pages))
    if first > 0:
        lead = _page_text(pdf, 0, first - 1)
        if lead:
            sections.append((None, lead))
    for i, (title, start) in enumerate(marks):
        end = (marks[i + 1][1] - 1) if i + 1 < len(marks) else (n_pages - 1)
        start = max(0, min(start, n_pages - 1))
        end = max(start, min(end, n_pages - 1))
        body = _page_text(pdf, start, end)
        if body:
            sections.append((title, body))
    return sections


def extract_pdf_text(file_bytes: bytes) -> str:
    marks = get_pdf_bookmarks(file_bytes)
    with pdfplumber.open(io.BytesIO(file_bytes)) as pdf:
        if marks:
            sections = _sections_by_bookmarks(pdf, marks)
            if sections:
                return "\n\n".join(
                    f"## {title}\n\n{body}" if title else body for title, body in sections
                )
        pages = [page.extract_text() or "" for page in pdf.pages]
    return "\n".join(p for p in pages if p)


# ============================================================================
# WORD & PLAIN TEXT
# ============================================================================

def extract_docx_text(file_bytes: bytes) -> str:
    document = docx.Document(io.BytesIO(file_bytes))
    lines = [p.text for p in document.paragraphs if p.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [c.text.strip() for c in row.cells if c.text.strip()]
            if cells:
                lines.append(" | ".join(cells))
    return "\n".join(lines)


def decode_text(file_bytes: bytes) -> str:
    return file_bytes.decode("utf-8", errors="ignore")


def extract_text(file_bytes: bytes, mimetype: str | None, filename: str | None = None) -> str:
    """Extract normalized text from an upload. Raises UnsupportedFileType."""
    kind = resolve_mimetype(mimetype, filename)
    if kind == PDF_MIMETYPE:
        logger.info("Parsing PDF %s (%d bytes)", filename, len(file_bytes))
        text = extract_pdf_text(file_bytes)
    elif kind in (DOCX_MIMETYPE, DOC_MIMETYPE):
        logger.info("Parsing Word document %s", filename)
        text = extract_docx_text(file_bytes)
    else:
        text = decode_text(file_bytes)
    return normalize_text(text)


def material_type_for(mimetype: str | None, filename: str | None = None, requested: str | None = None) -> str:
    kind = resolve_mimetype(mimetype, filename)
    if kind == PDF_MIMETYPE:
        return requested or "pdf"
    if kind in (DOCX_MIMETYPE, DOC_MIMETYPE):
        return requested or "docx"
    if kind == "text/markdown":
        return "markdown"
    return requested or "text"
