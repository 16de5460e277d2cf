"""
Document Conversion — files to markdown for ingestion

Supports:
    Text files   .md .txt .rst .csv .json .yaml .html ... (direct read)
    Office docs  .docx .odt                               (python-docx / odfpy)
    Slides       .pptx .odp                               (python-pptx / odfpy)
    Spreadsheets .xlsx .ods                               (openpyxl / odfpy)
    PDF          .pdf                                     (pdftotext via poppler)

Headings become ``#`` lines, slides and sheets become ``##`` sections, and
tables become pipe tables, so evidence excerpts can point back into a
readable document.  Each converter is optional: a missing library triggers
an ImportError with install instructions.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Sequence

logger = logging.getLogger(__name__)

BINARY_EXTS = frozenset({
    ".docx", ".odt",
    ".pptx", ".odp",
    ".xlsx", ".ods",
    ".pdf",
})

TEXT_EXTS = frozenset({
    ".md", ".markdown", ".txt", ".rst", ".csv", ".tsv",
    ".html", ".htm", ".xml", ".json", ".yaml", ".yml", ".toml",
})


def convert_to_markdown(path: str, *, encoding: str = "utf-8") -> str:
    """
    Read a supported file and return markdown.

    Raises:
        ImportError: When a required conversion library is not installed.
        FileNotFoundError: When the file does not exist.
        ValueError: When the file extension is not supported.
    """
    p = Path(path)
    ext = p.suffix.lower()

    if ext in BINARY_EXTS:
        return _convert_binary(str(p), ext)
    if ext in TEXT_EXTS or ext == "":
        return p.read_text(encoding=encoding, errors="replace")
    raise ValueError(f"Unsupported file type: {ext}")


def markdown_table(rows: Sequence[Sequence[str]]) -> str:
    """Render rows as a pipe table; the first row is the header."""
    rows = [[_cell(c) for c in r] for r in rows]
    rows = [r for r in rows if any(r)]
    if not rows:
        return ""
    width = max(len(r) for r in rows)
    rows = [r + [""] * (width - len(r)) for r in rows]
    lines = ["| " + " | ".join(rows[0]) + " |",
             "| " + " | ".join("---" for _ in range(width)) + " |"]
    lines.extend("| " + " | ".join(r) + " |" for r in rows[1:])
    return "\n".join(lines)


def _cell(value) -> str:
    if value is None:
        return ""
    return str(value).replace("|", "\\|").replace("\n", " ").strip()


def _convert_binary(path: str, ext: str) -> str:
    """Dispatch to the appropriate converter."""
    if ext == ".docx":
        return _convert_docx(path)
    if ext == ".odt":
        return _convert_odt(path)
    if ext == ".pptx":
        return _convert_pptx(path)
    if ext == ".odp":
        return _convert_odp(path)
    if ext == ".xlsx":
        return _convert_xlsx(path)
    if ext == ".ods":
        return _convert_ods(path)
    if ext == ".pdf":
        return _convert_pdf(path)
    raise ValueError(f"Unsupported binary format: {ext}")


# --- DOCX (python-docx) ---------------------------------------------------

def _convert_docx(path: str) -> str:
    try:
        from docx import Document
    except ImportError:
        raise ImportError(
            "python-docx is required for .docx files. "
            "Install with: pip install python-docx   "
            "(or: pip install projmem[docs])"
        )
    doc = Document(path)
    parts: List[str] = []
    for para in doc.paragraphs:
        text = para.text.strip()
        if not text:
            continue
        style = (para.style.name if para.style is not None else "") or ""
        if style.startswith("Heading"):
            level = style.replace("Heading", "").strip()
            depth = int(level) if level.isdigit() else 1
            parts.append("#" * min(depth, 6) + " " + text)
        elif style == "Title":
            parts.append("# " + text)
        elif style.startswith("List"):
            parts.append("- " + text)
        else:
            parts.append(text)
    for table in doc.tables:
        rendered = markdown_table([[cell.text for cell in row.cells] for row in table.rows])
        if rendered:
            parts.append(rendered)
    return "\n\n".join(parts)


# --- ODT (odfpy) ----------------------------------------------------------

def _convert_odt(path: str) -> str:
    try:
        from odf import teletype
        from odf.opendocument import load as odf_load
        from odf.text import H as OdfH, P as OdfP
    except ImportError:
        raise ImportError(
            "odfpy is required for .odt files. "
            "Install with: pip install odfpy   "
            "(or: pip install projmem[docs])"
        )
    doc = odf_load(path)
    parts: List[str] = []
    for node in doc.text.childNodes:
        if node.qname == OdfH().qname:
            text = teletype.extractText(node).strip()
            if text:
                level = node.getAttribute("outlinelevel") or "1"
                depth = int(level) if str(level).isdigit() else 1
                parts.append("#" * min(depth, 6) + " " + text)
        elif node.qname == OdfP().qname:
            text = teletype.extractText(node).strip()
            if text:
                parts.append(text)
    return "\n\n".join(parts)


# --- PPTX (python-pptx) ---------------------------------------------------

def _convert_pptx(path: str) -> str:
    try:
        from pptx import Presentation
    except ImportError:
        raise ImportError(
            "python-pptx is required for .pptx files. "
            "Install with: pip install python-pptx   "
            "(or: pip install projmem[docs])"
        )
    prs = Presentation(path)
    parts: List[str] = []
    for slide_num, slide in enumerate(prs.slides, 1):
        lines: List[str] = []
        for shape in slide.shapes:
            if shape.has_text_frame:
                for para in shape.text_frame.paragraphs:
                    text = para.text.strip()
                    if text:
                        lines.append(text)
        if lines:
            parts.append(f"## Slide {slide_num}\n\n" + "\n".join(lines))
    return "\n\n".join(parts)


# --- ODP (odfpy) ----------------------------------------------------------

def _convert_odp(path: str) -> str:
    try:
        from odf import teletype
        from odf.draw import Page as OdfPage
        from odf.opendocument import load as odf_load
        from odf.text import P as OdfP
    except ImportError:
        raise ImportError(
            "odfpy is required for .odp files. "
            "Install with: pip install odfpy   "
            "(or: pip install projmem[docs])"
        )
    doc = odf_load(path)
    parts: List[str] = []
    for slide_num, page in enumerate(doc.getElementsByType(OdfPage), 1):
        lines = [
            teletype.extractText(p).strip() for p in page.getElementsByType(OdfP)
        ]
        lines = [t for t in lines if t]
        if lines:
            parts.append(f"## Slide {slide_num}\n\n" + "\n".join(lines))
    return "\n\n".join(parts)


# --- XLSX (openpyxl) -------------------------------------------------------

def _convert_xlsx(path: str) -> str:
    try:
        from openpyxl import load_workbook
    except ImportError:
        raise ImportError(
            "openpyxl is required for .xlsx files. "
            "Install with: pip install openpyxl   "
            "(or: pip install projmem[docs])"
        )
    wb = load_workbook(path, read_only=True, data_only=True)
    parts: List[str] = []
    try:
        for sheet_name in wb.sheetnames:
            rows = [list(r) for r in wb[sheet_name].iter_rows(values_only=True)]
            rendered = markdown_table(rows)
            if rendered:
                parts.append(f"## Sheet: {sheet_name}\n\n{rendered}")
    finally:
        wb.close()
    return "\n\n".join(parts)


# --- ODS (odfpy) -----------------------------------------------------------

def _convert_ods(path: str) -> str:
    try:
        from odf import teletype
        from odf.opendocument import load as odf_load
        from odf.table import Table as OdfTable, TableCell, TableRow
    except ImportError:
        raise ImportError(
            "odfpy is required for .ods files. "
            "Install with: pip install odfpy   "
            "(or: pip install projmem[docs])"
        )
    doc = odf_load(path)
    parts: List[str] = []
    for table in doc.getElementsByType(OdfTable):
        sheet_name = table.getAttribute("name") or "Sheet"
        rows = [
            [teletype.extractText(cell) for cell in row.getElementsByType(TableCell)]
            for row in table.getElementsByType(TableRow)
        ]
        rendered = markdown_table(rows)
        if rendered:
            parts.append(f"## Sheet: {sheet_name}\n\n{rendered}")
    return "\n\n".join(parts)


# --- PDF (pdftotext via poppler) -------------------------------------------

def _convert_pdf(path: str) -> str:
    """Convert a PDF with ``pdftotext`` (poppler-utils).

    Pages are separated by form feeds in pdftotext output; each page
    becomes a ``## Page N`` section.
    """
    try:
        result = subprocess.run(
            ["pdftotext", "-layout", path, "-"],
            capture_output=True,
            text=True,
            timeout=60,
        )
    except FileNotFoundError:
        raise ImportError(
            "pdftotext (poppler-utils) is required for .pdf files. "
            "Install with: sudo apt install poppler-utils   "
            "(or: brew install poppler on macOS)"
        )
    except subprocess.TimeoutExpired:
        logger.warning("PDF conversion timed out for %s", path)
        return ""

    if result.returncode != 0:
        logger.warning(
            "pdftotext returned %d for %s: %s",
            result.returncode, path, result.stderr[:200],
        )
        return ""

    pages = [p.strip() for p in result.stdout.split("\f")]
    return "\n\n".join(
        f"## Page {i}\n\n{text}" for i, text in enumerate(pages, 1) if text
    )
