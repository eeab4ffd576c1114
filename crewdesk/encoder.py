"""Text renditions of generated documents.

Binary office formats are out of scope; the default encoder writes markdown for
documents and slide decks and CSV for spreadsheets. Any object with a matching
``encode`` coroutine can stand in for it.
"""

import base64
import csv
import io
from dataclasses import dataclass
from typing import Protocol

from .actions import PresentationPayload, SpreadsheetPayload, ValidatedAction, WordDocumentPayload
from .schemas import ActionKind


@dataclass
class EncodedFile:
    data: str
    file_name: str
    mime_type: str

    def raw_bytes(self) -> bytes:
        return base64.b64decode(self.data)


class DocumentEncoder(Protocol):
    async def encode(self, action: ValidatedAction) -> EncodedFile: ...


class UnsupportedDocument(ValueError):
    pass


def fix_extension(file_name: str, extension: str) -> str:
    if file_name.lower().endswith(extension.lower()):
        return file_name
    dot = file_name.rfind(".")
    # A short trailing suffix is treated as a wrong extension and swapped.
    if dot > 0 and dot > len(file_name) - 6:
        return f"{file_name[:dot]}{extension}"
    return f"{file_name}{extension}"


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def render_word_markdown(payload: WordDocumentPayload) -> str:
    lines = []
    for block in payload.content:
        text = str(block.get("text", block.get("content", "")) or "")
        kind = block.get("type")
        if kind == "heading1":
            lines.append(f"# {text}")
        elif kind == "heading2":
            lines.append(f"## {text}")
        else:
            lines.append(text)
    return "\n\n".join(lines) + "\n"


def render_slides_markdown(payload: PresentationPayload) -> str:
    sections = []
    for index, slide in enumerate(payload.slides, start=1):
        title = str(slide.get("title") or f"Slide {index}")
        points = [p.strip() for p in str(slide.get("content") or "").split("\n") if p.strip()]
        body = "\n".join(f"- {point}" for point in points)
        sections.append(f"## {title}\n\n{body}" if body else f"## {title}")
    return "\n\n---\n\n".join(sections) + "\n"


def render_sheets_csv(payload: SpreadsheetPayload) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    many = len(payload.sheets) > 1
    for index, sheet in enumerate(payload.sheets):
        if many:
            if index:
                buffer.write("\n")
            buffer.write(f"# {sheet.name}\n")
        writer.writerows(sheet.data)
    return buffer.getvalue()


class TextDocumentEncoder:
    async def encode(self, action: ValidatedAction) -> EncodedFile:
        payload = action.payload
        if action.kind == ActionKind.WORD_DOCUMENT:
            text = render_word_markdown(payload)
            return EncodedFile(_b64(text), fix_extension(payload.file_name or "document", ".md"), "text/markdown")
        if action.kind == ActionKind.POWERPOINT:
            text = render_slides_markdown(payload)
            return EncodedFile(_b64(text), fix_extension(payload.file_name or "presentation", ".md"), "text/markdown")
        if action.kind == ActionKind.EXCEL_SHEET:
            text = render_sheets_csv(payload)
            return EncodedFile(_b64(text), fix_extension(payload.file_name or "spreadsheet", ".csv"), "text/csv")
        raise UnsupportedDocument(f"Unsupported file type for generation: {action.kind.value}")
