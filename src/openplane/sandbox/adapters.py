from __future__ import annotations

import json
import os
from pathlib import Path

WRITABLE_TEXT_EXTENSIONS = frozenset(
    {
        ".txt",
        ".md",
        ".json",
        ".yaml",
        ".yml",
        ".xml",
        ".toml",
        ".csv",
        ".cs",
        ".js",
        ".ts",
        ".tsx",
        ".jsx",
        ".py",
        ".go",
        ".java",
        ".rs",
        ".cpp",
        ".h",
        ".hpp",
        ".csproj",
        ".sln",
        ".config",
        ".sh",
    }
)

EXTRACT_ONLY_EXTENSIONS = frozenset(
    {
        ".pdf",
        ".doc",
        ".docx",
        ".xls",
        ".xlsx",
        ".ppt",
        ".pptx",
        ".png",
        ".jpg",
        ".jpeg",
        ".gif",
        ".bmp",
        ".webp",
        ".ipynb",
    }
)

PREVIEW_MAX_CHARS = 4000
TRUNCATION_MARKER = "\n...[truncated]"


def _extension(path: str | Path) -> str:
    return os.path.splitext(str(path))[1].lower()


def _printable_preview(data: bytes, max_chars: int) -> str:
    if not data:
        return "(empty)"
    text = data.decode("utf-8", errors="replace")
    printable = "".join(ch for ch in text if ch.isprintable() or ch in "\n\r\t")
    if len(printable) <= max_chars:
        return printable
    return printable[:max_chars] + TRUNCATION_MARKER


def _notebook_summary(path: Path) -> str:
    try:
        notebook = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        return "[extract-only:.ipynb] Failed to parse notebook JSON."
    cells = notebook.get("cells") if isinstance(notebook, dict) else None
    if not isinstance(cells, list):
        return "[extract-only:.ipynb] Notebook has no cells array."

    lines: list[str] = []
    for index, cell in enumerate(cells, start=1):
        cell = cell if isinstance(cell, dict) else {}
        lines.append(f"cell#{index} type={cell.get('cell_type', 'unknown')}")
        source = cell.get("source")
        if isinstance(source, list):
            text = "".join(str(part) for part in source)
        elif isinstance(source, str):
            text = source
        else:
            text = ""
        if text.strip():
            lines.append(text.strip())
    return "\n".join(lines)


class FileAdapter:
    """Per-extension read/write capability for files touched by tool steps."""

    def read(self, path: str | Path) -> str:
        target = Path(path)
        extension = _extension(target)
        if extension == ".ipynb":
            return _notebook_summary(target)
        if extension in EXTRACT_ONLY_EXTENSIONS:
            data = target.read_bytes()
            return (
                f"[extract-only:{extension}] size={len(data)} bytes\n"
                + _printable_preview(data, PREVIEW_MAX_CHARS)
            )
        with target.open("r", encoding="utf-8", newline="") as handle:
            return handle.read()

    def write(self, path: str | Path, content: str) -> None:
        if not self.can_write(path):
            raise PermissionError(
                "Write-back is unsupported for this file type. " + self.describe_capability(path)
            )
        with Path(path).open("w", encoding="utf-8", newline="") as handle:
            handle.write(content)

    def can_write(self, path: str | Path) -> bool:
        return _extension(path) not in EXTRACT_ONLY_EXTENSIONS

    def describe_capability(self, path: str | Path) -> str:
        extension = _extension(path)
        if not extension or extension in WRITABLE_TEXT_EXTENSIONS:
            return "Text-native read/write supported."
        if extension in EXTRACT_ONLY_EXTENSIONS:
            return "Extract-only adapter: read supported, write-back unsupported."
        return "Unknown type: defaulting to text read/write when possible."
