"""Allow/block lists for uploaded file types."""

import os
from typing import List, Optional

from storage_api.errors import InvalidRequestError
from storage_api.settings import Settings

DEFAULT_ALLOWED_EXTENSIONS = [
    # Model files
    ".safetensors", ".bin", ".pt", ".pth", ".onnx", ".gguf", ".h5",
    # Data files
    ".csv", ".json", ".jsonl", ".parquet", ".arrow", ".feather",
    # Text files
    ".txt", ".md", ".yaml", ".yml",
    # Archives
    ".tar", ".gz", ".zip", ".tgz",
    # Images
    ".jpg", ".jpeg", ".png", ".gif", ".bmp",
    # Audio/Video
    ".wav", ".mp3", ".mp4", ".avi",
    # Notebooks
    ".ipynb",
    # Documents
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".odt", ".ods", ".odp", ".rtf",
    # Markup/style
    ".xml", ".html", ".css",
    # Backup/misc
    ".old", ".bak", ".backup", ".tmp",
    # Logs
    ".log", ".sql",
]

DEFAULT_BLOCKED_EXTENSIONS = [
    # Executables
    ".exe", ".dll", ".so", ".dylib", ".sh", ".bat", ".cmd", ".com",
    # Scripts
    ".js", ".ts", ".py", ".rb", ".pl", ".php",
    # System files
    ".sys", ".drv",
]


def parse_extensions(value: Optional[str]) -> List[str]:
    """``"csv, .TXT"`` -> ``[".csv", ".txt"]``."""
    if not value or not value.strip():
        return []
    extensions = [ext.strip().lower() for ext in value.split(",") if ext.strip()]
    return [ext if ext.startswith(".") else f".{ext}" for ext in extensions]


def build_extensions(defaults: List[str], override: Optional[str], append: Optional[str]) -> List[str]:
    # An override (even an empty one) replaces the defaults; append only extends them.
    if override is not None:
        return parse_extensions(override)
    return defaults + parse_extensions(append)


class FileTypeValidator:
    def __init__(self, allowed: List[str], blocked: List[str]):
        self.allowed = frozenset(allowed)
        self.blocked = frozenset(blocked)

    @classmethod
    def from_settings(cls, settings: Settings) -> "FileTypeValidator":
        return cls(
            allowed=build_extensions(
                DEFAULT_ALLOWED_EXTENSIONS, settings.allowed_file_extensions, settings.allowed_file_extensions_append
            ),
            blocked=build_extensions(
                DEFAULT_BLOCKED_EXTENSIONS, settings.blocked_file_extensions, settings.blocked_file_extensions_append
            ),
        )

    def check(self, filename: str) -> Optional[str]:
        """Return why *filename* is not allowed, or None if it is."""
        ext = os.path.splitext(filename)[1].lower()
        if not ext:
            return "Files without extensions are not allowed"
        if ext in self.blocked:
            return f"File type {ext} is blocked for security reasons"
        if ext not in self.allowed:
            return f"File type {ext} is not in the allowed list"
        return None

    def validate(self, filename: str) -> None:
        reason = self.check(filename)
        if reason is not None:
            raise InvalidRequestError(reason)
