"""Local base-image cache keyed by OS and remote build timestamp."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import List, Optional

from cloudvm.constants import (
    CONVERTED_EXTENSION,
    PARTIAL_SUFFIX,
    PRIMARY_EXTENSION,
    TIMESTAMP_FILE_NAME,
)
from cloudvm.exceptions import ManagerError
from cloudvm.models import DistroSpec
from cloudvm.utils import ensure_directory, log


class ImageCache:
    """One directory per ``(os, version)`` holding archive, image and converted image.

    Files are named ``<os>-<timestamp>.<ext>``. Writers produce a temporary
    name first and rename into place, so only exact names count as hits.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def directory(self, spec: DistroSpec) -> Path:
        return self.root / f"{spec.os}-{spec.version_alias}"

    def ensure(self, spec: DistroSpec) -> Path:
        path = self.directory(spec)
        ensure_directory(path)
        return path

    def timestamp_file(self, spec: DistroSpec) -> Path:
        return self.directory(spec) / TIMESTAMP_FILE_NAME

    def read_timestamp(self, spec: DistroSpec) -> Optional[str]:
        path = self.timestamp_file(spec)
        if not path.exists():
            return None
        value = path.read_text(encoding="utf-8").strip()
        return value or None

    def write_timestamp(self, spec: DistroSpec, timestamp: str) -> None:
        self.ensure(spec)
        self.timestamp_file(spec).write_text(timestamp + "\n", encoding="utf-8")

    def path_for(self, spec: DistroSpec, timestamp: str, kind: str, extension: Optional[str] = None) -> Path:
        if kind == "archive":
            ext = spec.archive_extension
        elif kind == "image":
            ext = extension or PRIMARY_EXTENSION
            if ext == CONVERTED_EXTENSION:
                # an extracted vhdx must not collide with the converted entry
                ext = f"source.{ext}"
        elif kind == "converted":
            ext = CONVERTED_EXTENSION
        else:
            raise ManagerError(f"Unknown cache entry kind '{kind}'")
        return self.directory(spec) / f"{spec.os}-{timestamp}.{ext}"

    @staticmethod
    def partial_path(path: Path) -> Path:
        return path.with_name(path.name + PARTIAL_SUFFIX)

    def has_archive(self, spec: DistroSpec, timestamp: str) -> bool:
        return self.path_for(spec, timestamp, "archive").is_file()

    def has_converted_image(self, spec: DistroSpec, timestamp: str) -> bool:
        return self.path_for(spec, timestamp, "converted").is_file()

    def _entries(self, spec: DistroSpec) -> List[Path]:
        directory = self.directory(spec)
        if not directory.exists():
            return []
        return [p for p in directory.iterdir() if p.name != TIMESTAMP_FILE_NAME]

    def purge_stale_converted(self, spec: DistroSpec, keep_timestamp: Optional[str] = None) -> List[Path]:
        """Delete every cached file of ``spec`` not belonging to ``keep_timestamp``."""
        keep_prefix = f"{spec.os}-{keep_timestamp}." if keep_timestamp else None
        removed = []
        for entry in self._entries(spec):
            if keep_prefix and entry.name.startswith(keep_prefix):
                continue
            _remove(entry)
            removed.append(entry)
        if removed:
            log("INFO", f"Purged {len(removed)} stale cache entr{'y' if len(removed) == 1 else 'ies'} for {spec.os}")
        return removed

    def discard(self, spec: DistroSpec, timestamp: str) -> None:
        """Remove everything produced for ``timestamp`` (failed fetch or conversion)."""
        prefix = f"{spec.os}-{timestamp}."
        for entry in self._entries(spec):
            if entry.name.startswith(prefix):
                _remove(entry)
        log("DEBUG", f"Discarded cache artifacts for {spec.os}-{timestamp}")

    def tidy(self, spec: DistroSpec, timestamp: str) -> None:
        """Keep only the converted image (and timestamp record) for ``timestamp``."""
        converted = self.path_for(spec, timestamp, "converted")
        for entry in self._entries(spec):
            if entry != converted:
                _remove(entry)
        log("INFO", f"Cache cleaned; kept {converted.name}")


def _remove(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path, ignore_errors=True)
    else:
        path.unlink(missing_ok=True)
