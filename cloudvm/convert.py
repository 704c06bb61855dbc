"""Disk-image conversion with an ordered list of backends."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from cloudvm.constants import RESIZE_FLOOR_BYTES
from cloudvm.exceptions import ConversionError, ManagerError
from cloudvm.utils import log, ps_quote, run, run_powershell


def probe(path: Path) -> Dict[str, object]:
    """Return ``qemu-img info`` metadata (format, virtual-size, ...) for ``path``."""
    try:
        info = run(["qemu-img", "info", "--output=json", str(path)], check=False, capture_output=True)
    except FileNotFoundError:
        raise ConversionError("qemu-img not found; install qemu-utils (or QEMU for Windows)")
    if info.returncode != 0:
        raise ConversionError(f"qemu-img info failed for {path}: {(info.stderr or '').strip()}")
    return json.loads(info.stdout)


def _qemu_img(cmd: List[str], what: str) -> None:
    try:
        result = run(["qemu-img"] + cmd, check=False, capture_output=True)
    except FileNotFoundError:
        raise ConversionError("qemu-img not found; install qemu-utils (or QEMU for Windows)")
    if result.returncode != 0:
        raise ConversionError(f"qemu-img {what} failed: {(result.stderr or '').strip()}")


def raw_to_vhd(source: Path, destination: Path) -> Path:
    """Convert a raw image into a fixed VHD, writing through a temporary name."""
    temp = destination.with_name(f"{destination.stem}.tmp{destination.suffix}")
    log("INFO", f"Converting raw image {source.name} to VHD...")
    try:
        _qemu_img(
            ["convert", "-f", "raw", "-O", "vpc", "-o", "subformat=fixed,force_size", str(source), str(temp)],
            "convert",
        )
        temp.replace(destination)
    finally:
        temp.unlink(missing_ok=True)
    return destination


class ConversionBackend(ABC):
    name = "base"

    @abstractmethod
    def convert(self, source: Path, destination: Path) -> None:
        ...

    @abstractmethod
    def resize(self, path: Path, size_bytes: int) -> None:
        ...


class HyperVBackend(ConversionBackend):
    """Hyper-V module cmdlets; refuses some source layouts (e.g. foreign VHD footers)."""

    name = "Convert-VHD"

    def convert(self, source: Path, destination: Path) -> None:
        run_powershell(
            f"Convert-VHD -Path {ps_quote(source)} -DestinationPath {ps_quote(destination)} -VHDType Dynamic"
        )

    def resize(self, path: Path, size_bytes: int) -> None:
        run_powershell(f"Resize-VHD -Path {ps_quote(path)} -SizeBytes {int(size_bytes)}")


class QemuImgBackend(ConversionBackend):
    name = "qemu-img"

    def convert(self, source: Path, destination: Path) -> None:
        source_format = probe(source).get("format")
        cmd = ["convert"]
        if source_format:
            cmd += ["-f", str(source_format)]
        cmd += ["-O", "vhdx", "-o", "subformat=dynamic", str(source), str(destination)]
        _qemu_img(cmd, "convert")

    def resize(self, path: Path, size_bytes: int) -> None:
        _qemu_img(["resize", "-f", "vhdx", str(path), str(int(size_bytes))], "resize")


class DiskImageConverter:
    def __init__(self, backends: Optional[Sequence[ConversionBackend]] = None) -> None:
        self.backends: List[ConversionBackend] = list(backends) if backends else [HyperVBackend(), QemuImgBackend()]

    def normalize_to_dynamic(
        self,
        source: Path,
        destination: Optional[Path] = None,
        keep_source: bool = False,
    ) -> Path:
        """Convert ``source`` into a dynamically expanding VHDX at ``destination``.

        Each backend is tried in order until one succeeds. The result is
        written under a temporary name and renamed only on success. ``source``
        is deleted afterwards unless ``keep_source`` is set, which is how the
        per-VM working copy is made from the shared cache entry.
        """
        if destination is None:
            destination = source.with_suffix(".vhdx")
        temp = destination.with_name(f"{destination.stem}.tmp{destination.suffix}")
        errors = []
        for backend in self.backends:
            temp.unlink(missing_ok=True)
            log("INFO", f"Converting {source.name} -> {destination.name} ({backend.name})")
            try:
                backend.convert(source, temp)
            except ManagerError as exc:
                log("WARN", f"{backend.name} failed: {exc}")
                errors.append(f"{backend.name}: {exc}")
                continue
            if not temp.exists():
                log("WARN", f"{backend.name} reported success but produced no output")
                errors.append(f"{backend.name}: no output")
                continue
            temp.replace(destination)
            if not keep_source and source.resolve() != destination.resolve():
                source.unlink(missing_ok=True)
            log("SUCCESS", f"Converted to dynamic disk {destination}")
            return destination
        temp.unlink(missing_ok=True)
        raise ConversionError(f"Could not convert {source}: " + "; ".join(errors))

    def resize_if_needed(self, path: Path, target_bytes: int) -> bool:
        if target_bytes <= RESIZE_FLOOR_BYTES:
            log(
                "INFO",
                f"Requested size {target_bytes // (1024**3)}G is not above the "
                f"{RESIZE_FLOOR_BYTES // (1024**3)}G floor; skip resize",
            )
            return False
        errors = []
        for backend in self.backends:
            log("INFO", f"Resizing {path.name} to {target_bytes // (1024**3)}G ({backend.name})")
            try:
                backend.resize(path, target_bytes)
            except ManagerError as exc:
                log("WARN", f"{backend.name} resize failed: {exc}")
                errors.append(f"{backend.name}: {exc}")
                continue
            log("SUCCESS", f"Disk resized to {target_bytes // (1024**3)}G")
            return True
        raise ConversionError(f"Could not resize {path}: " + "; ".join(errors))
