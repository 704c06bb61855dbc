"""Utility functions for cloudvm."""

from __future__ import annotations

import hashlib
import os
import secrets
import shutil
import string
import subprocess
import time
from pathlib import Path
from typing import List, Optional

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

try:
    import requests
except ImportError as exc:  # pragma: no cover
    raise SystemExit("requests is required but not installed") from exc

from cloudvm.constants import (
    _LOG_VERBOSE,
    DISK_SIZE_RE,
    DOWNLOAD_CHUNK_SIZE,
    MAC_ADDRESS_RE,
    PARTIAL_SUFFIX,
    POWERSHELL,
    TRUTHY,
    USER_AGENT,
)
from cloudvm.exceptions import ConfigurationError, ManagerError, NetworkError

REQUEST_TIMEOUT = 60


def log(level: str, message: str) -> None:
    """Lightweight leveled logging with colour prefixes."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigurationError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigurationError(f"{name} must be <= {max_val} (got {value})")
    return value


def validate_disk_size(raw: str) -> str:
    if not DISK_SIZE_RE.match(raw):
        raise ConfigurationError(
            f"Invalid DISK_SIZE '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')"
        )
    return raw


def parse_size_to_bytes(raw: str) -> int:
    """Convert '16G' style sizes (binary units) to bytes."""
    value = validate_disk_size(raw.strip())
    units = {"K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}
    suffix = value[-1].upper()
    if suffix in units:
        return int(value[:-1]) * units[suffix]
    return int(value)


def normalize_mac(raw: str) -> str:
    """Accept 00155D010203 / 00-15-5D-01-02-03 / 00:15:5d:01:02:03 and return colon form."""
    compact = raw.strip().lower().replace(":", "").replace("-", "")
    mac = ":".join(compact[i : i + 2] for i in range(0, len(compact), 2))
    if not MAC_ADDRESS_RE.match(mac):
        raise ConfigurationError(f"Invalid MAC address '{raw}'")
    return mac


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def generate_password(length: int = 16) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def file_digest(path: Path, algorithm: str) -> str:
    digest = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(DOWNLOAD_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def http_session() -> requests.Session:
    session = requests.Session()
    session.headers["User-Agent"] = USER_AGENT
    return session


def fetch_text(session: requests.Session, url: str) -> str:
    log("DEBUG", f"GET {url}")
    try:
        response = session.get(url, timeout=REQUEST_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise NetworkError(f"Failed to fetch {url}: {exc}")
    return response.text


def download_file(session: requests.Session, url: str, destination: Path, label: str = "Downloading") -> None:
    """Stream a download to ``<destination>.tmp`` and rename it into place on success."""
    log("INFO", f"{label}: {url}")
    try:
        response = session.get(url, stream=True, timeout=REQUEST_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise NetworkError(f"Failed to download {url}: {exc}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    if total_bytes:
        log("INFO", f"Remote size: {total_bytes / (1024 * 1024):.1f} MiB")
    downloaded = 0
    start_time = time.time()
    partial = destination.with_name(destination.name + PARTIAL_SUFFIX)

    try:
        with open(partial, "wb") as tmp:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                if not chunk:
                    continue
                tmp.write(chunk)
                downloaded += len(chunk)

                elapsed = time.time() - start_time
                speed = downloaded / elapsed if elapsed > 0 else 0
                downloaded_mb = downloaded / (1024 * 1024)
                if total_bytes:
                    pct = downloaded * 100 / total_bytes
                    bar_len = 30
                    filled = int(bar_len * downloaded / total_bytes)
                    bar = "#" * filled + "-" * (bar_len - filled)
                    print(
                        f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_bytes / (1024 * 1024):.1f} MiB "
                        f"({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
                else:
                    print(f"\r  {downloaded_mb:.1f} MiB downloaded", end="", flush=True)
        print(flush=True)
        partial.replace(destination)
    except requests.RequestException as exc:
        partial.unlink(missing_ok=True)
        raise NetworkError(f"Download of {url} interrupted: {exc}")
    except Exception:
        partial.unlink(missing_ok=True)
        raise
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")


def find_tool(candidates: List[str]) -> Optional[str]:
    for name in candidates:
        if shutil.which(name):
            return name
    return None


def ps_quote(value: object) -> str:
    """Quote a value as a single-quoted PowerShell string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result


def run_powershell(script: str) -> subprocess.CompletedProcess:
    """Run a PowerShell snippet, raising ManagerError with its stderr on failure."""
    cmd = [POWERSHELL, "-NoProfile", "-NonInteractive", "-Command", script]
    try:
        result = run(cmd, check=False, capture_output=True)
    except FileNotFoundError:
        raise ManagerError(f"{POWERSHELL} not found; the Hyper-V PowerShell module is required")
    if result.returncode != 0:
        detail = (result.stderr or result.stdout or "").strip()
        raise ManagerError(f"PowerShell command failed ({result.returncode}): {detail}")
    return result
