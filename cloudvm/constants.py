"""Global constants and path configuration for cloudvm."""

from __future__ import annotations

import os
import re
from pathlib import Path

# DATA_DIR provides a single root for all persistent data (the image cache).
_DATA_DIR = os.environ.get("DATA_DIR")
if _DATA_DIR:
    DATA_DIR = Path(_DATA_DIR)
elif os.environ.get("PROGRAMDATA"):
    DATA_DIR = Path(os.environ["PROGRAMDATA"]) / "cloudvm"
else:
    DATA_DIR = Path("/var/lib/cloudvm")
CACHE_DIR = DATA_DIR / "cache"

TRUTHY = {"1", "true", "yes", "on"}
MAC_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")
DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
VM_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,62}$")

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}

_SENSITIVE_FIELDS = {"password"}

USER_AGENT = "cloudvm/1.0"
DOWNLOAD_CHUNK_SIZE = 1024 * 256  # 256 KiB

# Cache layout
TIMESTAMP_FILE_NAME = "baseimagetimestamp.txt"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
PARTIAL_SUFFIX = ".tmp"
PRIMARY_EXTENSION = "vhd"
CONVERTED_EXTENSION = "vhdx"
# Disk images an extracted archive may contain, in no particular order.
DISK_IMAGE_EXTENSIONS = ("vhd", "vhdx", "raw")

# Images at or below this size are never resized.
RESIZE_FLOOR_BYTES = 30 * 1024**3

CHECKSUM_ALGORITHMS = {
    "SHA256SUMS": "sha256",
    "SHA512SUMS": "sha512",
}

NET_DIALECTS = ("v1", "v2", "ENI-inline", "ENI-file", "dhclient")
NET_DIALECT_ALIASES = {
    "eni": "ENI-inline",
    "eni-inline": "ENI-inline",
    "eni-file": "ENI-file",
    "v1": "v1",
    "v2": "v2",
    "dhclient": "dhclient",
}
DEFAULT_NET_DIALECT = "ENI-file"

POWER_STATE_MODES = {"reboot", "poweroff", "halt"}

# Provisioning volume
ISO_VOLUME_LABEL = "cidata"
ISO_TOOLS = ("genisoimage", "mkisofs", "xorriso")
ISO_FLAGS = ("-volid", ISO_VOLUME_LABEL, "-joliet", "-rock")

OVF_ENV_NS = "http://schemas.dmtf.org/ovf/environment/1"
WINDOWS_AZURE_NS = "http://schemas.microsoft.com/windowsazure"

POWERSHELL = os.environ.get("POWERSHELL", "powershell")
SECURE_BOOT_TEMPLATE = "MicrosoftUEFICertificateAuthority"
