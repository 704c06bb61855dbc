"""cloudvm package."""

__all__ = [
    "cache",
    "catalog",
    "cli",
    "config",
    "constants",
    "convert",
    "exceptions",
    "fetch",
    "hyperv",
    "models",
    "network",
    "provision",
    "remote",
    "utils",
    "vm",
]
