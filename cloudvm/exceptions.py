"""Custom exceptions for cloudvm."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigurationError(ManagerError):
    """Unknown distro alias, unsupported checksum algorithm, invalid request."""


class NetworkError(ManagerError):
    """Timestamp resolution, download or checksum manifest fetch failed."""


class IntegrityError(ManagerError):
    """Downloaded archive does not match the published checksum manifest."""


class ConversionError(ManagerError):
    """Every disk-image conversion backend failed."""


class PackagingError(ManagerError):
    """Provisioning ISO could not be mastered."""
