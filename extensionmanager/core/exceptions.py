"""Exception classes for the extension manager"""


class ExtensionError(Exception):
    """Base exception for all extension-related errors"""
    pass


class ValidationError(ExtensionError):
    """Raised when an operation is given an unknown catalog, extension or release"""
    pass


class InstallationError(ExtensionError):
    """Raised when installing, extracting or deleting extension files fails"""
    pass


class DownloadError(InstallationError):
    """Raised when downloading a file fails"""
    pass


class SecurityError(ExtensionError):
    """Raised on insufficient permissions or when an archive entry escapes its destination"""
    pass


class InstallCancelledError(ExtensionError):
    """Raised when a download or an extraction is cancelled"""
    pass


class RegistryError(ExtensionError):
    """Raised when the registry cannot be read or written"""
    pass


class RegistryNotFoundError(RegistryError):
    """Raised when the registry file is missing or doesn't contain a valid registry"""
    pass


class CatalogFetchError(ExtensionError):
    """Raised when a catalog manifest cannot be fetched or parsed"""
    pass
