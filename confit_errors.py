# Exceptions raised by confit. Everything derives from ConfitError so the
# entry point can report any failure the same way.


class ConfitError(Exception):
    pass


class ConfigError(ConfitError):
    """Missing or invalid command-line configuration."""


class NetworkError(ConfitError):
    """Instance metadata service or AWS API call failed."""


class InstanceLookupError(ConfitError):
    """DescribeInstances did not return exactly one instance."""


class TemplateError(ConfitError):
    """Prefix template is malformed or references a missing tag."""


class SyncError(ConfitError):
    """An object could not be published to the local filesystem."""


class CatalogError(NetworkError):
    pass


class DownloadError(NetworkError, SyncError):
    pass


class FilesystemError(SyncError):
    pass


class CacheError(FilesystemError):
    """Tag cache file could not be read, parsed or written."""
