"""Error definitions for gridstore."""


class GridStoreError(Exception):
    """A storage engine error with code, message, and HTTP status.

    Attributes:
        code: Short error code string (e.g. "NotConnected", "StreamError").
        message: Human-readable error description.
        http_status: The HTTP status code a host application should return.
    """

    def __init__(self, code: str, message: str, http_status: int = 500) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status


# -- Configuration ------------------------------------------------------------


class ConfigurationError(GridStoreError):
    """The storage engine was configured incorrectly."""

    def __init__(self, message: str) -> None:
        super().__init__(code="ConfigurationError", message=message, http_status=500)


# -- Connection ---------------------------------------------------------------


class BackendConnectionError(GridStoreError):
    """The blob store backend could not be reached."""

    def __init__(self, message: str = "Failed to connect to the blob store") -> None:
        super().__init__(code="ConnectionFailed", message=message, http_status=503)


class NotConnectedError(GridStoreError):
    """An upload arrived while the connection is neither open nor opening."""

    def __init__(
        self, message: str = "The database connection must be open to store files"
    ) -> None:
        super().__init__(code="NotConnected", message=message, http_status=503)


# -- Naming -------------------------------------------------------------------


class NamingResolutionError(GridStoreError):
    """The file naming function could not produce upload settings."""

    def __init__(self, message: str) -> None:
        super().__init__(code="NamingResolution", message=message, http_status=400)


class InvalidSettingsType(NamingResolutionError):
    """The file naming function returned an unsupported type."""

    def __init__(self, type_name: str) -> None:
        super().__init__(f"Invalid type for file settings, got {type_name}")
        self.type_name = type_name


class GeneratorExhausted(NamingResolutionError):
    """A generator based naming function stopped producing settings."""

    def __init__(self) -> None:
        super().__init__("Generator ended unexpectedly")


# -- Streaming ----------------------------------------------------------------


class StreamError(GridStoreError):
    """A backend writer failed to open, write, or finalize a file."""

    def __init__(self, message: str) -> None:
        super().__init__(code="StreamError", message=message, http_status=500)


class FileNotFound(GridStoreError):
    """The referenced stored file does not exist."""

    def __init__(self, file_id: object = "", bucket_name: str = "") -> None:
        message = "The specified file does not exist."
        if file_id:
            message = f"File not found: {bucket_name}/{file_id}"
        super().__init__(code="FileNotFound", message=message, http_status=404)
        self.file_id = file_id
        self.bucket_name = bucket_name
