class FileServiceError(Exception):
    """
    Base class for errors raised while ingesting, querying or inspecting uploaded files.
    """

    message = "File operation failed"

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.message)
        self.detail = detail or self.message


class ValidationError(FileServiceError):
    """
    Thrown when an upload has the wrong shape, type or size. Nothing is persisted.
    """

    message = "File upload error"


class UnsupportedMediaType(ValidationError):
    message = "Only Excel files (XLS, XLSX) and CSV files are allowed"


class PayloadTooLarge(ValidationError):
    message = "File too large"


class MultipleFilesNotAllowed(ValidationError):
    message = "Only one file may be uploaded per request"


class MissingFile(ValidationError):
    message = "No file uploaded"


class NotFound(FileServiceError):
    """
    Thrown when a file record does not exist or belongs to someone else.
    Both cases look the same to the caller.
    """

    message = "File not found"


class ReadError(FileServiceError):
    """
    Thrown when a stored blob cannot be opened or parsed as tabular data.
    """

    message = "Error reading file structure"


class StorageError(FileServiceError):
    """
    Thrown when the blob store or metadata store fails underneath a request.
    """

    message = "Error processing file"
