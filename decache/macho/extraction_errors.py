class ExtractionError(Exception):
    """Base class for every failure while extracting an image from a dyld_shared_cache."""


class FormatError(ExtractionError):
    """Raised when the cache or an embedded image is not in a supported format."""


class ImageNotFoundError(ExtractionError):
    """Raised when no image in the cache's directory has the requested path."""


class LastImageUnsupportedError(ExtractionError):
    """Raised when the requested image is the final entry in the cache's image directory."""


class OutOfMemoryError(ExtractionError):
    """Raised when a buffer needed for extraction could not be allocated."""


class ExtractionIOError(ExtractionError):
    """Raised when reading the cache or writing the extracted image fails."""


class CacheReadError(ExtractionIOError):
    """Raised when a client asks for bytes outside the cache."""


class InternalInvariantViolationError(ExtractionError):
    """Raised when the image cannot be finalized because a required structure was never seen."""
