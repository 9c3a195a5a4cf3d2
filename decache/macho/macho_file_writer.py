import os
from pathlib import Path
from types import TracebackType
from typing import BinaryIO, Optional, Type

from decache.logger import decache_logger
from decache.macho.extraction_errors import ExtractionIOError
from decache.macho.macho_definitions import StaticFilePointer

logger = decache_logger.getChild(__file__)


class MachoFileWriter:
    """Append-only sink for an extracted Mach-O file.

    Every append reports the absolute file offset the data landed at. Those offsets are what the load commands get
    rewritten to, so the writer's cursor is the single source of truth for the new file's layout.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._file: Optional[BinaryIO] = None
        self._position = StaticFilePointer(0)

    def __enter__(self) -> "MachoFileWriter":
        try:
            # Create or truncate. The header is patched in at offset 0 at the very end
            self._file = open(self.path, "w+b")
        except OSError as e:
            raise ExtractionIOError(f"Failed to create output file {self.path} (reason: {e.strerror})") from e
        self._position = StaticFilePointer(0)
        return self

    def __exit__(
        self, exc_type: Optional[Type[BaseException]], exc_val: Optional[BaseException], exc_tb: Optional[TracebackType]
    ) -> None:
        if self._file:
            self._file.close()
            self._file = None

    @property
    def file(self) -> BinaryIO:
        if not self._file:
            raise ExtractionIOError(f"{self.path} is not open for writing")
        return self._file

    @property
    def position(self) -> StaticFilePointer:
        """The offset the next append will land at."""
        return self._position

    def append(self, data: bytes) -> StaticFilePointer:
        """Write the provided data at the end of the file, and return the offset it was written to."""
        try:
            # Seek to the end of the file, and get the actual offset in bytes
            file_offset = StaticFilePointer(self.file.seek(0, os.SEEK_END))
            if data:
                self.file.write(data)
                self.file.flush()
        except OSError as e:
            raise ExtractionIOError(f"Failed to write {len(data)} bytes to {self.path}") from e

        self._position = file_offset + len(data)
        return file_offset

    def end_of_file(self) -> StaticFilePointer:
        try:
            return StaticFilePointer(self.file.seek(0, os.SEEK_END))
        except OSError as e:
            raise ExtractionIOError(f"Failed to seek to end of {self.path}") from e

    def overwrite(self, file_offset: StaticFilePointer, data: bytes) -> None:
        """Replace the bytes at the provided offset. This does not move the append cursor."""
        try:
            self.file.seek(file_offset, os.SEEK_SET)
            self.file.write(data)
            self.file.flush()
        except OSError as e:
            raise ExtractionIOError(f"Failed to write {len(data)} bytes at {file_offset} in {self.path}") from e

        self._position = max(self._position, StaticFilePointer(file_offset + len(data)))
