from enum import Enum
from pathlib import Path
from typing import Optional, Union

from decache.logger import decache_logger
from decache.macho.dyld_shared_cache import DyldSharedCacheParser, ImageLocation
from decache.macho.macho_file_writer import MachoFileWriter
from decache.macho.macho_header_buffer import MachoHeaderBuffer
from decache.macho.macho_load_command_fixups import MachoLoadCommandFixer

logger = decache_logger.getChild(__file__)


class ExtractionState(Enum):
    IDLE = "idle"
    HEADER_READ = "header_read"
    FIXING = "fixing"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


class DyldSharedCacheImageExtractor:
    """Extract one image from a dyld_shared_cache into a standalone Mach-O file.

    An extractor runs a single extraction. Every buffer it creates lives only for that run, so separate extractors
    may share one DyldSharedCacheParser.

    If the extraction fails after the output file was created, the partially written file is left on disk and must
    be treated as unusable.
    """

    def __init__(self, dyld_shared_cache: DyldSharedCacheParser, image_path: str, output_path: Path) -> None:
        self.dyld_shared_cache = dyld_shared_cache
        self.image_path = image_path
        self.output_path = output_path

        self.state = ExtractionState.IDLE
        self.location: Optional[ImageLocation] = None
        self.header_buffer: Optional[MachoHeaderBuffer] = None

    def __repr__(self) -> str:
        return f"<DyldSharedCacheImageExtractor image={self.image_path} state={self.state.name}>"

    def _transition(self, state: ExtractionState) -> None:
        logger.debug(f"{self.image_path}: {self.state.name} -> {state.name}")
        self.state = state

    def extract(self) -> Path:
        """Run the extraction, returning the path of the written image.

        Raises:
            ExtractionError: The extraction failed. The error describes why
        """
        if self.state != ExtractionState.IDLE:
            raise RuntimeError(f"Extraction of {self.image_path} already ran ({self.state.name})")

        try:
            # Nothing is written until the image has been found and its header validated
            self.location = self.dyld_shared_cache.locate_image(self.image_path)
            self.header_buffer = MachoHeaderBuffer.read_from_cache(self.dyld_shared_cache, self.location.file_offset)
            self._transition(ExtractionState.HEADER_READ)

            logger.info(f"Writing '{self.image_path}' to output file '{self.output_path}'")
            with MachoFileWriter(self.output_path) as writer:
                fixer = MachoLoadCommandFixer(self.dyld_shared_cache, self.header_buffer, writer)

                self._transition(ExtractionState.FIXING)
                fixer.fixup()

                self._transition(ExtractionState.FINALIZING)
                fixer.finalize()
        except Exception:
            self._transition(ExtractionState.FAILED)
            raise

        self._transition(ExtractionState.DONE)
        return self.output_path


def extract_image(
    dyld_shared_cache: DyldSharedCacheParser, image_path: str, output_path: Union[str, Path]
) -> Path:
    """Extract the image at `image_path` within the cache into a standalone Mach-O at `output_path`."""
    return DyldSharedCacheImageExtractor(dyld_shared_cache, image_path, Path(output_path)).extract()
