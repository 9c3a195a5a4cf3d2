from .macho_definitions import (
    SEG_LINKEDIT,
    DYLD_SHARED_CACHE_MAGIC_PREFIX,
    StaticFilePointer, VirtualMemoryPointer,

    MachArch,
    VMProtFlags,
    MachoNlistUn,
    MachoNlist64,
    MachoHeader64,
    MachoLoadCommand,
    MachoSection64Raw,
    MachoSymtabCommand,
    MachoDysymtabCommand,
    MachoDyldInfoCommand,
    MachoSegmentCommand64,
    MachoLinkeditDataCommand,

    DyldSharedCacheHeader,
    DyldSharedFileMapping,
    DyldSharedCacheImageInfo,
)

from .macho_load_commands import (
    MachoLoadCommands
)

from .extraction_errors import (
    FormatError,
    CacheReadError,
    ExtractionError,
    OutOfMemoryError,
    ExtractionIOError,
    ImageNotFoundError,
    LastImageUnsupportedError,
    InternalInvariantViolationError,
)

from .dyld_shared_cache import (
    ImageLocation,
    DyldSharedCacheImage,
    DyldSharedCacheParser,
)

from .macho_header_buffer import (
    MachoHeaderBuffer,
    MachoLoadCommandRecord,
)

from .macho_file_writer import (
    MachoFileWriter,
)

from .macho_load_command_fixups import (
    QueuedFieldPatch,
    MachoLoadCommandFixer,
)

from .macho_image_extractor import (
    ExtractionState,
    DyldSharedCacheImageExtractor,
    extract_image,
)
