from ctypes import Structure, c_uint32, sizeof
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator, List, Type, TypeVar

from decache.logger import decache_logger
from decache.macho.extraction_errors import FormatError, OutOfMemoryError
from decache.macho.macho_definitions import (
    MachArch,
    MachoHeader64,
    MachoLoadCommand,
    MachoSection64Raw,
    MachoSegmentCommand64,
    StaticFilePointer,
)

if TYPE_CHECKING:
    from decache.macho.dyld_shared_cache import DyldSharedCacheParser

logger = decache_logger.getChild(__file__)

_StructureT = TypeVar("_StructureT", bound=Structure)


@dataclass
class MachoLoadCommandRecord:
    """One entry in the load command stream, located by its offset within the header buffer."""

    index: int
    offset: int
    cmd: int
    cmdsize: int


class MachoHeaderBuffer:
    """A private, mutable copy of an embedded image's Mach-O header and load commands.

    Structures handed out by this class are ctypes views over the backing bytearray, so assigning to their fields
    rewrites the buffer in place. The cache the bytes were copied from is never touched.
    """

    def __init__(self, buffer: bytearray) -> None:
        self.buffer = buffer
        self.header = MachoHeader64.from_buffer(self.buffer)

    def __bytes__(self) -> bytes:
        return bytes(self.buffer)

    @classmethod
    def read_from_cache(cls, cache: "DyldSharedCacheParser", file_offset: StaticFilePointer) -> "MachoHeaderBuffer":
        """Copy the Mach-O header and load command block at the provided cache offset into a new buffer.

        Raises:
            FormatError: The image is not a 64-bit Mach-O
            OutOfMemoryError: The working buffer could not be allocated
        """
        magic = c_uint32.from_buffer_copy(cache.get_bytes(file_offset, sizeof(c_uint32))).value
        if magic == MachArch.MH_MAGIC:
            raise FormatError("This Mach-O file is 32-bits, but only 64-bit Mach-O is supported")
        if magic != MachArch.MH_MAGIC_64:
            raise FormatError(f"Unsupported Mach-O magic {hex(magic)} @ {file_offset}")

        header = cache.read_struct(file_offset, MachoHeader64)
        macho_len = sizeof(MachoHeader64) + header.sizeofcmds
        logger.debug(f"Mach-O file header length: {macho_len} bytes")

        try:
            buffer = bytearray(macho_len)
        except MemoryError as e:
            raise OutOfMemoryError(f"Failed to allocate {macho_len} bytes") from e

        # Copy out the header, we'll be tweaking it
        buffer[:] = cache.get_bytes(file_offset, macho_len)
        return cls(buffer)

    def iter_load_commands(self) -> Iterator[MachoLoadCommandRecord]:
        """Walk the load command stream, advancing by the size each command declares for itself.

        Raises:
            FormatError: A command declares a size which is too small, or which runs past the command block
        """
        commands_end = sizeof(MachoHeader64) + self.header.sizeofcmds
        offset = sizeof(MachoHeader64)

        for index in range(self.header.ncmds):
            if offset + sizeof(MachoLoadCommand) > commands_end:
                break

            load_command = MachoLoadCommand.from_buffer(self.buffer, offset)
            cmd, cmdsize = load_command.cmd, load_command.cmdsize
            if cmdsize < sizeof(MachoLoadCommand):
                raise FormatError(f"Load command #{index} @ {hex(offset)} declares an invalid size {cmdsize}")
            if offset + cmdsize > commands_end:
                raise FormatError(f"Load command #{index} @ {hex(offset)} runs past the end of the load commands")

            yield MachoLoadCommandRecord(index=index, offset=offset, cmd=cmd, cmdsize=cmdsize)

            # move to next load command in header
            offset += cmdsize

    def command_view(self, record: MachoLoadCommandRecord, struct_type: Type[_StructureT]) -> _StructureT:
        """Interpret the command at `record` as `struct_type`. Writes to the view update the buffer."""
        if sizeof(struct_type) > record.cmdsize:
            raise FormatError(
                f"Load command #{record.index} is {record.cmdsize} bytes, too small for {struct_type.__name__}"
            )
        return struct_type.from_buffer(self.buffer, record.offset)

    def section_views(self, record: MachoLoadCommandRecord) -> List[MachoSection64Raw]:
        """Return views over the sections following the segment command at `record`."""
        segment = self.command_view(record, MachoSegmentCommand64)

        # The first section of this segment begins directly after the segment
        section_offset = record.offset + sizeof(MachoSegmentCommand64)
        sections_end = section_offset + segment.nsects * sizeof(MachoSection64Raw)
        if sections_end > record.offset + record.cmdsize:
            raise FormatError(f"Segment {segment.segname!r} declares more sections than its command holds")

        sections = []
        for _ in range(segment.nsects):
            sections.append(MachoSection64Raw.from_buffer(self.buffer, section_offset))
            section_offset += sizeof(MachoSection64Raw)
        return sections
