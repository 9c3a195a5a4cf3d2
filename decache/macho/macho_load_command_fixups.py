from ctypes import Structure, c_uint32, sizeof
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from decache.logger import decache_logger
from decache.macho.dyld_shared_cache import DyldSharedCacheParser
from decache.macho.extraction_errors import (
    ExtractionIOError,
    FormatError,
    InternalInvariantViolationError,
    OutOfMemoryError,
)
from decache.macho.macho_definitions import (
    SEG_LINKEDIT,
    MachoDyldInfoCommand,
    MachoDysymtabCommand,
    MachoLinkeditDataCommand,
    MachoNlist64,
    MachoSegmentCommand64,
    MachoSymtabCommand,
    StaticFilePointer,
)
from decache.macho.macho_file_writer import MachoFileWriter
from decache.macho.macho_header_buffer import MachoHeaderBuffer, MachoLoadCommandRecord
from decache.macho.macho_load_commands import MachoLoadCommands

logger = decache_logger.getChild(__file__)

_UINT32_MAX = 0xFFFFFFFF


@dataclass
class QueuedFieldPatch:
    """A load command field whose value is only known once every other command has been written out."""

    struct: Structure
    field_name: str
    # Computes the field's value from the final end-of-file offset
    compute: Callable[[StaticFilePointer], int]

    def apply(self, end_of_file: StaticFilePointer) -> None:
        value = self.compute(end_of_file)
        logger.debug(f"Patching {type(self.struct).__name__}.{self.field_name} = {hex(value)}")
        setattr(self.struct, self.field_name, value)


class MachoLoadCommandFixer:
    """Rewrite the load commands of an embedded image so they describe a standalone file.

    Every command which points at data in the cache has that data appended to the output file, and its offsets
    rewritten to where the data landed. Commands are processed in the order they appear in the header, so the output
    file's layout follows load command order rather than the original layout.

    Limitations:
        - LC_DYLD_INFO and LC_DYLD_INFO_ONLY are left untouched, so their rebase/bind/export offsets still refer to the
          cache. Tools which interpret this data will misread the extracted image.
        - Only the indirect symbol table of LC_DYSYMTAB is relocated. Its other sub-table offsets are left as-is.
        - Sections with a file offset of 0 are zero-fill and keep offset 0.
        - A section whose rebased offset falls outside the uint32 range, such as a section placed before its
          segment's fileoff, aborts the extraction with FormatError.
        - Commands not listed in the handler table are left untouched and nothing they reference is copied.
    """

    def __init__(
        self, dyld_shared_cache: DyldSharedCacheParser, header_buffer: MachoHeaderBuffer, writer: MachoFileWriter
    ) -> None:
        self.dyld_shared_cache = dyld_shared_cache
        self.header_buffer = header_buffer
        self.writer = writer

        self.linkedit_segment: Optional[MachoSegmentCommand64] = None
        self.queued_patches: List[QueuedFieldPatch] = []

        self._handlers: Dict[int, Callable[[MachoLoadCommandRecord], None]] = {
            MachoLoadCommands.LC_SEGMENT_64: self._fixup_segment,
            MachoLoadCommands.LC_SYMTAB: self._fixup_symtab,
            MachoLoadCommands.LC_DYSYMTAB: self._fixup_dysymtab,
            MachoLoadCommands.LC_FUNCTION_STARTS: self._fixup_linkedit_data,
            MachoLoadCommands.LC_DATA_IN_CODE: self._fixup_linkedit_data,
        }

    def _handler_for_command(self, cmd: int) -> Optional[Callable[[MachoLoadCommandRecord], None]]:
        if cmd in self._handlers:
            return self._handlers[cmd]
        # Matches both LC_DYLD_INFO and LC_DYLD_INFO_ONLY
        if (cmd & 0xFF) == MachoLoadCommands.LC_DYLD_INFO:
            return self._log_dyld_info
        return None

    def fixup(self) -> None:
        """Process every load command in the header buffer, appending the data each references to the output."""
        for record in self.header_buffer.iter_load_commands():
            logger.debug(f"  {hex(record.cmd)} -> {record.cmdsize} bytes")
            handler = self._handler_for_command(record.cmd)
            if handler:
                handler(record)

    def finalize(self) -> None:
        """Resolve deferred fields and write the patched header block to the start of the output file.

        Raises:
            InternalInvariantViolationError: The image has no __LINKEDIT segment
        """
        if self.linkedit_segment is None:
            raise InternalInvariantViolationError(f"No {SEG_LINKEDIT} segment found, cannot finalize the image")

        end_of_file = self.writer.end_of_file()
        for patch in self.queued_patches:
            patch.apply(end_of_file)

        # Now write out the updated header
        self.writer.overwrite(StaticFilePointer(0), bytes(self.header_buffer))

    def _fixup_segment(self, record: MachoLoadCommandRecord) -> None:
        segment = self.header_buffer.command_view(record, MachoSegmentCommand64)
        segment_name = segment.segname.decode(errors="replace")
        logger.debug(
            f"    LC_SEGMENT_64: fileoff = {hex(segment.fileoff)} filesize = {segment.filesize} "
            f"nsects = {segment.nsects} [{segment_name}]"
        )

        if segment_name == SEG_LINKEDIT:
            # Nothing is copied for __LINKEDIT. It's rebuilt piece by piece as the commands which reference it are
            # processed, and its size is resolved when the header is finalized
            logger.debug(f"            NOTE: this is the {SEG_LINKEDIT} segment, holding on for later use")
            segment.fileoff = self.writer.position
            segment.filesize = 0
            self.linkedit_segment = segment
            self.queued_patches.append(
                QueuedFieldPatch(segment, "filesize", lambda end_of_file: end_of_file - segment.fileoff)
            )
            return

        cache_off = segment.fileoff
        # The sections must be rebased against the same output position the segment body lands at
        output_base = self.writer.position
        for idx, section in enumerate(self.header_buffer.section_views(record)):
            logger.debug(
                f"        [{idx}] - {hex(section.addr)} {section.size} -> {hex(section.offset)} in file "
                f"(reloff {hex(section.reloff)}) [{section.sectname.decode(errors='replace')}]"
            )
            # Zero-fill sections have no file contents to rebase
            if section.offset == 0:
                continue

            new_offset = section.offset - cache_off + output_base
            if not 0 <= new_offset <= _UINT32_MAX:
                raise FormatError(
                    f"Section {section.sectname!r} @ {hex(section.offset)} lies outside segment {segment_name}"
                )
            section.offset = new_offset

        # Write the segment from the cache to the file
        segment_data = self.dyld_shared_cache.get_bytes(StaticFilePointer(cache_off), segment.filesize)
        segment.fileoff = self.writer.append(segment_data)

    def _fixup_symtab(self, record: MachoLoadCommandRecord) -> None:
        symtab = self.header_buffer.command_view(record, MachoSymtabCommand)
        logger.debug(
            f"    LC_SYMTAB: nsyms = {symtab.nsyms} symoff = {hex(symtab.symoff)} stroff = {hex(symtab.stroff)}, "
            f"strsize = {symtab.strsize}"
        )

        symbol_table_type = MachoNlist64 * symtab.nsyms
        symbol_table_data = self.dyld_shared_cache.get_bytes(
            StaticFilePointer(symtab.symoff), sizeof(symbol_table_type)
        )
        try:
            new_symbols = symbol_table_type.from_buffer_copy(symbol_table_data)
        except MemoryError as e:
            raise OutOfMemoryError(f"Could not allocate memory for {symtab.nsyms} symbols") from e

        # Reconstruct the string table from the symbol table. The new string table starts wherever the first
        # name lands, and every name is referenced relative to that start
        source_string_table = symtab.stroff
        string_table_start = self.writer.position
        string_table_size = 0
        for symbol in new_symbols:
            name = self.dyld_shared_cache.read_c_string(StaticFilePointer(source_string_table + symbol.n_un.n_strx))
            logger.debug(f"Symbol: {hex(symbol.n_value)} [{name.decode(errors='replace')}] ({len(name) + 1} bytes)")

            name_offset = self.writer.append(name + b"\x00")
            symbol.n_un.n_strx = name_offset - string_table_start
            string_table_size += len(name) + 1

        symtab.stroff = string_table_start
        symtab.strsize = string_table_size

        # Write out our updated symbol table
        symtab.symoff = self.writer.append(bytes(new_symbols))

        logger.debug(
            f"    LC_SYMTAB (after): nsyms = {symtab.nsyms} symoff = {hex(symtab.symoff)} "
            f"stroff = {hex(symtab.stroff)}, strsize = {symtab.strsize}"
        )

    def _fixup_dysymtab(self, record: MachoLoadCommandRecord) -> None:
        dysymtab = self.header_buffer.command_view(record, MachoDysymtabCommand)
        logger.debug(
            f"    LC_DYSYMTAB: ilocalsym = {hex(dysymtab.ilocalsym)}, iextdefsym = {hex(dysymtab.iextdefsym)}, "
            f"iundefsym = {hex(dysymtab.iundefsym)}, tocoff = {hex(dysymtab.tocoff)}"
        )
        logger.debug(
            f"                 modtaboff = {hex(dysymtab.modtaboff)}, extrefsymoff = {hex(dysymtab.extrefsymoff)}, "
            f"indirectsymoff = {hex(dysymtab.indirectsymoff)}"
        )
        logger.debug(f"                 extreloff = {hex(dysymtab.extreloff)}, locreloff = {hex(dysymtab.locreloff)}")

        if dysymtab.indirectsymoff == 0:
            return

        # indirect symtab is an array of uint32's
        indirect_symtab_size = dysymtab.nindirectsyms * sizeof(c_uint32)
        indirect_symtab = self.dyld_shared_cache.get_bytes(
            StaticFilePointer(dysymtab.indirectsymoff), indirect_symtab_size
        )
        dysymtab.indirectsymoff = self.writer.append(indirect_symtab)

    def _log_dyld_info(self, record: MachoLoadCommandRecord) -> None:
        dyld_info = self.header_buffer.command_view(record, MachoDyldInfoCommand)
        logger.debug(
            f"    LC_DYLD_INFO: rebase_off = {hex(dyld_info.rebase_off)}, bind_off = {hex(dyld_info.bind_off)}, "
            f"weak_bind_off = {hex(dyld_info.weak_bind_off)}, lazy_bind_off = {hex(dyld_info.lazy_bind_off)}, "
            f"export_off = {hex(dyld_info.export_off)}"
        )

    def _fixup_linkedit_data(self, record: MachoLoadCommandRecord) -> None:
        linkedit_data = self.header_buffer.command_view(record, MachoLinkeditDataCommand)
        logger.debug(
            f"    LinkEdit Data ({hex(record.cmd)}): dataoff = {hex(linkedit_data.dataoff)} "
            f"datasize = {linkedit_data.datasize}"
        )

        # A failure here doesn't abort the extraction. The command keeps its original offset
        try:
            blob = self.dyld_shared_cache.get_bytes(StaticFilePointer(linkedit_data.dataoff), linkedit_data.datasize)
            file_offset = self.writer.append(blob)
        except ExtractionIOError as e:
            logger.error(f"Failed to append {SEG_LINKEDIT} data to file: {e}")
            return
        linkedit_data.dataoff = file_offset
