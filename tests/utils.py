"""Helpers to build small, synthetic dyld_shared_cache files for unit tests.

A real dyld_shared_cache is well over 1GB, so the tests assemble caches byte-by-byte from the same structures the
parser reads.
"""
from ctypes import Structure, c_uint32, sizeof
from typing import Dict, List, Optional, Tuple

from decache.macho import (
    DyldSharedCacheHeader,
    DyldSharedCacheImageInfo,
    DyldSharedFileMapping,
    MachArch,
    MachoDyldInfoCommand,
    MachoDysymtabCommand,
    MachoHeader64,
    MachoLinkeditDataCommand,
    MachoLoadCommand,
    MachoLoadCommands,
    MachoNlist64,
    MachoSection64Raw,
    MachoSegmentCommand64,
    MachoSymtabCommand,
    VMProtFlags,
)

# Layout of the tables written by DyldSharedCacheBuilder. Image contents must be placed after _CONTENT_START
_MAPPINGS_OFFSET = 0x80
_IMAGES_OFFSET = 0x100
_PATHS_OFFSET = 0x200
_CONTENT_START = 0x400


class DyldSharedCacheBuilder:
    def __init__(self, size: int, magic: bytes = b"dyld_v1   arm64") -> None:
        self.data = bytearray(size)
        self.magic = magic
        self.mappings: List[DyldSharedFileMapping] = []
        self.images: List[Tuple[int, str]] = []

    def add_mapping(self, address: int, size: int, file_offset: int, prot: int = VMProtFlags.VM_PROT_READ) -> None:
        mapping = DyldSharedFileMapping()
        mapping.address = address
        mapping.size = size
        mapping.file_offset = file_offset
        mapping.max_prot = prot
        mapping.init_prot = prot
        self.mappings.append(mapping)

    def add_image(self, address: int, path: str) -> None:
        self.images.append((address, path))

    def write(self, offset: int, data: bytes) -> None:
        self.data[offset : offset + len(data)] = data

    def build(self) -> bytes:
        header = DyldSharedCacheHeader()
        header.magic = self.magic
        header.mappingOffset = _MAPPINGS_OFFSET
        header.mappingCount = len(self.mappings)
        header.imagesOffset = _IMAGES_OFFSET
        header.imagesCount = len(self.images)
        header.dyldBaseAddress = self.mappings[0].address if self.mappings else 0
        self.write(0, bytes(header))

        for idx, mapping in enumerate(self.mappings):
            self.write(_MAPPINGS_OFFSET + idx * sizeof(DyldSharedFileMapping), bytes(mapping))

        path_offset = _PATHS_OFFSET
        for idx, (address, path) in enumerate(self.images):
            image_info = DyldSharedCacheImageInfo()
            image_info.address = address
            image_info.pathFileOffset = path_offset
            self.write(_IMAGES_OFFSET + idx * sizeof(DyldSharedCacheImageInfo), bytes(image_info))

            path_bytes = path.encode() + b"\x00"
            self.write(path_offset, path_bytes)
            path_offset += len(path_bytes)

        assert path_offset <= _CONTENT_START, "Image paths overflow into image contents"
        return bytes(self.data)


def section_64(sectname: str, segname: str, addr: int, size: int, offset: int) -> MachoSection64Raw:
    section = MachoSection64Raw()
    section.sectname = sectname.encode()
    section.segname = segname.encode()
    section.addr = addr
    section.size = size
    section.offset = offset
    return section


def segment_command_64(
    segname: str,
    vmaddr: int,
    vmsize: int,
    fileoff: int,
    filesize: int,
    sections: Optional[List[MachoSection64Raw]] = None,
) -> bytes:
    sections = sections or []
    segment = MachoSegmentCommand64()
    segment.cmd = MachoLoadCommands.LC_SEGMENT_64
    segment.cmdsize = sizeof(MachoSegmentCommand64) + len(sections) * sizeof(MachoSection64Raw)
    segment.segname = segname.encode()
    segment.vmaddr = vmaddr
    segment.vmsize = vmsize
    segment.fileoff = fileoff
    segment.filesize = filesize
    segment.nsects = len(sections)
    return bytes(segment) + b"".join(bytes(s) for s in sections)


def symtab_command(symoff: int, nsyms: int, stroff: int, strsize: int) -> bytes:
    symtab = MachoSymtabCommand()
    symtab.cmd = MachoLoadCommands.LC_SYMTAB
    symtab.cmdsize = sizeof(MachoSymtabCommand)
    symtab.symoff = symoff
    symtab.nsyms = nsyms
    symtab.stroff = stroff
    symtab.strsize = strsize
    return bytes(symtab)


def dysymtab_command(indirectsymoff: int, nindirectsyms: int, **fields: int) -> bytes:
    dysymtab = MachoDysymtabCommand()
    dysymtab.cmd = MachoLoadCommands.LC_DYSYMTAB
    dysymtab.cmdsize = sizeof(MachoDysymtabCommand)
    dysymtab.indirectsymoff = indirectsymoff
    dysymtab.nindirectsyms = nindirectsyms
    for name, value in fields.items():
        setattr(dysymtab, name, value)
    return bytes(dysymtab)


def dyld_info_command(cmd: int, **fields: int) -> bytes:
    dyld_info = MachoDyldInfoCommand()
    dyld_info.cmd = cmd
    dyld_info.cmdsize = sizeof(MachoDyldInfoCommand)
    for name, value in fields.items():
        setattr(dyld_info, name, value)
    return bytes(dyld_info)


def linkedit_data_command(cmd: int, dataoff: int, datasize: int) -> bytes:
    linkedit_data = MachoLinkeditDataCommand()
    linkedit_data.cmd = cmd
    linkedit_data.cmdsize = sizeof(MachoLinkeditDataCommand)
    linkedit_data.dataoff = dataoff
    linkedit_data.datasize = datasize
    return bytes(linkedit_data)


def uuid_command(uuid: bytes) -> bytes:
    load_command = MachoLoadCommand()
    load_command.cmd = MachoLoadCommands.LC_UUID
    load_command.cmdsize = sizeof(MachoLoadCommand) + len(uuid)
    return bytes(load_command) + uuid


def macho_header_64(load_commands: List[bytes], magic: int = MachArch.MH_MAGIC_64) -> bytes:
    header = MachoHeader64()
    header.magic = magic
    header.cputype = 0x0100000C
    header.filetype = 6
    header.ncmds = len(load_commands)
    header.sizeofcmds = sum(len(cmd) for cmd in load_commands)
    return bytes(header) + b"".join(load_commands)


def nlist_64(n_strx: int, n_type: int = 0xF, n_sect: int = 1, n_value: int = 0) -> bytes:
    symbol = MachoNlist64()
    symbol.n_un.n_strx = n_strx
    symbol.n_type = n_type
    symbol.n_sect = n_sect
    symbol.n_value = n_value
    return bytes(symbol)


class SampleCache:
    """A small cache with three mappings and two images. The first image is a complete dylib.

    Cache file layout:
        0x0000 - 0x2000: __TEXT mapping, libSample's Mach-O header at 0x1000
        0x2000 - 0x3000: __DATA mapping, libSample's __DATA at 0x2000
        0x3000 - 0x4000: __LINKEDIT mapping, shared with the whole cache
    """

    TEXT_MAPPING_ADDR = 0x180000000
    DATA_MAPPING_ADDR = 0x1A0000000
    LINKEDIT_MAPPING_ADDR = 0x1C0000000

    IMAGE_PATH = "/usr/lib/libSample.dylib"
    IMAGE_FILE_OFFSET = 0x1000
    LAST_IMAGE_PATH = "/usr/lib/libLast.dylib"

    TEXT_SECTION_OFFSET = 0x1400
    TEXT_SECTION_CONTENTS = b"\x1f\x20\x03\xd5" * 8
    DATA_SEGMENT_OFFSET = 0x2000
    DATA_SEGMENT_CONTENTS = b"DATA" * 0x40
    DATA_SECTION_OFFSET = 0x2040

    SYMTAB_OFFSET = 0x3000
    STRTAB_OFFSET = 0x3100
    # The cache shares one string table between every image. The image's names are deliberately not at its start
    STRTAB_CONTENTS = b"\x00_unrelated_symbol\x00_bar\x00_foo\x00"
    SYMBOLS = [(b"_foo", 0x180001400), (b"_bar", 0x180001410)]

    INDIRECT_SYMTAB_OFFSET = 0x3200
    INDIRECT_SYMBOLS = [1, 0, 1]
    DYLD_INFO_FIELDS = {"rebase_off": 0x3300, "rebase_size": 0x10, "bind_off": 0x3310, "bind_size": 0x10}
    FUNCTION_STARTS_OFFSET = 0x3400
    FUNCTION_STARTS_CONTENTS = b"\x80\x28\x10\x00\x00\x00\x00\x00"
    DATA_IN_CODE_OFFSET = 0x3410
    DATA_IN_CODE_CONTENTS = b"\x00\x14\x00\x00\x08\x00\x01\x00"
    UUID = bytes(range(16))

    def __init__(
        self,
        image_magic: int = MachArch.MH_MAGIC_64,
        linkedit_segment_name: str = "__LINKEDIT",
        function_starts_offset: int = FUNCTION_STARTS_OFFSET,
        data_in_code_offset: int = DATA_IN_CODE_OFFSET,
        data_segment_filesize: int = len(DATA_SEGMENT_CONTENTS),
        data_section_offset: int = DATA_SECTION_OFFSET,
        indirect_symtab_offset: int = INDIRECT_SYMTAB_OFFSET,
    ) -> None:
        self.function_starts_offset = function_starts_offset
        self.data_in_code_offset = data_in_code_offset

        builder = DyldSharedCacheBuilder(0x4000)
        read_execute = VMProtFlags.VM_PROT_READ | VMProtFlags.VM_PROT_EXECUTE
        read_write = VMProtFlags.VM_PROT_READ | VMProtFlags.VM_PROT_WRITE
        builder.add_mapping(self.TEXT_MAPPING_ADDR, 0x2000, 0x0, read_execute)
        builder.add_mapping(self.DATA_MAPPING_ADDR, 0x1000, 0x2000, read_write)
        builder.add_mapping(self.LINKEDIT_MAPPING_ADDR, 0x1000, 0x3000, VMProtFlags.VM_PROT_READ)
        builder.add_image(self.TEXT_MAPPING_ADDR + self.IMAGE_FILE_OFFSET, self.IMAGE_PATH)
        builder.add_image(self.TEXT_MAPPING_ADDR + 0x1800, self.LAST_IMAGE_PATH)

        self.load_commands = [
            segment_command_64(
                "__TEXT",
                self.TEXT_MAPPING_ADDR + 0x1000,
                0x800,
                0x1000,
                0x800,
                [
                    section_64(
                        "__text",
                        "__TEXT",
                        self.TEXT_MAPPING_ADDR + self.TEXT_SECTION_OFFSET,
                        len(self.TEXT_SECTION_CONTENTS),
                        self.TEXT_SECTION_OFFSET,
                    )
                ],
            ),
            segment_command_64(
                "__DATA",
                self.DATA_MAPPING_ADDR,
                0x200,
                self.DATA_SEGMENT_OFFSET,
                data_segment_filesize,
                [
                    section_64("__data", "__DATA", self.DATA_MAPPING_ADDR + 0x40, 0x40, data_section_offset),
                    # Zero-fill, no file contents
                    section_64("__bss", "__DATA", self.DATA_MAPPING_ADDR + 0x100, 0x100, 0),
                ],
            ),
            segment_command_64(linkedit_segment_name, self.LINKEDIT_MAPPING_ADDR, 0x1000, 0x3000, 0x1000),
            symtab_command(
                self.SYMTAB_OFFSET, len(self.SYMBOLS), self.STRTAB_OFFSET, len(self.STRTAB_CONTENTS)
            ),
            dysymtab_command(
                indirect_symtab_offset, len(self.INDIRECT_SYMBOLS), iextdefsym=0, nextdefsym=2, tocoff=0x3500
            ),
            dyld_info_command(MachoLoadCommands.LC_DYLD_INFO_ONLY, **self.DYLD_INFO_FIELDS),
            linkedit_data_command(
                MachoLoadCommands.LC_FUNCTION_STARTS, function_starts_offset, len(self.FUNCTION_STARTS_CONTENTS)
            ),
            linkedit_data_command(
                MachoLoadCommands.LC_DATA_IN_CODE, data_in_code_offset, len(self.DATA_IN_CODE_CONTENTS)
            ),
            uuid_command(self.UUID),
        ]
        self.header_and_commands = macho_header_64(self.load_commands, magic=image_magic)

        # __TEXT contents, starting with the Mach-O header
        builder.write(self.IMAGE_FILE_OFFSET, self.header_and_commands)
        builder.write(self.TEXT_SECTION_OFFSET, self.TEXT_SECTION_CONTENTS)
        # The last image only needs to be a plausible header
        builder.write(0x1800, macho_header_64([]))
        builder.write(self.DATA_SEGMENT_OFFSET, self.DATA_SEGMENT_CONTENTS)

        # __LINKEDIT contents
        symbol_table = b""
        for name, address in self.SYMBOLS:
            symbol_table += nlist_64(self.STRTAB_CONTENTS.index(name + b"\x00"), n_value=address)
        builder.write(self.SYMTAB_OFFSET, symbol_table)
        builder.write(self.STRTAB_OFFSET, self.STRTAB_CONTENTS)
        builder.write(
            self.INDIRECT_SYMTAB_OFFSET, b"".join(bytes(c_uint32(idx)) for idx in self.INDIRECT_SYMBOLS)
        )
        if function_starts_offset == self.FUNCTION_STARTS_OFFSET:
            builder.write(function_starts_offset, self.FUNCTION_STARTS_CONTENTS)
        if data_in_code_offset == self.DATA_IN_CODE_OFFSET:
            builder.write(data_in_code_offset, self.DATA_IN_CODE_CONTENTS)

        self.data = builder.build()


def read_struct(data: bytes, offset: int, struct_type: type) -> Structure:
    """Parse a structure out of an extracted file."""
    return struct_type.from_buffer_copy(data, offset)


def load_commands_by_type(data: bytes) -> Dict[int, List[Tuple[int, int]]]:
    """Map each load command code in a Mach-O to the (offset, cmdsize) of every command with that code."""
    header = MachoHeader64.from_buffer_copy(data)
    commands: Dict[int, List[Tuple[int, int]]] = {}
    offset = sizeof(MachoHeader64)
    for _ in range(header.ncmds):
        load_command = MachoLoadCommand.from_buffer_copy(data, offset)
        commands.setdefault(load_command.cmd, []).append((offset, load_command.cmdsize))
        offset += load_command.cmdsize
    return commands
