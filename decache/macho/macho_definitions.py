from ctypes import Structure, Union, c_char, c_uint8, c_uint16, c_uint32, c_uint64
from enum import IntEnum
from typing import TypeVar

_BasePointerT = TypeVar("_BasePointerT", bound="_BasePointer")


class _BasePointer(int):
    def __add__(self: _BasePointerT, other: int) -> _BasePointerT:
        return type(self)(super().__add__(other))

    def __sub__(self: _BasePointerT, other: int) -> _BasePointerT:
        return self.__class__(super().__sub__(other))

    def __str__(self) -> str:
        return hex(self)

    def __repr__(self) -> str:
        return hex(self)


class StaticFilePointer(_BasePointer):
    """A pointer analogous to a file offset, either within the cache or within the extracted image
    """

    def __str__(self) -> str:
        return f"Phys[{super().__str__()}]"

    def __repr__(self) -> str:
        return f"Phys[{super().__repr__()}]"


class VirtualMemoryPointer(_BasePointer):
    """A pointer representing a location within the cache's virtual address space
    """


class MachArch(IntEnum):
    MH_MAGIC = 0xFEEDFACE
    MH_CIGAM = 0xCEFAEDFE
    MH_MAGIC_64 = 0xFEEDFACF
    MH_CIGAM_64 = 0xCFFAEDFE


class VMProtFlags(IntEnum):
    # https://opensource.apple.com/source/xnu/xnu-1504.7.4/osfmk/mach/vm_prot.h.auto.html
    VM_PROT_NONE = 0 << 0
    VM_PROT_READ = 1 << 0
    VM_PROT_WRITE = 1 << 1
    VM_PROT_EXECUTE = 1 << 2


# Only the first 9 bytes of the cache magic are fixed. The remainder names the architecture, e.g. "dyld_v1   arm64"
DYLD_SHARED_CACHE_MAGIC_PREFIX = b"dyld_v1  "

SEG_LINKEDIT = "__LINKEDIT"


class MachoHeader64(Structure):
    _fields_ = [
        ("magic", c_uint32),
        ("cputype", c_uint32),
        ("cpusubtype", c_uint32),
        ("filetype", c_uint32),
        ("ncmds", c_uint32),
        ("sizeofcmds", c_uint32),
        ("flags", c_uint32),
        ("reserved", c_uint32),
    ]


class MachoLoadCommand(Structure):
    _fields_ = [("cmd", c_uint32), ("cmdsize", c_uint32)]


class MachoSegmentCommand64(Structure):
    _fields_ = [
        *MachoLoadCommand._fields_,
        ("segname", c_char * 16),
        ("vmaddr", c_uint64),
        ("vmsize", c_uint64),
        ("fileoff", c_uint64),
        ("filesize", c_uint64),
        ("maxprot", c_uint32),
        ("initprot", c_uint32),
        ("nsects", c_uint32),
        ("flags", c_uint32),
    ]


class MachoSection64Raw(Structure):
    _fields_ = [
        ("sectname", c_char * 16),
        ("segname", c_char * 16),
        ("addr", c_uint64),
        ("size", c_uint64),
        ("offset", c_uint32),
        ("align", c_uint32),
        ("reloff", c_uint32),
        ("nreloc", c_uint32),
        ("flags", c_uint32),
        ("reserved1", c_uint32),
        ("reserved2", c_uint32),
        ("reserved3", c_uint32),
    ]


class MachoSymtabCommand(Structure):
    """Python representation of struct symtab_command

    Definition found in <mach-o/loader.h>
    """

    _fields_ = [
        *MachoLoadCommand._fields_,
        ("symoff", c_uint32),
        ("nsyms", c_uint32),
        ("stroff", c_uint32),
        ("strsize", c_uint32),
    ]


class MachoDysymtabCommand(Structure):
    """Python representation of struct dysymtab_command

    Definition found in <mach-o/loader.h>
    """

    _fields_ = [
        *MachoLoadCommand._fields_,
        ("ilocalsym", c_uint32),
        ("nlocalsym", c_uint32),
        ("iextdefsym", c_uint32),
        ("nextdefsym", c_uint32),
        ("iundefsym", c_uint32),
        ("nundefsym", c_uint32),
        ("tocoff", c_uint32),
        ("ntoc", c_uint32),
        ("modtaboff", c_uint32),
        ("nmodtab", c_uint32),
        ("extrefsymoff", c_uint32),
        ("nextrefsyms", c_uint32),
        ("indirectsymoff", c_uint32),
        ("nindirectsyms", c_uint32),
        ("extreloff", c_uint32),
        ("nextrel", c_uint32),
        ("locreloff", c_uint32),
        ("nlocrel", c_uint32),
    ]


class MachoDyldInfoCommand(Structure):
    """Python representation of struct dyld_info_command

    Definition found in <mach-o/loader.h>
    """

    _fields_ = [
        *MachoLoadCommand._fields_,
        ("rebase_off", c_uint32),
        ("rebase_size", c_uint32),
        ("bind_off", c_uint32),
        ("bind_size", c_uint32),
        ("weak_bind_off", c_uint32),
        ("weak_bind_size", c_uint32),
        ("lazy_bind_off", c_uint32),
        ("lazy_bind_size", c_uint32),
        ("export_off", c_uint32),
        ("export_size", c_uint32),
    ]


class MachoLinkeditDataCommand(Structure):
    """Python representation of struct linkedit_data_command

    Definition found in <mach-o/loader.h>
    """

    _fields_ = [*MachoLoadCommand._fields_, ("dataoff", c_uint32), ("datasize", c_uint32)]


class MachoNlistUn(Union):
    """Python representation of union n_un

    Definition found in <mach-o/nlist.h>
    """

    __slots__ = ["n_strx"]
    _fields_ = [("n_strx", c_uint32)]


class MachoNlist64(Structure):
    """Python representation of struct nlist_64

    Definition found in <mach-o/nlist.h>
    """

    __slots__ = ["n_un", "n_type", "n_sect", "n_desc", "n_value"]
    _fields_ = [
        ("n_un", MachoNlistUn),
        ("n_type", c_uint8),
        ("n_sect", c_uint8),
        ("n_desc", c_uint16),
        ("n_value", c_uint64),
    ]


class DyldSharedCacheHeader(Structure):
    # https://opensource.apple.com/source/dyld/dyld-655.1.1/launch-cache/dyld_cache_format.h.auto.html
    _fields_ = [
        ("magic", c_char * 16),  # e.g. "dyld_v1   arm64"
        ("mappingOffset", c_uint32),  # file offset to first shared_file_mapping
        ("mappingCount", c_uint32),  # number of shared_file_mapping entries
        ("imagesOffset", c_uint32),  # file offset to first dyld_cache_image_info
        ("imagesCount", c_uint32),  # number of dyld_cache_image_info entries
        ("dyldBaseAddress", c_uint64),  # base address of dyld when cache was built
        ("codeSignOffset", c_uint64),  # file offset of code signature blob
        ("codeSignSize", c_uint64),  # size of code signature blob
        ("slideInfoOffset", c_uint64),  # file offset of kernel slid info
        ("slideInfoSize", c_uint64),  # size of kernel slid info
        ("localSymbolsOffset", c_uint64),  # file offset where local symbols are stored
        ("localSymbolsSize", c_uint64),  # size of local symbols
        ("uuid", c_char * 16),  # unique value for each shared_cache file
    ]


class DyldSharedFileMapping(Structure):
    _fields_ = [
        ("address", c_uint64),
        ("size", c_uint64),
        ("file_offset", c_uint64),
        ("max_prot", c_uint32),
        ("init_prot", c_uint32),
    ]


class DyldSharedCacheImageInfo(Structure):
    _fields_ = [
        ("address", c_uint64),
        ("modTime", c_uint64),
        ("inode", c_uint64),
        ("pathFileOffset", c_uint32),
        ("pad", c_uint32),
    ]
