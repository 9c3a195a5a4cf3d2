import mmap
from contextlib import contextmanager
from ctypes import Structure, sizeof
from dataclasses import dataclass
from pathlib import Path
from typing import Generator, List, Optional, Type, TypeVar, Union

from more_itertools import stagger

from decache.logger import decache_logger
from decache.macho.extraction_errors import (
    CacheReadError,
    FormatError,
    ImageNotFoundError,
    LastImageUnsupportedError,
)
from decache.macho.macho_definitions import (
    DYLD_SHARED_CACHE_MAGIC_PREFIX,
    DyldSharedCacheHeader,
    DyldSharedCacheImageInfo,
    DyldSharedFileMapping,
    StaticFilePointer,
    VirtualMemoryPointer,
)

logger = decache_logger.getChild(__file__)

_StructureT = TypeVar("_StructureT", bound=Structure)

CacheBuffer = Union[bytes, bytearray, memoryview, mmap.mmap]


@dataclass
class DyldSharedCacheImage:
    """An entry in the cache's image directory."""

    index: int
    address: VirtualMemoryPointer
    path: str


@dataclass
class ImageLocation:
    """Where an embedded image's Mach-O header lives within the cache file."""

    image: DyldSharedCacheImage
    # The directory entry following `image`. Extraction of the final image is unsupported, so this is always set
    next_image: DyldSharedCacheImage
    mapping: DyldSharedFileMapping
    file_offset: StaticFilePointer


class DyldSharedCacheParser:
    """Top-level mechanism for parsing a dyld_shared_cache

    The parser is a read-only view over the whole cache. It never mutates the backing buffer, so the same
    parser can serve any number of extractions.

    Useful links:
        https://opensource.apple.com/source/dyld/dyld-195.6/launch-cache/dsc_iterator.cpp.auto.html
        https://opensource.apple.com/source/dyld/dyld-655.1.1/launch-cache/dyld_cache_format.h.auto.html
    """

    def __init__(self, cache_data: CacheBuffer, path: Optional[Path] = None) -> None:
        self._cache_data = cache_data
        self.path = path
        self.cache_size = len(cache_data)

        # Ordered exactly as stored in the cache. Each mapping translates a range of the cache's virtual address
        # space to a range of the cache file
        self.segment_mappings: List[DyldSharedFileMapping] = []
        # The image directory, in directory order (which need not be address order)
        self.images: List[DyldSharedCacheImage] = []

        self._parse()

    def __repr__(self) -> str:
        return f"<DyldSharedCacheParser cache={self.path}>"

    @classmethod
    @contextmanager
    def open(cls, path: Path) -> Generator["DyldSharedCacheParser", None, None]:
        """Memory-map the cache at the provided path and yield a parser over it."""
        with open(path, "rb") as cache_file:
            try:
                cache_data = mmap.mmap(cache_file.fileno(), 0, access=mmap.ACCESS_READ)
            except ValueError as e:
                # mmap refuses empty files
                raise FormatError(f"Cannot map {path}: {e}") from e
            with cache_data:
                yield cls(cache_data, path)

    def get_bytes(self, offset: StaticFilePointer, size: int) -> bytes:
        """Read a region of bytes from the cache
        Args:
            offset: Offset within the cache file to begin reading from
            size: Number of bytes to read
        Returns:
            Byte list representing contents of the cache at the provided offset
        """
        if offset < 0 or size < 0 or offset + size > self.cache_size:
            raise CacheReadError(f"Cannot read {size} bytes at {offset}, cache is {hex(self.cache_size)} bytes")
        return bytes(self._cache_data[offset : offset + size])

    def read_struct(self, file_offset: StaticFilePointer, struct_type: Type[_StructureT]) -> _StructureT:
        """Given a file offset, return a copy of the structure it describes
        Args:
            file_offset: Address from where to read the bytes
            struct_type: Structure subclass
        Returns:
            struct_type loaded from the pointed address
        """
        data = bytearray(self.get_bytes(file_offset, sizeof(struct_type)))
        return struct_type.from_buffer(data)

    def read_c_string(self, start_address: StaticFilePointer) -> bytes:
        """Return the bytes from start_address up to, but excluding, the next NULL character."""
        max_len = 16
        string_bytes = bytearray()

        while True:
            # Don't ask for more than the cache holds
            read_len = min(max_len, self.cache_size - start_address)
            if read_len <= 0:
                raise CacheReadError(f"Unterminated string runs past the end of the cache at {start_address}")

            chunk = self.get_bytes(start_address, read_len)
            null_idx = chunk.find(b"\x00")
            if null_idx >= 0:
                string_bytes += chunk[:null_idx]
                return bytes(string_bytes)

            string_bytes += chunk
            # since we read [start_address:start_address + read_len], trim that from search space
            start_address += read_len
            # double search space for next iteration
            max_len *= 2

    def _parse(self) -> None:
        if self.cache_size < sizeof(DyldSharedCacheHeader):
            raise FormatError(f"Cache is too small to hold a header ({self.cache_size} bytes)")

        # Read the shared-cache header
        self.header = self.read_struct(StaticFilePointer(0), DyldSharedCacheHeader)
        if not self.header.magic.startswith(DYLD_SHARED_CACHE_MAGIC_PREFIX):
            raise FormatError(f"Invalid dyld_shared_cache magic: {self.header.magic!r}")

        logger.debug(f"Cache magic: {self.header.magic.decode(errors='replace')}")
        logger.debug(f"First mapping: {hex(self.header.mappingOffset)}")
        logger.debug(f"Mapping count: {self.header.mappingCount}")
        logger.debug(f"First image: {hex(self.header.imagesOffset)}")
        logger.debug(f"Image count: {self.header.imagesCount}")
        logger.debug(f"Memory base: {hex(self.header.dyldBaseAddress)}")

        self._parse_dsc_mappings()
        self._parse_embedded_images()

    def _parse_dsc_mappings(self) -> None:
        """Populates self.segment_mappings based on the mappings reported by the DSC header."""
        mapping_off = self.header.mappingOffset
        for mapping_idx in range(self.header.mappingCount):
            mapping_struct = self.read_struct(StaticFilePointer(mapping_off), DyldSharedFileMapping)
            mapping_off += sizeof(DyldSharedFileMapping)

            virt_addr = VirtualMemoryPointer(mapping_struct.address)
            virt_end = virt_addr + mapping_struct.size
            static_addr = StaticFilePointer(mapping_struct.file_offset)
            logger.debug(
                f"Mapping [{mapping_idx:02d}]: [{virt_addr} - {virt_end}] @ {static_addr}, "
                f"prot = {mapping_struct.max_prot}"
            )

            self.segment_mappings.append(mapping_struct)

    def _parse_embedded_images(self) -> None:
        """Populates self.images based on the image directory reported by the DSC header."""
        image_off = self.header.imagesOffset
        for image_idx in range(self.header.imagesCount):
            image_struct = self.read_struct(StaticFilePointer(image_off), DyldSharedCacheImageInfo)
            image_off += sizeof(DyldSharedCacheImageInfo)

            # Example: /System/Library/Frameworks/CoreFoundation.framework/CoreFoundation
            path_bytes = self.read_c_string(StaticFilePointer(image_struct.pathFileOffset))
            image = DyldSharedCacheImage(
                index=image_idx,
                address=VirtualMemoryPointer(image_struct.address),
                path=path_bytes.decode("utf-8", errors="replace"),
            )
            self.images.append(image)

    def mapping_for_address(self, vm_addr: VirtualMemoryPointer) -> DyldSharedFileMapping:
        """Find the mapping which backs the provided address in the cache's virtual address space."""
        if not self.segment_mappings:
            raise FormatError("dyld_shared_cache has no mappings")

        for mapping in self.segment_mappings:
            if mapping.address <= vm_addr < mapping.address + mapping.size:
                return mapping

        # No mapping contains the address. Fall back to a scan which stops at the first mapping that begins below it,
        # or settles on the final mapping
        fallback = self.segment_mappings[-1]
        for mapping in self.segment_mappings:
            if mapping.address < vm_addr:
                fallback = mapping
                break
        logger.warning(
            f"{vm_addr} is outside every mapping, using the mapping at {VirtualMemoryPointer(fallback.address)}"
        )
        return fallback

    def translate_virtual_address_to_static(self, vm_addr: VirtualMemoryPointer) -> StaticFilePointer:
        """Given a pointer within the DSC's virtual address mappings, return the file pointer to the same data."""
        mapping = self.mapping_for_address(vm_addr)
        offset_into_mapping = vm_addr - mapping.address
        return StaticFilePointer(mapping.file_offset + offset_into_mapping)

    def locate_image(self, image_path: str) -> ImageLocation:
        """Find the directory entry for the image at the provided path, and where its Mach-O header lives.

        Raises:
            ImageNotFoundError: No directory entry has exactly this path
            LastImageUnsupportedError: The image is the final entry in the directory
        """
        # Pair each entry with its successor. The first exact match wins
        for image, next_image in stagger(self.images, offsets=(0, 1), longest=True):
            if image.path != image_path:
                continue

            logger.debug(f"Found target image {image_path} @ {image.address}")
            if next_image is None:
                raise LastImageUnsupportedError(
                    f"{image_path} is the last image in the cache, which cannot be extracted"
                )

            mapping = self.mapping_for_address(image.address)
            logger.debug(
                f"Using mapping: {VirtualMemoryPointer(mapping.address)} "
                f"({mapping.size} bytes, {StaticFilePointer(mapping.file_offset)} in file)"
            )
            file_offset = StaticFilePointer(mapping.file_offset + (image.address - mapping.address))
            logger.debug(f"File offset is {file_offset}")
            return ImageLocation(image=image, next_image=next_image, mapping=mapping, file_offset=file_offset)

        raise ImageNotFoundError(f"Unable to find image file: {image_path}")

    def image_paths(self) -> List[str]:
        """The paths of every image in the cache, in directory order."""
        return [image.path for image in self.images]
