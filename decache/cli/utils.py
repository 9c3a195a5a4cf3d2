from decache.macho import DyldSharedCacheParser, VMProtFlags


def _format_protections(prot: int) -> str:
    flags = [(VMProtFlags.VM_PROT_READ, "r"), (VMProtFlags.VM_PROT_WRITE, "w"), (VMProtFlags.VM_PROT_EXECUTE, "x")]
    return "".join(char if prot & flag else "-" for flag, char in flags)


def print_cache_header(dyld_shared_cache: DyldSharedCacheParser) -> None:
    header = dyld_shared_cache.header
    print("Header:")
    print(f"\tmagic:           {header.magic.decode(errors='replace')}")
    print(f"\tmappingOffset:   {header.mappingOffset:#018x}")
    print(f"\tmappingCount:    {header.mappingCount}")
    print(f"\timagesOffset:    {header.imagesOffset:#018x}")
    print(f"\timagesCount:     {header.imagesCount}")
    print(f"\tdyldBaseAddress: {header.dyldBaseAddress:#018x}")


def print_cache_mappings(dyld_shared_cache: DyldSharedCacheParser) -> None:
    print("Mappings:")
    for idx, mapping in enumerate(dyld_shared_cache.segment_mappings):
        print(
            f"\t{idx:02d}  {mapping.address:016x} {mapping.size:10d} bytes -> offset {mapping.file_offset:016x} "
            f"{_format_protections(mapping.max_prot)}"
        )


def print_image_directory(dyld_shared_cache: DyldSharedCacheParser) -> None:
    """Print every image in the cache's directory, in directory order."""
    print(f"Directory of Images contains {len(dyld_shared_cache.images)} images")
    for image in dyld_shared_cache.images:
        print(f" 0x{image.address:016x}  {image.path}")
