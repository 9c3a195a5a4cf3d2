import argparse
import logging
import pathlib
import sys
from contextlib import ExitStack

from decache.cli.utils import print_cache_header, print_cache_mappings, print_image_directory
from decache.macho import DyldSharedCacheParser, ExtractionError, extract_image


def main() -> int:
    arg_parser = argparse.ArgumentParser(
        description="decache - extract Mach-O dylib files from dyld_shared_cache files"
    )
    arg_parser.add_argument("-v", "--verbose", action="store_true", help="Print debug output while extracting")
    arg_parser.add_argument(
        "-D", "--dump-dir", action="store_true", help="Dump a directory of all shared images in the dyld_shared_cache"
    )
    arg_parser.add_argument("cache_path", type=str, help="Path to the dyld_shared_cache")
    arg_parser.add_argument("image_path", type=str, nargs="?", help="Path of the embedded image to extract")
    arg_parser.add_argument("output_path", type=str, nargs="?", help="Path to place the extracted image")
    args = arg_parser.parse_args()

    if bool(args.image_path) != bool(args.output_path):
        arg_parser.error("An image path to extract requires an output path")

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        with ExitStack() as stack:
            try:
                dyld_shared_cache = stack.enter_context(DyldSharedCacheParser.open(pathlib.Path(args.cache_path)))
            except OSError as e:
                print(f"Failure: could not open file {args.cache_path} ({e.strerror}), aborting.", file=sys.stderr)
                return 1

            if args.verbose:
                print_cache_header(dyld_shared_cache)
                print_cache_mappings(dyld_shared_cache)

            if args.dump_dir:
                print_image_directory(dyld_shared_cache)

            if args.image_path:
                extract_image(dyld_shared_cache, args.image_path, pathlib.Path(args.output_path))
    except (ExtractionError, OSError) as e:
        print(f"Failure while extracting image file: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
