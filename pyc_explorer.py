#!/usr/bin/env python3
# pyc_explorer.py
"""
Command-line front end: parse a .pyc file and print its annotated chunk tree.

Usage: python3 pyc_explorer.py [options] <pyc_file>
"""

import argparse
import logging
import sys

from pycurator import Blob, hex_dump_lines, render_regions_to_string
from parsers import ParseOptions, render_disassembly, unpyc_file_blob


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Annotate a CPython 3 .pyc file as a tree of byte ranges.")
    parser.add_argument("pyc_file", help="Path to the .pyc file.")
    parser.add_argument("--offset", type=lambda s: int(s, 0), default=0,
                        help="Offset of the magic number inside the file (accepts 0x..).")
    parser.add_argument("--depth", type=int, default=None,
                        help="Deepest chunk level to print (default: all).")
    parser.add_argument("--hexdump", action="store_true",
                        help="Print the whole file as a summarized hex dump before the report.")
    parser.add_argument("--disassemble", action="store_true",
                        help="Also print a dis-style listing of every code object.")
    parser.add_argument("--max-depth", type=int, default=ParseOptions.max_depth,
                        help="Marshal nesting limit (default: %(default)s).")
    parser.add_argument("--no-instructions", action="store_true",
                        help="Do not emit one chunk per instruction.")
    parser.add_argument("--raw-operands", action="store_true",
                        help="Do not resolve operands to names and constants.")
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging verbosity (default: %(default)s).")
    return parser


def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level),
                        format="%(levelname)s %(name)s: %(message)s")

    try:
        with open(args.pyc_file, 'rb') as f:
            blob = Blob(f.read())
    except OSError as e:
        print(f"[ERROR] Cannot read {args.pyc_file}: {e}")
        return 1

    print(f"--- Parsing {args.pyc_file} ({blob.size} bytes) ---")
    if args.hexdump:
        print("\n".join(hex_dump_lines(blob.data)))

    options = ParseOptions(max_depth=args.max_depth,
                           emit_instructions=not args.no_instructions,
                           resolve_arguments=not args.raw_operands)
    outcome = unpyc_file_blob(blob, args.offset, options)
    if not outcome.ok:
        print(f"[ERROR] {outcome}")
        return 1

    print(render_regions_to_string(blob.get_regions(), f"{outcome.header.describe()}", args.depth))
    if args.disassemble and outcome.code_object is not None:
        print()
        print(render_disassembly(outcome.code_object))
    return 0


if __name__ == '__main__':
    sys.exit(main())
