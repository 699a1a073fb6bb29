"""
Rendering module for chunk trees.

This module provides the "View" layer in the Model-View separation.
It takes attached chunks and unclaimed regions and renders them in a
human-readable format. Chunk labels are produced by the parsers; this module
only lays them out.
"""

from typing import List, Optional

from .binary_curator import Chunk, UnclaimedRegion

# A run is "long" if it's more than 2 full lines (32 bytes)
LONG_RUN_THRESHOLD = 32


def hex_dump_lines(data: bytes, indent: str = "  ") -> List[str]:
    """
    Creates a summarized hex dump that collapses long runs of identical bytes.

    Args:
        data: The byte data to dump
        indent: Indentation string for each line
    """
    lines = []
    i = 0
    while i < len(data):
        byte_val = data[i]
        run_length = 1
        while i + run_length < len(data) and data[i + run_length] == byte_val:
            run_length += 1

        if run_length >= LONG_RUN_THRESHOLD:
            lines.append(f"{indent}[... {run_length} bytes of 0x{byte_val:02x} ...]")
            i += run_length
        else:
            end = min(i + 16, len(data))
            chunk = data[i:end]
            hex_part = ' '.join(f'{b:02x}' for b in chunk)
            ascii_part = ''.join(chr(b) if 32 <= b <= 126 else '.' for b in chunk)
            lines.append(f"{indent}{i:04x}: {hex_part:<48} |{ascii_part}|")
            i += 16
    return lines


def summarized_hex_dump(data: bytes, indent: str = "  "):
    for line in hex_dump_lines(data, indent):
        print(line)


def render_chunk_tree(root: Chunk, max_depth: Optional[int] = None, indent: str = "  ") -> str:
    """
    Renders a chunk and its descendants, one indented line per chunk.

    Args:
        root: The chunk to start from.
        max_depth: Deepest level to print (0 prints only the root); None for all.
    """
    lines = []
    for depth, chunk in root.walk():
        if max_depth is not None and depth > max_depth:
            continue
        lines.append(f"{indent * depth}[{chunk.kind}]  Offset: 0x{chunk.start:x}, "
                     f"Size: {chunk.size} bytes  {chunk.label}".rstrip())
    return "\n".join(lines)


def render_regions_to_string(regions: List[object], title: str = "Binary Analysis Report",
                             max_depth: Optional[int] = None) -> str:
    """
    Renders a lossless report from Blob.get_regions(): chunk trees for
    attached data, hex dumps for unclaimed gaps.
    """
    lines = [f"\n{title}"]

    for region in regions:
        if isinstance(region, UnclaimedRegion):
            lines.append(f"[UNCLAIMED DATA]  Offset: 0x{region.start:x}, Size: {region.size} bytes")
            lines.extend(hex_dump_lines(region.raw_data))
        elif isinstance(region, Chunk):
            lines.append(render_chunk_tree(region, max_depth=max_depth))

    return "\n".join(lines)


def render_report(regions: List[object], title: str = "Binary Analysis Report", max_depth: Optional[int] = None):
    """Like render_regions_to_string, but prints the report."""
    print(render_regions_to_string(regions, title, max_depth))
