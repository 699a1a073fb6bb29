"""
pycurator - Binary blob annotation utilities: cursor, chunk trees, rendering
"""

from .binary_curator import Blob, ByteCursor, Chunk, Region, UnclaimedRegion
from .errors import (
    PycFormatError, UnexpectedEnd, UnknownTag, MalformedReference,
    TruncatedInstruction, UnsupportedRevision, MalformedValue, NestingTooDeep,
)
from .pyc_renderer import (
    hex_dump_lines, render_chunk_tree, render_report, render_regions_to_string, summarized_hex_dump,
)

__all__ = [
    'Blob',
    'ByteCursor',
    'Chunk',
    'Region',
    'UnclaimedRegion',
    'PycFormatError',
    'UnexpectedEnd',
    'UnknownTag',
    'MalformedReference',
    'TruncatedInstruction',
    'UnsupportedRevision',
    'MalformedValue',
    'NestingTooDeep',
    'hex_dump_lines',
    'render_chunk_tree',
    'render_report',
    'render_regions_to_string',
    'summarized_hex_dump',
]
