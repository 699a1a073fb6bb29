"""
CPython 3 .pyc Parsers

This package contains the format registry, the marshal decoder, the code object
builder, the bytecode disassembler and the chunk emitter for .pyc files.
"""

# Re-export commonly used entry points for convenience
from .magic_registry import FormatRevision, known_magics, known_revisions, lookup_magic
from .marshal_parser import InternTable, MarshalDecoder, MarshalNode, load_marshal
from .code_object import CodeObject, build_code_object, decode_line_table
from .disassembler import Instruction, disassemble, disassemble_code, render_disassembly
from .chunk_emitter import ChunkEmitter
from .pyc_parser import ParseOptions, ParseOutcome, PycHeader, PycParser, find_parser, parse_pyc, unpyc_file_blob

__all__ = [
    'FormatRevision',
    'known_magics',
    'known_revisions',
    'lookup_magic',
    'InternTable',
    'MarshalDecoder',
    'MarshalNode',
    'load_marshal',
    'CodeObject',
    'build_code_object',
    'decode_line_table',
    'Instruction',
    'disassemble',
    'disassemble_code',
    'render_disassembly',
    'ChunkEmitter',
    'ParseOptions',
    'ParseOutcome',
    'PycHeader',
    'PycParser',
    'find_parser',
    'parse_pyc',
    'unpyc_file_blob',
]
