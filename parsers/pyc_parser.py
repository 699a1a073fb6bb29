# pyc_parser.py
"""
Top-level .pyc parser: magic lookup, header, marshal stream, disassembly, chunks.

unpyc_file_blob() is the entry point the workbench calls. It is a pure
function of (blob bytes, start offset) except for one side effect at the very
end: on success the finished chunk tree is attached to the blob. On failure
nothing is attached and the outcome carries the error kind and offset.
"""

import datetime
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from pycurator.binary_curator import Blob, ByteCursor, Chunk
from pycurator.errors import PycFormatError, UnsupportedRevision

from .chunk_emitter import ChunkEmitter
from .code_object import CodeObject, FieldSpan
from .disassembler import disassemble_code
from .magic_registry import FormatRevision, known_magics, lookup_magic
from .marshal_parser import DEFAULT_MAX_DEPTH, MarshalNode, load_marshal

logger = logging.getLogger(__name__)

NO_MATCH = "NoMatch"
FLAG_HASH_BASED = 0x1
FLAG_CHECK_SOURCE = 0x2

# --- Configuration ---

@dataclass
class ParseOptions:
    """Knobs for one parse. The defaults produce the full chunk tree."""
    max_depth: int = DEFAULT_MAX_DEPTH
    emit_instructions: bool = True
    resolve_arguments: bool = True

# --- Header ---

@dataclass
class PycHeader:
    revision: FormatRevision
    start: int
    end: int = 0
    fields: List[FieldSpan] = field(default_factory=list)
    values: Dict[str, int] = field(default_factory=dict)

    @property
    def hash_based(self) -> bool:
        return bool(self.values.get("flags", 0) & FLAG_HASH_BASED)

    def describe(self) -> str:
        if self.hash_based:
            checked = "checked" if self.values["flags"] & FLAG_CHECK_SOURCE else "unchecked"
            return f"{self.revision}, hash-based ({checked})"
        return f"{self.revision}, source {self.values.get('source_size', 0)} bytes"

    def describe_field(self, span: FieldSpan) -> str:
        if span.name == "magic":
            return f"magic {span.value} ({self.revision.label})"
        if span.name == "mtime":
            try:
                stamp = datetime.datetime.fromtimestamp(span.value, datetime.timezone.utc)
                return f"mtime {span.value} = {stamp.strftime('%Y-%m-%d %H:%M:%S UTC')}"
            except (ValueError, OverflowError, OSError):
                return f"mtime {span.value}"
        if span.name == "source_hash":
            return f"source_hash 0x{span.value:016x}"
        if span.name == "flags":
            return f"flags 0x{span.value:x}"
        return f"{span.name} {span.value}"


def read_header(cursor: ByteCursor, revision: FormatRevision) -> PycHeader:
    """Reads the fixed header fields for the revision, magic included."""
    header = PycHeader(revision=revision, start=cursor.offset)
    for name, width in revision.header_fields:
        start = cursor.offset
        if name == "mtime" and header.hash_based:
            # PEP 552: mtime and source size are replaced by a SipHash of the source.
            header.values["source_hash"] = value = cursor.read_u64()
            header.fields.append(FieldSpan("source_hash", start, cursor.offset, value))
            break
        if name == "magic":
            value = int.from_bytes(cursor.read_bytes(width)[:2], 'little')
        else:
            value = cursor.read_u32()
        header.values[name] = value
        header.fields.append(FieldSpan(name, start, cursor.offset, value))
    header.end = cursor.offset
    return header

# --- Outcome ---

@dataclass
class ParseOutcome:
    """Result of one parse. Failures are ordinary values, not exceptions."""
    ok: bool
    revision: Optional[FormatRevision] = None
    chunk: Optional[Chunk] = None
    header: Optional[PycHeader] = None
    root: Optional[MarshalNode] = None
    code_objects: List[CodeObject] = field(default_factory=list)
    error_kind: Optional[str] = None
    error_offset: Optional[int] = None
    message: str = ""

    @property
    def code_object(self) -> Optional[CodeObject]:
        """The top-level code object, if the file's root object is one."""
        if self.root is None:
            return None
        target = self.root.resolve()
        return target.value if target.kind == "code" else None

    def __str__(self):
        if self.ok:
            return f"OK: {self.revision.label}, {len(self.code_objects)} code objects"
        where = f" at 0x{self.error_offset:x}" if self.error_offset is not None else ""
        return f"FAILED: {self.error_kind}{where}: {self.message}"

# --- Pipeline ---

def parse_pyc(blob: Blob, start: int = 0, options: Optional[ParseOptions] = None) -> ParseOutcome:
    """
    Parses without touching the blob's chunk store.

    Raises:
        PycFormatError: on any malformed, truncated or unsupported input.
    """
    options = options or ParseOptions()
    revision = lookup_magic(bytes(blob.read(start, 4)))
    if revision is None:
        return ParseOutcome(ok=False, error_kind=NO_MATCH, error_offset=start,
                            message="No registered .pyc magic at this offset")
    logger.info("Parsing %s at offset 0x%x", revision, start)

    if not revision.supported:
        raise UnsupportedRevision(f"{revision.label} is recognized but cannot be decoded", start)

    cursor = ByteCursor(blob, start)
    header = read_header(cursor, revision)

    root, decoder = load_marshal(cursor, revision, options.max_depth)
    for code in decoder.code_objects:
        disassemble_code(code, options.resolve_arguments)

    chunk = ChunkEmitter(options.emit_instructions).emit_file(header, root, blob.size)
    chunk.validate()
    return ParseOutcome(ok=True, revision=revision, chunk=chunk, header=header, root=root,
                        code_objects=list(decoder.code_objects))


def unpyc_file_blob(blob: Blob, start: int = 0, options: Optional[ParseOptions] = None) -> ParseOutcome:
    """
    Parses the .pyc at `start` and attaches the chunk tree to the blob.

    Returns a ParseOutcome; on failure the blob is left unannotated.
    """
    try:
        outcome = parse_pyc(blob, start, options)
    except PycFormatError as e:
        logger.warning("pyc parse failed: %s", e)
        return ParseOutcome(ok=False, revision=lookup_magic(bytes(blob.read(start, 4))),
                            error_kind=e.kind, error_offset=e.offset, message=e.message)
    if not outcome.ok:
        logger.info("No .pyc magic at offset 0x%x", start)
        return outcome

    blob.insert_chunk_tree(outcome.chunk)
    logger.info("Attached %d chunks for %d code objects",
                sum(1 for _ in outcome.chunk.walk()), len(outcome.code_objects))
    return outcome

# --- Format detection hook ---

class PycParser:
    """
    Detection-framework entry for CPython 3 .pyc files.

    The framework compares `magics` against the blob and calls parse() only
    when one matches; it may probe several parsers before a match.
    """
    name = "pyc3"

    def __init__(self, options: Optional[ParseOptions] = None):
        self.options = options or ParseOptions()

    @property
    def magics(self) -> List[bytes]:
        return known_magics()

    def matches(self, blob: Blob, start: int = 0) -> bool:
        return lookup_magic(bytes(blob.read(start, 4))) is not None

    def parse(self, blob: Blob, start: int = 0) -> ParseOutcome:
        return unpyc_file_blob(blob, start, self.options)


def find_parser(blob: Blob, start: int = 0, candidates: Optional[Sequence[PycParser]] = None) -> Optional[PycParser]:
    """Returns the first candidate parser whose magic matches at `start`."""
    for parser in candidates if candidates is not None else (PycParser(),):
        if parser.matches(blob, start):
            return parser
    return None
