# magic_registry.py
"""
Magic Registry: maps the fixed 4-byte .pyc prefix to a FormatRevision.

Every CPython 3 magic is a 16-bit little-endian number followed by b'\\r\\n'.
A FormatRevision is pure data: the header layout, the marshal version the
writer used, the field layout of a code object and the opcode table. Adding a
revision means adding an entry here, not writing a new parser class.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from . import opcode_tables
from .opcode_tables import OpcodeTable

# --- Header layouts: (field name, width in bytes) ---
HEADER_LEGACY = (("magic", 4), ("mtime", 4), ("source_size", 4))
HEADER_PEP552 = (("magic", 4), ("flags", 4), ("mtime", 4), ("source_size", 4))

# --- Code object layouts: (field name, "u32" or "object") ---
U32 = "u32"
OBJECT = "object"

CODE_LAYOUT_PY33 = (
    ("argcount", U32), ("kwonlyargcount", U32), ("nlocals", U32),
    ("stacksize", U32), ("flags", U32),
    ("code", OBJECT), ("consts", OBJECT), ("names", OBJECT),
    ("varnames", OBJECT), ("freevars", OBJECT), ("cellvars", OBJECT),
    ("filename", OBJECT), ("name", OBJECT),
    ("firstlineno", U32), ("lnotab", OBJECT),
)

CODE_LAYOUT_PY38 = CODE_LAYOUT_PY33[:1] + (("posonlyargcount", U32),) + CODE_LAYOUT_PY33[1:]

CODE_LAYOUT_PY310 = CODE_LAYOUT_PY38[:-1] + (("linetable", OBJECT),)

# --- Line table encodings ---
LNOTAB = "lnotab"
LNOTAB_SIGNED = "lnotab-signed"
LINETABLE = "linetable"


@dataclass(frozen=True)
class FormatRevision:
    """Immutable description of one on-disk .pyc format revision."""
    magic: bytes
    label: str
    version: Tuple[int, ...]
    header_fields: Tuple[Tuple[str, int], ...]
    marshal_version: int
    code_layout: Optional[Tuple[Tuple[str, str], ...]]
    opcode_table: Optional[OpcodeTable]
    line_table_format: Optional[str] = None

    @property
    def magic_number(self) -> int:
        return int.from_bytes(self.magic[:2], 'little')

    @property
    def header_size(self) -> int:
        return sum(width for _, width in self.header_fields)

    @property
    def has_ref_flag(self) -> bool:
        return self.marshal_version >= 3

    @property
    def supported(self) -> bool:
        return self.opcode_table is not None and self.code_layout is not None

    def __str__(self):
        return f"{self.label} (magic {self.magic_number})"


def magic_for(number: int) -> bytes:
    return number.to_bytes(2, 'little') + b'\r\n'


def _revision(number, label, version, header, marshal_version, layout, table, line_format):
    return FormatRevision(
        magic=magic_for(number),
        label=label,
        version=version,
        header_fields=header,
        marshal_version=marshal_version,
        code_layout=layout,
        opcode_table=table,
        line_table_format=line_format,
    )


_REGISTRY: Dict[bytes, FormatRevision] = {}


def register_revision(revision: FormatRevision):
    """Adds (or replaces) a revision keyed by its magic prefix."""
    _REGISTRY[bytes(revision.magic)] = revision


for _rev in (
    _revision(3230, "Python 3.3", (3, 3), HEADER_LEGACY, 2, CODE_LAYOUT_PY33, opcode_tables.PY33, LNOTAB),
    _revision(3310, "Python 3.4", (3, 4), HEADER_LEGACY, 4, CODE_LAYOUT_PY33, opcode_tables.PY34, LNOTAB),
    _revision(3350, "Python 3.5", (3, 5), HEADER_LEGACY, 4, CODE_LAYOUT_PY33, opcode_tables.PY35, LNOTAB),
    _revision(3351, "Python 3.5.3", (3, 5, 3), HEADER_LEGACY, 4, CODE_LAYOUT_PY33, opcode_tables.PY35, LNOTAB),
    _revision(3379, "Python 3.6", (3, 6), HEADER_LEGACY, 4, CODE_LAYOUT_PY33, opcode_tables.PY36, LNOTAB_SIGNED),
    _revision(3394, "Python 3.7", (3, 7), HEADER_PEP552, 4, CODE_LAYOUT_PY33, opcode_tables.PY37, LNOTAB_SIGNED),
    _revision(3413, "Python 3.8", (3, 8), HEADER_PEP552, 4, CODE_LAYOUT_PY38, opcode_tables.PY38, LNOTAB_SIGNED),
    _revision(3425, "Python 3.9", (3, 9), HEADER_PEP552, 4, CODE_LAYOUT_PY38, opcode_tables.PY39, LNOTAB_SIGNED),
    _revision(3439, "Python 3.10", (3, 10), HEADER_PEP552, 4, CODE_LAYOUT_PY310, opcode_tables.PY310, LINETABLE),
    # Recognized, but code objects grew exception tables and inline caches.
    _revision(3495, "Python 3.11", (3, 11), HEADER_PEP552, 4, None, None, None),
    _revision(3531, "Python 3.12", (3, 12), HEADER_PEP552, 4, None, None, None),
    _revision(3571, "Python 3.13", (3, 13), HEADER_PEP552, 4, None, None, None),
):
    register_revision(_rev)


def lookup_magic(prefix: bytes) -> Optional[FormatRevision]:
    """
    Returns the revision whose magic is a prefix of `prefix`, or None.

    Longer registered magics are tried first so that a more specific entry
    always wins over a shorter one.
    """
    prefix = bytes(prefix)
    for magic in sorted(_REGISTRY, key=len, reverse=True):
        if prefix.startswith(magic):
            return _REGISTRY[magic]
    return None


def known_magics() -> List[bytes]:
    """All registered magic prefixes, for the format-detection hook."""
    return sorted(_REGISTRY)


def known_revisions() -> List[FormatRevision]:
    return [_REGISTRY[m] for m in known_magics()]
