# code_object.py
"""
Code-Object Builder: turns the payload of a marshal 'c' object into a CodeObject.

The field set and order differ per revision and come from
FormatRevision.code_layout: fixed 32-bit integers are read straight from the
cursor, everything else is read by recursing into the marshal decoder. The
builder is registered as the decoder's handler for the code tag, so nested
code objects inside a constant pool are built by the same recursion.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Tuple

from pycurator.errors import MalformedValue, UnsupportedRevision

from .magic_registry import LINETABLE, LNOTAB_SIGNED, U32, FormatRevision

if TYPE_CHECKING:
    from .disassembler import Instruction
    from .marshal_parser import MarshalDecoder, MarshalNode

NAME_LIST_FIELDS = ("names", "varnames", "freevars", "cellvars")
LINE_TABLE_FIELDS = ("lnotab", "linetable")

# Expected marshal kinds for object fields, checked after following references.
_EXPECTED_KINDS = {
    "code": ("bytes",),
    "consts": ("tuple", "list"),
    "names": ("tuple", "list"),
    "varnames": ("tuple", "list"),
    "freevars": ("tuple", "list"),
    "cellvars": ("tuple", "list"),
    "filename": ("str",),
    "name": ("str",),
    "lnotab": ("bytes",),
    "linetable": ("bytes",),
}

# --- Data Structures ---

@dataclass
class FieldSpan:
    """Where one code object field was read from, and what it held."""
    name: str
    start: int
    end: int
    value: Any

    @property
    def is_object(self) -> bool:
        return not isinstance(self.value, int)


@dataclass(eq=False, repr=False)
class CodeObject:
    """A decoded code object. Raw instruction bytes are immutable once built."""
    start: int
    revision: FormatRevision
    end: int = 0
    fields: Dict[str, int] = field(default_factory=dict)
    objects: Dict[str, "MarshalNode"] = field(default_factory=dict)
    field_spans: List[FieldSpan] = field(default_factory=list)
    instructions: List["Instruction"] = field(default_factory=list)

    def _strings(self, name: str) -> List[str]:
        node = self.objects.get(name)
        if node is None:
            return []
        return [item.resolve().value for item in node.resolve().value]

    @property
    def argcount(self) -> int:
        return self.fields.get("argcount", 0)

    @property
    def posonlyargcount(self) -> int:
        return self.fields.get("posonlyargcount", 0)

    @property
    def kwonlyargcount(self) -> int:
        return self.fields.get("kwonlyargcount", 0)

    @property
    def nlocals(self) -> int:
        return self.fields.get("nlocals", 0)

    @property
    def stacksize(self) -> int:
        return self.fields.get("stacksize", 0)

    @property
    def flags(self) -> int:
        return self.fields.get("flags", 0)

    @property
    def firstlineno(self) -> int:
        return self.fields.get("firstlineno", 0)

    @property
    def code(self) -> bytes:
        return self.objects["code"].resolve().value

    @property
    def constants(self) -> List["MarshalNode"]:
        return list(self.objects["consts"].resolve().value)

    @property
    def names(self) -> List[str]:
        return self._strings("names")

    @property
    def varnames(self) -> List[str]:
        return self._strings("varnames")

    @property
    def freevars(self) -> List[str]:
        return self._strings("freevars")

    @property
    def cellvars(self) -> List[str]:
        return self._strings("cellvars")

    @property
    def filename(self) -> str:
        return self.objects["filename"].resolve().value

    @property
    def name(self) -> str:
        return self.objects["name"].resolve().value

    @property
    def line_table(self) -> bytes:
        for name in LINE_TABLE_FIELDS:
            if name in self.objects:
                return self.objects[name].resolve().value
        return b""

    @property
    def nested_code_objects(self) -> List["CodeObject"]:
        """Code objects found directly in this object's constant pool."""
        return [const.resolve().value for const in self.constants if const.resolve().kind == "code"]

    def iter_code_objects(self) -> Iterator["CodeObject"]:
        """Yields this code object and every nested one, each exactly once."""
        seen = set()
        pending = [self]
        while pending:
            code = pending.pop(0)
            if id(code) in seen:
                continue
            seen.add(id(code))
            yield code
            pending.extend(code.nested_code_objects)

    def line_starts(self) -> List[Tuple[int, int]]:
        """(instruction offset, source line) pairs where a new line begins."""
        return decode_line_table(self.line_table, self.firstlineno, self.revision.line_table_format)

    def __repr__(self):
        return f"<code object {self.name}, file {self.filename!r}, line {self.firstlineno}>"

    def __str__(self):
        return (f"code {self.name} ({self.filename}:{self.firstlineno}) "
                f"args={self.argcount} locals={self.nlocals} stack={self.stacksize} flags=0x{self.flags:x}")

# --- Line tables ---

def _decode_lnotab(table: bytes, first_line: int, signed: bool) -> List[Tuple[int, int]]:
    starts = []
    last_line = None
    line = first_line
    addr = 0
    for byte_incr, line_incr in zip(table[0::2], table[1::2]):
        if byte_incr:
            if line != last_line:
                starts.append((addr, line))
                last_line = line
            addr += byte_incr
        if signed and line_incr >= 0x80:
            line_incr -= 0x100
        line += line_incr
    if line != last_line:
        starts.append((addr, line))
    return starts


def _decode_linetable(table: bytes, first_line: int) -> List[Tuple[int, int]]:
    starts = []
    last_line = None
    line = first_line
    addr = 0
    for sdelta, ldelta in zip(table[0::2], table[1::2]):
        if ldelta >= 0x80:
            ldelta -= 0x100
        # -128 marks a range with no source line.
        line_here: Optional[int] = None
        if ldelta != -128:
            line += ldelta
            line_here = line
        if sdelta and line_here is not None and line_here != last_line:
            starts.append((addr, line_here))
            last_line = line_here
        addr += sdelta
    return starts


def decode_line_table(table: bytes, first_line: int, table_format: Optional[str]) -> List[Tuple[int, int]]:
    """Decodes lnotab (3.3-3.9) or linetable (3.10) bytes into line starts."""
    if table_format == LINETABLE:
        return _decode_linetable(table, first_line)
    return _decode_lnotab(table, first_line, signed=table_format == LNOTAB_SIGNED)

# --- The Builder ---

def _check_field(name: str, node: "MarshalNode", offset: int):
    expected = _EXPECTED_KINDS.get(name)
    target = node.resolve()
    if expected and target.kind not in expected:
        raise MalformedValue(f"Code field '{name}' must be {' or '.join(expected)}, got {target.kind}", offset)
    if name in NAME_LIST_FIELDS:
        for item in target.value:
            if item.resolve().kind != "str":
                raise MalformedValue(f"Code field '{name}' holds a {item.resolve().kind}, not a string", item.start)


def build_code_object(decoder: "MarshalDecoder", node: "MarshalNode") -> CodeObject:
    """
    Reads the fields of a code object whose tag byte has already been consumed.

    Any failure propagates unchanged; no partially read CodeObject escapes.
    """
    revision = decoder.revision
    if revision.code_layout is None:
        raise UnsupportedRevision(f"No code object layout registered for {revision.label}", node.start)

    cursor = decoder.cursor
    code = CodeObject(start=node.start, revision=revision)
    for name, kind in revision.code_layout:
        field_start = cursor.offset
        if kind == U32:
            value = cursor.read_u32()
            code.fields[name] = value
        else:
            value = decoder.load_object()
            _check_field(name, value, field_start)
            code.objects[name] = value
        code.field_spans.append(FieldSpan(name, field_start, cursor.offset, value))
    code.end = cursor.offset
    return code
