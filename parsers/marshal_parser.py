# marshal_parser.py
"""
Marshal Decoder: reads CPython's marshal serialization into MarshalNode trees.

A marshal stream has no framing and no end marker. Every object starts with a
type byte; whatever follows is determined by the type. Containers recurse, so
reading one object means reading the whole tree below it.

Since marshal version 3 (Python 3.4) the high bit of the type byte is the
reference flag. A flagged object takes the next slot in the per-parse
InternTable, and a later 'r' object can point back at it by slot index. The
slot is reserved when the flagged object starts and filled when it is
complete, which is the order CPython's reader uses, so indices written by
CPython resolve to the same objects here. A reference to a slot that is
reserved but not yet filled (a cycle) or that does not exist is rejected.

Every node remembers the blob offsets it was read from, so the chunk emitter
never has to scan bytes on its own.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from pycurator.binary_curator import ByteCursor
from pycurator.errors import (
    MalformedReference, MalformedValue, NestingTooDeep, UnexpectedEnd, UnknownTag,
)

from .code_object import build_code_object
from .magic_registry import FormatRevision

logger = logging.getLogger(__name__)

FLAG_REF = 0x80
DEFAULT_MAX_DEPTH = 200

# --- Type codes: tag -> (node kind, lowest marshal version that writes it) ---
TYPE_NULL = ord('0')
TYPE_NONE = ord('N')
TYPE_FALSE = ord('F')
TYPE_TRUE = ord('T')
TYPE_STOPITER = ord('S')
TYPE_ELLIPSIS = ord('.')
TYPE_INT = ord('i')
TYPE_LONG = ord('l')
TYPE_FLOAT = ord('f')
TYPE_BINARY_FLOAT = ord('g')
TYPE_COMPLEX = ord('x')
TYPE_BINARY_COMPLEX = ord('y')
TYPE_STRING = ord('s')
TYPE_INTERNED = ord('t')
TYPE_REF = ord('r')
TYPE_TUPLE = ord('(')
TYPE_LIST = ord('[')
TYPE_DICT = ord('{')
TYPE_CODE = ord('c')
TYPE_UNICODE = ord('u')
TYPE_SET = ord('<')
TYPE_FROZENSET = ord('>')
TYPE_ASCII = ord('a')
TYPE_ASCII_INTERNED = ord('A')
TYPE_SMALL_TUPLE = ord(')')
TYPE_SHORT_ASCII = ord('z')
TYPE_SHORT_ASCII_INTERNED = ord('Z')

MIN_MARSHAL_VERSION = {
    TYPE_BINARY_FLOAT: 2,
    TYPE_BINARY_COMPLEX: 2,
    TYPE_INTERNED: 3,
    TYPE_REF: 3,
    TYPE_ASCII: 4,
    TYPE_ASCII_INTERNED: 4,
    TYPE_SMALL_TUPLE: 4,
    TYPE_SHORT_ASCII: 4,
    TYPE_SHORT_ASCII_INTERNED: 4,
}

# Singletons never take an intern slot, even if the flag bit is set.
UNREFERENCEABLE = {TYPE_NULL, TYPE_NONE, TYPE_FALSE, TYPE_TRUE, TYPE_STOPITER, TYPE_ELLIPSIS, TYPE_REF}

INTERNED_TAGS = {TYPE_INTERNED, TYPE_ASCII_INTERNED, TYPE_SHORT_ASCII_INTERNED}

SCALAR_KINDS = {"null", "none", "bool", "ellipsis", "stopiteration", "int", "float", "complex", "bytes", "str"}
SEQUENCE_KINDS = {"tuple", "list", "set", "frozenset"}
CONTAINER_KINDS = SEQUENCE_KINDS | {"dict"}


def _truncate(text: str, limit: int) -> str:
    if limit and len(text) > limit:
        return text[:max(limit - 3, 0)] + "..."
    return text


def _join_digits(digits: List[int], lo: int, hi: int) -> int:
    """Combines 15-bit little-endian digits by halves, linear in the result size per level."""
    if hi - lo == 1:
        return digits[lo]
    mid = (lo + hi) // 2
    return _join_digits(digits, lo, mid) | (_join_digits(digits, mid, hi) << (15 * (mid - lo)))


# Ints wider than this are summarized by size; decimal conversion of huge
# ints is quadratic and capped by sys.set_int_max_str_digits().
_REPR_INT_BITS = 256

_BRACKETS = {
    "tuple": ("(", ")"),
    "list": ("[", "]"),
    "set": ("{", "}"),
    "frozenset": ("frozenset({", "})"),
}


def _scalar_repr(node: "MarshalNode", limit: int) -> str:
    kind, value = node.kind, node.value
    if kind == "ellipsis":
        return "Ellipsis"
    if kind == "stopiteration":
        return "StopIteration"
    if kind == "null":
        return "<NULL>"
    if kind == "int" and value.bit_length() > _REPR_INT_BITS:
        return f"<{value.bit_length()}-bit int>"
    if kind == "str" and node.undecoded:
        return f"<invalid utf-8 {value[:limit].encode('utf-8', 'surrogateescape')!r}>"
    if kind in ("str", "bytes"):
        return repr(value[:limit + 1])
    if kind == "code":
        return f"<code object {value.name[:limit]}, line {value.firstlineno}>"
    return repr(value)


def _repr_pieces(node: "MarshalNode", limit: int) -> Iterator[str]:
    """Yields the repr of a node tree piece by piece, in reading order."""
    node = node.resolve()
    if node.kind == "dict":
        yield "{"
        for i, (key, val) in enumerate(node.value):
            if i:
                yield ", "
            yield from _repr_pieces(key, limit)
            yield ": "
            yield from _repr_pieces(val, limit)
        yield "}"
    elif node.kind in SEQUENCE_KINDS:
        items = node.value
        if not items and node.kind in ("set", "frozenset"):
            yield f"{node.kind}()"
            return
        opening, closing = _BRACKETS[node.kind]
        yield opening
        for i, item in enumerate(items):
            if i:
                yield ", "
            yield from _repr_pieces(item, limit)
        if node.kind == "tuple" and len(items) == 1:
            yield ","
        yield closing
    else:
        yield _scalar_repr(node, limit)

# --- Data Structures ---

@dataclass(eq=False)
class MarshalNode:
    """
    One decoded marshal object.

    `value` depends on `kind`: the Python scalar for scalar kinds, a list of
    child nodes for tuple/list/set/frozenset, a list of (key, value) node
    pairs for dict, a CodeObject for code, and the target node for ref.
    A unicode payload that is not valid UTF-8 is kept as surrogate-escaped
    text with `undecoded` set, so the original bytes can be recovered.
    """
    kind: str
    tag: int
    start: int
    end: int = 0
    value: Any = None
    flag_ref: bool = False
    slot: Optional[int] = None
    ref_target: Optional[int] = None
    payload_start: Optional[int] = None
    interned: bool = False
    undecoded: bool = False

    @property
    def size(self) -> int:
        return self.end - self.start

    @property
    def is_scalar(self) -> bool:
        return self.kind in SCALAR_KINDS

    @property
    def is_container(self) -> bool:
        return self.kind in CONTAINER_KINDS

    def resolve(self) -> "MarshalNode":
        """Follows back-references to the node they point at."""
        node = self
        while node.kind == "ref":
            node = node.value
        return node

    def items(self) -> List["MarshalNode"]:
        """Child nodes in stream order (dict keys and values interleaved)."""
        if self.kind in SEQUENCE_KINDS:
            return list(self.value)
        if self.kind == "dict":
            return [node for pair in self.value for node in pair]
        return []

    def to_python(self) -> Any:
        """Converts the tree to plain Python values. Code objects stay CodeObject."""
        if self.kind == "ref":
            return self.value.to_python()
        if self.kind == "ellipsis":
            return Ellipsis
        if self.kind == "stopiteration":
            return StopIteration
        if self.kind == "tuple":
            return tuple(child.to_python() for child in self.value)
        if self.kind == "list":
            return [child.to_python() for child in self.value]
        if self.kind == "set":
            return {child.to_python() for child in self.value}
        if self.kind == "frozenset":
            return frozenset(child.to_python() for child in self.value)
        if self.kind == "dict":
            return {key.to_python(): val.to_python() for key, val in self.value}
        return self.value

    def short_repr(self, limit: int = 40) -> str:
        """
        repr-like summary of at most `limit` characters.

        Built from the node tree, not from to_python(), so unhashable set
        members cannot fail and only the first few children are visited.
        """
        pieces = []
        length = 0
        for piece in _repr_pieces(self, limit):
            pieces.append(piece)
            length += len(piece)
            if length > limit:
                break
        return _truncate("".join(pieces), limit)

    def __str__(self):
        if self.kind == "ref":
            return f"ref #{self.ref_target} -> {self.value.short_repr()}"
        if self.is_container:
            return f"{self.kind} ({len(self.value)} items)"
        return f"{self.kind} {self.short_repr()}"


class InternTable:
    """Per-parse, append-only table of flagged objects addressable by index."""

    def __init__(self):
        self._slots: List[Optional[MarshalNode]] = []

    def __len__(self):
        return len(self._slots)

    def reserve(self) -> int:
        self._slots.append(None)
        return len(self._slots) - 1

    def fill(self, index: int, node: MarshalNode):
        self._slots[index] = node

    def resolve(self, index: int, offset: int) -> MarshalNode:
        if not (0 <= index < len(self._slots)):
            raise MalformedReference(
                f"Reference to slot {index}, but only {len(self._slots)} slots exist", offset
            )
        node = self._slots[index]
        if node is None:
            raise MalformedReference(f"Reference to slot {index} before it is complete", offset)
        return node

# --- The Decoder ---

class MarshalDecoder:
    """
    Recursive-descent marshal reader bound to one cursor and one revision.

    load_object() is the only recursive entry point. It dispatches on the type
    byte through `handlers`, which includes the code object builder, so the
    depth limit and error propagation are the same for every kind of object.
    """

    def __init__(self, cursor: ByteCursor, revision: FormatRevision,
                 max_depth: int = DEFAULT_MAX_DEPTH, interns: Optional[InternTable] = None):
        self.cursor = cursor
        self.revision = revision
        self.max_depth = max_depth
        self.interns = interns if interns is not None else InternTable()
        self.depth = 0
        self.code_objects: List[Any] = []

        handlers: Dict[int, Callable[[MarshalNode], None]] = {
            TYPE_NULL: self._load_singleton("null", None),
            TYPE_NONE: self._load_singleton("none", None),
            TYPE_FALSE: self._load_singleton("bool", False),
            TYPE_TRUE: self._load_singleton("bool", True),
            TYPE_STOPITER: self._load_singleton("stopiteration", None),
            TYPE_ELLIPSIS: self._load_singleton("ellipsis", None),
            TYPE_INT: self._load_int,
            TYPE_LONG: self._load_long,
            TYPE_FLOAT: self._load_float,
            TYPE_BINARY_FLOAT: self._load_binary_float,
            TYPE_COMPLEX: self._load_complex,
            TYPE_BINARY_COMPLEX: self._load_binary_complex,
            TYPE_STRING: self._load_bytes,
            TYPE_UNICODE: self._load_unicode,
            TYPE_INTERNED: self._load_unicode,
            TYPE_ASCII: self._load_ascii,
            TYPE_ASCII_INTERNED: self._load_ascii,
            TYPE_SHORT_ASCII: self._load_short_ascii,
            TYPE_SHORT_ASCII_INTERNED: self._load_short_ascii,
            TYPE_TUPLE: self._load_sequence("tuple", 4),
            TYPE_SMALL_TUPLE: self._load_sequence("tuple", 1),
            TYPE_LIST: self._load_sequence("list", 4),
            TYPE_SET: self._load_sequence("set", 4),
            TYPE_FROZENSET: self._load_sequence("frozenset", 4),
            TYPE_DICT: self._load_dict,
            TYPE_CODE: self._load_code,
            TYPE_REF: self._load_ref,
        }
        self.handlers = {
            tag: handler for tag, handler in handlers.items()
            if MIN_MARSHAL_VERSION.get(tag, 0) <= revision.marshal_version
        }

    def load_object(self, nullable: bool = False) -> MarshalNode:
        """
        Reads one object (and everything below it) from the cursor.

        If nullable is True, the NULL type is allowed and returned as a node of
        kind "null"; anywhere else it is rejected like an unknown tag.
        """
        start = self.cursor.offset
        raw = self.cursor.read_u8()
        if self.revision.has_ref_flag:
            flag, tag = bool(raw & FLAG_REF), raw & ~FLAG_REF
        else:
            flag, tag = False, raw

        handler = self.handlers.get(tag)
        if handler is None:
            raise UnknownTag(f"marshal type unknown ({bytes([raw])!r}) for {self.revision.label}", start)
        if tag == TYPE_NULL and not nullable:
            raise UnknownTag("NULL object outside a dict terminator", start)
        if self.depth >= self.max_depth:
            raise NestingTooDeep(f"Marshal nesting exceeds {self.max_depth} levels", start)

        node = MarshalNode(kind="", tag=tag, start=start, flag_ref=flag, interned=tag in INTERNED_TAGS)
        if flag and tag not in UNREFERENCEABLE:
            node.slot = self.interns.reserve()

        self.depth += 1
        try:
            handler(node)
        finally:
            self.depth -= 1

        node.end = self.cursor.offset
        if node.slot is not None:
            self.interns.fill(node.slot, node)
        return node

    def _require_items(self, count: int, offset: int):
        # Each item takes at least one byte.
        if count > self.cursor.peek_remaining():
            raise UnexpectedEnd(
                f"Container claims {count} items but only {self.cursor.peek_remaining()} bytes remain",
                offset
            )

    # --- Handlers ---

    def _load_singleton(self, kind: str, value: Any) -> Callable[[MarshalNode], None]:
        def load(node: MarshalNode):
            node.kind, node.value = kind, value
        return load

    def _load_int(self, node: MarshalNode):
        node.kind, node.value = "int", self.cursor.read_i32()

    def _load_long(self, node: MarshalNode):
        count_offset = self.cursor.offset
        n = self.cursor.read_i32()
        if abs(n) * 2 > self.cursor.peek_remaining():
            raise UnexpectedEnd(f"Long claims {abs(n)} digits", count_offset)
        digits = []
        for _ in range(abs(n)):
            digit_offset = self.cursor.offset
            digit = self.cursor.read_u16()
            if digit > 0x7fff:
                raise MalformedValue(f"Long digit 0x{digit:x} out of range", digit_offset)
            digits.append(digit)
        value = _join_digits(digits, 0, len(digits)) if digits else 0
        node.kind, node.value = "int", -value if n < 0 else value

    def _read_text_float(self) -> float:
        offset = self.cursor.offset
        text = bytes(self.cursor.read_bytes(self.cursor.read_u8()))
        try:
            return float(text.decode('ascii'))
        except (UnicodeDecodeError, ValueError):
            raise MalformedValue(f"Unparsable float text {text!r}", offset) from None

    def _load_float(self, node: MarshalNode):
        node.kind, node.value = "float", self._read_text_float()

    def _load_binary_float(self, node: MarshalNode):
        node.kind, node.value = "float", self.cursor.read_f64()

    def _load_complex(self, node: MarshalNode):
        real = self._read_text_float()
        node.kind, node.value = "complex", complex(real, self._read_text_float())

    def _load_binary_complex(self, node: MarshalNode):
        real = self.cursor.read_f64()
        node.kind, node.value = "complex", complex(real, self.cursor.read_f64())

    def _load_bytes(self, node: MarshalNode):
        data = self.cursor.read_cstring_prefixed(4)
        node.payload_start = self.cursor.offset - len(data)
        node.kind, node.value = "bytes", bytes(data)

    def _load_unicode(self, node: MarshalNode):
        data = bytes(self.cursor.read_cstring_prefixed(4))
        node.payload_start = self.cursor.offset - len(data)
        try:
            text = data.decode('utf-8', 'surrogatepass')
        except UnicodeDecodeError:
            logger.debug("Invalid UTF-8 in string at 0x%x, keeping the raw bytes", node.start)
            text = data.decode('utf-8', 'surrogateescape')
            node.undecoded = True
        node.kind, node.value = "str", text

    def _load_ascii(self, node: MarshalNode):
        data = self.cursor.read_cstring_prefixed(4)
        node.payload_start = self.cursor.offset - len(data)
        node.kind, node.value = "str", bytes(data).decode('latin-1')

    def _load_short_ascii(self, node: MarshalNode):
        data = self.cursor.read_cstring_prefixed(1)
        node.payload_start = self.cursor.offset - len(data)
        node.kind, node.value = "str", bytes(data).decode('latin-1')

    def _load_sequence(self, kind: str, count_width: int) -> Callable[[MarshalNode], None]:
        def load(node: MarshalNode):
            count_offset = self.cursor.offset
            count = self.cursor.read_u8() if count_width == 1 else self.cursor.read_u32()
            self._require_items(count, count_offset)
            node.kind, node.value = kind, []
            for _ in range(count):
                node.value.append(self.load_object())
        return load

    def _load_dict(self, node: MarshalNode):
        node.kind, node.value = "dict", []
        while True:
            key = self.load_object(nullable=True)
            if key.kind == "null":
                break
            node.value.append((key, self.load_object()))

    def _load_code(self, node: MarshalNode):
        node.kind = "code"
        node.value = build_code_object(self, node)
        self.code_objects.append(node.value)

    def _load_ref(self, node: MarshalNode):
        index = self.cursor.read_u32()
        node.kind, node.ref_target = "ref", index
        node.value = self.interns.resolve(index, node.start)


def load_marshal(cursor: ByteCursor, revision: FormatRevision, max_depth: int = DEFAULT_MAX_DEPTH) -> Tuple[MarshalNode, MarshalDecoder]:
    """Deserializes one marshal object at the cursor. Returns the node and the decoder used."""
    decoder = MarshalDecoder(cursor, revision, max_depth=max_depth)
    node = decoder.load_object()
    logger.debug("Decoded %s at 0x%x-0x%x, %d intern slots", node.kind, node.start, node.end, len(decoder.interns))
    return node, decoder
