# opcode_tables.py
"""
Opcode tables for the CPython bytecode revisions this package can disassemble.

Each revision is a data entry: a mapping from opcode number to mnemonic and
operand kind, plus the few numbers the disassembler needs (HAVE_ARGUMENT,
EXTENDED_ARG, operand size, whether every instruction has the same width).
Tables are derived from the previous release by listing what was removed and
what was added, the same way CPython's Lib/opcode.py evolved.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional, Tuple

# --- Operand kinds ---
NO_OPERAND = None
OPERAND_INT = "int"
OPERAND_CONST = "const"
OPERAND_NAME = "name"
OPERAND_LOCAL = "local"
OPERAND_FREE = "free"
OPERAND_COMPARE = "compare"
OPERAND_JREL = "jrel"
OPERAND_JABS = "jabs"

HAVE_ARGUMENT = 90
EXTENDED_ARG = 144

_NAME_OPS = {
    "STORE_NAME", "DELETE_NAME", "STORE_ATTR", "DELETE_ATTR", "STORE_GLOBAL",
    "DELETE_GLOBAL", "LOAD_NAME", "LOAD_ATTR", "IMPORT_NAME", "IMPORT_FROM",
    "LOAD_GLOBAL", "LOAD_METHOD", "STORE_ANNOTATION",
}
_LOCAL_OPS = {"LOAD_FAST", "STORE_FAST", "DELETE_FAST"}
_FREE_OPS = {"LOAD_CLOSURE", "LOAD_DEREF", "STORE_DEREF", "DELETE_DEREF", "LOAD_CLASSDEREF"}
_JREL_OPS = {
    "FOR_ITER", "JUMP_FORWARD", "SETUP_LOOP", "SETUP_EXCEPT", "SETUP_FINALLY",
    "SETUP_WITH", "SETUP_ASYNC_WITH", "CALL_FINALLY",
}
_JABS_OPS = {
    "JUMP_IF_FALSE_OR_POP", "JUMP_IF_TRUE_OR_POP", "JUMP_ABSOLUTE",
    "POP_JUMP_IF_FALSE", "POP_JUMP_IF_TRUE", "CONTINUE_LOOP",
    "JUMP_IF_NOT_EXC_MATCH",
}

COMPARE_OPS_LEGACY = (
    '<', '<=', '==', '!=', '>', '>=', 'in', 'not in', 'is', 'is not',
    'exception match', 'BAD',
)
COMPARE_OPS = ('<', '<=', '==', '!=', '>', '>=')


def _operand_kind(number: int, mnemonic: str) -> Optional[str]:
    if number < HAVE_ARGUMENT:
        return NO_OPERAND
    if mnemonic == "LOAD_CONST":
        return OPERAND_CONST
    if mnemonic == "COMPARE_OP":
        return OPERAND_COMPARE
    if mnemonic in _NAME_OPS:
        return OPERAND_NAME
    if mnemonic in _LOCAL_OPS:
        return OPERAND_LOCAL
    if mnemonic in _FREE_OPS:
        return OPERAND_FREE
    if mnemonic in _JREL_OPS:
        return OPERAND_JREL
    if mnemonic in _JABS_OPS:
        return OPERAND_JABS
    return OPERAND_INT


@dataclass(frozen=True)
class OpcodeInfo:
    number: int
    mnemonic: str
    operand: Optional[str]

    @property
    def has_operand(self) -> bool:
        return self.operand is not NO_OPERAND


@dataclass(frozen=True)
class OpcodeTable:
    """
    Everything the disassembler needs to know about one bytecode revision.

    fixed_width tables (3.6+ wordcode) give every instruction one opcode byte
    and one operand byte. Variable width tables (3.3-3.5) read a two byte
    operand only for opcodes at or above have_argument. jump_unit is the
    number of bytes one unit of a jump operand stands for.
    """
    name: str
    opcodes: Mapping[int, OpcodeInfo]
    fixed_width: bool
    operand_size: int
    have_argument: int = HAVE_ARGUMENT
    extended_arg: int = EXTENDED_ARG
    jump_unit: int = 1
    compare_ops: Tuple[str, ...] = COMPARE_OPS_LEGACY
    _by_name: Dict[str, int] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self):
        self._by_name.update({info.mnemonic: num for num, info in self.opcodes.items()})

    @property
    def extended_shift(self) -> int:
        return 8 * self.operand_size

    def lookup(self, number: int) -> OpcodeInfo:
        """Returns the opcode entry, or a placeholder '<N>' entry for unknown numbers."""
        info = self.opcodes.get(number)
        if info is None:
            kind = OPERAND_INT if number >= self.have_argument else NO_OPERAND
            info = OpcodeInfo(number, f"<{number}>", kind)
        return info

    def opcode(self, mnemonic: str) -> int:
        return self._by_name[mnemonic]


def _derive(base: Mapping[int, str], removed: Iterable[int] = (), added: Optional[Mapping[int, str]] = None) -> Dict[int, str]:
    names = dict(base)
    for number in removed:
        del names[number]
    names.update(added or {})
    return names


def _build(name: str, names: Mapping[int, str], **kwargs) -> OpcodeTable:
    opcodes = {num: OpcodeInfo(num, mnem, _operand_kind(num, mnem)) for num, mnem in names.items()}
    return OpcodeTable(name=name, opcodes=opcodes, **kwargs)

# --- Opcode numbering per release ---

_PY33 = {
    1: "POP_TOP", 2: "ROT_TWO", 3: "ROT_THREE", 4: "DUP_TOP", 5: "DUP_TOP_TWO",
    9: "NOP", 10: "UNARY_POSITIVE", 11: "UNARY_NEGATIVE", 12: "UNARY_NOT",
    15: "UNARY_INVERT", 19: "BINARY_POWER", 20: "BINARY_MULTIPLY",
    22: "BINARY_MODULO", 23: "BINARY_ADD", 24: "BINARY_SUBTRACT",
    25: "BINARY_SUBSCR", 26: "BINARY_FLOOR_DIVIDE", 27: "BINARY_TRUE_DIVIDE",
    28: "INPLACE_FLOOR_DIVIDE", 29: "INPLACE_TRUE_DIVIDE", 54: "STORE_MAP",
    55: "INPLACE_ADD", 56: "INPLACE_SUBTRACT", 57: "INPLACE_MULTIPLY",
    59: "INPLACE_MODULO", 60: "STORE_SUBSCR", 61: "DELETE_SUBSCR",
    62: "BINARY_LSHIFT", 63: "BINARY_RSHIFT", 64: "BINARY_AND",
    65: "BINARY_XOR", 66: "BINARY_OR", 67: "INPLACE_POWER", 68: "GET_ITER",
    70: "PRINT_EXPR", 71: "LOAD_BUILD_CLASS", 72: "YIELD_FROM",
    75: "INPLACE_LSHIFT", 76: "INPLACE_RSHIFT", 77: "INPLACE_AND",
    78: "INPLACE_XOR", 79: "INPLACE_OR", 80: "BREAK_LOOP", 81: "WITH_CLEANUP",
    83: "RETURN_VALUE", 84: "IMPORT_STAR", 86: "YIELD_VALUE", 87: "POP_BLOCK",
    88: "END_FINALLY", 89: "POP_EXCEPT",
    90: "STORE_NAME", 91: "DELETE_NAME", 92: "UNPACK_SEQUENCE", 93: "FOR_ITER",
    94: "UNPACK_EX", 95: "STORE_ATTR", 96: "DELETE_ATTR", 97: "STORE_GLOBAL",
    98: "DELETE_GLOBAL", 100: "LOAD_CONST", 101: "LOAD_NAME",
    102: "BUILD_TUPLE", 103: "BUILD_LIST", 104: "BUILD_SET", 105: "BUILD_MAP",
    106: "LOAD_ATTR", 107: "COMPARE_OP", 108: "IMPORT_NAME", 109: "IMPORT_FROM",
    110: "JUMP_FORWARD", 111: "JUMP_IF_FALSE_OR_POP", 112: "JUMP_IF_TRUE_OR_POP",
    113: "JUMP_ABSOLUTE", 114: "POP_JUMP_IF_FALSE", 115: "POP_JUMP_IF_TRUE",
    116: "LOAD_GLOBAL", 119: "CONTINUE_LOOP", 120: "SETUP_LOOP",
    121: "SETUP_EXCEPT", 122: "SETUP_FINALLY", 124: "LOAD_FAST",
    125: "STORE_FAST", 126: "DELETE_FAST", 130: "RAISE_VARARGS",
    131: "CALL_FUNCTION", 132: "MAKE_FUNCTION", 133: "BUILD_SLICE",
    134: "MAKE_CLOSURE", 135: "LOAD_CLOSURE", 136: "LOAD_DEREF",
    137: "STORE_DEREF", 138: "DELETE_DEREF", 140: "CALL_FUNCTION_VAR",
    141: "CALL_FUNCTION_KW", 142: "CALL_FUNCTION_VAR_KW", 143: "SETUP_WITH",
    144: "EXTENDED_ARG", 145: "LIST_APPEND", 146: "SET_ADD", 147: "MAP_ADD",
}

_PY34 = _derive(_PY33, added={148: "LOAD_CLASSDEREF"})

_PY35 = _derive(_PY34, removed=(54, 81), added={
    16: "BINARY_MATRIX_MULTIPLY", 17: "INPLACE_MATRIX_MULTIPLY",
    50: "GET_AITER", 51: "GET_ANEXT", 52: "BEFORE_ASYNC_WITH",
    69: "GET_YIELD_FROM_ITER", 73: "GET_AWAITABLE",
    81: "WITH_CLEANUP_START", 82: "WITH_CLEANUP_FINISH",
    149: "BUILD_LIST_UNPACK", 150: "BUILD_MAP_UNPACK",
    151: "BUILD_MAP_UNPACK_WITH_CALL", 152: "BUILD_TUPLE_UNPACK",
    153: "BUILD_SET_UNPACK", 154: "SETUP_ASYNC_WITH",
})

_PY36 = _derive(_PY35, removed=(134, 140, 142), added={
    85: "SETUP_ANNOTATIONS", 127: "STORE_ANNOTATION", 142: "CALL_FUNCTION_EX",
    155: "FORMAT_VALUE", 156: "BUILD_CONST_KEY_MAP", 157: "BUILD_STRING",
    158: "BUILD_TUPLE_UNPACK_WITH_CALL",
})

_PY37 = _derive(_PY36, removed=(127,), added={160: "LOAD_METHOD", 161: "CALL_METHOD"})

_PY38 = _derive(_PY37, removed=(80, 119, 120, 121), added={
    6: "ROT_FOUR", 53: "BEGIN_FINALLY", 54: "END_ASYNC_FOR",
    162: "CALL_FINALLY", 163: "POP_FINALLY",
})

_PY39 = _derive(_PY38, removed=(53, 81, 82, 88, 149, 150, 151, 152, 153, 158, 162, 163), added={
    48: "RERAISE", 49: "WITH_EXCEPT_START", 74: "LOAD_ASSERTION_ERROR",
    82: "LIST_TO_TUPLE", 117: "IS_OP", 118: "CONTAINS_OP",
    121: "JUMP_IF_NOT_EXC_MATCH", 162: "LIST_EXTEND", 163: "SET_UPDATE",
    164: "DICT_MERGE", 165: "DICT_UPDATE",
})

_PY310 = _derive(_PY39, added={
    30: "GET_LEN", 31: "MATCH_MAPPING", 32: "MATCH_SEQUENCE", 33: "MATCH_KEYS",
    34: "COPY_DICT_WITHOUT_KEYS", 99: "ROT_N", 129: "GEN_START",
    152: "MATCH_CLASS",
})

# --- Registered tables ---

PY33 = _build("3.3", _PY33, fixed_width=False, operand_size=2)
PY34 = _build("3.4", _PY34, fixed_width=False, operand_size=2)
PY35 = _build("3.5", _PY35, fixed_width=False, operand_size=2)
PY36 = _build("3.6", _PY36, fixed_width=True, operand_size=1)
PY37 = _build("3.7", _PY37, fixed_width=True, operand_size=1)
PY38 = _build("3.8", _PY38, fixed_width=True, operand_size=1)
PY39 = _build("3.9", _PY39, fixed_width=True, operand_size=1, compare_ops=COMPARE_OPS)
PY310 = _build("3.10", _PY310, fixed_width=True, operand_size=1, jump_unit=2, compare_ops=COMPARE_OPS)
