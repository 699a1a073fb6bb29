# disassembler.py
"""
Bytecode Disassembler: splits a code object's instruction bytes into Instructions.

Two encodings are handled, chosen by the revision's OpcodeTable:

- variable width (3.3-3.5): one opcode byte, followed by a two byte operand
  only when the opcode is at or above HAVE_ARGUMENT.
- wordcode (3.6+): every instruction is exactly one opcode byte and one
  operand byte.

EXTENDED_ARG never appears as an instruction of its own. Its operand is
shifted left and merged into the next instruction's operand, and that
instruction's offset and width grow to cover the prefix bytes, so the
instruction list still tiles the stream without gaps or overlaps.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from pycurator.errors import TruncatedInstruction, UnsupportedRevision

from .code_object import CodeObject
from .opcode_tables import (
    OPERAND_COMPARE, OPERAND_CONST, OPERAND_FREE, OPERAND_JABS, OPERAND_JREL,
    OPERAND_LOCAL, OPERAND_NAME, OpcodeTable,
)

logger = logging.getLogger(__name__)

# --- Data Structures ---

@dataclass
class Instruction:
    """One decoded instruction; offset is relative to the instruction stream."""
    offset: int
    opcode: int
    mnemonic: str
    operand: Optional[int]
    width: int
    operand_kind: Optional[str] = None
    argument: str = ""
    line: Optional[int] = None

    @property
    def end(self) -> int:
        return self.offset + self.width

    def __str__(self):
        text = self.mnemonic
        if self.operand is not None:
            text += f" {self.operand}"
        if self.argument:
            text += f" ({self.argument})"
        return text

# --- Decoding ---

def disassemble(code: bytes, table: Optional[OpcodeTable], base_offset: int = 0) -> List[Instruction]:
    """
    Decodes raw instruction bytes in stream order.

    Args:
        code: The instruction bytes of one code object.
        table: The revision's opcode table.
        base_offset: Absolute blob offset of code[0], used only for error reports.

    Raises:
        UnsupportedRevision: if there is no opcode table.
        TruncatedInstruction: if the stream ends inside an operand or right
            after an EXTENDED_ARG.
    """
    if table is None:
        raise UnsupportedRevision("No opcode table registered for this revision", base_offset)

    instructions: List[Instruction] = []
    size = len(code)
    extended = 0
    prefix_start: Optional[int] = None
    i = 0
    while i < size:
        start = i
        opcode = code[i]
        if table.fixed_width:
            if i + 2 > size:
                raise TruncatedInstruction(f"Opcode 0x{opcode:02x} has no operand byte", base_offset + start)
            operand: Optional[int] = code[i + 1]
            i += 2
        elif opcode >= table.have_argument:
            if i + 3 > size:
                raise TruncatedInstruction(f"Opcode 0x{opcode:02x} is cut off inside its operand", base_offset + start)
            operand = code[i + 1] | (code[i + 2] << 8)
            i += 3
        else:
            operand = None
            i += 1

        if opcode == table.extended_arg:
            extended = (extended | operand) << table.extended_shift
            if prefix_start is None:
                prefix_start = start
            continue

        info = table.lookup(opcode)
        if info.has_operand and operand is not None:
            operand |= extended
        else:
            operand = None
        begin = start if prefix_start is None else prefix_start
        instructions.append(Instruction(
            offset=begin,
            opcode=opcode,
            mnemonic=info.mnemonic,
            operand=operand,
            width=i - begin,
            operand_kind=info.operand,
        ))
        extended = 0
        prefix_start = None

    if prefix_start is not None:
        raise TruncatedInstruction("EXTENDED_ARG at the end of the stream has no instruction to extend",
                                   base_offset + prefix_start)
    return instructions

# --- Operand resolution ---

def _pick(items: List[str], index: int) -> str:
    return items[index] if 0 <= index < len(items) else ""


def describe_operand(code: CodeObject, instruction: Instruction, table: OpcodeTable) -> str:
    """Human readable meaning of an operand, in the style of the dis module."""
    arg = instruction.operand
    kind = instruction.operand_kind
    if arg is None:
        return ""
    if kind == OPERAND_CONST:
        constants = code.constants
        return constants[arg].resolve().short_repr() if arg < len(constants) else ""
    if kind == OPERAND_NAME:
        return _pick(code.names, arg)
    if kind == OPERAND_LOCAL:
        return _pick(code.varnames, arg)
    if kind == OPERAND_FREE:
        return _pick(code.cellvars + code.freevars, arg)
    if kind == OPERAND_COMPARE:
        return _pick(list(table.compare_ops), arg)
    if kind == OPERAND_JREL:
        return f"to {instruction.end + arg * table.jump_unit}"
    if kind == OPERAND_JABS:
        return f"to {arg * table.jump_unit}"
    return ""


def disassemble_code(code: CodeObject, resolve_arguments: bool = True) -> List[Instruction]:
    """Disassembles one code object, fills code.instructions and returns them."""
    table = code.revision.opcode_table
    code_node = code.objects["code"].resolve()
    instructions = disassemble(code.code, table, base_offset=code_node.payload_start or 0)

    line_starts: Dict[int, int] = dict(code.line_starts())
    for instruction in instructions:
        instruction.line = line_starts.get(instruction.offset)
        if resolve_arguments:
            instruction.argument = describe_operand(code, instruction, table)

    code.instructions = instructions
    logger.debug("Disassembled %s: %d instructions", code.name, len(instructions))
    return instructions

# --- Listing ---

def render_disassembly(code: CodeObject) -> str:
    """
    dis-style listing of a code object and every code object nested in its
    constants. Instructions must already be decoded (see disassemble_code).
    """
    blocks = []
    for current in code.iter_code_objects():
        lines = [f"Disassembly of {current!r}:"]
        for instruction in current.instructions:
            line = f"{instruction.line:>4}" if instruction.line is not None else "    "
            operand = "" if instruction.operand is None else str(instruction.operand)
            text = f"{line} {instruction.offset:>6} {instruction.mnemonic:<24} {operand:>5}"
            if instruction.argument:
                text += f" ({instruction.argument})"
            lines.append(text.rstrip())
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)
