#!/usr/bin/env python3
"""
Tests for the bytecode disassembler: wordcode, variable width, EXTENDED_ARG
folding and operand resolution.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from pycurator import Blob, ByteCursor, TruncatedInstruction, UnsupportedRevision
from parsers import opcode_tables
from parsers.disassembler import Instruction, describe_operand, disassemble, disassemble_code, render_disassembly
from parsers.marshal_parser import load_marshal
from pyc_samples import code_object, revision_for, w_bytes, w_int, w_str, w_tuple

PY35 = opcode_tables.PY35
PY38 = opcode_tables.PY38
PY39 = opcode_tables.PY39
PY310 = opcode_tables.PY310

LOAD_CONST = 100
RETURN_VALUE = 83
EXTENDED_ARG = 144


def test_extended_arg_folds_into_next_instruction():
    """EXTENDED_ARG 0x01 followed by LOAD_CONST 0x02 is one instruction with operand 0x0102"""
    instructions = disassemble(bytes([EXTENDED_ARG, 0x01, LOAD_CONST, 0x02]), PY38)
    assert len(instructions) == 1
    instruction = instructions[0]
    assert instruction.mnemonic == "LOAD_CONST"
    assert instruction.operand == 0x0102
    assert instruction.offset == 0
    assert instruction.width == 4


def test_multiple_prefixes_accumulate():
    """Each EXTENDED_ARG shifts the accumulated value by one more byte"""
    instructions = disassemble(bytes([EXTENDED_ARG, 0x01, EXTENDED_ARG, 0x02, LOAD_CONST, 0x03]), PY38)
    assert [(i.operand, i.width) for i in instructions] == [(0x010203, 6)]


def test_dangling_extended_arg():
    """A stream ending right after EXTENDED_ARG is truncated at the prefix"""
    with pytest.raises(TruncatedInstruction) as info:
        disassemble(bytes([LOAD_CONST, 0x00, EXTENDED_ARG, 0x01]), PY38, base_offset=0x10)
    assert info.value.offset == 0x12


def test_odd_length_wordcode():
    """Wordcode instructions are always two bytes"""
    with pytest.raises(TruncatedInstruction) as info:
        disassemble(bytes([LOAD_CONST, 0x00, RETURN_VALUE]), PY38)
    assert info.value.offset == 2


def test_wordcode_instructions_tile_the_stream():
    """Instruction offsets and widths cover every byte exactly once"""
    code = bytes([LOAD_CONST, 0, EXTENDED_ARG, 1, LOAD_CONST, 0, RETURN_VALUE, 0])
    instructions = disassemble(code, PY38)
    position = 0
    for instruction in instructions:
        assert instruction.offset == position
        position = instruction.end
    assert position == len(code)
    assert instructions[-1].operand is None


def test_variable_width_encoding():
    """Before 3.6, only opcodes with an argument carry two operand bytes"""
    instructions = disassemble(bytes([LOAD_CONST, 0x01, 0x00, RETURN_VALUE]), PY35)
    assert [(i.mnemonic, i.offset, i.width, i.operand) for i in instructions] == [
        ("LOAD_CONST", 0, 3, 1),
        ("RETURN_VALUE", 3, 1, None),
    ]


def test_variable_width_extended_arg():
    """Before 3.6, EXTENDED_ARG contributes the high 16 bits"""
    instructions = disassemble(bytes([EXTENDED_ARG, 0x01, 0x00, LOAD_CONST, 0x02, 0x00]), PY35)
    assert [(i.operand, i.offset, i.width) for i in instructions] == [(0x10002, 0, 6)]


def test_variable_width_truncated_operand():
    """An operand cut off by the end of the stream is reported at its opcode"""
    with pytest.raises(TruncatedInstruction) as info:
        disassemble(bytes([RETURN_VALUE, LOAD_CONST, 0x01]), PY35)
    assert info.value.offset == 1


def test_unknown_opcode_placeholder():
    """Unassigned opcode numbers decode with a placeholder mnemonic"""
    instructions = disassemble(bytes([0xFE, 0x07]), PY38)
    assert instructions[0].mnemonic == "<254>"
    assert instructions[0].operand == 7


def test_missing_opcode_table():
    """Revisions without an opcode table cannot be disassembled"""
    with pytest.raises(UnsupportedRevision):
        disassemble(b"\x00\x00", None)


def test_empty_stream():
    """No bytes, no instructions"""
    assert disassemble(b"", PY38) == []

# --- Operand resolution ---

def test_jump_targets():
    """Relative jumps count from the next instruction; 3.10 counts in words"""
    jump = Instruction(offset=0, opcode=110, mnemonic="JUMP_FORWARD", operand=2, width=2,
                       operand_kind=opcode_tables.OPERAND_JREL)
    assert describe_operand(None, jump, PY38) == "to 4"
    assert describe_operand(None, jump, PY310) == "to 6"

    absolute = Instruction(offset=4, opcode=113, mnemonic="JUMP_ABSOLUTE", operand=3, width=2,
                           operand_kind=opcode_tables.OPERAND_JABS)
    assert describe_operand(None, absolute, PY38) == "to 3"
    assert describe_operand(None, absolute, PY310) == "to 6"


def test_compare_operators():
    """3.9 dropped the non-rich comparisons from COMPARE_OP"""
    compare = Instruction(offset=0, opcode=107, mnemonic="COMPARE_OP", operand=6, width=2,
                          operand_kind=opcode_tables.OPERAND_COMPARE)
    assert describe_operand(None, compare, PY38) == "in"
    assert describe_operand(None, compare, PY39) == ""
    compare.operand = 2
    assert describe_operand(None, compare, PY39) == "=="


def decoded_code(number, **fields):
    node, _ = load_marshal(ByteCursor(Blob(code_object(number, **fields))), revision_for(number))
    return node.value


def test_disassemble_code_resolves_arguments_and_lines():
    """Operands are resolved against the code object's tables"""
    code = decoded_code(
        3413,
        code=w_bytes(bytes([LOAD_CONST, 0, 101, 0, 124, 0, 83, 0])),
        consts=w_tuple([w_int(7)]),
        names=w_tuple([w_str("spam")]),
        varnames=w_tuple([w_str("eggs")]),
        firstlineno=1,
        lnotab=w_bytes(b"\x04\x01"),
    )
    instructions = disassemble_code(code)
    assert code.instructions is instructions
    assert [i.argument for i in instructions] == ["7", "spam", "eggs", ""]
    assert [i.line for i in instructions] == [1, None, 2, None]
    assert str(instructions[0]) == "LOAD_CONST 0 (7)"


def test_disassemble_code_raw_operands():
    """resolve_arguments=False leaves operands as plain numbers"""
    code = decoded_code(3413, code=w_bytes(bytes([LOAD_CONST, 0, 83, 0])), consts=w_tuple([w_int(7)]))
    instructions = disassemble_code(code, resolve_arguments=False)
    assert instructions[0].argument == ""
    assert str(instructions[0]) == "LOAD_CONST 0"


def test_out_of_range_operand_is_not_an_error():
    """An index outside the constant pool just has no resolved argument"""
    code = decoded_code(3413, code=w_bytes(bytes([LOAD_CONST, 5, 83, 0])))
    assert disassemble_code(code)[0].argument == ""


def test_truncated_code_reports_absolute_offset():
    """Errors inside the instruction bytes carry the blob offset"""
    code = decoded_code(3413, code=w_bytes(bytes([EXTENDED_ARG, 1])))
    with pytest.raises(TruncatedInstruction) as info:
        disassemble_code(code)
    # tag + six u32 fields + 's' tag + length
    assert info.value.offset == 1 + 24 + 5


def test_render_disassembly_lists_nested_code():
    """The listing covers nested code objects after their parent"""
    inner = code_object(3413, name=w_str("inner"), code=w_bytes(bytes([83, 0])))
    code = decoded_code(3413, code=w_bytes(bytes([LOAD_CONST, 0, 83, 0])), consts=w_tuple([inner]))
    for each in code.iter_code_objects():
        disassemble_code(each)
    listing = render_disassembly(code)
    assert "Disassembly of <code object <module>" in listing
    assert "Disassembly of <code object inner" in listing
    assert listing.index("<module>") < listing.index("inner,")
    assert "LOAD_CONST" in listing and "RETURN_VALUE" in listing
