#!/usr/bin/env python3
"""
End-to-end tests for unpyc_file_blob(): detection, header, chunk tree and
attachment to the blob.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import importlib.util
import py_compile
import struct

import pytest

from pycurator import Blob, Chunk
from parsers import ParseOptions, PycParser, find_parser, lookup_magic, parse_pyc, unpyc_file_blob
from parsers.magic_registry import magic_for
from parsers.pyc_parser import NO_MATCH
from pyc_samples import (
    PY38_FUNCTION_PYC, PY310_FUNCTION_PYC, assert_nested, code_object, header, minimal_pyc, pyc,
    w_bytes, w_int, w_str, w_tuple,
)


def children_of_kind(chunk, kind):
    return [child for child in chunk.children if child.kind == kind]


def test_minimal_file():
    """A header plus an empty code object gives one code object and a complete tree"""
    data = minimal_pyc(3413)
    blob = Blob(data)
    outcome = unpyc_file_blob(blob)

    assert outcome.ok, outcome
    assert len(outcome.code_objects) == 1
    assert outcome.code_object is outcome.code_objects[0]

    root = outcome.chunk
    assert (root.start, root.end) == (0, len(data))
    assert [child.kind for child in root.children] == ["header", "code-object"]
    assert root.children[0].end == 16

    code_chunk = root.children[1]
    assert (code_chunk.start, code_chunk.end) == (16, len(data))
    pool, = children_of_kind(code_chunk, "constant-pool")
    instructions, = children_of_kind(code_chunk, "instruction-list")
    names = children_of_kind(code_chunk, "name-table")
    assert pool.children == []
    assert instructions.children == []
    assert len(names) == 4 and all(table.children == [] for table in names)
    assert names[0].label.startswith("names:")

    assert blob.chunks == [root]
    assert_nested(root)


@pytest.mark.parametrize("number", [3230, 3310, 3350, 3351, 3379, 3394, 3413, 3425, 3439])
def test_minimal_file_every_revision(number):
    """Every supported revision parses its own minimal file"""
    blob = Blob(minimal_pyc(number))
    outcome = unpyc_file_blob(blob)
    assert outcome.ok, outcome
    assert outcome.revision.magic_number == number
    assert outcome.chunk.end == blob.size
    assert_nested(outcome.chunk)


def test_magic_only_blob():
    """A blob holding only the magic fails with UnexpectedEnd and stays unannotated"""
    for number in (3230, 3413):
        blob = Blob(magic_for(number))
        outcome = unpyc_file_blob(blob)
        assert not outcome.ok
        assert outcome.error_kind == "UnexpectedEnd"
        assert outcome.revision.magic_number == number
        assert blob.chunks == []


def test_unknown_magic_is_no_match():
    """Data without a registered magic is not claimed"""
    blob = Blob(b"\x7fELF" + b"\x00" * 60)
    outcome = unpyc_file_blob(blob)
    assert not outcome.ok
    assert outcome.error_kind == NO_MATCH
    assert outcome.revision is None
    assert blob.chunks == []


def test_recognized_but_unsupported_revision():
    """3.11 files are identified and rejected"""
    blob = Blob(header(3495) + b"N")
    outcome = unpyc_file_blob(blob)
    assert outcome.error_kind == "UnsupportedRevision"
    assert outcome.revision.label == "Python 3.11"
    assert blob.chunks == []


def test_truncated_unsupported_revision():
    """A bare 3.12 magic is reported as unsupported, not as truncated"""
    outcome = unpyc_file_blob(Blob(magic_for(3531)))
    assert outcome.error_kind == "UnsupportedRevision"
    assert outcome.error_offset == 0


def test_failure_leaves_blob_untouched():
    """A truncated code object attaches nothing and reports where it stopped"""
    data = minimal_pyc(3413)[:-3]
    blob = Blob(data)
    outcome = unpyc_file_blob(blob)
    assert outcome.error_kind == "UnexpectedEnd"
    assert outcome.error_offset is not None and outcome.error_offset <= len(data)
    assert blob.chunks == []
    assert "FAILED: UnexpectedEnd" in str(outcome)


def test_truncated_instruction_offset():
    """Disassembly errors surface with their absolute offset"""
    data = pyc(3413, code_object(3413, code=w_bytes(bytes([144, 1]))))
    outcome = unpyc_file_blob(Blob(data))
    assert outcome.error_kind == "TruncatedInstruction"
    # header + tag + six u32 fields + 's' tag + length
    assert outcome.error_offset == 16 + 1 + 24 + 5


def test_instructions_get_absolute_chunks():
    """Instruction chunks sit inside the code bytes' payload"""
    body = code_object(3413, code=w_bytes(bytes([100, 0, 144, 1, 100, 0, 83, 0])),
                       consts=w_tuple([w_int(1)]))
    blob = Blob(pyc(3413, body))
    outcome = unpyc_file_blob(blob)
    assert outcome.ok, outcome

    code_chunk = outcome.chunk.children[1]
    listing, = children_of_kind(code_chunk, "instruction-list")
    payload = listing.start + 5
    assert [(c.start, c.end) for c in listing.children] == [
        (payload, payload + 2), (payload + 2, payload + 6), (payload + 6, payload + 8),
    ]
    assert listing.children[0].label == "LOAD_CONST 0 (1)"
    assert listing.children[1].label == "LOAD_CONST 256"
    assert blob.chunk_at(payload + 3) is listing.children[1]
    assert_nested(outcome.chunk)


def test_options_are_honored():
    """Instruction chunks and argument resolution can be switched off"""
    body = code_object(3413, code=w_bytes(bytes([100, 0, 83, 0])), consts=w_tuple([w_int(1)]))
    outcome = parse_pyc(Blob(pyc(3413, body)), options=ParseOptions(emit_instructions=False, resolve_arguments=False))
    assert outcome.ok
    listing, = children_of_kind(outcome.chunk.children[1], "instruction-list")
    assert listing.children == []
    assert outcome.code_object.instructions[0].argument == ""


def test_depth_limit_option():
    """max_depth limits marshal nesting inside the file"""
    consts = w_tuple([w_tuple([w_tuple([w_int(1)])])])
    data = pyc(3413, code_object(3413, consts=consts))
    assert unpyc_file_blob(Blob(data), options=ParseOptions(max_depth=3)).error_kind == "NestingTooDeep"
    assert unpyc_file_blob(Blob(data), options=ParseOptions(max_depth=10)).ok


def test_trailing_data_is_covered():
    """Bytes after the marshal stream become a trailing-data chunk"""
    data = minimal_pyc(3413) + b"\xaa" * 7
    outcome = unpyc_file_blob(Blob(data))
    assert outcome.ok
    assert outcome.chunk.end == len(data)
    trailing = outcome.chunk.children[-1]
    assert trailing.kind == "trailing-data"
    assert trailing.size == 7
    assert_nested(outcome.chunk)


def test_start_offset_inside_blob():
    """A .pyc embedded at an offset is annotated at that offset"""
    prefix = b"\x00" * 8
    blob = Blob(prefix + minimal_pyc(3394))
    outcome = unpyc_file_blob(blob, start=8)
    assert outcome.ok
    assert outcome.chunk.start == 8
    regions = blob.get_regions()
    assert regions[0].size == 8
    assert regions[1] is outcome.chunk


def test_root_object_need_not_be_code():
    """A file whose root object is a tuple still parses"""
    outcome = unpyc_file_blob(Blob(pyc(3413, w_tuple([w_int(1), w_str("x")]))))
    assert outcome.ok
    assert outcome.code_objects == []
    assert outcome.code_object is None
    assert outcome.chunk.children[1].kind == "marshal-container"
    assert [c.kind for c in outcome.chunk.children[1].children] == ["marshal-scalar", "marshal-scalar"]


def test_hash_based_header():
    """PEP 552 hash-based files carry a source hash instead of mtime and size"""
    data = pyc(3413, code_object(3413), flags=0x3, source_hash=0x1122334455667788)
    outcome = unpyc_file_blob(Blob(data))
    assert outcome.ok
    assert outcome.header.hash_based
    assert outcome.header.values["source_hash"] == 0x1122334455667788
    fields = outcome.chunk.children[0].children
    assert [f.label.split()[0] for f in fields] == ["magic", "flags", "source_hash"]
    assert "checked" in outcome.header.describe()


def test_legacy_header_fields():
    """Before 3.7 the header is magic, mtime and source size"""
    data = pyc(3379, code_object(3379), mtime=0, source_size=99)
    outcome = unpyc_file_blob(Blob(data))
    assert outcome.ok
    assert outcome.header.end == 12
    assert outcome.header.values == {"magic": 3379, "mtime": 0, "source_size": 99}
    assert "1970-01-01" in outcome.chunk.children[0].children[1].label


def test_nested_code_objects_emit_nested_chunks():
    """Code objects in the constant pool appear inside the pool's chunk"""
    inner = code_object(3413, name=w_str("inner"), code=w_bytes(bytes([83, 0])))
    data = pyc(3413, code_object(3413, consts=w_tuple([inner])))
    outcome = unpyc_file_blob(Blob(data))
    assert outcome.ok
    assert len(outcome.code_objects) == 2
    pool, = children_of_kind(outcome.chunk.children[1], "constant-pool")
    assert [c.kind for c in pool.children] == ["code-object"]
    inner_listing, = children_of_kind(pool.children[0], "instruction-list")
    assert [c.label for c in inner_listing.children] == ["RETURN_VALUE"]
    assert_nested(outcome.chunk)


def test_second_attach_overlaps():
    """The same range cannot be annotated twice"""
    blob = Blob(minimal_pyc(3413))
    assert unpyc_file_blob(blob).ok
    with pytest.raises(ValueError, match="Overlap detected"):
        unpyc_file_blob(blob)


def test_detection_hook():
    """PycParser advertises every magic and only claims matching blobs"""
    parser = PycParser()
    assert parser.name == "pyc3"
    assert magic_for(3413) in parser.magics
    blob = Blob(minimal_pyc(3425))
    assert parser.matches(blob)
    assert not parser.matches(Blob(b"\x00" * 16))
    assert find_parser(blob) is not None
    assert find_parser(Blob(b"PK\x03\x04")) is None
    assert parser.parse(blob).ok
    assert isinstance(blob.chunks[0], Chunk)


def test_real_compiled_file(tmp_path):
    """A file compiled by the running interpreter parses or is rejected by revision"""
    source = tmp_path / "sample.py"
    source.write_text(
        "import os\n"
        "X = [1, 2.5, 'three', b'four', None]\n"
        "def f(a, b=2, *args, c, **kw):\n"
        "    for i in range(a):\n"
        "        if i > b and i in X:\n"
        "            return os.path.join(str(i), 'x')\n"
        "    return {k: v for k, v in kw.items()}\n"
        "class C:\n"
        "    def m(self):\n"
        "        return lambda y: y + 1\n"
    )
    target = tmp_path / "sample.pyc"
    py_compile.compile(str(source), cfile=str(target), doraise=True)
    data = target.read_bytes()

    revision = lookup_magic(importlib.util.MAGIC_NUMBER)
    if revision is None:
        pytest.skip("interpreter magic is not registered")
    blob = Blob(data)
    outcome = unpyc_file_blob(blob)
    if not revision.supported:
        assert outcome.error_kind == "UnsupportedRevision"
        return
    assert outcome.ok, outcome
    assert outcome.chunk.end == len(data)
    assert {code.name for code in outcome.code_objects} >= {"<module>", "f", "C", "m", "<lambda>"}
    assert_nested(outcome.chunk)


def test_garbage_never_raises_format_errors():
    """Arbitrary bytes after a valid header produce a failed outcome, not an exception"""
    head = header(3413)
    for tail in (b"\xff" * 8, b"c" + b"\xff" * 40, b"(" + struct.pack('<I', 3) + b"r\x00\x00\x00\x00"):
        outcome = unpyc_file_blob(Blob(head + tail))
        assert not outcome.ok
        assert outcome.error_kind in {"UnknownTag", "UnexpectedEnd", "MalformedReference", "MalformedValue"}


def test_unhashable_set_members_do_not_crash():
    """Sets and dict keys holding lists still get labels and arguments"""
    bad_set = b"<" + struct.pack('<I', 1) + b"[" + struct.pack('<I', 1) + w_int(1)
    body = code_object(3413, code=w_bytes(bytes([100, 0, 83, 0])), consts=w_tuple([bad_set]))
    outcome = unpyc_file_blob(Blob(pyc(3413, body)))
    assert outcome.ok, outcome
    assert outcome.code_object.instructions[0].argument == "{[1]}"

    bad_dict = b"{" + b"[" + struct.pack('<I', 0) + w_int(2) + b"0"
    shared_set = b"\xbc" + struct.pack('<I', 1) + b"[" + struct.pack('<I', 1) + w_int(1)
    root = b"(" + struct.pack('<I', 3) + shared_set + b"r" + struct.pack('<I', 0) + bad_dict
    outcome = unpyc_file_blob(Blob(pyc(3413, root)))
    assert outcome.ok, outcome
    labels = [child.label for child in outcome.chunk.children[1].children]
    assert labels[1] == "ref #0 -> {[1]}"
    assert labels[2] == "dict (1 items)"
    assert_nested(outcome.chunk)


def test_many_references_to_a_large_tuple():
    """Reference labels stay short however large their target is"""
    count = 3000
    items = b"".join(w_int(i) for i in range(count))
    big = b"\xa8" + struct.pack('<I', count) + items
    refs = (b"r" + struct.pack('<I', 0)) * count
    root = b"(" + struct.pack('<I', 2) + big + b"(" + struct.pack('<I', count) + refs
    outcome = unpyc_file_blob(Blob(pyc(3413, root)))
    assert outcome.ok, outcome
    ref_chunks = outcome.chunk.children[1].children[1].children
    assert len(ref_chunks) == count
    assert all(len(chunk.label) <= 60 for chunk in ref_chunks)
    assert ref_chunks[0].label.startswith("ref #0 -> (0, 1, 2,")

# --- Compiled fixtures ---

@pytest.mark.parametrize("data", [PY38_FUNCTION_PYC, PY310_FUNCTION_PYC], ids=["3.8", "3.10"])
def test_compiled_function_module(data):
    """A module defining one function, with shared objects written as references"""
    blob = Blob(data)
    outcome = unpyc_file_blob(blob)
    assert outcome.ok, outcome
    assert outcome.chunk.end == len(data)
    assert_nested(outcome.chunk)

    module = outcome.code_object
    function, = module.nested_code_objects
    assert [code.name for code in outcome.code_objects] == ["f", "<module>"]
    assert module.names == ["f"]
    assert module.varnames == [] and module.freevars == [] and module.cellvars == []
    assert module.filename == function.filename == "x.py"
    assert function.varnames == ["a"]
    assert (function.argcount, function.nlocals, function.flags) == (1, 1, 0x43)

    assert [i.mnemonic for i in module.instructions] == [
        "LOAD_CONST", "LOAD_CONST", "MAKE_FUNCTION", "STORE_NAME", "LOAD_CONST", "RETURN_VALUE",
    ]
    assert [i.argument for i in module.instructions][1:5] == ["'f'", "", "f", "None"]
    assert module.instructions[0].argument.startswith("<code object f")
    assert [str(i) for i in function.instructions] == ["LOAD_FAST 0 (a)", "RETURN_VALUE"]
    assert function.instructions[0].line == 2
    assert module.instructions[0].line == 1

    kinds = [chunk.kind for _, chunk in outcome.chunk.walk()]
    assert kinds.count("code-object") == 2
    assert kinds.count("instruction") == 8
    assert "marshal-reference" in kinds
