# chunk_emitter.py
"""
Chunk Emitter: renders a parsed .pyc into a tree of addressed Chunks.

All byte ranges come from offsets recorded while reading, so the emitter never
looks at the blob. Children are always read strictly between their parent's
start and end, which makes the nesting rules hold by construction;
Chunk.validate() is still run before the tree is attached.

Building the tree has no side effects. Attaching it is done once, by the
caller, through Blob.insert_chunk_tree().
"""

from typing import TYPE_CHECKING, List, Optional

from pycurator.binary_curator import Chunk

from .code_object import LINE_TABLE_FIELDS, NAME_LIST_FIELDS, CodeObject, FieldSpan

if TYPE_CHECKING:
    from .marshal_parser import MarshalNode
    from .pyc_parser import PycHeader

# --- Chunk kinds ---
KIND_FILE = "pyc-file"
KIND_HEADER = "header"
KIND_FIELD = "field"
KIND_SCALAR = "marshal-scalar"
KIND_CONTAINER = "marshal-container"
KIND_REFERENCE = "marshal-reference"
KIND_CODE = "code-object"
KIND_METADATA = "code-metadata"
KIND_INSTRUCTIONS = "instruction-list"
KIND_INSTRUCTION = "instruction"
KIND_CONSTANTS = "constant-pool"
KIND_NAMES = "name-table"
KIND_LINE_TABLE = "line-table"
KIND_TRAILING = "trailing-data"


def _field_label(span: FieldSpan) -> str:
    if span.name == "flags":
        return f"{span.name} = 0x{span.value:x}"
    return f"{span.name} = {span.value}"


class ChunkEmitter:
    """Builds Chunk trees for headers, marshal nodes and code objects."""

    def __init__(self, emit_instructions: bool = True):
        self.emit_instructions = emit_instructions

    def emit_file(self, header: "PycHeader", root: "MarshalNode", end: int) -> Chunk:
        """Root chunk from the header start to `end`, covering any trailing bytes."""
        chunk = Chunk(header.start, end, KIND_FILE, f"{header.revision.label} bytecode")
        chunk.children.append(self.emit_header(header))
        chunk.children.append(self.emit_node(root))
        if root.end < end:
            chunk.children.append(Chunk(root.end, end, KIND_TRAILING,
                                        f"{end - root.end} bytes after the marshal stream"))
        return chunk

    def emit_header(self, header: "PycHeader") -> Chunk:
        chunk = Chunk(header.start, header.end, KIND_HEADER, header.describe())
        for span in header.fields:
            chunk.children.append(Chunk(span.start, span.end, KIND_FIELD, header.describe_field(span)))
        return chunk

    def emit_node(self, node: "MarshalNode", kind: Optional[str] = None, prefix: str = "") -> Chunk:
        """One chunk for a marshal node, with children for everything inside it."""
        if node.kind == "code":
            return self.emit_code(node, prefix)

        label = prefix + str(node)
        if node.slot is not None:
            label += f" [slot {node.slot}]"
        if node.interned:
            label += " interned"

        if node.kind == "ref":
            return Chunk(node.start, node.end, kind or KIND_REFERENCE, label)
        if not node.is_container:
            return Chunk(node.start, node.end, kind or KIND_SCALAR, label)

        chunk = Chunk(node.start, node.end, kind or KIND_CONTAINER, label)
        for child in node.items():
            chunk.children.append(self.emit_node(child))
        if node.kind == "dict":
            chunk.children.append(Chunk(node.end - 1, node.end, KIND_SCALAR, "NULL (end of dict)"))
        return chunk

    def emit_code(self, node: "MarshalNode", prefix: str = "") -> Chunk:
        """
        A code-object chunk. Children, in byte order: the metadata block (tag
        and leading integer fields), the instruction list, the constant pool,
        the name tables, filename and name, trailing integer fields and the
        line table.
        """
        code: CodeObject = node.value
        label = prefix + f"code {code.name} ({code.filename}:{code.firstlineno})"
        if node.slot is not None:
            label += f" [slot {node.slot}]"
        chunk = Chunk(node.start, node.end, KIND_CODE, label)

        spans = code.field_spans
        leading: List[FieldSpan] = []
        for span in spans:
            if span.is_object:
                break
            leading.append(span)
        meta_end = leading[-1].end if leading else node.start + 1
        meta = Chunk(node.start, meta_end, KIND_METADATA,
                     f"args={code.argcount} locals={code.nlocals} stack={code.stacksize} flags=0x{code.flags:x}")
        meta.children.append(Chunk(node.start, node.start + 1, KIND_FIELD, "tag 'c'"))
        for span in leading:
            meta.children.append(Chunk(span.start, span.end, KIND_FIELD, _field_label(span)))
        chunk.children.append(meta)

        for span in spans[len(leading):]:
            if not span.is_object:
                chunk.children.append(Chunk(span.start, span.end, KIND_FIELD, _field_label(span)))
            elif span.name == "code":
                chunk.children.append(self._emit_instructions(code, span.value))
            elif span.name == "consts":
                chunk.children.append(self.emit_node(span.value, KIND_CONSTANTS, "consts: "))
            elif span.name in NAME_LIST_FIELDS:
                chunk.children.append(self.emit_node(span.value, KIND_NAMES, f"{span.name}: "))
            elif span.name in LINE_TABLE_FIELDS:
                chunk.children.append(self.emit_node(span.value, KIND_LINE_TABLE, f"{span.name}: "))
            else:
                chunk.children.append(self.emit_node(span.value, prefix=f"{span.name}: "))
        return chunk

    def _emit_instructions(self, code: CodeObject, node: "MarshalNode") -> Chunk:
        count = len(code.instructions)
        if node.kind == "ref":
            label = f"{count} instructions, bytes shared with slot {node.ref_target}"
            return Chunk(node.start, node.end, KIND_INSTRUCTIONS, label)

        chunk = Chunk(node.start, node.end, KIND_INSTRUCTIONS, f"{count} instructions ({len(node.value)} bytes)")
        if self.emit_instructions:
            base = node.payload_start
            for instruction in code.instructions:
                chunk.children.append(Chunk(base + instruction.offset, base + instruction.end,
                                            KIND_INSTRUCTION, str(instruction)))
        return chunk
