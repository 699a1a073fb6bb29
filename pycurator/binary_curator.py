"""
A small library for annotating binary blobs with nested, addressed chunks.

The core idea is to "curate" a byte array by attaching known structures to it.
A parser reads the blob through a bounds-checked ByteCursor, builds a tree of
Chunk objects from the offsets it recorded, and hands the finished tree to
Blob.insert_chunk_tree(). The get_regions() method returns both the attached
chunks and all the unclaimed raw data in between, ensuring no data is ever
hidden.

CHUNK TREE RULES:
=================

1. A chunk covers [start, end) of the blob, end exclusive.
2. A child lies fully inside its parent.
3. Siblings are sorted by start offset and never overlap.
4. A tree is attached once, complete. Nothing is attached for a failed parse.

Chunk.validate() checks rules 1-3 for a whole tree; insert_chunk_tree() runs
it and additionally refuses a tree that overlaps chunks already attached.
"""

import struct
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

from .errors import UnexpectedEnd

# --- Base Region Class ---
@dataclass
class Region:
    """Base class for all regions in a binary block."""
    start: int
    size: int
    raw_data: bytes

    @property
    def end(self) -> int:
        return self.start + self.size

# --- Data Structure for an Unclaimed Region ---
@dataclass
class UnclaimedRegion(Region):
    """Stores information about a block of data that no chunk covers."""
    pass

# --- Data Structure for an Attached Chunk ---
@dataclass
class Chunk:
    """An addressed, labeled byte range with ordered children."""
    start: int
    end: int
    kind: str
    label: str = ""
    children: List["Chunk"] = field(default_factory=list)

    @property
    def size(self) -> int:
        return self.end - self.start

    def contains(self, offset: int) -> bool:
        return self.start <= offset < self.end

    def walk(self, depth: int = 0) -> Iterator[Tuple[int, "Chunk"]]:
        """Yields (depth, chunk) for this chunk and all descendants, depth-first."""
        yield depth, self
        for child in self.children:
            yield from child.walk(depth + 1)

    def find(self, offset: int) -> Optional["Chunk"]:
        """Returns the deepest chunk in this tree that contains the offset."""
        if not self.contains(offset):
            return None
        for child in self.children:
            if child.start > offset:
                break
            found = child.find(offset)
            if found is not None:
                return found
        return self

    def validate(self):
        """
        Checks the nesting rules for the whole tree.

        Raises:
            ValueError: if any range is inverted, escapes its parent, or
                overlaps a sibling.
        """
        if self.start > self.end:
            raise ValueError(f"Chunk '{self.kind}' has inverted range {self.start}-{self.end}")
        last_end = self.start
        for child in self.children:
            if child.start < self.start or child.end > self.end:
                raise ValueError(
                    f"Chunk '{child.kind}' ({child.start}-{child.end}) escapes "
                    f"parent '{self.kind}' ({self.start}-{self.end})"
                )
            if child.start < last_end:
                raise ValueError(
                    f"Overlap detected: '{child.kind}' at {child.start} starts before "
                    f"previous sibling ends at {last_end}"
                )
            child.validate()
            last_end = child.end

    def __str__(self):
        return f"[{self.kind}] 0x{self.start:x}-0x{self.end:x} {self.label}".rstrip()

# --- The Blob (storage side) ---
class Blob:
    """
    Owns the raw bytes of a file and the chunk trees attached to it.

    Parsers only read through read() and only write through
    insert_chunk_tree(), so any storage that offers the same two operations
    can stand in for this class.
    """
    def __init__(self, data: bytes):
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError("Input data must be bytes-like.")
        self.data = bytes(data)
        self._view = memoryview(self.data)
        self.chunks: List[Chunk] = []

    @property
    def size(self) -> int:
        return len(self.data)

    def read(self, offset: int, size: int) -> memoryview:
        """Returns a zero-copy view of up to `size` bytes at `offset`."""
        return self._view[offset:offset + size]

    def insert_chunk_tree(self, root: Chunk):
        """
        Attaches a fully built chunk tree.

        Raises:
            ValueError: if the tree is malformed, does not fit in the blob, or
                overlaps an already attached tree.
        """
        if root.start < 0 or root.end > self.size:
            raise ValueError(f"Chunk tree {root.start}-{root.end} does not fit in blob of {self.size} bytes")
        root.validate()
        for existing in self.chunks:
            if root.start < existing.end and existing.start < root.end:
                raise ValueError(
                    f"Overlap detected: new tree ({root.start}-{root.end}) overlaps "
                    f"'{existing.kind}' ({existing.start}-{existing.end})"
                )
        self.chunks.append(root)
        self.chunks.sort(key=lambda c: c.start)

    def chunk_at(self, offset: int) -> Optional[Chunk]:
        """Returns the deepest attached chunk that covers `offset`, if any."""
        for root in self.chunks:
            found = root.find(offset)
            if found is not None:
                return found
        return None

    def get_regions(self) -> List[object]:
        """
        Returns the attached top-level chunks plus UnclaimedRegion objects for
        every gap, covering every byte from start to finish.
        """
        if not self.chunks:
            return [UnclaimedRegion(start=0, size=self.size, raw_data=self.data)]

        result: List[object] = []
        last_end = 0

        for chunk in self.chunks:
            if chunk.start > last_end:
                result.append(UnclaimedRegion(
                    start=last_end,
                    size=chunk.start - last_end,
                    raw_data=self.data[last_end:chunk.start]
                ))
            result.append(chunk)
            last_end = chunk.end

        if last_end < self.size:
            result.append(UnclaimedRegion(
                start=last_end,
                size=self.size - last_end,
                raw_data=self.data[last_end:]
            ))

        return result

# --- The Byte Cursor ---
class ByteCursor:
    """
    Bounds-checked forward reader over a Blob with absolute offsets.

    All multi-byte integers are little-endian. A read that would cross the
    bound raises UnexpectedEnd and leaves the cursor where it was.
    """
    def __init__(self, blob: Blob, offset: int = 0, limit: Optional[int] = None):
        self.blob = blob
        self.limit = blob.size if limit is None else min(limit, blob.size)
        if not (0 <= offset <= self.limit):
            raise ValueError(f"Start offset {offset} is out of bounds (Size: {self.limit})")
        self._offset = offset

    @property
    def offset(self) -> int:
        return self._offset

    def peek_remaining(self) -> int:
        return self.limit - self._offset

    def seek(self, offset: int):
        """Moves the cursor to an absolute offset."""
        if not (0 <= offset <= self.limit):
            raise UnexpectedEnd(f"Seek offset {offset} is out of bounds (Size: {self.limit})", self._offset)
        self._offset = offset

    def skip(self, num_bytes: int):
        """Moves the cursor forward by a relative number of bytes."""
        self.seek(self._offset + num_bytes)

    def require(self, size: int):
        if size < 0 or size > self.peek_remaining():
            raise UnexpectedEnd(
                f"Cannot read {size} bytes from offset {self._offset}; "
                f"only {self.peek_remaining()} remain.",
                self._offset
            )

    def read_bytes(self, size: int) -> memoryview:
        self.require(size)
        view = self.blob.read(self._offset, size)
        self._offset += size
        return view

    def _unpack(self, fmt: str, size: int):
        return struct.unpack(fmt, self.read_bytes(size))[0]

    def read_u8(self) -> int:
        return self._unpack('<B', 1)

    def read_u16(self) -> int:
        return self._unpack('<H', 2)

    def read_u32(self) -> int:
        return self._unpack('<I', 4)

    def read_i32(self) -> int:
        return self._unpack('<i', 4)

    def read_u64(self) -> int:
        return self._unpack('<Q', 8)

    def read_f64(self) -> float:
        return self._unpack('<d', 8)

    def read_cstring_prefixed(self, len_width: int = 4) -> memoryview:
        """Reads a little-endian length of `len_width` bytes, then that many bytes."""
        start = self._offset
        self.require(len_width)
        length = int.from_bytes(self.blob.read(self._offset, len_width), 'little')
        if length > self.peek_remaining() - len_width:
            raise UnexpectedEnd(
                f"Length prefix {length} at offset {start} exceeds the "
                f"{self.peek_remaining() - len_width} bytes remaining.",
                start
            )
        self._offset += len_width
        return self.read_bytes(length)
