"""
Error kinds raised while parsing a .pyc blob.

Every failure carries the kind name and the absolute blob offset at which it
was detected. Malformed input is an expected outcome when arbitrary files are
probed against the format, so the parser entry point turns these into
ordinary result values instead of letting them escape.
"""

from typing import Optional


class PycFormatError(ValueError):
    """Base class for all format-level parse failures."""
    kind = "PycFormatError"

    def __init__(self, message: str, offset: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.offset = offset

    def __str__(self):
        if self.offset is None:
            return f"{self.kind}: {self.message}"
        return f"{self.kind} at 0x{self.offset:x}: {self.message}"


class UnexpectedEnd(PycFormatError):
    """A read needed more bytes than remain before the cursor bound."""
    kind = "UnexpectedEnd"


class UnknownTag(PycFormatError):
    """A marshal type byte is not valid for the format revision."""
    kind = "UnknownTag"


class MalformedReference(PycFormatError):
    """A back-reference points outside the intern table or at an unfilled slot."""
    kind = "MalformedReference"


class TruncatedInstruction(PycFormatError):
    """The instruction stream ends mid-operand or on a dangling EXTENDED_ARG."""
    kind = "TruncatedInstruction"


class UnsupportedRevision(PycFormatError):
    """The magic is known but there is no opcode table or code layout for it."""
    kind = "UnsupportedRevision"


class MalformedValue(PycFormatError):
    """A payload cannot be interpreted, or a code object field has the wrong type."""
    kind = "MalformedValue"


class NestingTooDeep(PycFormatError):
    """Marshal containers are nested deeper than the configured limit."""
    kind = "NestingTooDeep"
