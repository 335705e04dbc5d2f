class AnalysisError(Exception):
    """Base class for every failure that aborts an analysis run"""


class InvocationError(AnalysisError):
    """Wrong number of command line arguments"""


class OpenError(AnalysisError):
    """Image file missing or unreadable"""


class AllocationError(AnalysisError):
    """Out of memory while decoding"""


class TruncatedRead(AnalysisError):
    """Fewer bytes available than a decode step asked for"""

    def __init__(self, what: str, offset: int, expected: int, got: int):
        self.what = what
        self.offset = offset
        self.expected = expected
        self.got = got
        super().__init__(
            f"Short read of {what} at offset {offset}: expected {expected} bytes, got {got}"
        )


class SeekError(AnalysisError):
    """Requested offset is outside the image"""


class CorruptStructure(AnalysisError):
    """A decoded field violates a structural invariant"""
