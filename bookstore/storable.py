"""
Codecs turn values into bytes for a Cell or a BTreeMap.

A codec is any object with `to_bytes(value)` and `from_bytes(data)`.
Bounded codecs also declare `MAX_SIZE` (the largest encoding they can
produce) and `IS_FIXED_SIZE`, which a BTreeMap needs to size its nodes.
"""
import struct

from bookstore.config import PAGE_SIZE
from bookstore.errors import CorruptedRecordError, GrowFailedError


class U64:

    MAX_SIZE = 8
    IS_FIXED_SIZE = True

    _struct = struct.Struct(">Q")  # big endian keeps byte order == numeric order

    @classmethod
    def to_bytes(cls, value):
        try:
            return cls._struct.pack(value)
        except struct.error as e:
            raise ValueError(f"{value!r} is not a u64") from e

    @classmethod
    def from_bytes(cls, data):
        if len(data) != cls.MAX_SIZE:
            raise CorruptedRecordError(f"Expected 8 bytes for a u64, got {len(data)}")
        return cls._struct.unpack(data)[0]


def ensure_capacity(memory, size_in_bytes):
    """Grows `memory` so that it holds at least `size_in_bytes` bytes."""
    pages = -(-size_in_bytes // PAGE_SIZE)
    missing = pages - memory.size()
    if missing > 0 and memory.grow(missing) == -1:
        raise GrowFailedError(f"Cannot grow memory to {pages} pages")
