import struct

from bookstore.errors import CorruptedMemoryError
from bookstore.storable import ensure_capacity

MAGIC = b"SCL"
LAYOUT_VERSION = 1

# magic, layout version, value length; the value starts right after
HEADER_STRUCT = struct.Struct("<3sBI")
VALUE_OFFSET = HEADER_STRUCT.size


class Cell:
    """
    A single value kept in its own region of memory.
    """

    def __init__(self, memory, codec, value):
        self.memory = memory
        self.codec = codec
        self.value = value

    @classmethod
    def init(cls, memory, codec, default):
        """
        Load the value stored in `memory`, or store `default` if the
        memory has never been used.
        """
        if memory.size() == 0:
            cell = cls(memory, codec, default)
            cell._write(codec.to_bytes(default))
            return cell

        magic, version, length = HEADER_STRUCT.unpack(memory.read(0, HEADER_STRUCT.size))
        if magic != MAGIC:
            raise CorruptedMemoryError(f"Bad cell magic {magic!r}")
        if version != LAYOUT_VERSION:
            raise CorruptedMemoryError(f"Unsupported cell layout {version}")
        value = codec.from_bytes(memory.read(VALUE_OFFSET, length))
        return cls(memory, codec, value)

    def get(self):
        return self.value

    def set(self, value):
        """
        Store `value` and return the value it replaces.
        Raises GrowFailedError, leaving the old value in place, if the
        memory cannot hold the new one.
        """
        self._write(self.codec.to_bytes(value))
        old_value = self.value
        self.value = value
        return old_value

    def _write(self, data):
        ensure_capacity(self.memory, VALUE_OFFSET + len(data))
        self.memory.write(VALUE_OFFSET, data)
        self.memory.write(0, HEADER_STRUCT.pack(MAGIC, LAYOUT_VERSION, len(data)))
