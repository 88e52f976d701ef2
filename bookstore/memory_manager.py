"""
Splits one persistent Memory into up to MAX_NUM_MEMORIES independently
growable regions.

Layout of the underlying memory:

    page 0      header
                  0  magic "MGR"
                  3  layout version
                  4  number of allocated buckets (u16)
                  6  bucket size in pages (u16)
                  8  reserved (32 bytes)
                 40  size in pages of every region (255 x u64)
               2080  bucket table: owning region of each bucket (32768 x u8)
    page 1..    buckets, BUCKET_SIZE_IN_PAGES pages each

A region is the ordered list of buckets it owns. Growing a region claims
new buckets at the end of the memory, so the buckets of every other
region stay where they are.
"""
import logging
import struct

from bookstore.config import (
    BUCKET_SIZE_IN_PAGES,
    MAX_NUM_BUCKETS,
    MAX_NUM_MEMORIES,
    PAGE_SIZE,
)
from bookstore.errors import CorruptedMemoryError, GrowFailedError, OutOfBoundsError

logger = logging.getLogger(__name__)

MAGIC = b"MGR"
LAYOUT_VERSION = 1

HEADER_STRUCT = struct.Struct("<3sBHH32x")
SIZES_STRUCT = struct.Struct(f"<{MAX_NUM_MEMORIES}Q")
SIZES_OFFSET = HEADER_STRUCT.size
BUCKET_TABLE_OFFSET = SIZES_OFFSET + SIZES_STRUCT.size
BUCKETS_OFFSET_IN_PAGES = 1
UNALLOCATED_BUCKET = 0xFF


class MemoryManager:

    def __init__(self, memory, bucket_size_in_pages):
        self.memory = memory
        self.bucket_size_in_pages = bucket_size_in_pages
        self.num_allocated_buckets = 0
        self.memory_sizes = [0] * MAX_NUM_MEMORIES
        # memory_id -> bucket indexes in region order
        self.buckets = [[] for _ in range(MAX_NUM_MEMORIES)]
        self._handles = {}

    @classmethod
    def init(cls, memory, bucket_size_in_pages=BUCKET_SIZE_IN_PAGES):
        """
        Create a manager over `memory`. An empty memory gets a fresh header;
        a populated one has its region table recovered, never reset.
        """
        if memory.size() == 0:
            return cls._create(memory, bucket_size_in_pages)
        return cls._load(memory)

    @classmethod
    def _create(cls, memory, bucket_size_in_pages):
        if not 0 < bucket_size_in_pages <= 0xFFFF:
            raise ValueError(f"Invalid bucket size {bucket_size_in_pages}")
        if memory.grow(BUCKETS_OFFSET_IN_PAGES) == -1:
            raise GrowFailedError("Cannot allocate the memory manager header")
        manager = cls(memory, bucket_size_in_pages)
        manager._save_header()
        memory.write(BUCKET_TABLE_OFFSET, bytes([UNALLOCATED_BUCKET]) * MAX_NUM_BUCKETS)
        logger.info("Initialized memory manager (bucket size %d pages)", bucket_size_in_pages)
        return manager

    @classmethod
    def _load(cls, memory):
        header = memory.read(0, HEADER_STRUCT.size)
        magic, version, num_buckets, bucket_size = HEADER_STRUCT.unpack(header)
        if magic != MAGIC:
            raise CorruptedMemoryError(f"Bad memory manager magic {magic!r}")
        if version != LAYOUT_VERSION:
            raise CorruptedMemoryError(f"Unsupported memory manager layout {version}")
        if bucket_size == 0 or num_buckets > MAX_NUM_BUCKETS:
            raise CorruptedMemoryError("Unreadable memory manager header")

        manager = cls(memory, bucket_size)
        manager.num_allocated_buckets = num_buckets
        manager.memory_sizes = list(
            SIZES_STRUCT.unpack(memory.read(SIZES_OFFSET, SIZES_STRUCT.size))
        )
        table = memory.read(BUCKET_TABLE_OFFSET, num_buckets)
        for bucket, owner in enumerate(table):
            if owner >= MAX_NUM_MEMORIES:
                raise CorruptedMemoryError(f"Allocated bucket {bucket} has no owner")
            manager.buckets[owner].append(bucket)

        for memory_id, size in enumerate(manager.memory_sizes):
            if size > len(manager.buckets[memory_id]) * bucket_size:
                raise CorruptedMemoryError(f"Region {memory_id} is larger than its buckets")
        if memory.size() < BUCKETS_OFFSET_IN_PAGES + num_buckets * bucket_size:
            raise CorruptedMemoryError("Memory is shorter than its allocated buckets")

        logger.info("Recovered memory manager with %d allocated buckets", num_buckets)
        return manager

    def get(self, memory_id):
        """Returns the region handle for `memory_id`, the same one on every call."""
        if not 0 <= memory_id < MAX_NUM_MEMORIES:
            raise ValueError(f"Memory id {memory_id} out of range")
        handle = self._handles.get(memory_id)
        if handle is None:
            handle = VirtualMemory(self, memory_id)
            self._handles[memory_id] = handle
        return handle

    def grow(self, memory_id, pages):
        old_size = self.memory_sizes[memory_id]
        new_size = old_size + pages
        if pages < 0:
            return -1
        buckets = self.buckets[memory_id]
        required = -(-new_size // self.bucket_size_in_pages) - len(buckets)
        if required > 0:
            total = self.num_allocated_buckets + required
            if total > MAX_NUM_BUCKETS:
                return -1
            needed_pages = BUCKETS_OFFSET_IN_PAGES + total * self.bucket_size_in_pages
            missing = needed_pages - self.memory.size()
            if missing > 0 and self.memory.grow(missing) == -1:
                return -1
            for _ in range(required):
                bucket = self.num_allocated_buckets
                self.memory.write(BUCKET_TABLE_OFFSET + bucket, bytes([memory_id]))
                buckets.append(bucket)
                self.num_allocated_buckets += 1
            logger.debug("Region %d now owns %d buckets", memory_id, len(buckets))

        self.memory_sizes[memory_id] = new_size
        self._save_header()
        return old_size

    def read(self, memory_id, offset, length):
        chunks = []
        for address, n in self._translate(memory_id, offset, length):
            chunks.append(self.memory.read(address, n))
        return b"".join(chunks)

    def write(self, memory_id, offset, data):
        pos = 0
        for address, n in self._translate(memory_id, offset, len(data)):
            self.memory.write(address, data[pos:pos + n])
            pos += n

    def _translate(self, memory_id, offset, length):
        """Yields (address, length) pieces of the underlying memory."""
        size_in_bytes = self.memory_sizes[memory_id] * PAGE_SIZE
        if offset < 0 or offset + length > size_in_bytes:
            raise OutOfBoundsError(
                f"Access of {length} bytes at offset {offset} in region {memory_id} "
                f"of {size_in_bytes} bytes"
            )
        bucket_bytes = self.bucket_size_in_pages * PAGE_SIZE
        buckets = self.buckets[memory_id]
        end = offset + length
        while offset < end:
            index, inner = divmod(offset, bucket_bytes)
            n = min(bucket_bytes - inner, end - offset)
            address = (BUCKETS_OFFSET_IN_PAGES * PAGE_SIZE
                       + buckets[index] * bucket_bytes + inner)
            yield address, n
            offset += n

    def _save_header(self):
        header = HEADER_STRUCT.pack(
            MAGIC, LAYOUT_VERSION, self.num_allocated_buckets, self.bucket_size_in_pages
        )
        self.memory.write(0, header + SIZES_STRUCT.pack(*self.memory_sizes))


class VirtualMemory:
    """
    Handle to one region. Offsets are relative to the region and
    stay valid while any other region grows.
    """

    def __init__(self, manager, memory_id):
        self.manager = manager
        self.memory_id = memory_id

    def size(self):
        return self.manager.memory_sizes[self.memory_id]

    def grow(self, pages):
        return self.manager.grow(self.memory_id, pages)

    def read(self, offset, length):
        return self.manager.read(self.memory_id, offset, length)

    def write(self, offset, data):
        self.manager.write(self.memory_id, offset, data)
