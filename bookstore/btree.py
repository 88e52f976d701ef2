"""
A B-tree map stored in a region of memory.

Layout of the region:

      0  map header     magic "BTR", version, max key size, max value size,
                        root address, length
     52  allocator      magic "BTA", version, chunk allocation size,
                        allocated chunk count, free list head
    100  chunks         one node each, preceded by a 16 byte chunk header

Every node page has room for CAPACITY entries, each slot padded to the
bounds declared by the key and value codecs, so a node never outgrows
its chunk. Address 0 is never a chunk and stands for "no node".
"""
import bisect
import struct

from bookstore.config import BTREE_B
from bookstore.errors import (
    CorruptedMemoryError,
    IncompatibleLayoutError,
    RecordTooLargeError,
)
from bookstore.storable import ensure_capacity

NULL = 0
B = BTREE_B
CAPACITY = 2 * B - 1

MAGIC = b"BTR"
LAYOUT_VERSION = 1
HEADER_STRUCT = struct.Struct("<3sBIIQQ24x")

ALLOCATOR_MAGIC = b"BTA"
ALLOCATOR_OFFSET = HEADER_STRUCT.size
ALLOCATOR_STRUCT = struct.Struct("<3sB4xQQQ16x")

CHUNK_MAGIC = b"CHK"
CHUNK_STRUCT = struct.Struct("<3sBB3xQ")

NODE_MAGIC = b"BTN"
NODE_STRUCT = struct.Struct("<3sBBH")
LENGTH_STRUCT = struct.Struct("<I")
CHILDREN_STRUCT = struct.Struct(f"<{CAPACITY + 1}Q")

LEAF = 0
INTERNAL = 1


class Allocator:
    """
    Hands out fixed size chunks from a region, reusing freed chunks first.
    """

    def __init__(self, memory, address, allocation_size,
                 num_allocated_chunks=0, free_list_head=NULL):
        self.memory = memory
        self.address = address
        self.allocation_size = allocation_size
        self.num_allocated_chunks = num_allocated_chunks
        self.free_list_head = free_list_head

    @classmethod
    def new(cls, memory, address, allocation_size):
        allocator = cls(memory, address, allocation_size)
        allocator.save()
        return allocator

    @classmethod
    def load(cls, memory, address):
        magic, version, allocation_size, num_chunks, free_list_head = ALLOCATOR_STRUCT.unpack(
            memory.read(address, ALLOCATOR_STRUCT.size)
        )
        if magic != ALLOCATOR_MAGIC or version != LAYOUT_VERSION:
            raise CorruptedMemoryError("Bad allocator header")
        return cls(memory, address, allocation_size, num_chunks, free_list_head)

    @property
    def chunk_size(self):
        return CHUNK_STRUCT.size + self.allocation_size

    def allocate(self):
        """Returns the address of a chunk's usable space."""
        if self.free_list_head != NULL:
            chunk = self.free_list_head
            magic, _, allocated, next_free = CHUNK_STRUCT.unpack(
                self.memory.read(chunk, CHUNK_STRUCT.size)
            )
            if magic != CHUNK_MAGIC or allocated:
                raise CorruptedMemoryError(f"Free list points at a bad chunk {chunk}")
            self.free_list_head = next_free
        else:
            chunk = (self.address + ALLOCATOR_STRUCT.size
                     + self.num_allocated_chunks * self.chunk_size)
            ensure_capacity(self.memory, chunk + self.chunk_size)
            self.num_allocated_chunks += 1
        self.memory.write(chunk, CHUNK_STRUCT.pack(CHUNK_MAGIC, LAYOUT_VERSION, 1, NULL))
        self.save()
        return chunk + CHUNK_STRUCT.size

    def reserve(self, count):
        """
        Make room for `count` more chunks up front, so the allocations
        that follow cannot fail. Raises GrowFailedError otherwise.
        """
        free = 0
        chunk = self.free_list_head
        while chunk != NULL and free < count:
            free += 1
            chunk = CHUNK_STRUCT.unpack(self.memory.read(chunk, CHUNK_STRUCT.size))[3]
        fresh = count - free
        if fresh > 0:
            ensure_capacity(self.memory, self.address + ALLOCATOR_STRUCT.size
                            + (self.num_allocated_chunks + fresh) * self.chunk_size)

    def deallocate(self, address):
        chunk = address - CHUNK_STRUCT.size
        magic, _, allocated, _ = CHUNK_STRUCT.unpack(self.memory.read(chunk, CHUNK_STRUCT.size))
        if magic != CHUNK_MAGIC or not allocated:
            raise CorruptedMemoryError(f"Cannot free chunk {chunk}")
        self.memory.write(
            chunk, CHUNK_STRUCT.pack(CHUNK_MAGIC, LAYOUT_VERSION, 0, self.free_list_head)
        )
        self.free_list_head = chunk
        self.save()

    def save(self):
        self.memory.write(self.address, ALLOCATOR_STRUCT.pack(
            ALLOCATOR_MAGIC, LAYOUT_VERSION, self.allocation_size,
            self.num_allocated_chunks, self.free_list_head,
        ))


class Node:

    def __init__(self, address, node_type, keys=None, values=None, children=None):
        self.address = address
        self.node_type = node_type
        self.keys = keys if keys is not None else []
        # values are kept encoded, they are only decoded when handed out
        self.values = values if values is not None else []
        self.children = children if children is not None else []

    def is_leaf(self):
        return self.node_type == LEAF

    def is_full(self):
        return len(self.keys) >= CAPACITY

    def search(self, key):
        """Returns (index, found) for `key` in this node."""
        idx = bisect.bisect_left(self.keys, key)
        return idx, idx < len(self.keys) and self.keys[idx] == key


class BTreeMap:
    """
    Ordered map from keys to values, persisted in `memory`.
    Both codecs must be bounded (declare MAX_SIZE).
    """

    def __init__(self, memory, key_codec, value_codec, allocator, root_addr=NULL, length=0):
        self.memory = memory
        self.key_codec = key_codec
        self.value_codec = value_codec
        self.max_key_size = key_codec.MAX_SIZE
        self.max_value_size = value_codec.MAX_SIZE
        self.allocator = allocator
        self.root_addr = root_addr
        self.length = length
        self.slot_size = 2 * LENGTH_STRUCT.size + self.max_key_size + self.max_value_size

    @classmethod
    def init(cls, memory, key_codec, value_codec):
        """
        Load the map stored in `memory`, or create an empty one if
        the memory has never been used.
        """
        if memory.size() == 0:
            return cls.new(memory, key_codec, value_codec)
        return cls.load(memory, key_codec, value_codec)

    @classmethod
    def new(cls, memory, key_codec, value_codec):
        ensure_capacity(memory, ALLOCATOR_OFFSET + ALLOCATOR_STRUCT.size)
        allocator = Allocator.new(memory, ALLOCATOR_OFFSET, node_size(key_codec, value_codec))
        btree = cls(memory, key_codec, value_codec, allocator)
        btree._save_header()
        return btree

    @classmethod
    def load(cls, memory, key_codec, value_codec):
        magic, version, max_key_size, max_value_size, root_addr, length = HEADER_STRUCT.unpack(
            memory.read(0, HEADER_STRUCT.size)
        )
        if magic != MAGIC:
            raise CorruptedMemoryError(f"Bad btree magic {magic!r}")
        if version != LAYOUT_VERSION:
            raise CorruptedMemoryError(f"Unsupported btree layout {version}")
        if (max_key_size, max_value_size) != (key_codec.MAX_SIZE, value_codec.MAX_SIZE):
            raise IncompatibleLayoutError(
                f"Map was created with bounds ({max_key_size}, {max_value_size}), "
                f"codecs declare ({key_codec.MAX_SIZE}, {value_codec.MAX_SIZE})"
            )
        allocator = Allocator.load(memory, ALLOCATOR_OFFSET)
        return cls(memory, key_codec, value_codec, allocator, root_addr, length)

    def __len__(self):
        return self.length

    def __contains__(self, key):
        return self.contains_key(key)

    def is_empty(self):
        return self.length == 0

    def contains_key(self, key):
        return self._find(key) is not None

    def get(self, key):
        found = self._find(key)
        if found is None:
            return None
        node, idx = found
        return self.value_codec.from_bytes(node.values[idx])

    def insert(self, key, value):
        """
        Insert or replace the value under `key`.
        Returns the previous value, or None.
        """
        self._encode(self.key_codec, key, self.max_key_size)
        value_bytes = self._encode(self.value_codec, value, self.max_value_size)
        # Nothing below may fail once the map starts changing
        self.allocator.reserve(self._nodes_needed(key))

        if self.root_addr == NULL:
            root = self._allocate_node(LEAF)
            self.root_addr = root.address
        else:
            root = self._load(self.root_addr)
            if root.is_full():
                idx, found = root.search(key)
                if found:
                    return self._decode(self._swap_value(root, idx, value_bytes))
                new_root = self._allocate_node(INTERNAL)
                new_root.children.append(root.address)
                self._split_child(new_root, 0, root)
                self.root_addr = new_root.address
                root = new_root

        old = self._insert_nonfull(root, key, value_bytes)
        if old is None:
            self.length += 1
        self._save_header()
        return self._decode(old)

    def remove(self, key):
        """Remove `key`, returning its value, or None if it was absent."""
        if self._find(key) is None:
            return None
        old = self._remove_from(self._load(self.root_addr), key)
        self.length -= 1
        self._save_header()
        return self._decode(old)

    def iter(self):
        """Yields (key, value) pairs in ascending key order."""
        return self.range()

    def range(self, start=None, end=None):
        """Yields (key, value) pairs with start <= key < end, in ascending order."""
        if self.root_addr == NULL:
            return
        yield from self._traverse(self.root_addr, start, end)

    def keys(self):
        for key, _ in self.iter():
            yield key

    def first_key_value(self):
        return self._edge_entry(0)

    def last_key_value(self):
        return self._edge_entry(-1)

    # --- tree algorithms ---

    def _find(self, key):
        if self.root_addr == NULL:
            return None
        node = self._load(self.root_addr)
        while True:
            idx, found = node.search(key)
            if found:
                return node, idx
            if node.is_leaf():
                return None
            node = self._load(node.children[idx])

    def _nodes_needed(self, key):
        """
        How many nodes inserting `key` allocates: one per full node on
        its path that gets split, plus a new root if the root splits.
        """
        if self.root_addr == NULL:
            return 1
        node = self._load(self.root_addr)
        if node.is_full() and node.search(key)[1]:
            return 0
        needed = 2 if node.is_full() else 0
        while not node.is_leaf():
            idx, found = node.search(key)
            if found:
                break
            node = self._load(node.children[idx])
            if node.is_full():
                if node.search(key)[1]:
                    break
                needed += 1
        return needed

    def _insert_nonfull(self, node, key, value_bytes):
        while True:
            idx, found = node.search(key)
            if found:
                return self._swap_value(node, idx, value_bytes)
            if node.is_leaf():
                node.keys.insert(idx, key)
                node.values.insert(idx, value_bytes)
                self._save(node)
                return None

            child = self._load(node.children[idx])
            if child.is_full():
                child_idx, child_found = child.search(key)
                if child_found:
                    return self._swap_value(child, child_idx, value_bytes)
                self._split_child(node, idx, child)
                if key > node.keys[idx]:
                    child = self._load(node.children[idx + 1])
            node = child

    def _split_child(self, parent, idx, child):
        """Split the full `child`, moving its median up into `parent` at `idx`."""
        sibling = self._allocate_node(child.node_type)
        sibling.keys = child.keys[B:]
        sibling.values = child.values[B:]
        median_key, median_value = child.keys[B - 1], child.values[B - 1]
        child.keys = child.keys[:B - 1]
        child.values = child.values[:B - 1]
        if not child.is_leaf():
            sibling.children = child.children[B:]
            child.children = child.children[:B]

        parent.keys.insert(idx, median_key)
        parent.values.insert(idx, median_value)
        parent.children.insert(idx + 1, sibling.address)
        self._save(child)
        self._save(sibling)
        self._save(parent)

    def _remove_from(self, node, key):
        """
        Remove `key`, known to be present, from the subtree at `node`.
        Every node descended into has at least B entries, unless it is the root.
        """
        idx, found = node.search(key)
        if node.is_leaf():
            node.keys.pop(idx)
            value = node.values.pop(idx)
            if node.address == self.root_addr and not node.keys:
                self.allocator.deallocate(node.address)
                self.root_addr = NULL
            else:
                self._save(node)
            return value

        if found:
            value = node.values[idx]
            left = self._load(node.children[idx])
            if len(left.keys) >= B:
                # replace with the predecessor
                pred_key, pred_value = self._outer_entry(left, -1)
                node.keys[idx], node.values[idx] = pred_key, pred_value
                self._save(node)
                self._remove_from(left, pred_key)
                return value
            right = self._load(node.children[idx + 1])
            if len(right.keys) >= B:
                # replace with the successor
                succ_key, succ_value = self._outer_entry(right, 0)
                node.keys[idx], node.values[idx] = succ_key, succ_value
                self._save(node)
                self._remove_from(right, succ_key)
                return value
            merged = self._merge(node, idx, left, right)
            return self._remove_from(merged, key)

        child = self._load(node.children[idx])
        if len(child.keys) >= B:
            return self._remove_from(child, key)

        left = self._load(node.children[idx - 1]) if idx > 0 else None
        right = self._load(node.children[idx + 1]) if idx + 1 < len(node.children) else None
        if left is not None and len(left.keys) >= B:
            # rotate right through the parent
            child.keys.insert(0, node.keys[idx - 1])
            child.values.insert(0, node.values[idx - 1])
            node.keys[idx - 1] = left.keys.pop()
            node.values[idx - 1] = left.values.pop()
            if not child.is_leaf():
                child.children.insert(0, left.children.pop())
            self._save(left)
            self._save(child)
            self._save(node)
            return self._remove_from(child, key)
        if right is not None and len(right.keys) >= B:
            # rotate left through the parent
            child.keys.append(node.keys[idx])
            child.values.append(node.values[idx])
            node.keys[idx] = right.keys.pop(0)
            node.values[idx] = right.values.pop(0)
            if not child.is_leaf():
                child.children.append(right.children.pop(0))
            self._save(right)
            self._save(child)
            self._save(node)
            return self._remove_from(child, key)

        if left is not None:
            merged = self._merge(node, idx - 1, left, child)
        else:
            merged = self._merge(node, idx, child, right)
        return self._remove_from(merged, key)

    def _merge(self, parent, idx, left, right):
        """
        Merge `right` and the parent entry at `idx` into `left`.
        An emptied root is freed and `left` takes its place.
        """
        left.keys.append(parent.keys.pop(idx))
        left.values.append(parent.values.pop(idx))
        left.keys.extend(right.keys)
        left.values.extend(right.values)
        left.children.extend(right.children)
        parent.children.pop(idx + 1)
        self.allocator.deallocate(right.address)

        if parent.address == self.root_addr and not parent.keys:
            self.allocator.deallocate(parent.address)
            self.root_addr = left.address
        else:
            self._save(parent)
        self._save(left)
        return left

    def _outer_entry(self, node, side):
        # side 0 is the leftmost entry of the subtree, -1 the rightmost
        while not node.is_leaf():
            node = self._load(node.children[side])
        return node.keys[side], node.values[side]

    def _edge_entry(self, side):
        if self.root_addr == NULL:
            return None
        key, value = self._outer_entry(self._load(self.root_addr), side)
        return key, self.value_codec.from_bytes(value)

    def _traverse(self, address, start, end):
        node = self._load(address)
        lo = 0 if start is None else bisect.bisect_left(node.keys, start)
        for i in range(lo, len(node.keys) + 1):
            if not node.is_leaf():
                yield from self._traverse(node.children[i], start, end)
            if i == len(node.keys):
                return
            key = node.keys[i]
            if end is not None and key >= end:
                return
            yield key, self.value_codec.from_bytes(node.values[i])

    def _swap_value(self, node, idx, value_bytes):
        old = node.values[idx]
        node.values[idx] = value_bytes
        self._save(node)
        return old

    # --- persistence ---

    def _encode(self, codec, value, bound):
        data = codec.to_bytes(value)
        if len(data) > bound:
            raise RecordTooLargeError(f"Encoded size {len(data)} exceeds the bound of {bound}")
        return data

    def _decode(self, value_bytes):
        if value_bytes is None:
            return None
        return self.value_codec.from_bytes(value_bytes)

    def _allocate_node(self, node_type):
        return Node(self.allocator.allocate(), node_type)

    def _load(self, address):
        data = self.memory.read(address, self.allocator.allocation_size)
        magic, version, node_type, count = NODE_STRUCT.unpack_from(data, 0)
        if magic != NODE_MAGIC or version != LAYOUT_VERSION or count > CAPACITY:
            raise CorruptedMemoryError(f"Bad node at address {address}")

        keys, values = [], []
        pos = NODE_STRUCT.size
        for _ in range(count):
            key_len = LENGTH_STRUCT.unpack_from(data, pos)[0]
            pos += LENGTH_STRUCT.size
            value_len = LENGTH_STRUCT.unpack_from(data, pos + self.max_key_size)[0]
            if key_len > self.max_key_size or value_len > self.max_value_size:
                raise CorruptedMemoryError(f"Bad entry length in node {address}")
            keys.append(self.key_codec.from_bytes(data[pos:pos + key_len]))
            pos += self.max_key_size + LENGTH_STRUCT.size
            values.append(data[pos:pos + value_len])
            pos += self.max_value_size

        children = []
        if node_type == INTERNAL:
            pos = NODE_STRUCT.size + CAPACITY * self.slot_size
            children = list(CHILDREN_STRUCT.unpack_from(data, pos)[:count + 1])
        return Node(address, node_type, keys, values, children)

    def _save(self, node):
        data = bytearray(self.allocator.allocation_size)
        NODE_STRUCT.pack_into(data, 0, NODE_MAGIC, LAYOUT_VERSION, node.node_type, len(node.keys))
        pos = NODE_STRUCT.size
        for key, value in zip(node.keys, node.values):
            key_bytes = self.key_codec.to_bytes(key)
            LENGTH_STRUCT.pack_into(data, pos, len(key_bytes))
            pos += LENGTH_STRUCT.size
            data[pos:pos + len(key_bytes)] = key_bytes
            pos += self.max_key_size
            LENGTH_STRUCT.pack_into(data, pos, len(value))
            pos += LENGTH_STRUCT.size
            data[pos:pos + len(value)] = value
            pos += self.max_value_size
        if not node.is_leaf():
            children = node.children + [NULL] * (CAPACITY + 1 - len(node.children))
            CHILDREN_STRUCT.pack_into(data, NODE_STRUCT.size + CAPACITY * self.slot_size, *children)
        self.memory.write(node.address, bytes(data))

    def _save_header(self):
        self.memory.write(0, HEADER_STRUCT.pack(
            MAGIC, LAYOUT_VERSION, self.max_key_size, self.max_value_size,
            self.root_addr, self.length,
        ))


def node_size(key_codec, value_codec):
    slot_size = 2 * LENGTH_STRUCT.size + key_codec.MAX_SIZE + value_codec.MAX_SIZE
    return NODE_STRUCT.size + CAPACITY * slot_size + CHILDREN_STRUCT.size
