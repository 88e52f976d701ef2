import random

import pytest

from bookstore.book import BookCodec
from bookstore.btree import NULL, BTreeMap
from bookstore.errors import GrowFailedError, IncompatibleLayoutError, RecordTooLargeError
from bookstore.memory import VectorMemory
from bookstore.storable import U64


class SmallBytes:
    MAX_SIZE = 4
    IS_FIXED_SIZE = False

    @staticmethod
    def to_bytes(value):
        return value

    @staticmethod
    def from_bytes(data):
        return bytes(data)


class Blob(SmallBytes):
    MAX_SIZE = 2000


@pytest.fixture
def btree():
    return BTreeMap.init(VectorMemory(), U64, U64)


def test_empty_map(btree):
    assert len(btree) == 0
    assert btree.is_empty()
    assert btree.get(1) is None
    assert btree.remove(1) is None
    assert list(btree.iter()) == []
    assert btree.first_key_value() is None


def test_insert_returns_previous_value(btree):
    assert btree.insert(1, 10) is None
    assert btree.insert(1, 11) == 10
    assert btree.get(1) == 11
    assert len(btree) == 1
    assert 1 in btree and 2 not in btree


def test_matches_dict_under_random_inserts_and_removes(btree):
    rng = random.Random(7)
    keys = rng.sample(range(10_000), 600)
    expected = {}
    for key in keys:
        assert btree.insert(key, key * 2) is None
        expected[key] = key * 2
    # replace a few in full nodes as well
    for key in keys[:50]:
        assert btree.insert(key, key * 3) == key * 2
        expected[key] = key * 3

    assert len(btree) == len(expected)
    assert list(btree.iter()) == sorted(expected.items())

    rng.shuffle(keys)
    for key in keys[:400]:
        assert btree.remove(key) == expected.pop(key)
        assert btree.get(key) is None
    assert len(btree) == len(expected)
    assert list(btree.iter()) == sorted(expected.items())
    for key, value in expected.items():
        assert btree.get(key) == value


def test_removing_everything_frees_the_root(btree):
    for key in range(300):
        btree.insert(key, key)
    for key in reversed(range(300)):
        assert btree.remove(key) == key
    assert btree.is_empty()
    assert btree.root_addr == NULL


def test_freed_chunks_are_reused(btree):
    for key in range(200):
        btree.insert(key, key)
    allocated = btree.allocator.num_allocated_chunks
    for key in range(200):
        btree.remove(key)
    for key in range(200):
        btree.insert(key, key)
    assert btree.allocator.num_allocated_chunks == allocated


def test_range(btree):
    for key in range(0, 200, 2):
        btree.insert(key, key)
    assert [k for k, _ in btree.range(10, 20)] == [10, 12, 14, 16, 18]
    assert [k for k, _ in btree.range(195)] == [196, 198]
    assert [k for k, _ in btree.range(end=5)] == [0, 2, 4]
    assert list(btree.range(300, 400)) == []


def test_first_and_last(btree):
    for key in [50, 3, 99, 42]:
        btree.insert(key, key + 1)
    assert btree.first_key_value() == (3, 4)
    assert btree.last_key_value() == (99, 100)


def test_contents_survive_reinit():
    memory = VectorMemory()
    btree = BTreeMap.init(memory, U64, U64)
    for key in range(100):
        btree.insert(key, key * key)
    btree.remove(50)

    reloaded = BTreeMap.init(memory, U64, U64)
    assert len(reloaded) == 99
    assert reloaded.get(50) is None
    assert reloaded.get(9) == 81
    assert list(reloaded.keys()) == [k for k in range(100) if k != 50]


def test_removing_absent_key_leaves_memory_untouched(btree):
    for key in range(0, 100, 2):
        btree.insert(key, key)
    before = bytes(btree.memory.data)
    assert btree.remove(51) is None
    assert bytes(btree.memory.data) == before


def test_changed_bounds_are_rejected():
    memory = VectorMemory()
    BTreeMap.init(memory, U64, BookCodec)
    with pytest.raises(IncompatibleLayoutError):
        BTreeMap.init(memory, U64, U64)


def test_oversized_value_is_rejected():
    btree = BTreeMap.init(VectorMemory(), U64, SmallBytes)
    btree.insert(1, b"abcd")
    with pytest.raises(RecordTooLargeError):
        btree.insert(2, b"abcde")
    assert len(btree) == 1
    assert btree.get(2) is None


def test_node_count_is_known_before_insert(btree):
    rng = random.Random(3)
    for key in rng.sample(range(5_000), 400):
        expected = btree._nodes_needed(key)
        allocated = btree.allocator.num_allocated_chunks
        btree.insert(key, key)
        assert btree.allocator.num_allocated_chunks - allocated == expected


def test_failed_root_split_leaves_map_untouched():
    # room for two nodes only, a root split needs three
    memory = VectorMemory(max_pages=1)
    btree = BTreeMap.init(memory, U64, Blob)
    for key in range(11):
        btree.insert(key, b"v%d" % key)
    before = bytes(memory.data)

    with pytest.raises(GrowFailedError):
        btree.insert(11, b"v11")
    assert bytes(memory.data) == before
    assert len(btree) == 11
    assert btree.get(0) == b"v0"
    assert btree.get(11) is None
    assert btree.insert(5, b"new") == b"v5"
    assert list(btree.keys()) == list(range(11))
