import msgpack
import pytest

from bookstore.book import Book, BookCodec, BookPayload
from bookstore.errors import CorruptedRecordError, RecordTooLargeError


def make_book(**overrides):
    fields = dict(
        book_id=3,
        title="Dune",
        author="Frank Herbert",
        summary="Spice and sand",
        year=1965,
        created_at=1_700_000_000_000_000_000,
        updated_at=None,
    )
    fields.update(overrides)
    return Book(**fields)


@pytest.mark.parametrize("book", [
    make_book(),
    make_book(updated_at=1_700_000_000_000_001_000),
    make_book(book_id=2**64 - 1, year=0, title="", author="", summary=""),
    make_book(title="Война и мир", author="Лев Толстой", summary="📚" * 10),
])
def test_round_trip(book):
    assert BookCodec.from_bytes(BookCodec.to_bytes(book)) == book


def test_encoding_length_varies():
    short = BookCodec.to_bytes(make_book(summary=""))
    longer = BookCodec.to_bytes(make_book(summary="x" * 200))
    assert len(short) < len(longer) <= BookCodec.MAX_SIZE
    assert BookCodec.IS_FIXED_SIZE is False


def test_oversized_book_is_rejected():
    with pytest.raises(RecordTooLargeError):
        BookCodec.to_bytes(make_book(summary="x" * 1024))


@pytest.mark.parametrize("data", [
    b"\xc1",
    msgpack.packb([1, 2, 3]),
    BookCodec.to_bytes(make_book())[:-3],
])
def test_malformed_bytes_are_rejected(data):
    with pytest.raises(CorruptedRecordError):
        BookCodec.from_bytes(data)


def test_apply_payload_keeps_identity():
    book = make_book()
    book.apply(BookPayload("Dune Messiah", "Frank Herbert", "Sequel", 1969), 42)
    assert (book.id, book.created_at) == (3, 1_700_000_000_000_000_000)
    assert (book.title, book.year, book.updated_at) == ("Dune Messiah", 1969, 42)


def test_payload_from_dict():
    payload = BookPayload.from_dict({"title": "A", "author": "B", "summary": "C", "year": 2000})
    assert (payload.title, payload.author, payload.summary, payload.year) == ("A", "B", "C", 2000)


def test_payload_requires_every_field():
    with pytest.raises(KeyError):
        BookPayload.from_dict({"title": "A", "author": "B", "year": 2000})
