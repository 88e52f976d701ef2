import msgpack

from bookstore.config import BOOK_MAX_SIZE
from bookstore.errors import CorruptedRecordError, RecordTooLargeError

FIELDS = ("id", "title", "author", "summary", "year", "created_at", "updated_at")
PAYLOAD_FIELDS = ("title", "author", "summary", "year")


class Book:
    """
    A stored book. `id` and `created_at` never change once assigned;
    `updated_at` stays None until the first update.
    """

    def __init__(self, book_id, title, author, summary, year, created_at, updated_at=None):
        self.id = book_id
        self.title = title
        self.author = author
        self.summary = summary
        self.year = year
        self.created_at = created_at
        self.updated_at = updated_at

    def to_dict(self):
        return {field: getattr(self, field) for field in FIELDS}

    def apply(self, payload, updated_at):
        """Overwrite the mutable fields from `payload`."""
        for field in PAYLOAD_FIELDS:
            setattr(self, field, getattr(payload, field))
        self.updated_at = updated_at

    def __eq__(self, other):
        if not isinstance(other, Book):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"Book(id={self.id}, title={self.title!r}, year={self.year})"


class BookPayload:
    """The caller supplied part of a book."""

    def __init__(self, title, author, summary, year):
        self.title = title
        self.author = author
        self.summary = summary
        self.year = year

    @classmethod
    def from_dict(cls, data):
        return cls(*[data[field] for field in PAYLOAD_FIELDS])


class BookCodec:
    """
    Encodes a Book as a msgpack array of its fields.
    The encoding varies in length but never exceeds MAX_SIZE bytes.
    """

    MAX_SIZE = BOOK_MAX_SIZE
    IS_FIXED_SIZE = False

    @classmethod
    def to_bytes(cls, book):
        data = msgpack.packb([getattr(book, field) for field in FIELDS], use_bin_type=True)
        if len(data) > cls.MAX_SIZE:
            raise RecordTooLargeError(
                f"Book id={book.id} encodes to {len(data)} bytes, the limit is {cls.MAX_SIZE}"
            )
        return data

    @classmethod
    def from_bytes(cls, data):
        try:
            fields = msgpack.unpackb(data, raw=False)
        except (msgpack.UnpackException, ValueError) as e:
            raise CorruptedRecordError(f"Cannot decode book: {e}") from e
        if not isinstance(fields, list) or len(fields) != len(FIELDS):
            raise CorruptedRecordError(f"Cannot decode book from {fields!r}")
        return Book(*fields)
