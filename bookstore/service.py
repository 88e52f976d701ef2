import logging
import time

from bookstore.book import Book, BookCodec
from bookstore.errors import NotFound, StoreError

logger = logging.getLogger(__name__)


class BookService:
    """
    get/add/update/delete of books over a Storage.
    Each call runs to completion under the storage lock and commits
    before it returns.
    """

    def __init__(self, storage, clock=time.time_ns):
        self.storage = storage
        self.clock = clock

    def get(self, book_id):
        with self.storage.lock:
            book = self.storage.books.get(book_id)
        if book is None:
            raise NotFound(f"A book with id={book_id} not found", book_id)
        return book

    def add(self, payload):
        with self.storage.lock:
            counter = self.storage.id_counter
            book = Book(
                counter.get(),
                payload.title,
                payload.author,
                payload.summary,
                payload.year,
                created_at=self.clock(),
            )
            # Fail on an oversized record before the counter moves
            BookCodec.to_bytes(book)
            # set() hands back the pre-increment value, which is the new id
            book.id = counter.set(counter.get() + 1)
            try:
                self.storage.books.insert(book.id, book)
            except StoreError:
                # the book was never stored, hand the id back
                counter.set(book.id)
                raise
            self.storage.commit()
        logger.debug("Added book id=%d", book.id)
        return book

    def update(self, book_id, payload):
        with self.storage.lock:
            book = self.storage.books.get(book_id)
            if book is None:
                raise NotFound(
                    f"Couldn't update a book with id={book_id}. Book not found", book_id
                )
            previous = book.updated_at if book.updated_at is not None else book.created_at
            book.apply(payload, max(self.clock(), previous))
            self.storage.books.insert(book.id, book)
            self.storage.commit()
        logger.debug("Updated book id=%d", book_id)
        return book

    def delete(self, book_id):
        with self.storage.lock:
            book = self.storage.books.remove(book_id)
            if book is None:
                raise NotFound(
                    f"Couldn't delete a book with id={book_id}. Book not found.", book_id
                )
            self.storage.commit()
        logger.debug("Deleted book id=%d", book_id)
        return book
