"""
Operations exposed at the process boundary.

Results are tagged the way callers on the other side expect them:
    {"Ok": <book>} or {"Err": {"NotFound": {"msg": "..."}}}
Storage failures are not results; they propagate and the call did not happen.
"""
from bookstore.book import BookPayload
from bookstore.config import DATA_PATH
from bookstore.errors import BookError
from bookstore.service import BookService
from bookstore.storage import Storage


class BookApi:

    def __init__(self, service):
        self.service = service

    @classmethod
    def open(cls, path=DATA_PATH, **storage_options):
        return cls(BookService(Storage.open(path, **storage_options)))

    def close(self):
        self.service.storage.close()

    def get_book(self, book_id):
        return self._call(self.service.get, book_id)

    def add_book(self, payload):
        return self._call(self.service.add, _payload(payload))

    def update_book(self, book_id, payload):
        return self._call(self.service.update, book_id, _payload(payload))

    def delete_book(self, book_id):
        return self._call(self.service.delete, book_id)

    def _call(self, operation, *args):
        try:
            book = operation(*args)
        except BookError as e:
            return {"Err": e.to_dict()}
        return {"Ok": book.to_dict()}


def _payload(payload):
    if isinstance(payload, BookPayload):
        return payload
    return BookPayload.from_dict(payload)
