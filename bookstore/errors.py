# bookstore/errors.py


class StoreError(Exception):
    """
    Base class for failures of the storage layer itself.
    These abort the current call and are never retried.
    """


class CorruptedMemoryError(StoreError):
    pass


class IncompatibleLayoutError(CorruptedMemoryError):
    pass


class GrowFailedError(StoreError):
    pass


class OutOfBoundsError(StoreError):
    pass


class RecordTooLargeError(StoreError):
    pass


class CorruptedRecordError(StoreError):
    pass


class BookError(Exception):
    """
    Base class for expected, domain-level errors.
    The API layer returns these to the caller as a tagged variant.
    """

    tag = None

    def __init__(self, msg):
        super().__init__(msg)
        self.msg = msg

    def to_dict(self):
        return {self.tag: {"msg": self.msg}}


class NotFound(BookError):

    tag = "NotFound"

    def __init__(self, msg, book_id):
        super().__init__(msg)
        self.book_id = book_id
