from bookstore.config import PAGE_SIZE

class Page:
    """
    One frame of the persistent store, as cached by the bufferpool.
    """

    def __init__(self, page_id, data=None):
        self.page_id = page_id
        self.data = bytearray(data) if data is not None else bytearray(PAGE_SIZE)
        if len(self.data) < PAGE_SIZE:
            # short read at the end of the file
            self.data.extend(bytes(PAGE_SIZE - len(self.data)))
        self.dirty = False

    def read(self, offset, length):
        return bytes(self.data[offset:offset + length])

    def write(self, offset, value):
        self.data[offset:offset + len(value)] = value
        self.dirty = True
