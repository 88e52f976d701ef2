import logging
import os

from bookstore.bufferpool import Bufferpool
from bookstore.config import FRAME_CAPACITY, PAGE_SIZE
from bookstore.errors import OutOfBoundsError

logger = logging.getLogger(__name__)


class Memory:
    """
    A growable, byte addressable block of persistent memory.
    Size is counted in pages of PAGE_SIZE bytes and new pages read as zero.
    """

    def __init__(self, max_pages=None):
        self.max_pages = max_pages

    def size(self):
        raise NotImplementedError

    def grow(self, pages):
        """
        Grow by `pages` pages. Returns the previous size in pages,
        or -1 if the memory cannot grow that far.
        """
        old_size = self.size()
        new_size = old_size + pages
        if pages < 0 or (self.max_pages is not None and new_size > self.max_pages):
            return -1
        self._resize(new_size)
        return old_size

    def read(self, offset, length):
        raise NotImplementedError

    def write(self, offset, data):
        raise NotImplementedError

    def flush(self):
        pass

    def close(self):
        self.flush()

    def _resize(self, new_size):
        raise NotImplementedError

    def _check_bounds(self, offset, length):
        if offset < 0 or offset + length > self.size() * PAGE_SIZE:
            raise OutOfBoundsError(
                f"Access of {length} bytes at offset {offset} is outside of "
                f"{self.size()} pages"
            )


class VectorMemory(Memory):
    """
    Memory backed by a bytearray. Handing the same instance to a new
    Storage behaves like a process restart.
    """

    def __init__(self, max_pages=None):
        super().__init__(max_pages)
        self.data = bytearray()

    def size(self):
        return len(self.data) // PAGE_SIZE

    def read(self, offset, length):
        self._check_bounds(offset, length)
        return bytes(self.data[offset:offset + length])

    def write(self, offset, data):
        self._check_bounds(offset, len(data))
        self.data[offset:offset + len(data)] = data

    def _resize(self, new_size):
        self.data.extend(bytes((new_size - self.size()) * PAGE_SIZE))


class FileMemory(Memory):
    """
    Memory backed by a single file. The file length is always a whole
    number of pages; reads and writes go through a Bufferpool.
    """

    def __init__(self, path, frame_capacity=FRAME_CAPACITY, max_pages=None):
        super().__init__(max_pages)
        self.path = path
        mode = "r+b" if os.path.exists(path) else "w+b"
        self.file = open(path, mode)
        self.file.seek(0, os.SEEK_END)
        self._size = self.file.tell() // PAGE_SIZE
        self.bufferpool = Bufferpool(self.file, frame_capacity)
        logger.debug("Opened %s with %d pages", path, self._size)

    def size(self):
        return self._size

    def read(self, offset, length):
        self._check_bounds(offset, length)
        chunks = []
        for page, start, end in self._spans(offset, length):
            chunks.append(page.read(start, end - start))
        return b"".join(chunks)

    def write(self, offset, data):
        self._check_bounds(offset, len(data))
        pos = 0
        for page, start, end in self._spans(offset, len(data)):
            page.write(start, data[pos:pos + end - start])
            pos += end - start

    def flush(self):
        self.bufferpool.flush()
        os.fsync(self.file.fileno())

    def close(self):
        if self.file.closed:
            return
        self.flush()
        self.file.close()

    def _resize(self, new_size):
        # Extend with zeros so the size survives a reopen
        self.file.truncate(new_size * PAGE_SIZE)
        self._size = new_size

    def _spans(self, offset, length):
        """
        Split [offset, offset + length) into (page, start, end) pieces,
        with start/end relative to the page.
        """
        end_offset = offset + length
        while offset < end_offset:
            page_id = offset // PAGE_SIZE
            start = offset - page_id * PAGE_SIZE
            end = min(PAGE_SIZE, end_offset - page_id * PAGE_SIZE)
            yield self.bufferpool.get_page(page_id), start, end
            offset = page_id * PAGE_SIZE + end
