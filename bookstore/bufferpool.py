import collections
import logging
import threading

from bookstore.config import FRAME_CAPACITY, PAGE_SIZE
from bookstore.page import Page

logger = logging.getLogger(__name__)


class Bufferpool:
    """
    Page cache in front of the store file.
    Uses an LRU eviction policy and
    a dictionary {page_id -> Page} in memory.
    Dirty pages are written back when evicted or flushed.
    """

    def __init__(self, file, size=FRAME_CAPACITY):
        if size < 1:
            raise ValueError("Bufferpool needs at least one frame")
        self.file = file
        self.size = size
        self.pages = {}
        self.lru_list = collections.deque()
        self._lock = threading.Lock()

    def get_page(self, page_id):
        with self._lock:
            if page_id in self.pages:
                # Move to front of LRU
                self._touch(page_id)
                return self.pages[page_id]

            # Evict if needed
            if len(self.pages) >= self.size:
                self.evict_page()

            page = self.load_from_disk(page_id)
            self.pages[page_id] = page
            self.lru_list.appendleft(page_id)
            return page

    def evict_page(self):
        if not self.lru_list:
            return
        page_id = self.lru_list.pop()
        page = self.pages.pop(page_id)
        if page.dirty:
            self.write_to_disk(page)

    def flush(self):
        with self._lock:
            for page in self.pages.values():
                if page.dirty:
                    self.write_to_disk(page)
            self.file.flush()

    def load_from_disk(self, page_id):
        self.file.seek(page_id * PAGE_SIZE)
        return Page(page_id, self.file.read(PAGE_SIZE))

    def write_to_disk(self, page):
        logger.debug("Writing page %d to disk", page.page_id)
        self.file.seek(page.page_id * PAGE_SIZE)
        self.file.write(page.data)
        page.dirty = False

    def _touch(self, page_id):
        # Move page_id to front of LRU
        self.lru_list.remove(page_id)
        self.lru_list.appendleft(page_id)
