import logging
import os
import threading

from bookstore.book import BookCodec
from bookstore.btree import BTreeMap
from bookstore.cell import Cell
from bookstore.config import (
    BOOKS_MEMORY_ID,
    BUCKET_SIZE_IN_PAGES,
    COUNTER_MEMORY_ID,
    DATA_PATH,
    FRAME_CAPACITY,
    STORE_FILENAME,
)
from bookstore.memory import FileMemory, VectorMemory
from bookstore.memory_manager import MemoryManager
from bookstore.storable import U64

logger = logging.getLogger(__name__)


class Storage:
    """
    Everything persisted by the service, laid out over one Memory:
      - region COUNTER_MEMORY_ID: the next book id
      - region BOOKS_MEMORY_ID: the books, keyed by id
    Opening a populated memory recovers what is already there.
    """

    def __init__(self, memory, bucket_size_in_pages=BUCKET_SIZE_IN_PAGES):
        self.memory = memory
        self.memory_manager = MemoryManager.init(memory, bucket_size_in_pages)
        self.id_counter = Cell.init(self.memory_manager.get(COUNTER_MEMORY_ID), U64, 0)
        self.books = BTreeMap.init(self.memory_manager.get(BOOKS_MEMORY_ID), U64, BookCodec)
        # Single global lock, every service operation runs under it
        self.lock = threading.RLock()
        logger.info(
            "Storage ready: next id %d, %d books", self.id_counter.get(), len(self.books)
        )

    @classmethod
    def open(cls, path=DATA_PATH, frame_capacity=FRAME_CAPACITY,
             bucket_size_in_pages=BUCKET_SIZE_IN_PAGES):
        """
        Open the store kept in directory `path`, creating it if needed.
        """
        if not os.path.exists(path):
            os.makedirs(path)
        memory = FileMemory(os.path.join(path, STORE_FILENAME), frame_capacity)
        try:
            return cls(memory, bucket_size_in_pages)
        except Exception:
            memory.close()
            raise

    @classmethod
    def in_memory(cls, memory=None, bucket_size_in_pages=BUCKET_SIZE_IN_PAGES):
        return cls(memory if memory is not None else VectorMemory(), bucket_size_in_pages)

    def commit(self):
        """
        Make every write so far durable.
        """
        self.memory.flush()

    def close(self):
        self.memory.close()
        logger.info("Storage closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
