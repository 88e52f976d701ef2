from bookstore.book import BookPayload
from bookstore.config import BOOKS_MEMORY_ID, COUNTER_MEMORY_ID
from bookstore.memory import VectorMemory
from bookstore.service import BookService
from bookstore.storage import Storage


def add_books(service, count):
    return [service.add(BookPayload(f"title {i}", "author", "summary", 1990 + i))
            for i in range(count)]


def test_restart_from_file(tmp_path, clock):
    path = str(tmp_path / "data")
    with Storage.open(path, frame_capacity=2, bucket_size_in_pages=1) as storage:
        service = BookService(storage, clock=clock)
        books = add_books(service, 30)
        service.delete(4)
        service.update(7, BookPayload("new title", "author", "summary", 2024))

    with Storage.open(path, frame_capacity=2) as storage:
        service = BookService(storage, clock=clock)
        assert storage.id_counter.get() == 30
        assert len(storage.books) == 29
        assert service.get(0) == books[0]
        assert service.get(7).title == "new title"
        assert storage.books.get(4) is None
        assert service.add(BookPayload("A", "B", "C", 2000)).id == 30


def test_writes_are_durable_when_a_call_returns(tmp_path, clock):
    path = str(tmp_path / "data")
    storage = Storage.open(path, bucket_size_in_pages=1)
    book = BookService(storage, clock=clock).add(BookPayload("A", "B", "C", 2000))

    # a second process opening the same store sees the committed book
    other = Storage.open(path)
    assert other.books.get(book.id) == book
    other.close()
    storage.close()


def test_restart_from_same_memory():
    memory = VectorMemory()
    service = BookService(Storage.in_memory(memory, bucket_size_in_pages=1))
    add_books(service, 3)

    restarted = Storage.in_memory(memory)
    assert restarted.id_counter.get() == 3
    assert list(restarted.books.keys()) == [0, 1, 2]


def test_region_assignment(storage, service):
    add_books(service, 2)
    counter_region = storage.memory_manager.get(COUNTER_MEMORY_ID)
    assert counter_region.read(8, 8) == (2).to_bytes(8, "big")
    assert storage.memory_manager.get(BOOKS_MEMORY_ID).read(0, 3) == b"BTR"
