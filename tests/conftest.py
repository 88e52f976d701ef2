import pytest

from bookstore.api import BookApi
from bookstore.service import BookService
from bookstore.storage import Storage


class FakeClock:
    """Nanosecond clock that moves forward by `step` on every reading."""

    def __init__(self, start=1_700_000_000_000_000_000, step=1_000):
        self.now = start
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    # one page buckets keep the test memories small
    return Storage.in_memory(bucket_size_in_pages=1)


@pytest.fixture
def service(storage, clock):
    return BookService(storage, clock=clock)


@pytest.fixture
def api(service):
    return BookApi(service)
