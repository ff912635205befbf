import pytest

from ics_fixer import UidGenerator


@pytest.fixture
def fixed_generator():
    return UidGenerator(random_bytes=lambda n: bytes(range(n)), clock=lambda: 1700000000000000000)


@pytest.fixture
def broken_generator():
    def no_entropy(n):
        raise OSError("entropy source unavailable")
    return UidGenerator(random_bytes=no_entropy, clock=lambda: 1700000000000000000)
