import pytest

from rnnfactory import Dictionary


@pytest.fixture
def dictionary() -> Dictionary:
    # 7 classes in three clusters of sizes 3, 2 and 2.
    mapping = [[0, 0], [0, 1], [0, 2], [1, 0], [1, 1], [2, 0], [2, 1]]
    return Dictionary(index_to_freq=[50, 30, 20, 10, 5, 3, 1], mapping=mapping)


@pytest.fixture
def flat_dictionary() -> Dictionary:
    return Dictionary(index_to_freq=[4, 3, 2, 1, 1])
