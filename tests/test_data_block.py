import threading

from multiverso.data_block import DataBlockBase, DataBlockType


def test_default_is_train_with_zero_count():
    block = DataBlockBase()
    assert block.type is DataBlockType.TRAIN
    assert block.count == 0


def test_explicit_type():
    assert DataBlockBase(DataBlockType.END_CLOCK).type is DataBlockType.END_CLOCK


def test_increase_and_decrease():
    block = DataBlockBase(DataBlockType.BEGIN_CLOCK)
    assert block.increase_count(1) == 1
    assert block.increase_count(-1) == 0
    assert block.count == 0


def test_concurrent_increments():
    block = DataBlockBase()

    def worker():
        for _ in range(1000):
            block.increase_count(1)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert block.count == 4 * 1000