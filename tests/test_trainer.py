import threading

import pytest

from multiverso.data_block import DataBlockBase, DataBlockType
from multiverso.delta_pool import DeltaType
from multiverso.lock import LockManager
from multiverso.multiverso import LockOption
from multiverso.row import ElementType, Format
from multiverso.table import Table
from multiverso.trainer import TrainerBase


class FakeAggregator:
    def __init__(self):
        self.adds = []
        self.waits = 0

    def add(self, trainer, table, row, col, delta=None):
        self.adds.append((trainer, table, row, col, delta))

    def wait(self):
        self.waits += 1


class FakeDoubleBuffer:
    def __init__(self, tables):
        self.worker_buffer = tables
        self.calls = []

    def start(self, thread_id):
        self.calls.append(("start", thread_id))

    def end(self, thread_id):
        self.calls.append(("end", thread_id))


class FakeMultiverso:
    def __init__(self, table, lock_option=LockOption.LOCK_FREE, num_trainers=1):
        self.table = table
        self.double_buffer = FakeDoubleBuffer([table])
        self.aggregator = FakeAggregator()
        self.lock_option = lock_option
        self.lock_manager = LockManager(4)
        self.process_rank = 0
        self.is_pipeline = True
        self.pipeline_barrier = None
        self.data_cond = threading.Condition()
        self.data_tag = [False] * num_trainers


class RecordingTrainer(TrainerBase):
    def __init__(self, multiverso):
        super().__init__(multiverso)
        self.trained = []

    def train_iteration(self, data_block):
        self.trained.append(data_block)


def new_table():
    return Table(0, 2, 3, ElementType.INT, Format.DENSE)


def test_trainer_ids_are_per_environment():
    mv = FakeMultiverso(Table(0, 2, 3, ElementType.INT, Format.DENSE))
    first, second = RecordingTrainer(mv), RecordingTrainer(mv)
    other = RecordingTrainer(FakeMultiverso(Table(0, 2, 3, ElementType.INT, Format.DENSE)))
    assert (first.trainer_id, second.trainer_id) == (0, 1)
    assert other.trainer_id == 0


def test_base_class_is_abstract():
    with pytest.raises(TypeError):
        TrainerBase(FakeMultiverso(new_table()))


def test_get_table_invalid_id():
    table = Table(0, 2, 3, ElementType.INT, Format.DENSE)
    trainer = RecordingTrainer(FakeMultiverso(table))
    assert trainer.get_table(0) is table
    with pytest.raises(IndexError):
        trainer.get_table(5)
    with pytest.raises(IndexError):
        trainer.get_table(-1)


def test_get_row_returns_cached_row():
    table = Table(0, 2, 3, ElementType.INT, Format.DENSE)
    trainer = RecordingTrainer(FakeMultiverso(table))
    assert trainer.get_row(0, 1) is table.get_row(1)


@pytest.mark.parametrize("option", [LockOption.LOCK_FREE, LockOption.LOCKED])
def test_add_element_updates_cache_and_aggregator(option):
    mv = FakeMultiverso(new_table(), option)
    trainer = RecordingTrainer(mv)
    trainer.add_element(0, 1, 2, 4)
    assert mv.table.get_row(1).at(2) == 4
    assert mv.aggregator.adds == [(0, 0, 1, 2, 4)]


def test_add_element_immutable_leaves_cache():
    table = Table(0, 2, 3, ElementType.INT, Format.DENSE)
    mv = FakeMultiverso(table, LockOption.IMMUTABLE)
    trainer = RecordingTrainer(mv)
    trainer.add_element(0, 1, 2, 4)
    assert table.get_row(1).at(2) == 0
    assert mv.aggregator.adds == [(0, 0, 1, 2, 4)]


def test_add_row_dense():
    table = Table(0, 2, 3, ElementType.INT, Format.DENSE)
    mv = FakeMultiverso(table)
    trainer = RecordingTrainer(mv)
    trainer.add_row(0, 0, [1, 0, 3])
    row = table.get_row(0)
    assert [row.at(col) for col in range(3)] == [1, 0, 3]
    assert [add[3] for add in mv.aggregator.adds] == [0, 1, 2]
    assert [add[4] for add in mv.aggregator.adds] == [1, 0, 3]


def test_add_row_sparse_rejected():
    table = Table(0, 2, 3, ElementType.INT, Format.DENSE)
    table.set_row(1, Format.SPARSE, 4)
    mv = FakeMultiverso(table)
    trainer = RecordingTrainer(mv)
    with pytest.raises(ValueError):
        trainer.add_row(0, 1, [1, 2, 3, 4])
    assert mv.aggregator.adds == []


def test_clock_signals_and_waits():
    mv = FakeMultiverso(Table(0, 2, 3, ElementType.INT, Format.DENSE))
    trainer = RecordingTrainer(mv)
    trainer.clock()
    assert mv.aggregator.adds == [(0, 0, DeltaType.CLOCK, 0, None)]
    assert mv.aggregator.waits == 1


def test_push_data_block_clears_tag_for_data_only():
    mv = FakeMultiverso(new_table())
    mv.data_tag[0] = True
    trainer = RecordingTrainer(mv)
    begin = DataBlockBase(DataBlockType.BEGIN_CLOCK)
    train = DataBlockBase(DataBlockType.TRAIN)
    trainer.push_data_block(begin)
    assert mv.data_tag == [True]
    trainer.push_data_block(train)
    assert mv.data_tag == [False]
    trainer.start()
    trainer.stop()
    assert trainer.trained == [train]
    assert mv.data_tag == [True]


def test_run_trains_and_marks_done():
    mv = FakeMultiverso(new_table())
    trainer = RecordingTrainer(mv)
    train = DataBlockBase(DataBlockType.TRAIN)
    trainer.push_data_block(train)
    trainer.start()
    trainer.stop()
    assert trainer.trained == [train]
    assert mv.double_buffer.calls == [("start", 1), ("end", 1)]
    assert mv.aggregator.adds == [(0, 0, DeltaType.FLUSH, 0, None)]
    assert mv.data_tag == [True]


def test_run_end_clock_calls_clock():
    mv = FakeMultiverso(new_table())
    trainer = RecordingTrainer(mv)
    trainer.start()
    trainer.push_data_block(DataBlockBase(DataBlockType.END_CLOCK))
    trainer.stop()
    assert trainer.trained == []
    assert mv.aggregator.waits == 1
    assert mv.aggregator.adds == [(0, 0, DeltaType.CLOCK, 0, None)]