import threading

import pytest

from multiverso.row import ElementType, Format
from multiverso.table import Table


def test_default_dense_capacity_is_cols():
    table = Table(0, 3, 5)
    row = table.get_row(1)
    assert row.capacity == 5
    assert row.format is Format.DENSE


def test_default_sparse_capacity():
    table = Table(0, 3, 5, ElementType.INT, Format.SPARSE)
    row = table.get_row(0)
    assert row.format is Format.SPARSE
    assert row.capacity == 2


def test_rows_created_lazily_and_reused():
    table = Table(0, 4, 3)
    assert table.get_row_info(2).row is None
    row = table.get_row(2)
    assert table.get_row(2) is row
    assert table.get_row_info(2).row is row


def test_iteration_follows_creation_order():
    table = Table(0, 4, 3)
    table.get_row(2)
    table.get_row(0)
    table.get_row(2)
    assert [row.row_id for row in table] == [2, 0]


def test_set_row_applies_to_new_row():
    table = Table(0, 4, 3)
    table.set_row(1, Format.SPARSE, 16)
    info = table.get_row_info(1)
    assert info.format is Format.SPARSE
    assert info.capacity == 16
    row = table.get_row(1)
    assert row.format is Format.SPARSE
    assert row.capacity == 16


@pytest.mark.parametrize("row_id", [-1, 4])
def test_invalid_row_ids(row_id):
    table = Table(0, 4, 3)
    with pytest.raises(IndexError):
        table.get_row(row_id)
    with pytest.raises(IndexError):
        table.set_row(row_id, Format.DENSE, 3)
    with pytest.raises(IndexError):
        table.get_row_info(row_id)


def test_clear_drops_rows():
    table = Table(0, 4, 3)
    old = table.get_row(1)
    old.add(0, 5)
    table.clear()
    assert list(table) == []
    assert table.get_row_info(1).row is None
    fresh = table.get_row(1)
    assert fresh is not old
    assert fresh.nonzero_size == 0


def test_element_type_and_size():
    table = Table(0, 2, 2, ElementType.DOUBLE)
    assert table.element_size == 8
    assert table.get_row(0).element_type is ElementType.DOUBLE


def test_concurrent_get_row_creates_one_row():
    table = Table(0, 2, 8)
    results = []
    start = threading.Barrier(8)

    def worker():
        start.wait()
        results.append(table.get_row(0))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(results) == 8
    assert all(row is results[0] for row in results)
    assert len(list(table)) == 1