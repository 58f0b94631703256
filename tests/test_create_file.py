import errno
import os
from random import Random

import pytest

import write_benchmark

from write_benchmark import (
    MIB,
    DataType,
    DegenerateInputError,
    InputError,
    PreconditionError,
    WriteError,
    WriteMode,
    create_file,
)


def test_sequential_zero(tmp_path):
    path = tmp_path / "zero.bin"
    size = 3 * MIB + 5

    stats = create_file(path, size, DataType.zero, WriteMode.sequential)

    assert path.read_bytes() == b"\0" * size
    assert stats.total_bytes == size
    assert stats.writes == 4
    assert stats.min_speed <= stats.median_speed <= stats.max_speed


def test_sequential_random_differs(tmp_path):
    a = tmp_path / "a.bin"
    b = tmp_path / "b.bin"

    create_file(a, 64 * 1024, DataType.random, WriteMode.sequential, chunk_size=4096)
    create_file(b, 64 * 1024, DataType.random, WriteMode.sequential, chunk_size=4096)

    data_a = a.read_bytes()
    data_b = b.read_bytes()
    assert len(data_a) == len(data_b) == 64 * 1024
    assert data_a != data_b
    assert data_a != b"\0" * len(data_a)


@pytest.mark.parametrize("size", [10 * 4096, 10 * 4096 + 100])
def test_random_mode_length(tmp_path, size):
    path = tmp_path / "random.bin"

    stats = create_file(path, size, DataType.random, WriteMode.random, chunk_size=4096, rng=Random(1))

    assert path.stat().st_size == size
    assert stats.writes == -(-size // 4096)
    assert stats.total_bytes == size
    assert path.read_bytes() != b"\0" * size


def test_random_mode_zero_content(tmp_path):
    path = tmp_path / "random-zero.bin"

    create_file(path, 8 * 4096, DataType.zero, WriteMode.random, chunk_size=4096)

    assert path.read_bytes() == b"\0" * 8 * 4096


def test_random_mode_smaller_than_chunk(tmp_path):
    path = tmp_path / "small.bin"

    stats = create_file(path, 100, DataType.random, WriteMode.random, chunk_size=MIB)

    assert path.stat().st_size == 100
    assert stats.writes == 1


def test_unbuffered_fsync(tmp_path):
    path = tmp_path / "fsync.bin"

    stats = create_file(path, 3 * 4096, DataType.zero, chunk_size=4096, buffering=0, fsync=True)

    assert path.stat().st_size == 3 * 4096
    assert stats.writes == 3


def test_progressfunc(tmp_path):
    progress = []

    create_file(
        tmp_path / "progress.bin",
        10,
        DataType.zero,
        chunk_size=4,
        progressfunc=lambda completed, total: progress.append((completed, total)),
    )

    assert progress == [(4, 10), (8, 10), (10, 10)]


@pytest.mark.parametrize("size", [0, -1])
def test_degenerate_size(tmp_path, size):
    path = tmp_path / "empty.bin"

    with pytest.raises(DegenerateInputError):
        create_file(path, size)

    assert not path.exists()


def test_invalid_chunk_size(tmp_path):
    path = tmp_path / "chunk.bin"

    with pytest.raises(InputError):
        create_file(path, MIB, chunk_size=0)

    assert not path.exists()


def test_existing_file(tmp_path):
    path = tmp_path / "existing.bin"
    path.write_bytes(b"keep me")

    with pytest.raises(PreconditionError):
        create_file(path, MIB, DataType.zero)

    assert path.read_bytes() == b"keep me"


def test_existing_file_overwrite(tmp_path):
    path = tmp_path / "existing.bin"
    path.write_bytes(b"replace me" * 1000)

    create_file(path, 100, DataType.zero, overwrite=True)

    assert path.read_bytes() == b"\0" * 100


def test_missing_directory(tmp_path):
    path = tmp_path / "missing" / "file.bin"

    with pytest.raises(PreconditionError):
        create_file(path, MIB)

    assert not path.parent.exists()


@pytest.mark.skipif(not os.path.exists("/dev/full"), reason="requires /dev/full")
def test_disk_full():
    with pytest.raises(WriteError) as excinfo:
        create_file("/dev/full", 4 * MIB, DataType.zero, overwrite=True)

    assert excinfo.value.errno == errno.ENOSPC
    assert isinstance(excinfo.value.__cause__, OSError)


def test_interrupt_before_open(tmp_path, monkeypatch):
    path = tmp_path / "interrupted.bin"

    def interrupt(*args, **kwargs):
        raise KeyboardInterrupt

    monkeypatch.setattr(write_benchmark.logger, "info", interrupt)

    with pytest.raises(KeyboardInterrupt):
        create_file(path, MIB, DataType.zero)

    assert not path.exists()
