# /// script
# requires-python = ">=3.8"
# dependencies = [
#     "genutility[datetime,logging,rich]",
#     "rich",
# ]
# ///
import json
import logging
import os
import re
import sys
import time
from argparse import ArgumentDefaultsHelpFormatter, ArgumentParser, Namespace
from contextlib import contextmanager
from datetime import timedelta
from enum import Enum
from pathlib import Path
from random import Random, SystemRandom
from typing import Any, BinaryIO, Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional, Sequence, Type, Union

from genutility.datetime import now
from genutility.logging import IsoDatetimeFormatter
from genutility.rich import Progress
from rich.console import Console
from rich.highlighter import NullHighlighter
from rich.logging import RichHandler
from rich.progress import BarColumn, DownloadColumn
from rich.progress import Progress as RichProgress
from rich.progress import TextColumn, TimeElapsedColumn, TransferSpeedColumn
from rich.prompt import Confirm
from rich.table import Table

logger = logging.getLogger(__name__)

MIB = 1024**2
GIB = 1024**3
DEFAULT_CHUNK_SIZE = MIB
EPSILON = 1e-6  # seconds
MAX_FILE_SIZE = 2**63 - 1  # largest signed 64-bit file offset

UNITS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024**2,
    "GB": 1024**3,
    "TB": 1024**4,
}

SIZE_PATTERN = re.compile(r"([0-9]+)(B|KB|MB|GB|TB)")

ProgressFunc = Callable[[int, int], None]


class WriteBenchmarkError(Exception):
    pass


class InputError(WriteBenchmarkError, ValueError):
    pass


class InvalidFormat(InputError):
    def __init__(self, text: str) -> None:
        super().__init__(f"Invalid size `{text}`, expected <integer><unit> with unit one of {', '.join(UNITS)}")
        self.text = text


class SizeOverflow(InputError):
    pass


class PreconditionError(WriteBenchmarkError):
    pass


class DegenerateInputError(WriteBenchmarkError, ValueError):
    pass


class WriteError(WriteBenchmarkError, OSError):
    pass


class DataType(Enum):
    random = "random"
    zero = "zero"


class WriteMode(Enum):
    sequential = "sequential"
    random = "random"


class WriteTask(NamedTuple):
    offset: int
    length: int


class RunStatistics(NamedTuple):
    total_bytes: int
    size_gib: float
    total_time: timedelta
    writes: int
    average_speed: float
    max_speed: float
    min_speed: float
    median_speed: float

    def as_dict(self) -> Dict[str, Any]:
        d = self._asdict()
        d["total_time"] = self.total_time.total_seconds()
        return d


def parse_size(text: str) -> int:
    """Parses sizes like `512B`, `4KB` or `2GB` into a number of bytes.
    Units are case-sensitive binary multiples, so `1KB` is 1024 bytes.
    """

    m = SIZE_PATTERN.fullmatch(text)
    if not m:
        raise InvalidFormat(text)

    number, unit = m.groups()
    # avoid int() on absurdly long digit strings
    if len(number.lstrip("0")) > len(str(MAX_FILE_SIZE)):
        raise SizeOverflow(f"Size `{text}` exceeds the maximum file size of {MAX_FILE_SIZE} bytes")

    size = int(number) * UNITS[unit]
    if size > MAX_FILE_SIZE:
        raise SizeOverflow(f"Size `{text}` exceeds the maximum file size of {MAX_FILE_SIZE} bytes")

    return size


def format_size(size: int) -> str:
    for unit, factor in reversed(UNITS.items()):
        if size >= factor and size % factor == 0:
            return f"{size // factor}{unit}"
    return f"{size}B"


class BufferFiller:
    """Owns a single chunk sized buffer which is refilled in place before every write."""

    def __init__(self, chunk_size: int) -> None:
        if chunk_size <= 0:
            raise InputError(f"Chunk size must be positive, got {chunk_size}")

        self.chunk_size = chunk_size
        self.buffer = bytearray(chunk_size)
        self._view = memoryview(self.buffer)

    def fill(self, length: int) -> memoryview:
        """Returns a view of the first `length` bytes of the buffer with fresh content."""

        if not 0 <= length <= self.chunk_size:
            raise ValueError(f"length must be between 0 and {self.chunk_size}, got {length}")

        view = self._view[:length]
        self._fill(view)
        return view

    def _fill(self, view: memoryview) -> None:
        raise NotImplementedError


class RandomFiller(BufferFiller):
    def _fill(self, view: memoryview) -> None:
        view[:] = os.urandom(len(view))


class ZeroFiller(BufferFiller):
    def _fill(self, view: memoryview) -> None:
        pass  # the buffer is zero initialized and never modified


FILLERS: Dict[DataType, Type[BufferFiller]] = {
    DataType.random: RandomFiller,
    DataType.zero: ZeroFiller,
}


def make_filler(data_type: DataType, chunk_size: int) -> BufferFiller:
    return FILLERS[data_type](chunk_size)


class SpeedSampler:
    def __init__(self, clock: Callable[[], float] = time.perf_counter) -> None:
        self.clock = clock
        self.samples: List[float] = []

    def record(self, nbytes: int, seconds: float) -> float:
        speed = (nbytes / MIB) / max(seconds, EPSILON)
        self.samples.append(speed)
        return speed

    @contextmanager
    def measure(self, nbytes: int) -> Iterator[None]:
        """Times the enclosed block and records one sample in MiB/s.
        Nothing is recorded if the block raises.
        """

        start = self.clock()
        yield
        self.record(nbytes, self.clock() - start)


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


def sequential_tasks(size: int, chunk_size: int) -> Iterator[WriteTask]:
    offset = 0
    while offset < size:
        length = min(chunk_size, size - offset)
        yield WriteTask(offset, length)
        offset += length


def random_writes(size: int, chunk_size: int) -> int:
    return _ceil_div(size, chunk_size)


def random_tasks(size: int, chunk_size: int, rng: Optional[Random] = None) -> Iterator[WriteTask]:
    """Yields `ceil(size / chunk_size)` chunk sized writes at uniformly random offsets.
    Offsets can repeat, so parts of the file may be written more than once and others not at all.
    """

    if rng is None:
        rng = SystemRandom()

    length = min(chunk_size, size)
    if length < chunk_size:
        logger.debug("Size %d is smaller than chunk size %d, offsets collapse to 0", size, chunk_size)

    max_offset = size - length
    for _i in range(random_writes(size, chunk_size)):
        yield WriteTask(rng.randint(0, max_offset), length)


def _write_all(fp: BinaryIO, data: memoryview) -> None:
    # unbuffered files can return short writes
    while data:
        written = fp.write(data)
        if not written:
            raise OSError(f"write() returned {written!r}")
        data = data[written:]


def write_tasks(
    fp: BinaryIO,
    tasks: Iterable[WriteTask],
    filler: BufferFiller,
    sampler: SpeedSampler,
    *,
    total: int = 0,
    fsync: bool = False,
    progressfunc: Optional[ProgressFunc] = None,
) -> int:
    """Fills and writes one chunk per task. Each sample covers filling, seeking, writing and the optional fsync.
    The first failure aborts the run with a `WriteError`, nothing is retried.
    Returns the number of bytes written.
    """

    done = 0
    for task in tasks:
        try:
            with sampler.measure(task.length):
                view = filler.fill(task.length)
                if fp.tell() != task.offset:
                    fp.seek(task.offset)
                _write_all(fp, view)
                if fsync:
                    fp.flush()
                    os.fsync(fp.fileno())
        except OSError as e:
            msg = f"Writing {task.length} bytes at offset {task.offset} failed: {e.strerror or e}"
            raise WriteError(e.errno, msg, getattr(fp, "name", None)) from e

        done += task.length
        logger.debug("Wrote %d bytes at offset %d with %.2f MiB/s", task.length, task.offset, sampler.samples[-1])
        if progressfunc is not None:
            progressfunc(done, total)

    return done


def compute_statistics(total_bytes: int, total_seconds: float, samples: Sequence[float]) -> RunStatistics:
    """The average speed is the throughput of the whole run, not the mean of the samples.
    The median is the upper middle element for even numbers of samples, no averaging.
    """

    if not samples:
        raise DegenerateInputError("Cannot compute statistics without any speed samples")

    ordered = sorted(samples)

    return RunStatistics(
        total_bytes=total_bytes,
        size_gib=round(total_bytes / GIB, 2),
        total_time=timedelta(seconds=total_seconds),
        writes=len(ordered),
        average_speed=round((total_bytes / MIB) / max(total_seconds, EPSILON), 2),
        max_speed=round(ordered[-1], 2),
        min_speed=round(ordered[0], 2),
        median_speed=round(ordered[len(ordered) // 2], 2),
    )


@contextmanager
def _wrap_oserror(path: Path, action: str) -> Iterator[None]:
    try:
        yield
    except WriteError:
        raise
    except OSError as e:
        raise WriteError(e.errno, f"{action} failed: {e.strerror or e}", os.fspath(path)) from e


def create_file(
    path: Union[str, Path],
    size: int,
    data_type: DataType = DataType.random,
    write_mode: WriteMode = WriteMode.sequential,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overwrite: bool = False,
    buffering: int = -1,
    fsync: bool = False,
    progressfunc: Optional[ProgressFunc] = None,
    rng: Optional[Random] = None,
) -> RunStatistics:
    """Creates `path` with a length of exactly `size` bytes and measures the write speed.

    In sequential mode the file is written front to back. In random mode the file is first set
    to its final length and then `ceil(size / chunk_size)` chunks are written at random offsets.
    The file is closed before any error propagates.
    """

    path = Path(path)

    if size <= 0:
        raise DegenerateInputError(f"Refusing to create a file of {size} bytes")
    if size > MAX_FILE_SIZE:
        raise SizeOverflow(f"Size {size} exceeds the maximum file size of {MAX_FILE_SIZE} bytes")
    if chunk_size <= 0:
        raise InputError(f"Chunk size must be positive, got {chunk_size}")
    if not path.parent.is_dir():
        raise PreconditionError(f"Directory `{path.parent}` does not exist")

    filler = make_filler(data_type, chunk_size)
    sampler = SpeedSampler()

    if write_mode == WriteMode.sequential:
        tasks = sequential_tasks(size, chunk_size)
        total = size
    elif write_mode == WriteMode.random:
        tasks = random_tasks(size, chunk_size, rng)
        total = random_writes(size, chunk_size) * min(chunk_size, size)
    else:
        raise ValueError(f"Invalid write mode: {write_mode}")

    logger.info(
        "Writing %s of %s data to `%s` in %s mode with chunk size %s",
        format_size(size),
        data_type.value,
        path,
        write_mode.value,
        format_size(chunk_size),
    )

    mode = "wb" if overwrite else "xb"
    try:
        fp = open(path, mode, buffering=buffering)
    except FileExistsError:
        raise PreconditionError(f"`{path}` already exists and overwriting is not allowed") from None
    except OSError as e:
        raise WriteError(e.errno, f"Opening file failed: {e.strerror or e}", os.fspath(path)) from e

    try:
        with _wrap_oserror(path, "Writing file"):
            with fp:
                if write_mode == WriteMode.random:
                    fp.truncate(size)
                start = time.perf_counter()
                written = write_tasks(
                    fp, tasks, filler, sampler, total=total, fsync=fsync, progressfunc=progressfunc
                )
                fp.flush()
                total_seconds = time.perf_counter() - start
    except (WriteError, KeyboardInterrupt):
        logger.warning("Writing aborted, `%s` is incomplete", path)
        raise

    logger.info("Wrote %d bytes in %d chunks in %.3f seconds", written, len(sampler.samples), total_seconds)

    return compute_statistics(size, total_seconds, sampler.samples)


def make_table(stats: RunStatistics) -> Table:
    table = Table(title="Write benchmark")

    table.add_column("Key", no_wrap=True)
    table.add_column("Value", justify="right")

    table.add_row("Total size", f"{stats.size_gib:.2f} GiB")
    table.add_row("Total time", str(stats.total_time))
    table.add_row("Writes", str(stats.writes))
    table.add_row("Average speed", f"{stats.average_speed:.2f} MiB/s")
    table.add_row("Max speed", f"{stats.max_speed:.2f} MiB/s")
    table.add_row("Min speed", f"{stats.min_speed:.2f} MiB/s")
    table.add_row("Median speed", f"{stats.median_speed:.2f} MiB/s")

    return table


def main(args: Namespace) -> int:
    try:
        size = parse_size(args.size)
        chunk_size = parse_size(args.chunk_size)
    except InputError as e:
        logger.error("%s", e)
        return 2

    if args.parents:
        try:
            args.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("Creating directory `%s` failed: %s", args.path.parent, e)
            return 2

    overwrite = args.overwrite
    if not overwrite and args.path.exists() and sys.stdin.isatty():
        if not Confirm.ask(f"`{args.path}` already exists. Overwrite?"):
            logger.warning("Cancelled by user, `%s` was left untouched", args.path)
            return 1
        overwrite = True

    columns = [
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        DownloadColumn(binary_units=True),
        TransferSpeedColumn(),
        TimeElapsedColumn(),
    ]

    try:
        with RichProgress(*columns, disable=args.no_progress) as progress:
            p = Progress(progress)
            with p.task(total=size, description=f"Writing {args.path.name}", transient=True) as task:

                def progressfunc(completed: int, total: int) -> None:
                    task.update(total=total, completed=completed)

                stats = create_file(
                    args.path,
                    size,
                    DataType(args.data),
                    WriteMode(args.mode),
                    chunk_size=chunk_size,
                    overwrite=overwrite,
                    buffering=args.buffering,
                    fsync=args.fsync,
                    progressfunc=progressfunc,
                )
    except (InputError, PreconditionError, DegenerateInputError) as e:
        logger.error("%s", e)
        return 2
    except WriteError as e:
        logger.error("%s", e)
        return 3

    if args.json:
        print(json.dumps(stats.as_dict(), indent=2))
    else:
        Console().print(make_table(stats))

    return 0


def setup_logging(level: int = logging.NOTSET, log_path: Optional[Path] = None) -> None:
    root = logging.getLogger()
    root.setLevel(level)

    if len(root.handlers) != 0:
        logger.debug("Root logger already has handlers set, skipping setup")
        return

    stream_handler = RichHandler(
        console=Console(stderr=True), log_time_format="%Y-%m-%d %H-%M-%S%Z", highlighter=NullHighlighter()
    )
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(stream_handler)

    if log_path is not None:
        if not log_path.name:
            log_filename = re.sub("[:-]", "", now().isoformat(timespec="seconds"))
            log_path = Path(f"write-benchmark-{log_filename}.log")
        file_formatter = IsoDatetimeFormatter(
            "%(asctime)s\t%(levelname)s\t%(message)s", sep=" ", timespec="seconds", aslocal=True
        )
        file_handler = logging.FileHandler(log_path, encoding="utf-8", delay=True)
        file_handler.setFormatter(file_formatter)
        root.addHandler(file_handler)


def get_parser() -> ArgumentParser:
    parser = ArgumentParser(
        description="Create a file of the given size with random or zero data and measure the write speed.",
        formatter_class=ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("path", type=Path, help="Output file path")
    parser.add_argument(
        "--size", required=True, help="File size as <integer><unit> with unit one of B, KB, MB, GB or TB"
    )
    parser.add_argument(
        "--data", choices=[t.value for t in DataType], default=DataType.random.value, help="Content of the file"
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in WriteMode],
        default=WriteMode.sequential.value,
        help="Write chunks one after another or at random offsets",
    )
    parser.add_argument("--chunk-size", default=format_size(DEFAULT_CHUNK_SIZE), help="Size of one write call")
    parser.add_argument("--overwrite", action="store_true", help="Replace the output file if it exists")
    parser.add_argument("--parents", action="store_true", help="Create missing parent directories")
    parser.add_argument(
        "--buffering",
        type=int,
        default=-1,
        help="Use -1 for default buffering, 0 for unbuffered and larger values the buffer size",
    )
    parser.add_argument("--fsync", action="store_true", help="Flush and fsync after every chunk")
    parser.add_argument("--json", action="store_true", help="Print the statistics as JSON")
    parser.add_argument("--no-progress", action="store_true", help="Don't show a progress bar")
    parser.add_argument(
        "--log",
        type=Path,
        nargs="?",
        const=Path(""),
        default=None,
        help="Also write the log to a file. If no path is given a timestamped file in the current directory is used.",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0)
    return parser


def cli(argv: Optional[Sequence[str]] = None) -> int:
    args = get_parser().parse_args(argv)

    if args.verbose == 0:
        setup_logging(logging.WARNING, args.log)
    elif args.verbose == 1:
        setup_logging(logging.INFO, args.log)
    else:
        setup_logging(logging.DEBUG, args.log)

    try:
        return main(args)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user. Exiting.")
        return 130
    except Exception:
        logger.exception("Creating file failed. Exiting.")
        return 1


if __name__ == "__main__":
    sys.exit(cli())
