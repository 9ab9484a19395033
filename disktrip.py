#!/usr/bin/env python3
"""
DiskTrip: write / read-back / verify large pseudo-random files

What it does:
  • Writes a deterministic xorshift byte stream to FILE (fixed size or "fill" the volume)
  • Re-derives the same stream while reading FILE back and compares byte-for-byte
  • Reports the number of mismatching bytes and a CRC-32 "signature" of the failure set
    (same signature on two passes => same bytes at the same offsets are bad)
  • Progress every 500 MB with an outlier-trimmed average speed
  • JSON report via --report-json <path> (JSON Lines)

The test file is kept unless --delete is given.

The stream generator is plain Python and tops out around a few tens of MB/s,
so on fast drives the [WRITE] / [READ ] speeds measure the CPU, not the device.
"""

import argparse
import errno
import json
import os
import platform
import re
import shutil
import statistics
import struct
import sys
import time
import zlib
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple, Union

__version__ = "1.0.0"

BLOCK_SIZE = 32  # generator granularity: 4 x 64-bit words
CHUNK_SIZE = 32768
FILL_STEP = 512
PROGRESS_EVERY = 500_000_000
SPEED_WINDOW = 40  # 20 GB at the default progress interval

FILL = "fill"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_MISMATCH = 3

_SEED = (123456789, 362436069, 521288629, 88675123)
_MASK64 = 0xFFFFFFFFFFFFFFFF

# Windows: ERROR_HANDLE_DISK_FULL, ERROR_DISK_FULL
_DISK_FULL_WINERRORS = (39, 112)
_DISK_FULL_ERRNOS = tuple(
    e for e in (getattr(errno, "ENOSPC", None), getattr(errno, "EDQUOT", None)) if e
)

# ---------------------------- helpers ----------------------------


def human_bytes(n: float) -> str:
    for unit in ["B", "KB", "MB", "GB", "TB", "PB", "EB"]:
        if n < 1024.0:
            return f"{n:.2f} {unit}"
        n /= 1024.0
    return f"{n:.2f} ZB"


_SIZE_PAT = re.compile(r"^(?P<num>\d+([,.]\d*)?)(?P<suf>\w+)?$")
_SIZE_UNITS = {
    "b": 1,
    "k": 1_000,
    "m": 1_000_000,
    "g": 1_000_000_000,
    "t": 1_000_000_000_000,
    "ki": 1024,
    "mi": 1024**2,
    "gi": 1024**3,
    "ti": 1024**4,
}


def parse_size(size: str) -> Union[int, str]:
    """Parse a --write value into a byte count, or FILL for fill/full/free.

    Plain numbers are decimal gigabytes. Raises ValueError on anything else.
    """
    s = size.strip().lower()
    if s in ("fill", "full", "free"):
        return FILL
    m = _SIZE_PAT.match(s)
    if not m:
        raise ValueError(f'The format of option --write "{size}" is not recognized.')
    num = float(m.group("num").replace(",", "."))
    suf = m.group("suf") or "g"
    if suf not in _SIZE_UNITS:
        raise ValueError(
            f'The suffix "{suf}" in option --write "{size}" is not recognized.'
        )
    return int(round(num * _SIZE_UNITS[suf]))


def free_space(path: str) -> int:
    """Bytes currently available to this user on the volume holding path."""
    return shutil.disk_usage(path).free


def is_disk_full(ex: OSError) -> bool:
    if getattr(ex, "winerror", None) in _DISK_FULL_WINERRORS:
        return True
    return ex.errno in _DISK_FULL_ERRNOS


def _check_chunk_size(chunk_size: int) -> None:
    if chunk_size <= 0 or chunk_size % BLOCK_SIZE != 0:
        raise ValueError(
            f"Chunk size must be a positive multiple of {BLOCK_SIZE} (got {chunk_size})."
        )


# --------------------------- generator ---------------------------


class RandomXorshift:
    """Deterministic xorshift byte stream.

    Every instance starts from the same four constants, so two instances that
    are fed the same total number of bytes (in calls of any multiple of
    BLOCK_SIZE) produce identical output.
    """

    def __init__(self) -> None:
        self._x, self._y, self._z, self._w = _SEED

    def next_bytes(self, buf) -> None:
        """Fill buf (bytearray or writable memoryview) with the next len(buf) bytes."""
        if len(buf) % BLOCK_SIZE != 0:
            raise ValueError(
                f"The buffer length must be a multiple of {BLOCK_SIZE} (got {len(buf)})."
            )
        x, y, z, w = self._x, self._y, self._z, self._w
        words = []
        append = words.append
        for _ in range(len(buf) // BLOCK_SIZE):
            tx = x ^ ((x << 11) & _MASK64)
            ty = y ^ ((y << 11) & _MASK64)
            tz = z ^ ((z << 11) & _MASK64)
            tw = w ^ ((w << 11) & _MASK64)
            x = w ^ (w >> 19) ^ tx ^ (tx >> 8)
            y = x ^ (x >> 19) ^ ty ^ (ty >> 8)
            z = y ^ (y >> 19) ^ tz ^ (tz >> 8)
            w = z ^ (z >> 19) ^ tw ^ (tw >> 8)
            append(x)
            append(y)
            append(z)
            append(w)
        struct.pack_into(f"<{len(words)}Q", buf, 0, *words)
        self._x, self._y, self._z, self._w = x, y, z, w


# --------------------------- throughput ---------------------------


class ThroughputEstimator:
    """Rolling window of speed samples with an outlier-trimmed average."""

    def __init__(self, capacity: int = SPEED_WINDOW) -> None:
        self.samples: Deque[float] = deque(maxlen=capacity)

    def add(self, speed: float) -> None:
        self.samples.append(speed)

    def average(self) -> float:
        values = list(self.samples)
        if not values:
            return 0.0
        # drop at most the worst-fitting 20%
        for _ in range(len(self.samples) // 5):
            avg = statistics.fmean(values)
            worst = max(values, key=lambda v: abs(v - avg))
            lo, hi = min(avg, worst), max(avg, worst)
            if hi == lo or (lo > 0 and hi / lo < 1.2):
                return avg
            values.remove(worst)
        return statistics.fmean(values)


class _Progress:
    """Prints a progress line each time it is told about a checkpoint."""

    def __init__(self, tag: str, verb: str, clock: Callable[[], float]) -> None:
        self.tag = tag
        self.verb = verb
        self.clock = clock
        self.speeds = ThroughputEstimator()
        self.last_at = 0
        self._tic = clock()

    def report(self, position: int, remaining: int, extra: str = "") -> None:
        if position == self.last_at:
            return
        now = self.clock()
        speed = (position - self.last_at) / max(now - self._tic, 1e-9)
        self._tic = now
        self.speeds.add(speed)
        self.last_at = position
        total = position + remaining
        pct = position / total * 100.0 if total else 100.0
        print(
            f"[{self.tag}]   {self.verb} {position / 1_000_000:,.0f} MB @ {speed / 1_000_000:,.0f} MB/s "
            f"({self.speeds.average() / 1_000_000:,.0f} MB/s average), {pct:.2f}%{extra}"
        )


def _crossed(position: int, step: int, every: int) -> bool:
    return position // every != (position - step) // every


# -------------------------- write engine --------------------------


class WriteResult:
    def __init__(self, ok: bool, written: int, disk_full: bool = False, seconds: float = 0.0):
        self.ok = ok
        self.written = written
        self.disk_full = disk_full
        self.seconds = seconds

    def __repr__(self) -> str:
        return (
            f"WriteResult(ok={self.ok}, written={self.written}, "
            f"disk_full={self.disk_full}, seconds={self.seconds:.2f})"
        )


def _fill_up(f, view: memoryview) -> int:
    """Write as much of view as still fits, shrinking by FILL_STEP on every disk-full error."""
    length = len(view) // FILL_STEP * FILL_STEP
    done = 0
    while done < length:
        try:
            n = f.write(view[done:length])
        except OSError as ex:
            if not is_disk_full(ex):
                raise
            length -= FILL_STEP
            continue
        if not n:
            break
        done += n
    return done


def _write_chunk(f, view: memoryview) -> Tuple[int, bool]:
    """Write all of view. Returns (bytes written, disk full)."""
    done = 0
    while done < len(view):
        try:
            n = f.write(view[done:])
        except OSError as ex:
            if not is_disk_full(ex):
                raise
            return done + _fill_up(f, view[done:]), True
        if not n:
            return done, True
        done += n
    return done, False


def write_stream(
    f,
    size: Union[int, str],
    available: Optional[Callable[[], int]] = None,
    chunk_size: int = CHUNK_SIZE,
    progress_every: int = PROGRESS_EVERY,
    clock: Callable[[], float] = time.perf_counter,
) -> WriteResult:
    """Drain a fresh generator into the open binary file f.

    size is a byte count or FILL. In fill mode `available` is queried at the
    start, at every progress checkpoint and whenever the previous estimate
    has been used up; no write goes past the latest estimate (rounded down to
    whole blocks), and writing stops when the volume reports full or the
    estimate drops below one block. Disk full is not an error.
    Any other OSError propagates.
    """
    _check_chunk_size(chunk_size)
    fill = size == FILL
    if fill and available is None:
        raise ValueError("Fill mode needs a free-space query.")

    def estimate() -> int:
        return max(available(), 0) // BLOCK_SIZE * BLOCK_SIZE

    rnd = RandomXorshift()
    data = bytearray(chunk_size)
    view = memoryview(data)
    progress = _Progress("WRITE", "written", clock)
    t0 = clock()
    remaining = estimate() if fill else int(size)
    written = 0
    while remaining > 0:
        n = min(remaining, chunk_size)
        # fill mode may write a short chunk mid-stream, so only whole blocks are generated
        rnd.next_bytes(view[:n] if fill else data)
        done, full = _write_chunk(f, view[:n])
        written += done
        remaining = max(remaining - done, 0)
        if full:
            progress.report(written, 0)
            print("[WRITE]   stopping because the disk is full")
            return WriteResult(True, written, disk_full=True, seconds=clock() - t0)
        checkpoint = _crossed(written, done, progress_every)
        if fill and (checkpoint or remaining == 0):
            remaining = estimate()
        if checkpoint:
            progress.report(written, remaining)
    progress.report(written, 0)
    return WriteResult(True, written, seconds=clock() - t0)


def write_test_file(
    path: str,
    size: Union[int, str],
    free_space_fn: Callable[[str], int] = free_space,
    chunk_size: int = CHUNK_SIZE,
    progress_every: int = PROGRESS_EVERY,
) -> WriteResult:
    """Create (or truncate) path and write the test stream into it.

    Fatal I/O errors are logged and reported as ok=False; the partial file is left behind.
    """
    directory = os.path.dirname(os.path.abspath(path))
    written = 0
    try:
        if size == FILL:
            print(
                f"[WRITE] Filling free space at {path} "
                f"(~{human_bytes(free_space_fn(directory))} available)"
            )
        else:
            print(f"[WRITE] Creating {human_bytes(int(size))} at {path} (chunk {human_bytes(chunk_size)})")
        with open(path, "wb", buffering=0) as f:
            try:
                result = write_stream(
                    f,
                    size,
                    available=lambda: free_space_fn(directory),
                    chunk_size=chunk_size,
                    progress_every=progress_every,
                )
            finally:
                written = f.tell()
            os.fsync(f.fileno())
    except OSError as e:
        print(f"[ERR  ] Could not write to file: {e}", file=sys.stderr)
        return WriteResult(False, written)

    if result.seconds > 0:
        print(
            f"[WRITE] Wrote {human_bytes(result.written)} in {result.seconds:.2f}s  →  "
            f"{result.written / result.seconds / (1024**2):.1f} MB/s"
        )
    return result


# -------------------------- verify engine --------------------------


class Signature:
    """CRC-32 over (offset int64 LE, actual byte) records of every mismatching byte."""

    _RECORD = struct.Struct("<qB")

    def __init__(self) -> None:
        self._crc = 0

    def add(self, offset: int, value: int) -> None:
        self._crc = zlib.crc32(self._RECORD.pack(offset, value), self._crc)

    @property
    def value(self) -> int:
        return self._crc & 0xFFFFFFFF

    def __str__(self) -> str:
        return f"{self.value:08X}"


class VerifyResult:
    def __init__(
        self,
        ok: bool,
        verified: int,
        errors: int,
        signature: int,
        seconds: float = 0.0,
        mismatches: Optional[list] = None,
    ):
        self.ok = ok
        self.verified = verified
        self.errors = errors
        self.signature = signature
        self.seconds = seconds
        # first few (offset, actual) pairs, for display
        self.mismatches = mismatches if mismatches is not None else []

    def __repr__(self) -> str:
        return (
            f"VerifyResult(ok={self.ok}, verified={self.verified}, "
            f"errors={self.errors}, signature={self.signature:08X})"
        )


def _read_chunk(f, view: memoryview) -> int:
    done = 0
    while done < len(view):
        n = f.readinto(view[done:])
        if not n:
            break
        done += n
    return done


def verify_stream(
    f,
    chunk_size: int = CHUNK_SIZE,
    progress_every: int = PROGRESS_EVERY,
    clock: Callable[[], float] = time.perf_counter,
    keep_mismatches: int = 16,
) -> VerifyResult:
    """Compare the open binary file f against a fresh generator.

    The length comes from the file itself. OSError propagates, including a
    file that ends before its reported size.
    """
    _check_chunk_size(chunk_size)
    total = f.seek(0, os.SEEK_END)
    f.seek(0)

    rnd = RandomXorshift()
    expected = bytearray(chunk_size)
    actual = bytearray(chunk_size)
    actual_view = memoryview(actual)
    signature = Signature()
    mismatches = []
    errors = 0
    position = 0
    progress = _Progress("READ ", "verified", clock)
    t0 = clock()
    while position < total:
        want = min(total - position, chunk_size)
        n = _read_chunk(f, actual_view[:want])
        if n < want:
            raise OSError(
                errno.EIO, f"File ended after {position + n:,} of {total:,} bytes"
            )
        rnd.next_bytes(expected)

        # wide pass over whole blocks; on any difference rescan the whole chunk
        aligned = n // BLOCK_SIZE * BLOCK_SIZE
        start = 0 if actual[:aligned] != expected[:aligned] else aligned
        for i in range(start, n):
            if actual[i] != expected[i]:
                errors += 1
                signature.add(position + i, actual[i])
                if len(mismatches) < keep_mismatches:
                    mismatches.append((position + i, actual[i]))

        position += n
        if _crossed(position, n, progress_every):
            progress.report(
                position,
                total - position,
                f", errors: {errors:,}, signature: {signature}",
            )
    progress.report(position, 0, f", errors: {errors:,}, signature: {signature}")
    return VerifyResult(True, position, errors, signature.value, clock() - t0, mismatches)


def read_verify(
    path: str,
    chunk_size: int = CHUNK_SIZE,
    progress_every: int = PROGRESS_EVERY,
) -> VerifyResult:
    """Verify the file at path. Read errors are logged and reported as ok=False."""
    try:
        with open(path, "rb", buffering=0) as f:
            size = os.fstat(f.fileno()).st_size
            print(f"[READ ] Reading & verifying {human_bytes(size)} from {path}")
            result = verify_stream(f, chunk_size=chunk_size, progress_every=progress_every)
    except OSError as e:
        print(f"[ERR  ] Could not read file: {e}", file=sys.stderr)
        return VerifyResult(False, 0, 0, 0)

    if result.seconds > 0:
        print(
            f"[READ ] Read {human_bytes(result.verified)} in {result.seconds:.2f}s  →  "
            f"{result.verified / result.seconds / (1024**2):.1f} MB/s"
        )
    return result


# -------------------------- orchestration --------------------------


def _write_report_json(path: str, obj: Dict[str, object]) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(obj, ensure_ascii=False) + "\n")
    print(f"[REPORT] Appended JSON to {path}")


def run(
    path: str,
    write: Union[int, str, None] = None,
    delete: bool = False,
    report_json: Optional[str] = None,
    free_space_fn: Callable[[str], int] = free_space,
    chunk_size: int = CHUNK_SIZE,
    progress_every: int = PROGRESS_EVERY,
) -> int:
    """[write] -> verify -> [delete] -> report. Returns the process exit status."""
    report: Dict[str, object] = {
        "timestamp_local": time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime()),
        "script_version": __version__,
        "python_version": sys.version.split()[0],
        "os": {"system": platform.system(), "release": platform.release()},
        "file": path,
        "mode": "verify-only" if write is None else ("fill" if write == FILL else "write-read"),
        "write": None,
        "read": None,
        "integrity": None,
    }

    if write is not None:
        w = write_test_file(
            path, write, free_space_fn=free_space_fn, chunk_size=chunk_size, progress_every=progress_every
        )
        report["write"] = {
            "ok": w.ok,
            "bytes": w.written,
            "seconds": w.seconds,
            "disk_full": w.disk_full,
        }
        if not w.ok:
            if report_json:
                _write_report_json(report_json, report)
            return EXIT_FAILURE

    v = read_verify(path, chunk_size=chunk_size, progress_every=progress_every)
    report["read"] = {"ok": v.ok, "bytes": v.verified, "seconds": v.seconds}

    # unreadable file is kept for inspection, even with --delete
    if not v.ok:
        if report_json:
            _write_report_json(report_json, report)
        return EXIT_FAILURE

    if delete:
        try:
            os.remove(path)
            print("[INFO ] Test file deleted.")
        except OSError as e:
            print(f"[ERR  ] Could not delete test file: {e}", file=sys.stderr)

    report["integrity"] = {
        "ok": v.errors == 0,
        "errors": v.errors,
        "signature": f"{v.signature:08X}",
    }
    if report_json:
        _write_report_json(report_json, report)

    if v.errors == 0:
        print("[OK   ] No errors detected.")
        return EXIT_OK
    print(
        f"[FAIL ] Errors found. Mismatching bytes count: {v.errors:,}. Signature: {v.signature:08X}"
    )
    for offset, value in v.mismatches:
        print(f"[FAIL ]   offset {offset:,}: read 0x{value:02X}")
    if len(v.mismatches) < v.errors:
        print(f"[FAIL ]   ... and {v.errors - len(v.mismatches):,} more")
    return EXIT_MISMATCH


# ------------------------------- main -------------------------------


def build_argparser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="disktrip",
        description=(
            "Reads, writes and verifies large pseudo-random files in order to "
            "confirm error-less filesystem read/write operations."
        ),
        epilog=(
            "Speeds are limited by the pure-Python stream generator (a few tens of MB/s); "
            "on fast drives they reflect the CPU, not the device."
        ),
    )
    ap.add_argument("file", help="The name of the test file to write and/or verify.")
    ap.add_argument(
        "-w",
        "--write",
        metavar="SIZE",
        help=(
            "Write a test file SIZE long, then read and verify it. Suffixes K, M, G (default), "
            "T, Ki, Mi, Gi, Ti or b (case-insensitive). 'fill' (or 'full' / 'free') consumes "
            "all free space. When omitted, the existing test file is verified."
        ),
    )
    ap.add_argument(
        "-d",
        "--delete",
        action="store_true",
        help="Delete the test file after verifying (normally it is kept regardless of the outcome)",
    )
    ap.add_argument(
        "-o",
        "--overwrite",
        action="store_true",
        help="Allow overwriting the test file if it already exists",
    )
    ap.add_argument(
        "--report-json", help="Append one JSON object per run to this file (JSON Lines)"
    )
    return ap


def main(argv=None) -> int:
    ap = build_argparser()
    args = ap.parse_args(argv)

    write = None
    if args.write is not None:
        try:
            write = parse_size(args.write)
        except ValueError as e:
            raise SystemExit(f"[ERR  ] {e}")
    elif args.overwrite:
        raise SystemExit(
            "[ERR  ] Option --overwrite has no effect unless --write is also specified."
        )

    path = os.path.abspath(args.file)
    if write is not None and os.path.exists(path) and not args.overwrite:
        raise SystemExit(
            f"[ERR  ] The file {path} already exists. Use option --overwrite to overwrite it."
        )
    if write is None and not os.path.exists(path):
        raise SystemExit(
            f"[ERR  ] The file {path} does not exist. Use option --write to create one."
        )

    print(f"=== DiskTrip v{__version__} ===")
    try:
        return run(path, write, delete=args.delete, report_json=args.report_json)
    except KeyboardInterrupt:
        print("\n[ABORT] Interrupted by user.")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
