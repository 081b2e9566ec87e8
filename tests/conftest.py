"""Pytest configuration — path setup, logging, and shared serial/clock fakes."""

import logging
import os
import sys
from typing import Dict, List, Optional, Tuple

import pytest

# ---------------------------------------------------------------------------
# Path setup: ensure the package is importable regardless of installation
# ---------------------------------------------------------------------------
_SRC_DIR = os.path.join(os.path.dirname(__file__), os.pardir, "src")
_SRC_DIR = os.path.normpath(_SRC_DIR)
if _SRC_DIR not in sys.path:
    sys.path.insert(0, _SRC_DIR)

# ---------------------------------------------------------------------------
# Logging: route all library log output to the console so pytest -s shows it
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is called."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSerial:
    """In-memory stand-in for ``serial.Serial`` driven by a ``FakeClock``.

    Incoming bytes are scheduled on the clock's timeline; ``replies`` maps a
    command line to the bytes the "device" answers with, delivered
    ``reply_delay`` seconds after the write.
    """

    def __init__(self, clock: FakeClock, **kwargs) -> None:
        self.clock = clock
        self.kwargs = kwargs
        self.port: Optional[str] = None
        self.dtr = False
        self.rts = False
        self.dtr_at_open: Optional[bool] = None
        self.rts_at_open: Optional[bool] = None
        self.is_open = False
        self.close_calls = 0
        self.written = bytearray()
        self.replies: Dict[str, bytes] = {}
        self.reply_delay = 0.05
        self.open_error: Optional[Exception] = None
        self.write_error: Optional[Exception] = None
        self.read_error: Optional[Exception] = None
        self._pending: List[Tuple[float, bytes]] = []

    def schedule(self, delay: float, data: bytes) -> None:
        self._pending.append((self.clock() + delay, data))

    def _due(self) -> bytes:
        return b"".join(d for t, d in self._pending if t <= self.clock())

    def open(self) -> None:
        if self.open_error is not None:
            raise self.open_error
        self.dtr_at_open = self.dtr
        self.rts_at_open = self.rts
        self.is_open = True

    def close(self) -> None:
        self.close_calls += 1
        self.is_open = False

    @property
    def in_waiting(self) -> int:
        if self.read_error is not None:
            raise self.read_error
        return len(self._due())

    def read(self, size: int = 1) -> bytes:
        now = self.clock()
        ready = [(t, d) for t, d in self._pending if t <= now]
        self._pending = [(t, d) for t, d in self._pending if t > now]
        data = b"".join(d for _, d in ready)
        if len(data) > size:
            self._pending.insert(0, (now, data[size:]))
            data = data[:size]
        return data

    def write(self, data: bytes) -> int:
        if self.write_error is not None:
            raise self.write_error
        self.written.extend(data)
        line = data.decode("utf-8").rstrip("\n")
        if line in self.replies:
            self.schedule(self.reply_delay, self.replies[line])
        return len(data)

    def flush(self) -> None:
        pass

    def lines_written(self) -> List[str]:
        return self.written.decode("utf-8").splitlines()


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def fake_serial_factory(fake_clock):
    """Factory suitable for ``SerialSession(serial_factory=...)``.

    The created fakes are available as ``factory.created``.
    """
    created: List[FakeSerial] = []

    def factory(**kwargs) -> FakeSerial:
        ser = FakeSerial(fake_clock, **kwargs)
        if factory.configure is not None:
            factory.configure(ser)
        created.append(ser)
        return ser

    factory.created = created
    factory.configure = None
    return factory
