"""Serial session with timed reply windows for the sensor node CLI.

The device console is line oriented on the way in (one command per line,
``\\n`` terminated) but has no reply terminator on the way out.  A reply is
therefore *whatever arrives within N milliseconds of sending the command*:
``SerialSession.read_for`` polls the port for a fixed wall-clock window and
returns everything it accumulated.  This cannot tell a slow reply from a
finished one; long replies may be cut short and spill into the next window.

Cross-platform: works on Windows (COMx), Linux (/dev/ttyUSB*, /dev/ttyACM*)
and macOS (/dev/cu.*).

Default line settings: 115200 8N1, no flow control, DTR/RTS asserted.
"""

from __future__ import annotations

import codecs
import dataclasses
import enum
import logging
import platform
import time
from typing import Any, Callable, Optional

import serial
import serial.tools.list_ports
from typeguard import typechecked

from . import (
    SERIAL_BAUD_RATE,
    SERIAL_BYTESIZE,
    SERIAL_PARITY,
    SERIAL_STOPBITS,
    SERIAL_READ_TIMEOUT,
    SERIAL_WRITE_TIMEOUT,
    SERIAL_POLL_INTERVAL_S,
    SERIAL_REPLY_WINDOW_MS,
)
from .exceptions import TransportError
from .types import Clock, LogSink, Sleeper

logger = logging.getLogger("sensor_node_tools.serial_comm")

_IS_WINDOWS = platform.system() == "Windows"

# Map string parity values to pyserial constants
_PARITY_MAP = {
    "N": serial.PARITY_NONE,
    "E": serial.PARITY_EVEN,
    "O": serial.PARITY_ODD,
}

# Map integer stopbits to pyserial constants
_STOPBITS_MAP = {
    1: serial.STOPBITS_ONE,
    2: serial.STOPBITS_TWO,
}

# Map integer bytesize to pyserial constants
_BYTESIZE_MAP = {
    7: serial.SEVENBITS,
    8: serial.EIGHTBITS,
}


class SessionState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"


@dataclasses.dataclass(frozen=True)
class CommandExchange:
    """One command line and the raw text collected in its reply window.

    The reply is opaque diagnostic text; it is never parsed.
    """
    command: str
    reply: str


# ---------------------------------------------------------------------------
# Timed poll-read loop
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class _ReadLoopResult:
    """Internal result from ``_poll_read_loop``."""
    decoded: str
    bytes_received: int
    elapsed_seconds: float
    read_cycles: int


def _poll_read_loop(
    ser: Any,
    port_name: str,
    duration_s: float,
    clock: Clock,
    sleep: Sleeper,
    poll_interval_s: float,
    on_data: Optional[LogSink] = None,
    encoding: str = "utf-8",
    context: str = "",
) -> _ReadLoopResult:
    """Accumulate bytes from *ser* until *duration_s* has elapsed.

    Each cycle reads whatever ``in_waiting`` reports; an empty cycle sleeps
    for *poll_interval_s* (capped to the remaining time).  A per-attempt
    ``serial.SerialTimeoutException`` is expected and ignored.  Any other
    ``serial.SerialException`` or ``OSError`` propagates.
    """
    buffer = bytearray()
    start_time = clock()
    deadline = start_time + duration_s
    read_cycles = 0

    # Incremental decoder for the streaming callback: multi-byte
    # characters may be split across reads.
    inc_decoder = codecs.getincrementaldecoder(encoding)("replace") if on_data is not None else None

    while True:
        remaining = deadline - clock()
        if remaining <= 0:
            break

        read_cycles += 1
        try:
            waiting = ser.in_waiting
            chunk_bytes = ser.read(waiting) if waiting > 0 else b""
        except serial.SerialTimeoutException:
            logger.debug("[SERIAL-POLL] [%s] Read attempt timed out on %s", context, port_name)
            chunk_bytes = b""

        if not chunk_bytes:
            sleep(min(poll_interval_s, remaining))
            continue

        buffer.extend(chunk_bytes)
        logger.debug(
            "[SERIAL-POLL] +%d bytes from %s (total %d)",
            len(chunk_bytes), port_name, len(buffer),
        )

        if on_data is not None and inc_decoder is not None:
            chunk_str = inc_decoder.decode(chunk_bytes, False)
            if chunk_str:
                on_data(chunk_str)

    if on_data is not None and inc_decoder is not None:
        trailing = inc_decoder.decode(b"", True)
        if trailing:
            on_data(trailing)

    return _ReadLoopResult(
        decoded=buffer.decode(encoding, errors="replace"),
        bytes_received=len(buffer),
        elapsed_seconds=clock() - start_time,
        read_cycles=read_cycles,
    )


def _write_all(
    ser: Any,
    data: bytes,
    port_name: str,
    context: str = "",
) -> int:
    """Write *all* bytes to the serial port and flush the OS transmit buffer.

    Does **not** catch pyserial exceptions — the caller maps them.

    Raises:
        TransportError: If a short write is detected.
    """
    n = ser.write(data)
    if n is not None and n != len(data):
        raise TransportError(
            f"[{context}] Short write on {port_name}: "
            f"wrote {n}/{len(data)} bytes."
        )
    ser.flush()
    logger.debug(
        "[SERIAL-WRITE-ALL] [%s] Wrote %d bytes to %s",
        context, len(data), port_name,
    )
    return len(data)


@typechecked
class SerialSession:
    """One exclusively-owned serial dialogue with the device.

    The session goes ``CLOSED -> OPEN -> CLOSED`` exactly once; a closed
    session cannot be reopened, create a new one instead.  Use it as a
    context manager so the port is released on every exit path::

        with SerialSession("/dev/ttyUSB0") as session:
            session.write_line("status", context="snapshot")
            print(session.read_for(1500, context="snapshot"))

    The ``serial_factory``, ``clock`` and ``sleep`` parameters exist so
    tests can substitute a fake port and a fake clock.
    """

    def __init__(
        self,
        port: str,
        baud_rate: int = SERIAL_BAUD_RATE,
        read_timeout: float = SERIAL_READ_TIMEOUT,
        write_timeout: float = SERIAL_WRITE_TIMEOUT,
        bytesize: int = SERIAL_BYTESIZE,
        parity: str = SERIAL_PARITY,
        stopbits: int = SERIAL_STOPBITS,
        poll_interval_s: float = SERIAL_POLL_INTERVAL_S,
        serial_factory: Callable[..., Any] = serial.Serial,
        clock: Clock = time.monotonic,
        sleep: Sleeper = time.sleep,
    ) -> None:
        """Initialize the session without opening the port.

        Args:
            port: Serial port path — e.g. ``/dev/ttyUSB0`` (Linux) or ``COM3`` (Windows).
            baud_rate: Baud rate (default: 115200).
            read_timeout: Per-read driver timeout in seconds (default: 0.25).
                This is **not** the reply window.
            write_timeout: Write timeout in seconds (default: 2).
            bytesize: Data bits (7 or 8; default: 8).
            parity: ``"N"``, ``"E"`` or ``"O"`` (default: ``"N"``).
            stopbits: 1 or 2 (default: 1).
            poll_interval_s: Idle backoff between read attempts.

        Raises:
            TransportError: If any line setting is invalid.
        """
        if bytesize not in _BYTESIZE_MAP:
            raise TransportError(
                f"Invalid bytesize {bytesize!r} for port {port}. "
                f"Must be one of: {', '.join(str(k) for k in sorted(_BYTESIZE_MAP))}."
            )
        if parity.upper() not in _PARITY_MAP:
            raise TransportError(
                f"Invalid parity {parity!r} for port {port}. "
                f"Must be one of: {', '.join(sorted(_PARITY_MAP))}."
            )
        if stopbits not in _STOPBITS_MAP:
            raise TransportError(
                f"Invalid stopbits {stopbits!r} for port {port}. Must be 1 or 2."
            )
        if baud_rate <= 0:
            raise TransportError(
                f"Invalid baud rate {baud_rate!r} for port {port}. "
                f"Baud rate must be a positive integer."
            )

        self.port = port
        self.baud_rate = baud_rate
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.bytesize = _BYTESIZE_MAP[bytesize]
        self.parity = _PARITY_MAP[parity.upper()]
        self.stopbits = _STOPBITS_MAP[stopbits]
        self.poll_interval_s = poll_interval_s
        self._serial_factory = serial_factory
        self._clock = clock
        self._sleep = sleep
        self._serial = None
        self._used = False
        self.state = SessionState.CLOSED

    # ---- Lifecycle ----

    def open(self, context: str) -> None:
        """Open the port: 8N1, no flow control, DTR and RTS asserted.

        Args:
            context: Description of the purpose, embedded into error messages.

        Raises:
            TransportError: If the session was already used, or the port
                cannot be opened (missing, busy, permission denied).
        """
        if self._used:
            raise TransportError(
                f"[{context}] Session on {self.port} has already been used. "
                f"Open a new SerialSession for another dialogue."
            )
        self._used = True

        logger.info(
            "[SERIAL-OPEN] [%s] Opening %s at %d baud (read_timeout=%.2fs) ...",
            context, self.port, self.baud_rate, self.read_timeout,
        )

        ser = None
        try:
            ser = self._serial_factory(
                baudrate=self.baud_rate,
                bytesize=self.bytesize,
                parity=self.parity,
                stopbits=self.stopbits,
                timeout=self.read_timeout,
                write_timeout=self.write_timeout,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
                exclusive=None if _IS_WINDOWS else True,
            )
            ser.port = self.port
            # Applied by pyserial when the port opens
            ser.dtr = True
            ser.rts = True
            ser.open()
        except (serial.SerialException, OSError, ValueError) as exc:
            if ser is not None:
                try:
                    ser.close()
                except Exception:
                    pass
            msg = (
                f"[{context}] Failed to open serial port {self.port} at "
                f"{self.baud_rate} baud: {exc}. {self._platform_hint()}"
            )
            logger.error("[SERIAL-OPEN] FAILED — %s", msg)
            raise TransportError(msg) from exc

        self._serial = ser
        self.state = SessionState.OPEN
        logger.info("[SERIAL-OPEN] [%s] Successfully opened %s", context, self.port)

    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    def close(self) -> None:
        """Close the port. Safe to call any number of times."""
        was_open = self.is_open()
        ser, self._serial = self._serial, None
        self.state = SessionState.CLOSED

        if ser is not None:
            try:
                ser.close()
            except Exception as exc:
                logger.warning("[SERIAL-CLOSE] Error closing port %s: %s", self.port, exc)

        if was_open:
            logger.info("[SERIAL-CLOSE] Closed %s", self.port)
        else:
            logger.debug("[SERIAL-CLOSE] close() called on closed port %s", self.port)

    def __enter__(self) -> SerialSession:
        self.open(context=f"Opening {self.port}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close()

    # ---- Dialogue ----

    def _assert_open(self, operation: str, context: str) -> Any:
        if self._serial is None or not self.is_open():
            msg = (
                f"[{context}] Cannot {operation} on serial port {self.port}: "
                f"session is not open."
            )
            logger.error("[SERIAL] %s", msg)
            raise TransportError(msg)
        return self._serial

    def write_line(self, text: str, context: str, encoding: str = "utf-8") -> int:
        """Send *text* followed by exactly one ``\\n``.

        Returns:
            Number of bytes written, newline included.

        Raises:
            TransportError: If *text* contains a line break, or on write
                timeout or port fault.
        """
        if "\n" in text or "\r" in text:
            msg = f"[{context}] Command must be a single line, got {text!r}; nothing was sent."
            logger.error("[SERIAL-WRITE] %s", msg)
            raise TransportError(msg)

        ser = self._assert_open("write", context)
        data = (text + "\n").encode(encoding)
        try:
            n = _write_all(ser, data, self.port, context=context)
        except serial.SerialTimeoutException as exc:
            msg = (
                f"[{context}] Write to {self.port} timed out after "
                f"{self.write_timeout}s while sending {text!r}. "
                f"The device may have stopped draining its input."
            )
            logger.error("[SERIAL-WRITE] TIMEOUT — %s", msg)
            raise TransportError(msg) from exc
        except (serial.SerialException, OSError) as exc:
            msg = (
                f"[{context}] Failed to write to serial port {self.port}: {exc}. "
                f"The device may have been disconnected."
            )
            logger.error("[SERIAL-WRITE] ERROR — %s", msg)
            raise TransportError(msg) from exc

        logger.info("[SERIAL-WRITE] [%s] > %s", context, text)
        return n

    def read_for(
        self,
        duration_ms: int,
        context: str,
        on_data: Optional[LogSink] = None,
        encoding: str = "utf-8",
    ) -> str:
        """Collect everything that arrives within *duration_ms* milliseconds.

        Silence is not an error; an empty string is returned.

        Raises:
            TransportError: If the window is negative or the port faults
                during it.
        """
        ser = self._assert_open("read", context)
        if duration_ms < 0:
            raise TransportError(f"[{context}] Read window must be >= 0 ms, got {duration_ms}")

        try:
            result = _poll_read_loop(
                ser=ser,
                port_name=self.port,
                duration_s=duration_ms / 1000.0,
                clock=self._clock,
                sleep=self._sleep,
                poll_interval_s=self.poll_interval_s,
                on_data=on_data,
                encoding=encoding,
                context=context,
            )
        except (serial.SerialException, OSError) as exc:
            msg = (
                f"[{context}] Serial read error on {self.port}: {exc}. "
                f"The device may have been disconnected during the read."
            )
            logger.error("[SERIAL-READ] ERROR — %s", msg)
            raise TransportError(msg) from exc

        logger.debug(
            "[SERIAL-READ] [%s] %d bytes in %.3fs from %s (%d poll cycles)",
            context, result.bytes_received, result.elapsed_seconds,
            self.port, result.read_cycles,
        )
        return result.decoded

    def exchange(
        self,
        command: str,
        context: str,
        reply_window_ms: int = SERIAL_REPLY_WINDOW_MS,
    ) -> CommandExchange:
        """Send one command and collect its reply window."""
        self.write_line(command, context=context)
        reply = self.read_for(reply_window_ms, context=context)
        return CommandExchange(command=command, reply=reply)

    # ---- Helpers ----

    def _platform_hint(self) -> str:
        """Return a platform-specific troubleshooting hint."""
        try:
            available = ", ".join(p.device for p in serial.tools.list_ports.comports()) or "none"
        except Exception:
            available = "unknown"
        if _IS_WINDOWS:
            return (
                "On Windows: verify the COM port number in Device Manager "
                "(Ports → COM & LPT). Ensure no other application (serial "
                "monitor, Arduino IDE, PuTTY) has the port open. "
                f"Available ports: {available}."
            )
        return (
            "On Linux: verify the device path exists (ls /dev/ttyUSB* /dev/ttyACM*). "
            "Ensure your user is in the 'dialout' group "
            "(sudo usermod -aG dialout $USER) and that no other process "
            "(pio device monitor, minicom, screen) has the port open. "
            f"Available ports: {available}."
        )
