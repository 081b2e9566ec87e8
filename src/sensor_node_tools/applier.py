"""Apply configuration documents to a sensor node over its serial console."""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, Sequence

from typeguard import typechecked

from . import SERIAL_BOOT_SETTLE_MS, SERIAL_REPLY_WINDOW_MS
from .device_config import DeviceConfig, build_command_plan
from .serial_comm import CommandExchange, SerialSession
from .types import LogSink

logger = logging.getLogger("sensor_node_tools.applier")

_MONITOR_CHUNK_MS = 500


@typechecked
class ConfigApplier:
    """Runs command dialogues against one port, one fresh session per run.

    Every run follows the same discipline:

    1. **Open** a new ``SerialSession`` (DTR/RTS asserted).
    2. **Settle** — read and discard boot chatter for ``settle_ms``.
    3. **Exchange** — for each command: write the line, then collect the
       reply window.  Replies go to the log sink verbatim; they are not
       interpreted.
    4. **Close** — always, including on errors and Ctrl+C.

    Example::

        applier = ConfigApplier("/dev/ttyUSB0", log_sink=print)
        applier.apply(load_config("node.json"), context="bench setup")
    """

    def __init__(
        self,
        port: str,
        log_sink: Optional[LogSink] = None,
        reply_window_ms: int = SERIAL_REPLY_WINDOW_MS,
        settle_ms: int = SERIAL_BOOT_SETTLE_MS,
        session_factory: Callable[..., SerialSession] = SerialSession,
    ) -> None:
        self.port = port
        self.log_sink = log_sink
        self.reply_window_ms = reply_window_ms
        self.settle_ms = settle_ms
        self._session_factory = session_factory

    def _emit(self, text: str) -> None:
        if self.log_sink is not None:
            self.log_sink(text)

    def _settle(self, session: SerialSession, context: str) -> None:
        if self.settle_ms <= 0:
            return
        discarded = session.read_for(self.settle_ms, context=f"{context}/settle")
        logger.info(
            "[APPLY] [%s] Discarded %d characters of boot output from %s",
            context, len(discarded), self.port,
        )

    def _run(self, commands: Sequence[str], context: str) -> List[CommandExchange]:
        exchanges = []
        with self._session_factory(self.port) as session:
            self._settle(session, context)
            for index, command in enumerate(commands, start=1):
                logger.info(
                    "[APPLY] [%s] Command %d/%d: %s", context, index, len(commands), command,
                )
                exchange = session.exchange(
                    command, context=context, reply_window_ms=self.reply_window_ms,
                )
                self._emit(f"> {command}")
                reply = exchange.reply.rstrip()
                if reply:
                    self._emit(reply)
                exchanges.append(exchange)
        return exchanges

    def apply(
        self,
        config: DeviceConfig,
        context: str,
        cal_load: bool = False,
        cal_save: bool = False,
    ) -> List[CommandExchange]:
        """Send the full command plan for *config* and return every exchange.

        Raises:
            TransportError: If the port cannot be opened or faults mid-run.
                Commands already sent stay applied on the device.
        """
        commands = build_command_plan(config, cal_load=cal_load, cal_save=cal_save)
        logger.info(
            "[APPLY] [%s] Applying %d commands to %s", context, len(commands), self.port,
        )
        exchanges = self._run(commands, context)
        logger.info("[APPLY] [%s] Done — %d commands sent to %s", context, len(exchanges), self.port)
        return exchanges

    def send_commands(self, commands: Sequence[str], context: str) -> List[CommandExchange]:
        """Send ad-hoc commands with the same settle/reply-window discipline."""
        return self._run(commands, context)

    def monitor(
        self,
        context: str,
        duration_ms: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> int:
        """Stream device output to the log sink without sending anything.

        Runs for *duration_ms*, or until interrupted when ``None``.  The
        port is released on every exit path.

        Returns:
            Number of characters received.
        """
        received = 0
        logger.info(
            "[MONITOR] [%s] Monitoring %s (%s)", context, self.port,
            f"{duration_ms} ms" if duration_ms is not None else "until interrupted",
        )
        with self._session_factory(self.port) as session:
            deadline = None if duration_ms is None else clock() + duration_ms / 1000.0
            while True:
                window = _MONITOR_CHUNK_MS
                if deadline is not None:
                    remaining_ms = int((deadline - clock()) * 1000)
                    if remaining_ms <= 0:
                        break
                    window = min(window, remaining_ms)
                received += len(session.read_for(window, context=context, on_data=self.log_sink))
        logger.info("[MONITOR] [%s] Stopped — %d characters received", context, received)
        return received
