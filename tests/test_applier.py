"""
ConfigApplier dialogues against a fake device.

Run with full visibility:
    pytest tests/test_applier.py -v -s
"""

from __future__ import annotations

import pytest
import serial

from sensor_node_tools.applier import ConfigApplier
from sensor_node_tools.device_config import parse_config
from sensor_node_tools.exceptions import TransportError
from sensor_node_tools.serial_comm import SerialSession


def _report(label, detail=""):
    # type: (str, str) -> None
    if detail:
        print("  [{}] {}".format(label, detail))
    else:
        print("  [{}]".format(label))


@pytest.fixture()
def make_applier(fake_clock, fake_serial_factory):
    sessions = []

    def session_factory(port):
        s = SerialSession(
            port, serial_factory=fake_serial_factory,
            clock=fake_clock, sleep=fake_clock.sleep,
        )
        sessions.append(s)
        return s

    def make(**kwargs):
        applier = ConfigApplier(
            "/dev/ttyFAKE0", session_factory=session_factory, **kwargs
        )
        applier.sessions = sessions
        return applier

    return make


def _boot_chatter(ser):
    ser.schedule(0.2, b"ets Jun  8 2016 00:22:57\r\nrst:0x1 (POWERON_RESET)\r\n")


class TestApply:

    def test_scenario_sequence(self, make_applier, fake_serial_factory) -> None:
        fake_serial_factory.configure = _boot_chatter
        lines = []
        applier = make_applier(log_sink=lines.append)
        exchanges = applier.apply(parse_config({"node_id": "A1", "fmt": "json"}), context="scenario")

        ser = fake_serial_factory.created[0]
        _report("WRITTEN", repr(ser.lines_written()))
        assert ser.lines_written() == [
            "poster", "status", "node A1", "fmt json",
            "cfg save", "cfg show", "status", "telem",
        ]
        assert [e.command for e in exchanges] == ser.lines_written()
        # boot chatter was discarded, not attributed to the first command
        assert all("POWERON" not in e.reply for e in exchanges)
        assert not ser.is_open and ser.close_calls == 1
        assert lines[0] == "> poster"

    def test_replies_reach_sink(self, make_applier, fake_serial_factory) -> None:
        def configure(ser):
            ser.replies["status"] = b"sensors: bme680 ok\r\n"
            ser.replies["telem"] = b'{"co2": 612}\r\n'

        fake_serial_factory.configure = configure
        lines = []
        exchanges = make_applier(log_sink=lines.append).apply(parse_config({}), context="sink")
        assert "sensors: bme680 ok" in lines
        assert '{"co2": 612}' in lines
        assert exchanges[-1].reply == '{"co2": 612}\r\n'

    def test_each_command_waits_for_its_window(self, make_applier, fake_clock) -> None:
        applier = make_applier(reply_window_ms=1500, settle_ms=2000)
        start = fake_clock()
        exchanges = applier.apply(parse_config({"sound": True}), context="timing")
        assert len(exchanges) == 7
        assert fake_clock() - start == pytest.approx(2.0 + 7 * 1.5)

    def test_calibration_flags(self, make_applier, fake_serial_factory) -> None:
        make_applier(settle_ms=0).apply(parse_config({}), context="cal", cal_load=True)
        written = fake_serial_factory.created[0].lines_written()
        assert written[2:4] == ["cal load", "cfg save"]

    def test_port_released_after_mid_run_fault(self, make_applier, fake_serial_factory) -> None:
        def configure(ser):
            original = ser.write

            def write(data):
                if data == b"node A1\n":
                    raise serial.SerialException("device reports readiness to read but returned no data")
                return original(data)

            ser.write = write

        fake_serial_factory.configure = configure
        applier = make_applier(settle_ms=0)
        with pytest.raises(TransportError):
            applier.apply(parse_config({"node_id": "A1", "fmt": "json"}), context="fault")
        ser = fake_serial_factory.created[0]
        assert ser.lines_written() == ["poster", "status"]
        assert not ser.is_open
        assert not applier.sessions[0].is_open()

    def test_open_failure_sends_nothing(self, make_applier, fake_serial_factory) -> None:
        def configure(ser):
            ser.open_error = serial.SerialException("could not open port: [Errno 13] Permission denied")

        fake_serial_factory.configure = configure
        with pytest.raises(TransportError):
            make_applier().apply(parse_config({"node_id": "A1"}), context="denied")
        assert fake_serial_factory.created[0].written == bytearray()

    def test_fresh_session_per_run(self, make_applier, fake_serial_factory) -> None:
        applier = make_applier(settle_ms=0, reply_window_ms=10)
        applier.apply(parse_config({}), context="run 1")
        applier.apply(parse_config({}), context="run 2")
        assert len(applier.sessions) == 2
        assert applier.sessions[0] is not applier.sessions[1]


class TestSendAndMonitor:

    def test_send_commands(self, make_applier, fake_serial_factory) -> None:
        fake_serial_factory.configure = lambda ser: ser.replies.update({"thr show": b"co2 1000/1500\n"})
        exchanges = make_applier(settle_ms=0).send_commands(["thr show"], context="send")
        assert exchanges[0].reply == "co2 1000/1500\n"

    def test_monitor_streams_for_duration(self, make_applier, fake_serial_factory, fake_clock) -> None:
        def configure(ser):
            ser.schedule(0.3, b"iaq=25 ")
            ser.schedule(1.7, b"iaq=26\n")
            ser.schedule(5.0, b"too late")

        fake_serial_factory.configure = configure
        chunks = []
        received = make_applier(log_sink=chunks.append).monitor(
            context="monitor", duration_ms=2000, clock=fake_clock,
        )
        assert "".join(chunks) == "iaq=25 iaq=26\n"
        assert received == len("iaq=25 iaq=26\n")
        assert fake_serial_factory.created[0].lines_written() == []
        assert not fake_serial_factory.created[0].is_open

    def test_monitor_releases_port_on_interrupt(self, make_applier, fake_serial_factory, fake_clock) -> None:
        def interrupt(_chunk):
            raise KeyboardInterrupt

        fake_serial_factory.configure = lambda ser: ser.schedule(0.1, b"x")
        with pytest.raises(KeyboardInterrupt):
            make_applier(log_sink=interrupt).monitor(context="ctrl-c", clock=fake_clock)
        assert not fake_serial_factory.created[0].is_open
