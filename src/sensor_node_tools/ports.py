"""Serial port discovery and heuristic selection.

``list_ports`` enumerates serial endpoints through pyserial's
``list_ports.comports()`` (which reports USB vendor/product ids and a
human-readable description) and falls back to a bare device-name scan when
that fails.  ``select_best`` then ranks the result:

1. display name contains one of ``PORT_KEYWORDS`` (keyword order wins),
2. vendor id equals ``KNOWN_VENDOR_ID``,
3. first port by identifier.

An explicit port always bypasses the heuristic (see ``resolve_port``).
"""

from __future__ import annotations

import dataclasses
import glob
import logging
import platform
import re
from typing import Callable, List, Optional, Sequence

import serial.tools.list_ports

from . import KNOWN_VENDOR_ID, PORT_KEYWORDS
from .exceptions import PortNotFound

logger = logging.getLogger("sensor_node_tools.ports")

_IS_WINDOWS = platform.system() == "Windows"

# Device-name patterns used when pyserial's enumerator is unavailable
_FALLBACK_GLOBS = (
    "/dev/ttyUSB*",
    "/dev/ttyACM*",
    "/dev/cu.usb*",
    "/dev/tty.usb*",
    "/dev/ttyS*",
)

# "USB VID:PID=303A:1001 SER=..." (pyserial) and "USB\VID_10C4&PID_EA60\..." (Windows)
_HWID_PATTERNS = (
    re.compile(r"VID:PID=([0-9A-Fa-f]{4}):([0-9A-Fa-f]{4})"),
    re.compile(r"VID_([0-9A-Fa-f]{4})&PID_([0-9A-Fa-f]{4})"),
)


@dataclasses.dataclass(frozen=True)
class PortDescriptor:
    """Immutable snapshot of one serial endpoint.

    Attributes:
        device: Transport address, e.g. ``/dev/ttyUSB0`` or ``COM3``.
        name: Human-readable description used for keyword matching.
        vid: USB vendor id as 4 uppercase hex digits, if known.
        pid: USB product id as 4 uppercase hex digits, if known.
        source: Which enumerator produced the entry.
    """
    device: str
    name: str
    vid: Optional[str] = None
    pid: Optional[str] = None
    source: str = "pyserial"

    def label(self) -> str:
        ids = f" [{self.vid}:{self.pid}]" if self.vid and self.pid else ""
        return f"{self.device} — {self.name}{ids}"


@dataclasses.dataclass(frozen=True)
class HwidMatch:
    """Result of ``parse_hwid``."""
    matched: bool
    vid: Optional[str] = None
    pid: Optional[str] = None


def parse_hwid(text: Optional[str]) -> HwidMatch:
    """Extract the USB vendor/product id pair from a hardware-id string."""
    if not text:
        return HwidMatch(matched=False)
    for pattern in _HWID_PATTERNS:
        m = pattern.search(text)
        if m:
            return HwidMatch(matched=True, vid=m.group(1).upper(), pid=m.group(2).upper())
    return HwidMatch(matched=False)


def _format_id(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    return f"{value:04X}"


def _from_comports() -> List[PortDescriptor]:
    ports = []
    for p in serial.tools.list_ports.comports():
        vid = _format_id(p.vid)
        pid = _format_id(p.pid)
        if vid is None or pid is None:
            match = parse_hwid(p.hwid)
            if match.matched:
                vid, pid = match.vid, match.pid
        description = p.description if p.description and p.description != "n/a" else p.device
        ports.append(PortDescriptor(
            device=p.device,
            name=description,
            vid=vid,
            pid=pid,
            source="pyserial",
        ))
        logger.debug("[PORT-LIST] Found port: %s (%s, hwid=%s)", p.device, description, p.hwid)
    return ports


def _from_registry() -> List[PortDescriptor]:
    import winreg

    ports = []
    try:
        key = winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, r"HARDWARE\DEVICEMAP\SERIALCOMM")
    except OSError:
        return ports
    with key:
        index = 0
        while True:
            try:
                _, value, _ = winreg.EnumValue(key, index)
            except OSError:
                break
            ports.append(PortDescriptor(device=str(value), name=str(value), source="registry"))
            index += 1
    return ports


def _from_device_names() -> List[PortDescriptor]:
    if _IS_WINDOWS:
        return _from_registry()
    seen = set()
    ports = []
    for pattern in _FALLBACK_GLOBS:
        for path in glob.glob(pattern):
            if path not in seen:
                seen.add(path)
                ports.append(PortDescriptor(device=path, name=path, source="glob"))
    return ports


def list_ports(
    primary: Callable[[], List[PortDescriptor]] = _from_comports,
    fallback: Callable[[], List[PortDescriptor]] = _from_device_names,
) -> List[PortDescriptor]:
    """Return every visible serial endpoint, sorted by identifier.

    Never raises: if the identity-rich enumerator fails the bare device-name
    scan is used, and if that fails too an empty list is returned.
    """
    try:
        ports = primary()
    except Exception as exc:
        logger.warning(
            "[PORT-LIST] Port enumeration failed (%s: %s) — falling back to device-name scan",
            type(exc).__name__, exc,
        )
        try:
            ports = fallback()
        except Exception as fallback_exc:
            logger.warning(
                "[PORT-LIST] Device-name scan failed too (%s: %s) — no ports",
                type(fallback_exc).__name__, fallback_exc,
            )
            ports = []

    ports = sorted(ports, key=lambda p: p.device)
    logger.info("[PORT-LIST] %d serial port(s) found", len(ports))
    return ports


def select_best(
    ports: Sequence[PortDescriptor],
    keywords: Sequence[str] = PORT_KEYWORDS,
    vendor_id: str = KNOWN_VENDOR_ID,
) -> Optional[PortDescriptor]:
    """Pick the most likely device port, or ``None`` for an empty list."""
    if not ports:
        return None

    for keyword in keywords:
        needle = keyword.lower()
        for port in ports:
            if needle in port.name.lower():
                logger.info(
                    "[PORT-SELECT] %s matched keyword %r (%s)", port.device, keyword, port.name,
                )
                return port

    for port in ports:
        if port.vid is not None and port.vid.upper() == vendor_id.upper():
            logger.info("[PORT-SELECT] %s matched vendor id %s", port.device, vendor_id)
            return port

    logger.info(
        "[PORT-SELECT] No keyword or vendor match among %d port(s) — using %s",
        len(ports), ports[0].device,
    )
    return ports[0]


def resolve_port(
    explicit: Optional[str],
    context: str,
    ports_provider: Callable[[], List[PortDescriptor]] = list_ports,
) -> str:
    """Return *explicit* when given, otherwise the best discovered port.

    Raises:
        PortNotFound: If no port was given and none is visible.
    """
    if explicit:
        logger.info("[PORT-SELECT] [%s] Using explicit port %s", context, explicit)
        return explicit

    ports = ports_provider()
    best = select_best(ports)
    if best is None:
        msg = (
            f"[{context}] No serial port specified and none were found. "
            f"Check the USB cable and pass --serial-port explicitly."
        )
        if not _IS_WINDOWS:
            msg += " On Linux ensure your user is in the 'dialout' group."
        logger.error("[PORT-SELECT] %s", msg)
        raise PortNotFound(msg)

    logger.info("[PORT-SELECT] [%s] Auto-selected %s", context, best.label())
    return best.device
