"""
Sensor Node Tools - firmware upload and serial configuration for sensor nodes

This package drives a sensor node over its USB serial console from Windows,
Linux or macOS. It includes:

- **Port discovery** with heuristic selection of the most likely device
- **Firmware upload** through the PlatformIO CLI with live output and a hard timeout
- **Configuration apply** that turns a JSON document into device CLI commands
- **Serial dialogue** with fixed reply windows (the device CLI has no terminator)

The serial port is always released, on success, error and Ctrl+C alike.
"""

import logging
import os

logging.getLogger("sensor_node_tools").addHandler(logging.NullHandler())

__version__ = "0.1.0"

# Serial communication settings
SERIAL_BAUD_RATE = 115200
SERIAL_BYTESIZE = 8       # 8 data bits
SERIAL_PARITY = "N"       # No parity
SERIAL_STOPBITS = 1       # 1 stop bit
SERIAL_READ_TIMEOUT = 0.25  # seconds, per-read driver timeout
SERIAL_WRITE_TIMEOUT = 2    # seconds; a stuck write becomes a TransportError
SERIAL_POLL_INTERVAL_S = 0.01  # idle backoff between read attempts
SERIAL_REPLY_WINDOW_MS = 1500  # how long a command's reply is collected
SERIAL_BOOT_SETTLE_MS = 2000   # boot chatter discarded after opening the port

# Firmware upload settings
UPLOAD_TOOL = os.environ.get("SENSOR_NODE_UPLOAD_TOOL", "pio")
UPLOAD_MANIFEST = "platformio.ini"
UPLOAD_TIMEOUT_S = 600
UPLOAD_POLL_INTERVAL_S = 0.2
UPLOAD_TERMINATE_GRACE_S = 5

# Default serial port and firmware project.
# An empty port means "pick one automatically".
#   SENSOR_NODE_PORT / SENSOR_NODE_PROJECT_DIR
DEFAULT_SERIAL_PORT = os.environ.get("SENSOR_NODE_PORT", "")
DEFAULT_PROJECT_DIR = os.environ.get("SENSOR_NODE_PROJECT_DIR", ".")

# Port selection heuristics, checked in order.
PORT_KEYWORDS = (
    "SensorNode",
    "ESP32",
    "CP210",
    "CH340",
    "CH910",
    "FT232",
    "USB Serial",
    "USB-Serial",
    "USB-SERIAL",
)
KNOWN_VENDOR_ID = "303A"  # Espressif native USB
