"""Type definitions for Sensor Node Tools."""

from typing import Callable, List

# Receives one line/chunk of device or tool output for display
LogSink = Callable[[str], None]

# Ordered device CLI commands, one per line, without the newline
CommandSequence = List[str]

# Injectable time sources for the poll loops
Clock = Callable[[], float]
Sleeper = Callable[[float], None]
