"""
ESP Serial Tools - Flashing, console streaming and ANSI rendering over one serial port

This package drives a single exclusive serial connection to an ESP32-class
microcontroller. It includes:

- **Exclusive serial resource** with poll-based async reads and reset pulses
- **Session controller** that arbitrates flash, erase, reset and console reads
- **Flash orchestration** on top of a swappable bootloader capability (esptool)
- **Read loop** with explicit cooperative cancellation
- **ANSI terminal buffer** that turns a chunked byte stream into styled runs

All I/O is cooperative asyncio on a single event loop; only the blocking
bootloader calls are pushed to an executor.
"""

import logging
import os

logging.getLogger("esp_serial_tools").addHandler(logging.NullHandler())

__version__ = "0.1.0"

# Serial line settings.
# Override via environment variables:
#   ESP_SERIAL_PORT / ESP_SERIAL_BAUD
DEFAULT_SERIAL_PORT = os.environ.get("ESP_SERIAL_PORT", "")
SERIAL_BAUD_RATE = int(os.environ.get("ESP_SERIAL_BAUD", "115200"))
SERIAL_READ_TIMEOUT = 0  # non-blocking reads; raw_read paces itself
SERIAL_WRITE_TIMEOUT = 10  # seconds
SERIAL_POLL_INTERVAL_S = 0.01  # poll loop sleep granularity (10 ms)

# Control-line reset pulse and release timing
RESET_PULSE_MS = 100
UNLOCK_TIMEOUT_MS = 1500
READ_LOOP_STOP_TIMEOUT_S = 2.0

# Flashing
DEFAULT_FLASH_ADDRESS = int(os.environ.get("ESP_FLASH_ADDRESS", "0x1000"), 0)
