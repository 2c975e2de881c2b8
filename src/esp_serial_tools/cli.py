"""Command-line interface for ESP serial tools."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Optional

from tqdm import tqdm

from . import DEFAULT_FLASH_ADDRESS, DEFAULT_SERIAL_PORT, SERIAL_BAUD_RATE
from .exceptions import FlashError
from .loader import EsptoolLoader
from .serial_resource import (
    InteractivePortRequester,
    PortRequester,
    SerialResource,
    StaticPortRequester,
    list_available_ports,
)
from .session import SessionController, SessionState
from .terminal_buffer import AnsiTerminalBuffer

logger = logging.getLogger("esp_serial_tools.cli")


def create_session(serial_port: Optional[str] = None) -> SessionController:
    """Create a session for the given port, prompting when none is configured."""
    port = serial_port or DEFAULT_SERIAL_PORT
    requester: PortRequester = StaticPortRequester(port) if port else InteractivePortRequester()
    return SessionController(EsptoolLoader(), SerialResource(requester), AnsiTerminalBuffer())


def _print_status(session: SessionController) -> None:
    """Echo the session's status lines, then drop them."""
    content = session.terminal.get_content()
    if content:
        print(content, end="")
    session.terminal.clear()


async def _flash(args) -> int:
    try:
        with open(args.firmware, "rb") as f:
            firmware = f.read()
    except OSError as e:
        print(f"Error: cannot read firmware {args.firmware}: {e}", file=sys.stderr)
        return 1

    async with create_session(args.serial_port) as session:
        try:
            await session.connect(args.baud_rate)
            _print_status(session)

            with tqdm(
                total=100,
                unit="%",
                desc=f"Flashing {os.path.basename(args.firmware)}",
            ) as progress_bar:
                def on_progress(percent: int) -> None:
                    progress_bar.update(percent - progress_bar.n)

                await session.flash(
                    firmware,
                    args.address,
                    on_progress=on_progress,
                    on_log=lambda line: logger.debug("[CLI] %s", line),
                )

            print(f"Flashed {len(firmware)} bytes at 0x{args.address:08x}")
            return 0

        except FlashError as e:
            print(f"Flash failed during {e.stage}: {e}", file=sys.stderr)
            return 1
        except Exception as e:
            _print_status(session)
            print(f"Error: {str(e)}", file=sys.stderr)
            return 1


async def _erase(args) -> int:
    async with create_session(args.serial_port) as session:
        try:
            await session.connect(args.baud_rate)
            _print_status(session)
            await session.erase(on_log=print)
            return 0
        except Exception as e:
            print(f"Error: {str(e)}", file=sys.stderr)
            return 1


async def _monitor(args) -> int:
    console = AnsiTerminalBuffer()

    def on_chunk(chunk: bytes) -> None:
        sys.stdout.buffer.write(chunk)
        sys.stdout.flush()
        console.append(chunk)

    async with create_session(args.serial_port) as session:
        try:
            await session.connect(args.baud_rate, identify=False)
            _print_status(session)
            if args.reset:
                await session.reset()
            task = session.start_read(on_chunk)
            if args.send:
                await session.send_line(args.send)

            try:
                if args.duration > 0:
                    await asyncio.sleep(args.duration / 1000.0)
                else:
                    await task
            finally:
                if session.state is SessionState.READING:
                    await session.stop_read()
                if args.save:
                    with open(args.save, "w", encoding="utf-8") as f:
                        f.write(console.get_content())
                    print(f"\nSaved console output to {args.save}", file=sys.stderr)
            return 0

        except Exception as e:
            print(f"Error: {str(e)}", file=sys.stderr)
            return 1


async def _reset(args) -> int:
    async with create_session(args.serial_port) as session:
        try:
            await session.connect(args.baud_rate, identify=False)
            await session.reset()
            print(f"Reset pulse sent on {session.resource.port}")
            return 0
        except Exception as e:
            print(f"Error: {str(e)}", file=sys.stderr)
            return 1


def command_flash(args) -> int:
    """Flash a firmware image and reboot the device."""
    return asyncio.run(_flash(args))


def command_erase(args) -> int:
    """Erase the whole flash chip."""
    return asyncio.run(_erase(args))


def command_monitor(args) -> int:
    """Stream the serial console to stdout."""
    try:
        return asyncio.run(_monitor(args))
    except KeyboardInterrupt:
        return 0


def command_reset(args) -> int:
    """Pulse the reset lines."""
    return asyncio.run(_reset(args))


def command_list(args) -> int:
    """List available serial ports."""
    ports = list_available_ports()
    if not ports:
        print("No serial ports found.")
    else:
        print("Available serial ports:")
        for p in ports:
            print(f"  {p}")
    return 0


def main(argv=None) -> int:  # type: ignore[no-untyped-def]
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        description="ESP Serial Tools - Flash firmware and stream the serial console"
    )
    parser.add_argument(
        "--serial-port", type=str, default=None,
        help="Serial port path (e.g. /dev/ttyUSB0 or COM3). "
             "Overrides ESP_SERIAL_PORT; prompts when neither is set.",
    )
    parser.add_argument(
        "--baud-rate", type=int, default=SERIAL_BAUD_RATE,
        help=f"Baud rate (default: {SERIAL_BAUD_RATE})",
    )
    parser.add_argument(
        "--verbose", action="store_true", default=False,
        help="Log library activity to stderr",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List available serial ports")
    list_parser.set_defaults(func=command_list)

    flash_parser = subparsers.add_parser("flash", help="Flash a firmware image")
    flash_parser.add_argument("firmware", help="Path to the firmware binary")
    flash_parser.add_argument(
        "--address", type=lambda v: int(v, 0), default=DEFAULT_FLASH_ADDRESS,
        help=f"Flash offset (default: 0x{DEFAULT_FLASH_ADDRESS:x})",
    )
    flash_parser.set_defaults(func=command_flash)

    erase_parser = subparsers.add_parser("erase", help="Erase the whole flash chip")
    erase_parser.set_defaults(func=command_erase)

    monitor_parser = subparsers.add_parser("monitor", help="Stream the serial console")
    monitor_parser.add_argument(
        "--duration", type=int, default=0,
        help="Stop after this many milliseconds (default: run until Ctrl-C)",
    )
    monitor_parser.add_argument(
        "--reset", action="store_true", default=False,
        help="Pulse the reset lines before reading",
    )
    monitor_parser.add_argument(
        "--send", type=str, default=None,
        help="Send this line (CR LF appended) once the console is running",
    )
    monitor_parser.add_argument(
        "--save", type=str, default=None,
        help="Write the plain-text console output to this file on exit",
    )
    monitor_parser.set_defaults(func=command_monitor)

    reset_parser = subparsers.add_parser("reset", help="Pulse the reset lines")
    reset_parser.set_defaults(func=command_reset)

    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
            datefmt="%H:%M:%S",
        )

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
