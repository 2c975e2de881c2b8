"""
CLI test suite: argument parsing and the subcommands against fake hardware.

Run with full visibility:
    pytest tests/test_cli.py -v -s
"""

from __future__ import annotations

import sys
from typing import List

import pytest

# ---------------------------------------------------------------------------
# Dependency gate
# ---------------------------------------------------------------------------
_MISSING = []  # type: List[str]

for _name, _dist in (("serial", "pyserial"), ("typeguard", "typeguard"),
                     ("tqdm", "tqdm"), ("esptool", "esptool")):
    try:
        __import__(_name)
    except ImportError:
        _MISSING.append(_dist)

if _MISSING:
    print(
        "\n"
        "=" * 72 + "\n"
        "  MISSING REQUIRED LIBRARIES\n"
        "=" * 72 + "\n"
        "  The following packages are not installed: {}\n".format(", ".join(_MISSING)) +
        "  Install them with:  pip install {}\n".format(" ".join(_MISSING)) +
        "=" * 72 + "\n",
        file=sys.stderr,
    )
    pytest.skip(
        "Required libraries missing: {}".format(", ".join(_MISSING)),
        allow_module_level=True,
    )

import serial.tools.list_ports

from esp_serial_tools import cli
from esp_serial_tools.serial_resource import InteractivePortRequester, StaticPortRequester
from esp_serial_tools.serial_resource import SerialResource
from esp_serial_tools.session import SessionController, SessionState

from fakes import CountingRequester, FakeLoader, FakeSerialFactory


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _report(label, detail=""):
    # type: (str, str) -> None
    if detail:
        print("  [{}] {}".format(label, detail))
    else:
        print("  [{}]".format(label))


class _PrefedFactory(FakeSerialFactory):
    """Every handle starts with a line of console output waiting."""

    def __call__(self, **kwargs):
        # type: (object) -> object
        handle = super().__call__(**kwargs)
        handle.feed(b"\x1b[32mhello\x1b[0m\r\n")
        return handle


@pytest.fixture()
def fake_session(monkeypatch):
    """Route every CLI command to a session wired to fakes."""
    factory = _PrefedFactory()
    loader = FakeLoader()
    resource = SerialResource(
        CountingRequester(), serial_factory=factory,
        poll_interval_s=0.005, reset_pulse_ms=1,
    )
    session = SessionController(loader, resource)
    monkeypatch.setattr(cli, "create_session", lambda serial_port=None: session)
    return session, loader, factory


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Argument Parsing
# ═══════════════════════════════════════════════════════════════════════════

class TestCLIArgs:
    """Every subcommand has working --help."""

    @pytest.mark.parametrize("command", ["list", "flash", "erase", "monitor", "reset"])
    def test_subcommand_help(self, command):
        # type: (str) -> None
        _report("TEST", "{} --help".format(command))
        with pytest.raises(SystemExit) as exc_info:
            cli.main([command, "--help"])
        assert exc_info.value.code == 0
        _report("PASS", "{} --help works".format(command))

    def test_command_required(self):
        # type: () -> None
        with pytest.raises(SystemExit) as exc_info:
            cli.main([])
        assert exc_info.value.code != 0

    def test_bad_address_rejected(self):
        # type: () -> None
        with pytest.raises(SystemExit):
            cli.main(["flash", "fw.bin", "--address", "not-a-number"])

    def test_create_session_with_port(self):
        # type: () -> None
        session = cli.create_session("/dev/ttyUSB3")
        assert isinstance(session.resource.requester, StaticPortRequester)
        assert session.resource.requester.port == "/dev/ttyUSB3"
        assert session.state is SessionState.DISCONNECTED

    def test_create_session_without_port(self, monkeypatch):
        # type: (pytest.MonkeyPatch) -> None
        monkeypatch.setattr(cli, "DEFAULT_SERIAL_PORT", "")
        session = cli.create_session(None)
        assert isinstance(session.resource.requester, InteractivePortRequester)


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Commands
# ═══════════════════════════════════════════════════════════════════════════

class TestCommands:
    """Subcommands against a faked session."""

    def test_list(self, monkeypatch, capsys):
        # type: (pytest.MonkeyPatch, pytest.CaptureFixture) -> None
        class _Port:
            device = "/dev/ttyUSB0"
            description = "CP2102 USB to UART Bridge Controller"

        monkeypatch.setattr(serial.tools.list_ports, "comports", lambda: [_Port()])
        assert cli.main(["list"]) == 0
        out = capsys.readouterr().out
        assert "/dev/ttyUSB0" in out
        assert "CP2102" in out

    def test_list_empty(self, monkeypatch, capsys):
        # type: (pytest.MonkeyPatch, pytest.CaptureFixture) -> None
        monkeypatch.setattr(serial.tools.list_ports, "comports", lambda: [])
        assert cli.main(["list"]) == 0
        assert "No serial ports found." in capsys.readouterr().out

    def test_flash_missing_file(self, tmp_path, capsys):
        # type: (object, pytest.CaptureFixture) -> None
        missing = str(tmp_path / "missing.bin")  # type: ignore[operator]
        assert cli.main(["--serial-port", "/dev/ttyFAKE0", "flash", missing]) == 1
        assert "cannot read firmware" in capsys.readouterr().err

    def test_flash(self, fake_session, tmp_path, capsys):
        # type: (tuple, object, pytest.CaptureFixture) -> None
        _report("TEST", "flash --address 0x10000 through the CLI")
        session, loader, _ = fake_session
        firmware = tmp_path / "app.bin"  # type: ignore[operator]
        firmware.write_bytes(b"\xe9" + bytes(4095))
        assert cli.main(["flash", str(firmware), "--address", "0x10000"]) == 0
        out = capsys.readouterr().out
        assert "Flashed 4096 bytes at 0x00010000" in out
        assert "Chip detected" in out
        assert loader.write_args["address"] == 0x10000
        assert session.state is SessionState.DISCONNECTED
        _report("PASS", "Flashed and disconnected")

    def test_flash_failure_exit_code(self, fake_session, tmp_path, capsys):
        # type: (tuple, object, pytest.CaptureFixture) -> None
        _, loader, _ = fake_session
        loader.write_error = RuntimeError("Invalid head of packet")
        firmware = tmp_path / "app.bin"  # type: ignore[operator]
        firmware.write_bytes(b"\xe9" * 16)
        assert cli.main(["flash", str(firmware)]) == 1
        assert "Flash failed during write" in capsys.readouterr().err

    def test_erase(self, fake_session):
        # type: (tuple) -> None
        _, loader, _ = fake_session
        assert cli.main(["erase"]) == 0
        assert "erase_all" in loader.calls

    def test_reset(self, fake_session, capsys):
        # type: (tuple, pytest.CaptureFixture) -> None
        _, loader, factory = fake_session
        assert cli.main(["reset"]) == 0
        assert factory.last.line_events[-1] == ("rts", False)
        assert loader.calls == ["release"]
        assert "Reset pulse sent on /dev/ttyFAKE0" in capsys.readouterr().out

    def test_monitor_saves_console(self, fake_session, tmp_path):
        # type: (tuple, object) -> None
        _report("TEST", "monitor --duration --send --save")
        session, _, factory = fake_session
        saved = tmp_path / "console.txt"  # type: ignore[operator]
        assert cli.main([
            "monitor", "--duration", "100", "--send", "help", "--save", str(saved),
        ]) == 0
        assert saved.read_bytes() == b"hello\r\n"
        assert bytes(factory.last.written) == b"help\r\n"
        assert session.state is SessionState.DISCONNECTED
        _report("PASS", "Plain console text saved, command sent")
