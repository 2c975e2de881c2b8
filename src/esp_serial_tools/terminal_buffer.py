"""Incremental ANSI-aware terminal buffer.

Turns a chunked console stream into an ordered list of ``StyledRun`` objects.
Only SGR sequences (``ESC [ ... m``) are interpreted; everything else is text.
The parser keeps its state between ``append`` calls, so a chunk boundary may
fall anywhere, including inside an escape sequence or a UTF-8 character.
"""

from __future__ import annotations

import codecs
import dataclasses
import enum
import logging
from typing import List, Optional, Tuple

from typeguard import typechecked

from .types import TerminalData

logger = logging.getLogger("esp_serial_tools.terminal_buffer")

ESC = "\x1b"

FOREGROUND_PALETTE: Tuple[str, ...] = (
    "black",
    "#cc0000",
    "#4e9a06",
    "#c4a000",
    "#3465a4",
    "#75507b",
    "#06989a",
    "#d3d7cf",
)
BRIGHT_FOREGROUND_PALETTE: Tuple[str, ...] = (
    "#555753",
    "#ef2929",
    "#8ae234",
    "#fce94f",
    "#729fcf",
    "#ad7fa8",
    "#34e2e2",
    "#eeeeec",
)
BACKGROUND_PALETTE: Tuple[str, ...] = FOREGROUND_PALETTE


@dataclasses.dataclass(frozen=True)
class TextStyle:
    """Display attributes of a run.  ``TextStyle()`` is the empty style."""
    color: Optional[str] = None
    background: Optional[str] = None
    bold: bool = False
    italic: bool = False
    underline: bool = False

    def apply(self, code: int) -> TextStyle:
        """Return the style after applying one SGR parameter."""
        if code == 0:
            return TextStyle()
        if code == 1:
            return dataclasses.replace(self, bold=True)
        if code == 3:
            return dataclasses.replace(self, italic=True)
        if code == 4:
            return dataclasses.replace(self, underline=True)
        if 30 <= code <= 37:
            return dataclasses.replace(self, color=FOREGROUND_PALETTE[code - 30])
        if 90 <= code <= 97:
            return dataclasses.replace(self, color=BRIGHT_FOREGROUND_PALETTE[code - 90])
        if 40 <= code <= 47:
            return dataclasses.replace(self, background=BACKGROUND_PALETTE[code - 40])
        return self


@dataclasses.dataclass(frozen=True)
class StyledRun:
    """A contiguous span of text sharing one style."""
    text: str
    style: TextStyle = TextStyle()


class ParserMode(enum.Enum):
    NORMAL = "normal"
    ESCAPE_START = "escape_start"  # ESC seen, waiting for '['
    IN_ESCAPE = "in_escape"  # collecting SGR parameters


@dataclasses.dataclass
class _ParserState:
    mode: ParserMode = ParserMode.NORMAL
    params: str = ""
    text: str = ""


def _parse_params(raw: str) -> List[int]:
    codes = []
    for part in raw.split(";"):
        codes.append(int(part) if part.isascii() and part.isdigit() else 0)
    return codes


@typechecked
class AnsiTerminalBuffer:
    """Stateful ANSI SGR parser and document of styled runs.

    Also acts as a terminal sink (``write`` / ``write_line`` / ``clear``), so
    it can be handed straight to a read loop or a session.

    Example::

        buf = AnsiTerminalBuffer()
        buf.append("\\x1b[1;4mA")
        buf.append("B\\x1b[0mC")
        buf.runs  # [StyledRun("AB", bold+underline), StyledRun("C")]
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self.encoding = encoding
        self._decoder = codecs.getincrementaldecoder(encoding)("replace")
        self._runs: List[StyledRun] = []
        self._state = _ParserState()
        self.active_style = TextStyle()

    # ---- Parsing ----

    def append(self, data: TerminalData) -> None:
        """Feed one chunk through the parser.

        Completed runs are committed to the document; the in-progress run and
        any partial escape sequence stay buffered for the next call.
        """
        if isinstance(data, (bytes, bytearray)):
            text = self._decoder.decode(bytes(data), False)
        else:
            text = data

        state = self._state
        for char in text:
            if state.mode is ParserMode.IN_ESCAPE:
                if char == "m":
                    for code in _parse_params(state.params):
                        self.active_style = self.active_style.apply(code)
                    state.params = ""
                    state.mode = ParserMode.NORMAL
                else:
                    state.params += char
            elif state.mode is ParserMode.ESCAPE_START:
                if char == "[":
                    self._flush_text()
                    state.mode = ParserMode.IN_ESCAPE
                    state.params = ""
                elif char == ESC:
                    state.text += ESC
                else:
                    state.text += ESC + char
                    state.mode = ParserMode.NORMAL
            elif char == ESC:
                state.mode = ParserMode.ESCAPE_START
            else:
                state.text += char

    def append_line(self, text: str) -> None:
        self.append(text + "\n")

    def _flush_text(self) -> None:
        if self._state.text:
            self._runs.append(StyledRun(self._state.text, self.active_style))
            self._state.text = ""

    def clear(self) -> None:
        """Drop all content, the active style and any parser residue."""
        self._runs = []
        self._state = _ParserState()
        self.active_style = TextStyle()
        self._decoder.reset()

    # ---- Views ----

    @property
    def runs(self) -> List[StyledRun]:
        """Completed runs followed by the in-progress run, if any."""
        runs = list(self._runs)
        if self._state.text:
            runs.append(StyledRun(self._state.text, self.active_style))
        return runs

    @property
    def mode(self) -> ParserMode:
        return self._state.mode

    def get_content(self) -> str:
        """Plain text of the document, styles ignored."""
        return "".join(run.text for run in self.runs)

    # ---- Terminal sink interface ----

    def write(self, data: TerminalData) -> None:
        self.append(data)

    def write_line(self, text: str) -> None:
        self.append_line(text)
