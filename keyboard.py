"""Non-blocking keyboard input for the dashboard loop.

``KeyReader`` puts the terminal into cbreak mode for its lifetime and hands
out one decoded ``KeyEvent`` per ``poll``, waiting at most the given timeout.
"""

import os
import sys
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, List, Optional

from errors import IoError

if sys.platform == "win32":
    import msvcrt
else:
    import select
    import termios
    import tty


class Key(str, Enum):
    CHAR = "char"
    LEFT = "left"
    RIGHT = "right"
    UP = "up"
    DOWN = "down"
    ENTER = "enter"
    ESC = "esc"
    BACKSPACE = "backspace"
    DELETE = "delete"


@dataclass(frozen=True)
class KeyEvent:
    key: Key
    char: str = ""
    ctrl: bool = False

    @classmethod
    def of(cls, char: str, ctrl: bool = False) -> "KeyEvent":
        return cls(Key.CHAR, char, ctrl)


_ARROWS = {'A': Key.UP, 'B': Key.DOWN, 'C': Key.RIGHT, 'D': Key.LEFT}
_TILDE_CODES = {'3': Key.DELETE}
_WINDOWS_SCANCODES = {'H': Key.UP, 'P': Key.DOWN, 'K': Key.LEFT, 'M': Key.RIGHT, 'S': Key.DELETE}


def _decode_control(ch: str) -> Optional[KeyEvent]:
    if ch in ('\r', '\n'):
        return KeyEvent(Key.ENTER)
    if ch in ('\x7f', '\x08'):
        return KeyEvent(Key.BACKSPACE)
    if ch == '\t':
        return KeyEvent.of(ch)
    code = ord(ch)
    if 1 <= code <= 26:
        # Ctrl+letter arrives as the letter's position in the alphabet
        return KeyEvent.of(chr(code + 96), ctrl=True)
    return None


def decode_keys(data: str) -> List[KeyEvent]:
    """Decode a chunk of raw terminal input into key events.

    Handles CSI (``ESC [``) and SS3 (``ESC O``) arrow sequences, ``ESC [ 3 ~``
    for Delete, a lone ESC, and Ctrl+letter control bytes. Unknown escape
    sequences are skipped.
    """
    events = []
    i = 0
    while i < len(data):
        ch = data[i]
        if ch == '\x1b':
            nxt = data[i + 1] if i + 1 < len(data) else ''
            if nxt not in ('[', 'O'):
                events.append(KeyEvent(Key.ESC))
                i += 1
                continue
            j = i + 2
            while j < len(data) and not ('@' <= data[j] <= '~'):
                j += 1
            if j >= len(data):
                # Truncated sequence
                events.append(KeyEvent(Key.ESC))
                i += 1
                continue
            params, final = data[i + 2:j], data[j]
            if final in _ARROWS and not params:
                events.append(KeyEvent(_ARROWS[final]))
            elif final == '~' and params in _TILDE_CODES:
                events.append(KeyEvent(_TILDE_CODES[params]))
            i = j + 1
            continue

        if ch.isprintable():
            events.append(KeyEvent.of(ch))
        else:
            event = _decode_control(ch)
            if event is not None:
                events.append(event)
        i += 1
    return events


class KeyReader:
    """Context manager owning the terminal input mode"""

    def __init__(self, stream=None):
        self.stream = stream or sys.stdin
        self._pending: Deque[KeyEvent] = deque()
        self._saved_attrs = None

    def __enter__(self) -> "KeyReader":
        if sys.platform == "win32":
            return self
        try:
            fd = self.stream.fileno()
            self._saved_attrs = termios.tcgetattr(fd)
            tty.setcbreak(fd)
            # Ctrl+S is a key binding, not XOFF
            attrs = termios.tcgetattr(fd)
            attrs[0] &= ~termios.IXON
            termios.tcsetattr(fd, termios.TCSANOW, attrs)
        except (termios.error, OSError, ValueError) as e:
            raise IoError(f"Could not switch terminal to cbreak mode: {e}") from e
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._saved_attrs is not None:
            termios.tcsetattr(self.stream.fileno(), termios.TCSADRAIN, self._saved_attrs)
            self._saved_attrs = None

    def poll(self, timeout: float) -> Optional[KeyEvent]:
        """Return the next key event, waiting at most ``timeout`` seconds"""
        if not self._pending:
            self._pending.extend(self._read(timeout))
        return self._pending.popleft() if self._pending else None

    def _read(self, timeout: float) -> List[KeyEvent]:
        if sys.platform == "win32":
            return self._read_windows(timeout)
        fd = self.stream.fileno()
        ready, _, _ = select.select([fd], [], [], timeout)
        if not ready:
            return []
        data = os.read(fd, 64)
        # Give the rest of an escape sequence a moment to arrive
        if data.endswith(b'\x1b') or data.endswith(b'['):
            more, _, _ = select.select([fd], [], [], 0.01)
            if more:
                data += os.read(fd, 64)
        return decode_keys(data.decode('utf-8', errors='ignore'))

    def _read_windows(self, timeout: float) -> List[KeyEvent]:
        deadline = time.monotonic() + timeout
        while not msvcrt.kbhit():
            if time.monotonic() >= deadline:
                return []
            time.sleep(0.01)
        ch = msvcrt.getwch()
        if ch in ('\x00', '\xe0'):
            key = _WINDOWS_SCANCODES.get(msvcrt.getwch())
            return [KeyEvent(key)] if key else []
        return decode_keys(ch)
