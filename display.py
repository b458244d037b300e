"""
CHIP-8 Framebuffer Display
===========================
Frontends for Chip8System: they render each tick's Frame and turn host
keyboard/window events into keypad and control events.

  PygameDisplay   : scaled pygame window, QWERTY keypad mapping
  HeadlessDisplay : no window; scripted input, records frames (tests, CI)

Both are driven synchronously from the controller's tick loop; nothing
here owns a thread.

QWERTY mapping (left block of the keyboard onto the hex keypad):

    1 2 3 4        1 2 3 C
    q w e r   ->   4 5 6 D
    a s d f        7 8 9 E
    z x c v        A 0 B F

SPACE toggles pause, ESC (or closing the window) quits.

Usage (programmatic):
    from display import PygameDisplay
    disp = PygameDisplay(scale=10)
    sys_emu = Chip8System(config, frontend=disp)
    disp.open(64, 32)
    sys_emu.load_program_file("pong.ch8")
    sys_emu.run()
    disp.close()
"""

from __future__ import annotations

from collections import deque
from typing import Iterable, Optional

from devices import KEYPAD_LAYOUT
from system import ControlEvent, Frame, Frontend, KeyEvent, MachineState

QWERTY_ROWS = ("1234", "qwer", "asdf", "zxcv")

KEYMAP: dict[str, int] = {
    ch: key
    for chars, keys in zip(QWERTY_ROWS, KEYPAD_LAYOUT)
    for ch, key in zip(chars, keys)
}

PAUSE_KEY = "space"
QUIT_KEY = "escape"


def translate_key(name: str, pressed: bool) -> Optional[KeyEvent | ControlEvent]:
    """Map a host key name (pygame.key.name style) to a machine event."""
    name = name.lower()
    if name in KEYMAP:
        return KeyEvent(KEYMAP[name], pressed)
    if not pressed:
        return None
    if name == PAUSE_KEY:
        return ControlEvent.PAUSE_TOGGLE
    if name == QUIT_KEY:
        return ControlEvent.QUIT
    return None


def frame_to_rgb(frame: Frame):
    """Rasterize a frame into a (width, height, 3) uint8 numpy array.

    Axis order matches pygame.surfarray (x first).
    """
    import numpy as np

    grid = np.frombuffer(frame.pixels, dtype=np.uint8).reshape(
        frame.height, frame.width)
    lit = grid.T.astype(bool)
    rgb = np.empty((frame.width, frame.height, 3), dtype=np.uint8)
    rgb[:, :] = frame.bg
    rgb[lit] = frame.fg
    return rgb


class PygameDisplay(Frontend):
    """pygame window showing the CHIP-8 framebuffer."""

    def __init__(self, scale: int = 10, title: str = "CHIP-8"):
        self.scale = max(1, scale)
        self.title = title
        self._pygame = None
        self._screen = None
        self._state: Optional[MachineState] = None

    # -- public API -------------------------------------------------------

    def open(self, width: int, height: int):
        """Create the window.  Raises ImportError if pygame is missing."""
        import pygame

        self._pygame = pygame
        pygame.display.init()
        pygame.display.set_caption(self.title)
        self._screen = pygame.display.set_mode(
            (width * self.scale, height * self.scale))
        self._screen.fill((0, 0, 0))
        pygame.display.flip()

    def close(self):
        if self._pygame is not None:
            self._pygame.display.quit()
            self._pygame = None
            self._screen = None

    @property
    def is_open(self) -> bool:
        return self._screen is not None

    # -- Frontend hooks ---------------------------------------------------

    def poll_events(self) -> Iterable[KeyEvent | ControlEvent]:
        if self._pygame is None:
            return []
        pygame = self._pygame
        out = []
        for event in pygame.event.get():
            if event.type == pygame.QUIT:
                out.append(ControlEvent.QUIT)
            elif event.type in (pygame.KEYDOWN, pygame.KEYUP):
                ev = translate_key(pygame.key.name(event.key),
                                   event.type == pygame.KEYDOWN)
                if ev is not None:
                    out.append(ev)
        return out

    def present(self, frame: Frame):
        if self._screen is None:
            return
        pygame = self._pygame
        surface = pygame.surfarray.make_surface(frame_to_rgb(frame))
        scaled = pygame.transform.scale(surface, self._screen.get_size())
        self._screen.blit(scaled, (0, 0))
        pygame.display.flip()

    def state_changed(self, state: MachineState):
        self._state = state
        if self._pygame is None:
            return
        suffix = ""
        if state is MachineState.PAUSED:
            suffix = "  [PAUSED]"
        elif state is MachineState.HALTED:
            suffix = "  [HALTED]"
        self._pygame.display.set_caption(self.title + suffix)


class HeadlessDisplay(Frontend):
    """No-op display for testing: scripted input, records frames."""

    def __init__(self, events: Iterable[KeyEvent | ControlEvent] = (),
                 max_frames: int = 600):
        self.pending: deque[KeyEvent | ControlEvent] = deque(events)
        self.frames: deque[Frame] = deque(maxlen=max_frames)
        self.states: list[MachineState] = []
        self.tones: list[bool] = []
        self.frame_count = 0

    def press(self, key: int):
        self.pending.append(KeyEvent(key, True))

    def release(self, key: int):
        self.pending.append(KeyEvent(key, False))

    def request_pause_toggle(self):
        self.pending.append(ControlEvent.PAUSE_TOGGLE)

    def request_quit(self):
        self.pending.append(ControlEvent.QUIT)

    def poll_events(self) -> Iterable[KeyEvent | ControlEvent]:
        out = list(self.pending)
        self.pending.clear()
        return out

    def present(self, frame: Frame):
        self.frames.append(frame)
        self.frame_count += 1

    def state_changed(self, state: MachineState):
        self.states.append(state)

    def tone_changed(self, active: bool):
        self.tones.append(active)

    @property
    def last_frame(self) -> Optional[Frame]:
        return self.frames[-1] if self.frames else None
