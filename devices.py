"""
CHIP-8 Peripheral / Device Layer
=================================
The machine's non-CPU state, each owned by a single Chip8 instance:

  Keypad       : 16 key latches, 0x0-0xF, written by the input adapter
  Framebuffer  : WIDTH×HEIGHT monochrome cells, one byte (0/1) per pixel
  Timers       : delay + sound countdown registers, ticked at 60 Hz

The hex keypad is laid out as

    1 2 3 C
    4 5 6 D
    7 8 9 E
    A 0 B F
"""

from __future__ import annotations
from typing import Optional

SCREEN_WIDTH  = 64
SCREEN_HEIGHT = 32
NUM_KEYS      = 16

KEYPAD_LAYOUT = (
    (0x1, 0x2, 0x3, 0xC),
    (0x4, 0x5, 0x6, 0xD),
    (0x7, 0x8, 0x9, 0xE),
    (0xA, 0x0, 0xB, 0xF),
)


# ---------------------------------------------------------------------------
#  Device base class
# ---------------------------------------------------------------------------

class Device:
    """Abstract peripheral."""

    def __init__(self, name: str):
        self.name = name

    def tick(self):
        """Advance one 60 Hz timer period.  Override for timers etc."""
        pass

    def reset(self):
        """Return to power-on state."""
        pass


# ---------------------------------------------------------------------------
#  Keypad - 16-key input latch
# ---------------------------------------------------------------------------

class Keypad(Device):
    """Sixteen boolean key states.  The CPU only ever reads them."""

    def __init__(self):
        super().__init__("Keypad")
        self.keys: list[bool] = [False] * NUM_KEYS

    def set(self, key: int, pressed: bool):
        if not 0 <= key < NUM_KEYS:
            raise ValueError(f"Key index out of range: {key!r}")
        self.keys[key] = bool(pressed)

    def press(self, key: int):
        self.set(key, True)

    def release(self, key: int):
        self.set(key, False)

    def is_pressed(self, key: int) -> bool:
        # Key numbers come from 8-bit registers; only the low nibble selects
        return self.keys[key & 0xF]

    def first_pressed(self) -> Optional[int]:
        """Lowest-numbered key currently held, or None."""
        for k, down in enumerate(self.keys):
            if down:
                return k
        return None

    def reset(self):
        self.keys = [False] * NUM_KEYS

    def __repr__(self) -> str:
        held = [f"{k:X}" for k, down in enumerate(self.keys) if down]
        return f"Keypad(held={''.join(held) or '-'})"


# ---------------------------------------------------------------------------
#  Framebuffer
# ---------------------------------------------------------------------------

class Framebuffer(Device):
    """Row-major monochrome pixel grid; pixel (x, y) lives at y*width + x."""

    def __init__(self, width: int = SCREEN_WIDTH, height: int = SCREEN_HEIGHT):
        super().__init__("Framebuffer")
        if width <= 0 or height <= 0:
            raise ValueError(f"Bad framebuffer size {width}x{height}")
        self.width = width
        self.height = height
        self.pixels = bytearray(width * height)

    def clear(self):
        self.pixels[:] = bytes(len(self.pixels))

    def reset(self):
        self.clear()

    def get(self, x: int, y: int) -> int:
        return self.pixels[y * self.width + x]

    def draw_sprite(self, x: int, y: int, rows: bytes) -> bool:
        """XOR an 8-pixel-wide sprite at (x, y).

        Rows and columns falling off the right/bottom edges are clipped.
        Returns True if any lit pixel was turned off.
        """
        collided = False
        w = self.width
        for r, bits in enumerate(rows):
            py = y + r
            if py >= self.height:
                break
            base = py * w
            for c in range(8):
                px = x + c
                if px >= w:
                    break
                if bits & (0x80 >> c):
                    idx = base + px
                    if self.pixels[idx]:
                        collided = True
                    self.pixels[idx] ^= 1
        return collided

    def snapshot(self) -> bytes:
        """Read-only copy of the pixel grid."""
        return bytes(self.pixels)

    @property
    def lit(self) -> int:
        return sum(self.pixels)

    def to_text(self, on: str = "#", off: str = ".") -> str:
        lines = []
        for y in range(self.height):
            row = self.pixels[y * self.width:(y + 1) * self.width]
            lines.append("".join(on if p else off for p in row))
        return "\n".join(lines)


# ---------------------------------------------------------------------------
#  Timers - delay and sound countdown
# ---------------------------------------------------------------------------

class Timers(Device):
    """Two independent 8-bit countdowns, decremented once per tick().

    The sound timer drives the tone: ``on_tone(True)`` fires when it
    becomes non-zero and ``on_tone(False)`` when it runs out.
    """

    def __init__(self):
        super().__init__("Timers")
        self.delay: int = 0
        self.sound: int = 0
        self.on_tone: Optional[callable] = None  # called with (active: bool)
        self._tone = False

    def set_delay(self, value: int):
        self.delay = value & 0xFF

    def set_sound(self, value: int):
        self.sound = value & 0xFF
        self._update_tone()

    @property
    def tone_active(self) -> bool:
        return self.sound > 0

    def tick(self):
        if self.delay > 0:
            self.delay -= 1
        if self.sound > 0:
            self.sound -= 1
        self._update_tone()

    def reset(self):
        self.delay = 0
        self.sound = 0
        self._update_tone()

    def _update_tone(self):
        active = self.sound > 0
        if active != self._tone:
            self._tone = active
            if self.on_tone is not None:
                self.on_tone(active)
