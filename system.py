"""
CHIP-8 System Emulator
=======================
Wires together:
  - the Chip8 CPU (chip8.py) and its devices (devices.py)
  - a frontend that supplies input events and receives frames
  - the run / pause / halt state machine and 60 Hz tick pacing

One tick = drain input events, execute ``cycles_per_tick`` CPU cycles
(plus one whenever the ``ips % 60`` remainder adds up to a whole cycle,
so exactly ``ips`` cycles run per 60 ticks), step the timers once, hand
the framebuffer to the frontend.  The whole tick is timed against a
1/60 s budget and the remainder is slept; an overrun sleeps zero and the
next tick starts immediately.
"""

from __future__ import annotations
import enum
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Iterable, Optional

from chip8 import Chip8, Chip8Error, HaltError, LoadError
from devices import NUM_KEYS, SCREEN_WIDTH, SCREEN_HEIGHT

# ---------------------------------------------------------------------------
#  Timing constants
# ---------------------------------------------------------------------------

TIMER_HZ = 60
TICK_SECONDS = 1.0 / TIMER_HZ
DEFAULT_IPS = 700

Color = tuple[int, int, int]

WHITE: Color = (255, 255, 255)
BLACK: Color = (0, 0, 0)


def parse_color(text: str) -> Color:
    """Parse ``RRGGBB``, ``#RRGGBB`` or ``0xRRGGBBAA`` (alpha dropped)."""
    s = text.strip().lower()
    if s.startswith("#"):
        s = s[1:]
    elif s.startswith("0x"):
        s = s[2:]
    if len(s) not in (6, 8):
        raise ValueError(f"Bad color {text!r}: expected RRGGBB or RRGGBBAA")
    try:
        val = int(s[:6], 16)
    except ValueError:
        raise ValueError(f"Bad color {text!r}: not hexadecimal") from None
    return ((val >> 16) & 0xFF, (val >> 8) & 0xFF, val & 0xFF)


# ---------------------------------------------------------------------------
#  Configuration
# ---------------------------------------------------------------------------

@dataclass
class MachineConfig:
    """Explicit run configuration.  Only shift_quirk touches opcode semantics."""
    instructions_per_second: int = DEFAULT_IPS
    fg_color: Color = WHITE
    bg_color: Color = BLACK
    scale: int = 10
    width: int = SCREEN_WIDTH
    height: int = SCREEN_HEIGHT
    shift_quirk: bool = False
    seed: Optional[int] = None

    def __post_init__(self):
        if self.instructions_per_second < 0:
            raise ValueError("instructions_per_second must be >= 0")
        if self.scale < 1:
            raise ValueError("scale must be >= 1")

    @property
    def cycles_per_tick(self) -> int:
        """Whole cycles every tick runs; the remainder is spread by the controller."""
        return self.instructions_per_second // TIMER_HZ

    @property
    def cycle_remainder(self) -> int:
        return self.instructions_per_second % TIMER_HZ

    @property
    def tick_budget(self) -> float:
        return TICK_SECONDS


# ---------------------------------------------------------------------------
#  States, events, frames
# ---------------------------------------------------------------------------

class MachineState(enum.Enum):
    RUNNING = "running"
    PAUSED = "paused"
    HALTED = "halted"


class ControlEvent(enum.Enum):
    PAUSE_TOGGLE = "pause-toggle"
    QUIT = "quit"


@dataclass(frozen=True)
class KeyEvent:
    key: int
    pressed: bool

    def __post_init__(self):
        if not 0 <= self.key < NUM_KEYS:
            raise ValueError(f"Key {self.key} out of range 0..{NUM_KEYS - 1}")


@dataclass(frozen=True)
class Frame:
    """Read-only render hand-off.  Pixel (x, y) is pixels[y*width + x]."""
    width: int
    height: int
    pixels: bytes
    fg: Color
    bg: Color
    tone: bool = False

    def pixel(self, x: int, y: int) -> int:
        return self.pixels[y * self.width + x]


class Frontend:
    """Display + input adapter.  Subclasses override what they support."""

    def poll_events(self) -> Iterable[KeyEvent | ControlEvent]:
        return ()

    def present(self, frame: Frame):
        pass

    def state_changed(self, state: MachineState):
        pass

    def tone_changed(self, active: bool):
        pass

    def close(self):
        pass


# ---------------------------------------------------------------------------
#  Machine controller
# ---------------------------------------------------------------------------

class Chip8System:
    """
    Complete CHIP-8 machine: CPU + devices + frontend + pacing.

    ``state`` is None until a program has been loaded, then RUNNING.
    HALTED is terminal: reached by a quit request or a fatal CPU fault
    (call-stack overflow), with the reason kept in ``halt_reason``.  Only
    an explicit reset() leaves it.
    """

    def __init__(self, config: Optional[MachineConfig] = None,
                 frontend: Optional[Frontend] = None,
                 clock=time.perf_counter, sleep=time.sleep):
        self.config = config or MachineConfig()
        self.cpu = Chip8(width=self.config.width, height=self.config.height,
                         shift_quirk=self.config.shift_quirk,
                         rng=random.Random(self.config.seed))
        self.frontend = frontend or Frontend()
        self.clock = clock
        self.sleep = sleep

        self.state: Optional[MachineState] = None
        self.halt_reason: Optional[str] = None
        self.fault: Optional[Chip8Error] = None
        self.events: deque[KeyEvent | ControlEvent] = deque()
        self.tick_count: int = 0
        self.overruns: int = 0
        self._cycle_carry: int = 0   # sixtieths of a cycle owed to the next tick

        self.on_halt: Optional[callable] = None  # called with (reason)
        self.cpu.timers.on_tone = self.frontend.tone_changed

    # -----------------------------------------------------------------
    #  Loading
    # -----------------------------------------------------------------

    def load_program(self, data: bytes | bytearray):
        """Load a program image; the machine enters RUNNING on success."""
        self._check_not_halted()
        self.cpu.load_program(data)
        self._set_state(MachineState.RUNNING)

    def load_program_file(self, path: str):
        self._check_not_halted()
        self.cpu.load_program_file(path)
        self._set_state(MachineState.RUNNING)

    def _check_not_halted(self):
        if self.halted:
            raise HaltError("Machine is halted; reset it before loading")

    def reset(self):
        """Operator reset: power-on CPU state, program kept, controller cleared.

        The only way out of HALTED.  A loaded machine comes back RUNNING.
        """
        self.cpu.reset()
        self.halt_reason = None
        self.fault = None
        self.events.clear()
        self.tick_count = 0
        self.overruns = 0
        self._cycle_carry = 0
        if self.state is not None:
            self._set_state(MachineState.RUNNING)

    # -----------------------------------------------------------------
    #  State transitions
    # -----------------------------------------------------------------

    def _set_state(self, state: MachineState):
        if state is self.state:
            return
        self.state = state
        self.frontend.state_changed(state)

    def pause(self):
        if self.state is MachineState.RUNNING:
            self._set_state(MachineState.PAUSED)

    def resume(self):
        if self.state is MachineState.PAUSED:
            self._set_state(MachineState.RUNNING)

    def toggle_pause(self):
        if self.state is MachineState.RUNNING:
            self.pause()
        else:
            self.resume()

    def halt(self, reason: str, fault: Optional[Chip8Error] = None):
        if self.state is MachineState.HALTED:
            return
        self.halt_reason = reason
        self.fault = fault
        self.cpu.halted = True
        self._set_state(MachineState.HALTED)
        if self.on_halt is not None:
            self.on_halt(reason)

    def quit(self):
        self.halt("quit requested")

    @property
    def running(self) -> bool:
        return self.state is MachineState.RUNNING

    @property
    def paused(self) -> bool:
        return self.state is MachineState.PAUSED

    @property
    def halted(self) -> bool:
        return self.state is MachineState.HALTED

    @property
    def tone_active(self) -> bool:
        return self.cpu.timers.tone_active

    # -----------------------------------------------------------------
    #  Input
    # -----------------------------------------------------------------

    def post(self, event: KeyEvent | ControlEvent):
        """Queue an input or control event for the next tick."""
        self.events.append(event)

    def press_key(self, key: int):
        self.post(KeyEvent(key, True))

    def release_key(self, key: int):
        self.post(KeyEvent(key, False))

    def drain_events(self):
        """Apply every pending frontend and posted event, in order."""
        self.events.extend(self.frontend.poll_events())
        while self.events:
            ev = self.events.popleft()
            if isinstance(ev, KeyEvent):
                self.cpu.keypad.set(ev.key, ev.pressed)
            elif ev is ControlEvent.QUIT:
                self.quit()
            elif ev is ControlEvent.PAUSE_TOGGLE:
                self.toggle_pause()
            if self.halted:
                self.events.clear()

    # -----------------------------------------------------------------
    #  Execution
    # -----------------------------------------------------------------

    def frame(self) -> Frame:
        fb = self.cpu.fb
        return Frame(width=fb.width, height=fb.height, pixels=fb.snapshot(),
                     fg=self.config.fg_color, bg=self.config.bg_color,
                     tone=self.cpu.timers.tone_active)

    def tick(self) -> int:
        """One controller tick.  Returns CPU cycles executed."""
        if self.state is None or self.halted:
            return 0
        self.drain_events()
        if not self.running:
            return 0

        batch = self.config.cycles_per_tick
        self._cycle_carry += self.config.cycle_remainder
        if self._cycle_carry >= TIMER_HZ:
            self._cycle_carry -= TIMER_HZ
            batch += 1

        cycles = 0
        try:
            for _ in range(batch):
                cycles += self.cpu.step()
        except Chip8Error as e:
            self.halt(str(e), fault=e)
            self.frontend.present(self.frame())
            return cycles

        self.cpu.timers.tick()
        self.frontend.present(self.frame())
        self.tick_count += 1
        return cycles

    def run(self, max_ticks: Optional[int] = None) -> int:
        """Tick at 60 Hz until halted or max_ticks.  Returns ticks run."""
        if self.state is None:
            raise LoadError("No program loaded")
        budget = self.config.tick_budget
        ticks = 0
        while not self.halted:
            if max_ticks is not None and ticks >= max_ticks:
                break
            start = self.clock()
            self.tick()
            ticks += 1
            if self.halted:
                break
            remaining = budget - (self.clock() - start)
            if remaining < 0:
                self.overruns += 1
            self.sleep(max(0.0, remaining))
        return ticks

    # -----------------------------------------------------------------
    #  Convenience
    # -----------------------------------------------------------------

    def dump_state(self) -> str:
        """CPU + device state dump."""
        lines = ["=== Registers ===", self.cpu.dump_regs()]
        state = self.state.value if self.state else "not loaded"
        lines.append(f"  State: {state}  Ticks: {self.tick_count}  "
                     f"Cycles: {self.cpu.cycle_count}  "
                     f"Faults: {self.cpu.fault_count}  Overruns: {self.overruns}")
        if self.halt_reason:
            lines.append(f"  Halt reason: {self.halt_reason}")
        lines.append("")
        lines.append("=== Devices ===")
        lines.append(f"  {self.cpu.keypad!r}")
        lines.append(f"  Framebuffer: {self.cpu.fb.width}x{self.cpu.fb.height} "
                     f"lit={self.cpu.fb.lit}")
        lines.append(f"  Timers: delay={self.cpu.timers.delay} "
                     f"sound={self.cpu.timers.sound} "
                     f"tone={'on' if self.tone_active else 'off'}")
        lines.append(f"  Config: ips={self.config.instructions_per_second} "
                     f"({self.config.cycles_per_tick}/tick) "
                     f"shift_quirk={self.config.shift_quirk}")
        return "\n".join(lines)
