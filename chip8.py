"""
CHIP-8 Interpreter Core
========================
Cycle-step emulator for the CHIP-8 virtual machine: 4 KiB of memory with
the hex glyph table at 0x000, sixteen 8-bit V registers, the 16-bit I
and PC registers, a 12-deep call stack, two 60 Hz countdown timers, a
16-key keypad and a 64×32 monochrome framebuffer.

Every instruction is two bytes, big-endian.  The fetch/decode/execute
split is explicit:

    decode(opcode)  -> Instruction      (pure field extraction)
    classify(inst)  -> Op               (pure: which row of the opcode table)
    Chip8.execute(inst)                 (applies exactly one opcode)
    Chip8.step()                        (fetch + decode + execute)

so any single opcode can be exercised without running the fetch loop.
"""

from __future__ import annotations
import enum
import random
from dataclasses import dataclass
from typing import Optional

from devices import Framebuffer, Keypad, Timers, SCREEN_WIDTH, SCREEN_HEIGHT

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEM_SIZE       = 4096
PROGRAM_START  = 0x200
MAX_PROGRAM    = MEM_SIZE - PROGRAM_START   # 3584 bytes
STACK_DEPTH    = 12
NUM_REGS       = 16
FONT_BASE      = 0x000
GLYPH_BYTES    = 5

MASK8  = 0xFF
MASK16 = 0xFFFF

# Standard hex digit bitmaps, 0-F, 5 rows each (4 pixels wide, high nibble)
FONTSET = bytes([
    0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
    0x20, 0x60, 0x20, 0x20, 0x70,  # 1
    0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
    0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
    0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
    0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
    0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
    0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
    0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
    0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
    0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
    0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
    0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
    0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
    0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
    0xF0, 0x80, 0xF0, 0x80, 0x80,  # F
])

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class Chip8Error(Exception):
    """Base for emulator-generated faults."""
    pass

class LoadError(Chip8Error):
    """Program missing, unreadable, or too large for memory."""
    pass

class IllegalOpcodeError(Chip8Error):
    def __init__(self, opcode: int, addr: int):
        self.opcode = opcode
        self.addr = addr
        super().__init__(f"Illegal opcode {opcode:04X} @ {addr:#05x}")

class StackOverflowError(Chip8Error):
    pass

class StackUnderflowError(Chip8Error):
    pass

class HaltError(Chip8Error):
    pass

# ---------------------------------------------------------------------------
#  Decode
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Instruction:
    """Field view of one 16-bit opcode.  Rebuilt every cycle."""
    opcode: int
    nnn: int   # 12-bit address / constant
    nn: int    # 8-bit immediate
    n: int     # 4-bit immediate / sub-op
    x: int     # register index (bits 8-11)
    y: int     # register index (bits 4-7)

    @property
    def family(self) -> int:
        return (self.opcode >> 12) & 0xF


def decode(opcode: int) -> Instruction:
    opcode &= MASK16
    return Instruction(
        opcode=opcode,
        nnn=opcode & 0x0FFF,
        nn=opcode & 0x00FF,
        n=opcode & 0x000F,
        x=(opcode >> 8) & 0xF,
        y=(opcode >> 4) & 0xF,
    )


class Op(enum.Enum):
    """One member per opcode-table row.  Values are disassembly templates."""
    CLS       = "CLS"
    RET       = "RET"
    JP        = "JP {nnn:#05x}"
    CALL      = "CALL {nnn:#05x}"
    SE_VX_NN  = "SE V{x:X}, {nn:#04x}"
    SNE_VX_NN = "SNE V{x:X}, {nn:#04x}"
    SE_VX_VY  = "SE V{x:X}, V{y:X}"
    LD_VX_NN  = "LD V{x:X}, {nn:#04x}"
    ADD_VX_NN = "ADD V{x:X}, {nn:#04x}"
    LD_VX_VY  = "LD V{x:X}, V{y:X}"
    OR        = "OR V{x:X}, V{y:X}"
    AND       = "AND V{x:X}, V{y:X}"
    XOR       = "XOR V{x:X}, V{y:X}"
    ADD_VX_VY = "ADD V{x:X}, V{y:X}"
    SUB       = "SUB V{x:X}, V{y:X}"
    SHR       = "SHR V{x:X}, V{y:X}"
    SUBN      = "SUBN V{x:X}, V{y:X}"
    SHL       = "SHL V{x:X}, V{y:X}"
    SNE_VX_VY = "SNE V{x:X}, V{y:X}"
    LD_I      = "LD I, {nnn:#05x}"
    JP_V0     = "JP V0, {nnn:#05x}"
    RND       = "RND V{x:X}, {nn:#04x}"
    DRW       = "DRW V{x:X}, V{y:X}, {n}"
    SKP       = "SKP V{x:X}"
    SKNP      = "SKNP V{x:X}"
    LD_VX_DT  = "LD V{x:X}, DT"
    LD_VX_K   = "LD V{x:X}, K"
    LD_DT_VX  = "LD DT, V{x:X}"
    LD_ST_VX  = "LD ST, V{x:X}"
    ADD_I_VX  = "ADD I, V{x:X}"
    LD_F_VX   = "LD F, V{x:X}"
    LD_B_VX   = "LD B, V{x:X}"
    LD_I_VX   = "LD [I], V{x:X}"
    LD_VX_I   = "LD V{x:X}, [I]"
    UNKNOWN   = "DW {opcode:#06x}"


_FAMILY_OPS = {
    0x1: Op.JP,   0x2: Op.CALL,  0x3: Op.SE_VX_NN, 0x4: Op.SNE_VX_NN,
    0x6: Op.LD_VX_NN, 0x7: Op.ADD_VX_NN,
    0xA: Op.LD_I, 0xB: Op.JP_V0, 0xC: Op.RND, 0xD: Op.DRW,
}

_ALU_OPS = {
    0x0: Op.LD_VX_VY, 0x1: Op.OR,  0x2: Op.AND,  0x3: Op.XOR,
    0x4: Op.ADD_VX_VY, 0x5: Op.SUB, 0x6: Op.SHR, 0x7: Op.SUBN,
    0xE: Op.SHL,
}

_KEY_OPS = {0x9E: Op.SKP, 0xA1: Op.SKNP}

_MISC_OPS = {
    0x07: Op.LD_VX_DT, 0x0A: Op.LD_VX_K,  0x15: Op.LD_DT_VX,
    0x18: Op.LD_ST_VX, 0x1E: Op.ADD_I_VX, 0x29: Op.LD_F_VX,
    0x33: Op.LD_B_VX,  0x55: Op.LD_I_VX,  0x65: Op.LD_VX_I,
}


def classify(inst: Instruction) -> Op:
    """Map an instruction onto its opcode-table row (or Op.UNKNOWN)."""
    f = inst.family
    if f == 0x0:
        if inst.opcode == 0x00E0:
            return Op.CLS
        if inst.opcode == 0x00EE:
            return Op.RET
        return Op.UNKNOWN
    if f == 0x5 or f == 0x9:
        if inst.n != 0:
            return Op.UNKNOWN
        return Op.SE_VX_VY if f == 0x5 else Op.SNE_VX_VY
    if f == 0x8:
        return _ALU_OPS.get(inst.n, Op.UNKNOWN)
    if f == 0xE:
        return _KEY_OPS.get(inst.nn, Op.UNKNOWN)
    if f == 0xF:
        return _MISC_OPS.get(inst.nn, Op.UNKNOWN)
    return _FAMILY_OPS[f]


def disasm(inst: Instruction) -> str:
    """Mnemonic text for a decoded instruction."""
    op = classify(inst)
    return op.value.format(opcode=inst.opcode, nnn=inst.nnn, nn=inst.nn,
                           n=inst.n, x=inst.x, y=inst.y)

# ---------------------------------------------------------------------------
#  CPU
# ---------------------------------------------------------------------------

class Chip8:
    """CHIP-8 machine state plus the execution engine."""

    def __init__(self, width: int = SCREEN_WIDTH, height: int = SCREEN_HEIGHT,
                 shift_quirk: bool = False,
                 rng: Optional[random.Random] = None):
        self.mem = bytearray(MEM_SIZE)
        self.mem[FONT_BASE:FONT_BASE + len(FONTSET)] = FONTSET

        self.v: list[int] = [0] * NUM_REGS
        self.i: int = 0
        self.pc: int = PROGRAM_START
        self.stack: list[int] = []

        # Devices
        self.timers = Timers()
        self.keypad = Keypad()
        self.fb = Framebuffer(width, height)

        # 8XY6/8XYE read VY instead of VX (COSMAC VIP behaviour)
        self.shift_quirk = shift_quirk
        self.rng = rng if rng is not None else random.Random()

        # State
        self.halted: bool = False
        self.awaiting_key: Optional[int] = None   # X of a pending FX0A
        self.cycle_count: int = 0
        self.fault_count: int = 0
        self.program_size: int = 0

        # Callbacks
        self.on_trace: Optional[callable] = None  # called with (pc, inst)
        self.on_fault: Optional[callable] = None  # called with (pc, opcode, message)

        self._handlers = {
            Op.CLS:       self._op_cls,
            Op.RET:       self._op_ret,
            Op.JP:        self._op_jp,
            Op.CALL:      self._op_call,
            Op.SE_VX_NN:  lambda d: self._skip_if(self.v[d.x] == d.nn),
            Op.SNE_VX_NN: lambda d: self._skip_if(self.v[d.x] != d.nn),
            Op.SE_VX_VY:  lambda d: self._skip_if(self.v[d.x] == self.v[d.y]),
            Op.SNE_VX_VY: lambda d: self._skip_if(self.v[d.x] != self.v[d.y]),
            Op.LD_VX_NN:  lambda d: self._set_v(d.x, d.nn),
            Op.ADD_VX_NN: lambda d: self._set_v(d.x, self.v[d.x] + d.nn),
            Op.LD_VX_VY:  lambda d: self._set_v(d.x, self.v[d.y]),
            Op.OR:        lambda d: self._set_v(d.x, self.v[d.x] | self.v[d.y]),
            Op.AND:       lambda d: self._set_v(d.x, self.v[d.x] & self.v[d.y]),
            Op.XOR:       lambda d: self._set_v(d.x, self.v[d.x] ^ self.v[d.y]),
            Op.ADD_VX_VY: self._op_add,
            Op.SUB:       self._op_sub,
            Op.SHR:       self._op_shr,
            Op.SUBN:      self._op_subn,
            Op.SHL:       self._op_shl,
            Op.LD_I:      self._op_ld_i,
            Op.JP_V0:     self._op_jp_v0,
            Op.RND:       self._op_rnd,
            Op.DRW:       self._op_drw,
            Op.SKP:       lambda d: self._skip_if(self.keypad.is_pressed(self.v[d.x])),
            Op.SKNP:      lambda d: self._skip_if(not self.keypad.is_pressed(self.v[d.x])),
            Op.LD_VX_DT:  lambda d: self._set_v(d.x, self.timers.delay),
            Op.LD_VX_K:   self._op_wait_key,
            Op.LD_DT_VX:  lambda d: self.timers.set_delay(self.v[d.x]),
            Op.LD_ST_VX:  lambda d: self.timers.set_sound(self.v[d.x]),
            Op.ADD_I_VX:  self._op_add_i,
            Op.LD_F_VX:   self._op_ld_f,
            Op.LD_B_VX:   self._op_bcd,
            Op.LD_I_VX:   self._op_store_regs,
            Op.LD_VX_I:   self._op_load_regs,
            Op.UNKNOWN:   self._op_unknown,
        }

    # -- Property shortcuts --

    @property
    def delay_timer(self) -> int:
        return self.timers.delay

    @property
    def sound_timer(self) -> int:
        return self.timers.sound

    @property
    def vf(self) -> int:
        return self.v[0xF]

    # -- Memory access --

    def mem_read8(self, addr: int) -> int:
        return self.mem[addr % MEM_SIZE]

    def mem_write8(self, addr: int, val: int):
        self.mem[addr % MEM_SIZE] = val & MASK8

    def read_opcode(self, addr: int) -> int:
        """Big-endian 16-bit word at addr (no PC side effect)."""
        return (self.mem_read8(addr) << 8) | self.mem_read8(addr + 1)

    # -- Program loading --

    def load_program(self, data: bytes | bytearray):
        """Copy a program image to 0x200 and point PC at it."""
        if len(data) > MAX_PROGRAM:
            raise LoadError(f"Program is {len(data)} bytes; "
                            f"maximum is {MAX_PROGRAM}")
        self.mem[PROGRAM_START:PROGRAM_START + len(data)] = data
        self.program_size = len(data)
        self.pc = PROGRAM_START

    def load_program_file(self, path: str):
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise LoadError(f"Cannot read program '{path}': {e.strerror or e}") from e
        self.load_program(data)

    # -- Fetch --

    def fetch(self) -> int:
        """Fetch the opcode at PC and advance PC by one word."""
        opcode = self.read_opcode(self.pc)
        self.pc = (self.pc + 2) & MASK16
        return opcode

    # -- Execution --

    def step(self) -> int:
        """Execute one cycle.  Returns cycles consumed (always 1)."""
        if self.halted:
            raise HaltError("CPU is halted")
        self.cycle_count += 1

        if self.awaiting_key is not None:
            self._poll_wait_key()
            return 1

        addr = self.pc
        inst = decode(self.fetch())
        if self.on_trace is not None:
            self.on_trace(addr, inst)

        try:
            self.execute(inst)
        except (IllegalOpcodeError, StackUnderflowError) as e:
            self.fault_count += 1
            if self.on_fault is not None:
                self.on_fault(addr, inst.opcode, str(e))
        return 1

    def execute(self, inst: Instruction):
        """Apply one instruction.  PC must already point past it."""
        self._handlers[classify(inst)](inst)

    def run(self, max_steps: int = 1_000_000) -> int:
        """Run until halted or max_steps.  Returns cycles executed."""
        total = 0
        for _ in range(max_steps):
            if self.halted:
                break
            total += self.step()
        return total

    # -- Register helpers --

    def _set_v(self, x: int, val: int):
        self.v[x] = val & MASK8

    def _skip_if(self, cond: bool):
        if cond:
            self.pc = (self.pc + 2) & MASK16

    # -- Flow control --

    def _op_cls(self, d: Instruction):
        self.fb.clear()

    def _op_ret(self, d: Instruction):
        if not self.stack:
            raise StackUnderflowError(
                f"RET with empty call stack @ {(self.pc - 2) & MASK16:#05x}")
        self.pc = self.stack.pop()

    def _op_jp(self, d: Instruction):
        self.pc = d.nnn

    def _op_call(self, d: Instruction):
        if len(self.stack) >= STACK_DEPTH:
            self.halted = True
            raise StackOverflowError(
                f"CALL {d.nnn:#05x} exceeds stack depth {STACK_DEPTH} "
                f"@ {(self.pc - 2) & MASK16:#05x}")
        self.stack.append(self.pc)
        self.pc = d.nnn

    def _op_jp_v0(self, d: Instruction):
        self.pc = (self.v[0] + d.nnn) & MASK16

    # -- Arithmetic (flag first, then result; VF as X keeps the result) --

    def _op_add(self, d: Instruction):
        total = self.v[d.x] + self.v[d.y]
        self.v[0xF] = 1 if total > MASK8 else 0
        self._set_v(d.x, total)

    def _op_sub(self, d: Instruction):
        vx, vy = self.v[d.x], self.v[d.y]
        self.v[0xF] = 1 if vy <= vx else 0
        self._set_v(d.x, vx - vy)

    def _op_subn(self, d: Instruction):
        vx, vy = self.v[d.x], self.v[d.y]
        self.v[0xF] = 1 if vx <= vy else 0
        self._set_v(d.x, vy - vx)

    def _op_shr(self, d: Instruction):
        src = self.v[d.y] if self.shift_quirk else self.v[d.x]
        self.v[0xF] = src & 1
        self._set_v(d.x, src >> 1)

    def _op_shl(self, d: Instruction):
        src = self.v[d.y] if self.shift_quirk else self.v[d.x]
        self.v[0xF] = (src >> 7) & 1
        self._set_v(d.x, src << 1)

    def _op_rnd(self, d: Instruction):
        self._set_v(d.x, self.rng.randrange(256) & d.nn)

    # -- Index register / memory --

    def _op_ld_i(self, d: Instruction):
        self.i = d.nnn

    def _op_add_i(self, d: Instruction):
        self.i = (self.i + self.v[d.x]) & MASK16

    def _op_ld_f(self, d: Instruction):
        self.i = FONT_BASE + self.v[d.x] * GLYPH_BYTES

    def _op_bcd(self, d: Instruction):
        val = self.v[d.x]
        self.mem_write8(self.i, val // 100)
        self.mem_write8(self.i + 1, (val // 10) % 10)
        self.mem_write8(self.i + 2, val % 10)

    def _op_store_regs(self, d: Instruction):
        for r in range(d.x + 1):
            self.mem_write8(self.i + r, self.v[r])

    def _op_load_regs(self, d: Instruction):
        for r in range(d.x + 1):
            self.v[r] = self.mem_read8(self.i + r)

    # -- Display --

    def _op_drw(self, d: Instruction):
        x = self.v[d.x] % self.fb.width
        y = self.v[d.y] % self.fb.height
        rows = bytes(self.mem_read8(self.i + r) for r in range(d.n))
        collided = self.fb.draw_sprite(x, y, rows)
        self.v[0xF] = 1 if collided else 0

    # -- Input --

    def _op_wait_key(self, d: Instruction):
        key = self.keypad.first_pressed()
        if key is None:
            self.awaiting_key = d.x
        else:
            self.v[d.x] = key

    def _poll_wait_key(self):
        key = self.keypad.first_pressed()
        if key is not None:
            self.v[self.awaiting_key] = key
            self.awaiting_key = None

    def _op_unknown(self, d: Instruction):
        raise IllegalOpcodeError(d.opcode, (self.pc - 2) & MASK16)

    # -- Reset --

    def reset(self):
        """Power-on state; keeps the loaded program image."""
        program = bytes(self.mem[PROGRAM_START:PROGRAM_START + self.program_size])
        self.mem = bytearray(MEM_SIZE)
        self.mem[FONT_BASE:FONT_BASE + len(FONTSET)] = FONTSET
        self.v = [0] * NUM_REGS
        self.i = 0
        self.stack = []
        self.timers.reset()
        self.keypad.reset()
        self.fb.clear()
        self.halted = False
        self.awaiting_key = None
        self.cycle_count = 0
        self.fault_count = 0
        self.load_program(program)

    # -- Debug / introspection --

    def dump_regs(self) -> str:
        lines = []
        for row in range(0, NUM_REGS, 4):
            lines.append("  " + "  ".join(
                f"V{r:X} = {self.v[r]:#04x}" for r in range(row, row + 4)))
        lines.append(f"  I  = {self.i:#06x}  PC = {self.pc:#06x}  "
                     f"DT = {self.timers.delay:3d}  ST = {self.timers.sound:3d}")
        stack = " ".join(f"{a:#05x}" for a in self.stack) or "(empty)"
        lines.append(f"  Stack[{len(self.stack)}/{STACK_DEPTH}]: {stack}")
        if self.awaiting_key is not None:
            lines.append(f"  Waiting for key -> V{self.awaiting_key:X}")
        return "\n".join(lines)
