#!/usr/bin/env python3
"""
CHIP-8 Emulator / Monitor CLI
==============================
Command-line front end for the CHIP-8 system emulator.

Provides:
  - ROM loading (fatal, with a diagnostic, if missing or oversized)
  - Windowed play through pygame, or headless runs for N ticks
  - Clock / color / scale configuration
  - Instruction trace and fault reporting
  - An interactive debug monitor: step, registers, memory, disassembly

Usage:
  python cli.py ROM [--ips N] [--scale N] [--fg RRGGBB] [--bg RRGGBB]
                    [--shift-vy] [--seed N] [--trace] [--verbose]
                    [--headless [--ticks N]] [--monitor]
"""

from __future__ import annotations
import argparse
import cmd
import shlex
import sys
from typing import Optional

from chip8 import (Chip8Error, LoadError, Instruction, MEM_SIZE, decode,
                   disasm)
from system import (Chip8System, MachineConfig, MachineState, DEFAULT_IPS,
                    parse_color)

# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

def disasm_one(mem: bytearray | bytes, addr: int) -> tuple[str, int]:
    """Disassemble the instruction at `addr`.  Returns (text, opcode)."""
    hi = mem[addr % MEM_SIZE]
    lo = mem[(addr + 1) % MEM_SIZE]
    opcode = (hi << 8) | lo
    return disasm(decode(opcode)), opcode


def format_trace(pc: int, inst: Instruction) -> str:
    return f"{pc:#06x}: {inst.opcode:04X}  {disasm(inst)}"


def print_trace(pc: int, inst: Instruction):
    print(f"[trace] {format_trace(pc, inst)}")


def print_fault(pc: int, opcode: int, message: str):
    print(f"[fault] {pc:#06x}: {opcode:04X}  {message}", file=sys.stderr)


# ---------------------------------------------------------------------------
#  Debug monitor
# ---------------------------------------------------------------------------

class Chip8Monitor(cmd.Cmd):
    """Interactive monitor for the CHIP-8 system."""

    intro = (
        "\n"
        "CHIP-8 Monitor.  Type 'help' for commands, 'quit' to exit.\n"
    )
    prompt = "C8> "

    def __init__(self, system: Chip8System):
        super().__init__()
        self.sys = system

    # -- Parsing helpers --

    def _parse_addr(self, s: str) -> int:
        """Parse an address (hex with 0x prefix, decimal, or pc/i)."""
        s = s.strip().lower()
        if s == "pc":
            return self.sys.cpu.pc
        if s == "i":
            return self.sys.cpu.i
        return int(s, 0)

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    def onecmd(self, line):
        try:
            return super().onecmd(line)
        except ValueError as e:
            print(f"Error: {e}")
            return False

    # ================================================================
    #  Commands
    # ================================================================

    # -- Execution --

    def do_step(self, arg):
        """Step N instructions: step [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        cpu = self.sys.cpu
        for _ in range(count):
            if cpu.halted:
                print("CPU is halted.")
                break
            addr = cpu.pc
            waiting = cpu.awaiting_key is not None
            try:
                cpu.step()
            except Chip8Error as e:
                self.sys.halt(str(e), fault=e)
                print(f"Fault: {e}")
                break
            if waiting and cpu.awaiting_key is not None:
                print(f"  {addr:#06x}: (waiting for key -> V{cpu.awaiting_key:X})")
            elif waiting:
                print(f"  {addr:#06x}: key received")
            else:
                text, opcode = disasm_one(cpu.mem, addr)
                print(f"  {addr:#06x}: {opcode:04X}  {text}")

    def do_tick(self, arg):
        """Run N controller ticks (cycles + timers + frame): tick [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        cycles = 0
        for _ in range(count):
            if self.sys.halted:
                break
            cycles += self.sys.tick()
        print(f"  {cycles} cycles, state={self.sys.state.value if self.sys.state else '-'}")
        if self.sys.halt_reason:
            print(f"  Halted: {self.sys.halt_reason}")

    def do_pause(self, arg):
        """Pause the machine."""
        self.sys.pause()
        print(f"  state={self.sys.state.value if self.sys.state else '-'}")

    def do_resume(self, arg):
        """Resume a paused machine."""
        self.sys.resume()
        print(f"  state={self.sys.state.value if self.sys.state else '-'}")

    def do_reset(self, arg):
        """Reset the machine (clears a halt) and reload the program image."""
        self.sys.reset()
        print(f"  PC = {self.sys.cpu.pc:#06x}  "
              f"state={self.sys.state.value if self.sys.state else '-'}")

    # -- Inspection --

    def do_regs(self, arg):
        """Show CPU registers."""
        print(self.sys.cpu.dump_regs())
        print(f"  Cycles: {self.sys.cpu.cycle_count}")

    def do_setreg(self, arg):
        """Set register: setreg <V0-VF|i|pc> <value>"""
        parts = shlex.split(arg)
        if len(parts) < 2:
            print("Usage: setreg <reg> <value>")
            return
        reg_s = parts[0].lower()
        val = self._parse_int(parts[1])
        cpu = self.sys.cpu
        if reg_s == "pc":
            cpu.pc = val & 0xFFFF
            val = cpu.pc
        elif reg_s == "i":
            cpu.i = val & 0xFFFF
            val = cpu.i
        elif reg_s.startswith("v") and len(reg_s) == 2:
            idx = int(reg_s[1], 16)
            cpu.v[idx] = val & 0xFF
            val = cpu.v[idx]
        else:
            print("Unknown register.")
            return
        print(f"  {reg_s.upper()} = {val:#06x}")

    def do_dump(self, arg):
        """Hex dump memory: dump <address> [count]
        Count defaults to 64 bytes."""
        parts = shlex.split(arg)
        if not parts:
            print("Usage: dump <address> [count]")
            return
        addr = self._parse_addr(parts[0])
        count = self._parse_int(parts[1]) if len(parts) > 1 else 64

        for row_start in range(addr, addr + count, 16):
            hex_bytes = []
            for i in range(16):
                if row_start + i < addr + count:
                    hex_bytes.append(f"{self.sys.cpu.mem_read8(row_start + i):02x}")
                else:
                    hex_bytes.append("  ")
            hex_str = ' '.join(hex_bytes[:8]) + '  ' + ' '.join(hex_bytes[8:])
            print(f"  {row_start % MEM_SIZE:#06x}: {hex_str}")

    def do_disasm(self, arg):
        """Disassemble: disasm [address] [count]
        Defaults to current PC, 16 instructions."""
        parts = shlex.split(arg)
        addr = self._parse_addr(parts[0]) if parts else self.sys.cpu.pc
        count = self._parse_int(parts[1]) if len(parts) > 1 else 16

        for _ in range(count):
            text, opcode = disasm_one(self.sys.cpu.mem, addr)
            marker = ">>>" if addr == self.sys.cpu.pc else "   "
            print(f"  {marker} {addr:#06x}: {opcode:04X}  {text}")
            addr = (addr + 2) % MEM_SIZE

    def do_key(self, arg):
        """Press or release a keypad key: key <0-F> [down|up]"""
        parts = shlex.split(arg)
        if not parts:
            print(f"  {self.sys.cpu.keypad!r}")
            return
        key = int(parts[0], 16)
        pressed = not (len(parts) > 1 and parts[1].lower() == "up")
        self.sys.cpu.keypad.set(key, pressed)
        print(f"  {self.sys.cpu.keypad!r}")

    def do_screen(self, arg):
        """Print the framebuffer as text."""
        print(self.sys.cpu.fb.to_text())

    def do_status(self, arg):
        """Show full system status (CPU + devices)."""
        print(self.sys.dump_state())

    def do_quit(self, arg):
        """Exit the monitor."""
        print("Goodbye.")
        return True
    do_exit = do_quit
    do_q = do_quit

    def do_EOF(self, arg):
        print()
        return self.do_quit(arg)

    def default(self, line):
        """Handle unknown commands gracefully."""
        print(f"Unknown command: {line.split()[0]!r}. Type 'help' for available commands.")

    def emptyline(self):
        """Don't repeat the last command on empty input."""
        pass


# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

def _color_arg(text: str):
    try:
        return parse_color(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="CHIP-8 Emulator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Keys:\n"
               "  1234/qwer/asdf/zxcv -> keypad 123C/456D/789E/A0BF\n"
               "  SPACE pause/resume, ESC quit\n"
               "\n"
               "Examples:\n"
               "  python cli.py pong.ch8\n"
               "  python cli.py pong.ch8 --ips 1000 --fg 33ff66 --scale 12\n"
               "  python cli.py test.ch8 --headless --ticks 600\n"
               "  python cli.py test.ch8 --monitor\n"
    )
    parser.add_argument("rom", type=str,
                        help="CHIP-8 program image to load at 0x200")
    parser.add_argument("--ips", type=int, default=DEFAULT_IPS, metavar="N",
                        help=f"Instructions per second (default: {DEFAULT_IPS})")
    parser.add_argument("--scale", type=int, default=10, metavar="N",
                        help="Pixel scale factor for the window (default: 10)")
    parser.add_argument("--fg", type=_color_arg, default="ffffff", metavar="RRGGBB",
                        help="Foreground (lit pixel) color (default: ffffff)")
    parser.add_argument("--bg", type=_color_arg, default="000000", metavar="RRGGBB",
                        help="Background color (default: 000000)")
    parser.add_argument("--shift-vy", action="store_true",
                        help="8XY6/8XYE shift VY into VX (COSMAC VIP behaviour)")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for the CXNN random generator")
    parser.add_argument("--trace", action="store_true",
                        help="Print every executed instruction")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Report illegal opcodes and stack underflows")
    parser.add_argument("--headless", action="store_true",
                        help="Run without a window")
    parser.add_argument("--ticks", type=int, default=None, metavar="N",
                        help="Stop after N ticks (1 tick = 1/60 s)")
    parser.add_argument("--monitor", action="store_true",
                        help="Load the program and enter the debug monitor")
    return parser


def main(argv: Optional[list[str]] = None):
    args = build_parser().parse_args(argv)

    try:
        config = MachineConfig(
            instructions_per_second=args.ips,
            fg_color=args.fg,
            bg_color=args.bg,
            scale=args.scale,
            shift_quirk=args.shift_vy,
            seed=args.seed,
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    # ---- Frontend ------------------------------------------------------
    display = None
    if not (args.headless or args.monitor):
        try:
            from display import PygameDisplay
            display = PygameDisplay(scale=config.scale)
            display.open(config.width, config.height)
        except ImportError as e:
            print(f"[display] pygame not available: {e}", file=sys.stderr)
            print("[display] Install with: pip install pygame, or use --headless",
                  file=sys.stderr)
            sys.exit(1)
    elif args.headless:
        from display import HeadlessDisplay
        display = HeadlessDisplay()

    sys_emu = Chip8System(config, frontend=display)
    if args.trace:
        sys_emu.cpu.on_trace = print_trace
    if args.verbose:
        sys_emu.cpu.on_fault = print_fault

    # ---- Load ----------------------------------------------------------
    try:
        sys_emu.load_program_file(args.rom)
    except LoadError as e:
        print(f"Error: {e}", file=sys.stderr)
        if display is not None:
            display.close()
        sys.exit(1)
    print(f"Loaded {sys_emu.cpu.program_size} bytes from '{args.rom}' at 0x200")

    # ---- Monitor mode --------------------------------------------------
    if args.monitor:
        cli = Chip8Monitor(sys_emu)
        try:
            cli.cmdloop()
        except KeyboardInterrupt:
            print("\nInterrupted. Goodbye.")
        return

    # ---- Run -----------------------------------------------------------
    try:
        ticks = sys_emu.run(max_ticks=args.ticks)
    except KeyboardInterrupt:
        print("\nInterrupted.")
        ticks = sys_emu.tick_count
    finally:
        if display is not None:
            display.close()

    if args.headless:
        print(f"Ran {ticks} ticks, {sys_emu.cpu.cycle_count} cycles "
              f"({sys_emu.cpu.fault_count} faults)")
    if sys_emu.state is MachineState.HALTED and sys_emu.fault is not None:
        print(f"Halted: {sys_emu.halt_reason}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
