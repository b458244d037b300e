"""
CLI and debug monitor tests.

main() is exercised headless only; the monitor is driven through
onecmd() with stdout captured.
"""

import io
import unittest
from contextlib import redirect_stdout

import pytest

from chip8 import PROGRAM_START, decode
from cli import Chip8Monitor, disasm_one, format_trace, main
from system import Chip8System, MachineConfig


def words(*ops: int) -> bytes:
    return b"".join(op.to_bytes(2, "big") for op in ops)


# ---------------------------------------------------------------------------
#  main()
# ---------------------------------------------------------------------------

def test_headless_run_reports_ticks(rom_file, capsys):
    path = rom_file(words(0x6001, 0x1202))
    main([path, "--headless", "--ticks", "5", "--ips", "120"])
    out = capsys.readouterr().out
    assert f"Loaded 4 bytes from '{path}' at 0x200" in out
    assert "Ran 5 ticks, 10 cycles (0 faults)" in out


def test_trace_prints_each_instruction(rom_file, capsys):
    path = rom_file(words(0x6001, 0x1202))
    main([path, "--headless", "--ticks", "1", "--ips", "120", "--trace"])
    out = capsys.readouterr().out
    assert "[trace] 0x0200: 6001  LD V0, 0x01" in out
    assert "[trace] 0x0202: 1202  JP 0x202" in out


def test_verbose_reports_faults(rom_file, capsys):
    path = rom_file(words(0x0000, 0x1202))
    main([path, "--headless", "--ticks", "1", "--ips", "60", "--verbose"])
    captured = capsys.readouterr()
    assert "[fault] 0x0200: 0000" in captured.err
    assert "(1 faults)" in captured.out


def test_missing_rom_exits_1(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc:
        main([str(tmp_path / "nope.ch8"), "--headless", "--ticks", "1"])
    assert exc.value.code == 1
    assert "Error:" in capsys.readouterr().err


def test_oversized_rom_exits_1(rom_file, capsys):
    path = rom_file(bytes(4096 - PROGRAM_START + 1))
    with pytest.raises(SystemExit) as exc:
        main([path, "--headless", "--ticks", "1"])
    assert exc.value.code == 1
    assert "maximum is 3584" in capsys.readouterr().err


def test_bad_color_is_usage_error(rom_file):
    path = rom_file(words(0x1200))
    with pytest.raises(SystemExit) as exc:
        main([path, "--headless", "--fg", "zzzzzz"])
    assert exc.value.code == 2


def test_bad_scale_exits_2(rom_file):
    path = rom_file(words(0x1200))
    with pytest.raises(SystemExit) as exc:
        main([path, "--headless", "--scale", "0"])
    assert exc.value.code == 2


def test_stack_overflow_exits_1(rom_file, capsys):
    path = rom_file(words(0x2200))
    with pytest.raises(SystemExit) as exc:
        main([path, "--headless", "--ticks", "5"])
    assert exc.value.code == 1
    captured = capsys.readouterr()
    assert "Ran 2 ticks" in captured.out
    assert "Halted:" in captured.err


# ---------------------------------------------------------------------------
#  Disassembly helpers
# ---------------------------------------------------------------------------

class TestDisasmHelpers(unittest.TestCase):
    def test_disasm_one(self):
        mem = bytearray(4096)
        mem[0x200:0x206] = words(0xA2F0, 0xD125, 0x0123)
        self.assertEqual(disasm_one(mem, 0x200), ("LD I, 0x2f0", 0xA2F0))
        self.assertEqual(disasm_one(mem, 0x202), ("DRW V1, V2, 5", 0xD125))
        self.assertEqual(disasm_one(mem, 0x204), ("DW 0x0123", 0x0123))

    def test_disasm_one_wraps(self):
        mem = bytearray(4096)
        mem[0xFFF] = 0x00
        mem[0x000] = 0xE0
        self.assertEqual(disasm_one(mem, 0xFFF), ("CLS", 0x00E0))

    def test_format_trace(self):
        self.assertEqual(format_trace(0x210, decode(0x8AB4)),
                         "0x0210: 8AB4  ADD VA, VB")


# ---------------------------------------------------------------------------
#  Monitor
# ---------------------------------------------------------------------------

class TestMonitor(unittest.TestCase):
    def setUp(self):
        self.sys = Chip8System(MachineConfig(instructions_per_second=120, seed=1))
        self.sys.load_program(words(0x6A42, 0xF10A, 0x2200, 0x1206))
        self.mon = Chip8Monitor(self.sys)

    def run_cmd(self, line: str) -> str:
        buf = io.StringIO()
        with redirect_stdout(buf):
            self.mon.onecmd(line)
        return buf.getvalue()

    def test_regs(self):
        self.sys.cpu.step()
        out = self.run_cmd("regs")
        self.assertIn("VA = 0x42", out)
        self.assertIn("PC = 0x0202", out)
        self.assertIn("Stack[0/12]: (empty)", out)
        self.assertIn("Cycles: 1", out)

    def test_step_and_wait_for_key(self):
        out = self.run_cmd("step 3")
        self.assertIn("0x0200: 6A42  LD VA, 0x42", out)
        self.assertIn("0x0202: F10A  LD V1, K", out)
        self.assertIn("(waiting for key -> V1)", out)
        self.run_cmd("key 7")
        out = self.run_cmd("step")
        self.assertIn("key received", out)
        self.assertEqual(self.sys.cpu.v[1], 7)
        self.assertEqual(self.sys.cpu.pc, 0x204)

    def test_step_overflow_halts(self):
        self.sys.cpu.mem[0x300:0x302] = words(0x2300)
        self.run_cmd("setreg pc 0x300")
        out = self.run_cmd("step 20")
        self.assertIn("Fault:", out)
        self.assertTrue(self.sys.halted)
        self.assertEqual(len(self.sys.cpu.stack), 12)
        self.assertIn("CPU is halted.", self.run_cmd("step"))

    def test_setreg(self):
        self.assertIn("V3 = 0x00ff", self.run_cmd("setreg v3 0x1ff"))
        self.assertEqual(self.sys.cpu.v[3], 0xFF)
        self.run_cmd("setreg i 0x300")
        self.assertEqual(self.sys.cpu.i, 0x300)
        self.run_cmd("setreg pc 0x206")
        self.assertEqual(self.sys.cpu.pc, 0x206)
        self.assertIn("Unknown register", self.run_cmd("setreg q 1"))

    def test_bad_number(self):
        self.assertIn("Error:", self.run_cmd("setreg v0 banana"))

    def test_dump(self):
        out = self.run_cmd("dump 0x200 4")
        self.assertIn("0x0200: 6a 42 f1 0a", out)
        out = self.run_cmd("dump 0 5")
        self.assertIn("0x0000: f0 90 90 90 f0", out)

    def test_disasm_marks_pc(self):
        out = self.run_cmd("disasm 0x200 2")
        lines = out.splitlines()
        self.assertEqual(len(lines), 2)
        self.assertIn(">>> 0x0200: 6A42  LD VA, 0x42", lines[0])
        self.assertIn("0x0202: F10A  LD V1, K", lines[1])
        self.assertNotIn(">>>", lines[1])

    def test_key(self):
        self.assertIn("Keypad(held=A)", self.run_cmd("key a"))
        self.assertIn("Keypad(held=-)", self.run_cmd("key a up"))

    def test_screen(self):
        self.sys.cpu.fb.draw_sprite(0, 0, [0x80])
        lines = self.run_cmd("screen").splitlines()
        self.assertEqual(len(lines), 32)
        self.assertEqual(lines[0], "#" + "." * 63)

    def test_tick_and_status(self):
        out = self.run_cmd("tick")
        self.assertIn("2 cycles, state=running", out)
        self.assertIn("State: running", self.run_cmd("status"))

    def test_pause_resume(self):
        self.assertIn("state=paused", self.run_cmd("pause"))
        self.assertIn("state=running", self.run_cmd("resume"))

    def test_reset(self):
        self.run_cmd("step")
        self.assertIn("PC = 0x0200", self.run_cmd("reset"))
        self.assertEqual(self.sys.cpu.v[0xA], 0)
        self.assertEqual(self.sys.cpu.read_opcode(0x200), 0x6A42)

    def test_reset_after_fault_resumes_ticking(self):
        self.sys.cpu.mem[0x300:0x302] = words(0x2300)
        self.run_cmd("setreg pc 0x300")
        self.run_cmd("step 20")
        self.assertTrue(self.sys.halted)
        out = self.run_cmd("reset")
        self.assertIn("PC = 0x0200  state=running", out)
        self.assertFalse(self.sys.halted)
        self.assertIsNone(self.sys.halt_reason)
        self.assertFalse(self.sys.cpu.halted)
        out = self.run_cmd("tick")
        self.assertIn("2 cycles, state=running", out)
        self.assertNotIn("Halted", out)

    def test_unknown_and_quit(self):
        self.assertIn("Unknown command", self.run_cmd("frobnicate"))
        with redirect_stdout(io.StringIO()):
            self.assertTrue(self.mon.onecmd("quit"))
            self.assertTrue(self.mon.onecmd("q"))


if __name__ == "__main__":
    unittest.main()
