"""
CHIP-8 Engine Tests
===================
Run-state machine, every instruction's effect on registers, memory and the
framebuffer, the VF ownership rules, and each fatal condition.
"""

import os
import tempfile
import unittest

import pytest

from chip8 import (
    Chip8, RunState, FONT, FONT_BASE, PROGRAM_START, STACK_DEPTH,
    FatalError, IllegalJumpError, StackOverflowError, StackUnderflowError,
    ReservedRegisterError, InvalidOpcodeError,
)
from decode import Op
from asm import assemble


def load_asm(source: str, vm: Chip8 = None) -> Chip8:
    """Assemble *source* and load it at 0x200."""
    vm = vm or Chip8(seed=1)
    vm.load_rom(assemble(source))
    return vm


def run_asm(source: str, vm: Chip8 = None, max_steps: int = 10_000) -> Chip8:
    """Assemble, load and run until the machine halts."""
    vm = load_asm(source, vm)
    vm.run(max_steps)
    return vm


# ---------------------------------------------------------------------------
#  Memory and loading
# ---------------------------------------------------------------------------

class TestMemory(unittest.TestCase):

    def test_power_on(self):
        vm = Chip8()
        self.assertEqual(vm.pc, PROGRAM_START)
        self.assertEqual(vm.sp, 0)
        self.assertEqual(vm.i, 0)
        self.assertEqual(vm.v, [0] * 16)
        self.assertIs(vm.state, RunState.IDLE)
        self.assertEqual(vm.fb.lit_count(), 0)

    def test_font_resident(self):
        vm = Chip8()
        self.assertEqual(bytes(vm.mem[FONT_BASE:FONT_BASE + 80]), FONT)
        self.assertEqual(bytes(vm.mem[0x50:0x55]), b"\xF0\x90\x90\x90\xF0")

    def test_load_rom_places_at_0x200(self):
        vm = Chip8()
        n = vm.load_rom(b"\x60\x05")
        self.assertEqual(n, 2)
        self.assertEqual(vm.mem[0x200], 0x60)
        self.assertEqual(vm.mem[0x201], 0x05)

    def test_load_rom_flushes_old_program(self):
        vm = Chip8()
        vm.load_rom(b"\xAA" * 10)
        vm.load_rom(b"\x11")
        self.assertEqual(vm.mem[0x200], 0x11)
        self.assertEqual(bytes(vm.mem[0x201:0x20A]), bytes(9))

    def test_load_rom_keeps_font(self):
        vm = Chip8()
        vm.load_rom(b"\xFF" * 100)
        self.assertEqual(bytes(vm.mem[FONT_BASE:FONT_BASE + 80]), FONT)

    def test_load_rom_truncates(self):
        vm = Chip8()
        data = bytes(k & 0xFF for k in range(4000))
        self.assertEqual(vm.load_rom(data), 3584)
        self.assertEqual(vm.mem[0xFFF], data[3583])

    def test_load_rom_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "prog.ch8")
            with open(path, "wb") as f:
                f.write(b"\x00\xE0\x12\x00")
            vm = Chip8()
            self.assertEqual(vm.load_rom_file(path), 4)
        self.assertEqual(bytes(vm.mem[0x200:0x204]), b"\x00\xE0\x12\x00")

    def test_read_sprite_wraps_address(self):
        vm = Chip8()
        vm.mem[0xFFF] = 0x12
        vm.mem[0x000] = 0x34
        self.assertEqual(vm.read_sprite(0xFFF, 2), b"\x12\x34")

    def test_load_bytes(self):
        vm = Chip8()
        vm.load_bytes(0x300, b"\x01\x02")
        self.assertEqual(vm.mem_read8(0x300), 1)
        self.assertEqual(vm.mem_read8(0x1301), 2)


# ---------------------------------------------------------------------------
#  Run state
# ---------------------------------------------------------------------------

class TestRunState(unittest.TestCase):

    def test_first_step_starts_machine(self):
        vm = load_asm("LD V0, 5")
        self.assertTrue(vm.step())
        self.assertIs(vm.state, RunState.RUNNING)
        self.assertTrue(vm.running)

    def test_terminator_halts_and_rewinds(self):
        vm = run_asm("LD V0, 5")
        self.assertIs(vm.state, RunState.HALTED)
        self.assertTrue(vm.halted)
        self.assertEqual(vm.pc, 0x202)

    def test_step_after_halt_is_noop(self):
        vm = run_asm("LD V0, 5")
        before = vm.snapshot()
        self.assertFalse(vm.step())
        self.assertFalse(vm.step())
        self.assertEqual(vm.snapshot(), before)

    def test_run_counts_terminator(self):
        vm = load_asm("LD V0, 5\nLD V1, 6")
        self.assertEqual(vm.run(), 3)
        self.assertEqual(vm.instruction_count, 3)
        self.assertIs(vm.last_instruction.op, Op.END)

    def test_run_respects_max_steps(self):
        vm = load_asm("loop:\nJP loop")
        self.assertEqual(vm.run(max_steps=50), 50)
        self.assertTrue(vm.running)

    def test_stop_and_resume(self):
        vm = load_asm("LD V0, 1\nLD V1, 2")
        vm.step()
        vm.stop()
        self.assertIs(vm.state, RunState.HALTED)
        self.assertFalse(vm.step())
        self.assertTrue(vm.resume())
        vm.step()
        self.assertEqual(vm.v[1], 2)

    def test_on_halt_callback(self):
        calls = []
        vm = Chip8()
        vm.on_halt = lambda: calls.append(vm.pc)
        run_asm("CLS", vm)
        self.assertEqual(calls, [0x202])

    def test_halt_is_logged(self):
        vm = load_asm("CLS")
        with self.assertLogs("chip8", level="INFO") as cm:
            vm.run()
        self.assertTrue(any("[HALT]" in line for line in cm.output))

    def test_panic_is_sticky(self):
        vm = load_asm("DW 0xF00A")
        with self.assertRaises(InvalidOpcodeError):
            vm.step()
        self.assertIs(vm.state, RunState.PANICKED)
        self.assertTrue(vm.halted)
        self.assertFalse(vm.start())
        self.assertFalse(vm.step())
        vm.stop()
        self.assertIs(vm.state, RunState.PANICKED)

    def test_reset_leaves_panic(self):
        vm = load_asm("DW 0xF00A")
        with self.assertRaises(FatalError):
            vm.run()
        vm.reset()
        self.assertIs(vm.state, RunState.IDLE)
        self.assertIsNone(vm.panic)
        self.assertEqual(vm.pc, PROGRAM_START)
        self.assertEqual(vm.instruction_count, 0)

    def test_reset_clears_everything(self):
        vm = run_asm("LD V3, 7\nLD I, 0x050\nDRW V0, V0, 5\nCALL sub\n"
                     "sub:\nEND")
        vm.reset()
        self.assertEqual(vm.v, [0] * 16)
        self.assertEqual(vm.i, 0)
        self.assertEqual(vm.sp, 0)
        self.assertEqual(vm.fb.lit_count(), 0)
        self.assertEqual(vm.mem[0x200], 0)
        self.assertIsNone(vm.flag_source)

    def test_on_panic_callback(self):
        seen = []
        vm = Chip8()
        vm.on_panic = seen.append
        load_asm("RET", vm)
        with self.assertRaises(StackUnderflowError):
            vm.run()
        self.assertEqual(len(seen), 1)
        self.assertIs(seen[0], vm.panic)
        self.assertEqual(seen[0].pc, 0x200)


# ---------------------------------------------------------------------------
#  Loads, arithmetic and flags
# ---------------------------------------------------------------------------

class TestArithmetic(unittest.TestCase):

    def test_ld_byte_touches_only_target(self):
        vm = load_asm("LD V0, 5")
        vm.step()
        self.assertEqual(vm.v[0], 5)
        self.assertEqual(vm.v[1:], [0] * 15)
        self.assertEqual(vm.pc, 0x202)

    def test_add_byte_wraps_without_flag(self):
        vm = Chip8()
        vm.v[0xF] = 7
        run_asm("LD V0, 0xFF\nADD V0, 2", vm)
        self.assertEqual(vm.v[0], 1)
        self.assertEqual(vm.v[0xF], 7)

    def test_add_reg_carry(self):
        vm = run_asm("LD V0, 0xFF\nLD V1, 1\nADD V0, V1")
        self.assertEqual(vm.v[0], 0)
        self.assertEqual(vm.v[0xF], 1)
        self.assertIs(vm.flag_source, Op.ADD_REG)

    def test_add_reg_no_carry(self):
        vm = Chip8()
        vm.v[0xF] = 1
        run_asm("LD V0, 1\nLD V1, 1\nADD V0, V1", vm)
        self.assertEqual(vm.v[0], 2)
        self.assertEqual(vm.v[0xF], 0)

    def test_sub(self):
        vm = run_asm("LD V0, 5\nLD V1, 3\nSUB V0, V1")
        self.assertEqual((vm.v[0], vm.v[0xF]), (2, 1))
        vm = run_asm("LD V0, 3\nLD V1, 5\nSUB V0, V1")
        self.assertEqual((vm.v[0], vm.v[0xF]), (0xFE, 0))
        vm = run_asm("LD V0, 4\nLD V1, 4\nSUB V0, V1")
        self.assertEqual((vm.v[0], vm.v[0xF]), (0, 0))

    def test_subn(self):
        vm = run_asm("LD V0, 3\nLD V1, 5\nSUBN V0, V1")
        self.assertEqual((vm.v[0], vm.v[0xF]), (2, 1))
        vm = run_asm("LD V0, 5\nLD V1, 3\nSUBN V0, V1")
        self.assertEqual((vm.v[0], vm.v[0xF]), (0xFE, 0))
        self.assertIs(vm.flag_source, Op.SUBN)

    def test_shr(self):
        vm = run_asm("LD V0, 5\nSHR V0")
        self.assertEqual((vm.v[0], vm.v[0xF]), (2, 1))
        vm = run_asm("LD V0, 4\nLD V1, 0xFF\nSHR V0, V1")
        self.assertEqual((vm.v[0], vm.v[0xF]), (2, 0))

    def test_shl(self):
        vm = run_asm("LD V0, 0x81\nSHL V0")
        self.assertEqual((vm.v[0], vm.v[0xF]), (0x02, 1))
        self.assertIs(vm.flag_source, Op.SHL)
        vm = run_asm("LD V0, 0x41\nSHL V0")
        self.assertEqual((vm.v[0], vm.v[0xF]), (0x82, 0))

    def test_logic_ops_leave_flag(self):
        vm = Chip8()
        vm.v[0xF] = 1
        run_asm("LD V0, 0x0C\nLD V1, 0x0A\nLD V2, 0x0C\nLD V3, 0x0C\n"
                "OR V0, V1\nAND V2, V1\nXOR V3, V1", vm)
        self.assertEqual(vm.v[0], 0x0E)
        self.assertEqual(vm.v[2], 0x08)
        self.assertEqual(vm.v[3], 0x06)
        self.assertEqual(vm.v[0xF], 1)
        self.assertIsNone(vm.flag_source)

    def test_ld_reg(self):
        vm = run_asm("LD V4, 0x99\nLD V5, V4")
        self.assertEqual(vm.v[5], 0x99)

    def test_vf_readable_as_source(self):
        vm = Chip8()
        vm.v[0xF] = 9
        run_asm("LD V0, VF\nADD V1, V0", vm)
        self.assertEqual(vm.v[0], 9)
        self.assertEqual(vm.v[1], 9)

    def test_ld_i(self):
        vm = run_asm("LD I, 0xABC")
        self.assertEqual(vm.i, 0xABC)

    def test_registers_stay_bytes(self):
        vm = run_asm("LD V0, 0xFF\nLD V1, 0xFF\nADD V0, V1\nSHL V0\n"
                     "LD V2, 0\nSUB V2, V1")
        for r, value in enumerate(vm.v):
            with self.subTest(reg=r):
                self.assertTrue(0 <= value <= 0xFF)


class TestReservedRegister(unittest.TestCase):

    WORDS = [0x6F05, 0x7F01, 0x8F10, 0x8F11, 0x8F12, 0x8F13, 0x8F14,
             0x8F15, 0x8F16, 0x8F17, 0x8F1E, 0xCFFF]

    def test_every_vx_writer_is_guarded(self):
        for word in self.WORDS:
            with self.subTest(word=f"{word:04X}"):
                vm = Chip8()
                vm.v[0xF] = 7
                vm.v[1] = 3
                load_asm(f"DW {word:#06x}", vm)
                with self.assertRaises(ReservedRegisterError):
                    vm.step()
                self.assertEqual(vm.v[0xF], 7)
                self.assertIs(vm.state, RunState.PANICKED)

    def test_message_names_register(self):
        vm = load_asm("LD VF, 5")
        with self.assertRaises(ReservedRegisterError) as cm:
            vm.step()
        self.assertIn("VF register is reserved", str(cm.exception))
        self.assertEqual(cm.exception.pc, 0x200)


# ---------------------------------------------------------------------------
#  Control flow
# ---------------------------------------------------------------------------

class TestControlFlow(unittest.TestCase):

    def test_jp(self):
        vm = load_asm("JP 0x300")
        vm.step()
        self.assertEqual(vm.pc, 0x300)

    def test_jp_into_reserved_area(self):
        vm = load_asm("JP 0x1FF")
        with self.assertRaises(IllegalJumpError):
            vm.step()
        self.assertIs(vm.state, RunState.PANICKED)

    def test_call_and_ret(self):
        vm = load_asm("CALL 0x300\n.org 0x300\nRET")
        vm.step()
        self.assertEqual(vm.pc, 0x300)
        self.assertEqual(vm.sp, 1)
        self.assertEqual(vm.stack[0], 0x202)
        vm.step()
        self.assertEqual(vm.pc, 0x202)
        self.assertEqual(vm.sp, 0)

    def test_nested_calls(self):
        vm = run_asm("CALL a\nLD V2, 2\nEND\n"
                     "a:\nCALL b\nLD V1, 1\nRET\n"
                     "b:\nLD V0, 1\nRET")
        self.assertEqual(vm.v[:3], [1, 1, 2])
        self.assertEqual(vm.sp, 0)
        self.assertIs(vm.state, RunState.HALTED)

    def test_stack_overflow(self):
        src = "\n".join(f"CALL {0x202 + 2 * k:#05x}" for k in range(STACK_DEPTH + 1))
        vm = load_asm(src)
        for _ in range(STACK_DEPTH):
            vm.step()
        self.assertEqual(vm.sp, STACK_DEPTH)
        with self.assertRaises(StackOverflowError) as cm:
            vm.step()
        self.assertIn("call stack exceeded", str(cm.exception))
        self.assertEqual(vm.sp, STACK_DEPTH)

    def test_ret_on_empty_stack(self):
        vm = load_asm("RET")
        with self.assertRaises(StackUnderflowError):
            vm.step()
        self.assertEqual(vm.sp, 0)

    def test_call_into_reserved_area(self):
        vm = load_asm("CALL 0x100")
        with self.assertRaises(IllegalJumpError):
            vm.step()
        self.assertEqual(vm.sp, 0)

    def test_jp_v0(self):
        vm = load_asm("LD V0, 4\nJP V0, 0x300")
        vm.run(max_steps=2)
        self.assertEqual(vm.pc, 0x304)

    def test_jp_v0_past_memory(self):
        vm = load_asm("LD V0, 0xFF\nJP V0, 0xFFF")
        with self.assertRaises(IllegalJumpError):
            vm.run()

    def test_fetch_past_end(self):
        vm = load_asm("JP 0xFFF")
        vm.step()
        with self.assertRaises(IllegalJumpError):
            vm.step()

    def test_last_word_is_fetchable(self):
        vm = load_asm("JP 0xFFE")
        vm.run()
        self.assertIs(vm.state, RunState.HALTED)
        self.assertEqual(vm.pc, 0xFFE)

    def test_skips(self):
        vm = run_asm("""
            LD V0, 5
            LD V1, 5
            SE V0, 5
            LD V2, 1        ; skipped
            SNE V0, 6
            LD V3, 1        ; skipped
            SE V0, V1
            LD V4, 1        ; skipped
            SNE V0, V1
            LD V5, 1        ; executed
            SE V0, 9
            LD V6, 1        ; executed
        """)
        self.assertEqual(vm.v[2:7], [0, 0, 0, 1, 1])

    def test_sys_is_noop(self):
        vm = load_asm("SYS 0x123")
        before = vm.snapshot()
        vm.step()
        after = vm.snapshot()
        self.assertEqual(after["pc"], 0x202)
        after["pc"] = before["pc"]
        after["state"] = before["state"]
        self.assertEqual(after, before)


# ---------------------------------------------------------------------------
#  Display, random, unknown
# ---------------------------------------------------------------------------

class TestDisplayOps(unittest.TestCase):

    def test_cls(self):
        vm = Chip8()
        load_asm("CLS", vm)
        vm.fb.fill()
        vm.step()
        self.assertEqual(vm.fb.lit_count(), 0)

    def test_drw_font_glyph(self):
        vm = run_asm("LD I, 0x050\nLD V0, 0\nLD V1, 0\nDRW V0, V1, 5")
        self.assertEqual(vm.fb.lit_count(), 14)
        self.assertEqual([vm.fb.get_pixel(x, 0) for x in range(8)],
                         [1, 1, 1, 1, 0, 0, 0, 0])
        self.assertEqual(vm.v[0xF], 0)
        self.assertIsNone(vm.flag_source)

    def test_drw_collision_sets_flag(self):
        vm = run_asm("LD I, 0x050\nDRW V0, V0, 5\nDRW V0, V0, 5")
        self.assertEqual(vm.fb.lit_count(), 0)
        self.assertEqual(vm.v[0xF], 1)
        self.assertIs(vm.flag_source, Op.DRW)

    def test_drw_never_clears_flag(self):
        vm = run_asm("LD I, 0x050\nDRW V0, V0, 5\nDRW V0, V0, 5\nDRW V0, V0, 5")
        self.assertEqual(vm.fb.lit_count(), 14)
        self.assertEqual(vm.v[0xF], 1)

    def test_drw_positions(self):
        vm = run_asm("LD I, sprite\nLD V0, 10\nLD V1, 20\nDRW V0, V1, 1\nEND\n"
                     "sprite:\n.db 0x80")
        self.assertEqual(vm.fb.get_pixel(10, 20), 1)
        self.assertEqual(vm.fb.lit_count(), 1)

    def test_drw_zero_rows(self):
        vm = run_asm("LD I, 0x050\nDRW V0, V0, 0")
        self.assertEqual(vm.fb.lit_count(), 0)

    def test_drw_wrap_mode(self):
        vm = Chip8(wrap=True)
        run_asm("LD I, sprite\nLD V0, 63\nDRW V0, V1, 1\nEND\nsprite:\n.db 0xC0", vm)
        self.assertEqual(vm.fb.get_pixel(63, 0), 1)
        self.assertEqual(vm.fb.get_pixel(0, 0), 1)

    def test_rnd_masked(self):
        vm = Chip8(seed=5)
        for _ in range(20):
            run_asm("RND V0, 0x0F", vm)
            self.assertEqual(vm.v[0] & 0xF0, 0)
            vm.reset()

    def test_rnd_zero_mask(self):
        vm = run_asm("LD V0, 0x55\nRND V0, 0")
        self.assertEqual(vm.v[0], 0)

    def test_rnd_reproducible(self):
        a = run_asm("RND V0, 0xFF\nRND V1, 0xFF", Chip8(seed=42))
        b = run_asm("RND V0, 0xFF\nRND V1, 0xFF", Chip8(seed=42))
        self.assertEqual(a.v[:2], b.v[:2])

    def test_unknown_opcodes(self):
        for word in (0xF00A, 0x5121, 0xE09E, 0x8128):
            with self.subTest(word=f"{word:04X}"):
                vm = load_asm(f"DW {word:#06x}")
                with self.assertRaises(InvalidOpcodeError) as cm:
                    vm.step()
                self.assertIn(f"{word:#06x}", str(cm.exception))
                self.assertIs(vm.panic, cm.exception)


# ---------------------------------------------------------------------------
#  Inspection
# ---------------------------------------------------------------------------

class TestInspection(unittest.TestCase):

    def test_snapshot_does_not_alias(self):
        vm = run_asm("LD V0, 1\nCALL 0x300\n.org 0x300\nEND")
        snap = vm.snapshot()
        snap["v"][0] = 99
        snap["stack"][0] = 0
        self.assertEqual(vm.v[0], 1)
        self.assertEqual(vm.stack[0], 0x204)
        self.assertEqual(snap["state"], "halted")

    def test_timers_never_move(self):
        vm = Chip8()
        vm.delay_timer = 30
        vm.sound_timer = 4
        run_asm("loop:\nJP loop", vm, max_steps=500)
        self.assertEqual((vm.delay_timer, vm.sound_timer), (30, 4))

    def test_dump_regs(self):
        vm = run_asm("LD V0, 0xFF\nLD V1, 1\nADD V0, V1")
        text = vm.dump_regs()
        self.assertIn("V1 = 0x01", text)
        self.assertIn("VF = 0x01", text)
        self.assertIn("VF last written by ADD_REG", text)
        self.assertIn("state = halted", text)

    def test_dump_stack(self):
        vm = Chip8()
        self.assertIn("(empty)", vm.dump_stack())
        run_asm("CALL 0x300\n.org 0x300\nEND", vm)
        self.assertIn("0x202", vm.dump_stack())


# ---------------------------------------------------------------------------
#  Fixture-based checks
# ---------------------------------------------------------------------------

def test_fixture_machine_is_idle(vm):
    assert vm.state is RunState.IDLE
    assert vm.seed == 1234


def test_program_counter_advances_by_two(vm):
    load_asm("CLS\nCLS\nCLS", vm)
    for expected in (0x202, 0x204, 0x206):
        vm.step()
        assert vm.pc == expected


@pytest.mark.parametrize("source, reg, value", [
    ("LD V0, 0x10\nADD V0, 0xF0", 0, 0x00),
    ("LD V1, 0b1010\nSHR V1", 1, 0b101),
    ("LD V2, 200\nLD V3, 100\nADD V2, V3", 2, 44),
    ("LD V4, 1\nLD V5, 2\nSUBN V4, V5", 4, 1),
])
def test_register_results(vm, source, reg, value):
    run_asm(source, vm)
    assert vm.v[reg] == value
