"""
CHIP-8 Virtual Machine
======================
A step emulator for the CHIP-8 architecture: 4 KiB of byte-addressable
memory, sixteen 8-bit V registers, a 16-bit index register, a 16-level
return stack and a 64x32 monochrome framebuffer.

Every instruction is two bytes, most-significant byte first.  ``step()``
fetches the word at PC, advances PC by 2, classifies the word with
``decode.decode`` and runs exactly one handler from the dispatch table.

Fatal conditions (illegal jump, stack overflow/underflow, a write to VF
as an explicit destination, an unrecognized opcode) move the machine to
``RunState.PANICKED`` and propagate as ``FatalError`` subclasses.  Only
``reset()`` leaves the panicked state.
"""

from __future__ import annotations
import enum
import logging
import random
from typing import Callable, Optional

from decode import Instruction, Op, WRITES_VX, decode
from display import Framebuffer

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEM_SIZE      = 0x1000
PROGRAM_START = 0x200     # 0x000..0x1FF is reserved for the interpreter
FONT_BASE     = 0x050
STACK_DEPTH   = 16
NUM_REGS      = 16
VF            = 0xF

# Built-in 4x5 hex digit glyphs, 5 bytes each, digits 0..F
FONT = bytes([
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
GLYPH_SIZE = 5

# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def u8(v: int) -> int:
    """Mask to unsigned 8 bits."""
    return v & 0xFF

def u16(v: int) -> int:
    """Mask to unsigned 16 bits."""
    return v & 0xFFFF

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class Chip8Error(Exception):
    """Base for emulator-generated errors."""
    pass

class FatalError(Chip8Error):
    """A condition that stops the machine.  ``pc`` is the faulting address."""
    def __init__(self, pc: int, message: str):
        self.pc = pc
        super().__init__(message)

class IllegalJumpError(FatalError):
    pass

class StackOverflowError(FatalError):
    pass

class StackUnderflowError(FatalError):
    pass

class ReservedRegisterError(FatalError):
    pass

class InvalidOpcodeError(FatalError):
    pass


class RunState(enum.Enum):
    IDLE     = "idle"
    RUNNING  = "running"
    HALTED   = "halted"
    PANICKED = "panicked"


# ---------------------------------------------------------------------------
#  Machine
# ---------------------------------------------------------------------------

class Chip8:
    """CHIP-8 virtual machine: memory, registers, stack and framebuffer."""

    def __init__(self, seed: Optional[int] = None, wrap: bool = False):
        self.seed = seed
        self.mem = bytearray(MEM_SIZE)
        self.fb = Framebuffer(wrap=wrap)
        self.rng = random.Random(seed)

        # Callbacks
        self.on_halt: Optional[Callable[[], None]] = None
        self.on_panic: Optional[Callable[[FatalError], None]] = None

        self._dispatch: dict[Op, Callable[[Instruction], None]] = {
            Op.END:      self._exec_end,
            Op.SYS:      self._exec_sys,
            Op.CLS:      self._exec_cls,
            Op.RET:      self._exec_ret,
            Op.JP:       self._exec_jp,
            Op.CALL:     self._exec_call,
            Op.SE_BYTE:  self._exec_se_byte,
            Op.SNE_BYTE: self._exec_sne_byte,
            Op.SE_REG:   self._exec_se_reg,
            Op.SNE_REG:  self._exec_sne_reg,
            Op.LD_BYTE:  self._exec_ld_byte,
            Op.ADD_BYTE: self._exec_add_byte,
            Op.LD_REG:   self._exec_ld_reg,
            Op.OR:       self._exec_or,
            Op.AND:      self._exec_and,
            Op.XOR:      self._exec_xor,
            Op.ADD_REG:  self._exec_add_reg,
            Op.SUB:      self._exec_sub,
            Op.SHR:      self._exec_shr,
            Op.SUBN:     self._exec_subn,
            Op.SHL:      self._exec_shl,
            Op.LD_I:     self._exec_ld_i,
            Op.JP_V0:    self._exec_jp_v0,
            Op.RND:      self._exec_rnd,
            Op.DRW:      self._exec_drw,
            Op.UNKNOWN:  self._exec_unknown,
        }
        assert set(self._dispatch) == set(Op), "every Op needs a handler"

        self._reset_state()

    # -- Reset --

    def _reset_state(self):
        # Register file
        self.v: list[int] = [0] * NUM_REGS
        self.i: int = 0
        self.pc: int = PROGRAM_START
        self.sp: int = 0
        self.stack: list[int] = [0] * STACK_DEPTH

        # Declared but never decremented: there is no 60 Hz driver
        self.delay_timer: int = 0
        self.sound_timer: int = 0

        # Memory: wipe, then the glyph table
        self.mem[:] = bytes(MEM_SIZE)
        self.mem[FONT_BASE:FONT_BASE + len(FONT)] = FONT
        self.fb.clear()
        self.rng.seed(self.seed)

        # State
        self.state: RunState = RunState.IDLE
        self.panic: Optional[FatalError] = None
        self.flag_source: Optional[Op] = None
        self.instruction_count: int = 0
        self.last_instruction: Optional[Instruction] = None
        self._op_addr: int = PROGRAM_START

    def reset(self):
        """Return every register, memory cell and pixel to power-on values."""
        self._reset_state()
        logger.info("[RESET] machine reinitialized")

    # -- Run state --

    @property
    def halted(self) -> bool:
        return self.state in (RunState.HALTED, RunState.PANICKED)

    @property
    def running(self) -> bool:
        return self.state is RunState.RUNNING

    def start(self) -> bool:
        """Enter RUNNING from IDLE or HALTED.  Refused once PANICKED."""
        if self.state is RunState.PANICKED:
            return False
        self.state = RunState.RUNNING
        return True
    resume = start

    def stop(self):
        """Halt on request.  A panicked machine stays panicked."""
        if self.state is not RunState.PANICKED:
            self._halt("stopped")

    def _halt(self, reason: str):
        self.state = RunState.HALTED
        logger.info("[HALT] %#05x: %s", self.pc, reason)
        if self.on_halt:
            self.on_halt()

    def _panic(self, exc: FatalError):
        self.state = RunState.PANICKED
        self.panic = exc
        logger.error("[EXECUTE] %#05x: %s", exc.pc, exc)
        if self.on_panic:
            self.on_panic(exc)

    # -- Memory access --

    def mem_read8(self, addr: int) -> int:
        return self.mem[addr & 0xFFF]

    def read_sprite(self, addr: int, n: int) -> bytes:
        """Read *n* bytes starting at *addr*, wrapping at the 12-bit boundary."""
        return bytes(self.mem[(addr + k) & 0xFFF] for k in range(n))

    def load_rom(self, data: bytes | bytearray) -> int:
        """Flush the program region and copy *data* in at 0x200.

        Bytes that do not fit below 0x1000 are dropped.  Returns the number
        of bytes stored.
        """
        self.mem[PROGRAM_START:] = bytes(MEM_SIZE - PROGRAM_START)
        count = min(len(data), MEM_SIZE - PROGRAM_START)
        self.mem[PROGRAM_START:PROGRAM_START + count] = bytes(data[:count])
        logger.debug("[LOAD_ROM] %d bytes loaded at %#05x", count, PROGRAM_START)
        return count

    def load_rom_file(self, path: str) -> int:
        with open(path, "rb") as f:
            return self.load_rom(f.read())

    def load_bytes(self, addr: int, data: bytes | bytearray):
        """Write raw bytes into memory at the given address."""
        for k, b in enumerate(data):
            self.mem[(addr + k) & 0xFFF] = b & 0xFF

    # -- Fetch --

    def fetch(self) -> tuple[int, int]:
        """Read the opcode at PC and advance PC by 2."""
        if self.pc > MEM_SIZE - 2:
            raise IllegalJumpError(self.pc, f"fetch past end of memory at {self.pc:#05x}")
        b0 = self.mem[self.pc]
        b1 = self.mem[self.pc + 1]
        self.pc = u16(self.pc + 2)
        self.instruction_count += 1
        return b0, b1

    # -- Flag output --

    def _set_flag(self, value: int, source: Op):
        """Sole writer of VF.  Records which op last produced the flag."""
        self.v[VF] = value & 1
        self.flag_source = source

    def _check_target(self, addr: int, what: str) -> int:
        if not PROGRAM_START <= addr < MEM_SIZE:
            raise IllegalJumpError(
                self._op_addr,
                f"{what} {addr:#05x}: illegal jump to reserved address")
        return addr

    # =====================================================================
    #  STEP: one fetch/decode/execute cycle
    # =====================================================================

    def step(self) -> bool:
        """Execute one instruction.  Returns False if the machine is halted."""
        if self.state is RunState.IDLE:
            self.state = RunState.RUNNING
        if self.state is not RunState.RUNNING:
            return False

        self._op_addr = self.pc
        try:
            ins = decode(*self.fetch())
            self.last_instruction = ins
            logger.debug("[EXECUTE] %#05x: %s", self._op_addr, ins)
            if ins.op in WRITES_VX and ins.x == VF:
                raise ReservedRegisterError(
                    self._op_addr,
                    f"{ins}: VF register is reserved, cannot perform write")
            self._dispatch[ins.op](ins)
        except FatalError as e:
            self._panic(e)
            raise
        return True

    def run(self, max_steps: int = 1_000_000) -> int:
        """Step until halted or *max_steps*.  Returns instructions executed."""
        steps = 0
        while steps < max_steps and self.step():
            steps += 1
        return steps

    # =====================================================================
    #  Executors
    # =====================================================================

    # -- 0x0: END / SYS / CLS / RET --

    def _exec_end(self, ins: Instruction):
        # Rewind so stepping past the end of a program stays put
        self.pc = u16(self.pc - 2)
        self._halt("end of program")

    def _exec_sys(self, ins: Instruction):
        pass

    def _exec_cls(self, ins: Instruction):
        self.fb.clear()

    def _exec_ret(self, ins: Instruction):
        if self.sp == 0:
            raise StackUnderflowError(self._op_addr, "RET: empty call stack")
        self.sp -= 1
        self.pc = self.stack[self.sp]

    # -- 0x1 / 0x2 / 0xB: jumps and calls --

    def _exec_jp(self, ins: Instruction):
        self.pc = self._check_target(ins.nnn, "JP")

    def _exec_call(self, ins: Instruction):
        target = self._check_target(ins.nnn, "CALL")
        if self.sp >= STACK_DEPTH:
            raise StackOverflowError(
                self._op_addr, f"CALL {target:#05x}: call stack exceeded")
        self.stack[self.sp] = self.pc
        self.sp += 1
        self.pc = target

    def _exec_jp_v0(self, ins: Instruction):
        self.pc = self._check_target(ins.nnn + self.v[0], "JP V0,")

    # -- 0x3 / 0x4 / 0x5 / 0x9: conditional skips --

    def _skip_if(self, cond: bool):
        if cond:
            self.pc = u16(self.pc + 2)

    def _exec_se_byte(self, ins: Instruction):
        self._skip_if(self.v[ins.x] == ins.kk)

    def _exec_sne_byte(self, ins: Instruction):
        self._skip_if(self.v[ins.x] != ins.kk)

    def _exec_se_reg(self, ins: Instruction):
        self._skip_if(self.v[ins.x] == self.v[ins.y])

    def _exec_sne_reg(self, ins: Instruction):
        self._skip_if(self.v[ins.x] != self.v[ins.y])

    # -- 0x6 / 0x7: immediates --

    def _exec_ld_byte(self, ins: Instruction):
        self.v[ins.x] = ins.kk

    def _exec_add_byte(self, ins: Instruction):
        self.v[ins.x] = u8(self.v[ins.x] + ins.kk)

    # -- 0x8: ALU --

    def _exec_ld_reg(self, ins: Instruction):
        self.v[ins.x] = self.v[ins.y]

    def _exec_or(self, ins: Instruction):
        self.v[ins.x] |= self.v[ins.y]

    def _exec_and(self, ins: Instruction):
        self.v[ins.x] &= self.v[ins.y]

    def _exec_xor(self, ins: Instruction):
        self.v[ins.x] ^= self.v[ins.y]

    def _exec_add_reg(self, ins: Instruction):
        total = self.v[ins.x] + self.v[ins.y]
        self.v[ins.x] = u8(total)
        self._set_flag(1 if total > 0xFF else 0, ins.op)

    def _exec_sub(self, ins: Instruction):
        vx, vy = self.v[ins.x], self.v[ins.y]
        self.v[ins.x] = u8(vx - vy)
        self._set_flag(1 if vx > vy else 0, ins.op)

    def _exec_subn(self, ins: Instruction):
        vx, vy = self.v[ins.x], self.v[ins.y]
        self.v[ins.x] = u8(vy - vx)
        self._set_flag(1 if vy > vx else 0, ins.op)

    def _exec_shr(self, ins: Instruction):
        vx = self.v[ins.x]
        self.v[ins.x] = vx >> 1
        self._set_flag(vx & 1, ins.op)

    def _exec_shl(self, ins: Instruction):
        vx = self.v[ins.x]
        self.v[ins.x] = u8(vx << 1)
        self._set_flag((vx >> 7) & 1, ins.op)

    # -- 0xA / 0xC: index register, random --

    def _exec_ld_i(self, ins: Instruction):
        self.i = ins.nnn

    def _exec_rnd(self, ins: Instruction):
        self.v[ins.x] = self.rng.randrange(256) & ins.kk

    # -- 0xD: sprite draw --

    def _exec_drw(self, ins: Instruction):
        sprite = self.read_sprite(self.i, ins.n)
        # VF is only ever raised here, never cleared
        if self.fb.blit_sprite(self.v[ins.x], self.v[ins.y], sprite):
            self._set_flag(1, ins.op)

    def _exec_unknown(self, ins: Instruction):
        raise InvalidOpcodeError(self._op_addr, f"invalid opcode {ins.word:#06x}")

    # -- Debug / introspection --

    def snapshot(self) -> dict:
        """Copy of the machine state for inspection; never aliases live state."""
        return {
            "v": list(self.v),
            "i": self.i,
            "pc": self.pc,
            "sp": self.sp,
            "stack": list(self.stack),
            "delay_timer": self.delay_timer,
            "sound_timer": self.sound_timer,
            "state": self.state.value,
            "mem": bytes(self.mem),
            "fb": self.fb.snapshot(),
        }

    def dump_regs(self) -> str:
        lines = []
        for row in range(0, NUM_REGS, 4):
            lines.append("  " + "  ".join(
                f"V{r:X} = {self.v[r]:#04x}" for r in range(row, row + 4)))
        lines.append(f"  I  = {self.i:#06x}  PC = {self.pc:#05x}  SP = {self.sp}")
        lines.append(f"  DT = {self.delay_timer}  ST = {self.sound_timer}  "
                     f"state = {self.state.value}")
        if self.flag_source is not None:
            lines.append(f"  VF last written by {self.flag_source.name}")
        return "\n".join(lines)

    def dump_stack(self) -> str:
        if self.sp == 0:
            return "  (empty)"
        return "\n".join(f"  [{k:2d}] {self.stack[k]:#05x}"
                         for k in range(self.sp - 1, -1, -1))
