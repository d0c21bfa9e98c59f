"""
CHIP-8 Instruction Decoder
==========================
Classifies a raw two-byte opcode into one of the supported instructions.
Decoding is total and has no side effects: every byte pair maps to exactly
one ``Op``, including the synthetic ``END`` terminator (``0x0000``) and
``UNKNOWN`` for anything that matches no known pattern.

Operand fields are not pre-parsed.  An ``Instruction`` keeps the raw bytes
and re-extracts ``x``/``y``/``n``/``kk``/``nnn`` on demand, so the same
value serves both the execution engine and the disassembler.
"""

from __future__ import annotations
import enum
from dataclasses import dataclass


class Op(enum.Enum):
    END      = enum.auto()
    SYS      = enum.auto()
    CLS      = enum.auto()
    RET      = enum.auto()
    JP       = enum.auto()
    CALL     = enum.auto()
    SE_BYTE  = enum.auto()
    SNE_BYTE = enum.auto()
    SE_REG   = enum.auto()
    SNE_REG  = enum.auto()
    LD_BYTE  = enum.auto()
    ADD_BYTE = enum.auto()
    LD_REG   = enum.auto()
    OR       = enum.auto()
    AND      = enum.auto()
    XOR      = enum.auto()
    ADD_REG  = enum.auto()
    SUB      = enum.auto()
    SHR      = enum.auto()
    SUBN     = enum.auto()
    SHL      = enum.auto()
    LD_I     = enum.auto()
    JP_V0    = enum.auto()
    RND      = enum.auto()
    DRW      = enum.auto()
    UNKNOWN  = enum.auto()

    @property
    def mnemonic(self) -> str:
        return MNEMONICS.get(self, self.name)


# Ops whose mnemonic differs from the member name
MNEMONICS = {
    Op.SE_BYTE: "SE",  Op.SE_REG: "SE",
    Op.SNE_BYTE: "SNE", Op.SNE_REG: "SNE",
    Op.LD_BYTE: "LD",  Op.LD_REG: "LD",  Op.LD_I: "LD",
    Op.ADD_BYTE: "ADD", Op.ADD_REG: "ADD",
    Op.JP_V0: "JP",
    Op.UNKNOWN: "DW",
}


# 8xy? ALU family, keyed by the low nibble
ALU_OPS = {
    0x0: Op.LD_REG, 0x1: Op.OR,  0x2: Op.AND, 0x3: Op.XOR,
    0x4: Op.ADD_REG, 0x5: Op.SUB, 0x6: Op.SHR, 0x7: Op.SUBN,
    0xE: Op.SHL,
}

# Ops that name an explicit destination register Vx
WRITES_VX = frozenset({
    Op.LD_BYTE, Op.ADD_BYTE, Op.LD_REG, Op.OR, Op.AND, Op.XOR,
    Op.ADD_REG, Op.SUB, Op.SHR, Op.SUBN, Op.SHL, Op.RND,
})


@dataclass(frozen=True)
class Instruction:
    """A classified opcode plus the two raw bytes it was decoded from."""
    op: Op
    b0: int
    b1: int

    @property
    def word(self) -> int:
        return (self.b0 << 8) | self.b1

    @property
    def x(self) -> int:
        return self.b0 & 0x0F

    @property
    def y(self) -> int:
        return (self.b1 >> 4) & 0x0F

    @property
    def n(self) -> int:
        return self.b1 & 0x0F

    @property
    def kk(self) -> int:
        return self.b1

    @property
    def nnn(self) -> int:
        return ((self.b0 & 0x0F) << 8) | self.b1

    @property
    def mnemonic(self) -> str:
        return self.op.mnemonic

    def __str__(self) -> str:
        return format_instruction(self)


def decode(b0: int, b1: int) -> Instruction:
    """Classify the opcode ``b0 b1`` (most-significant byte first)."""
    b0 &= 0xFF
    b1 &= 0xFF
    f = b0 >> 4
    low = b1 & 0x0F

    if f == 0x0:
        if b0 == 0x00 and b1 == 0x00:
            op = Op.END
        elif b0 == 0x00 and b1 == 0xE0:
            op = Op.CLS
        elif b0 == 0x00 and b1 == 0xEE:
            op = Op.RET
        else:
            op = Op.SYS
    elif f == 0x1: op = Op.JP
    elif f == 0x2: op = Op.CALL
    elif f == 0x3: op = Op.SE_BYTE
    elif f == 0x4: op = Op.SNE_BYTE
    elif f == 0x5: op = Op.SE_REG if low == 0 else Op.UNKNOWN
    elif f == 0x6: op = Op.LD_BYTE
    elif f == 0x7: op = Op.ADD_BYTE
    elif f == 0x8: op = ALU_OPS.get(low, Op.UNKNOWN)
    elif f == 0x9: op = Op.SNE_REG if low == 0 else Op.UNKNOWN
    elif f == 0xA: op = Op.LD_I
    elif f == 0xB: op = Op.JP_V0
    elif f == 0xC: op = Op.RND
    elif f == 0xD: op = Op.DRW
    else:
        # Ex??/Fx?? need keypad, timers or BCD support
        op = Op.UNKNOWN
    return Instruction(op, b0, b1)


def decode_word(word: int) -> Instruction:
    return decode((word >> 8) & 0xFF, word & 0xFF)


# ---------------------------------------------------------------------------
#  Text rendering (shared by the disassembler and the execution trace)
# ---------------------------------------------------------------------------

def format_instruction(ins: Instruction) -> str:
    """Render *ins* as assembler-compatible text, e.g. ``DRW V2, V3, 5``."""
    op = ins.op
    m = op.mnemonic
    vx = f"V{ins.x:X}"
    vy = f"V{ins.y:X}"

    if op in (Op.END, Op.CLS, Op.RET):
        return m
    if op in (Op.SYS, Op.JP, Op.CALL):
        return f"{m} {ins.nnn:#05x}"
    if op is Op.JP_V0:
        return f"{m} V0, {ins.nnn:#05x}"
    if op is Op.LD_I:
        return f"{m} I, {ins.nnn:#05x}"
    if op in (Op.SE_BYTE, Op.SNE_BYTE, Op.LD_BYTE, Op.ADD_BYTE, Op.RND):
        return f"{m} {vx}, {ins.kk:#04x}"
    if op in (Op.SHR, Op.SHL):
        # y is ignored by the shift but kept so the bytes round-trip
        return f"{m} {vx}, {vy}" if ins.y else f"{m} {vx}"
    if op is Op.DRW:
        return f"{m} {vx}, {vy}, {ins.n}"
    if op is Op.UNKNOWN:
        return f"{m} {ins.word:#06x}"
    return f"{m} {vx}, {vy}"
