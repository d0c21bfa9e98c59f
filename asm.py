"""
CHIP-8 Assembler
================
Translates assembly text into a CHIP-8 program image.

Supports:
  - Labels (terminated with ':')
  - Every instruction the VM decodes, in the disassembler's syntax
  - Immediate literals (decimal, hex with 0x prefix, binary with 0b)
  - Comments (';' to end of line)
  - .org, .db, .dw directives (.dw words are big-endian)

Usage:
  from asm import assemble
  image = assemble(source_text)          # assembled for 0x200
"""

from __future__ import annotations

PROGRAM_START = 0x200

# Fixed-encoding mnemonics
FIXED_OPS = {
    "cls": 0x00E0,
    "ret": 0x00EE,
    "end": 0x0000,
}

# 8xy? register-register ALU ops, by low nibble
ALU_SUB = {
    "or":   0x1, "and": 0x2, "xor": 0x3,
    "sub":  0x5, "subn": 0x7,
}

SHIFT_SUB = {"shr": 0x6, "shl": 0xE}

MNEMONICS = frozenset(
    list(FIXED_OPS) + list(ALU_SUB) + list(SHIFT_SUB) +
    ["sys", "jp", "call", "se", "sne", "ld", "add", "rnd", "drw", "dw"]
)

# ---------------------------------------------------------------------------
#  Parser helpers
# ---------------------------------------------------------------------------

def _is_reg(tok: str) -> bool:
    tok = tok.strip().lower()
    return len(tok) == 2 and tok[0] == "v" and tok[1] in "0123456789abcdef"

def _parse_reg(tok: str) -> int:
    """Parse 'V0'-'VF' (case-insensitive). Returns register index."""
    if not _is_reg(tok):
        raise ValueError(f"Invalid register: {tok.strip()!r}")
    return int(tok.strip()[1], 16)

def _parse_imm(tok: str) -> int:
    """Parse an immediate value (decimal, 0x hex or 0b binary)."""
    tok = tok.strip()
    if tok.startswith("0x") or tok.startswith("0X"):
        return int(tok, 16)
    if tok.startswith("-"):
        return int(tok, 10)
    return int(tok, 0)

def _split_ops(rest: str) -> list[str]:
    """Split operand string by comma, trimming whitespace."""
    return [s.strip() for s in rest.split(",") if s.strip()]

def _split_mnemonic(text: str) -> tuple[str, str]:
    """Split 'MNEM operands' → (mnem, operands_str)."""
    parts = text.split(None, 1)
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1]

def _check_range(val: int, bits: int, what: str) -> int:
    if not 0 <= val < (1 << bits):
        raise ValueError(f"{what} {val:#x} does not fit in {bits} bits")
    return val

# ---------------------------------------------------------------------------
#  Assembler
# ---------------------------------------------------------------------------

class AsmError(Exception):
    def __init__(self, line: int, msg: str):
        self.line = line
        super().__init__(f"Line {line}: {msg}")


def assemble(source: str, base_addr: int = PROGRAM_START,
             listing: bool = False) -> bytearray:
    """
    Two-pass assembler.
    Pass 1: collect labels, compute addresses.
    Pass 2: emit big-endian opcodes with resolved addresses.
    If listing=True, print an address/hex/source listing to stdout.
    """

    # Pre-process: strip comments and whitespace
    cleaned: list[tuple[int, str]] = []
    for i, raw in enumerate(source.split("\n"), 1):
        stripped = raw.split(";", 1)[0].strip()
        if stripped:
            cleaned.append((i, stripped))

    # ---- Pass 1: label collection and size computation ----
    labels: dict[str, int] = {}
    sizes: list[tuple[int, str, int]] = []  # (line_no, text, size_bytes)
    pc = base_addr

    for lineno, text in cleaned:
        if text.endswith(":"):
            lbl = text[:-1].strip()
            if lbl in labels:
                raise AsmError(lineno, f"Duplicate label: {lbl}")
            if not lbl.isidentifier() or _is_reg(lbl):
                raise AsmError(lineno, f"Invalid label name: {lbl!r}")
            labels[lbl] = pc
            continue

        lower = text.lower()
        try:
            if lower.startswith(".org"):
                target = _parse_imm(text[4:])
                if target < pc:
                    raise AsmError(lineno, f".org {target:#x} moves backwards from {pc:#x}")
                sizes.append((lineno, text, target - pc))
                pc = target
                continue
            if lower.startswith(".db"):
                sz = len(_split_ops(text[3:]))
            elif lower.startswith(".dw"):
                sz = len(_split_ops(text[3:])) * 2
            else:
                mnem, _ = _split_mnemonic(text)
                if mnem.lower() not in MNEMONICS:
                    raise AsmError(lineno, f"Unknown mnemonic: {mnem!r}")
                sz = 2
        except ValueError as e:
            raise AsmError(lineno, str(e))
        sizes.append((lineno, text, sz))
        pc += sz

    # ---- Pass 2: emit bytes ----
    code = bytearray()
    pc = base_addr
    listing_lines = []  # (addr, hex_bytes, source_text)

    for lineno, text, sz in sizes:
        start_pc = pc
        lower = text.lower()
        try:
            if lower.startswith(".org"):
                emitted = bytearray(sz)
            elif lower.startswith(".db"):
                emitted = bytearray(_byte(tok, labels) for tok in _split_ops(text[3:]))
            elif lower.startswith(".dw"):
                emitted = bytearray()
                for tok in _split_ops(text[3:]):
                    v = _check_range(_resolve(tok, labels), 16, "Word")
                    emitted += bytes([(v >> 8) & 0xFF, v & 0xFF])
            else:
                word = _emit_instruction(text, labels)
                emitted = bytearray([(word >> 8) & 0xFF, word & 0xFF])
        except ValueError as e:
            raise AsmError(lineno, str(e))

        assert len(emitted) == sz, f"Size mismatch line {lineno}: expected {sz}, got {len(emitted)}"
        if listing and not lower.startswith(".org"):
            hexstr = " ".join(f"{b:02X}" for b in emitted[:8])
            if len(emitted) > 8:
                hexstr += " ..."
            listing_lines.append((start_pc, hexstr, text))
        elif listing:
            listing_lines.append((start_pc, "", text))
        code.extend(emitted)
        pc += sz

    if pc > 0x1000:
        raise AsmError(sizes[-1][0], f"Program ends at {pc:#x}, past the end of memory")

    if listing:
        addr_labels: dict[int, list[str]] = {}
        for lbl, addr in labels.items():
            addr_labels.setdefault(addr, []).append(lbl)
        for addr, hexstr, src in listing_lines:
            for lbl in addr_labels.pop(addr, []):
                print(f"                 {lbl}:")
            print(f"  {addr:03X}  {hexstr:<12s}  {src}")
        for addr in sorted(addr_labels):
            for lbl in addr_labels[addr]:
                print(f"                 {lbl}:")

    return code


def _resolve(tok: str, labels: dict[str, int]) -> int:
    """Resolve a token that is either an immediate or a label reference."""
    tok = tok.strip()
    if tok in labels:
        return labels[tok]
    try:
        return _parse_imm(tok)
    except ValueError:
        raise ValueError(f"Undefined label or bad number: {tok!r}")


def _byte(tok: str, labels: dict[str, int]) -> int:
    """8-bit operand; -128..-1 are accepted as two's complement."""
    v = _resolve(tok, labels)
    if -0x80 <= v < 0:
        v += 0x100
    return _check_range(v, 8, "Byte")


def _addr(tok: str, labels: dict[str, int]) -> int:
    return _check_range(_resolve(tok, labels), 12, "Address")


def _expect(ops: list[str], count: int, mnem: str):
    if len(ops) != count:
        raise ValueError(f"{mnem.upper()} expects {count} operand(s), got {len(ops)}")


# ---------------------------------------------------------------------------
#  Instruction emission (pass 2)
# ---------------------------------------------------------------------------

def _emit_instruction(text: str, labels: dict[str, int]) -> int:
    """Encode one instruction as a 16-bit opcode."""
    mnem, rest = _split_mnemonic(text)
    m = mnem.lower()
    ops = _split_ops(rest)

    if m in FIXED_OPS:
        _expect(ops, 0, m)
        return FIXED_OPS[m]

    if m == "sys":
        _expect(ops, 1, m)
        return 0x0000 | _addr(ops[0], labels)

    if m == "jp":
        if len(ops) == 2:
            if ops[0].lower() != "v0":
                raise ValueError("Indexed JP only takes V0")
            return 0xB000 | _addr(ops[1], labels)
        _expect(ops, 1, m)
        return 0x1000 | _addr(ops[0], labels)

    if m == "call":
        _expect(ops, 1, m)
        return 0x2000 | _addr(ops[0], labels)

    if m in ("se", "sne"):
        _expect(ops, 2, m)
        x = _parse_reg(ops[0])
        if _is_reg(ops[1]):
            hi = 0x5 if m == "se" else 0x9
            return (hi << 12) | (x << 8) | (_parse_reg(ops[1]) << 4)
        hi = 0x3 if m == "se" else 0x4
        return (hi << 12) | (x << 8) | _byte(ops[1], labels)

    if m == "ld":
        _expect(ops, 2, m)
        if ops[0].lower() == "i":
            return 0xA000 | _addr(ops[1], labels)
        x = _parse_reg(ops[0])
        if _is_reg(ops[1]):
            return 0x8000 | (x << 8) | (_parse_reg(ops[1]) << 4)
        return 0x6000 | (x << 8) | _byte(ops[1], labels)

    if m == "add":
        _expect(ops, 2, m)
        x = _parse_reg(ops[0])
        if _is_reg(ops[1]):
            return 0x8004 | (x << 8) | (_parse_reg(ops[1]) << 4)
        return 0x7000 | (x << 8) | _byte(ops[1], labels)

    if m in ALU_SUB:
        _expect(ops, 2, m)
        return (0x8000 | (_parse_reg(ops[0]) << 8) |
                (_parse_reg(ops[1]) << 4) | ALU_SUB[m])

    if m in SHIFT_SUB:
        # The y register is ignored by the VM but may be spelled out
        if len(ops) not in (1, 2):
            raise ValueError(f"{m.upper()} expects 1 or 2 operands, got {len(ops)}")
        y = _parse_reg(ops[1]) if len(ops) == 2 else 0
        return 0x8000 | (_parse_reg(ops[0]) << 8) | (y << 4) | SHIFT_SUB[m]

    if m == "rnd":
        _expect(ops, 2, m)
        return 0xC000 | (_parse_reg(ops[0]) << 8) | _byte(ops[1], labels)

    if m == "drw":
        _expect(ops, 3, m)
        n = _check_range(_parse_imm(ops[2]), 4, "Sprite height")
        return 0xD000 | (_parse_reg(ops[0]) << 8) | (_parse_reg(ops[1]) << 4) | n

    if m == "dw":
        _expect(ops, 1, m)
        return _check_range(_resolve(ops[0], labels), 16, "Word")

    raise ValueError(f"Unknown mnemonic: {mnem!r}")
