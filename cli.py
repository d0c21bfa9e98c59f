#!/usr/bin/env python3
"""
CHIP-8 Monitor / CLI
=====================
Interactive command-line interface for the CHIP-8 virtual machine.

Provides:
  - Program image loading (raw .ch8 or assembly source)
  - Start / stop / step / continue / reset, with breakpoints
  - Register, stack and memory inspection (hex + ASCII dump)
  - Disassembly
  - Text rendering of the 64x32 framebuffer

Usage:
  python cli.py [ROM] [--asm FILE] [--run] [--max-steps N] [--seed N]
                [--wrap] [--trace] [--disasm]
  python cli.py --assemble SRC OUT [--listing]
"""

from __future__ import annotations
import argparse
import cmd
import logging
import readline
import shlex
import sys
from typing import Optional

from chip8 import Chip8, FatalError, RunState, PROGRAM_START, MEM_SIZE
from decode import Op, decode, format_instruction
from asm import assemble, AsmError

# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

def disasm_one(mem: bytearray | bytes, addr: int) -> str:
    """Disassemble the opcode at `addr`."""
    b0 = mem[addr % MEM_SIZE]
    b1 = mem[(addr + 1) % MEM_SIZE]
    return format_instruction(decode(b0, b1))


def disasm_program(mem: bytearray | bytes, start: int = PROGRAM_START,
                   end: int = MEM_SIZE - 2) -> list[tuple[int, int, int, str]]:
    """Disassemble every aligned word from `start` to `end` inclusive.

    Returns (addr, b0, b1, text) tuples and stops after the END terminator.
    """
    out = []
    for addr in range(start, end + 1, 2):
        b0, b1 = mem[addr], mem[addr + 1]
        ins = decode(b0, b1)
        out.append((addr, b0, b1, format_instruction(ins)))
        if ins.op is Op.END:
            break
    return out


def hexdump(mem: bytearray | bytes, addr: int, count: int = 128) -> list[str]:
    """Hex + ASCII dump lines, 16 bytes per row."""
    lines = []
    end = min(addr + count, len(mem))
    for row_start in range(addr, end, 16):
        hex_bytes = []
        ascii_chars = []
        for k in range(16):
            if row_start + k < end:
                b = mem[row_start + k]
                hex_bytes.append(f"{b:02x}")
                ascii_chars.append(chr(b) if 0x20 <= b < 0x7F else '.')
            else:
                hex_bytes.append("  ")
                ascii_chars.append(' ')
        hex_str = ' '.join(hex_bytes[:8]) + '  ' + ' '.join(hex_bytes[8:])
        lines.append(f"  {row_start:#05x}: {hex_str}  |{''.join(ascii_chars)}|")
    return lines


# ---------------------------------------------------------------------------
#  CLI
# ---------------------------------------------------------------------------

class Chip8CLI(cmd.Cmd):
    """Interactive monitor for the CHIP-8 virtual machine."""

    intro = (
        "\n"
        "╔══════════════════════════════════════════════════════════╗\n"
        "║            CHIP-8 Monitor  v1.0                          ║\n"
        "║   Type 'help' for commands.  'quit' to exit.             ║\n"
        "╚══════════════════════════════════════════════════════════╝\n"
    )
    prompt = "C8> "

    def __init__(self, vm: Chip8, rom: Optional[bytes] = None):
        super().__init__()
        self.vm = vm
        self.rom = rom
        self.breakpoints: set[int] = set()

    # -- Parsing helpers --

    def _parse_addr(self, s: str) -> int:
        """Parse an address (hex with optional 0x prefix, or pc / i)."""
        s = s.strip().lower()
        if s == "pc":
            return self.vm.pc
        if s == "i":
            return self.vm.i
        return int(s, 0)

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    def _load(self, data: bytes, origin: str):
        self.rom = bytes(data)
        self.vm.reset()
        count = self.vm.load_rom(self.rom)
        print(f"Loaded {count} bytes from {origin} at {PROGRAM_START:#05x}")

    # ================================================================
    #  Commands
    # ================================================================

    # -- Loading --

    def do_load(self, arg):
        """Load a program image: load <file>
        Resets the machine first."""
        parts = shlex.split(arg)
        if not parts:
            print("Usage: load <file>")
            return
        try:
            with open(parts[0], "rb") as f:
                data = f.read()
        except OSError as e:
            print(f"Error: {e}")
            return
        self._load(data, f"'{parts[0]}'")

    def do_asm(self, arg):
        """Assemble source and load: asm <file.asm>
        Or inline:  asm -e "ld v0, 5; end" """
        parts = shlex.split(arg)
        if not parts:
            print("Usage: asm <file.asm>  OR  asm -e \"code\"")
            return

        if parts[0] == "-e":
            source = parts[1].replace(";", "\n") if len(parts) > 1 else ""
            origin = "inline source"
        else:
            try:
                with open(parts[0], "r") as f:
                    source = f.read()
            except OSError as e:
                print(f"Error reading '{parts[0]}': {e}")
                return
            origin = f"'{parts[0]}'"

        try:
            code = assemble(source)
        except AsmError as e:
            print(f"Assembly error: {e}")
            return
        self._load(code, origin)

    # -- Run state --

    def do_reset(self, arg):
        """Reset the machine and reload the current program."""
        self.vm.reset()
        if self.rom is not None:
            self.vm.load_rom(self.rom)
        print("Machine reset.")

    def do_start(self, arg):
        """Put the machine in the running state."""
        if self.vm.start():
            print(f"Running. PC={self.vm.pc:#05x}")
        else:
            print("Machine panicked; 'reset' first.")

    def do_stop(self, arg):
        """Halt the machine."""
        self.vm.stop()
        print(f"Halted at PC={self.vm.pc:#05x}")

    # -- Execution --

    def _report_fatal(self, e: FatalError):
        print(f"Fatal at {e.pc:#05x}: {e}")

    def do_step(self, arg):
        """Step N instructions: step [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        if self.vm.state is RunState.HALTED:
            self.vm.resume()
        for _ in range(count):
            addr_before = self.vm.pc
            try:
                if not self.vm.step():
                    print(self._halt_message())
                    break
            except FatalError as e:
                self._report_fatal(e)
                break
            b0, b1 = self.vm.mem[addr_before], self.vm.mem[addr_before + 1]
            print(f"  {addr_before:#05x}: {b0:02x} {b1:02x}  {self.vm.last_instruction}")
            if self.vm.halted:
                print(self._halt_message())
                break

    def do_run(self, arg):
        """Run until halt/breakpoint: run [max_steps]"""
        max_steps = self._parse_int(arg) if arg.strip() else 1_000_000
        if self.vm.state is RunState.PANICKED:
            print(self._halt_message())
            return
        self.vm.resume()
        total = 0
        while total < max_steps:
            if total and self.vm.pc in self.breakpoints:
                self.vm.stop()
                print(f"\nBreakpoint hit at {self.vm.pc:#05x}")
                return
            try:
                if not self.vm.step():
                    break
            except FatalError as e:
                self._report_fatal(e)
                return
            total += 1
            if self.vm.halted:
                break
        if self.vm.halted:
            print(f"{self._halt_message()} after {total} instructions.")
        else:
            print(f"\nStopped after {total} steps.")

    def do_continue(self, arg):
        """Alias for 'run'."""
        self.do_run(arg)
    do_c = do_continue

    def _halt_message(self) -> str:
        if self.vm.state is RunState.PANICKED:
            return f"Machine panicked: {self.vm.panic}"
        return f"Machine halted at {self.vm.pc:#05x}"

    # -- Breakpoints --

    def do_bp(self, arg):
        """Set breakpoint: bp <address>"""
        if not arg.strip():
            if self.breakpoints:
                print("Breakpoints:")
                for a in sorted(self.breakpoints):
                    print(f"  {a:#05x}")
            else:
                print("No breakpoints set.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.add(addr)
        print(f"Breakpoint set at {addr:#05x}")

    def do_bpd(self, arg):
        """Delete breakpoint: bpd <address|all>"""
        if arg.strip().lower() == "all":
            self.breakpoints.clear()
            print("All breakpoints cleared.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.discard(addr)
        print(f"Breakpoint at {addr:#05x} removed.")

    # -- Inspection --

    def do_regs(self, arg):
        """Show registers."""
        print(self.vm.dump_regs())
        print(f"  Instructions: {self.vm.instruction_count}")

    def do_stack(self, arg):
        """Show the return-address stack, top first."""
        print(self.vm.dump_stack())

    def do_dump(self, arg):
        """Hex dump memory: dump [address] [count]
        Defaults to 0x200, 128 bytes."""
        parts = shlex.split(arg)
        addr = self._parse_addr(parts[0]) if parts else PROGRAM_START
        count = self._parse_int(parts[1]) if len(parts) > 1 else 128
        for line in hexdump(self.vm.mem, addr, count):
            print(line)

    def do_disasm(self, arg):
        """Disassemble: disasm [address] [count]
        With no arguments, lists the program from 0x200 up to END."""
        parts = shlex.split(arg)
        if not parts:
            rows = disasm_program(self.vm.mem)
        else:
            addr = self._parse_addr(parts[0])
            count = self._parse_int(parts[1]) if len(parts) > 1 else 16
            rows = []
            for _ in range(count):
                if addr > MEM_SIZE - 2:
                    break
                rows.append((addr, self.vm.mem[addr], self.vm.mem[addr + 1],
                             disasm_one(self.vm.mem, addr)))
                addr += 2
        for addr, b0, b1, text in rows:
            marker = ">>>" if addr == self.vm.pc else "   "
            print(f"  {marker} {addr:#05x}: {b0:02x} {b1:02x}  {text}")

    def do_screen(self, arg):
        """Print the framebuffer as text."""
        print(self.vm.fb.render_text())

    def do_fb(self, arg):
        """Framebuffer debug aids: fb clear|fill|random"""
        sub = arg.strip().lower()
        if sub == "clear":
            self.vm.fb.clear()
        elif sub == "fill":
            self.vm.fb.fill()
        elif sub == "random":
            self.vm.fb.randomize(self.vm.rng)
        else:
            print("Usage: fb clear|fill|random")
            return
        print(f"  {self.vm.fb.lit_count()} pixels lit.")

    def do_status(self, arg):
        """Show run state and counters."""
        vm = self.vm
        print(f"  State: {vm.state.value}  PC={vm.pc:#05x}  SP={vm.sp}")
        print(f"  Instructions: {vm.instruction_count}")
        if vm.last_instruction is not None:
            print(f"  Last: {vm.last_instruction}")
        if vm.panic is not None:
            print(f"  Panic: {vm.panic}")

    # -- Misc --

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

def main(argv: Optional[list[str]] = None):
    parser = argparse.ArgumentParser(
        description="CHIP-8 virtual machine monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "examples:\n"
            "  python cli.py game.ch8 --run\n"
            "  python cli.py --asm demo.asm --disasm\n"
            "  python cli.py --assemble demo.asm demo.ch8 --listing\n"
        ),
    )
    parser.add_argument("rom", nargs="?", default=None,
                        help="Raw program image to load at 0x200")
    parser.add_argument("--asm", type=str, default=None, metavar="FILE",
                        help="Assemble FILE and load it instead of a raw image")
    parser.add_argument("--assemble", nargs=2, metavar=("SRC", "OUT"),
                        help="Assemble SRC to raw image OUT and exit")
    parser.add_argument("--listing", "-l", action="store_true",
                        help="Print an assembly listing (with --assemble)")
    parser.add_argument("--disasm", action="store_true",
                        help="Print the program disassembly and exit")
    parser.add_argument("--run", action="store_true",
                        help="Run the program before entering the monitor")
    parser.add_argument("--max-steps", type=int, default=1_000_000, metavar="N",
                        help="Instruction limit for --run (default: 1000000)")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for the RND instruction")
    parser.add_argument("--wrap", action="store_true",
                        help="Wrap sprites at the screen edges instead of "
                             "linear addressing")
    parser.add_argument("--trace", action="store_true",
                        help="Log every executed instruction")
    args = parser.parse_args(argv)

    if args.trace:
        logging.basicConfig(level=logging.DEBUG,
                            format="[%(levelname)s]:  %(message)s",
                            stream=sys.stdout)

    # ---- Assemble-only mode -------------------------------------------
    if args.assemble:
        src_path, out_path = args.assemble
        with open(src_path, "r") as f:
            source = f.read()
        try:
            code = assemble(source, listing=args.listing)
        except AsmError as e:
            print(f"Assembly error: {e}", file=sys.stderr)
            sys.exit(1)
        with open(out_path, "wb") as f:
            f.write(code)
        print(f"Assembled {src_path} → {out_path} ({len(code)} bytes)")
        return

    vm = Chip8(seed=args.seed, wrap=args.wrap)
    rom = None
    if args.asm:
        with open(args.asm, "r") as f:
            source = f.read()
        try:
            rom = bytes(assemble(source))
        except AsmError as e:
            print(f"Assembly error: {e}", file=sys.stderr)
            sys.exit(1)
    elif args.rom:
        with open(args.rom, "rb") as f:
            rom = f.read()
    if rom is not None:
        count = vm.load_rom(rom)
        print(f"Loaded {count} bytes at {PROGRAM_START:#05x}")

    if args.disasm:
        for addr, b0, b1, text in disasm_program(vm.mem):
            print(f"  {addr:#05x}: {b0:02x} {b1:02x}  {text}")
        return

    if args.run:
        try:
            steps = vm.run(args.max_steps)
            print(f"Ran {steps} instructions; state={vm.state.value}")
        except FatalError as e:
            print(f"Fatal at {e.pc:#05x}: {e}")
        print(vm.fb.render_text())

    cli = Chip8CLI(vm, rom)
    try:
        cli.cmdloop()
    except KeyboardInterrupt:
        print("\nInterrupted. Goodbye.")


if __name__ == "__main__":
    main()
