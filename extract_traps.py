#!/usr/bin/env python3
"""
extract_traps.py - Macintosh ROM Trap Table Extractor

Decodes the compressed trap dispatch table embedded in a ROM image, names
each trap from the reference table for the ROM's era, and writes a script
that labels every trap routine in a disassembler.

Table layout (big-endian), at the revision's trap_table_offset:
  +0  body length in bytes (slot descriptors following the header)
  +2  slot count
  +4  first trap number (slot i is trap first + i)
  +6  base address, the starting point for deltas

Each slot descriptor starts with a control byte:
  00-3F  skip (c & 3F) + 1 unused slots
  40-7F  (c & 3F) + 1 slots, each at previous + the signed 16-bit delta that follows
  80     32-bit absolute address follows
  81     signed 16-bit delta follows
  C0-FF  short delta of ((c & 3F) - 0x20) * 2
"""

import argparse
import io
import os
import re
import sys
from collections import namedtuple

import macrom
import trapnames
from macrom import MalformedTable, RomError, read_be16, read_be32, read_s16

HEADER_SIZE = 10
TOOLBOX_BIT = 0x0800
MAX_RUN = 0x40

CTRL_SKIP = 0x00
CTRL_RUN = 0x40
CTRL_LITERAL = 0x80
CTRL_DELTA16 = 0x81
CTRL_SHORT = 0xC0

SHORT_MIN = -0x40
SHORT_MAX = 0x3E

PLACEHOLDER_FORMAT = "unknown_trap_{:04X}"

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_UNMATCHED = 3


# =============================================================================
# Data structures
# =============================================================================

TrapEntry = namedtuple("TrapEntry", ("number", "address", "toolbox"))


class Matched(namedtuple("Matched", ("name",))):
    matched = True


class Unmatched(namedtuple("Unmatched", ("placeholder",))):
    matched = False

    @property
    def name(self):
        return self.placeholder


class LabeledTrap(namedtuple("LabeledTrap", ("entry", "match"))):
    @property
    def name(self):
        return self.match.name


def is_toolbox(number):
    return bool(number & TOOLBOX_BIT)


# =============================================================================
# Decoding
# =============================================================================

def parse_trap_header(table, offset):
    """Header fields of the table region; offset is only for error messages."""
    if len(table) < HEADER_SIZE:
        raise MalformedTable(
            f"trap table region is {len(table)} bytes, smaller than its "
            f"{HEADER_SIZE}-byte header", offset)

    body_len = read_be16(table, 0)
    count = read_be16(table, 2)
    first = read_be16(table, 4)
    base = read_be32(table, 6)

    if HEADER_SIZE + body_len > len(table):
        raise MalformedTable(
            f"trap table declares {body_len} body bytes but the region only "
            f"holds {len(table) - HEADER_SIZE} after the header", offset)
    if first + count > 0x10000:
        raise MalformedTable(
            f"trap table covers traps 0x{first:04X}+{count}, past 0xFFFF", offset + 2)

    return {
        "body_len": body_len,
        "count": count,
        "first": first,
        "base": base,
    }


def decode_trap_table(rom, offset, length, verbose=False):
    """Decode the trap table at offset/length into a list of TrapEntry.

    Decoding is a single pass: every delta is applied to the address of the
    slot before it.
    """
    if offset is None or length is None:
        raise macrom.ConfigError("trap table offset and length are not configured for this ROM")

    table = rom.region(offset, length, "trap table")
    header = parse_trap_header(table, offset)
    body = table[HEADER_SIZE:HEADER_SIZE + header["body_len"]]
    body_base = offset + HEADER_SIZE

    if verbose:
        print(f"  Trap table at 0x{offset:06X}: {header['count']} slots from "
              f"0x{header['first']:04X}, base 0x{header['base']:08X}, "
              f"{header['body_len']} body bytes")

    def need(pos, size, what):
        if pos + size > len(body):
            raise MalformedTable(
                f"{what} needs {size} bytes at body offset {pos} but the body "
                f"ends at {len(body)}", body_base + pos)

    entries = []
    address = header["base"]
    slot = 0
    pos = 0

    def emit(addr):
        number = header["first"] + slot
        entries.append(TrapEntry(number, addr & 0xFFFFFFFF, is_toolbox(number)))

    def check_run(run, ctrl_pos):
        if slot + run > header["count"]:
            raise MalformedTable(
                f"run of {run} slots at slot {slot} overshoots the declared "
                f"{header['count']} slots", body_base + ctrl_pos)

    while slot < header["count"]:
        need(pos, 1, f"slot {slot} descriptor")
        ctrl_pos = pos
        ctrl = body[pos]
        pos += 1

        if ctrl < CTRL_RUN:
            run = (ctrl & 0x3F) + 1
            check_run(run, ctrl_pos)
            slot += run
        elif ctrl < CTRL_LITERAL:
            run = (ctrl & 0x3F) + 1
            check_run(run, ctrl_pos)
            need(pos, 2, "run delta")
            delta = read_s16(body, pos)
            pos += 2
            for _ in range(run):
                address = (address + delta) & 0xFFFFFFFF
                emit(address)
                slot += 1
        elif ctrl == CTRL_LITERAL:
            need(pos, 4, "literal address")
            address = read_be32(body, pos)
            pos += 4
            emit(address)
            slot += 1
        elif ctrl == CTRL_DELTA16:
            need(pos, 2, "delta")
            address = (address + read_s16(body, pos)) & 0xFFFFFFFF
            pos += 2
            emit(address)
            slot += 1
        elif ctrl >= CTRL_SHORT:
            address = (address + ((ctrl & 0x3F) - 0x20) * 2) & 0xFFFFFFFF
            emit(address)
            slot += 1
        else:
            raise MalformedTable(f"invalid slot control byte 0x{ctrl:02X}", body_base + ctrl_pos)

    if pos != len(body):
        raise MalformedTable(
            f"trap table body has {len(body) - pos} trailing bytes after "
            f"slot {header['count']}", body_base + pos)

    if verbose:
        print(f"  Decoded {len(entries)} traps ({header['count'] - len(entries)} empty slots)")
    return entries


# =============================================================================
# Matching
# =============================================================================

def match_trap(names, number):
    name = trapnames.lookup(names, number)
    if name is None:
        return Unmatched(PLACEHOLDER_FORMAT.format(number))
    return Matched(name)


def label_traps(entries, names):
    """Join every entry with a name; misses get a placeholder, never an error."""
    return [LabeledTrap(entry, match_trap(names, entry.number)) for entry in entries]


# =============================================================================
# Annotation output
# =============================================================================

_IDENT_BAD = re.compile(r"[^A-Za-z0-9_]")
_TITLE_BAD = re.compile(r"[^\x20-\x7E]")

GHIDRA_PROLOGUE = """\
# Trap labels{title}
#@category Analysis
#@runtime Jython

from ghidra.program.model.symbol import SourceType


def label(addr, name):
    createLabel(toAddr(addr), name, True, SourceType.IMPORTED)

"""


def sanitize_identifier(name):
    name = _IDENT_BAD.sub("_", name)
    if not name:
        return "_"
    if name[0].isdigit():
        return "_" + name
    return name


def sanitize_title(title):
    """Printable ASCII only, so the title stays inside its comment line."""
    return _TITLE_BAD.sub("_", title)


def _ghidra_line(trap):
    entry = trap.entry
    kind = "Toolbox" if entry.toolbox else "OS"
    note = "" if trap.match.matched else ", unmatched"
    return (f'label(0x{entry.address:08X}, "{sanitize_identifier(trap.name)}")'
            f"  # {entry.number:04X} {kind}{note}\n")


def _sym_line(trap):
    return f"{trap.entry.address:08X} T {sanitize_identifier(trap.name)}\n"


DIALECTS = {
    "ghidra": (GHIDRA_PROLOGUE, _ghidra_line),
    "sym": (None, _sym_line),
}


def emit_annotations(labeled, sink, dialect="ghidra", title=None):
    """Write one label statement per trap to sink, in ascending trap order."""
    try:
        prologue, line_for = DIALECTS[dialect]
    except KeyError:
        raise ValueError(f"unknown annotation dialect {dialect!r}")

    if prologue is not None:
        sink.write(prologue.format(title=f" for {sanitize_title(title)}" if title else ""))
    for trap in sorted(labeled, key=lambda t: t.entry.number):
        sink.write(line_for(trap))


# =============================================================================
# Main
# =============================================================================

def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Extract the trap dispatch table from a Macintosh ROM as disassembler labels"
    )
    parser.add_argument("rom", help="ROM image file")
    parser.add_argument("-o", "--output",
                        help="output script (default: <rom>.traps.py, or .sym with --format sym)")
    parser.add_argument("-r", "--revision",
                        help="ROM revision (128k, plus, se, classic) or one from --config")
    parser.add_argument("-c", "--config", metavar="FILE",
                        help="extra revision config (JSON), overrides embedded entries")
    parser.add_argument("--trap-table-offset", type=macrom.parse_int, metavar="N",
                        help="override trap table offset")
    parser.add_argument("--trap-table-length", type=macrom.parse_int, metavar="N",
                        help="override trap table length")
    parser.add_argument("--trap-names", metavar="ERA|FILE",
                        help="trap name table: era (64k, 128k, 256k) or JSON/text file")
    parser.add_argument("--format", choices=sorted(DIALECTS), default="ghidra",
                        help="annotation dialect (default: ghidra)")
    parser.add_argument("--strict", action="store_true",
                        help=f"exit with status {EXIT_UNMATCHED} if any trap is unmatched")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="show detailed output")

    args = parser.parse_args(argv)

    try:
        revision = macrom.select_revision(macrom.load_revisions(args.config), args.revision)
        offset = args.trap_table_offset
        if offset is None:
            offset = revision["trap_table_offset"]
        length = args.trap_table_length
        if length is None:
            length = revision["trap_table_length"]
        names_source = args.trap_names or revision["trap_names"] or "256k"
        names_dir = os.getcwd() if args.trap_names else revision["base_dir"]
        names = trapnames.load_trap_names(names_source, names_dir)

        rom = macrom.load_rom(args.rom, revision["rom_size"])
        print(f"ROM: {args.rom} ({rom.size} bytes, revision {revision['name']})")

        entries = decode_trap_table(rom, offset, length, args.verbose)
    except RomError as e:
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        return EXIT_FATAL
    except (ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FATAL

    labeled = label_traps(entries, names)
    unmatched = [t for t in labeled if not t.match.matched]

    output = args.output
    if output is None:
        output = args.rom + (".traps.sym" if args.format == "sym" else ".traps.py")
    script = io.StringIO()
    emit_annotations(labeled, script, args.format, os.path.basename(args.rom))
    try:
        with open(output, "w", encoding="ascii") as fh:
            fh.write(script.getvalue())
    except OSError as e:
        print(f"Error: cannot write {output}: {e}", file=sys.stderr)
        return EXIT_FATAL

    toolbox = sum(1 for t in labeled if t.entry.toolbox)
    print(f"Traps: {len(labeled)} ({toolbox} Toolbox, {len(labeled) - toolbox} OS), "
          f"{len(labeled) - len(unmatched)} named -> {output}")

    for trap in unmatched:
        print(f"Warning: unmatched trap 0x{trap.entry.number:04X} at "
              f"0x{trap.entry.address:08X}, labeled {trap.name}", file=sys.stderr)

    if unmatched and args.strict:
        return EXIT_UNMATCHED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
