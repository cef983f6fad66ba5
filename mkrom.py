#!/usr/bin/env python3
"""
mkrom.py - Synthetic Macintosh ROM Builder

Builds ROM images for exercising extract_traps.py and extract_edisks.py:
- an encoded trap table from a JSON list of traps
- an EDisk region built from a raw disk image, in any block encoding
- a revision config describing where everything was placed

Traps file format:
  [{"trap": "0xA002", "address": "0x00401234"}, ...]
"""

import argparse
import json
import struct
import sys
from collections import Counter

import macrom
from extract_edisks import (BLOCK_CODECS, EDISK_HEADER_SIZE, EDISK_MAGIC, EDISK_VERSION,
                            HDR_BLOCK_SIZE, HDR_DATA_OFFSET, HDR_DISK_LEN, HDR_SIGNATURE,
                            HDR_TABLE_OFFSET, HDR_VERSION, NIBBLE_LOOKUP_SIZE, codec_by_name)
from extract_traps import (CTRL_DELTA16, CTRL_LITERAL, CTRL_RUN, CTRL_SHORT, CTRL_SKIP,
                           HEADER_SIZE, MAX_RUN, SHORT_MAX, SHORT_MIN, TrapEntry, is_toolbox)

# Keeps the first stored block off data offset 0, which reads back as a sparse block
DATA_LEAD = 0x10
MAX_DATA_OFFSET = 0x7FFFFF


# =============================================================================
# Trap table encoding
# =============================================================================

def _signed32(value):
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def make_entries(traps):
    """TrapEntry list from (number, address) pairs, sorted by trap number."""
    return [TrapEntry(number, address & 0xFFFFFFFF, is_toolbox(number))
            for number, address in sorted(traps)]


def pack_trap_table(entries, first, count, base=0, literal=False):
    """Encode entries as a trap table (header + body).

    literal=True stores every address as a 32-bit literal.
    """
    by_slot = {}
    for entry in entries:
        slot = entry.number - first
        if not 0 <= slot < count:
            raise ValueError(f"trap 0x{entry.number:04X} outside table 0x{first:04X}+{count}")
        if slot in by_slot:
            raise ValueError(f"duplicate trap 0x{entry.number:04X}")
        by_slot[slot] = entry.address & 0xFFFFFFFF

    body = bytearray()
    address = base & 0xFFFFFFFF
    slot = 0
    while slot < count:
        if slot not in by_slot:
            run = 1
            while run < MAX_RUN and slot + run < count and slot + run not in by_slot:
                run += 1
            body.append(CTRL_SKIP | (run - 1))
            slot += run
            continue

        target = by_slot[slot]
        delta = _signed32(target - address)
        if literal or not -0x8000 <= delta <= 0x7FFF:
            body.append(CTRL_LITERAL)
            body += struct.pack(">I", target)
            address = target
            slot += 1
            continue

        run = 1
        last = target
        while (run < MAX_RUN and slot + run in by_slot
               and _signed32(by_slot[slot + run] - last) == delta):
            last = by_slot[slot + run]
            run += 1
        if run >= 2:
            body.append(CTRL_RUN | (run - 1))
            body += struct.pack(">h", delta)
            address = last
            slot += run
            continue

        if delta % 2 == 0 and SHORT_MIN <= delta <= SHORT_MAX:
            body.append(CTRL_SHORT | (delta // 2 + 0x20))
        else:
            body.append(CTRL_DELTA16)
            body += struct.pack(">h", delta)
        address = target
        slot += 1

    if len(body) > 0xFFFF:
        raise ValueError(f"trap table body too large: {len(body)} bytes")
    return struct.pack(">HHHI", len(body), count, first, base & 0xFFFFFFFF) + bytes(body)


def load_traps(path):
    with open(path, "r", encoding="utf-8") as fh:
        raw = json.load(fh)
    return [(macrom.parse_int(item["trap"]), macrom.parse_int(item["address"])) for item in raw]


# =============================================================================
# Block encoders
# =============================================================================

def encode_negated(block):
    return bytes((-b) & 0xFF for b in block)


def encode_packbits(block):
    out = bytearray()
    n = len(block)
    i = 0
    while i < n:
        run = 1
        while i + run < n and run < 128 and block[i + run] == block[i]:
            run += 1
        if run >= 2:
            out += bytes([(257 - run) & 0xFF, block[i]])
            i += run
            continue
        j = i + 1
        while j < n and j - i < 128 and not (j + 1 < n and block[j] == block[j + 1]):
            j += 1
        out.append(j - i - 1)
        out += block[i:j]
        i = j
    return bytes(out)


class BitWriter:
    def __init__(self):
        self.out = bytearray()
        self.acc = 0
        self.nbits = 0

    def write(self, value, count):
        for shift in range(count - 1, -1, -1):
            self.acc = (self.acc << 1) | ((value >> shift) & 1)
            self.nbits += 1
            if self.nbits == 8:
                self.out.append(self.acc)
                self.acc = 0
                self.nbits = 0

    def getvalue(self):
        if self.nbits:
            return bytes(self.out) + bytes([self.acc << (8 - self.nbits)])
        return bytes(self.out)


def encode_nibble(block):
    common = [value for value, _ in Counter(block).most_common(NIBBLE_LOOKUP_SIZE)]
    lookup = bytes(common).ljust(NIBBLE_LOOKUP_SIZE, b"\x00")
    index = {value: i for i, value in enumerate(common)}
    writer = BitWriter()
    for b in block:
        if b in index:
            writer.write(1, 1)
            writer.write(index[b], 4)
        else:
            writer.write(0, 1)
            writer.write(b, 8)
    return lookup + writer.getvalue()


def encode_verbatim(block):
    return bytes(block)


def encode_checksummed(block):
    return bytes(block) + struct.pack(">H", macrom.checksum16(block))


ENCODERS = {
    "negated": encode_negated,
    "packbits": encode_packbits,
    "nibble": encode_nibble,
    "verbatim": encode_verbatim,
    "checksummed": encode_checksummed,
}

AUTO_CANDIDATES = ("packbits", "nibble", "verbatim")


def encode_block(block, mode):
    """Return (mode tag, stored bytes); "auto" picks the smallest encoding."""
    if mode == "auto":
        options = [(len(stored), name, stored)
                   for name, stored in ((n, ENCODERS[n](block)) for n in AUTO_CANDIDATES)]
        _, mode, stored = min(options)
    else:
        stored = ENCODERS[mode](block)
    return codec_by_name(mode).mode, stored


# =============================================================================
# EDisk building
# =============================================================================

def storage_order(count, interleave):
    """Logical block indices in the order they are stored."""
    return [i for start in range(interleave) for i in range(start, count, interleave)]


def build_edisk(disk, block_size=512, mode="verbatim", interleave=1, sparse=True, verbose=False):
    """Build an EDisk region (header, block table, data) for a raw disk image."""
    if block_size <= 0 or len(disk) % block_size != 0:
        raise ValueError(f"disk image ({len(disk)} bytes) is not a whole number of "
                         f"{block_size}-byte blocks")
    if mode != "auto" and mode not in ENCODERS:
        raise ValueError(f"unknown block encoding {mode!r}")
    if interleave < 1:
        raise ValueError("interleave must be at least 1")

    count = len(disk) // block_size
    table_offset = EDISK_HEADER_SIZE
    data_offset = (table_offset + count * 4 + 15) & ~15

    entries = [None] * count
    data = bytearray(DATA_LEAD)
    for index in storage_order(count, interleave):
        block = disk[index * block_size:(index + 1) * block_size]
        if sparse and not any(block):
            entries[index] = (0, 0)
            continue
        tag, stored = encode_block(block, mode)
        if len(data) > MAX_DATA_OFFSET:
            raise ValueError("EDisk data area exceeds the 24-bit block offset range")
        entries[index] = (tag, len(data))
        data += stored
        if verbose:
            print(f"  Block {index}: {BLOCK_CODECS[tag].name}, {len(stored)} bytes")

    header = bytearray(EDISK_HEADER_SIZE)
    struct.pack_into(">H", header, HDR_BLOCK_SIZE, block_size)
    struct.pack_into(">H", header, HDR_VERSION, EDISK_VERSION)
    header[HDR_SIGNATURE:HDR_SIGNATURE + len(EDISK_MAGIC)] = EDISK_MAGIC
    struct.pack_into(">I", header, HDR_DISK_LEN, len(disk))
    struct.pack_into(">I", header, HDR_TABLE_OFFSET, table_offset)
    struct.pack_into(">I", header, HDR_DATA_OFFSET, data_offset)

    table = b"".join(struct.pack(">I", (tag << 24) | (offset & 0x00FFFFFF))
                     for tag, offset in entries)
    region = bytes(header) + table
    return region.ljust(data_offset, b"\x00") + bytes(data)


# =============================================================================
# ROM assembly
# =============================================================================

def place(rom, offset, blob, what):
    if offset < 0 or offset + len(blob) > len(rom):
        raise ValueError(f"{what} ({len(blob)} bytes at 0x{offset:X}) does not fit in "
                         f"the 0x{len(rom):X}-byte ROM")
    rom[offset:offset + len(blob)] = blob


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Build a synthetic Macintosh ROM with a trap table and/or an EDisk"
    )
    parser.add_argument("rom_file", help="ROM image to create")
    parser.add_argument("--size", type=macrom.parse_int, required=True,
                        help="ROM size in bytes (e.g. 0x80000)")
    parser.add_argument("--fill", type=macrom.parse_int, default=0xFF,
                        help="filler byte for unused ROM space (default: 0xFF)")
    parser.add_argument("--traps", metavar="FILE",
                        help="JSON list of {trap, address} to encode")
    parser.add_argument("--trap-table-offset", type=macrom.parse_int, metavar="N",
                        help="where to place the trap table")
    parser.add_argument("--first-trap", type=macrom.parse_int, metavar="N",
                        help="trap number of slot 0 (default: lowest trap)")
    parser.add_argument("--trap-count", type=macrom.parse_int, metavar="N",
                        help="number of slots (default: up to the highest trap)")
    parser.add_argument("--base", type=macrom.parse_int, default=0,
                        help="base address for deltas (default: 0)")
    parser.add_argument("--literal", action="store_true",
                        help="store every trap address as a literal")
    parser.add_argument("--disk", metavar="IMAGE",
                        help="raw disk image to embed as an EDisk")
    parser.add_argument("--disk-offset", type=macrom.parse_int, metavar="N",
                        help="where to place the EDisk header (64K aligned for scanning)")
    parser.add_argument("--mode", choices=sorted(ENCODERS) + ["auto"], default="verbatim",
                        help="block encoding (default: verbatim)")
    parser.add_argument("--block-size", type=macrom.parse_int, default=512,
                        help="EDisk block size (default: 512)")
    parser.add_argument("--interleave", type=int, default=1,
                        help="store blocks in N interleaved passes (default: 1)")
    parser.add_argument("--no-sparse", action="store_true",
                        help="store all-zero blocks instead of marking them sparse")
    parser.add_argument("--config-out", metavar="FILE",
                        help="write a revision config describing the built ROM")
    parser.add_argument("--revision-name", default="synthetic",
                        help="revision name used in --config-out (default: synthetic)")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="show detailed output")

    args = parser.parse_args(argv)

    if args.traps and args.trap_table_offset is None:
        print("Error: --traps requires --trap-table-offset", file=sys.stderr)
        return 1
    if args.disk and args.disk_offset is None:
        print("Error: --disk requires --disk-offset", file=sys.stderr)
        return 1

    rom = bytearray([args.fill & 0xFF]) * args.size
    revision = {
        "rom_size": args.size,
        "trap_table_offset": None,
        "trap_table_length": None,
        "disk_region_offset": None,
        "disk_region_length": None,
        "trap_names": "256k",
    }

    try:
        if args.traps:
            traps = load_traps(args.traps)
            if not traps and (args.first_trap is None or args.trap_count is None):
                raise ValueError("empty traps file needs --first-trap and --trap-count")
            first = args.first_trap
            if first is None:
                first = min(number for number, _ in traps)
            count = args.trap_count
            if count is None:
                count = max(number for number, _ in traps) - first + 1
            table = pack_trap_table(make_entries(traps), first, count, args.base, args.literal)
            place(rom, args.trap_table_offset, table, "trap table")
            revision["trap_table_offset"] = args.trap_table_offset
            revision["trap_table_length"] = len(table)
            print(f"Trap table: {len(traps)} traps in {count} slots, {len(table)} bytes "
                  f"at 0x{args.trap_table_offset:06X}")

        if args.disk:
            with open(args.disk, "rb") as fh:
                disk = fh.read()
            region = build_edisk(disk, args.block_size, args.mode, args.interleave,
                                 not args.no_sparse, args.verbose)
            place(rom, args.disk_offset, region, "EDisk")
            revision["disk_region_offset"] = args.disk_offset
            revision["disk_region_length"] = len(region)
            print(f"EDisk: {len(disk) // args.block_size} blocks ({args.mode}), {len(region)} bytes "
                  f"at 0x{args.disk_offset:06X}")
    except (ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    with open(args.rom_file, "wb") as f:
        f.write(rom)
    print(f"ROM: {args.size} bytes -> {args.rom_file}")

    if args.config_out:
        with open(args.config_out, "w", encoding="utf-8") as f:
            json.dump({args.revision_name: revision}, f, indent=2)
        print(f"Config: revision {args.revision_name!r} -> {args.config_out}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
