#!/usr/bin/env python3
"""
extract_edisks.py - Macintosh ROM Disk (EDisk) Extractor

Finds the ROM disks embedded in a Macintosh ROM image and rebuilds each one
as a raw, mountable disk image.

EDisk header (512 bytes, big-endian):
  +128  block size
  +130  version (1)
  +132  signature "EDisk Gary D"
  +144  disk length in bytes
  +156  block table offset, relative to the header
  +160  data area offset, relative to the header

The block table holds one long per logical block: the top byte selects the
encoding mode, the low 24 bits are a signed offset into the data area.
Blocks that fail to decode are replaced by a gap and reported, the rest of
the disk is still written.
"""

import argparse
import os
import sys
from concurrent.futures import ThreadPoolExecutor

import macrom
from macrom import (BlockError, ChecksumMismatch, GeometryMismatch, RomError,
                    UnsupportedEncoding, checksum16, read_be16, read_be32)

EDISK_MAGIC = b"EDisk Gary D"
EDISK_HEADER_SIZE = 512
EDISK_ALIGN = 0x10000
EDISK_VERSION = 1

HDR_BLOCK_SIZE = 128
HDR_VERSION = 130
HDR_SIGNATURE = 132
HDR_DISK_LEN = 144
HDR_TABLE_OFFSET = 156
HDR_DATA_OFFSET = 160

NIBBLE_LOOKUP_SIZE = 16

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 3


# =============================================================================
# Block codecs
# =============================================================================

class BlockCodec:
    __slots__ = ("mode", "name", "decode", "stored_size")

    def __init__(self, mode, name, decode, stored_size=None):
        self.mode = mode
        self.name = name
        self.decode = decode
        # Bytes a block occupies in ROM as a function of block size, or None
        # when it depends on the data.
        self.stored_size = stored_size


BLOCK_CODECS = {}


def block_codec(mode, name, stored_size=None):
    """Register decode(storage, block_size) for an encoding mode."""
    def register(func):
        BLOCK_CODECS[mode] = BlockCodec(mode, name, func, stored_size)
        return func
    return register


def codec_by_name(name):
    for codec in BLOCK_CODECS.values():
        if codec.name == name:
            return codec
    raise KeyError(name)


@block_codec(0, "negated", stored_size=lambda block_size: block_size)
def decode_negated(storage, block_size):
    if len(storage) < block_size:
        raise BlockError(f"negated block needs {block_size} bytes, {len(storage)} left in ROM")
    return bytes((-b) & 0xFF for b in storage[:block_size])


@block_codec(1, "packbits")
def decode_packbits(storage, block_size):
    out = bytearray()
    idx = 0
    try:
        while len(out) < block_size:
            cmd = storage[idx]
            idx += 1
            if cmd == 0x80:
                continue
            if cmd < 0x80:
                count = cmd + 1
                if idx + count > len(storage):
                    raise IndexError
                out += storage[idx:idx + count]
                idx += count
            else:
                out += bytes([storage[idx]]) * (((-cmd) & 0xFF) + 1)
                idx += 1
    except IndexError:
        raise BlockError(f"packbits stream runs past the end of the ROM after {len(out)} bytes")
    if len(out) != block_size:
        raise BlockError(f"packbits stream expands to {len(out)} bytes, block is {block_size}")
    return bytes(out)


class BitStream:
    """MSB-first bit reader."""

    def __init__(self, data):
        self.data = data
        self.bit_index = 0

    def bit(self):
        byte = self.data[self.bit_index >> 3]
        bit = (byte >> (7 - (self.bit_index & 7))) & 1
        self.bit_index += 1
        return bit

    def bits(self, count):
        value = 0
        for _ in range(count):
            value = (value << 1) | self.bit()
        return value

    def byte_index(self):
        return (self.bit_index + 7) // 8


@block_codec(2, "nibble")
def decode_nibble(storage, block_size):
    if len(storage) < NIBBLE_LOOKUP_SIZE:
        raise BlockError("nibble block lookup table runs past the end of the ROM")
    lookup = storage[:NIBBLE_LOOKUP_SIZE]
    stream = BitStream(storage[NIBBLE_LOOKUP_SIZE:])
    out = bytearray(block_size)
    try:
        for i in range(block_size):
            if stream.bit():
                out[i] = lookup[stream.bits(4)]
            else:
                out[i] = stream.bits(8)
    except IndexError:
        raise BlockError(f"nibble stream runs past the end of the ROM at byte {i}")
    return bytes(out)


@block_codec(3, "verbatim", stored_size=lambda block_size: block_size)
def decode_verbatim(storage, block_size):
    if len(storage) < block_size:
        raise BlockError(f"verbatim block needs {block_size} bytes, {len(storage)} left in ROM")
    return bytes(storage[:block_size])


@block_codec(4, "checksummed", stored_size=lambda block_size: block_size + 2)
def decode_checksummed(storage, block_size):
    if len(storage) < block_size + 2:
        raise BlockError(f"checksummed block needs {block_size + 2} bytes, "
                         f"{len(storage)} left in ROM")
    data = bytes(storage[:block_size])
    stored = read_be16(storage, block_size)
    actual = checksum16(data)
    if stored != actual:
        raise ChecksumMismatch(f"checksum 0x{actual:04X} does not match stored 0x{stored:04X}")
    return data


# =============================================================================
# EDisk header parsing
# =============================================================================

def has_edisk_signature(rom, location):
    end = location + HDR_SIGNATURE + len(EDISK_MAGIC)
    return end <= rom.size and rom.data[location + HDR_SIGNATURE:end] == EDISK_MAGIC


def find_edisks(rom):
    """Yield the location of every EDisk header; disks sit on 64K boundaries."""
    for location in range(0, rom.size, EDISK_ALIGN):
        if location + EDISK_HEADER_SIZE <= rom.size and has_edisk_signature(rom, location):
            yield location


def decode_block_entry(entry):
    """Split a block table long into (mode, signed data offset)."""
    mode = entry >> 24
    offset = entry & 0x00FFFFFF
    if offset & 0x00800000:
        offset -= 0x01000000
    return mode, offset


def parse_edisk_header(rom, location, region_length=None):
    """Parse the header and block table at location into a region dict.

    region_length bounds the header and block table when the revision
    configures the region; block data may lie anywhere in the ROM.
    """
    if region_length is None:
        region_length = rom.size - location
    if location < 0 or location + region_length > rom.size:
        raise GeometryMismatch(
            f"disk region 0x{location:06X}+0x{region_length:X} lies outside the "
            f"0x{rom.size:06X}-byte ROM image", location)
    if region_length < EDISK_HEADER_SIZE:
        raise GeometryMismatch(
            f"disk region is {region_length} bytes, smaller than the "
            f"{EDISK_HEADER_SIZE}-byte EDisk header", location)

    header = rom.region(location, EDISK_HEADER_SIZE, "EDisk header")
    if not has_edisk_signature(rom, location):
        raise GeometryMismatch(
            f"no EDisk signature: expected {EDISK_MAGIC!r}, found "
            f"{bytes(header[HDR_SIGNATURE:HDR_SIGNATURE + len(EDISK_MAGIC)])!r}",
            location + HDR_SIGNATURE)

    block_size = read_be16(header, HDR_BLOCK_SIZE)
    version = read_be16(header, HDR_VERSION)
    disk_len = read_be32(header, HDR_DISK_LEN)
    table_offset = read_be32(header, HDR_TABLE_OFFSET)
    data_offset = read_be32(header, HDR_DATA_OFFSET)

    if version != EDISK_VERSION:
        raise UnsupportedEncoding(
            f"EDisk version {version} is not supported (expected {EDISK_VERSION})",
            location + HDR_VERSION)
    if block_size == 0:
        raise GeometryMismatch("EDisk block size is 0", location + HDR_BLOCK_SIZE)
    if disk_len % block_size != 0:
        raise GeometryMismatch(
            f"disk length {disk_len} is not a whole number of {block_size}-byte blocks",
            location + HDR_DISK_LEN)

    block_count = disk_len // block_size
    table_len = block_count * 4
    if table_offset + table_len > region_length:
        raise GeometryMismatch(
            f"block table for {block_count} blocks needs region bytes "
            f"0x{table_offset:X}-0x{table_offset + table_len:X}, region is "
            f"0x{region_length:X} bytes", location + HDR_TABLE_OFFSET)

    table = rom.region(location + table_offset, table_len, "EDisk block table")
    blocks = [decode_block_entry(read_be32(table, i * 4)) for i in range(block_count)]

    return {
        "location": location,
        "block_size": block_size,
        "version": version,
        "disk_len": disk_len,
        "block_count": block_count,
        "table_offset": table_offset,
        "data_offset": data_offset,
        "data_base": location + data_offset,
        "blocks": blocks,
    }


def check_block_modes(region):
    """Reject a block table that names an encoding mode with no codec."""
    table_base = region["location"] + region["table_offset"]
    for index, (mode, _) in enumerate(region["blocks"]):
        if mode not in BLOCK_CODECS:
            raise UnsupportedEncoding(
                f"block {index} uses unknown encoding mode {mode} "
                f"(known: {sorted(BLOCK_CODECS)})", table_base + index * 4)


# =============================================================================
# Extraction
# =============================================================================

def is_sparse(mode, offset):
    return mode == 0 and offset == 0


def decode_block(rom, region, index):
    """Decode one logical block. Raises BlockError for a damaged block."""
    mode, offset = region["blocks"][index]
    block_size = region["block_size"]
    if is_sparse(mode, offset):
        return bytes(block_size)
    codec = BLOCK_CODECS[mode]
    start = region["data_base"] + offset
    if start < 0 or start >= rom.size:
        raise BlockError(f"block {index} data at 0x{start:06X} is outside the ROM image",
                         start, index)
    if codec.stored_size is not None:
        end = start + codec.stored_size(block_size)
        if end > rom.size:
            raise BlockError(
                f"block {index} ({codec.name}) is stored at 0x{start:06X}-0x{end:06X}, "
                f"past the end of the 0x{rom.size:06X}-byte ROM image", start, index)
    try:
        return codec.decode(memoryview(rom.data)[start:], block_size)
    except BlockError as e:
        e.offset = start
        e.block = index
        raise


def physical_order(region):
    """Logical block indices sorted by where their data is stored."""
    return sorted(range(region["block_count"]), key=lambda i: region["blocks"][i][1])


def extract_disk(rom, region, jobs=1, fill=0x00, verbose=False):
    """Rebuild the disk image for a parsed region.

    Returns (image bytes, [(block index, BlockError), ...]). Corrupt blocks are
    written as block_size bytes of fill.
    """
    check_block_modes(region)

    block_size = region["block_size"]
    order = physical_order(region)

    def decode(index):
        try:
            return index, decode_block(rom, region, index), None
        except BlockError as e:
            return index, None, e

    if jobs > 1 and len(order) > 1:
        with ThreadPoolExecutor(max_workers=jobs) as pool:
            results = list(pool.map(decode, order))
    else:
        results = [decode(index) for index in order]

    decoded = [None] * region["block_count"]
    corrupt = []
    for index, data, error in results:
        if error is not None:
            corrupt.append((index, error))
            data = bytes([fill]) * block_size
        elif verbose:
            mode, offset = region["blocks"][index]
            print(f"  Block {index}: {BLOCK_CODECS[mode].name}, offset {offset:+#08x}")
        decoded[index] = data

    corrupt.sort(key=lambda item: item[0])
    return b"".join(decoded), corrupt


def edisk_filename(location):
    return f"EDisk-{location:06x}.dsk"


def write_disk(path, image):
    with open(path, "wb") as f:
        f.write(image)


# =============================================================================
# Main
# =============================================================================

def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Extract ROM disks (EDisks) from a Macintosh ROM image"
    )
    parser.add_argument("rom", help="ROM image file")
    parser.add_argument("-o", "--output",
                        help="output disk image (configured region only; default: EDisk-XXXXXX.dsk)")
    parser.add_argument("-r", "--revision",
                        help="ROM revision (128k, plus, se, classic) or one from --config")
    parser.add_argument("-c", "--config", metavar="FILE",
                        help="extra revision config (JSON), overrides embedded entries")
    parser.add_argument("--disk-offset", type=macrom.parse_int, metavar="N",
                        help="override disk region offset")
    parser.add_argument("--disk-length", type=macrom.parse_int, metavar="N",
                        help="override disk region length")
    parser.add_argument("--scan", action="store_true",
                        help="scan every 64K boundary for EDisks instead of using the configured region")
    parser.add_argument("--output-dir", default=".", metavar="DIR",
                        help="directory for EDisk images when -o is not given (default: current directory)")
    parser.add_argument("-j", "--jobs", type=int, default=1,
                        help="block decoding threads (default: 1)")
    parser.add_argument("--fill", type=macrom.parse_int, default=0x00, metavar="BYTE",
                        help="byte used for corrupt blocks (default: 0x00)")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="show detailed output")

    args = parser.parse_args(argv)

    if args.jobs < 1:
        print("Error: --jobs must be at least 1", file=sys.stderr)
        return EXIT_FATAL
    if not 0 <= args.fill <= 0xFF:
        print("Error: --fill must be a byte value", file=sys.stderr)
        return EXIT_FATAL

    try:
        revision = macrom.select_revision(macrom.load_revisions(args.config), args.revision)
        rom = macrom.load_rom(args.rom, revision["rom_size"])
    except (ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FATAL

    print(f"ROM: {args.rom} ({rom.size} bytes, revision {revision['name']})")

    offset = args.disk_offset
    if offset is None:
        offset = revision["disk_region_offset"]
    length = args.disk_length
    if length is None:
        length = revision["disk_region_length"]

    if args.scan or offset is None:
        targets = [(location, None, os.path.join(args.output_dir, edisk_filename(location)))
                   for location in find_edisks(rom)]
        if not targets:
            print("Error: no EDisk signature found on any 64K boundary", file=sys.stderr)
            return EXIT_FATAL
    else:
        output = args.output or os.path.join(args.output_dir, edisk_filename(offset))
        targets = [(offset, length, output)]

    result = EXIT_OK
    for location, region_length, output in targets:
        print(f"\nEDisk at 0x{location:06X}")
        try:
            region = parse_edisk_header(rom, location, region_length)
            print(f"  {region['block_count']} blocks of {region['block_size']} bytes "
                  f"({region['disk_len']} bytes), table +0x{region['table_offset']:X}, "
                  f"data +0x{region['data_offset']:X}")
            image, corrupt = extract_disk(rom, region, args.jobs, args.fill, args.verbose)
        except RomError as e:
            print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
            result = EXIT_FATAL
            continue

        try:
            write_disk(output, image)
        except OSError as e:
            print(f"Error: cannot write {output}: {e}", file=sys.stderr)
            result = EXIT_FATAL
            continue
        print(f"  Disk image: {len(image)} bytes -> {output}")

        if corrupt:
            print(f"Warning: {len(corrupt)} corrupt block(s) replaced by 0x{args.fill:02X} gaps: "
                  f"{', '.join(str(index) for index, _ in corrupt)}", file=sys.stderr)
            for index, error in corrupt:
                print(f"  block {index}: {type(error).__name__}: {error}", file=sys.stderr)
            if result == EXIT_OK:
                result = EXIT_PARTIAL

    return result


if __name__ == "__main__":
    sys.exit(main())
