#!/usr/bin/env python3
"""
macrom.py - Shared pieces for the Macintosh ROM tools

- RomImage: the immutable ROM buffer both extraction passes read from
- Error taxonomy for trap table and edisk decoding
- Big-endian byte helpers and the 16-bit end-around-carry checksum
- Per-revision configuration (built-in table plus user overrides)
"""

import json
import os
import struct

# Built-in revisions. Trap table and disk offsets are not known for any
# shipping ROM yet; they come from --config or the command line.
EMBEDDED_REVISIONS = {
    "128k": {"rom_size": 0x10000, "trap_names": "64k"},
    "plus": {"rom_size": 0x20000, "trap_names": "128k"},
    "se": {"rom_size": 0x40000, "trap_names": "256k"},
    "classic": {"rom_size": 0x80000, "trap_names": "256k"},
}

REVISION_KEYS = (
    "rom_size",
    "trap_table_offset",
    "trap_table_length",
    "disk_region_offset",
    "disk_region_length",
    "trap_names",
)

INT_KEYS = REVISION_KEYS[:-1]


# =============================================================================
# Errors
# =============================================================================

class RomError(ValueError):
    """Decode failure located at a byte offset in the ROM image."""

    def __init__(self, message, offset=None):
        super().__init__(message)
        self.offset = offset

    def __str__(self):
        message = super().__str__()
        if self.offset is None:
            return message
        return f"{message} (at offset 0x{self.offset:06X})"


class TruncatedInput(RomError):
    pass


class MalformedTable(RomError):
    pass


class UnsupportedEncoding(RomError):
    pass


class GeometryMismatch(RomError):
    pass


class BlockError(RomError):
    """A single disk block could not be decoded. Recoverable."""

    def __init__(self, message, offset=None, block=None):
        super().__init__(message, offset)
        self.block = block


class ChecksumMismatch(BlockError):
    pass


class ConfigError(ValueError):
    pass


# =============================================================================
# Byte reading helpers
# =============================================================================

def read_be16(data, offset=0):
    return struct.unpack_from(">H", data, offset)[0]


def read_be32(data, offset=0):
    return struct.unpack_from(">I", data, offset)[0]


def read_s16(data, offset=0):
    return struct.unpack_from(">h", data, offset)[0]


def checksum16(data):
    """16-bit word sum with end-around carry; an odd last byte is the high half."""
    total = 0
    limit = len(data) & ~1
    for offset in range(0, limit, 2):
        total += (data[offset] << 8) | data[offset + 1]
        if total > 0xFFFF:
            total = (total + 1) & 0xFFFF
    if limit != len(data):
        total += data[-1] << 8
        if total > 0xFFFF:
            total = (total + 1) & 0xFFFF
    return total


def parse_int(value):
    """Accept ints and "0x..." / decimal strings as found in config files and argv."""
    if value is None or isinstance(value, int):
        return value
    return int(str(value), 0)


# =============================================================================
# ROM image
# =============================================================================

class RomImage:
    """Read-only ROM buffer. Safe to share between threads."""

    __slots__ = ("data", "size", "path")

    def __init__(self, data, path=None):
        self.data = bytes(data)
        self.size = len(self.data)
        self.path = path

    def check_range(self, offset, length, what):
        if offset < 0 or offset + length > self.size:
            raise TruncatedInput(
                f"{what} needs bytes 0x{offset:06X}-0x{offset + length:06X} "
                f"but ROM image is only 0x{self.size:06X} bytes", offset)

    def region(self, offset, length, what="region"):
        self.check_range(offset, length, what)
        return memoryview(self.data)[offset:offset + length]

    def be16(self, offset, what="word"):
        self.check_range(offset, 2, what)
        return read_be16(self.data, offset)

    def be32(self, offset, what="long"):
        self.check_range(offset, 4, what)
        return read_be32(self.data, offset)


def load_rom(path, expected_size=None):
    with open(path, "rb") as fh:
        data = fh.read()
    if expected_size is not None and len(data) != expected_size:
        raise ConfigError(
            f"{path}: ROM is {len(data)} bytes but the selected revision "
            f"expects {expected_size} bytes")
    return RomImage(data, path)


# =============================================================================
# Revision configuration
# =============================================================================

def _normalize_revision(name, entry, base_dir):
    unknown = set(entry) - set(REVISION_KEYS)
    if unknown:
        raise ConfigError(f"revision {name!r}: unknown keys {sorted(unknown)}")
    revision = {key: entry.get(key) for key in REVISION_KEYS}
    for key in INT_KEYS:
        try:
            revision[key] = parse_int(revision[key])
        except ValueError:
            raise ConfigError(f"revision {name!r}: {key} is not an integer: {revision[key]!r}")
    revision["name"] = name
    revision["base_dir"] = base_dir
    return revision


def load_revisions(config_path=None):
    """Load embedded revisions, then overlay entries from config_path if given."""
    revisions = {}
    for name, entry in EMBEDDED_REVISIONS.items():
        revisions[name] = _normalize_revision(name, entry, os.getcwd())
    if config_path is None:
        return revisions

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"cannot read revision config {config_path}: {e}")
    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path}: expected a JSON object of revisions")
    base_dir = os.path.dirname(os.path.abspath(config_path))
    for name, entry in raw.items():
        if not isinstance(entry, dict):
            raise ConfigError(f"revision {name!r}: expected a JSON object")
        revisions[name] = _normalize_revision(name, entry, base_dir)
    return revisions


def select_revision(revisions, name):
    if name is None:
        return _normalize_revision("custom", {}, os.getcwd())
    try:
        return revisions[name]
    except KeyError:
        known = ", ".join(sorted(revisions)) or "none"
        raise ConfigError(f"unknown ROM revision {name!r} (known: {known})")
