#!/usr/bin/env python3
"""
trapnames.py - A-line trap name tables

Each ROM era gets a read-only mapping from trap word to the symbolic name
used in Inside Macintosh. Later eras extend the earlier ones. External name
files (JSON or "A002 _Read" text) can be loaded in place of an embedded era.
"""

import json
import os
from types import MappingProxyType

ALINE_BASE = 0xA000

# =============================================================================
# Embedded tables
# =============================================================================

# Operating System traps present since the 64K ROM
_OS_64K = {
    0xA000: "_Open", 0xA001: "_Close", 0xA002: "_Read", 0xA003: "_Write",
    0xA004: "_Control", 0xA005: "_Status", 0xA006: "_KillIO",
    0xA007: "_GetVolInfo", 0xA008: "_Create", 0xA009: "_Delete",
    0xA00A: "_OpenRF", 0xA00B: "_Rename", 0xA00C: "_GetFileInfo",
    0xA00D: "_SetFileInfo", 0xA00E: "_UnmountVol", 0xA00F: "_MountVol",
    0xA010: "_Allocate", 0xA011: "_GetEOF", 0xA012: "_SetEOF",
    0xA013: "_FlushVol", 0xA014: "_GetVol", 0xA015: "_SetVol",
    0xA016: "_InitQueue", 0xA017: "_Eject", 0xA018: "_GetFPos",
    0xA019: "_InitZone", 0xA01A: "_GetZone", 0xA01B: "_SetZone",
    0xA01C: "_FreeMem", 0xA01D: "_MaxMem", 0xA01E: "_NewPtr",
    0xA01F: "_DisposPtr", 0xA020: "_SetPtrSize", 0xA021: "_GetPtrSize",
    0xA022: "_NewHandle", 0xA023: "_DisposHandle", 0xA024: "_SetHandleSize",
    0xA025: "_GetHandleSize", 0xA026: "_HandleZone", 0xA027: "_ReallocHandle",
    0xA028: "_RecoverHandle", 0xA029: "_HLock", 0xA02A: "_HUnlock",
    0xA02B: "_EmptyHandle", 0xA02C: "_InitApplZone", 0xA02D: "_SetApplLimit",
    0xA02E: "_BlockMove", 0xA02F: "_PostEvent", 0xA030: "_OSEventAvail",
    0xA031: "_GetOSEvent", 0xA032: "_FlushEvents", 0xA033: "_VInstall",
    0xA034: "_VRemove", 0xA035: "_OffLine", 0xA036: "_MoreMasters",
    0xA038: "_WriteParam", 0xA039: "_ReadDateTime", 0xA03A: "_SetDateTime",
    0xA03B: "_Delay", 0xA03C: "_CmpString", 0xA03D: "_DrvrInstall",
    0xA03E: "_DrvrRemove", 0xA03F: "_InitUtil", 0xA040: "_ResrvMem",
    0xA041: "_SetFilLock", 0xA042: "_RstFilLock", 0xA043: "_SetFilType",
    0xA044: "_SetFPos", 0xA045: "_FlushFile", 0xA046: "_GetTrapAddress",
    0xA047: "_SetTrapAddress", 0xA048: "_PtrZone", 0xA049: "_HPurge",
    0xA04A: "_HNoPurge", 0xA04B: "_SetGrowZone", 0xA04C: "_CompactMem",
    0xA04D: "_PurgeMem", 0xA04E: "_AddDrive", 0xA04F: "_RDrvrInstall",
}

# Toolbox traps present since the 64K ROM
_TOOLBOX_64K = {
    0xA850: "_InitCursor", 0xA851: "_SetCursor", 0xA852: "_HideCursor",
    0xA853: "_ShowCursor", 0xA855: "_ShieldCursor", 0xA856: "_ObscureCursor",
    0xA858: "_BitAnd", 0xA859: "_BitXor", 0xA85A: "_BitNot", 0xA85B: "_BitOr",
    0xA85C: "_BitShift", 0xA85D: "_BitTst", 0xA85E: "_BitSet",
    0xA85F: "_BitClr", 0xA861: "_Random", 0xA862: "_ForeColor",
    0xA863: "_BackColor", 0xA864: "_ColorBit", 0xA865: "_GetPixel",
    0xA866: "_StuffHex", 0xA867: "_LongMul", 0xA868: "_FixMul",
    0xA869: "_FixRatio", 0xA86A: "_HiWord", 0xA86B: "_LoWord",
    0xA86C: "_FixRound", 0xA86D: "_InitPort", 0xA86E: "_InitGraf",
    0xA86F: "_OpenPort", 0xA870: "_LocalToGlobal", 0xA871: "_GlobalToLocal",
    0xA872: "_GrafDevice", 0xA873: "_SetPort", 0xA874: "_GetPort",
    0xA875: "_SetPBits", 0xA876: "_PortSize", 0xA877: "_MovePortTo",
    0xA878: "_SetOrigin", 0xA879: "_SetClip", 0xA87A: "_GetClip",
    0xA87B: "_ClipRect", 0xA87C: "_BackPat", 0xA87D: "_ClosePort",
    0xA87E: "_AddPt", 0xA87F: "_SubPt", 0xA880: "_SetPt", 0xA881: "_EqualPt",
    0xA882: "_StdText", 0xA883: "_DrawChar", 0xA884: "_DrawString",
    0xA885: "_DrawText", 0xA886: "_TextWidth", 0xA887: "_TextFont",
    0xA888: "_TextFace", 0xA889: "_TextMode", 0xA88A: "_TextSize",
    0xA88B: "_GetFontInfo", 0xA88C: "_StringWidth", 0xA88D: "_CharWidth",
    0xA88E: "_SpaceExtra", 0xA890: "_StdLine", 0xA891: "_LineTo",
    0xA892: "_Line", 0xA893: "_MoveTo", 0xA894: "_Move", 0xA896: "_HidePen",
    0xA897: "_ShowPen", 0xA898: "_GetPenState", 0xA899: "_SetPenState",
    0xA89A: "_GetPen", 0xA89B: "_PenSize", 0xA89C: "_PenMode",
    0xA89D: "_PenPat", 0xA89E: "_PenNormal", 0xA8A0: "_StdRect",
    0xA8A1: "_FrameRect", 0xA8A2: "_PaintRect", 0xA8A3: "_EraseRect",
    0xA8A4: "_InverRect", 0xA8A5: "_FillRect", 0xA8A6: "_EqualRect",
    0xA8A7: "_SetRect", 0xA8A8: "_OffsetRect", 0xA8A9: "_InsetRect",
    0xA8AA: "_SectRect", 0xA8AB: "_UnionRect", 0xA8AC: "_Pt2Rect",
    0xA8AD: "_PtInRect", 0xA8AE: "_EmptyRect", 0xA8FE: "_InitFonts",
    0xA912: "_InitWindows", 0xA913: "_GetWMgrPort", 0xA92C: "_FindWindow",
    0xA930: "_InitMenus", 0xA970: "_GetNextEvent", 0xA971: "_EventAvail",
    0xA972: "_GetMouse", 0xA973: "_StillDown", 0xA974: "_Button",
    0xA975: "_TickCount", 0xA976: "_GetKeys", 0xA977: "_WaitMouseUp",
    0xA97B: "_InitDialogs", 0xA9A0: "_GetResource",
    0xA9A1: "_GetNamedResource", 0xA9A2: "_LoadResource",
    0xA9A3: "_ReleaseResource", 0xA9C8: "_SysBeep", 0xA9C9: "_SysError",
    0xA9CC: "_TEInit", 0xA9E7: "_Pack0", 0xA9E8: "_Pack1", 0xA9E9: "_Pack2",
    0xA9EA: "_Pack3", 0xA9EB: "_FP68K", 0xA9EC: "_Elems68K",
    0xA9ED: "_Pack6", 0xA9EE: "_Pack7", 0xA9F0: "_LoadSeg",
    0xA9F1: "_UnloadSeg", 0xA9F2: "_Launch", 0xA9F3: "_Chain",
    0xA9F4: "_ExitToShell", 0xA9FF: "_Debugger",
}

# HFS, Time Manager and handle state traps added with the 128K (Plus) ROM
_ADDED_128K = {
    0xA050: "_RelString", 0xA054: "_UprString", 0xA057: "_SetAppBase",
    0xA058: "_InsTime", 0xA059: "_RmvTime", 0xA05A: "_PrimeTime",
    0xA060: "_FSDispatch", 0xA061: "_MaxBlock", 0xA062: "_PurgeSpace",
    0xA063: "_MaxApplZone", 0xA064: "_MoveHHi", 0xA065: "_StackSpace",
    0xA066: "_NewEmptyHandle", 0xA067: "_HSetRBit", 0xA068: "_HClrRBit",
    0xA069: "_HGetState", 0xA06A: "_HSetState", 0xA06C: "_InitFS",
    0xA06D: "_InitEvents",
}

# ADB, slot, PRAM and notification traps added with the 256K (SE) ROM
_ADDED_256K = {
    0xA051: "_ReadXPRam", 0xA052: "_WriteXPRam", 0xA055: "_StripAddress",
    0xA05D: "_SwapMMUMode", 0xA05E: "_NMInstall", 0xA05F: "_NMRemove",
    0xA06E: "_SlotManager", 0xA075: "_SIntInstall", 0xA076: "_SIntRemove",
    0xA077: "_CountADBs", 0xA078: "_GetIndADB", 0xA079: "_GetADBInfo",
    0xA07A: "_SetADBInfo", 0xA07B: "_ADBReInit", 0xA07C: "_ADBOp",
    0xA07D: "_GetDefaultStartup", 0xA07E: "_SetDefaultStartup",
    0xA080: "_GetVideoDefault", 0xA081: "_SetVideoDefault",
    0xA082: "_DTInstall", 0xA083: "_SetOSDefault", 0xA084: "_GetOSDefault",
    0xA090: "_SysEnvirons", 0xA895: "_ShutDown",
}


def _build_eras():
    era_64k = dict(_OS_64K)
    era_64k.update(_TOOLBOX_64K)
    era_128k = dict(era_64k)
    era_128k.update(_ADDED_128K)
    era_256k = dict(era_128k)
    era_256k.update(_ADDED_256K)
    return {
        "64k": MappingProxyType(era_64k),
        "128k": MappingProxyType(era_128k),
        "256k": MappingProxyType(era_256k),
    }


ERAS = MappingProxyType(_build_eras())


# =============================================================================
# Loading and lookup
# =============================================================================

def _parse_trap_key(key, path):
    try:
        return int(str(key), 16)
    except ValueError:
        raise ValueError(f"{path}: bad trap number {key!r}")


def _load_json_names(path):
    with open(path, "r", encoding="utf-8") as fh:
        raw = json.load(fh)
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: expected a JSON object of trap -> name")
    return {_parse_trap_key(k, path): str(v) for k, v in raw.items()}


def _load_text_names(path):
    names = {}
    with open(path, "r", encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, 1):
            line = line.split("#", 1)[0].strip()
            if not line:
                continue
            parts = line.split()
            if len(parts) != 2:
                raise ValueError(f"{path}:{lineno}: expected 'TRAP NAME', got {line!r}")
            names[_parse_trap_key(parts[0], path)] = parts[1]
    return names


def load_trap_names(source, base_dir=None):
    """Return the name table for an era name or a name file path."""
    if source in ERAS:
        return ERAS[source]
    path = source
    if base_dir is not None and not os.path.isabs(path):
        path = os.path.join(base_dir, path)
    if not os.path.isfile(path):
        known = ", ".join(ERAS)
        raise ValueError(f"trap names {source!r} is neither an era ({known}) nor a file")
    if path.lower().endswith(".json"):
        names = _load_json_names(path)
    else:
        names = _load_text_names(path)
    return MappingProxyType(names)


def lookup(names, number):
    """Name for a trap number, or None. Bare 12-bit numbers also try the A-line word."""
    name = names.get(number)
    if name is None and number < 0x1000:
        name = names.get(ALINE_BASE | number)
    return name
