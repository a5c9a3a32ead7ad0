"""
Mach-O, fat and code-signing constants (values from <mach-o/loader.h>,
<mach-o/fat.h>, <mach-o/nlist.h>, <mach/machine.h> and the xnu
`cs_blobs.h` header).
"""

from __future__ import annotations

# Thin headers. Read as little-endian u32: MAGIC means the file is
# little-endian, CIGAM means it is big-endian.
MH_MAGIC = 0xFEEDFACE
MH_CIGAM = 0xCEFAEDFE
MH_MAGIC_64 = 0xFEEDFACF
MH_CIGAM_64 = 0xCFFAEDFE

MACH_HEADER_SIZE = 28
MACH_HEADER_64_SIZE = 32

# Fat headers are always big-endian.
FAT_MAGIC = 0xCAFEBABE
FAT_MAGIC_64 = 0xCAFEBABF
FAT_HEADER_SIZE = 8
FAT_ARCH_SIZE = 20
FAT_ARCH_64_SIZE = 32
# `cafebabe` is shared with Java class files; real fat files never carry
# more than a handful of slices.
FAT_MAX_ARCHS = 32

CPU_ARCH_ABI64 = 0x01000000
CPU_ARCH_ABI64_32 = 0x02000000
CPU_TYPE_X86 = 7
CPU_TYPE_X86_64 = CPU_TYPE_X86 | CPU_ARCH_ABI64
CPU_TYPE_ARM = 12
CPU_TYPE_ARM64 = CPU_TYPE_ARM | CPU_ARCH_ABI64
CPU_TYPE_ARM64_32 = CPU_TYPE_ARM | CPU_ARCH_ABI64_32
CPU_TYPE_POWERPC = 18
CPU_TYPE_POWERPC64 = CPU_TYPE_POWERPC | CPU_ARCH_ABI64

CPU_SUBTYPE_MASK = 0xFF000000
CPU_SUBTYPE_ARM64_ALL = 0
CPU_SUBTYPE_ARM64E = 2
CPU_SUBTYPE_X86_64_ALL = 3
CPU_SUBTYPE_X86_64_H = 8

CPU_TYPE_NAMES = {
    CPU_TYPE_X86: "i386",
    CPU_TYPE_X86_64: "x86_64",
    CPU_TYPE_ARM: "arm",
    CPU_TYPE_ARM64: "arm64",
    CPU_TYPE_ARM64_32: "arm64_32",
    CPU_TYPE_POWERPC: "ppc",
    CPU_TYPE_POWERPC64: "ppc64",
}

# Load commands.
LC_REQ_DYLD = 0x80000000
LC_SYMTAB = 0x2
LC_DYSYMTAB = 0xB
LC_LOAD_DYLIB = 0xC
LC_LOAD_WEAK_DYLIB = 0x18 | LC_REQ_DYLD
LC_CODE_SIGNATURE = 0x1D
LC_REEXPORT_DYLIB = 0x1F | LC_REQ_DYLD
LC_LAZY_LOAD_DYLIB = 0x20
LC_LOAD_UPWARD_DYLIB = 0x23 | LC_REQ_DYLD

DYLIB_LOAD_COMMANDS = frozenset(
    {
        LC_LOAD_DYLIB,
        LC_LOAD_WEAK_DYLIB,
        LC_REEXPORT_DYLIB,
        LC_LAZY_LOAD_DYLIB,
        LC_LOAD_UPWARD_DYLIB,
    }
)

LOAD_COMMAND_HEADER_SIZE = 8
DYLIB_COMMAND_SIZE = 24
SYMTAB_COMMAND_SIZE = 24
DYSYMTAB_COMMAND_SIZE = 80
LINKEDIT_DATA_COMMAND_SIZE = 16

# nlist.
NLIST_SIZE = 12
NLIST_64_SIZE = 16
N_STAB = 0xE0
N_TYPE = 0x0E
N_EXT = 0x01
N_UNDF = 0x0
INDIRECT_SYMBOL_LOCAL = 0x80000000
INDIRECT_SYMBOL_ABS = 0x40000000

# Code signing (all big-endian).
CSMAGIC_CODEDIRECTORY = 0xFADE0C02
CSMAGIC_EMBEDDED_SIGNATURE = 0xFADE0CC0
CSMAGIC_EMBEDDED_ENTITLEMENTS = 0xFADE7171
CSMAGIC_EMBEDDED_DER_ENTITLEMENTS = 0xFADE7172
CSMAGIC_FAMILY_MASK = 0xFFFF0000
CSMAGIC_FAMILY = 0xFADE0000

CSSLOT_CODEDIRECTORY = 0
CSSLOT_ENTITLEMENTS = 5
CSSLOT_DER_ENTITLEMENTS = 7

CS_BLOB_HEADER_SIZE = 8
CS_SUPERBLOB_HEADER_SIZE = 12
CS_BLOB_INDEX_SIZE = 8
# magic, length, version, flags, hashOffset, identOffset
CS_CODEDIRECTORY_MIN_SIZE = 24
CS_RUNTIME = 0x00010000
