"""ELF image headers: identification and decoding of 32- and 64-bit images.

Only the parts a firmware loader needs are decoded: the file header, the
program and section header tables, symbol entries and relocation info.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterator

EI_NIDENT = 16

EI_MAG0 = 0
EI_MAG1 = 1
EI_MAG2 = 2
EI_MAG3 = 3
EI_CLASS = 4
EI_DATA = 5
EI_VERSION = 6
EI_OSABI = 7
EI_ABIVERSION = 8
EI_PAD = 9

ELFMAG = b"\x7fELF"
SELFMAG = 4

ELFDATANONE = 0
ELFDATA2LSB = 1
ELFDATA2MSB = 2

ELFOSABI_NONE = 0

ET_NONE = 0
ET_REL = 1
ET_EXEC = 2
ET_DYN = 3
ET_CORE = 4
ET_LOOS = 0xFE00
ET_HIOS = 0xFEFF
ET_LOPROC = 0xFF00
ET_HIPROC = 0xFFFF

EM_ARM = 40
EV_CURRENT = 1

PT_NULL = 0
PT_LOAD = 1
PT_DYNAMIC = 2
PT_INTERP = 3
PT_NOTE = 4
PT_SHLIB = 5
PT_PHDR = 6
PT_TLS = 7
PT_LOOS = 0x60000000
PT_HIOS = 0x6FFFFFFF
PT_LOPROC = 0x70000000
PT_HIPROC = 0x7FFFFFFF

SHT_NULL = 0
SHT_PROGBITS = 1
SHT_SYMTAB = 2
SHT_STRTAB = 3
SHT_RELA = 4
SHT_HASH = 5
SHT_DYNAMIC = 6
SHT_NOTE = 7
SHT_NOBITS = 8
SHT_REL = 9
SHT_SHLIB = 10
SHT_DYNSYM = 11
SHT_INIT_ARRAY = 14
SHT_FINI_ARRAY = 15
SHT_PREINIT_ARRAY = 16
SHT_GROUP = 17
SHT_SYMTAB_SHNDX = 18
SHT_LOOS = 0x60000000
SHT_HIOS = 0x6FFFFFFF
SHT_LOPROC = 0x70000000
SHT_HIPROC = 0x7FFFFFFF
SHT_LOUSER = 0x80000000
SHT_HIUSER = 0xFFFFFFFF

SHF_WRITE = 0x1
SHF_ALLOC = 0x2
SHF_EXECINSTR = 0x4
SHF_MASKPROC = 0xF0000000

R_ARM_ABS32 = 2
R_ARM_GLOB_DAT = 21
R_ARM_JUMP_SLOT = 22
R_ARM_RELATIVE = 23

ELF_STATE_INIT = 0x0
ELF_STATE_WAIT_FOR_PHDRS = 0x100
ELF_STATE_WAIT_FOR_SHDRS = 0x200
ELF_STATE_WAIT_FOR_SHSTRTAB = 0x400
ELF_STATE_HDRS_COMPLETE = 0x800
ELF_STATE_MASK = 0xFF00
ELF_NEXT_SEGMENT_MASK = 0x00FF


class ElfError(ValueError):
    """The data is not a usable ELF image."""


class ElfClass(IntEnum):
    """Capacity of an ELF image, from ``e_ident[EI_CLASS]``."""

    NONE = 0
    ELF32 = 1
    ELF64 = 2


_LAYOUTS = {
    ElfClass.ELF32: {
        "ehdr": "16sHHIIIIIHHHHHH",
        "phdr": "IIIIIIII",
        "shdr": "IIIIIIIIII",
        "sym": "IIIBBH",
    },
    ElfClass.ELF64: {
        "ehdr": "16sHHIQQQIHHHHHH",
        "phdr": "IIQQQQQQ",
        "shdr": "IIQQQQIIQQ",
        "sym": "IBBHQQ",
    },
}

_PHDR_FIELDS = {
    ElfClass.ELF32: ("type", "offset", "vaddr", "paddr", "filesz", "memsz",
                     "flags", "align"),
    ElfClass.ELF64: ("type", "flags", "offset", "vaddr", "paddr", "filesz",
                     "memsz", "align"),
}

_SYM_FIELDS = {
    ElfClass.ELF32: ("name", "value", "size", "info", "other", "shndx"),
    ElfClass.ELF64: ("name", "info", "other", "shndx", "value", "size"),
}


def _layout(elf_class: ElfClass, kind: str, little_endian: bool) -> struct.Struct:
    prefix = "<" if little_endian else ">"
    return struct.Struct(prefix + _LAYOUTS[elf_class][kind])


def _checked_class(elf_class: int) -> ElfClass:
    try:
        result = ElfClass(elf_class)
    except ValueError:
        raise ElfError(f"unknown ELF class {elf_class}") from None
    if result is ElfClass.NONE:
        raise ElfError("invalid ELF class")
    return result


@dataclass(frozen=True)
class ElfHeader:
    """The ELF file header."""

    ident: bytes
    type: int
    machine: int
    version: int
    entry: int
    phoff: int
    shoff: int
    flags: int
    ehsize: int
    phentsize: int
    phnum: int
    shentsize: int
    shnum: int
    shstrndx: int

    @property
    def elf_class(self) -> ElfClass:
        return ElfClass(self.ident[EI_CLASS])

    @property
    def little_endian(self) -> bool:
        return self.ident[EI_DATA] == ELFDATA2LSB


@dataclass(frozen=True)
class ProgramHeader:
    """One entry of the program header table."""

    type: int
    offset: int
    vaddr: int
    paddr: int
    filesz: int
    memsz: int
    flags: int
    align: int


@dataclass(frozen=True)
class SectionHeader:
    """One entry of the section header table."""

    name: int
    type: int
    flags: int
    addr: int
    offset: int
    size: int
    link: int
    info: int
    addralign: int
    entsize: int


@dataclass(frozen=True)
class Symbol:
    """One symbol table entry."""

    name: int
    value: int
    size: int
    info: int
    other: int
    shndx: int


def elf_identify(data: bytes) -> None:
    """Check that ``data`` starts with the ELF magic; raise ElfError if not."""
    if len(data) < SELFMAG:
        raise ElfError(f"{len(data)} bytes are too few to identify an image")
    if bytes(data[:SELFMAG]) != ELFMAG:
        raise ElfError("not an ELF image")


def parse_elf_header(data: bytes) -> ElfHeader:
    """Decode the ELF file header at the start of ``data``."""
    elf_identify(data)
    if len(data) < EI_NIDENT:
        raise ElfError("identification field is truncated")
    elf_class = _checked_class(data[EI_CLASS])
    encoding = data[EI_DATA]
    if encoding not in (ELFDATA2LSB, ELFDATA2MSB):
        raise ElfError(f"unknown data encoding {encoding}")
    layout = _layout(elf_class, "ehdr", encoding == ELFDATA2LSB)
    if len(data) < layout.size:
        raise ElfError(f"ELF header needs {layout.size} bytes, got {len(data)}")
    ident, *fields = layout.unpack_from(data, 0)
    return ElfHeader(bytes(ident), *fields)


def _read_table(data: bytes, offset: int, count: int, entsize: int,
                layout: struct.Struct, what: str) -> Iterator[tuple]:
    if count == 0:
        return iter(())
    if entsize < layout.size:
        raise ElfError(f"{what} entry size {entsize} is below {layout.size}")
    end = offset + count * entsize
    if offset < 0 or end > len(data):
        raise ElfError(f"{what} table {offset}..{end} lies beyond {len(data)} bytes")
    return (layout.unpack_from(data, position)
            for position in range(offset, end, entsize))


def parse_program_headers(data: bytes, header: ElfHeader) -> list[ProgramHeader]:
    """Decode the program header table described by ``header``."""
    elf_class = _checked_class(header.ident[EI_CLASS])
    layout = _layout(elf_class, "phdr", header.little_endian)
    names = _PHDR_FIELDS[elf_class]
    return [ProgramHeader(**dict(zip(names, values)))
            for values in _read_table(data, header.phoff, header.phnum,
                                      header.phentsize, layout, "program header")]


def parse_section_headers(data: bytes, header: ElfHeader) -> list[SectionHeader]:
    """Decode the section header table described by ``header``."""
    elf_class = _checked_class(header.ident[EI_CLASS])
    layout = _layout(elf_class, "shdr", header.little_endian)
    return [SectionHeader(*values)
            for values in _read_table(data, header.shoff, header.shnum,
                                      header.shentsize, layout, "section header")]


def parse_symbol(data: bytes, elf_class: int, little_endian: bool) -> Symbol:
    """Decode one symbol table entry from the start of ``data``."""
    checked = _checked_class(elf_class)
    layout = _layout(checked, "sym", little_endian)
    if len(data) < layout.size:
        raise ElfError(f"symbol entry needs {layout.size} bytes, got {len(data)}")
    values = layout.unpack_from(data, 0)
    return Symbol(**dict(zip(_SYM_FIELDS[checked], values)))


def r_sym(info: int, elf_class: int) -> int:
    """Symbol index held in a relocation ``r_info`` field."""
    if _checked_class(elf_class) is ElfClass.ELF32:
        return info >> 8
    return info >> 32


def r_type(info: int, elf_class: int) -> int:
    """Relocation type held in a relocation ``r_info`` field."""
    if _checked_class(elf_class) is ElfClass.ELF32:
        return info & 0xFF
    return info & 0xFFFFFFFF