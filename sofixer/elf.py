"""ELF structures, constants and their binary layouts for 32- and 64-bit files."""

import re
import struct
from dataclasses import dataclass

PAGE_SIZE = 0x1000
_PAGE_MASK = ~(PAGE_SIZE - 1)

# e_ident
EI_NIDENT = 16
EI_MAG0 = 0
EI_MAG1 = 1
EI_MAG2 = 2
EI_MAG3 = 3
EI_CLASS = 4
EI_DATA = 5
ELFMAG = b"\x7fELF"
ELFCLASS32 = 1
ELFCLASS64 = 2
ELFDATA2LSB = 1
EV_CURRENT = 1

# e_type / e_machine
ET_DYN = 3
EM_ARM = 40
EM_AARCH64 = 183

# p_type
PT_NULL = 0
PT_LOAD = 1
PT_DYNAMIC = 2
PT_INTERP = 3
PT_NOTE = 4
PT_SHLIB = 5
PT_PHDR = 6
PT_TLS = 7
PT_ARM_EXIDX = 0x70000001

# p_flags
PF_X = 1 << 0
PF_W = 1 << 1
PF_R = 1 << 2

# sh_type
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
SHT_DYNSYM = 11
SHT_INIT_ARRAY = 14
SHT_FINI_ARRAY = 15
SHT_PREINIT_ARRAY = 16
SHT_ARMEXIDX = 0x70000001

# sh_flags
SHF_WRITE = 1 << 0
SHF_ALLOC = 1 << 1
SHF_EXECINSTR = 1 << 2
SHF_LINK_ORDER = 1 << 7

# d_tag
DT_NULL = 0
DT_NEEDED = 1
DT_PLTRELSZ = 2
DT_PLTGOT = 3
DT_HASH = 4
DT_STRTAB = 5
DT_SYMTAB = 6
DT_RELA = 7
DT_RELASZ = 8
DT_RELAENT = 9
DT_STRSZ = 10
DT_SYMENT = 11
DT_INIT = 12
DT_FINI = 13
DT_SONAME = 14
DT_RPATH = 15
DT_SYMBOLIC = 16
DT_REL = 17
DT_RELSZ = 18
DT_RELENT = 19
DT_PLTREL = 20
DT_DEBUG = 21
DT_TEXTREL = 22
DT_JMPREL = 23
DT_BIND_NOW = 24
DT_INIT_ARRAY = 25
DT_FINI_ARRAY = 26
DT_INIT_ARRAYSZ = 27
DT_FINI_ARRAYSZ = 28
DT_RUNPATH = 29
DT_FLAGS = 30
DT_PREINIT_ARRAY = 32
DT_PREINIT_ARRAYSZ = 33
DT_MIPS_RLD_VERSION = 0x70000001
DT_MIPS_FLAGS = 0x70000005
DT_MIPS_BASE_ADDRESS = 0x70000006
DT_MIPS_LOCAL_GOTNO = 0x7000000A
DT_MIPS_SYMTABNO = 0x70000011
DT_MIPS_UNREFEXTNO = 0x70000012
DT_MIPS_GOTSYM = 0x70000013
DT_MIPS_RLD_MAP = 0x70000016

# DT_FLAGS values
DF_ORIGIN = 0x1
DF_SYMBOLIC = 0x2
DF_TEXTREL = 0x4
DF_BIND_NOW = 0x8

# relocation types
R_386_RELATIVE = 8
R_ARM_RELATIVE = 23


class ElfError(Exception):
    """Raised when ELF data is malformed or cannot be processed."""


def page_start(x):
    """Return the address of the page containing ``x``."""
    return x & _PAGE_MASK


def page_offset(x):
    """Return the offset of ``x`` within its page."""
    return x & (PAGE_SIZE - 1)


def page_end(x):
    """Return the start of the next page after ``x`` unless ``x`` is page aligned."""
    return page_start(x + PAGE_SIZE - 1)


@dataclass
class ElfHeader:
    ident: bytes = b"\x00" * EI_NIDENT
    type: int = 0
    machine: int = 0
    version: int = 0
    entry: int = 0
    phoff: int = 0
    shoff: int = 0
    flags: int = 0
    ehsize: int = 0
    phentsize: int = 0
    phnum: int = 0
    shentsize: int = 0
    shnum: int = 0
    shstrndx: int = 0


@dataclass
class ProgramHeader:
    type: int = 0
    offset: int = 0
    vaddr: int = 0
    paddr: int = 0
    filesz: int = 0
    memsz: int = 0
    flags: int = 0
    align: int = 0


@dataclass
class SectionHeader:
    name: int = 0
    type: int = 0
    flags: int = 0
    addr: int = 0
    offset: int = 0
    size: int = 0
    link: int = 0
    info: int = 0
    addralign: int = 0
    entsize: int = 0


@dataclass
class Symbol:
    name: int = 0
    value: int = 0
    size: int = 0
    info: int = 0
    other: int = 0
    shndx: int = 0


@dataclass
class DynamicEntry:
    tag: int = 0
    val: int = 0


@dataclass
class Relocation:
    offset: int = 0
    info: int = 0
    addend: int = 0
    sym: int = 0
    type: int = 0


_FIELD = re.compile(r"(\d*)([a-zA-Z])")
_UNSIGNED = {"b": "B", "h": "H", "i": "I", "q": "Q"}
_MASKS = {"B": 0xFF, "H": 0xFFFF, "I": 0xFFFFFFFF, "Q": 0xFFFFFFFFFFFFFFFF}


class _Record:
    """A little-endian record that unpacks as declared and packs with wrap-around."""

    def __init__(self, fmt):
        self._unpacker = struct.Struct("<" + fmt)
        parts = [(count, _UNSIGNED.get(code, code)) for count, code in _FIELD.findall(fmt)]
        self._packer = struct.Struct("<" + "".join(count + code for count, code in parts))
        self._kinds = [code for _, code in parts]
        self.size = self._unpacker.size

    def unpack(self, data, offset=0):
        if offset < 0:
            raise ElfError(f"negative offset {offset}")
        try:
            return self._unpacker.unpack_from(data, offset)
        except struct.error as exc:
            raise ElfError(f"not enough data for a {self.size}-byte record at {offset:#x}") from exc

    def pack(self, values):
        fitted = [
            value if kind == "s" else value & _MASKS[kind]
            for value, kind in zip(values, self._kinds)
        ]
        return self._packer.pack(*fitted)


_EHDR_FIELDS = (
    "ident", "type", "machine", "version", "entry", "phoff", "shoff", "flags",
    "ehsize", "phentsize", "phnum", "shentsize", "shnum", "shstrndx",
)
_SHDR_FIELDS = (
    "name", "type", "flags", "addr", "offset", "size", "link", "info", "addralign", "entsize",
)
_PHDR32_FIELDS = ("type", "offset", "vaddr", "paddr", "filesz", "memsz", "flags", "align")
_PHDR64_FIELDS = ("type", "flags", "offset", "vaddr", "paddr", "filesz", "memsz", "align")
_SYM32_FIELDS = ("name", "value", "size", "info", "other", "shndx")
_SYM64_FIELDS = ("name", "info", "other", "shndx", "value", "size")


class ElfLayout:
    """Binary layout of ELF records for one word size (little endian)."""

    def __init__(self, is64):
        self.is64 = bool(is64)
        if self.is64:
            self.elf_class = ELFCLASS64
            self.machine = EM_AARCH64
            self._ehdr = _Record("16sHHIQQQIHHHHHH")
            self._phdr = _Record("IIQQQQQQ")
            self._shdr = _Record("IIQQQQIIQQ")
            self._sym = _Record("IBBHQQ")
            self._dyn = _Record("qQ")
            self._rel = _Record("QQ")
            self._rela = _Record("QQq")
            self._addr = _Record("Q")
            self._phdr_fields = _PHDR64_FIELDS
            self._sym_fields = _SYM64_FIELDS
        else:
            self.elf_class = ELFCLASS32
            self.machine = EM_ARM
            self._ehdr = _Record("16sHHIIIIIHHHHHH")
            self._phdr = _Record("IIIIIIII")
            self._shdr = _Record("IIIIIIIIII")
            self._sym = _Record("IIIBBH")
            self._dyn = _Record("iI")
            self._rel = _Record("II")
            self._rela = _Record("IIi")
            self._addr = _Record("I")
            self._phdr_fields = _PHDR32_FIELDS
            self._sym_fields = _SYM32_FIELDS
        self.addr_size = self._addr.size
        self.addr_mask = (1 << (8 * self.addr_size)) - 1
        self.ehdr_size = self._ehdr.size
        self.phdr_size = self._phdr.size
        self.shdr_size = self._shdr.size
        self.sym_size = self._sym.size
        self.dyn_size = self._dyn.size
        self.rel_size = self._rel.size
        self.rela_size = self._rela.size

    def unpack_ehdr(self, data):
        if len(data) < self.ehdr_size:
            raise ElfError("data is too small to be an ELF executable")
        return ElfHeader(**dict(zip(_EHDR_FIELDS, self._ehdr.unpack(data))))

    def pack_ehdr(self, ehdr):
        return self._ehdr.pack([getattr(ehdr, name) for name in _EHDR_FIELDS])

    def unpack_phdr(self, data, offset=0):
        return ProgramHeader(**dict(zip(self._phdr_fields, self._phdr.unpack(data, offset))))

    def pack_phdr(self, phdr):
        return self._phdr.pack([getattr(phdr, name) for name in self._phdr_fields])

    def pack_shdr(self, shdr):
        return self._shdr.pack([getattr(shdr, name) for name in _SHDR_FIELDS])

    def unpack_sym(self, data, offset=0):
        return Symbol(**dict(zip(self._sym_fields, self._sym.unpack(data, offset))))

    def unpack_dyn(self, data, offset=0):
        tag, val = self._dyn.unpack(data, offset)
        return DynamicEntry(tag, val)

    def pack_dyn(self, dyn):
        return self._dyn.pack([dyn.tag, dyn.val])

    def unpack_rel(self, data, offset=0, with_addend=False):
        if with_addend:
            r_offset, info, addend = self._rela.unpack(data, offset)
        else:
            r_offset, info = self._rel.unpack(data, offset)
            addend = 0
        if self.is64:
            sym, rtype = info >> 32, info & 0xFFFFFFFF
        else:
            sym, rtype = info >> 8, info & 0xFF
        return Relocation(r_offset, info, addend, sym, rtype)

    def read_addr(self, data, offset):
        return self._addr.unpack(data, offset)[0]

    def write_addr(self, data, offset, value):
        if offset < 0 or offset + self.addr_size > len(data):
            raise ElfError(f"address write at {offset:#x} is out of range")
        data[offset:offset + self.addr_size] = self._addr.pack([value])