"""Shared-object information collected from a loaded image's dynamic section."""

import logging
import struct
from dataclasses import dataclass
from typing import Optional

from sofixer import elf
from sofixer.elf import ElfError
from sofixer.phdr import phdr_table_get_arm_exidx, phdr_table_get_load_size

log = logging.getLogger(__name__)


@dataclass
class SoInfo:
    """What the dynamic section describes; table locations are virtual addresses or None."""

    name: Optional[str] = "name"
    phdr: Optional[int] = None
    phnum: int = 0
    load_bias: int = 0
    min_load: int = 0
    max_load: int = 0

    dynamic: Optional[int] = None
    dynamic_count: int = 0
    dynamic_flags: int = 0

    strtab: Optional[int] = None
    symtab: Optional[int] = None
    strtabsize: int = 0

    hash: Optional[int] = None
    nbucket: int = 0
    nchain: int = 0
    bucket: Optional[int] = None
    chain: Optional[int] = None

    plt_got: Optional[int] = None
    plt_type: int = elf.DT_REL
    plt_rel: Optional[int] = None
    plt_rel_count: int = 0
    plt_rela: Optional[int] = None
    plt_rela_count: int = 0
    rel: Optional[int] = None
    rel_count: int = 0

    preinit_array: Optional[int] = None
    preinit_array_count: int = 0
    init_array: Optional[int] = None
    init_array_count: int = 0
    fini_array: Optional[int] = None
    fini_array_count: int = 0
    init_func: Optional[int] = None
    fini_func: Optional[int] = None

    arm_exidx: Optional[int] = None
    arm_exidx_count: int = 0

    mips_symtabno: int = 0
    mips_local_gotno: int = 0
    mips_gotsym: int = 0

    needed_count: int = 0
    has_text_relocations: bool = False
    has_dt_symbolic: bool = False


def _read_cstring(buf, offset):
    if not 0 <= offset < len(buf):
        return None
    end = buf.find(b"\x00", offset)
    if end < 0:
        end = len(buf)
    return bytes(buf[offset:end]).decode("utf-8", "replace")


def _read_hash_header(buf, offset):
    try:
        if offset < 0:
            raise struct.error
        return struct.unpack_from("<II", buf, offset)
    except struct.error as exc:
        raise ElfError(f"hash table at buffer offset {offset:#x} is out of range") from exc


def _apply_entry(si, d, buf, layout):
    ptr = d.val
    val = d.val
    match d.tag:
        case elf.DT_HASH:
            si.hash = ptr
            si.nbucket, si.nchain = _read_hash_header(buf, ptr + si.load_bias)
            si.bucket = ptr + 8
            si.chain = ptr + 8 + si.nbucket * 4
        case elf.DT_STRTAB:
            si.strtab = ptr
            log.debug("string table found at %x", ptr)
        case elf.DT_SYMTAB:
            si.symtab = ptr
            log.debug("symbol table found at %x", ptr)
        case elf.DT_PLTREL:
            si.plt_type = val
        case elf.DT_JMPREL:
            si.plt_rel = ptr
            log.debug("%s plt_rel (DT_JMPREL) found at %x", si.name, ptr)
        case elf.DT_PLTRELSZ:
            si.plt_rel_count = val // layout.rel_size
            log.debug("%s plt_rel_count (DT_PLTRELSZ) %d", si.name, si.plt_rel_count)
        case elf.DT_REL:
            si.rel = ptr
            log.debug("%s rel (DT_REL) found at %x", si.name, ptr)
        case elf.DT_RELSZ:
            si.rel_count = val // layout.rel_size
            log.debug("%s rel_size (DT_RELSZ) %d", si.name, si.rel_count)
        case elf.DT_PLTGOT:
            si.plt_got = ptr
        case elf.DT_RELA:
            si.plt_rela = ptr
        case elf.DT_RELASZ:
            si.plt_rela_count = val // layout.rela_size
        case elf.DT_INIT:
            si.init_func = ptr
            log.debug("%s constructors (DT_INIT) found at %x", si.name, ptr)
        case elf.DT_FINI:
            si.fini_func = ptr
            log.debug("%s destructors (DT_FINI) found at %x", si.name, ptr)
        case elf.DT_INIT_ARRAY:
            si.init_array = ptr
            log.debug("%s constructors (DT_INIT_ARRAY) found at %x", si.name, ptr)
        case elf.DT_INIT_ARRAYSZ:
            si.init_array_count = (val & 0xFFFFFFFF) // layout.addr_size
            log.debug("%s constructors (DT_INIT_ARRAYSZ) %d", si.name, si.init_array_count)
        case elf.DT_FINI_ARRAY:
            si.fini_array = ptr
            log.debug("%s destructors (DT_FINI_ARRAY) found at %x", si.name, ptr)
        case elf.DT_FINI_ARRAYSZ:
            si.fini_array_count = (val & 0xFFFFFFFF) // layout.addr_size
            log.debug("%s destructors (DT_FINI_ARRAYSZ) %d", si.name, si.fini_array_count)
        case elf.DT_PREINIT_ARRAY:
            si.preinit_array = ptr
            log.debug("%s constructors (DT_PREINIT_ARRAY) found at %x", si.name, ptr)
        case elf.DT_PREINIT_ARRAYSZ:
            si.preinit_array_count = (val & 0xFFFFFFFF) // layout.addr_size
            log.debug(
                "%s constructors (DT_PREINIT_ARRAYSZ) %d", si.name, si.preinit_array_count
            )
        case elf.DT_TEXTREL:
            si.has_text_relocations = True
        case elf.DT_SYMBOLIC:
            si.has_dt_symbolic = True
        case elf.DT_NEEDED:
            si.needed_count += 1
        case elf.DT_FLAGS:
            if val & elf.DF_TEXTREL:
                si.has_text_relocations = True
            if val & elf.DF_SYMBOLIC:
                si.has_dt_symbolic = True
        case elf.DT_STRSZ:
            si.strtabsize = val
        case (
            elf.DT_DEBUG | elf.DT_SYMENT | elf.DT_RELENT | elf.DT_MIPS_RLD_MAP
            | elf.DT_MIPS_RLD_VERSION | elf.DT_MIPS_FLAGS | elf.DT_MIPS_BASE_ADDRESS
            | elf.DT_MIPS_UNREFEXTNO
        ):
            pass
        case elf.DT_MIPS_SYMTABNO:
            si.mips_symtabno = val
        case elf.DT_MIPS_LOCAL_GOTNO:
            si.mips_local_gotno = val
        case elf.DT_MIPS_GOTSYM:
            si.mips_gotsym = val
        case elf.DT_SONAME:
            si.name = _read_cstring(buf, ptr + si.load_bias)
            log.debug("soname %s", si.name)
        case _:
            log.debug("Unused DT entry: type 0x%08x arg 0x%08x", d.tag, val)


def read_so_info(reader):
    """Collect SoInfo from a loaded reader's image; raise ElfError if it has no dynamic section."""
    if reader.loaded_phdr is None or reader.load_start is None:
        raise ElfError(f'"{reader.name}" has not been loaded')
    layout = reader.layout
    buf = reader.load_start
    si = SoInfo()
    si.load_bias = reader.load_bias
    si.phdr = reader.loaded_phdr
    si.phnum = reader.phdr_num

    phdrs = [
        layout.unpack_phdr(buf, si.phdr + index * layout.phdr_size)
        for index in range(si.phnum)
    ]
    _, si.min_load, si.max_load = phdr_table_get_load_size(phdrs, reader.is64)
    si.max_load += reader.pad_size

    dynamic = reader.get_dynamic_section()
    if dynamic is None:
        raise ElfError("No valid dynamic phdr data")
    si.dynamic, si.dynamic_count, si.dynamic_flags = dynamic

    exidx = phdr_table_get_arm_exidx(phdrs, layout)
    if exidx is not None:
        si.arm_exidx, si.arm_exidx_count = exidx

    offset = si.dynamic + si.load_bias
    while True:
        entry = layout.unpack_dyn(buf, offset)
        if entry.tag == elf.DT_NULL:
            break
        _apply_entry(si, entry, buf, layout)
        offset += layout.dyn_size
    return si