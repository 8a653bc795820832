import pytest

from sofixer.elf import (
    DT_NULL,
    DT_SONAME,
    DT_STRSZ,
    ELFCLASS32,
    ELFDATA2LSB,
    ELFMAG,
    EM_ARM,
    ET_DYN,
    EV_CURRENT,
    PF_R,
    PF_W,
    PF_X,
    PT_DYNAMIC,
    PT_LOAD,
    PT_PHDR,
    DynamicEntry,
    ElfError,
    ElfHeader,
    ElfLayout,
    ProgramHeader,
)
from sofixer.obelfreader import ObElfReader

LAYOUT = ElfLayout(False)
FILE_SIZE = 0x1800


def _header(phnum):
    return LAYOUT.pack_ehdr(
        ElfHeader(
            ident=ELFMAG + bytes([ELFCLASS32, ELFDATA2LSB, EV_CURRENT]) + bytes(9),
            type=ET_DYN,
            machine=EM_ARM,
            version=EV_CURRENT,
            phoff=LAYOUT.ehdr_size,
            ehsize=LAYOUT.ehdr_size,
            phentsize=LAYOUT.phdr_size,
            phnum=phnum,
        )
    )


def _write_elf(path, phdrs, size, chunks=()):
    image = bytearray(size)
    head = _header(len(phdrs)) + b"".join(LAYOUT.pack_phdr(p) for p in phdrs)
    image[:len(head)] = head
    for offset, data in chunks:
        image[offset:offset + len(data)] = data
    path.write_bytes(bytes(image))
    return path


def _dump_phdrs(dyn_vaddr=0x1100, dyn_memsz=0x40, load_sizes=(0x1000, 0x800)):
    table_size = 4 * LAYOUT.phdr_size
    first, second = load_sizes
    return [
        ProgramHeader(PT_PHDR, LAYOUT.ehdr_size, LAYOUT.ehdr_size, 0, table_size, table_size, PF_R),
        ProgramHeader(PT_LOAD, 0, 0, 0, first, first, PF_R | PF_X),
        ProgramHeader(PT_LOAD, 0x1000, 0x1000, 0, second, second, PF_R | PF_W),
        ProgramHeader(PT_DYNAMIC, dyn_vaddr, dyn_vaddr, 0, dyn_memsz, dyn_memsz, PF_R | PF_W),
    ]


def _dyn_bytes(entries):
    return b"".join(LAYOUT.pack_dyn(DynamicEntry(tag, val)) for tag, val in entries)


def _write_base_so(path, entries):
    dyn = _dyn_bytes(entries)
    phdrs = [
        ProgramHeader(PT_LOAD, 0, 0, 0, 0x400, 0x400, PF_R),
        ProgramHeader(PT_DYNAMIC, 0x100, 0x100, 0, len(dyn), len(dyn), PF_R | PF_W),
    ]
    return _write_elf(path, phdrs, 0x400, [(0x100, dyn)]), dyn


def test_load_without_dump_base_normalises_headers(tmp_path):
    path = _write_elf(tmp_path / "dump.so", _dump_phdrs(), FILE_SIZE)
    reader = ObElfReader(path)
    try:
        reader.load()
        assert reader.loaded_phdr == LAYOUT.ehdr_size
        for phdr in reader.phdr_table:
            assert phdr.offset == phdr.vaddr
            assert phdr.paddr == phdr.vaddr
            assert phdr.filesz == phdr.memsz
        loads = [p.memsz for p in reader.phdr_table if p.type == PT_LOAD]
        assert loads == [0x1000, 0x800]
        stored = [
            LAYOUT.unpack_phdr(reader.load_start, reader.loaded_phdr + i * LAYOUT.phdr_size)
            for i in range(reader.phdr_num)
        ]
        assert stored == reader.phdr_table
    finally:
        reader.close()


def test_dump_base_stretches_loads_to_fill_gaps(tmp_path):
    phdrs = _dump_phdrs(load_sizes=(0x200, 0x300))
    # Put the later segment first to exercise the ordering by address.
    phdrs[1], phdrs[2] = phdrs[2], phdrs[1]
    path = _write_elf(tmp_path / "dump.so", phdrs, FILE_SIZE)
    reader = ObElfReader(path, dump_base=0x70000000)
    try:
        reader.read_elf_header()
        reader.verify_elf_header()
        reader.read_program_header()
        reader.fix_dump_so_phdr()
        loads = sorted((p for p in reader.phdr_table if p.type == PT_LOAD), key=lambda p: p.vaddr)
        assert loads[0].memsz == loads[1].vaddr - loads[0].vaddr
        assert loads[1].memsz == reader.file_size - loads[1].vaddr
        assert all(p.filesz == p.memsz for p in loads)
    finally:
        reader.close()


def test_dynamic_inside_loadable_segment_is_detected(tmp_path):
    path = _write_elf(tmp_path / "dump.so", _dump_phdrs(), FILE_SIZE)
    reader = ObElfReader(path)
    try:
        reader.read_elf_header()
        reader.read_program_header()
        assert reader.have_dynamic_section_in_loadable_segment() is True
    finally:
        reader.close()


def test_dynamic_at_load_start_is_not_inside(tmp_path):
    path = _write_elf(tmp_path / "dump.so", _dump_phdrs(dyn_vaddr=0, dyn_memsz=0x10), FILE_SIZE)
    reader = ObElfReader(path)
    try:
        reader.read_elf_header()
        reader.read_program_header()
        assert reader.have_dynamic_section_in_loadable_segment() is False
    finally:
        reader.close()


def test_dynamic_section_is_taken_from_base_so(tmp_path):
    base, dyn = _write_base_so(
        tmp_path / "base.so", [(DT_STRSZ, 7), (DT_SONAME, 1), (DT_NULL, 0)]
    )
    path = _write_elf(tmp_path / "dump.so", _dump_phdrs(dyn_vaddr=0, dyn_memsz=0x10), FILE_SIZE)
    reader = ObElfReader(path, base_so=base)
    try:
        reader.load()
        assert reader.dynamic_sections == dyn
        assert reader.dynamic_count == 3
        assert reader.pad_size == len(dyn)
        assert len(reader.load_start) == reader.load_size + reader.pad_size
        dynamic = next(p for p in reader.phdr_table if p.type == PT_DYNAMIC)
        assert dynamic.vaddr == reader.load_size + reader.load_min_vaddr
        assert dynamic.offset == dynamic.vaddr
        assert dynamic.memsz == dynamic.filesz == len(dyn)
        start = dynamic.vaddr + reader.load_bias
        assert bytes(reader.load_start[start:start + len(dyn)]) == dyn
        assert reader.get_dynamic_section() == (dynamic.vaddr, 3, PF_R | PF_W)
    finally:
        reader.close()


def test_base_so_is_ignored_when_dump_has_dynamic(tmp_path):
    base, _ = _write_base_so(tmp_path / "base.so", [(DT_STRSZ, 7), (DT_NULL, 0)])
    path = _write_elf(tmp_path / "dump.so", _dump_phdrs(), FILE_SIZE)
    reader = ObElfReader(path, base_so=base)
    try:
        reader.load()
        assert reader.dynamic_sections is None
        assert reader.pad_size == 0
    finally:
        reader.close()


def test_missing_base_so_is_reported(tmp_path):
    path = _write_elf(tmp_path / "dump.so", _dump_phdrs(dyn_vaddr=0, dyn_memsz=0x10), FILE_SIZE)
    reader = ObElfReader(path, base_so=tmp_path / "absent.so")
    try:
        assert reader.load_dynamic_section_from_base_source() is False
        reader.load()
        assert reader.pad_size == 0
        assert reader.dynamic_sections is None
    finally:
        reader.close()


def test_no_base_so_returns_false(tmp_path):
    path = _write_elf(tmp_path / "dump.so", _dump_phdrs(), FILE_SIZE)
    reader = ObElfReader(path)
    try:
        assert reader.load_dynamic_section_from_base_source() is False
    finally:
        reader.close()


def test_invalid_base_so_returns_false(tmp_path):
    bogus = tmp_path / "bogus.so"
    bogus.write_bytes(b"not an elf file at all" * 4)
    path = _write_elf(tmp_path / "dump.so", _dump_phdrs(), FILE_SIZE)
    reader = ObElfReader(path, base_so=bogus)
    try:
        assert reader.load_dynamic_section_from_base_source() is False
        assert reader.dynamic_sections is None
    finally:
        reader.close()


def test_bad_magic_raises(tmp_path):
    path = tmp_path / "junk.so"
    path.write_bytes(b"\x00" * 0x200)
    reader = ObElfReader(path)
    try:
        with pytest.raises(ElfError):
            reader.load()
    finally:
        reader.close()