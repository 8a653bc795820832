import struct

import pytest

from sofixer.elf import (
    DynamicEntry,
    ElfError,
    ElfHeader,
    ElfLayout,
    ProgramHeader,
    SectionHeader,
    Symbol,
    page_end,
    page_offset,
    page_start,
)


def test_page_start_clears_offset():
    assert page_start(0x1234) == 0x1000


@pytest.mark.parametrize("x", [0, 1, 0xFFF, 0x1000, 0x1234, 0x30010, 0xABCDE])
def test_page_start_plus_offset_is_identity(x):
    assert page_start(x) + page_offset(x) == x


@pytest.mark.parametrize("x", [1, 0xFFF, 0x1001, 0x1234, 0x30010])
def test_page_end_is_aligned_and_not_below(x):
    end = page_end(x)
    assert page_offset(end) == 0
    assert x <= end < x + 0x1000


def test_page_end_of_aligned_address_is_itself():
    assert page_end(0x3000) == 0x3000


def test_header_sizes():
    assert ElfLayout(False).ehdr_size == 52
    assert ElfLayout(True).ehdr_size == 64


@pytest.mark.parametrize("is64", [False, True])
def test_packed_lengths_match_sizes(is64):
    layout = ElfLayout(is64)
    assert len(layout.pack_ehdr(ElfHeader())) == layout.ehdr_size
    assert len(layout.pack_phdr(ProgramHeader())) == layout.phdr_size
    assert len(layout.pack_shdr(SectionHeader())) == layout.shdr_size
    assert len(layout.pack_dyn(DynamicEntry())) == layout.dyn_size


@pytest.mark.parametrize("is64", [False, True])
def test_ehdr_round_trip(is64):
    layout = ElfLayout(is64)
    ident = b"\x7fELF" + bytes([2 if is64 else 1, 1, 1]) + b"\x00" * 9
    ehdr = ElfHeader(ident, 3, layout.machine, 1, 0x400, 0x34, 0x9000, 0x5000000,
                     layout.ehdr_size, layout.phdr_size, 8, layout.shdr_size, 20, 19)
    packed = layout.pack_ehdr(ehdr)
    assert packed[:4] == b"\x7fELF"
    assert layout.unpack_ehdr(packed) == ehdr


def test_unpack_ehdr_too_short():
    with pytest.raises(ElfError):
        ElfLayout(False).unpack_ehdr(b"\x7fELF")


@pytest.mark.parametrize("is64", [False, True])
def test_phdr_round_trip_with_offset(is64):
    layout = ElfLayout(is64)
    phdr = ProgramHeader(1, 0x100, 0x2000, 0x2000, 0x300, 0x400, 6, 0x1000)
    data = b"\xaa" * 7 + layout.pack_phdr(phdr)
    assert layout.unpack_phdr(data, 7) == phdr


def test_phdr64_places_flags_second():
    layout = ElfLayout(True)
    phdr = ProgramHeader(type=1, flags=5, offset=0x1111)
    packed = layout.pack_phdr(phdr)
    assert struct.unpack_from("<I", packed, 4)[0] == phdr.flags
    assert struct.unpack_from("<Q", packed, 8)[0] == phdr.offset


def test_pack_wraps_negative_values():
    layout = ElfLayout(False)
    packed = layout.pack_phdr(ProgramHeader(vaddr=-1))
    assert layout.unpack_phdr(packed).vaddr == layout.addr_mask


def test_shdr_pack_field_order():
    layout = ElfLayout(False)
    shdr = SectionHeader(name=9, type=11, addr=0x148, size=0x40, link=2, entsize=16)
    fields = struct.unpack("<10I", layout.pack_shdr(shdr))
    assert fields == (9, 11, 0, 0x148, 0, 0x40, 2, 0, 0, 16)


def test_unpack_sym_32():
    data = struct.pack("<IIIBBH", 1, 0x100, 8, 0x12, 0, 3)
    assert ElfLayout(False).unpack_sym(data) == Symbol(1, 0x100, 8, 0x12, 0, 3)


def test_unpack_sym_64():
    data = b"\x00" * 24 + struct.pack("<IBBHQQ", 7, 0x12, 1, 9, 0x4000, 32)
    assert ElfLayout(True).unpack_sym(data, 24) == Symbol(7, 0x4000, 32, 0x12, 1, 9)


@pytest.mark.parametrize("is64", [False, True])
def test_dyn_round_trip_keeps_signed_tag(is64):
    layout = ElfLayout(is64)
    dyn = DynamicEntry(-1, 5)
    assert layout.unpack_dyn(layout.pack_dyn(dyn)) == dyn


def test_unpack_rel_32():
    data = struct.pack("<II", 0x2000, (7 << 8) | 23)
    rel = ElfLayout(False).unpack_rel(data, 0, False)
    assert (rel.offset, rel.sym, rel.type, rel.addend) == (0x2000, 7, 23, 0)


def test_unpack_rela_64():
    data = struct.pack("<QQq", 0x10, (3 << 32) | 0x402, -8)
    rel = ElfLayout(True).unpack_rel(data, 0, True)
    assert (rel.offset, rel.sym, rel.type, rel.addend) == (0x10, 3, 0x402, -8)


@pytest.mark.parametrize("is64", [False, True])
def test_addr_round_trip(is64):
    layout = ElfLayout(is64)
    buf = bytearray(16)
    layout.write_addr(buf, 4, 0x12345678)
    assert layout.read_addr(buf, 4) == 0x12345678
    layout.write_addr(buf, 0, -1)
    assert layout.read_addr(buf, 0) == layout.addr_mask


def test_addr_out_of_range():
    layout = ElfLayout(True)
    buf = bytearray(8)
    with pytest.raises(ElfError):
        layout.read_addr(buf, 4)
    with pytest.raises(ElfError):
        layout.write_addr(buf, 4, 1)