"""Synthesise a section header table from the information in a dynamic section."""

from dataclasses import dataclass, field

from sofixer.elf import (
    DT_REL,
    SHF_ALLOC,
    SHF_EXECINSTR,
    SHF_LINK_ORDER,
    SHF_WRITE,
    SHT_ARMEXIDX,
    SHT_DYNAMIC,
    SHT_DYNSYM,
    SHT_FINI_ARRAY,
    SHT_HASH,
    SHT_INIT_ARRAY,
    SHT_PROGBITS,
    SHT_REL,
    SHT_RELA,
    SHT_STRTAB,
    ElfLayout,
    SectionHeader,
)

_PLT_HEADER_SIZE = 20
_PLT_ENTRY_SIZE = 12


@dataclass
class SectionTable:
    """Section headers, the key that identifies each of them, and the .shstrtab bytes.

    Index 0 is the empty header and has no key.
    """

    headers: list = field(default_factory=lambda: [SectionHeader()])
    keys: list = field(default_factory=lambda: [None])
    names: bytearray = field(default_factory=lambda: bytearray(b"\x00"))

    @property
    def indices(self):
        """Map each section key to its position in ``headers``."""
        return {key: position for position, key in enumerate(self.keys) if key is not None}

    def index(self, key):
        """Return the position of section ``key``, or 0 when it is absent."""
        return self.indices.get(key, 0)

    @property
    def shstrndx(self):
        return self.index("shstrtab")

    def __contains__(self, key):
        return key in self.keys

    def __getitem__(self, key):
        return self.headers[self.indices[key]]

    def add(self, key, name, **fields):
        """Append a header named ``name``; its file offset equals its address."""
        header = SectionHeader(name=len(self.names), **fields)
        header.offset = header.addr
        self.names += name.encode() + b"\x00"
        self.headers.append(header)
        self.keys.append(key)
        return header

    def name_of(self, header):
        """Return the name of ``header`` as stored in ``names``."""
        end = self.names.find(b"\x00", header.name)
        if end < 0:
            end = len(self.names)
        return bytes(self.names[header.name:end]).decode("utf-8", "replace")

    def pack(self, layout):
        """Return the headers in their binary form."""
        return b"".join(layout.pack_shdr(header) for header in self.headers)

    def sort_by_address(self):
        """Order the headers after the empty one by address, keeping keys in step."""
        headers, keys = self.headers, self.keys
        count = len(headers)
        for i in range(1, count):
            for j in range(i + 1, count):
                if headers[i].addr > headers[j].addr:
                    headers[i], headers[j] = headers[j], headers[i]
                    keys[i], keys[j] = keys[j], keys[i]


def build_section_headers(si, is64):
    """Build the section headers that the tables described by ``si`` imply."""
    layout = ElfLayout(is64)
    mask = layout.addr_mask
    word_align = 8 if is64 else 4
    table = SectionTable()

    if si.symtab is not None:
        table.add(
            "dynsym", ".dynsym", type=SHT_DYNSYM, flags=SHF_ALLOC, addr=si.symtab & mask,
            addralign=word_align, entsize=0x18 if is64 else 0x10,
        )

    if si.strtab is not None:
        table.add(
            "dynstr", ".dynstr", type=SHT_STRTAB, flags=SHF_ALLOC, addr=si.strtab & mask,
            size=si.strtabsize, addralign=1,
        )

    if si.hash is not None:
        table.add(
            "hash", ".hash", type=SHT_HASH, addr=si.hash & mask,
            size=(si.nbucket + si.nchain) * layout.addr_size + 2 * layout.addr_size,
            link=table.index("dynsym"), addralign=4, entsize=0x4,
        )

    if si.rel is not None:
        table.add(
            "rel.dyn", ".rel.dyn", type=SHT_REL, flags=SHF_ALLOC, addr=si.rel & mask,
            size=si.rel_count * layout.rel_size, link=table.index("dynsym"),
            addralign=word_align, entsize=0x18 if is64 else 0x8,
        )

    if si.plt_rela is not None:
        table.add(
            "rela.dyn", ".rela.dyn", type=SHT_RELA, flags=SHF_ALLOC, addr=si.plt_rela & mask,
            size=si.plt_rela_count * layout.rela_size, link=table.index("dynsym"),
            addralign=word_align, entsize=layout.rela_size,
        )

    if si.plt_rel is not None:
        is_rel = si.plt_type == DT_REL
        entry_size = layout.rel_size if is_rel else layout.rela_size
        rel_plt = table.add(
            "rel.plt", ".rel.plt" if is_rel else ".rela.plt", type=SHT_REL, flags=SHF_ALLOC,
            addr=si.plt_rel & mask, size=si.plt_rel_count * entry_size,
            link=table.index("dynsym"), addralign=word_align, entsize=0x18 if is64 else 0x8,
        )
        plt = table.add(
            "plt", ".plt", type=SHT_PROGBITS, flags=SHF_ALLOC | SHF_EXECINSTR,
            addr=(rel_plt.addr + rel_plt.size) & mask,
            size=_PLT_HEADER_SIZE + _PLT_ENTRY_SIZE * si.plt_rel_count, addralign=4,
        )
        table.add(
            "text", ".text&ARM.extab", type=SHT_PROGBITS, flags=SHF_ALLOC | SHF_EXECINSTR,
            addr=((plt.addr + plt.size + 7) & ~7) & mask, addralign=8,
        )

    if si.arm_exidx is not None:
        table.add(
            "arm.exidx", ".ARM.exidx", type=SHT_ARMEXIDX, flags=SHF_ALLOC | SHF_LINK_ORDER,
            addr=si.arm_exidx & mask, size=si.arm_exidx_count * layout.addr_size,
            link=table.index("text"), addralign=4, entsize=0x8,
        )

    if si.fini_array is not None:
        table.add(
            "fini_array", ".fini_array", type=SHT_FINI_ARRAY, flags=SHF_ALLOC | SHF_WRITE,
            addr=si.fini_array & mask, size=si.fini_array_count * layout.addr_size,
            addralign=word_align,
        )

    if si.init_array is not None:
        table.add(
            "init_array", ".init_array", type=SHT_INIT_ARRAY, flags=SHF_ALLOC | SHF_WRITE,
            addr=si.init_array & mask, size=si.init_array_count * layout.addr_size,
            addralign=word_align,
        )

    if si.dynamic is not None:
        table.add(
            "dynamic", ".dynamic", type=SHT_DYNAMIC, flags=SHF_ALLOC | SHF_WRITE,
            addr=si.dynamic & mask, size=si.dynamic_count * layout.dyn_size,
            link=table.index("dynstr"), addralign=word_align, entsize=0x10 if is64 else 0x8,
        )

    last = table.headers[-1]
    data_addr = (last.addr + last.size) & mask
    table.add(
        "data", ".data", type=SHT_PROGBITS, flags=SHF_ALLOC | SHF_WRITE, addr=data_addr,
        size=(si.max_load - data_addr) & mask, addralign=4,
    )

    shstrtab = table.add(
        "shstrtab", ".shstrtab", type=SHT_STRTAB, addr=si.max_load & mask, addralign=1,
    )
    shstrtab.size = len(table.names)

    table.sort_by_address()
    _relink(table)
    _fit_sizes(table, mask)
    return table


def _relink(table):
    dynsym = table.index("dynsym")
    dynstr = table.index("dynstr")
    for key in ("hash", "rel.dyn", "rela.dyn", "rel.plt"):
        if key in table:
            table[key].link = dynsym
    if "arm.exidx" in table:
        table["arm.exidx"].link = table.index("text")
    if "dynamic" in table:
        table["dynamic"].link = dynstr
    if "dynsym" in table:
        table["dynsym"].link = dynstr


def _fit_sizes(table, mask):
    headers = table.headers
    for key in ("dynsym", "text"):
        position = table.index(key)
        if position and position + 1 < len(headers):
            header = headers[position]
            header.size = (headers[position + 1].addr - header.addr) & mask
    for previous, current in zip(headers[1:], headers[2:]):
        gap = (current.offset - previous.offset) & mask
        if gap < previous.size:
            previous.size = gap