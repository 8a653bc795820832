"""Load an ELF shared object's loadable segments into an in-memory image."""

import logging
import os

from sofixer.elf import (
    EI_CLASS,
    EI_DATA,
    ELFDATA2LSB,
    ELFMAG,
    EV_CURRENT,
    PT_LOAD,
    PT_PHDR,
    ElfError,
    ElfLayout,
)
from sofixer.filereader import FileReader
from sofixer.phdr import phdr_table_get_dynamic_section, phdr_table_get_load_size

log = logging.getLogger(__name__)

# Like the kernel, only program header tables smaller than 64KiB are accepted.
_MAX_PHDR_TABLE_BYTES = 65536


class ElfReader:
    """Reads an ELF file and lays its PT_LOAD segments out in a zero-filled buffer.

    The buffer ``load_start`` covers the page-aligned extent of all loadable
    segments plus ``pad_size`` extra bytes.  A virtual address ``vaddr`` from
    the file lives at buffer offset ``vaddr + load_bias``.
    """

    def __init__(self, path, is64=False):
        self.name = os.fspath(path)
        self.layout = ElfLayout(is64)
        self.is64 = self.layout.is64
        self.header = None
        self.phdr_num = 0
        self.phdr_table = []
        self.load_start = None
        self.load_size = 0
        self.pad_size = 0
        self.load_min_vaddr = 0
        self.load_bias = 0
        self.loaded_phdr = None
        self.source = FileReader(self.name).open()
        self.file_size = self.source.file_size

    def load(self):
        """Run every loading step; raise ElfError at the first one that fails."""
        self.read_elf_header()
        self.verify_elf_header()
        self.read_program_header()
        self.reserve_address_space()
        self.load_segments()
        self.find_phdr()
        return self

    def read_elf_header(self):
        """Read the ELF header from the start of the file."""
        size = self.layout.ehdr_size
        data = self.source.read(size, 0)
        if len(data) != size:
            raise ElfError(f'"{self.name}" is too small to be an ELF executable')
        self.header = self.layout.unpack_ehdr(data)
        return self.header

    def verify_elf_header(self):
        """Check magic, class, byte order and version of the header."""
        ident = self.header.ident
        if ident[:len(ELFMAG)] != ELFMAG:
            raise ElfError(f'"{self.name}" has bad ELF magic')
        if ident[EI_CLASS] != self.layout.elf_class:
            bits = 64 if self.is64 else 32
            raise ElfError(f'"{self.name}" not {bits}-bit: {ident[EI_CLASS]}')
        if ident[EI_DATA] != ELFDATA2LSB:
            raise ElfError(f'"{self.name}" not little-endian: {ident[EI_DATA]}')
        if self.header.version != EV_CURRENT:
            raise ElfError(f'"{self.name}" has unexpected e_version: {self.header.version}')
        return True

    def read_program_header(self):
        """Read the program header table into ``phdr_table``."""
        num = self.header.phnum
        entry_size = self.layout.phdr_size
        if num < 1 or num > _MAX_PHDR_TABLE_BYTES // entry_size:
            raise ElfError(f'"{self.name}" has invalid e_phnum: {num}')
        size = num * entry_size
        data = self.source.read(size, self.header.phoff)
        if not data:
            raise ElfError(f'"{self.name}" has no valid phdr data')
        data = data.ljust(size, b"\x00")
        self.phdr_num = num
        self.phdr_table = [
            self.layout.unpack_phdr(data, offset) for offset in range(0, size, entry_size)
        ]
        return self.phdr_table

    def reserve_address_space(self, padding_size=0):
        """Allocate a zeroed buffer large enough for all loadable segments plus padding."""
        load_size, min_vaddr, _ = phdr_table_get_load_size(self.phdr_table, self.is64)
        if load_size == 0:
            raise ElfError(f'"{self.name}" has no loadable segments')
        self.load_size = load_size
        self.pad_size = padding_size
        self.load_min_vaddr = min_vaddr
        self.load_start = bytearray(load_size + padding_size)
        self.load_bias = -min_vaddr
        return self.load_start

    def load_segments(self):
        """Copy the file contents of every PT_LOAD segment into the buffer."""
        for index, phdr in enumerate(self.phdr_table):
            if phdr.type != PT_LOAD or phdr.filesz == 0:
                continue
            data = self.source.read(phdr.filesz, phdr.offset)
            if not data:
                raise ElfError(f'couldn\'t map "{self.name}" segment {index}')
            start = phdr.vaddr + self.load_bias
            end = start + len(data)
            if start < 0 or end > len(self.load_start):
                raise ElfError(
                    f'"{self.name}" segment {index} does not fit in the reserved space'
                )
            self.load_start[start:end] = data
        return True

    def find_phdr(self):
        """Locate the program header table inside the loaded image."""
        for phdr in self.phdr_table:
            if phdr.type == PT_PHDR:
                return self.check_phdr(phdr.vaddr + self.load_bias)

        for phdr in self.phdr_table:
            if phdr.type == PT_LOAD:
                if phdr.offset == 0:
                    elf_offset = phdr.vaddr + self.load_bias
                    raw = bytes(self.load_start[elf_offset:elf_offset + self.layout.ehdr_size])
                    ehdr = self.layout.unpack_ehdr(raw)
                    return self.check_phdr(elf_offset + ehdr.phoff)
                break

        raise ElfError(f'can\'t find loaded phdr for "{self.name}"')

    def check_phdr(self, loaded):
        """Accept ``loaded`` (a buffer offset) if the whole table lies in a loadable segment."""
        loaded_end = loaded + self.phdr_num * self.layout.phdr_size
        for phdr in self.phdr_table:
            if phdr.type != PT_LOAD:
                continue
            seg_start = phdr.vaddr + self.load_bias
            seg_end = seg_start + phdr.filesz
            if seg_start <= loaded and loaded_end <= seg_end:
                self.loaded_phdr = loaded
                return loaded
        raise ElfError(f'"{self.name}" loaded phdr {loaded:#x} not in loadable segment')

    def apply_phdr_table(self):
        """Write ``phdr_table`` back over the program headers in the loaded image."""
        if self.loaded_phdr is None:
            raise ElfError(f'"{self.name}" has no loaded phdr')
        table = b"".join(self.layout.pack_phdr(phdr) for phdr in self.phdr_table)
        self.load_start[self.loaded_phdr:self.loaded_phdr + len(table)] = table

    def get_dynamic_section(self):
        """Return ``(vaddr, entry_count, flags)`` of the PT_DYNAMIC segment, or None."""
        return phdr_table_get_dynamic_section(self.phdr_table, self.layout)

    def close(self):
        """Close the underlying file."""
        return self.source.close()