"""Rebuild a loadable ELF file, with section headers, from a loaded memory dump."""

import logging
from dataclasses import replace

from sofixer.elf import (
    DT_REL,
    ET_DYN,
    R_386_RELATIVE,
    R_ARM_RELATIVE,
    ElfError,
)
from sofixer.sections import build_section_headers
from sofixer.soinfo import read_so_info

log = logging.getLogger(__name__)

_R_GLOB_DAT = 0x401
_R_JUMP_SLOT = 0x402
_R_RELATIVE_ADDEND = 0x403


class ElfRebuilder:
    """Turns a loaded reader's image into a complete ELF file in ``rebuild_data``."""

    def __init__(self, reader):
        self.reader = reader
        self.layout = reader.layout
        self.si = None
        self.sections = None
        self.imports = []
        self.external_pointer = 0
        self.rebuild_data = None

    def rebuild(self):
        """Run every rebuilding step and return the new file's bytes."""
        self.rebuild_phdr()
        self.si = read_so_info(self.reader)
        self.sections = build_section_headers(self.si, self.reader.is64)
        self.rebuild_relocs()
        return self.rebuild_fin()

    def rebuild_phdr(self):
        """Make every loaded program header map its memory image one to one into the file."""
        reader = self.reader
        if reader.loaded_phdr is None:
            raise ElfError(f'"{reader.name}" has no loaded phdr')
        buf = reader.load_start
        entry_size = self.layout.phdr_size
        start = reader.loaded_phdr
        for offset in range(start, start + reader.phdr_num * entry_size, entry_size):
            phdr = self.layout.unpack_phdr(buf, offset)
            phdr.filesz = phdr.memsz
            phdr.paddr = phdr.vaddr
            phdr.offset = phdr.vaddr
            buf[offset:offset + entry_size] = self.layout.pack_phdr(phdr)
        return True

    def _require_info(self):
        if self.si is None:
            self.si = read_so_info(self.reader)
        return self.si

    def _symbols(self):
        si = self.si
        offset = si.symtab + si.load_bias
        while True:
            try:
                symbol = self.layout.unpack_sym(self.reader.load_start, offset)
            except ElfError:
                return
            yield symbol
            offset += self.layout.sym_size

    def _symbol(self, index):
        si = self.si
        if si.symtab is None:
            raise ElfError("relocation refers to a symbol but there is no symbol table")
        offset = si.symtab + si.load_bias + index * self.layout.sym_size
        return self.layout.unpack_sym(self.reader.load_start, offset)

    def _string(self, name_offset):
        si = self.si
        if si.strtab is None:
            return ""
        buf = self.reader.load_start
        start = si.strtab + si.load_bias + name_offset
        if not 0 <= start < len(buf):
            return ""
        end = buf.find(b"\x00", start)
        if end < 0:
            end = len(buf)
        return bytes(buf[start:end]).decode("utf-8", "replace")

    def save_import_sym_names(self):
        """Record, in order, the names of the imported symbols at the head of .dynsym."""
        si = self._require_info()
        self.imports = []
        if si.symtab is None or si.strtab is None:
            return self.imports
        started = False
        for symbol in self._symbols():
            if symbol.name == 0 and not started:
                continue
            started = True
            if symbol.name != 0 and symbol.value != 0:
                break
            self.imports.append(self._string(symbol.name))
        return self.imports

    def index_of_import(self, name):
        """Return the position of ``name`` among the imports, or None."""
        try:
            return self.imports.index(name)
        except ValueError:
            return None

    def rebuild_relocs(self):
        """Undo the dump base in relocated words and point imported symbols past the image."""
        self.save_import_sym_names()
        dump_base = self.reader.dump_base
        if dump_base == 0:
            return True
        si = self.si
        if si.plt_type == DT_REL:
            with_addend = False
            tables = ((si.rel, si.rel_count), (si.plt_rel, si.plt_rel_count))
        else:
            with_addend = True
            tables = ((si.plt_rela, si.plt_rela_count), (si.plt_rel, si.plt_rel_count))
        stride = self.layout.rela_size if with_addend else self.layout.rel_size
        buf = self.reader.load_start
        for start, count in tables:
            if start is None:
                continue
            base = start + si.load_bias
            for offset in range(base, base + count * stride, stride):
                rel = self.layout.unpack_rel(buf, offset, with_addend)
                self._relocate(rel, dump_base, with_addend)
        return True

    def _relocate(self, rel, dump_base, with_addend):
        layout = self.layout
        buf = self.reader.load_start
        target = rel.offset + self.si.load_bias
        if rel.type in (R_386_RELATIVE, R_ARM_RELATIVE):
            layout.write_addr(buf, target, layout.read_addr(buf, target) - dump_base)
        elif rel.type in (_R_GLOB_DAT, _R_JUMP_SLOT):
            self._bind_symbol(rel, target)
        if with_addend and rel.type == _R_RELATIVE_ADDEND:
            layout.write_addr(buf, target, rel.addend)

    def _bind_symbol(self, rel, target):
        layout = self.layout
        buf = self.reader.load_start
        symbol = self._symbol(rel.sym)
        if symbol.value != 0:
            layout.write_addr(buf, target, symbol.value)
            return
        load_size = self.si.max_load - self.si.min_load
        if not self.imports:
            layout.write_addr(buf, target, load_size + self.external_pointer)
            self.external_pointer = (self.external_pointer + layout.addr_size) & 0xFFFFFFFF
            return
        position = self.index_of_import(self._string(symbol.name))
        if position is not None:
            layout.write_addr(buf, target, load_size + position * layout.addr_size)

    def _image(self, load_size):
        buf = self.reader.load_start
        start = self.si.load_bias
        image = bytearray(load_size)
        source_start = max(start, 0)
        chunk = buf[source_start:start + load_size]
        destination = source_start - start
        image[destination:destination + len(chunk)] = chunk
        return image

    def rebuild_fin(self):
        """Assemble image, .shstrtab and section headers, and patch the ELF header."""
        if self.si is None or self.sections is None:
            raise ElfError("section headers have not been built")
        layout = self.layout
        load_size = self.si.max_load - self.si.min_load
        names = bytes(self.sections.names)
        shdr_off = load_size + len(names)
        data = self._image(load_size) + names + self.sections.pack(layout)
        ehdr = replace(
            self.reader.header,
            type=ET_DYN,
            machine=layout.machine,
            shnum=len(self.sections.headers),
            shoff=shdr_off,
            shstrndx=self.sections.shstrndx,
        )
        data[:layout.ehdr_size] = layout.pack_ehdr(ehdr)
        self.rebuild_data = bytes(data)
        log.debug("rebuilt image of %d bytes", len(self.rebuild_data))
        return self.rebuild_data