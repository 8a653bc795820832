"""ELF reader for shared objects dumped from memory, whose headers may be damaged."""

import logging

from sofixer.elf import PT_DYNAMIC, PT_LOAD, ElfError
from sofixer.elfreader import ElfReader
from sofixer.phdr import phdr_table_get_load_size

log = logging.getLogger(__name__)


class ObElfReader(ElfReader):
    """Loads a memory-dumped shared object, repairing its program headers.

    ``dump_base`` is the address the object was dumped from (0 when unknown).
    ``base_so`` is an optional path to the original file, used to recover the
    dynamic section when the dump has none inside its loadable segments.
    """

    def __init__(self, path, is64=False, dump_base=0, base_so=None):
        super().__init__(path, is64)
        self.dump_base = dump_base
        self.base_so = base_so
        self.dynamic_sections = None
        self.dynamic_count = 0
        self.dynamic_flags = 0

    def fix_dump_so_phdr(self):
        """Make every segment's file image match its memory image."""
        mask = self.layout.addr_mask
        if self.dump_base != 0:
            # Some packers release the data between loadable segments, so the
            # whole dumped memory range is taken as segment data.
            loads = sorted(
                (phdr for phdr in self.phdr_table if phdr.type == PT_LOAD),
                key=lambda phdr: phdr.vaddr,
            )
            for phdr, following in zip(loads, loads[1:] + [None]):
                if following is not None:
                    phdr.memsz = (following.vaddr - phdr.vaddr) & mask
                else:
                    phdr.memsz = (self.file_size - phdr.vaddr) & mask
                phdr.filesz = phdr.memsz

        for phdr in self.phdr_table:
            phdr.paddr = phdr.vaddr
            phdr.filesz = phdr.memsz
            phdr.offset = phdr.vaddr

    def load(self):
        """Load the dump, repairing headers; raise ElfError at the first failing step."""
        self.read_elf_header()
        self.verify_elf_header()
        self.read_program_header()
        self.fix_dump_so_phdr()

        has_base_dynamic_info = False
        base_dynamic_size = 0
        if not self.have_dynamic_section_in_loadable_segment():
            self.load_dynamic_section_from_base_source()
            has_base_dynamic_info = self.dynamic_sections is not None
            if has_base_dynamic_info:
                base_dynamic_size = self.dynamic_count * self.layout.dyn_size
        else:
            log.info(
                "dynamic segment have been found in loadable segment, "
                "argument baseso will be ignored."
            )

        self.reserve_address_space(base_dynamic_size)
        self.load_segments()
        self.find_phdr()
        if has_base_dynamic_info:
            self._apply_dynamic_section()
        self.apply_phdr_table()
        return self

    def load_dynamic_section_from_base_source(self):
        """Read the dynamic section of ``base_so``; return whether one was found."""
        if self.base_so is None:
            return False
        try:
            base_reader = ElfReader(self.base_so, self.is64)
        except OSError:
            log.error("Unable to parse base so file, is it correct?")
            return False
        try:
            try:
                base_reader.read_elf_header()
                base_reader.verify_elf_header()
                base_reader.read_program_header()
            except ElfError:
                log.error("Unable to parse base so file, is it correct?")
                return False
            for phdr in base_reader.phdr_table:
                if phdr.type != PT_DYNAMIC:
                    continue
                data = base_reader.source.read(phdr.memsz, phdr.offset)
                self.dynamic_sections = bytes(data).ljust(phdr.memsz, b"\x00")
                self.dynamic_count = phdr.memsz // self.layout.dyn_size
                self.dynamic_flags = phdr.flags
                return True
            return False
        finally:
            base_reader.close()

    def _apply_dynamic_section(self):
        """Copy the recovered dynamic section behind the loaded image and point PT_DYNAMIC at it."""
        if self.dynamic_sections is None:
            return
        write_start = self.load_size
        dynamic_size = self.dynamic_count * self.layout.dyn_size
        if self.pad_size < dynamic_size:
            return
        self.load_start[write_start:write_start + dynamic_size] = (
            self.dynamic_sections[:dynamic_size]
        )
        for phdr in self.phdr_table:
            if phdr.type == PT_DYNAMIC:
                phdr.vaddr = (write_start - self.load_bias) & self.layout.addr_mask
                phdr.paddr = phdr.vaddr
                phdr.offset = phdr.vaddr
                phdr.memsz = dynamic_size
                phdr.filesz = phdr.memsz
                break

    def have_dynamic_section_in_loadable_segment(self):
        """Return whether the first PT_DYNAMIC lies strictly inside the loadable extent."""
        _, min_vaddr, max_vaddr = phdr_table_get_load_size(self.phdr_table, self.is64)
        for phdr in self.phdr_table:
            if phdr.type != PT_DYNAMIC:
                continue
            return phdr.vaddr > min_vaddr and phdr.vaddr + phdr.memsz < max_vaddr
        return False