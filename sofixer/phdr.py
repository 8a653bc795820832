"""Queries over a program header table."""

from sofixer.elf import PT_ARM_EXIDX, PT_DYNAMIC, PT_LOAD, page_end, page_start

_MASK32 = 0xFFFFFFFF
_MASK64 = 0xFFFFFFFFFFFFFFFF


def phdr_table_get_load_size(phdrs, is64):
    """Return ``(size, min_vaddr, max_vaddr)`` of the page-aligned extent of PT_LOAD segments.

    All three are 0 when there are no loadable segments.
    """
    mask = _MASK64 if is64 else _MASK32
    min_vaddr = mask
    max_vaddr = 0
    found = False
    for phdr in phdrs:
        if phdr.type != PT_LOAD:
            continue
        found = True
        min_vaddr = min(min_vaddr, phdr.vaddr)
        max_vaddr = max(max_vaddr, (phdr.vaddr + phdr.memsz) & mask)
    if not found:
        min_vaddr = 0
    min_vaddr = page_start(min_vaddr) & mask
    max_vaddr = page_end(max_vaddr) & mask
    return (max_vaddr - min_vaddr) & mask, min_vaddr, max_vaddr


def phdr_table_get_arm_exidx(phdrs, layout):
    """Return ``(vaddr, entry_count)`` of the first PT_ARM_EXIDX segment, or None."""
    for phdr in phdrs:
        if phdr.type == PT_ARM_EXIDX:
            return phdr.vaddr, phdr.memsz // layout.addr_size
    return None


def phdr_table_get_dynamic_section(phdrs, layout):
    """Return ``(vaddr, entry_count, flags)`` of the first PT_DYNAMIC segment, or None."""
    for phdr in phdrs:
        if phdr.type == PT_DYNAMIC:
            return phdr.vaddr, phdr.memsz // layout.dyn_size, phdr.flags
    return None