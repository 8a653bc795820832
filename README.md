# sofixer

`sofixer` repairs ELF shared objects (`.so` files) that were dumped from the
memory of a running process. In a dump like this the file layout has been
replaced by the memory layout, and there are usually no section headers.
`sofixer` does the following:

- it loads the segments of the dump into a flat image, using the program
  headers,
- it corrects the program headers so that each file offset equals its virtual
  address and each file size equals its memory size,
- it reads the dynamic section and builds section headers from it
  (`.dynsym`, `.dynstr`, `.hash`, `.rel.dyn`, `.rela.dyn`, `.rel.plt` or
  `.rela.plt`, `.plt`, `.text&ARM.extab`, `.ARM.exidx`, `.fini_array`,
  `.init_array`, `.dynamic`, `.data`, `.shstrtab`),
- it rebases relocated words against the dump address, if you give one,
- it writes out a file with a new `.shstrtab` and section header table behind
  the image. The ELF header is marked as a shared object, with the machine set
  to ARM for 32-bit files and AArch64 for 64-bit files.

It reads little-endian ELF files, 32-bit by default or 64-bit on request. It
needs nothing outside the Python standard library.

## Installation

```
pip install .
```

## Command line

```
sofixer -s dumped.so -o fixed.so
sofixer --so64 -s dumped64.so -m 0x7f000000 -o fixed64.so
```

| Option | Meaning |
| --- | --- |
| `-s`, `--source PATH` | the dumped shared object to repair |
| `-o`, `--output PATH` | where to write the rebuilt file; without it nothing is written |
| `-m`, `--memso ADDR` | the memory address the dump was taken from |
| `-b`, `--baseso PATH` | the original `.so` file, used to recover the dynamic section when the dump has none inside its loadable segments (experimental) |
| `--so64` | treat the source as a 64-bit shared object |
| `-d`, `--debug` | show debug output |
| `-h`, `--help` | show usage |

The value of `-m` is read as hexadecimal when it starts with `0x` or contains
one of the letters `b` to `e`; otherwise it is read as decimal. Write it with
`0x` to be sure.

When `-m` is given:

- the loadable segments are stretched so that each one reaches the next, and
  the last one reaches the end of the dump,
- relative relocations (`R_ARM_RELATIVE`, `R_386_RELATIVE`) have the dump
  address subtracted,
- relocations of types `0x401` and `0x402` get the symbol's value, or, for an
  imported symbol, an address in a slot just past the image,
- relocations of type `0x403` in RELA tables get their addend.

The command exits with 0 on success. On failure it logs the reason, prints
the usage text and exits with 1; `-h` also prints the usage text and exits
with 1.

## Library use

```python
from sofixer.obelfreader import ObElfReader
from sofixer.rebuilder import ElfRebuilder

reader = ObElfReader("dumped.so", is64=True, dump_base=0x7F000000, base_so=None)
try:
    reader.load()
    data = ElfRebuilder(reader).rebuild()
finally:
    reader.close()

with open("fixed.so", "wb") as out:
    out.write(data)
```

`ElfRebuilder.rebuild()` returns the bytes of the rebuilt file and also keeps
them in `rebuild_data`.

The other modules can be used on their own:

- `sofixer.elf`: ELF constants, header dataclasses and `ElfLayout`, which
  packs and unpacks records for 32- or 64-bit files,
- `sofixer.elfreader.ElfReader`: loads the segments of an ordinary ELF file
  into a zero-filled image,
- `sofixer.soinfo.read_so_info`: collects what the dynamic section of a
  loaded image describes into a `SoInfo`,
- `sofixer.sections.build_section_headers`: builds a `SectionTable` from a
  `SoInfo`,
- `sofixer.phdr`: queries over a program header table.

Malformed or unusable input raises `sofixer.elf.ElfError`. A source file that
cannot be opened raises `OSError` when the reader is created.

## Limitations

- Big-endian ELF files are rejected.
- No `.symtab`, `.got` or `.bss` section headers are made; what lies after the
  last table described by the dynamic section is covered by one `.data`
  section.
- Imported symbols are not resolved against other libraries; they are only
  pointed at slots past the end of the image.