"""Command line entry point: rebuild a shared object dumped from memory."""

import argparse
import logging
import string
import sys

from sofixer.elf import ElfError
from sofixer.obelfreader import ObElfReader
from sofixer.rebuilder import ElfRebuilder

log = logging.getLogger(__name__)

_VERSION = "v2.1"
_WHITESPACE = " \t\n\v\f\r"
_ULONG_MASK = 0xFFFFFFFFFFFFFFFF
_ADDR32_MASK = 0xFFFFFFFF


class _UsageError(Exception):
    """Raised when the command line cannot be parsed."""


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        raise _UsageError(message)


def _looks_hex(text):
    if len(text) > 2 and text[0] == "0" and text[1] == "x":
        return True
    return any("a" < c < "f" or "A" < c < "F" for c in text)


def _parse_unsigned(text, base):
    """Parse a leading unsigned number the way strtoul does; 0 when there is none."""
    rest = text.lstrip(_WHITESPACE)
    negative = False
    if rest[:1] in ("+", "-"):
        negative = rest[0] == "-"
        rest = rest[1:]
    valid = string.hexdigits if base == 16 else string.digits
    if base == 16 and rest[:2].lower() == "0x" and rest[2:3] and rest[2] in valid:
        rest = rest[2:]
    digits = []
    for char in rest:
        if char not in valid:
            break
        digits.append(char)
    value = int("".join(digits), base) if digits else 0
    if negative:
        value = -value & _ULONG_MASK
    return value


def parse_base_address(text):
    """Parse a dump base address, read as hex when it looks like hex, else decimal."""
    return _parse_unsigned(text, 16 if _looks_hex(text) else 10)


def usage(is64=False):
    """Return the usage text."""
    target = "SoFixer64" if is64 else "SoFixer32"
    lines = [
        f"{target}{_VERSION}",
        "Useage: SoFixer <option(s)> -s sourcefile -o generatefile",
        " try rebuild shdr with phdr",
        " Options are:",
        "  -d --debug                                 Show debug info",
        "  -m --memso memBaseAddr(16bit format)       the memory address x which the source so is dump from",
        "  -s --source sourceFilePath                 Source file path",
        "  -b --baseso baseFilePath                   Original so file path.(used to get base information)(experimental)",
        "  -o --output generateFilePath               Generate file path",
        "     --so64                                  Treat the source as a 64-bit shared object",
        "  -h --help                                  Display this information",
    ]
    return "\n".join(lines)


def _build_parser():
    parser = _Parser(prog="sofixer", add_help=False)
    parser.add_argument("-h", "--help", action="store_true")
    parser.add_argument("-d", "--debug", action="store_true")
    parser.add_argument("-m", "--memso")
    parser.add_argument("-s", "--source", default="")
    parser.add_argument("-b", "--baseso", default="")
    parser.add_argument("-o", "--output", default="")
    parser.add_argument("--so64", dest="is64", action="store_true")
    return parser


def _run(args):
    if args.help:
        return False
    if args.debug:
        log.info("Use debug mode")

    mask = _ULONG_MASK if args.is64 else _ADDR32_MASK
    dump_base = parse_base_address(args.memso) & mask if args.memso is not None else 0

    log.info("start to rebuild elf file")
    try:
        reader = ObElfReader(
            args.source, args.is64, dump_base, args.baseso or None,
        )
    except OSError:
        log.error("source so file cannot found!!!")
        return False

    try:
        try:
            reader.load()
        except ElfError as exc:
            log.error("%s", exc)
            log.error("source so file is invalid")
            return False
        try:
            data = ElfRebuilder(reader).rebuild()
        except ElfError as exc:
            log.error("%s", exc)
            log.error("error occured in rebuilding elf file")
            return False
    finally:
        reader.close()

    if args.output:
        try:
            with open(args.output, "wb") as out:
                out.write(data)
        except OSError:
            log.error("output so file cannot write !!!")
            return False
    return True


def main(argv=None):
    """Run the command; return 0 on success and 1 after printing usage on failure."""
    argv = sys.argv[1:] if argv is None else list(argv)
    parser = _build_parser()
    is64 = "--so64" in argv
    try:
        args = parser.parse_args(argv)
    except _UsageError as exc:
        log.error("%s", exc)
        ok = False
    else:
        is64 = args.is64
        if args.debug:
            logging.basicConfig(level=logging.DEBUG, format="%(message)s")
        else:
            logging.basicConfig(level=logging.INFO, format="%(message)s")
        ok = _run(args)
    if ok:
        log.info("Done!!!")
        return 0
    print(usage(is64))
    return 1


if __name__ == "__main__":
    sys.exit(main())