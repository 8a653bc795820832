"""Rebuild section headers and fix up ELF shared objects dumped from memory."""

__version__ = "2.1.0"