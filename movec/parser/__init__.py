# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
`.mvir` front end: the in-repo stand-in for a real language front end.
"""

from movec.parser.parser import ParsedProgram, parse_mvir, parse_mvir_files

__all__ = ["ParsedProgram", "parse_mvir", "parse_mvir_files"]
