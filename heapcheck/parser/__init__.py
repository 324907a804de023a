# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from heapcheck.parser.parser import ParseError, TerminatorInserter, parse_file, parse_source

__all__ = ["ParseError", "TerminatorInserter", "parse_file", "parse_source"]
