# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Escape facts (`analyzer`) and placement decisions (`placement`).
"""

from heapcheck.escape.analyzer import EscapeAnalysis, collect_escape_facts
from heapcheck.escape.placement import PlacementDecision, PlacementResult, analyze, decide, finalize

__all__ = [
	"EscapeAnalysis",
	"collect_escape_facts",
	"PlacementDecision",
	"PlacementResult",
	"analyze",
	"decide",
	"finalize",
]
