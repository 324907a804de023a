# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Stage 1: scope & capture resolution over the program model.
"""

from heapcheck.stage1.closures import Capture, CaptureKind, sort_captures
from heapcheck.stage1.resolver import Callee, FunctionInfo, IterationContext, Resolution, resolve

__all__ = [
	"Capture",
	"CaptureKind",
	"sort_captures",
	"Callee",
	"FunctionInfo",
	"IterationContext",
	"Resolution",
	"resolve",
]
