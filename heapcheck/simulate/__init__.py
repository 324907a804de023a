# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from heapcheck.simulate.iteration import (
	DEFAULT_MAX_ITERATIONS,
	LoopTrace,
	Observation,
	ObservationTrace,
	simulate_iterations,
)

__all__ = [
	"DEFAULT_MAX_ITERATIONS",
	"LoopTrace",
	"Observation",
	"ObservationTrace",
	"simulate_iterations",
]
