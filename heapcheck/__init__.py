# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
heapcheck: escape-and-placement analysis for a small program model.

Stages:
  model:    program model (syntax nodes) + resolved scopes/variables
  stage1:   scope & capture resolution
  escape:   escape facts + placement decisions
  simulate: loop-variable sharing replay
  report:   diagnostics formatting

The public entry points are `analyze` and `simulate_iterations`.
"""

from heapcheck.escape.placement import PlacementResult, analyze
from heapcheck.simulate.iteration import ObservationTrace, simulate_iterations

__all__ = ["analyze", "simulate_iterations", "PlacementResult", "ObservationTrace"]
