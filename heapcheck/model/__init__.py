# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Program model: syntax nodes (`nodes`) and resolved entities (`scopes`).

Callers usually `from heapcheck import model as M` and build programs with
`M.FunctionDecl`, `M.Let`, `M.Var`, ...
"""

from heapcheck.model.nodes import *  # noqa: F401,F403
from heapcheck.model.nodes import __all__ as _nodes_all
from heapcheck.model.scopes import EscapeFact, Placement, Scope, ScopeKind, Variable, VarKind

__all__ = list(_nodes_all) + ["EscapeFact", "Placement", "Scope", "ScopeKind", "Variable", "VarKind"]
