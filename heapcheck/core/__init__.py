"""
heapcheck.core: shared spans, diagnostics and errors used across stages.

Modules:
  - span: best-effort source locations
  - diagnostics: non-fatal findings (simulator violations, notes)
  - errors: fatal analysis errors (UnresolvedReference, MalformedModel)
"""

__all__ = [
    "span",
    "diagnostics",
    "errors",
]
