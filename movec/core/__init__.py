"""
movec.core: shared primitives used across the analysis passes.

Modules:
  - span: source locations carried by sites, bindings and types
  - diagnostics: Diagnostic record shared by every pass
  - types_core: TypeId/TypeTable primitives (declarations as the front end sees them)
"""

__all__ = [
	"span",
	"diagnostics",
	"types_core",
]
