# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
movec: last-use analysis and move/copy decision engine.

Pipeline:
  front end (or .mvir parser) → CFG + TypeModel → validation → last-use facts
  → move/copy decisions + destruction plans → code generator

The CLI entrypoint is `movec.driver:main`.
"""

__all__ = ["analysis", "cfg", "codegen", "config", "core", "driver", "parser", "test_support", "type_model"]
