# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Ownership-transfer protocol across function boundaries.

Passing conventions (`PassMode`):
  VALUE      full value construction (move or copy)
  MOVE_REF   reference to an owned value; the receiver takes ownership
  PLAIN_REF  non-owning reference; never a transfer

A move-ref parameter a function hands back as its return value is *forwarded*:
the caller passes it as a move reference but keeps the destruction obligation,
and inside the callee the parameter is borrowed.

This module answers two questions and nothing else:
  - who owns a binding inside a given function (`binding_ownership`);
  - which passing decision a move-out site gets once the move/copy question is
    settled (`pass_decision`).
"""

from __future__ import annotations

from enum import Enum, auto
from typing import Optional, Tuple

from movec.cfg.nodes import Binding, FunctionCFG, MoveTarget, PassMode, TargetKind


class BindingOwnership(Enum):
	OWNED = auto()     # destroyed by this function unless moved out
	BORROWED = auto()  # plain-ref param or forwarded move-ref param
	CAPTURED = auto()  # belongs to the enclosing function


class PassKind(Enum):
	"""Passing decision at a boundary, before it is mapped to a UseDecision."""

	MOVE = auto()
	COPY = auto()
	PLAIN_REF = auto()
	MOVE_REF = auto()


def is_forwarded_param(fn: FunctionCFG, name: str) -> bool:
	try:
		idx = fn.params.index(name)
	except ValueError:
		return False
	return idx in fn.forwards


def binding_ownership(fn: FunctionCFG, binding: Binding) -> BindingOwnership:
	if binding.name in fn.captures:
		return BindingOwnership.CAPTURED
	if binding.is_param:
		if binding.param_mode is PassMode.PLAIN_REF:
			return BindingOwnership.BORROWED
		if binding.param_mode is PassMode.MOVE_REF and is_forwarded_param(fn, binding.name):
			return BindingOwnership.BORROWED
	return BindingOwnership.OWNED


def returns_forwarded_ref(fn: FunctionCFG, binding: Optional[Binding], path: Tuple[str, ...], target: MoveTarget) -> bool:
	"""`return p` where `p` is a forwarded move-ref parameter returned by move reference."""
	return (
		binding is not None
		and not path
		and target.kind is TargetKind.RETURN
		and target.mode is PassMode.MOVE_REF
		and is_forwarded_param(fn, binding.name)
	)


def pass_decision(target: MoveTarget, can_move: bool) -> Tuple[PassKind, bool]:
	"""
	Passing decision and ownership-transfer bit for a move-out into `target`.

	`can_move` is the verdict of the move/copy rules (temporary, last use,
	explicit move) for the source. A forwarding parameter never transfers; a
	move-ref parameter whose source cannot move receives a copy (a temporary
	that is then passed by move reference).
	"""
	if target.mode is PassMode.PLAIN_REF:
		return PassKind.PLAIN_REF, False
	if target.kind is TargetKind.CALL_ARG and target.forwarding:
		return PassKind.MOVE_REF, False
	if target.mode is PassMode.MOVE_REF:
		return (PassKind.MOVE_REF, True) if can_move else (PassKind.COPY, False)
	return (PassKind.MOVE, True) if can_move else (PassKind.COPY, False)


__all__ = [
	"BindingOwnership",
	"PassKind",
	"binding_ownership",
	"is_forwarded_param",
	"pass_decision",
	"returns_forwarded_ref",
]
