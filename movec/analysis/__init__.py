# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Per-function analyses: last use, move state, ownership and the decision layer.
"""

from movec.analysis.last_use import FieldMoveBlock, LastUseAnalysis, LastUseFacts, SuppressReason
from movec.analysis.move_state import MoveState, MoveStateAnalysis, Place, ScopeExit
from movec.analysis.ownership import BindingOwnership, binding_ownership, pass_decision
from movec.analysis.decisions import (
	AssignPlan,
	DestroyKind,
	DestructionPlan,
	DropFlag,
	FlagPoint,
	FunctionPlan,
	MoveDecisionLayer,
	UseDecision,
	UseDecisionKind,
)

__all__ = [
	"AssignPlan",
	"BindingOwnership",
	"DestroyKind",
	"DestructionPlan",
	"DropFlag",
	"FieldMoveBlock",
	"FlagPoint",
	"FunctionPlan",
	"LastUseAnalysis",
	"LastUseFacts",
	"MoveDecisionLayer",
	"MoveState",
	"MoveStateAnalysis",
	"Place",
	"ScopeExit",
	"SuppressReason",
	"UseDecision",
	"UseDecisionKind",
	"binding_ownership",
	"pass_decision",
]
