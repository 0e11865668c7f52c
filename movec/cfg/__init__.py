# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
CFG model: nodes, structured builder, validation and dominators.
"""

from movec.cfg.nodes import (
	ACCESS_KINDS,
	BasicBlock,
	Binding,
	Edge,
	EdgeKind,
	FunctionCFG,
	MoveTarget,
	PassMode,
	TargetKind,
	UseKind,
	UseSite,
)
from movec.cfg.builder import CfgBuilder, LoopHandle, Temp, assign_to, call_arg, return_slot
from movec.cfg.validate import validate_cfg
from movec.cfg.dom import DominatorAnalysis, DominatorInfo

__all__ = [
	"ACCESS_KINDS",
	"BasicBlock",
	"Binding",
	"CfgBuilder",
	"DominatorAnalysis",
	"DominatorInfo",
	"Edge",
	"EdgeKind",
	"FunctionCFG",
	"LoopHandle",
	"MoveTarget",
	"PassMode",
	"TargetKind",
	"Temp",
	"UseKind",
	"UseSite",
	"assign_to",
	"call_arg",
	"return_slot",
	"validate_cfg",
]
