# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Consumers of FunctionPlans that produce code (LLVM IR via llvmlite).
"""

from movec.codegen.drop_flags import DropFlagLowering, lower_program

__all__ = ["DropFlagLowering", "lower_program"]
