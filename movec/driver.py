#!/usr/bin/env python3
# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
movec driver: pipeline entry points and the command-line interface.

Pipeline per function:
  validate_cfg → (fallback on errors) → LastUseAnalysis → MoveDecisionLayer
Nested functions go through the same pipeline on their own bodies.

The type model is built once per program before any function is analysed and
is shared read-only, so `analyze_program(..., jobs=N)` can fan functions out to
a thread pool without further synchronisation.

CLI:
  movec [--json] [--emit-ir PATH] [--assign-order ORDER] [--last-use-mode MODE]
        [--inline-forwarding] [--jobs N] [--trace] FILE...
Exit code 0 on success, 1 when any error diagnostic was produced. With `--json`
a single payload `{"exit_code", "diagnostics", "functions"}` goes to stdout;
otherwise plans go to stdout and diagnostics to stderr.
"""

from __future__ import annotations

import argparse
import json
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from movec.analysis.decisions import FunctionPlan, MoveDecisionLayer
from movec.analysis.last_use import LastUseAnalysis
from movec.cfg.nodes import FunctionCFG, UseKind
from movec.cfg.validate import validate_cfg
from movec.codegen.drop_flags import lower_program
from movec.config import AnalysisConfig, AssignOrder, LastUseMode
from movec.core.diagnostics import Diagnostic, has_errors
from movec.core.types_core import TypeTable
from movec.parser import parse_mvir_files
from movec.type_model import TypeModel


@dataclass
class ProgramResult:
	"""Plans for every top-level function plus all diagnostics, flattened."""

	type_model: TypeModel
	functions: List[FunctionCFG]
	plans: List[FunctionPlan]
	diagnostics: List[Diagnostic] = field(default_factory=list)

	@property
	def ok(self) -> bool:
		return not has_errors(self.diagnostics)


def _violating_bindings(fn: FunctionCFG, type_model: TypeModel) -> List[Diagnostic]:
	out: List[Diagnostic] = []
	for name in sorted(fn.bindings):
		binding = fn.bindings[name]
		if binding.type_id in type_model.table and type_model.is_violating(binding.type_id):
			out.append(
				Diagnostic(
					message=(
						f"'{fn.name}' excluded from move optimisation: '{name}' has type "
						f"'{type_model.type_name(binding.type_id)}' with invalid move operations"
					),
					code="W_FN_EXCLUDED",
					phase="moves",
					severity="warning",
					span=binding.span,
				)
			)
	for site in fn.all_sites():
		ty = site.temp_type
		if ty is not None and ty in type_model.table and type_model.is_violating(ty):
			out.append(
				Diagnostic(
					message=(
						f"'{fn.name}' excluded from move optimisation: temporary of type "
						f"'{type_model.type_name(ty)}' has invalid move operations"
					),
					code="W_FN_EXCLUDED",
					phase="moves",
					severity="warning",
					span=site.span,
				)
			)
	return out


def analyze_function(
	fn: FunctionCFG,
	type_model: TypeModel,
	config: Optional[AnalysisConfig] = None,
	*,
	layer: Optional[MoveDecisionLayer] = None,
) -> FunctionPlan:
	"""
	Run the per-function pipeline.

	A malformed CFG, a binding or temporary of violating type, or a
	use-after-move excludes the function: it gets the copy-everywhere,
	always-destroy fallback plan and the diagnostics explaining why.
	"""
	config = config or AnalysisConfig()
	layer = layer or MoveDecisionLayer(type_model, config)
	diags = validate_cfg(fn, type_model)
	if not has_errors(diags):
		diags.extend(_violating_bindings(fn, type_model))

	if has_errors(diags) or any(d.code == "W_FN_EXCLUDED" for d in diags):
		plan = layer.fallback(fn, diags)
	else:
		facts = LastUseAnalysis(type_model, config.last_use_mode).analyze(fn)
		plan = layer.plan(fn, facts)
		plan.diagnostics = diags + plan.diagnostics

	plan.nested = [analyze_function(inner, type_model, config, layer=layer) for inner in fn.nested]
	return plan


def _flatten_diagnostics(plan: FunctionPlan) -> List[Diagnostic]:
	out = list(plan.diagnostics)
	for inner in plan.nested:
		out.extend(_flatten_diagnostics(inner))
	return out


def analyze_program(
	table: TypeTable,
	functions: Sequence[FunctionCFG],
	config: Optional[AnalysisConfig] = None,
	*,
	jobs: int = 1,
) -> ProgramResult:
	"""Build the type model, then analyse every function (in parallel when jobs > 1)."""
	config = config or AnalysisConfig()
	type_model = TypeModel.build(table)
	layer = MoveDecisionLayer(type_model, config)
	fns = list(functions)
	if jobs > 1 and len(fns) > 1:
		with ThreadPoolExecutor(max_workers=jobs) as pool:
			plans = list(pool.map(lambda fn: analyze_function(fn, type_model, config, layer=layer), fns))
	else:
		plans = [analyze_function(fn, type_model, config, layer=layer) for fn in fns]
	diagnostics = list(type_model.diagnostics)
	for plan in plans:
		diagnostics.extend(_flatten_diagnostics(plan))
	return ProgramResult(type_model=type_model, functions=fns, plans=plans, diagnostics=diagnostics)


# ---------------------------------------------------------------------------
# Rendering


def _diag_to_json(diag: Diagnostic, phase: str, source: Optional[Path]) -> dict:
	"""Render a Diagnostic to a structured JSON-friendly dict."""
	line = getattr(diag.span, "line", None) if diag.span is not None else None
	column = getattr(diag.span, "column", None) if diag.span is not None else None
	file = None
	if diag.span is not None:
		file = getattr(diag.span, "file", None)
	if file is None and source is not None:
		file = str(source)
	phase = getattr(diag, "phase", None) or phase
	notes = list(getattr(diag, "notes", []) or [])
	return {
		"phase": phase,
		"code": diag.code,
		"message": diag.message,
		"severity": diag.severity,
		"file": file,
		"line": line,
		"column": column,
		"notes": notes,
	}


def plan_to_json(fn: FunctionCFG, plan: FunctionPlan) -> dict:
	"""Structured form of a FunctionPlan (the code generator's view)."""
	sites = {s.id: s for s in fn.all_sites()}
	decisions = []
	for sid in sorted(plan.decisions):
		d = plan.decisions[sid]
		decisions.append(
			{
				"site": sid,
				"at": sites[sid].describe() if sid in sites else None,
				"decision": d.kind.name.lower(),
				"transfers_ownership": d.transfers_ownership,
				"reason": d.reason,
			}
		)
	destruction = []
	flags = []
	for place in sorted(plan.destruction, key=str):
		dp = plan.destruction[place]
		destruction.append(
			{
				"place": str(place),
				"kind": dp.kind.name.lower(),
				"flag": dp.flag.name if dp.flag is not None else None,
				"partial": dp.partial,
				"reason": dp.reason,
			}
		)
		if dp.flag is not None:
			flags.append(
				{
					"name": dp.flag.name,
					"decl_site": dp.flag.decl_site,
					"clear": [{"site": p.site, "before_call": p.before_call} for p in dp.flag.clear_points],
					"set": [{"site": p.site} for p in dp.flag.set_points],
				}
			)
	assigns = []
	for sid in sorted(plan.assigns):
		a = plan.assigns[sid]
		assigns.append(
			{
				"site": sid,
				"dest": ".".join((a.dest,) + a.path),
				"order": a.order.value,
				"dest_state": a.dest_state.name.lower(),
				"dispose": a.dispose.name.lower(),
				"flag": a.flag,
				"source_site": a.source_site,
			}
		)
	return {
		"function": plan.name,
		"excluded": plan.excluded,
		"decisions": decisions,
		"destruction": destruction,
		"flags": flags,
		"assigns": assigns,
		"nested": [plan_to_json(inner, p) for inner, p in zip(fn.nested, plan.nested)],
	}


def render_plan(fn: FunctionCFG, plan: FunctionPlan, indent: str = "") -> List[str]:
	"""Human-readable plan listing."""
	sites = {s.id: s for s in fn.all_sites()}
	head = f"{indent}fn {plan.name}" + (" (excluded)" if plan.excluded else "") + ":"
	lines = [head]
	for sid in sorted(plan.decisions):
		d = plan.decisions[sid]
		if sid not in sites or sites[sid].kind is not UseKind.MOVE_OUT:
			continue
		xfer = ", transfers" if d.transfers_ownership else ""
		lines.append(f"{indent}  {sites[sid].describe()}: {d.kind.name.lower()} ({d.reason}{xfer})")
	for place in sorted(plan.destruction, key=str):
		dp = plan.destruction[place]
		extra = f" flag {dp.flag.name}" if dp.flag is not None else ""
		partial = " partial" if dp.partial else ""
		lines.append(f"{indent}  {place}: {dp.kind.name.lower()}{extra}{partial} ({dp.reason})")
	for sid in sorted(plan.assigns):
		a = plan.assigns[sid]
		dest = ".".join((a.dest,) + a.path)
		lines.append(
			f"{indent}  assign {dest} @site {sid}: {a.order.value}, dest {a.dest_state.name.lower()}, "
			f"dispose {a.dispose.name.lower()}"
		)
	for inner, p in zip(fn.nested, plan.nested):
		lines.extend(render_plan(inner, p, indent + "  "))
	return lines


def _trace(fn: FunctionCFG, plan: FunctionPlan) -> str:
	moves = sum(1 for d in plan.decisions.values() if d.transfers_ownership)
	last = sum(1 for v in plan.facts.last_use.values() if v) if plan.facts is not None else 0
	return (
		f"[movec] {plan.name}: blocks={len(fn.blocks)} sites={len(plan.decisions)} "
		f"last_use={last} moves={moves} flags={len(plan.flags)} excluded={plan.excluded}"
	)


# ---------------------------------------------------------------------------
# CLI


def main(argv: list[str] | None = None) -> int:
	"""
	Parse `.mvir` files, analyse every function and report plans/diagnostics.
	"""
	parser = argparse.ArgumentParser(description="movec: last-use move/copy decision engine")
	parser.add_argument("source", type=Path, nargs="+", help="Path(s) to .mvir file(s)")
	parser.add_argument("--json", action="store_true", help="Emit plans and diagnostics as JSON on stdout")
	parser.add_argument("--emit-ir", type=Path, help="Write LLVM IR with lowered drop flags to the given path")
	parser.add_argument(
		"--assign-order",
		choices=[o.value for o in AssignOrder],
		default=AssignOrder.DESTROY_THEN_CONSTRUCT.value,
		help="Lowering of assignments into a live destination",
	)
	parser.add_argument(
		"--last-use-mode",
		choices=[m.value for m in LastUseMode],
		default=LastUseMode.FIXPOINT.value,
		help="Precision of the last-use analysis",
	)
	parser.add_argument(
		"--inline-forwarding",
		action="store_true",
		help="Let consumers of forwarded references move at the original binding's last use",
	)
	parser.add_argument("--jobs", type=int, default=1, help="Analyse functions on N worker threads")
	parser.add_argument("--trace", action="store_true", help="Print per-function analysis summaries to stderr")
	args = parser.parse_args(argv)

	config = AnalysisConfig(
		last_use_mode=LastUseMode(args.last_use_mode),
		assign_order=AssignOrder(args.assign_order),
		inline_forwarding=args.inline_forwarding,
	)
	source_path: Optional[Path] = args.source[0] if len(args.source) == 1 else None

	missing = [p for p in args.source if not p.is_file()]
	if missing:
		diags = [
			Diagnostic(message=f"cannot read '{p}'", code="E_NO_FILE", phase="parser", severity="error")
			for p in missing
		]
		_report(args, diags, [], [], source_path)
		return 1

	parsed = parse_mvir_files(list(args.source))
	if has_errors(parsed.diagnostics):
		_report(args, parsed.diagnostics, [], [], source_path)
		return 1

	result = analyze_program(parsed.table, parsed.functions, config, jobs=max(1, args.jobs))
	diagnostics = parsed.diagnostics + result.diagnostics
	if args.trace:
		for fn, plan in zip(result.functions, result.plans):
			print(_trace(fn, plan), file=sys.stderr)

	exit_code = 1 if has_errors(diagnostics) else 0
	if exit_code == 0 and args.emit_ir is not None:
		module = lower_program(result.type_model, result.functions, result.plans, name=args.source[0].stem)
		args.emit_ir.write_text(str(module))
	_report(args, diagnostics, result.functions, result.plans, source_path)
	return exit_code


def _report(
	args: argparse.Namespace,
	diagnostics: List[Diagnostic],
	functions: List[FunctionCFG],
	plans: List[FunctionPlan],
	source_path: Optional[Path],
) -> None:
	exit_code = 1 if has_errors(diagnostics) else 0
	if args.json:
		payload: Dict[str, object] = {
			"exit_code": exit_code,
			"diagnostics": [_diag_to_json(d, "moves", source_path) for d in diagnostics],
			"functions": [plan_to_json(fn, plan) for fn, plan in zip(functions, plans)],
		}
		print(json.dumps(payload))
		return
	for fn, plan in zip(functions, plans):
		print("\n".join(render_plan(fn, plan)))
	for d in diagnostics:
		print(d.render(), file=sys.stderr)


__all__ = ["ProgramResult", "analyze_function", "analyze_program", "main", "plan_to_json", "render_plan"]


if __name__ == "__main__":
	sys.exit(main())
