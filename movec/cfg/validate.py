# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Structural validation of a FunctionCFG before any analysis runs.

A malformed CFG is a front-end bug: the analysis never runs on one. Every
problem is reported (not just the first) so the front end can fix them in
one go. Codes:

  E_CFG_NO_ENTRY         entry block missing
  E_CFG_EDGE_SRC         edge stored on a block it does not start from
  E_CFG_DANGLING_JUMP    edge to a block that does not exist
  E_CFG_JUMP_TARGET      labeled jump landing on an unlabeled block
  E_CFG_UNREACHABLE_LABEL label that no path from entry reaches
  E_CFG_SITE_POSITION    site whose block/index disagree with where it is stored
  E_CFG_DUP_SITE         two sites share an id
  E_CFG_UNKNOWN_BINDING  site naming a binding the function does not declare
  E_CFG_TEMP_SITE        temporary site that is not a typed move-out
  E_CFG_MISSING_TARGET   move-out site without a destination
  E_CFG_REGION           binding region naming unknown blocks / DECL outside region
  E_CFG_PARAM            parameter list or forwarding index inconsistent
  E_CFG_UNKNOWN_CAPTURE  nested function capturing an unknown binding
  E_CFG_UNKNOWN_TYPE     binding or temporary with a type the model does not know
  E_CFG_BAD_PATH         field path that does not resolve against the binding type
"""

from __future__ import annotations

from typing import List, Optional, Set

from movec.core.diagnostics import Diagnostic
from movec.core.span import Span
from movec.cfg.nodes import EdgeKind, FunctionCFG, PassMode, UseKind
from movec.type_model import TypeModel


def _err(out: List[Diagnostic], code: str, message: str, span: Span | None = None) -> None:
	out.append(Diagnostic(message=message, code=code, phase="cfg", severity="error", span=span or Span()))


def validate_cfg(fn: FunctionCFG, type_model: Optional[TypeModel] = None) -> List[Diagnostic]:
	"""Return all structural problems in `fn` (empty list when well-formed)."""
	diags: List[Diagnostic] = []
	where = f"in '{fn.name}'"

	if fn.entry not in fn.blocks:
		_err(diags, "E_CFG_NO_ENTRY", f"entry block bb{fn.entry} does not exist {where}", fn.span)
		return diags

	for bid in sorted(fn.blocks):
		blk = fn.blocks[bid]
		for e in blk.edges:
			if e.src != bid:
				_err(diags, "E_CFG_EDGE_SRC", f"edge bb{e.src}->bb{e.dst} stored on bb{bid} {where}", blk.span)
			if e.dst not in fn.blocks:
				what = f"jump to unknown label '{e.label}'" if e.label else f"edge to missing block bb{e.dst}"
				_err(diags, "E_CFG_DANGLING_JUMP", f"{what} from bb{bid} {where}", blk.span)
				continue
			if e.kind is EdgeKind.JUMP and fn.blocks[e.dst].label is None:
				_err(diags, "E_CFG_JUMP_TARGET", f"jump from bb{bid} targets unlabeled bb{e.dst} {where}", blk.span)

	reachable = fn.reachable()
	for bid in sorted(fn.blocks):
		blk = fn.blocks[bid]
		if blk.label is not None and bid not in reachable:
			_err(diags, "E_CFG_UNREACHABLE_LABEL", f"label '{blk.label}' is unreachable {where}", blk.span)

	seen_ids: Set[int] = set()
	for bid in sorted(fn.blocks):
		for idx, site in enumerate(fn.blocks[bid].sites):
			if site.block != bid or site.index != idx:
				_err(
					diags,
					"E_CFG_SITE_POSITION",
					f"site {site.id} claims bb{site.block}[{site.index}] but is stored at bb{bid}[{idx}] {where}",
					site.span,
				)
			if site.id in seen_ids:
				_err(diags, "E_CFG_DUP_SITE", f"duplicate site id {site.id} {where}", site.span)
			seen_ids.add(site.id)
			if site.binding is None:
				if site.kind is not UseKind.MOVE_OUT or site.temp_type is None:
					_err(diags, "E_CFG_TEMP_SITE", f"temporary site {site.id} must be a typed move-out {where}", site.span)
				elif type_model is not None and site.temp_type not in type_model.table:
					_err(diags, "E_CFG_UNKNOWN_TYPE", f"temporary site {site.id} has unknown type {site.temp_type} {where}", site.span)
			elif site.binding not in fn.bindings:
				_err(diags, "E_CFG_UNKNOWN_BINDING", f"site {site.id} uses undeclared '{site.binding}' {where}", site.span)
			if site.kind is UseKind.MOVE_OUT and site.target is None:
				_err(diags, "E_CFG_MISSING_TARGET", f"move-out site {site.id} has no target {where}", site.span)

	for binding in fn.bindings.values():
		if binding.region is not None:
			unknown = sorted(b for b in binding.region if b not in fn.blocks)
			if unknown:
				_err(diags, "E_CFG_REGION", f"region of '{binding.name}' names unknown blocks {unknown} {where}", binding.span)
			for site in fn.sites_of(binding.name):
				if site.kind is UseKind.DECL and site.block not in binding.region:
					_err(diags, "E_CFG_REGION", f"'{binding.name}' declared outside its own region {where}", site.span)
		if type_model is not None:
			if binding.type_id not in type_model.table:
				_err(diags, "E_CFG_UNKNOWN_TYPE", f"'{binding.name}' has unknown type {binding.type_id} {where}", binding.span)
				continue
			for site in fn.sites_of(binding.name):
				if not site.path:
					continue
				try:
					type_model.resolve_path(binding.type_id, site.path)
				except KeyError as exc:
					_err(diags, "E_CFG_BAD_PATH", f"{exc.args[0]} (site {site.id}) {where}", site.span)

	for pname in fn.params:
		binding = fn.bindings.get(pname)
		if binding is None or not binding.is_param:
			_err(diags, "E_CFG_PARAM", f"parameter '{pname}' is not a declared parameter binding {where}", fn.span)
	for idx in sorted(fn.forwards):
		if idx >= len(fn.params):
			_err(diags, "E_CFG_PARAM", f"forwarded parameter index {idx} out of range {where}", fn.span)
			continue
		binding = fn.bindings.get(fn.params[idx])
		if binding is not None and binding.param_mode is not PassMode.MOVE_REF:
			_err(diags, "E_CFG_PARAM", f"forwarded parameter '{binding.name}' is not a move reference {where}", fn.span)

	for inner in fn.nested:
		for cname in inner.captures:
			if cname not in fn.bindings:
				_err(
					diags,
					"E_CFG_UNKNOWN_CAPTURE",
					f"nested function '{inner.name}' captures unknown '{cname}' {where}",
					inner.span,
				)

	return diags


__all__ = ["validate_cfg"]
