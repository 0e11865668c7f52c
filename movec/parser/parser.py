# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
`.mvir` parser: lark grammar → TypeTable + FunctionCFGs.

The tree is walked by hand (no Transformer) so every node can be paired with
its span. Problems in the input that the grammar cannot express (unknown type
names, duplicate blocks, redeclared bindings, ...) are collected as
diagnostics; the caller decides whether to continue.

Conventions:
  - the first block of a function is its entry;
  - a block with no edge statement is a function exit (`ret` only documents it);
  - bindings without a `scope` line live for the whole function;
  - site ids are assigned in textual order per function, starting at 0;
  - `jump L` to an unknown label yields a dangling edge (reported by CFG
    validation, not here).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from lark import Lark, Token, Tree
from lark.exceptions import UnexpectedInput

from movec.cfg.nodes import (
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
from movec.core.diagnostics import Diagnostic
from movec.core.span import Span
from movec.core.types_core import TypeId, TypeTable, UserMoveOp

_GRAMMAR_PATH = Path(__file__).with_name("grammar.lark")
_GRAMMAR_SRC = _GRAMMAR_PATH.read_text()

_PARSER = Lark(
	_GRAMMAR_SRC,
	parser="lalr",
	start="start",
	propagate_positions=True,
	maybe_placeholders=False,
)

_PASS_MODES = {
	"value": PassMode.VALUE,
	"moveref": PassMode.MOVE_REF,
	"ref": PassMode.PLAIN_REF,
}

_EDGE_KINDS = {
	"edge_goto": EdgeKind.NORMAL,
	"edge_true": EdgeKind.TRUE,
	"edge_false": EdgeKind.FALSE,
	"edge_back": EdgeKind.BACK,
	"edge_skip": EdgeKind.SKIP,
}


@dataclass
class ParsedProgram:
	"""Result of parsing one or more `.mvir` sources into a shared type table."""

	table: TypeTable = field(default_factory=TypeTable)
	functions: List[FunctionCFG] = field(default_factory=list)
	diagnostics: List[Diagnostic] = field(default_factory=list)


def _name(node: object) -> str:
	return str(node.data) if isinstance(node, Tree) else ""


def _trees(node: Tree, data: Optional[str] = None) -> List[Tree]:
	return [c for c in node.children if isinstance(c, Tree) and (data is None or _name(c) == data)]


def _tokens(node: Tree, type_: Optional[str] = None) -> List[Token]:
	return [c for c in node.children if isinstance(c, Token) and (type_ is None or c.type == type_)]


class _ProgramBuilder:
	def __init__(self, program: ParsedProgram, path: Optional[str]) -> None:
		self.program = program
		self.table = program.table
		self.path = path
		if self.table.lookup("Int") is None:
			self.table.ensure_int()
		if self.table.lookup("Bool") is None:
			self.table.ensure_bool()

	# ------------------------------------------------------------------ utils

	def _span(self, node: object) -> Span:
		return Span.from_loc(node).with_file(self.path)

	def _error(self, code: str, message: str, node: object, *, phase: str = "parser") -> None:
		self.program.diagnostics.append(
			Diagnostic(message=message, code=code, phase=phase, severity="error", span=self._span(node))
		)

	# ------------------------------------------------------------------ types

	def _user_ops(self, attrs: List[Tree]) -> Tuple[Optional[UserMoveOp], Optional[UserMoveOp], bool]:
		move_ctor = move_assign = None
		destructor = False
		for attr in attrs:
			kind = _name(attr)
			if kind == "attr_drop":
				destructor = True
				continue
			op = UserMoveOp(can_fail=bool(_trees(attr, "can_fail")), span=self._span(attr))
			if kind == "attr_move_ctor":
				move_ctor = op
			elif kind == "attr_move_assign":
				move_assign = op
		return move_ctor, move_assign, destructor

	def _declare_types(self, items: List[Tree]) -> Dict[TypeId, Tree]:
		"""First pass: register every nominal type so fields may refer forward."""
		structs: Dict[TypeId, Tree] = {}
		for item in items:
			kind = _name(item)
			if kind not in ("type_decl", "struct_decl"):
				continue
			name_tok = _tokens(item, "NAME")[0]
			if self.table.lookup(str(name_tok)) is not None:
				self._error("E_DUPLICATE_TYPE", f"type '{name_tok}' is declared more than once", name_tok)
				continue
			attrs = [c for c in _trees(item) if _name(c).startswith("attr_")]
			move_ctor, move_assign, destructor = self._user_ops(attrs)
			span = self._span(item)
			if kind == "type_decl":
				type_kind = str(_tokens(_trees(item, "type_kind")[0])[0])
				if type_kind == "scalar":
					self.table.new_scalar(str(name_tok))
				else:
					self.table.new_opaque(
						str(name_tok),
						move_ctor=move_ctor,
						move_assign=move_assign,
						destructor=destructor,
						span=span,
					)
			else:
				ty = self.table.declare_struct(
					str(name_tok),
					move_ctor=move_ctor,
					move_assign=move_assign,
					destructor=destructor,
					span=span,
				)
				structs[ty] = item
		return structs

	def _define_structs(self, structs: Dict[TypeId, Tree]) -> None:
		for ty, item in structs.items():
			fields: List[Tuple[str, TypeId]] = []
			seen: set[str] = set()
			for fd in _trees(item, "field_decl"):
				fname = _tokens(fd, "NAME")[0]
				if str(fname) in seen:
					self._error("E_DUPLICATE_FIELD", f"duplicate field '{fname}' in struct '{self.table.get(ty).name}'", fname)
					continue
				seen.add(str(fname))
				fields.append((str(fname), self._type_ref(_trees(fd)[0])))
			self.table.define_struct(ty, fields)

	def _type_ref(self, node: Tree) -> TypeId:
		kind = _name(node)
		if kind == "type_named":
			tok = _tokens(node, "NAME")[0]
			ty = self.table.lookup(str(tok))
			if ty is None:
				self._error("E_UNKNOWN_TYPE", f"unknown type '{tok}'", tok, phase="typemodel")
				return self.table.ensure_unknown()
			return ty
		inner = self._type_ref(_trees(node)[0])
		if kind == "type_pointer":
			return self.table.new_pointer(inner)
		return self.table.new_ref(inner, is_mut=kind == "type_ref_mut")

	# -------------------------------------------------------------- functions

	def build(self, tree: Tree) -> None:
		items = _trees(tree)
		structs = self._declare_types(items)
		self._define_structs(structs)
		seen: set[str] = set()
		for item in items:
			if _name(item) != "fn_decl":
				continue
			fn = self._function(item, parent=None)
			if fn.name in seen:
				self._error("E_DUPLICATE_FUNCTION", f"function '{fn.name}' is defined more than once", item)
				continue
			seen.add(fn.name)
			self.program.functions.append(fn)

	def _function(self, node: Tree, parent: Optional[FunctionCFG]) -> FunctionCFG:
		name = str(_tokens(node, "NAME")[0])
		fn = FunctionCFG(name=name, span=self._span(node))

		captures: List[str] = []
		for attr in _trees(node, "attr_captures"):
			captures.extend(str(t) for t in _tokens(attr, "NAME"))
		fn.captures = tuple(captures)
		for cname in captures:
			outer = parent.bindings.get(cname) if parent is not None else None
			if outer is None:
				self._error("E_UNKNOWN_CAPTURE", f"'{name}' captures unknown binding '{cname}'", node)
				cty = self.table.ensure_unknown()
			else:
				cty = outer.type_id
			fn.bindings[cname] = Binding(name=cname, type_id=cty, captured=True)

		params: List[str] = []
		forwards: set[int] = set()
		for idx, p in enumerate(_trees(node, "param")):
			pname = _tokens(p, "NAME")[0]
			mode_nodes = _trees(p, "pass_mode")
			mode = _PASS_MODES[str(_tokens(mode_nodes[0])[0])] if mode_nodes else PassMode.VALUE
			ty = self._type_ref([c for c in _trees(p) if _name(c).startswith("type_")][0])
			if str(pname) in fn.bindings:
				self._error("E_DUPLICATE_BINDING", f"duplicate binding '{pname}' in '{name}'", pname)
				continue
			if _trees(p, "forward_mark"):
				if mode is not PassMode.MOVE_REF:
					self._error("E_BAD_FORWARD", f"only move-ref parameters can be forwarded ('{pname}')", pname)
				forwards.add(idx)
			fn.bindings[str(pname)] = Binding(
				name=str(pname),
				type_id=ty,
				is_param=True,
				param_mode=mode,
				span=self._span(pname),
			)
			params.append(str(pname))
		fn.params = tuple(params)
		fn.forwards = frozenset(forwards)

		blocks = _trees(node, "block")
		labels: Dict[str, int] = {}
		owners: Dict[int, Tree] = {}
		for blk in blocks:
			toks = _tokens(blk)
			bid = int(toks[0])
			label = str(toks[1]) if len(toks) > 1 and toks[1].type == "NAME" else None
			if bid in fn.blocks:
				self._error("E_DUPLICATE_BLOCK", f"block {bid} is defined more than once in '{name}'", blk)
				continue
			if label is not None:
				if label in labels:
					self._error("E_DUPLICATE_LABEL", f"label '{label}' is defined more than once in '{name}'", toks[1])
				else:
					labels[label] = bid
			owners[bid] = blk
			fn.blocks[bid] = BasicBlock(id=bid, label=label, span=self._span(blk))
		if blocks:
			fn.entry = int(_tokens(blocks[0])[0])

		next_site = 0
		dangling = max(fn.blocks, default=-1) + 1
		for blk in blocks:
			bid = int(_tokens(blk)[0])
			if owners[bid] is not blk:
				continue  # duplicate block, already reported
			block = fn.blocks[bid]
			for stmt in _trees(blk):
				kind = _name(stmt)
				if kind.startswith("edge_"):
					if kind == "edge_ret":
						continue
					if kind == "edge_jump":
						label_tok = _tokens(stmt, "NAME")[0]
						dst = labels.get(str(label_tok))
						if dst is None:
							dst = dangling
							dangling += 1
						block.edges.append(Edge(src=bid, dst=dst, kind=EdgeKind.JUMP, label=str(label_tok)))
					else:
						dst = int(_tokens(stmt, "INT")[0])
						block.edges.append(Edge(src=bid, dst=dst, kind=_EDGE_KINDS[kind]))
					continue
				site = self._site(fn, stmt, next_site, bid, len(block.sites))
				if site is not None:
					block.sites.append(site)
					next_site += 1

		for sc in _trees(node, "scope_decl"):
			toks = _tokens(sc)
			bname = str(toks[0])
			binding = fn.bindings.get(bname)
			if binding is None:
				self._error("E_UNKNOWN_BINDING", f"scope for undeclared binding '{bname}' in '{name}'", toks[0])
				continue
			if binding.is_param or binding.captured:
				self._error("E_BAD_SCOPE", f"'{bname}' is not a local of '{name}'; only locals have scopes", toks[0])
				continue
			binding.region = frozenset(int(t) for t in toks[1:])

		for inner in _trees(node, "fn_decl"):
			fn.nested.append(self._function(inner, parent=fn))
		return fn

	def _site(self, fn: FunctionCFG, node: Tree, site_id: int, block: int, index: int) -> Optional[UseSite]:
		kind = _name(node)
		span = self._span(node)
		if kind == "site_decl":
			tok = _tokens(node, "NAME")[0]
			ty = self._type_ref(_trees(node)[0])
			if str(tok) in fn.bindings:
				self._error("E_DUPLICATE_BINDING", f"duplicate binding '{tok}' in '{fn.name}'", tok)
				return None
			fn.bindings[str(tok)] = Binding(name=str(tok), type_id=ty, span=span)
			return UseSite(id=site_id, block=block, index=index, kind=UseKind.DECL, binding=str(tok), span=span)
		if kind == "site_temp":
			ty = self._type_ref([c for c in _trees(node) if _name(c).startswith("type_")][0])
			target = self._target(_trees(node)[-1])
			return UseSite(
				id=site_id,
				block=block,
				index=index,
				kind=UseKind.MOVE_OUT,
				binding=None,
				target=target,
				temp_type=ty,
				span=span,
			)

		place = [str(t) for t in _tokens(_trees(node, "place")[0], "NAME")]
		binding, path = place[0], tuple(place[1:])
		if kind == "site_move":
			flags = {str(_tokens(f)[0]) for f in _trees(node, "move_flag")}
			return UseSite(
				id=site_id,
				block=block,
				index=index,
				kind=UseKind.MOVE_OUT,
				binding=binding,
				path=path,
				target=self._target(_trees(node)[-1]),
				explicit="explicit" in flags,
				via_forward="fwd" in flags,
				span=span,
			)
		use_kind = {"site_read": UseKind.READ, "site_write": UseKind.WRITE, "site_addr": UseKind.ADDR_OF}[kind]
		return UseSite(id=site_id, block=block, index=index, kind=use_kind, binding=binding, path=path, span=span)

	def _target(self, node: Tree) -> MoveTarget:
		kind = _name(node)
		flags = {str(_tokens(f)[0]) for f in _trees(node, "target_flag")}
		mode = PassMode.VALUE
		if "moveref" in flags:
			mode = PassMode.MOVE_REF
		elif "ref" in flags:
			mode = PassMode.PLAIN_REF
		if kind == "target_call":
			return MoveTarget(
				kind=TargetKind.CALL_ARG,
				callee=str(_tokens(node, "NAME")[0]),
				param_index=int(_tokens(node, "INT")[0]),
				mode=mode,
				may_fail="mayfail" in flags,
				forwarding="forward" in flags,
			)
		if kind == "target_return":
			return MoveTarget(kind=TargetKind.RETURN, mode=mode)
		return MoveTarget(kind=TargetKind.ASSIGN, dest=str(_tokens(node, "NAME")[0]))


def parse_mvir(source: str, *, path: Optional[str] = None, program: Optional[ParsedProgram] = None) -> ParsedProgram:
	"""
	Parse `.mvir` text.

	Passing an existing `program` accumulates into its type table and function
	list, so several files can share one type universe.
	"""
	out = program if program is not None else ParsedProgram()
	try:
		tree = _PARSER.parse(source)
	except UnexpectedInput as err:
		span = Span(
			file=path,
			line=getattr(err, "line", None),
			column=getattr(err, "column", None),
			raw=err,
		)
		out.diagnostics.append(Diagnostic(message=str(err).strip(), code="E_SYNTAX", phase="parser", severity="error", span=span))
		return out
	_ProgramBuilder(out, path).build(tree)
	return out


def parse_mvir_files(paths: List[Path]) -> ParsedProgram:
	"""Parse several files into one program (types are shared across files)."""
	program = ParsedProgram()
	for p in paths:
		parse_mvir(p.read_text(), path=str(p), program=program)
	return program


__all__ = ["ParsedProgram", "parse_mvir", "parse_mvir_files"]
