#!/usr/bin/env python3
# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""Command-line driver: JSON payloads, exit codes, IR emission and options."""

import json
from pathlib import Path

from movec.driver import main

PROGRAM = """
type Str opaque move_ctor move_assign drop

fn f(s: Str) {
	block 0:
		move s -> call g[0]
		move s -> call h[0]
		ret
}

fn cond(s: Str) {
	block 0:
		true 1
		false 2
	block 1:
		move s -> call g[0]
		goto 3
	block 2:
		goto 3
	block 3:
		ret
}
"""

USE_AFTER_MOVE = """
type Str opaque move_ctor drop

fn bad(s: Str) {
	block 0:
		move explicit s -> call g[0]
		read s
}
"""


def _write(tmp_path: Path, name: str, text: str) -> Path:
	path = tmp_path / name
	path.write_text(text)
	return path


def _run_json(capsys, argv) -> tuple[int, dict]:
	rc = main(argv + ["--json"])
	out = capsys.readouterr().out
	return rc, json.loads(out)


def test_json_payload_reports_decisions_and_destruction(tmp_path: Path, capsys):
	"""JSON output lists decisions, destruction plans and flags."""
	src = _write(tmp_path, "prog.mvir", PROGRAM)
	rc, payload = _run_json(capsys, [str(src)])
	assert rc == 0
	assert payload["exit_code"] == 0
	assert payload["diagnostics"] == []
	f, cond = payload["functions"]
	assert [d["decision"] for d in f["decisions"]] == ["construct_by_copy", "construct_by_move"]
	assert f["destruction"] == [
		{"place": "s", "kind": "never_destroy", "flag": None, "partial": False, "reason": "dominating-move"}
	]
	assert cond["destruction"][0]["kind"] == "guarded_destroy"
	(flag,) = cond["flags"]
	assert flag["name"] == "s.live"
	assert flag["decl_site"] is None
	assert flag["clear"] == [{"site": 0, "before_call": False}]


def test_use_after_move_exits_nonzero(tmp_path: Path, capsys):
	"""An error diagnostic sets the exit code and names the source line."""
	src = _write(tmp_path, "bad.mvir", USE_AFTER_MOVE)
	rc, payload = _run_json(capsys, [str(src)])
	assert rc == 1
	assert payload["exit_code"] == 1
	(diag,) = payload["diagnostics"]
	assert diag["code"] == "E_USE_AFTER_MOVE"
	assert diag["phase"] == "moves"
	assert diag["file"] == str(src)
	assert diag["line"] == 7
	(fn,) = payload["functions"]
	assert fn["excluded"] is True


def test_syntax_error_reports_parser_phase(tmp_path: Path, capsys):
	"""Syntax errors come back as parser-phase diagnostics."""
	src = _write(tmp_path, "broken.mvir", "fn (")
	rc, payload = _run_json(capsys, [str(src)])
	assert rc == 1
	assert payload["diagnostics"][0]["code"] == "E_SYNTAX"
	assert payload["diagnostics"][0]["phase"] == "parser"
	assert payload["functions"] == []


def test_missing_file(tmp_path: Path, capsys):
	rc, payload = _run_json(capsys, [str(tmp_path / "nope.mvir")])
	assert rc == 1
	assert payload["diagnostics"][0]["code"] == "E_NO_FILE"


def test_text_output_and_trace(tmp_path: Path, capsys):
	src = _write(tmp_path, "prog.mvir", PROGRAM)
	rc = main([str(src), "--trace"])
	captured = capsys.readouterr()
	assert rc == 0
	assert "fn f:" in captured.out
	assert "s: guarded_destroy flag s.live" in captured.out
	assert "[movec] f:" in captured.err


def test_assign_order_option(tmp_path: Path, capsys):
	src = _write(
		tmp_path,
		"assign.mvir",
		"""
type Str opaque move_ctor move_assign drop
fn f(x: Str, y: Str) {
	block 0:
		move y -> assign x
		write x
}
""",
	)
	rc, payload = _run_json(capsys, [str(src), "--assign-order", "move-assign"])
	assert rc == 0
	(assign,) = payload["functions"][0]["assigns"]
	assert assign["order"] == "move-assign"
	assert assign["dest_state"] == "valid"
	assert assign["source_site"] == 0


def test_block_local_mode_option(tmp_path: Path, capsys):
	src = _write(tmp_path, "prog.mvir", PROGRAM)
	rc, payload = _run_json(capsys, [str(src), "--last-use-mode", "block-local", "--jobs", "2"])
	assert rc == 0
	f, cond = payload["functions"]
	assert f["decisions"][1]["decision"] == "construct_by_move"
	# The conditional move sits alone in its block, outside any cycle.
	assert cond["decisions"][0]["decision"] == "construct_by_move"


def test_emit_ir_writes_llvm_module(tmp_path: Path, capsys):
	"""--emit-ir writes the lowered module."""
	src = _write(tmp_path, "prog.mvir", PROGRAM)
	out = tmp_path / "prog.ll"
	rc = main([str(src), "--emit-ir", str(out)])
	capsys.readouterr()
	assert rc == 0
	text = out.read_text()
	assert 'define void @"f"' in text or "define void @f" in text
	assert "Str.drop" in text
	assert "s.live" in text


def test_emit_ir_skipped_on_errors(tmp_path: Path, capsys):
	"""No IR is written when analysis reported errors."""
	src = _write(tmp_path, "bad.mvir", USE_AFTER_MOVE)
	out = tmp_path / "bad.ll"
	rc = main([str(src), "--emit-ir", str(out)])
	capsys.readouterr()
	assert rc == 1
	assert not out.exists()
