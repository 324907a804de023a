# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import pytest

from heapcheck import analyze, simulate_iterations
from heapcheck.core.errors import MalformedModel
from heapcheck.escape.analyzer import EscapeAnalysis
from heapcheck.escape.placement import finalize
from heapcheck.model import nodes as M
from heapcheck.model.nodes import TypeTag
from heapcheck.stage1.resolver import resolve
from heapcheck.test_support import (
	assign,
	closure,
	counting_loop,
	do,
	extern,
	fn,
	go,
	let,
	lit,
	program,
	range_loop,
	ret,
	var,
)

USE = extern("use", ("v", TypeTag.PRIMITIVE))


def _spawn_loop(*, fresh: bool = False, stop: int = 3) -> M.Program:
	return program(
		fn("main", [counting_loop("i", stop, [go(closure([do("use", var("i"))]))], fresh=fresh)]),
		externs=[USE],
	)


def test_shared_control_variable_is_observed_at_final_value() -> None:
	prog = _spawn_loop()
	trace = simulate_iterations(prog, analyze(prog))
	loop = trace.loop("main#loop1")
	assert loop.iterations == 3
	assert loop.final_value == 3
	assert loop.values("i") == [3, 3, 3]
	assert all(o.deferred and o.shared for o in loop.observations)
	assert [o.iteration for o in loop.observations] == [0, 1, 2]
	assert {o.observer for o in loop.observations} == {"main.func1"}
	assert trace.violations == []


def test_per_iteration_copy_freezes_each_value() -> None:
	prog = _spawn_loop(fresh=True)
	trace = simulate_iterations(prog, analyze(prog))
	loop = trace.loop("main#loop1")
	assert loop.per_iteration_copy
	assert loop.values("i") == [0, 1, 2]
	assert not any(o.shared for o in loop.observations)


def test_body_copy_of_control_variable_is_fresh_per_iteration() -> None:
	prog = program(
		fn("main", [counting_loop("i", 3, [let("i", var("i")), go(closure([do("use", var("i"))]))])]),
		externs=[USE],
	)
	trace = simulate_iterations(prog, analyze(prog))
	assert trace.loop("main#loop1").values("i") == [0, 1, 2]


def test_task_arguments_are_bound_at_spawn_time() -> None:
	task = closure([do("use", var("v"))], params=[("v", TypeTag.PRIMITIVE)])
	prog = program(fn("main", [counting_loop("i", 3, [go(task, var("i"))])]), externs=[USE])
	trace = simulate_iterations(prog, analyze(prog))
	loop = trace.loop("main#loop1")
	assert loop.values("v") == [0, 1, 2]
	assert loop.values("i") == []


def test_spawned_named_function_reads_its_arguments() -> None:
	prog = program(
		fn("worker", [do("use", var("n"))], params=[("n", TypeTag.PRIMITIVE)]),
		fn("main", [counting_loop("i", 4, [go("worker", M.BinOp(M.BinaryOp.MUL, var("i"), lit(10)))], start=1)]),
		externs=[USE],
	)
	trace = simulate_iterations(prog, analyze(prog))
	loop = trace.loop("main#loop1")
	assert loop.values() == [10, 20, 30]
	assert {o.observer for o in loop.observations} == {"worker"}


def test_synchronous_calls_observe_immediately() -> None:
	prog = program(
		fn("main", [counting_loop("i", 3, [let("show", closure([do("use", var("i"))])), do("show")])]),
		externs=[USE],
	)
	result = analyze(prog)
	trace = simulate_iterations(prog, result)
	loop = trace.loop("main#loop1")
	assert loop.values("i") == [0, 1, 2]
	assert not any(o.deferred for o in loop.observations)
	assert result.placement_of("main", "i").name == "STACK"


def test_escaping_closures_created_but_not_called_are_observed_after_loop() -> None:
	prog = program(
		fn(
			"collect",
			[
				let("fs", M.SeqLit([])),
				counting_loop("i", 3, [M.Assign("fs", M.Append(var("fs"), [closure([do("use", var("i"))])]))]),
				ret(var("fs")),
			],
			results=[TypeTag.SEQUENCE],
		),
		externs=[USE],
	)
	trace = simulate_iterations(prog, analyze(prog))
	loop = trace.loop("collect#loop1")
	assert loop.values("i") == [3, 3, 3]
	assert all(o.deferred for o in loop.observations)


def test_range_loop_final_value_is_last_index() -> None:
	prog = program(fn("main", [range_loop("i", 3, [go(closure([do("use", var("i"))]))])]), externs=[USE])
	trace = simulate_iterations(prog, analyze(prog))
	loop = trace.loop("main#loop1")
	assert loop.final_value == 2
	assert loop.values("i") == [2, 2, 2]


def test_return_inside_body_stops_replay() -> None:
	body = [
		M.If(M.BinOp(M.BinaryOp.EQ, var("i"), lit(2)), [ret()]),
		go(closure([do("use", var("i"))])),
	]
	prog = program(fn("main", [counting_loop("i", 5, body)]), externs=[USE])
	trace = simulate_iterations(prog, analyze(prog))
	loop = trace.loop("main#loop1")
	assert loop.iterations == 3
	assert loop.values("i") == [2, 2]


def _plus(name: str, amount: int) -> M.BinOp:
	return M.BinOp(M.BinaryOp.ADD, var(name), lit(amount))


def test_body_writes_to_shared_control_variable_drive_the_loop() -> None:
	body = [assign("i", _plus("i", 1)), go(closure([do("use", var("i"))]))]
	prog = program(fn("main", [counting_loop("i", 3, body)]), externs=[USE])
	loop = simulate_iterations(prog, analyze(prog)).loop("main#loop1")
	assert loop.iterations == 2
	assert loop.final_value == 4
	assert loop.values("i") == [4, 4]


def test_per_iteration_copy_starts_from_previous_value() -> None:
	body = [assign("i", _plus("i", 1)), go(closure([do("use", var("i"))]))]
	prog = program(fn("main", [counting_loop("i", 3, body, fresh=True)]), externs=[USE])
	loop = simulate_iterations(prog, analyze(prog)).loop("main#loop1")
	assert loop.iterations == 2
	assert loop.final_value == 4
	assert loop.values("i") == [1, 3]


def test_range_loop_count_ignores_body_writes() -> None:
	body = [assign("i", _plus("i", 10)), go(closure([do("use", var("i"))]))]
	prog = program(fn("main", [range_loop("i", 3, body)]), externs=[USE])
	loop = simulate_iterations(prog, analyze(prog)).loop("main#loop1")
	assert loop.iterations == 3
	assert loop.final_value == 12
	assert loop.values("i") == [12, 12, 12]


def test_return_under_unknown_condition_keeps_replaying() -> None:
	body = [
		M.If(M.BinOp(M.BinaryOp.GT, var("n"), lit(5)), [ret()]),
		go(closure([do("use", var("i"))])),
	]
	prog = program(
		fn("main", [counting_loop("i", 3, body)], params=[("n", TypeTag.PRIMITIVE)]),
		externs=[USE],
	)
	loop = simulate_iterations(prog, analyze(prog)).loop("main#loop1")
	assert loop.iterations == 3
	assert loop.final_value == 3
	assert loop.values("i") == [3, 3, 3]


def test_step_and_start_follow_counting_semantics() -> None:
	prog = program(
		fn("main", [counting_loop("i", 10, [go(closure([do("use", var("i"))]))], start=1, step=4)]),
		externs=[USE],
	)
	trace = simulate_iterations(prog, analyze(prog))
	loop = trace.loop("main#loop1")
	assert loop.iterations == 3
	assert loop.final_value == 13


def test_empty_loop_leaves_start_value() -> None:
	prog = _spawn_loop(stop=0)
	loop = simulate_iterations(prog, analyze(prog)).loop("main#loop1")
	assert loop.iterations == 0
	assert loop.final_value == 0
	assert loop.observations == []


def test_loop_bounds_from_package_constants() -> None:
	prog = program(
		fn("main", [counting_loop("i", var("n"), [go(closure([do("use", var("i"))]))])]),
		globals=[let("n", lit(2))],
		externs=[USE],
	)
	loop = simulate_iterations(prog, analyze(prog)).loop("main#loop1")
	assert loop.values("i") == [2, 2]


def test_non_constant_bounds_are_skipped_with_note() -> None:
	prog = program(
		fn("main", [counting_loop("i", var("n"), [go(closure([do("use", var("i"))]))])], params=[("n", TypeTag.PRIMITIVE)]),
		externs=[USE],
	)
	trace = simulate_iterations(prog, analyze(prog))
	loop = trace.loop("main#loop1")
	assert loop.skipped == "loop bounds are not constant"
	assert [d.severity for d in trace.diagnostics] == ["note"]
	assert trace.violations == []


def test_iteration_limit_skips_long_loops() -> None:
	prog = _spawn_loop(stop=50)
	trace = simulate_iterations(prog, analyze(prog), max_iterations=10)
	assert trace.loop("main#loop1").skipped.startswith("loop runs 50 iterations")


def test_nested_loops_are_separate_sites() -> None:
	inner = counting_loop("j", 2, [go(closure([do("use", var("j"))]))])
	prog = program(fn("main", [counting_loop("i", 2, [inner])]), externs=[USE])
	trace = simulate_iterations(prog, analyze(prog))
	assert [t.label for t in trace] == ["main#loop1", "main#loop2"]
	assert trace.loop("main#loop1").observations == []
	assert trace.loop("main#loop2").values("j") == [2, 2]
	assert len(trace.loops_in("main")) == 2


def test_deferred_read_of_stack_variable_is_a_violation() -> None:
	prog = _spawn_loop()
	res = resolve(prog)
	# Placements decided without any escape facts.
	result = finalize(res, EscapeAnalysis(resolution=res))
	trace = simulate_iterations(prog, result)
	assert len(trace.violations) == 3
	assert {d.code for d in trace.violations} == {"placement-mismatch"}
	assert "placed on the stack" in trace.violations[0].message


def test_result_for_another_model_is_rejected() -> None:
	prog = _spawn_loop()
	other = _spawn_loop()
	with pytest.raises(MalformedModel):
		simulate_iterations(prog, analyze(other))


def test_replay_is_deterministic() -> None:
	prog = _spawn_loop()
	result = analyze(prog)
	first = simulate_iterations(prog, result)
	second = simulate_iterations(prog, result)
	assert [t.observations for t in first] == [t.observations for t in second]
