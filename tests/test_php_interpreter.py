import math

import pytest

from phpwalk import php_ast as ast
from builders import (
    run, var, call, new, mcall, prop, index, binop, array, assign, stmt, echo, ret,
    param, function, closure, arrow, yield_, const,
)


# --- Expressions ---

@pytest.mark.asyncio
async def test_arithmetic_result_types():
    runner, res = await run(
        assign('f', binop('+', 1, 1.0)),
        assign('i', binop('+', 1, 1)),
        assign('q', binop('/', 10, 3)),
    )
    assert res.status == 'success'
    assert isinstance(runner.get_global('f'), float) and runner.get_global('f') == 2.0
    assert isinstance(runner.get_global('i'), int) and runner.get_global('i') == 2
    assert runner.get_global('q') == pytest.approx(10 / 3)


@pytest.mark.asyncio
async def test_negative_base_with_fractional_exponent_is_nan():
    runner, res = await run(assign('x', binop('**', -8, 0.5)), echo(var('x'), " ", call('gettype', var('x'))))
    assert res.status == 'success'
    assert res.output == "NAN double"
    assert math.isnan(runner.get_global('x'))


@pytest.mark.asyncio
async def test_leading_numeric_string_operand_warns():
    _, res = await run(echo(binop('+', "5abc", 1)), echo(binop('+', "5", 1)))
    assert res.output == "66"
    warnings = [e['message'] for e in res.side_effects if e['topics'] == ['stderr']]
    assert warnings == ["Warning: A non-numeric value encountered"]


@pytest.mark.asyncio
async def test_division_by_zero_is_terminal():
    _, res = await run(
        ast.Try([echo(binop('/', 10, 0))],
                [ast.Catch(['Throwable'], 'e', [echo("caught")])]),
        echo("after"),
    )
    assert res.status == 'error'
    assert res.error_message == "PHP Fatal error:  Division by zero"
    assert res.output == ""


@pytest.mark.asyncio
async def test_division_by_zero_is_catchable_when_configured():
    _, res = await run(
        ast.Try([echo(binop('/', 10, 0))],
                [ast.Catch(['DivisionByZeroError'], 'e', [echo(mcall(var('e'), 'getMessage'))])]),
        errors_as_exceptions=True,
    )
    assert res.status == 'success'
    assert res.output == "Division by zero"


@pytest.mark.asyncio
async def test_loose_and_strict_comparison():
    runner, _ = await run(
        assign('loose', binop('==', "0", 0)),
        assign('strict', binop('===', "0", 0)),
    )
    assert runner.get_global('loose') is True
    assert runner.get_global('strict') is False


@pytest.mark.asyncio
async def test_string_interpolation_and_concat():
    _, res = await run(
        assign('name', "World"),
        echo(ast.Interp(["Hello, ", var('name'), "!"]), binop('.', " n=", 3)),
    )
    assert res.output == "Hello, World! n=3"


@pytest.mark.asyncio
async def test_short_circuit_skips_right_operand():
    side = function('side', [], [echo("side"), ret(True)])
    _, res = await run(side, stmt(binop('&&', False, call('side'))), echo("end"))
    assert res.output == "end"


@pytest.mark.asyncio
async def test_eager_logic_when_short_circuit_disabled():
    side = function('side', [], [echo("side"), ret(True)])
    _, res = await run(side, stmt(binop('&&', False, call('side'))), echo("end"),
                       short_circuit_logic=False)
    assert res.output == "sideend"


@pytest.mark.asyncio
async def test_null_coalescing_on_undefined_variable():
    _, res = await run(echo(binop('??', var('missing'), "default")))
    assert res.output == "default"
    assert not [e for e in res.side_effects if e['topics'] == ['stderr']]


@pytest.mark.asyncio
async def test_undefined_variable_warns():
    _, res = await run(echo(var('missing')))
    assert res.status == 'success'
    warnings = [e['message'] for e in res.side_effects if e['topics'] == ['stderr']]
    assert any("Undefined variable $missing" in w for w in warnings)


@pytest.mark.asyncio
async def test_match_uses_strict_comparison():
    def match(subject):
        return ast.Match(ast.Lit(subject), [
            ast.MatchArm([ast.Lit(1)], ast.Lit('one')),
            ast.MatchArm([ast.Lit(2), ast.Lit(3)], ast.Lit('two-or-three')),
            ast.MatchArm(None, ast.Lit('other')),
        ])
    _, res = await run(echo(match(3), ",", match("1")))
    assert res.output == "two-or-three,other"


@pytest.mark.asyncio
async def test_unhandled_match_throws():
    _, res = await run(echo(ast.Match(ast.Lit(5), [ast.MatchArm([ast.Lit(1)], ast.Lit('one'))])))
    assert res.status == 'error'
    assert res.error_message.startswith("PHP Fatal error:  Uncaught UnhandledMatchError")


@pytest.mark.asyncio
async def test_list_destructuring_by_key():
    target = ast.ArrayLit([ast.ArrayItem(var('a'), key=ast.Lit('x')),
                           ast.ArrayItem(var('b'), key=ast.Lit('y'))])
    runner, _ = await run(stmt(ast.Assign(target, array(x=1, y=2))))
    assert runner.get_global('a') == 1
    assert runner.get_global('b') == 2


@pytest.mark.asyncio
async def test_arrays_are_copied_on_assignment():
    runner, _ = await run(
        assign('a', array(1, 2)),
        assign('b', var('a')),
        assign(index(var('b')), 3),
    )
    assert len(runner.get_global('a')) == 2
    assert len(runner.get_global('b')) == 3


# --- Statements ---

@pytest.mark.asyncio
async def test_break_two_exits_both_loops():
    inner = ast.For(
        init=[ast.Assign(var('j'), ast.Lit(0))],
        cond=[binop('<', var('j'), 3)],
        step=[ast.IncDec('++', var('j'))],
        body=[ast.If(binop('==', var('j'), 1), [ast.Break(2)]), echo(var('i'), var('j'), ";")],
    )
    outer = ast.For(
        init=[ast.Assign(var('i'), ast.Lit(0))],
        cond=[binop('<', var('i'), 3)],
        step=[ast.IncDec('++', var('i'))],
        body=[inner],
    )
    _, res = await run(outer, echo("done"))
    assert res.output == "00;done"


@pytest.mark.asyncio
async def test_continue_two_resumes_outer_loop():
    inner = ast.Foreach(array(1, 2), var('j'), body=[
        ast.If(binop('==', var('j'), 2), [ast.Continue(2)]),
        echo(var('i'), var('j'), " "),
    ])
    outer = ast.Foreach(array(1, 2), var('i'), body=[inner, echo("never ")])
    _, res = await run(outer)
    assert res.output == "11 21 "


@pytest.mark.asyncio
async def test_switch_falls_through_until_break():
    sw = ast.Switch(ast.Lit("2"), [
        ast.Case(ast.Lit(1), [echo("one")]),
        ast.Case(ast.Lit(2), [echo("two")]),
        ast.Case(ast.Lit(3), [echo("three"), ast.Break()]),
        ast.Case(None, [echo("default")]),
    ])
    _, res = await run(sw)
    assert res.output == "twothree"


@pytest.mark.asyncio
async def test_try_catch_finally_runs_finally_once():
    body = [stmt(ast.Throw(new('Exception', "x")))]
    runner, res = await run(
        assign('ran', 0),
        ast.Try(body,
                [ast.Catch(['Exception'], 'e', [assign('msg', var('e'))])],
                finally_=[assign('ran', 1, op='+')]),
        ast.Try([echo("quiet")], [], finally_=[assign('ran', 1, op='+')]),
    )
    assert res.status == 'success'
    assert runner.get_global('msg').cls.name == 'Exception'
    assert runner.get_global('ran') == 2


@pytest.mark.asyncio
async def test_finally_return_overrides_try_return():
    f = function('f', [], [ast.Try([ret("try")], [], finally_=[ret("finally")])])
    _, res = await run(f, echo(call('f')))
    assert res.output == "finally"


@pytest.mark.asyncio
async def test_catch_matches_by_type():
    tr = ast.Try([stmt(ast.Throw(new('LogicException', "l")))], [
        ast.Catch(['RuntimeException'], 'e', [echo("runtime")]),
        ast.Catch(['InvalidArgumentException', 'LogicException'], 'e', [echo("logic")]),
    ])
    _, res = await run(tr)
    assert res.output == "logic"


@pytest.mark.asyncio
async def test_first_catch_wins_when_type_matching_disabled():
    tr = ast.Try([stmt(ast.Throw(new('LogicException', "l")))], [
        ast.Catch(['RuntimeException'], 'e', [echo("runtime")]),
        ast.Catch(['LogicException'], 'e', [echo("logic")]),
    ])
    _, res = await run(tr, catch_by_type=False)
    assert res.output == "runtime"


@pytest.mark.asyncio
async def test_uncaught_exception_reports_class_and_message():
    _, res = await run(echo("before "), stmt(ast.Throw(new('RuntimeException', "boom"))))
    assert res.status == 'error'
    assert res.error_message == "PHP Fatal error:  Uncaught RuntimeException: boom"
    assert res.output == "before "
    stderr = [e['message'] for e in res.side_effects if e['topics'] == ['stderr']]
    assert any("Stack trace:" in m and "#0 {main}" in m for m in stderr)


@pytest.mark.asyncio
async def test_exit_stops_execution_and_keeps_status():
    _, res = await run(echo("a"), stmt(ast.Exit(ast.Lit(3))), echo("b"))
    assert res.status == 'success'
    assert res.exit_status == 3
    assert res.output == "a"


@pytest.mark.asyncio
async def test_exit_still_runs_finally():
    _, res = await run(
        ast.Try([stmt(ast.Exit(ast.Lit(3)))], [], finally_=[echo("finally")]),
        echo("after"),
    )
    assert res.status == 'success'
    assert res.exit_status == 3
    assert res.output == "finally"


@pytest.mark.asyncio
async def test_exit_is_not_cancelled_by_finally_return():
    f = function('f', [], [ast.Try([stmt(ast.Exit(ast.Lit(2)))], [], finally_=[ret("x")])])
    _, res = await run(f, stmt(call('f')), echo("after"))
    assert res.exit_status == 2
    assert res.output == ""


@pytest.mark.asyncio
async def test_exit_with_string_writes_it():
    _, res = await run(stmt(ast.Exit(ast.Lit("bye"))))
    assert res.output == "bye"
    assert res.exit_status == 0


@pytest.mark.asyncio
async def test_top_level_return_value():
    _, res = await run(ret(binop('*', 6, 7)))
    assert res.value == 42


@pytest.mark.asyncio
async def test_goto_is_not_supported():
    _, res = await run(ast.Goto('end'))
    assert res.status == 'error'


# --- Functions and closures ---

@pytest.mark.asyncio
async def test_named_arguments_bind_by_name():
    f = function('f', ['a', 'b'], [ret(binop('.', binop('.', var('a'), "-"), var('b')))])
    _, res = await run(f, echo(call('f', b=2, a=1)))
    assert res.output == "1-2"


@pytest.mark.asyncio
async def test_defaults_and_variadics():
    f = function('f', ['a', param('b', default=ast.Lit(10)), param('rest', variadic=True)],
                 [ret(binop('+', binop('+', var('a'), var('b')), call('count', var('rest'))))])
    _, res = await run(f, echo(call('f', 1), " ", call('f', 1, 2, 3, 4)))
    assert res.output == "11 5"


@pytest.mark.asyncio
async def test_spread_arguments():
    f = function('f', ['a', 'b', 'c'], [ret(binop('.', binop('.', var('a'), var('b')), var('c')))])
    spread = ast.Call('f', [ast.Arg(ast.Lit("x")), ast.Arg(array("y", "z"), unpack=True)])
    _, res = await run(f, echo(spread))
    assert res.output == "xyz"


@pytest.mark.asyncio
async def test_too_few_arguments_is_catchable_argument_count_error():
    f = function('f', ['a', 'b'], [ret(var('a'))])
    tr = ast.Try([echo(call('f', 1))],
                 [ast.Catch(['ArgumentCountError'], 'e', [echo(mcall(var('e'), 'getMessage'))])])
    _, res = await run(f, tr)
    assert res.output == "Too few arguments to function f(), 1 passed and exactly 2 expected"


@pytest.mark.asyncio
async def test_strict_types_reject_coercion():
    f = function('f', [param('n', type='int')], [ret(var('n'))])
    tr = ast.Try([echo(call('f', "5"))], [ast.Catch(['TypeError'], 'e', [echo("type error")])])
    _, res = await run(ast.Declare({'strict_types': 1}), f, tr)
    assert res.output == "type error"


@pytest.mark.asyncio
async def test_coercive_mode_converts_numeric_strings():
    f = function('f', [param('n', type='int')], [ret(binop('+', var('n'), 1))])
    _, res = await run(f, echo(call('f', "5")))
    assert res.output == "6"


@pytest.mark.asyncio
async def test_by_reference_parameter():
    f = function('addOne', [param('n', by_ref=True)], [stmt(ast.IncDec('++', var('n')))])
    runner, _ = await run(assign('x', 1), f, stmt(call('addOne', var('x'))))
    assert runner.get_global('x') == 2


@pytest.mark.asyncio
async def test_closure_use_by_reference_and_by_value():
    runner, res = await run(
        assign('count', 0),
        assign('inc', closure([], [stmt(ast.IncDec('++', var('count')))], uses=['&count'])),
        assign('snapshot', closure([], [ret(var('count'))], uses=['count'])),
        stmt(ast.Call(var('inc'))),
        stmt(ast.Call(var('inc'))),
        echo(ast.Call(var('snapshot'))),
    )
    assert runner.get_global('count') == 2
    assert res.output == "0"


@pytest.mark.asyncio
async def test_arrow_function_captures_by_value():
    _, res = await run(
        assign('m', 3),
        assign('f', arrow(['x'], binop('*', var('x'), var('m')))),
        echo(ast.Call(var('f'), [ast.Arg(ast.Lit(2))])),
    )
    assert res.output == "6"


@pytest.mark.asyncio
async def test_static_variables_persist_between_calls():
    f = function('counter', [], [
        ast.StaticVar([ast.StaticVarItem('n', ast.Lit(0))]),
        stmt(ast.IncDec('++', var('n'))),
        ret(var('n')),
    ])
    _, res = await run(f, echo(call('counter'), call('counter'), call('counter')))
    assert res.output == "123"


@pytest.mark.asyncio
async def test_global_statement_links_to_global_slot():
    f = function('bump', [], [ast.Global(['total']), assign('total', 5, op='+')])
    runner, _ = await run(f, assign('total', 1), stmt(call('bump')))
    assert runner.get_global('total') == 6


@pytest.mark.asyncio
async def test_functions_do_not_see_caller_locals():
    f = function('peek', [], [ret(binop('??', var('secret'), "unset"))])
    _, res = await run(f, assign('secret', 1), echo(call('peek')))
    assert res.output == "unset"


@pytest.mark.asyncio
async def test_get_defined_vars_lists_only_local_scope():
    f = function('locals', ['a'], [
        assign('b', 2),
        ret(call('implode', ",", call('array_keys', call('get_defined_vars')))),
    ])
    _, res = await run(f, assign('outer', 1), echo(call('locals', 1)))
    assert res.output == "a,b"


@pytest.mark.asyncio
async def test_functions_are_hoisted():
    _, res = await run(echo(call('later')), function('later', [], [ret("hoisted")]))
    assert res.output == "hoisted"


@pytest.mark.asyncio
async def test_undefined_function_is_terminal_error():
    _, res = await run(echo(call('nope')))
    assert res.status == 'error'
    assert res.error_message == "PHP Fatal error:  Call to undefined function nope()"


@pytest.mark.asyncio
async def test_recursion_limit():
    f = function('down', [], [ret(call('down'))])
    _, res = await run(f, stmt(call('down')), max_call_depth=50)
    assert res.status == 'error'
    assert "Maximum function nesting level" in res.error_message


# --- Generators ---

@pytest.mark.asyncio
async def test_generator_foreach_yields_pairs_in_order():
    gen = function('gen', [], [stmt(yield_(1)), stmt(yield_(2))])
    loop = ast.Foreach(call('gen'), var('v'), key=var('k'), body=[echo(var('k'), "=>", var('v'), ";")])
    _, res = await run(gen, loop)
    assert res.output == "0=>1;1=>2;"


@pytest.mark.asyncio
async def test_generator_body_runs_lazily():
    gen = function('gen', [], [echo("a"), stmt(yield_(1)), echo("b"), stmt(yield_(2))])
    _, res = await run(gen, ast.Foreach(call('gen'), var('v'), body=[echo(var('v'))]))
    assert res.output == "a1b2"


@pytest.mark.asyncio
async def test_infinite_generator_with_break():
    nat = function('nat', [], [
        assign('i', 0),
        ast.While(ast.Lit(True), [stmt(yield_(ast.IncDec('++', var('i'), prefix=False)))]),
    ])
    loop = ast.Foreach(call('nat'), var('n'), body=[
        ast.If(binop('>=', var('n'), 3), [ast.Break()]),
        echo(var('n')),
    ])
    _, res = await run(nat, loop)
    assert res.status == 'success'
    assert res.output == "012"


@pytest.mark.asyncio
async def test_generator_send_and_return():
    acc = function('acc', [], [
        assign('total', 0),
        ast.While(ast.Lit(True), [
            assign('x', yield_(var('total'))),
            ast.If(binop('===', var('x'), None), [ret(var('total'))]),
            assign('total', var('x'), op='+'),
        ]),
    ])
    _, res = await run(
        acc,
        assign('g', call('acc')),
        echo(mcall(var('g'), 'current'), ","),
        echo(mcall(var('g'), 'send', 5), ","),
        echo(mcall(var('g'), 'send', 10), ","),
        stmt(mcall(var('g'), 'send', None)),
        echo(mcall(var('g'), 'getReturn')),
    )
    assert res.status == 'success'
    assert res.output == "0,5,15,15"


@pytest.mark.asyncio
async def test_yield_from_delegates_keys_and_values():
    inner = function('inner', [], [stmt(yield_(1)), stmt(yield_(2)), ret(3)])
    outer = function('outer', [], [
        assign('r', ast.YieldFrom(call('inner'))),
        stmt(yield_(var('r'))),
    ])
    loop = ast.Foreach(call('outer'), var('v'), body=[echo(var('v'))])
    _, res = await run(inner, outer, loop)
    assert res.output == "123"


# --- Namespaces ---

@pytest.mark.asyncio
async def test_namespaced_functions_and_builtin_fallback():
    ns = ast.Namespace('App\\Util', [
        function('greet', [], [ret("hi")]),
        echo(call('greet'), call('strlen', "abc"), ast.MagicConst('__NAMESPACE__')),
    ])
    glob = ast.Namespace(None, [echo(" ", call('\\App\\Util\\greet'))])
    _, res = await run(ns, glob)
    assert res.output == "hi3App\\Util hi"


@pytest.mark.asyncio
async def test_namespaced_code_falls_back_to_global_classes():
    size = function('size', [param('c', type='Countable')], [ret(call('count', var('c')))])
    ns = ast.Namespace('App', [
        size,
        ast.Try([stmt(ast.Throw(new('Exception', "boom")))],
                [ast.Catch(['Exception'], 'e', [echo(mcall(var('e'), 'getMessage'), " ",
                                                     call('get_class', var('e')))])]),
        assign('it', new('ArrayIterator', array(1, 2))),
        echo(" ", ast.Ternary(ast.Instanceof(var('it'), 'Traversable'), ast.Lit("yes"), ast.Lit("no")),
             " ", call('size', var('it'))),
    ])
    _, res = await run(ns)
    assert res.status == 'success'
    assert res.output == "boom Exception yes 2"


@pytest.mark.asyncio
async def test_namespaced_class_shadows_global_name():
    ns = ast.Namespace('App', [
        ast.ClassDecl('Exception', members=[]),
        echo(call('get_class', new('Exception')), " ", call('get_class', new('\\Exception'))),
    ])
    _, res = await run(ns)
    assert res.output == "App\\Exception Exception"


@pytest.mark.asyncio
async def test_use_function_alias():
    ns = ast.Namespace('Lib', [function('shout', ['s'], [ret(call('strtoupper', var('s')))])])
    glob = ast.Namespace(None, [
        ast.Use([ast.UseItem('Lib\\shout', alias='yell')], kind='function'),
        echo(call('yell', "hey")),
    ])
    _, res = await run(ns, glob)
    assert res.output == "HEY"


# --- Constants ---

@pytest.mark.asyncio
async def test_const_statement_and_define():
    _, res = await run(
        ast.ConstStmt([ast.ConstItem('GREETING', ast.Lit("hello"))]),
        stmt(call('define', "ANSWER", 42)),
        echo(const('GREETING'), " ", const('ANSWER'), " ", call('defined', "NOPE") ),
    )
    assert res.output == "hello 42 "


@pytest.mark.asyncio
async def test_undefined_constant_is_terminal():
    _, res = await run(echo(const('NOPE')))
    assert res.status == 'error'
    assert 'Undefined constant "NOPE"' in res.error_message
