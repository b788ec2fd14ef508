import pytest

from phpwalk import php_ast as ast
from phpwalk.php_datatypes import PhpArray
from builders import (
    run, var, call, binop, array, assign, stmt, echo, ret, closure, arrow, const, index,
)


def stderr(res):
    return [e['message'] for e in res.side_effects if 'stderr' in e['topics']]


async def value_of(expr, **config):
    runner, res = await run(assign('out', expr), **config)
    assert res.status == 'success', res.error_message
    return runner.get_global('out')


# --- Formatting ---

@pytest.mark.asyncio
async def test_sprintf_flags_width_and_precision():
    out = await value_of(call('sprintf', "%05.2f|%-4s|%'*6d|%x", 3.14159, "ab", 42, 255))
    assert out == "03.14|ab  |****42|ff"


@pytest.mark.asyncio
async def test_sprintf_argnum_and_percent():
    assert await value_of(call('sprintf', "%2$s %1$s 100%%", "a", "b")) == "b a 100%"


@pytest.mark.asyncio
async def test_sprintf_too_few_arguments():
    _, res = await run(
        ast.Try([stmt(call('sprintf', "%s %s", "x"))],
                [ast.Catch(['ArgumentCountError'], 'e', [echo(ast.MethodCall(var('e'), 'getMessage'))])]),
    )
    assert res.output == "3 arguments are required, 2 given"


@pytest.mark.asyncio
async def test_printf_writes_and_returns_length():
    _, res = await run(assign('n', call('printf', "%d-%s", 7, "x")), echo("|", var('n')))
    assert res.output == "7-x|3"


@pytest.mark.asyncio
async def test_number_format():
    assert await value_of(call('number_format', 1234567.891, 2)) == "1,234,567.89"
    assert await value_of(call('number_format', 1234.5)) == "1,235"
    assert await value_of(call('number_format', 1234.5, 1, ",", ".")) == "1.234,5"


# --- Math ---

@pytest.mark.asyncio
async def test_round_half_away_from_zero():
    assert await value_of(call('round', 2.5)) == 3.0
    assert await value_of(call('round', -2.5)) == -3.0
    assert await value_of(call('round', 1.955, 2)) == 1.96


@pytest.mark.asyncio
async def test_intdiv_truncates_toward_zero():
    assert await value_of(call('intdiv', -7, 2)) == -3
    assert await value_of(call('intdiv', 7, 2)) == 3


@pytest.mark.asyncio
async def test_max_min_and_sum():
    assert await value_of(call('max', 3, 9, 4)) == 9
    assert await value_of(call('min', array(5, 2, 8))) == 2
    assert await value_of(call('array_sum', call('range', 1, 5))) == 15


# --- Strings ---

@pytest.mark.asyncio
async def test_string_helpers():
    _, res = await run(echo(
        call('strtoupper', "abc"), " ",
        call('ucfirst', "word"), " ",
        call('str_repeat', "ab", 3), " ",
        call('strrev', "abc"), " ",
        call('substr', "hello", -3), " ",
        call('strpos', "hello", "l"), " ",
        call('str_pad', "5", 3, "0", const('STR_PAD_LEFT')), " ",
        call('trim', "  x  "),
    ))
    assert res.output == "ABC Word ababab cba llo 2 005 x"


@pytest.mark.asyncio
async def test_strpos_miss_is_false():
    assert await value_of(call('strpos', "abc", "z")) is False


@pytest.mark.asyncio
async def test_explode_limits():
    assert (await value_of(call('explode', ",", "a,b,c", 2))).values() == ["a", "b,c"]
    assert (await value_of(call('explode', ",", "a,b,c", -1))).values() == ["a", "b"]
    assert (await value_of(call('explode', ",", "a,b,c"))).values() == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_implode_and_str_replace():
    _, res = await run(echo(call('implode', ", ", array(1, 2, 3)), "|",
                            call('str_replace', "l", "L", "hello")))
    assert res.output == "1, 2, 3|heLLo"


@pytest.mark.asyncio
async def test_builtin_argument_count_error_is_catchable():
    _, res = await run(
        ast.Try([stmt(call('strlen'))],
                [ast.Catch(['ArgumentCountError'], 'e', [echo(ast.MethodCall(var('e'), 'getMessage'))])]),
    )
    assert res.output == "strlen() expects exactly 1 argument, 0 given"


# --- Arrays ---

@pytest.mark.asyncio
async def test_sort_modifies_argument_in_place():
    _, res = await run(
        assign('a', array(3, 1, 2)),
        stmt(call('sort', var('a'))),
        echo(call('implode', ",", var('a'))),
    )
    assert res.output == "1,2,3"


@pytest.mark.asyncio
async def test_usort_with_closure():
    cmp = closure(['x', 'y'], [ret(binop('<=>', var('y'), var('x')))])
    _, res = await run(
        assign('a', array(2, 9, 4)),
        stmt(call('usort', var('a'), cmp)),
        echo(call('implode', ",", var('a'))),
    )
    assert res.output == "9,4,2"


@pytest.mark.asyncio
async def test_ksort_and_asort_keep_keys():
    _, res = await run(
        assign('a', array(b=2, a=3, c=1)),
        assign('k', var('a')),
        stmt(call('ksort', var('k'))),
        stmt(call('asort', var('a'))),
        echo(call('implode', ",", call('array_keys', var('k'))), "|",
             call('implode', ",", call('array_keys', var('a')))),
    )
    assert res.output == "a,b,c|c,b,a"


@pytest.mark.asyncio
async def test_array_map_and_filter():
    _, res = await run(
        echo(call('implode', ",", call('array_map', arrow(['x'], binop('*', var('x'), 2)), array(1, 2, 3)))),
        echo("|", call('implode', ",", call('array_keys', call('array_filter', array(1, 0, 2, None, 3))))),
    )
    assert res.output == "2,4,6|0,2,4"


@pytest.mark.asyncio
async def test_in_array_and_search():
    assert await value_of(call('in_array', "1", array(1, 2))) is True
    assert await value_of(call('in_array', "1", array(1, 2), True)) is False
    assert await value_of(call('array_search', 2, array(a=1, b=2))) == "b"


@pytest.mark.asyncio
async def test_array_push_pop_and_slice():
    _, res = await run(
        assign('a', array(1, 2)),
        stmt(call('array_push', var('a'), 3, 4)),
        assign('last', call('array_pop', var('a'))),
        echo(var('last'), "|", call('implode', ",", var('a')), "|",
             call('implode', ",", call('array_slice', var('a'), 1))),
    )
    assert res.output == "4|1,2,3|2,3"


@pytest.mark.asyncio
async def test_array_merge_renumbers_integer_keys():
    out = await value_of(call('array_merge', array(5, x=1), array(6, x=2)))
    assert isinstance(out, PhpArray)
    assert out.keys() == [0, 'x', 1]
    assert out.get('x') == 2


# --- JSON ---

@pytest.mark.asyncio
async def test_json_encode_list_and_object():
    out = await value_of(call('json_encode', array(a=1, b=array(1, 2), c=None)))
    assert out == '{"a":1,"b":[1,2],"c":null}'


@pytest.mark.asyncio
async def test_json_encode_escapes_slashes_by_default():
    assert await value_of(call('json_encode', "a/b")) == '"a\\/b"'
    assert await value_of(call('json_encode', "a/b", const('JSON_UNESCAPED_SLASHES'))) == '"a/b"'


@pytest.mark.asyncio
async def test_json_decode_associative():
    _, res = await run(
        assign('d', call('json_decode', '{"x":{"y":[1,2]}}', True)),
        echo(index(index(index(var('d'), "x"), "y"), 1)),
    )
    assert res.output == "2"


# --- Callables and constants ---

@pytest.mark.asyncio
async def test_call_user_func_variants():
    _, res = await run(echo(call('call_user_func', "strtoupper", "x"),
                            call('call_user_func_array', "str_repeat", array("y", 2))))
    assert res.output == "Xyy"


@pytest.mark.asyncio
async def test_define_and_constant():
    _, res = await run(
        stmt(call('define', "LIMIT", 10)),
        echo(const('LIMIT'), call('constant', "LIMIT"), ast.Ternary(call('defined', "NOPE"),
                                                                      ast.Lit("y"), ast.Lit("n"))),
    )
    assert res.output == "1010n"


@pytest.mark.asyncio
async def test_gettype_names():
    _, res = await run(echo(call('gettype', 1.0), " ", call('gettype', array()), " ",
                            call('gettype', None)))
    assert res.output == "double array NULL"


# --- Output buffering and streams ---

@pytest.mark.asyncio
async def test_output_buffer_capture():
    _, res = await run(
        stmt(call('ob_start')),
        echo("inner"),
        assign('captured', call('ob_get_clean')),
        echo(call('strtoupper', var('captured'))),
    )
    assert res.output == "INNER"


@pytest.mark.asyncio
async def test_stderr_stream_and_trigger_error():
    _, res = await run(
        stmt(call('fwrite', const('STDERR'), "to stderr")),
        stmt(call('trigger_error', "careful", const('E_USER_WARNING'))),
        echo("done"),
    )
    assert res.output == "done"
    assert stderr(res) == ["to stderr", "Warning: careful"]


@pytest.mark.asyncio
async def test_memory_stream_round_trip():
    _, res = await run(
        assign('h', call('fopen', "php://memory", "w+")),
        stmt(call('fwrite', var('h'), "abc")),
        stmt(call('rewind', var('h'))),
        echo(call('stream_get_contents', var('h'))),
    )
    assert res.output == "abc"


@pytest.mark.asyncio
async def test_ini_set_returns_previous_value():
    _, res = await run(
        assign('old', call('ini_set', "precision", "10")),
        echo(ast.Ternary(binop('===', var('old'), False), ast.Lit("unset"), var('old')), "|",
             call('ini_get', "precision")),
    )
    assert res.output == "unset|10"
