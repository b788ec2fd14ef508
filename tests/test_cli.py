import json

import pytest

from phpwalk.cli import FATAL_STATUS, main, run_script_file


def lit(value):
    return {'kind': 'Lit', 'value': value}


def echo(*values):
    return {'kind': 'Echo', 'exprs': [lit(v) for v in values]}


@pytest.fixture(autouse=True)
def no_env_config(monkeypatch):
    monkeypatch.delenv("PHPWALK_CONFIG", raising=False)


@pytest.fixture
def script(tmp_path):
    def write(statements, name="script.json"):
        path = tmp_path / name
        path.write_text(json.dumps(statements))
        return str(path)
    return write


@pytest.mark.asyncio
async def test_output_goes_to_stdout(script, capsys):
    status = await run_script_file(script([echo("hello ", "world")]))
    assert status == 0
    assert capsys.readouterr().out == "hello world"


@pytest.mark.asyncio
async def test_exit_status_is_passed_through(script, capsys):
    path = script([echo("bye"), {'kind': 'ExprStmt', 'expr': {'kind': 'Exit', 'expr': lit(3)}}])
    assert await run_script_file(path) == 3
    assert capsys.readouterr().out == "bye"


@pytest.mark.asyncio
async def test_fatal_error_reports_on_stderr(script, capsys):
    path = script([{'kind': 'ExprStmt', 'line': 2,
                    'expr': {'kind': 'Call', 'func': 'nope', 'args': []}}])
    assert await run_script_file(path) == FATAL_STATUS
    err = capsys.readouterr().err
    assert "Error on line 2: PHP Fatal error:  Call to undefined function nope()" in err
    assert "Stack trace:" in err


@pytest.mark.asyncio
async def test_print_result(script, capsys):
    path = script([{'kind': 'Return', 'expr': {'kind': 'ArrayLit', 'items': [
        {'kind': 'ArrayItem', 'value': lit(1)}]}}])
    assert await run_script_file(path, print_result=True) == 0
    assert capsys.readouterr().out == "array (\n  0 => 1,\n)\n"


@pytest.mark.asyncio
async def test_config_file_is_applied(script, tmp_path, capsys):
    config = tmp_path / "config.yaml"
    config.write_text("short_circuit_logic: false\n")
    path = script([
        {'kind': 'FunctionDecl', 'name': 'side', 'params': [],
         'body': [echo("side"), {'kind': 'Return', 'expr': lit(True)}]},
        {'kind': 'ExprStmt', 'expr': {'kind': 'BinOp', 'op': '&&', 'left': lit(False),
                                      'right': {'kind': 'Call', 'func': 'side', 'args': []}}},
    ])
    assert await run_script_file(path, config_path=str(config)) == 0
    assert capsys.readouterr().out == "side"


@pytest.mark.asyncio
async def test_streamed_output_is_written_once(script, tmp_path, capsys):
    config = tmp_path / "config.yaml"
    config.write_text("echo_to_stdout: true\n")
    assert await run_script_file(script([echo("a", "b"), echo("c")]), config_path=str(config)) == 0
    assert capsys.readouterr().out == "abc"


@pytest.mark.asyncio
async def test_bad_config_key(
script, tmp_path, capsys):
    config = tmp_path / "config.yaml"
    config.write_text("nonsense: 1\n")
    assert await run_script_file(script([echo("x")]), config_path=str(config)) == 1
    assert "Unknown config keys: nonsense" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_missing_script(tmp_path, capsys):
    assert await run_script_file(str(tmp_path / "absent.json")) == 1
    assert "file not found" in capsys.readouterr().err


def test_main_raises_system_exit(script, capsys):
    path = script([echo("ok")], name="ok.yaml")
    with pytest.raises(SystemExit) as info:
        main([path])
    assert info.value.code == 0
    assert capsys.readouterr().out == "ok"
