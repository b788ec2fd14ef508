import json

import pytest

from phpwalk import php_ast as ast
from phpwalk.php_runtime import ScriptRunner
from phpwalk.php_transformer import AstTransformer


PROGRAM_YAML = """
kind: Program
body:
  - kind: Echo
    line: 1
    exprs:
      - {kind: Lit, value: "hi "}
  - kind: ExprStmt
    line: 3
    expr:
      kind: Call
      func: undefined_fn
      args: []
"""


def test_transform_builds_nodes_with_locations():
    tree = AstTransformer().transform({
        'kind': 'Assign', 'line': 4, 'col': 2,
        'target': {'kind': 'Var', 'name': 'x'},
        'value': {'kind': 'BinOp', 'op': '+', 'left': {'kind': 'Lit', 'value': 1},
                  'right': {'kind': 'Lit', 'value': 2}},
    })
    assert isinstance(tree, ast.Assign)
    assert tree.loc == {'line': 4, 'col': 2}
    assert isinstance(tree.value, ast.BinOp) and tree.value.op == '+'
    assert tree.target.loc is None


def test_literal_values_are_not_transformed():
    lit = AstTransformer().transform({'kind': 'Lit', 'value': {'kind': 'Var'}})
    assert lit.value == {'kind': 'Var'}


def test_program_accepts_a_bare_statement_list():
    program = AstTransformer().program([{'kind': 'Echo', 'exprs': [{'kind': 'Lit', 'value': 1}]}])
    assert isinstance(program, ast.Program)
    assert isinstance(program.body[0], ast.Echo)


def test_unknown_kind_and_field_are_rejected():
    t = AstTransformer()
    with pytest.raises(ValueError, match="Unknown node kind"):
        t.transform({'kind': 'Bogus'})
    with pytest.raises(ValueError, match="Echo has no field 'foo'"):
        t.transform({'kind': 'Echo', 'foo': 1})
    with pytest.raises(ValueError, match="Malformed Var node"):
        t.transform({'kind': 'Var'})


@pytest.mark.asyncio
async def test_yaml_document_runs_and_reports_error_line():
    result = await ScriptRunner().handle_script(PROGRAM_YAML)
    assert result.output == "hi "
    assert result.status == 'error'
    assert result.error_token == {'line': 3, 'col': None}
    assert result.format_error() == \
        "Error on line 3: PHP Fatal error:  Call to undefined function undefined_fn()"


@pytest.mark.asyncio
async def test_json_document_runs():
    doc = json.dumps([
        {'kind': 'ExprStmt', 'expr': {'kind': 'Assign', 'target': {'kind': 'Var', 'name': 'x'},
                                      'value': {'kind': 'Lit', 'value': 41}}},
        {'kind': 'Return', 'expr': {'kind': 'BinOp', 'op': '+', 'left': {'kind': 'Var', 'name': 'x'},
                                    'right': {'kind': 'Lit', 'value': 1}}},
    ])
    result = await ScriptRunner().handle_script(doc)
    assert result.status == 'success'
    assert result.value == 42


@pytest.mark.asyncio
async def test_malformed_document_is_a_parse_error():
    result = await ScriptRunner().handle_script({'kind': 'Program', 'body': [{'kind': 'Nope'}]})
    assert result.status == 'error'
    assert result.error_message.startswith("ParseError: Unknown node kind")
    assert result.format_error() == result.error_message
