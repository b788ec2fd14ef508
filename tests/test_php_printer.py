import pytest

from phpwalk.php_datatypes import PhpArray
from phpwalk.php_printer import Printer
from builders import run, call, array, echo, stmt


def assoc(**pairs):
    arr = PhpArray()
    for k, v in pairs.items():
        arr.set(k, v)
    return arr


@pytest.fixture
def printer():
    return Printer()


def test_var_dump_scalars(printer):
    assert printer.var_dump(None) == "NULL\n"
    assert printer.var_dump(True) == "bool(true)\n"
    assert printer.var_dump(7) == "int(7)\n"
    assert printer.var_dump(1.5) == "float(1.5)\n"
    assert printer.var_dump("héllo") == 'string(6) "héllo"\n'


def test_var_dump_list(printer):
    out = printer.var_dump(PhpArray.from_list([1, "a"]))
    assert out == 'array(2) {\n  [0]=>\n  int(1)\n  [1]=>\n  string(1) "a"\n}\n'


def test_var_dump_nested(printer):
    out = printer.var_dump(assoc(a=PhpArray.from_list([1])))
    assert out == 'array(1) {\n  ["a"]=>\n  array(1) {\n    [0]=>\n    int(1)\n  }\n}\n'


def test_print_r_flat_and_nested(printer):
    assert printer.print_r(assoc(a=2, b=4)) == "Array\n(\n    [a] => 2\n    [b] => 4\n)\n"
    nested = printer.print_r(assoc(a=1, b=PhpArray.from_list([2])))
    assert nested == ("Array\n(\n    [a] => 1\n    [b] => Array\n        (\n"
                      "            [0] => 2\n        )\n\n)\n")


def test_print_r_scalars(printer):
    assert printer.print_r(True) == "1"
    assert printer.print_r(False) == ""
    assert printer.print_r(None) == ""


def test_var_export_values(printer):
    assert printer.var_export(assoc(a=1, b=True)) == "array (\n  'a' => 1,\n  'b' => true,\n)"
    assert printer.var_export(1.0) == "1.0"
    assert printer.var_export("it's") == "'it\\'s'"
    assert printer.var_export(None) == "NULL"


def test_var_export_nested(printer):
    out = printer.var_export(assoc(a=PhpArray.from_list([1])))
    assert out == "array (\n  'a' => \n  array (\n    0 => 1,\n  ),\n)"


@pytest.mark.asyncio
async def test_print_r_return_mode_from_script():
    _, res = await run(
        echo(call('print_r', array(1), True), "|"),
        stmt(call('var_dump', 1, "x")),
    )
    assert res.output == 'Array\n(\n    [0] => 1\n)\n|int(1)\nstring(1) "x"\n'
