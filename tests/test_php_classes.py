import pytest

from phpwalk import php_ast as ast
from builders import (
    run, var, call, new, mcall, scall, prop, index, binop, array, assign, stmt, echo, ret,
    param, method, node,
)


def this(name):
    return prop(var('this'), name)


def cls(name, *members, **kw):
    return ast.ClassDecl(name, members=list(members), **kw)


def field(name, default=None, **kw):
    return ast.PropertyDecl(name, None if default is None else node(default), **kw)


def ternary(cond, then, else_):
    return ast.Ternary(cond, ast.Lit(then), ast.Lit(else_))


# --- Objects and methods ---

@pytest.mark.asyncio
async def test_constructor_and_method():
    point = cls('Point',
                field('x'), field('y'),
                method('__construct', ['x', 'y'], [assign(this('x'), var('x')),
                                                   assign(this('y'), var('y'))]),
                method('sum', [], [ret(binop('+', this('x'), this('y')))]))
    _, res = await run(point, assign('p', new('Point', 2, 3)), echo(mcall(var('p'), 'sum')))
    assert res.status == 'success'
    assert res.output == "5"


@pytest.mark.asyncio
async def test_objects_are_shared_handles():
    _, res = await run(
        cls('Box', field('v', 1)),
        assign('a', new('Box')),
        assign('b', var('a')),
        assign(prop(var('b'), 'v'), 5),
        echo(prop(var('a'), 'v')),
    )
    assert res.output == "5"


@pytest.mark.asyncio
async def test_parent_method_call():
    base = cls('A', method('hi', [], [ret("A")]))
    child = cls('B', method('hi', [], [ret(binop('.', "B", scall('parent', 'hi')))]), parent='A')
    _, res = await run(base, child, echo(mcall(new('B'), 'hi')))
    assert res.output == "BA"


@pytest.mark.asyncio
async def test_late_static_binding():
    base = cls('A',
               method('create', [], [ret(new('static'))], static=True),
               method('name', [], [ret(ast.ClassConstFetch('static', 'class'))], static=True))
    _, res = await run(
        base, cls('B', parent='A'),
        echo(scall('B', 'name'), " ", call('get_class', scall('B', 'create')), " ", scall('A', 'name')),
    )
    assert res.output == "B B A"


@pytest.mark.asyncio
async def test_static_property_counter():
    counter = cls('C',
                  field('n', 0, static=True),
                  method('__construct', [], [assign(ast.StaticPropFetch('self', 'n'), 1, op='+')]))
    _, res = await run(counter, stmt(new('C')), stmt(new('C')), echo(ast.StaticPropFetch('C', 'n')))
    assert res.output == "2"


@pytest.mark.asyncio
async def test_class_constants_reference_each_other():
    k = cls('K',
            ast.ClassConstDecl('A', ast.Lit(2)),
            ast.ClassConstDecl('B', binop('*', ast.ClassConstFetch('self', 'A'), 3)))
    _, res = await run(k, echo(ast.ClassConstFetch('K', 'B')))
    assert res.output == "6"


# --- Visibility and declaration checks ---

@pytest.mark.asyncio
async def test_protected_method_is_not_callable_from_outside():
    a = cls('A', method('secret', [], [ret(1)], visibility='protected'))
    _, res = await run(a, echo(mcall(new('A'), 'secret')))
    assert res.status == 'error'
    assert "Call to protected method A::secret() from global scope" in res.error_message


@pytest.mark.asyncio
async def test_private_property_is_hidden():
    a = cls('A', field('x', 1, visibility='private'))
    _, res = await run(a, echo(prop(new('A'), 'x')))
    assert res.status == 'error'
    assert "Cannot access private property A::$x" in res.error_message


@pytest.mark.asyncio
async def test_abstract_class_cannot_be_instantiated():
    _, res = await run(cls('A', abstract=True), stmt(new('A')))
    assert res.status == 'error'
    assert "Cannot instantiate abstract class A" in res.error_message


@pytest.mark.asyncio
async def test_missing_abstract_implementation_fails_at_declaration():
    a = cls('A', method('f', [], None, abstract=True), abstract=True)
    _, res = await run(echo("start"), a, cls('B', parent='A'))
    assert res.status == 'error'
    assert ("Class B contains 1 abstract method and must therefore be declared abstract "
            "or implement the remaining methods (A::f)") in res.error_message
    assert res.output == "start"


@pytest.mark.asyncio
async def test_interfaces_and_instanceof():
    shape = ast.InterfaceDecl('Shape', members=[method('area', [], None)])
    square = cls('Square', method('area', [], [ret(4)]), interfaces=['Shape'])
    _, res = await run(
        shape, square,
        assign('s', new('Square')),
        echo(ternary(ast.Instanceof(var('s'), 'Shape'), "yes", "no"), mcall(var('s'), 'area')),
    )
    assert res.output == "yes4"


@pytest.mark.asyncio
async def test_class_used_before_its_declaration():
    _, res = await run(echo(mcall(new('Later'), 'hi')), cls('Later', method('hi', [], [ret("hoisted")])))
    assert res.output == "hoisted"


# --- Magic methods ---

@pytest.mark.asyncio
async def test_to_string_in_echo_and_concat():
    named = cls('Named', method('__toString', [], [ret("N")]))
    _, res = await run(named, assign('n', new('Named')), echo(var('n'), binop('.', "-", var('n'))))
    assert res.output == "N-N"


@pytest.mark.asyncio
async def test_object_without_to_string_cannot_be_echoed():
    _, res = await run(cls('Plain'), echo(new('Plain')))
    assert res.status == 'error'
    assert "Object of class Plain could not be converted to string" in res.error_message


@pytest.mark.asyncio
async def test_magic_get_and_call():
    magic = cls('M',
                method('__get', ['n'], [ret(ast.Interp(["got ", var('n')]))]),
                method('__call', ['name', 'args'],
                       [ret(binop('.', var('name'), call('count', var('args'))))]))
    _, res = await run(magic, assign('m', new('M')),
                       echo(prop(var('m'), 'foo'), "|", mcall(var('m'), 'hello', 1, 2)))
    assert res.output == "got foo|hello2"


# --- Traits, readonly, clone ---

@pytest.mark.asyncio
async def test_trait_methods_see_the_using_class():
    greets = ast.TraitDecl('Greets', members=[
        method('greet', [], [ret(binop('.', "hi ", this('name')))]),
    ])
    person = cls('Person', ast.TraitUse(['Greets']), field('name', "Bo"))
    _, res = await run(greets, person, echo(mcall(new('Person'), 'greet')))
    assert res.output == "hi Bo"


@pytest.mark.asyncio
async def test_readonly_promoted_property():
    point = cls('P', method('__construct', [param('x', type='int', promote='public', readonly=True)], []))
    _, res = await run(
        point,
        assign('p', new('P', 3)),
        echo(prop(var('p'), 'x')),
        assign(prop(var('p'), 'x'), 4),
    )
    assert res.output == "3"
    assert res.status == 'error'
    assert "Cannot modify readonly property P::$x" in res.error_message


@pytest.mark.asyncio
async def test_clone_copies_arrays_and_runs_hook():
    item = cls('C',
               field('items', array()),
               field('tag', "orig"),
               method('__clone', [], [assign(this('tag'), "copy")]))
    _, res = await run(
        item,
        assign('a', new('C')),
        assign('b', ast.Clone(var('a'))),
        assign(index(prop(var('b'), 'items')), 1),
        echo(call('count', prop(var('a'), 'items')), call('count', prop(var('b'), 'items')),
             prop(var('a'), 'tag'), prop(var('b'), 'tag')),
    )
    assert res.output == "01origcopy"


# --- Enums ---

def suit():
    return ast.EnumDecl('Suit', backing_type='string', members=[
        ast.EnumCase('Hearts', ast.Lit('H')),
        ast.EnumCase('Spades', ast.Lit('S')),
    ])


@pytest.mark.asyncio
async def test_backed_enum_lookup():
    _, res = await run(
        suit(),
        echo(prop(scall('Suit', 'from', 'S'), 'name'), " "),
        echo(ternary(binop('===', scall('Suit', 'tryFrom', 'X'), None), "none", "some"), " "),
        echo(call('count', scall('Suit', 'cases')), " "),
        echo(ternary(binop('===', ast.ClassConstFetch('Suit', 'Hearts'), scall('Suit', 'from', 'H')),
                     "same", "diff")),
    )
    assert res.status == 'success'
    assert res.output == "Spades none 2 same"


@pytest.mark.asyncio
async def test_enum_from_invalid_value_throws_value_error():
    _, res = await run(
        suit(),
        ast.Try([stmt(scall('Suit', 'from', 'Z'))],
                [ast.Catch(['ValueError'], 'e', [echo(mcall(var('e'), 'getMessage'))])]),
    )
    assert res.output == '"Z" is not a valid backing value for enum Suit'


# --- Exceptions and builtin interfaces ---

@pytest.mark.asyncio
async def test_user_exception_subclass():
    _, res = await run(
        cls('MyErr', parent='Exception'),
        ast.Try([stmt(ast.Throw(new('MyErr', "bad", 7)))],
                [ast.Catch(['RuntimeException'], 'e', [echo("wrong")]),
                 ast.Catch(['Exception'], 'e', [echo(call('get_class', var('e')), ":",
                                                     mcall(var('e'), 'getMessage'), ":",
                                                     mcall(var('e'), 'getCode'))])]),
    )
    assert res.output == "MyErr:bad:7"


@pytest.mark.asyncio
async def test_iterator_aggregate_and_countable():
    bag = cls('Bag',
              field('items', array(1, 2), visibility='private'),
              method('getIterator', [], [ret(new('ArrayIterator', this('items')))]),
              method('count', [], [ret(2)]),
              interfaces=['IteratorAggregate', 'Countable'])
    _, res = await run(
        bag,
        assign('bag', new('Bag')),
        ast.Foreach(var('bag'), var('v'), body=[echo(var('v'))]),
        echo(call('count', var('bag'))),
    )
    assert res.output == "122"


# --- Visibility from subclasses ---

@pytest.mark.asyncio
async def test_protected_method_is_callable_from_subclass():
    a = cls('A', method('secret', [], [ret("A")], visibility='protected'))
    b = cls('B', method('reveal', [], [ret(binop('.', mcall(var('this'), 'secret'), "B"))]), parent='A')
    _, res = await run(a, b, echo(mcall(new('B'), 'reveal')))
    assert res.status == 'success'
    assert res.output == "AB"


# --- Trait conflict resolution ---

@pytest.mark.asyncio
async def test_trait_insteadof_and_alias():
    hello = ast.TraitDecl('Hello', members=[method('say', [], [ret("hello")])])
    world = ast.TraitDecl('World', members=[method('say', [], [ret("world")])])
    greeter = cls('Greeter', ast.TraitUse(['Hello', 'World'], [
        ast.TraitAdaptation('say', trait='Hello', insteadof=['World']),
        ast.TraitAdaptation('say', trait='World', alias='sayWorld'),
    ]))
    _, res = await run(
        hello, world, greeter,
        assign('g', new('Greeter')),
        echo(mcall(var('g'), 'say'), " ", mcall(var('g'), 'sayWorld')),
    )
    assert res.status == 'success'
    assert res.output == "hello world"


@pytest.mark.asyncio
async def test_trait_method_collision_is_an_error():
    one = ast.TraitDecl('One', members=[method('f', [], [ret(1)])])
    two = ast.TraitDecl('Two', members=[method('f', [], [ret(2)])])
    _, res = await run(one, two, cls('Both', ast.TraitUse(['One', 'Two'])), stmt(new('Both')))
    assert res.status == 'error'
    assert "Trait method One::f has not been applied as Both::f" in res.error_message


# --- More magic methods ---

@pytest.mark.asyncio
async def test_magic_set_isset_and_unset():
    def slot():
        return index(this('data'), var('k'))

    bag = cls('Bag',
              field('data', array(), visibility='private'),
              method('__get', ['k'], [ret(slot())]),
              method('__set', ['k', 'v'], [assign(slot(), var('v'))]),
              method('__isset', ['k'], [ret(ast.Isset([slot()]))]),
              method('__unset', ['k'], [ast.Unset([slot()])]))
    present = ternary(ast.Isset([prop(var('b'), 'x')]), "Y", "N")
    _, res = await run(
        bag,
        assign('b', new('Bag')),
        assign(prop(var('b'), 'x'), 10),
        echo(prop(var('b'), 'x'), present),
        ast.Unset([prop(var('b'), 'x')]),
        echo(present),
    )
    assert res.status == 'success'
    assert res.output == "10YN"


@pytest.mark.asyncio
async def test_magic_invoke_and_call_static():
    fn = cls('Fn',
             method('__invoke', ['x'], [ret(binop('*', var('x'), 2))]),
             method('__callStatic', ['name', 'args'],
                    [ret(binop('.', var('name'), call('count', var('args'))))], static=True))
    _, res = await run(
        fn,
        assign('f', new('Fn')),
        echo(ast.Call(var('f'), [ast.Arg(ast.Lit(5))]), "|",
             call('implode', ",", call('array_map', var('f'), array(1, 2))), "|",
             scall('Fn', 'zap', 1, 2)),
    )
    assert res.status == 'success'
    assert res.output == "10|2,4|zap2"


# --- Namespaced classes ---

@pytest.mark.asyncio
async def test_use_alias_and_qualified_class_names():
    lib = ast.Namespace('Lib', [
        cls('Tool', method('name', [], [ret(ast.ClassConstFetch('static', 'class'))])),
    ])
    app = ast.Namespace('App', [
        ast.Use([ast.UseItem('Lib\\Tool', alias='T')]),
        echo(mcall(new('T'), 'name'), " ", mcall(new('\\Lib\\Tool'), 'name'), " ",
             ast.ClassConstFetch('T', 'class')),
    ])
    _, res = await run(lib, app)
    assert res.status == 'success'
    assert res.output == "Lib\\Tool Lib\\Tool Lib\\Tool"


@pytest.mark.asyncio
async def test_namespaced_class_extends_global_builtin():
    app = ast.Namespace('App', [
        cls('Failure', parent='Exception'),
        ast.Try([stmt(ast.Throw(new('Failure', "nope")))],
                [ast.Catch(['\\Exception'], 'e', [echo(call('get_class', var('e')), ":",
                                                       mcall(var('e'), 'getMessage'))])]),
    ])
    _, res = await run(app)
    assert res.output == "App\\Failure:nope"


# --- Object handles ---

@pytest.mark.asyncio
async def test_object_ids_are_numbered_per_run():
    program = [cls('Thing'), echo(call('spl_object_id', new('Thing')), call('spl_object_id', new('Thing')))]
    _, first = await run(*program)
    _, second = await run(*program)
    assert first.output == "12"
    assert second.output == "12"
