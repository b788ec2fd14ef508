import pytest

from phpwalk.php_datatypes import PhpArray, Ref, normalize_key, copy_value, INT_MAX
from phpwalk.php_operators import (
    arith, compare, loose_equals, strict_equals, to_str, to_int, format_float, repr_float,
)
from phpwalk.php_datatypes import PhpError


# --- PhpArray ---

def test_array_preserves_insertion_order_and_overwrites_in_place():
    arr = PhpArray()
    arr.set('x', 1)
    arr.set('y', 2)
    arr.set('x', 3)
    assert arr.keys() == ['x', 'y']
    assert arr.get('x') == 3


def test_append_uses_one_past_largest_int_key():
    arr = PhpArray()
    arr.set(None, 'a')
    assert arr.keys() == [0]
    arr.set(5, 'b')
    arr.set(None, 'c')
    assert arr.keys() == [0, 5, 6]


def test_append_index_does_not_shrink_after_unset():
    arr = PhpArray.from_list(['a', 'b', 'c'])
    arr.unset(2)
    arr.append('d')
    assert arr.keys() == [0, 1, 3]


@pytest.mark.parametrize("key, expected", [
    ("1", 1),
    ("01", "01"),
    ("-5", -5),
    (True, 1),
    (1.9, 1),
    (None, ""),
    ("abc", "abc"),
])
def test_key_normalization(key, expected):
    assert normalize_key(key) == expected


def test_numeric_string_key_addresses_int_slot():
    arr = PhpArray()
    arr.set("7", 'seven')
    assert 7 in arr
    assert arr.get(7) == 'seven'


def test_copy_has_value_semantics_for_nested_arrays():
    inner = PhpArray.from_list([1])
    outer = PhpArray.from_pairs([('inner', inner)])
    clone = copy_value(outer)
    clone.get('inner').append(2)
    assert len(outer.get('inner')) == 1


def test_set_writes_through_reference_slots():
    ref = Ref(1)
    arr = PhpArray()
    arr.set_raw('r', ref)
    arr.set('r', 5)
    assert ref.value == 5


def test_is_list():
    assert PhpArray.from_list([1, 2]).is_list()
    assert not PhpArray.from_pairs([(1, 'a')]).is_list()


# --- Operators ---

def test_int_plus_float_is_float():
    result = arith('+', 1, 1.0)
    assert result == 2.0 and isinstance(result, float)


def test_int_plus_int_is_int():
    result = arith('+', 1, 1)
    assert result == 2 and isinstance(result, int)


def test_division_yields_float_when_inexact():
    assert arith('/', 10, 3) == pytest.approx(3.3333333333)
    assert arith('/', 10, 2) == 5


def test_division_by_zero_is_an_error():
    with pytest.raises(PhpError) as excinfo:
        arith('/', 10, 0)
    assert excinfo.value.php_class == 'DivisionByZeroError'
    assert "Division by zero" in excinfo.value.message


def test_integer_overflow_becomes_float():
    assert isinstance(arith('+', INT_MAX, 1), float)


def test_loose_and_strict_equality():
    assert loose_equals("0", 0) is True
    assert strict_equals("0", 0) is False
    assert loose_equals("abc", 0) is False
    assert loose_equals(None, False) is True
    assert loose_equals("1e3", "1000") is True


def test_three_way_compare():
    assert compare(1, 2) == -1
    assert compare("b", "a") == 1
    assert compare(2, 2.0) == 0


def test_string_conversions():
    assert to_str(True) == "1"
    assert to_str(False) == ""
    assert to_str(None) == ""
    assert to_str(1.0) == "1"
    assert to_int("12abc") == 12


def test_float_formatting():
    assert format_float(0.1 + 0.2) == "0.3"
    assert repr_float(0.1 + 0.2) == "0.30000000000000004"
    assert repr_float(2.0) == "2"
