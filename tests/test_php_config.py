import pytest

from phpwalk.php_config import InterpreterConfig, load_config
from phpwalk.php_serialize import deserialize, detect_format, serialize, to_php
from phpwalk.php_datatypes import PhpArray


def test_defaults():
    config = InterpreterConfig()
    assert config.short_circuit_logic is True
    assert config.catch_by_type is True
    assert config.errors_as_exceptions is False
    assert config.max_call_depth == 512


def test_load_config_from_yaml(tmp_path):
    path = tmp_path / "phpwalk.yaml"
    path.write_text("strict_types: true\nmax_call_depth: 64\nini:\n  precision: 10\n")
    config = load_config(str(path))
    assert config.strict_types is True
    assert config.max_call_depth == 64
    assert config.ini == {'precision': 10}


def test_load_config_falls_back_to_environment(tmp_path, monkeypatch):
    path = tmp_path / "env.yaml"
    path.write_text("catch_by_type: false\n")
    monkeypatch.setenv("PHPWALK_CONFIG", str(path))
    assert load_config().catch_by_type is False
    monkeypatch.delenv("PHPWALK_CONFIG")
    assert load_config() == InterpreterConfig()


def test_unknown_keys_are_rejected(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("strict_types: true\nturbo: 1\n")
    with pytest.raises(ValueError, match="Unknown config keys: turbo"):
        load_config(str(path))


def test_config_must_be_a_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- 1\n- 2\n")
    with pytest.raises(ValueError, match="must contain a mapping"):
        load_config(str(path))


# --- Documents ---

def test_detect_format():
    assert detect_format("script.json") == 'json'
    assert detect_format("script.yml") == 'yaml'
    assert detect_format(None, '  [1, 2]') == 'json'
    assert detect_format(None, 'kind: Program') == 'yaml'
    assert detect_format(None, None) is None


def test_deserialize_errors_are_value_errors():
    with pytest.raises(ValueError, match="Invalid JSON document"):
        deserialize('{"a": ', fmt='json')
    with pytest.raises(ValueError, match="Invalid YAML document"):
        deserialize("a: [1, 2", fmt='yaml')


def test_serialize_json_layout():
    assert serialize({'a': [1, 2]}, fmt='json', pretty=False) == '{"a":[1,2]}'
    assert serialize({'a': 1}, fmt='json') == '{\n    "a": 1\n}'


def test_to_php_arrays_and_objects():
    arr = to_php({'a': [1, {'b': 2}]})
    assert isinstance(arr, PhpArray)
    inner = arr.get('a')
    assert inner.get(0) == 1 and inner.get(1).get('b') == 2

    made = []
    to_php({'x': 1}, make_object=lambda props: made.append(props) or 'obj')
    assert made[0].get('x') == 1
