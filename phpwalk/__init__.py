"""phpwalk: a tree-walking evaluator for PHP abstract syntax trees."""
from phpwalk.php_config import InterpreterConfig, load_config
from phpwalk.php_interpreter import Evaluator
from phpwalk.php_runtime import ExecutionResult, ScriptRunner

__all__ = ["InterpreterConfig", "load_config", "Evaluator", "ExecutionResult", "ScriptRunner"]
