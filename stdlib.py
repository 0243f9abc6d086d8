"""
Relay Standard Library
First-order built-in functions and operators over runtime values.
Higher-order built-ins (map, filter, every, ...) and object() live in
interpreter.py since they need to apply closures or reach the dispatcher
"""

from typing import Callable, Dict, List, Optional

from error_handling import RelayRuntimeError
from utilities import (
  NUMBER, STRING, NULL, ARRAY, OBJECT, MISSING, BUILTIN,
  NULL_VALUE,
  make_value,
  make_bool,
  make_number,
  make_string,
  make_array,
  make_object,
  expect_kind,
  type_mismatch_error,
  show_value,
  strings_of,
  value_type,
  values_equal
)


# ============================================================================
# PREDICATES
# ============================================================================

def relay_is_null(value: Dict) -> Dict:
  """True for null and for a missing field"""
  return make_bool(value_type(value) in (NULL, MISSING))


def relay_is_defined(value: Dict) -> Dict:
  """True for any present, non-null value, including false and 0"""
  return make_bool(value_type(value) not in (NULL, MISSING))


# ============================================================================
# ARRAY FUNCTIONS
# ============================================================================

def relay_concat(first: Dict, second: Dict) -> Dict:
  """Order-preserving concatenation of two arrays, no deduplication"""
  expect_kind("concat", "argument 1", first, ARRAY)
  expect_kind("concat", "argument 2", second, ARRAY)
  return make_array(first['value'] + second['value'])


def relay_join(seq: Dict, separator: Dict) -> Dict:
  """Join an array of strings"""
  expect_kind("join", "argument 1", seq, ARRAY)
  expect_kind("join", "argument 2", separator, STRING)
  return make_string(separator['value'].join(strings_of("join", seq)))


def relay_append(seq: Dict, item: Dict) -> Dict:
  """New array with item added at the end"""
  expect_kind("append", "argument 1", seq, ARRAY)
  return make_array(seq['value'] + [item])


def relay_length(value: Dict) -> Dict:
  """Length of an array, string or object"""
  expect_kind("length", "argument 1", value, ARRAY, STRING, OBJECT)
  return make_number(len(value['value']))


def relay_first(seq: Dict) -> Dict:
  expect_kind("first", "argument 1", seq, ARRAY)
  return seq['value'][0] if seq['value'] else NULL_VALUE


def relay_last(seq: Dict) -> Dict:
  expect_kind("last", "argument 1", seq, ARRAY)
  return seq['value'][-1] if seq['value'] else NULL_VALUE


def relay_range(start: Dict, end: Optional[Dict] = None) -> Dict:
  """range(n) is 0..n-1, range(a, b) is a..b-1"""
  if end is None:
    start, end = make_number(0), start
  for operand, value in (("argument 1", start), ("argument 2", end)):
    if value_type(value) != NUMBER or not isinstance(value['value'], int):
      raise type_mismatch_error("range", operand, "integer Number", value)
  return make_array([make_number(i) for i in range(start['value'], end['value'])])


# ============================================================================
# OBJECT FUNCTIONS
# ============================================================================

def relay_merge(base: Dict, overrides: Dict) -> Dict:
  """Fields of overrides replace those of base; base key order is kept"""
  expect_kind("merge", "argument 1", base, OBJECT)
  expect_kind("merge", "argument 2", overrides, OBJECT)
  return make_object({**base['value'], **overrides['value']})


def relay_keys(obj: Dict) -> Dict:
  expect_kind("keys", "argument 1", obj, OBJECT)
  return make_array([make_string(key) for key in obj['value']])


def relay_get(container: Dict, key: Dict, default: Dict = NULL_VALUE) -> Dict:
  """Field or element lookup with a fallback instead of an error"""
  expect_kind("get", "argument 1", container, OBJECT, ARRAY)
  if value_type(container) == OBJECT:
    expect_kind("get", "argument 2", key, STRING)
    return container['value'].get(key['value'], default)
  expect_kind("get", "argument 2", key, NUMBER)
  index = key['value']
  items = container['value']
  if isinstance(index, int) and -len(items) <= index < len(items):
    return items[index]
  return default


def relay_has(obj: Dict, key: Dict) -> Dict:
  expect_kind("has?", "argument 1", obj, OBJECT)
  expect_kind("has?", "argument 2", key, STRING)
  return make_bool(key['value'] in obj['value'])


def relay_show(value: Dict) -> Dict:
  """Render any value as JSON text"""
  return make_string(show_value(value))


def relay_type_of(value: Dict) -> Dict:
  """Kind name of any value, e.g. "Object" or "String" """
  return make_string(value_type(value))


# ============================================================================
# OPERATORS
# ============================================================================

def _numbers(op: str, left: Dict, right: Dict) -> None:
  expect_kind(op, "left operand", left, NUMBER)
  expect_kind(op, "right operand", right, NUMBER)


def relay_add(left: Dict, right: Dict) -> Dict:
  """Add numbers, or concatenate two strings or two arrays"""
  kind = value_type(left)
  if kind in (STRING, ARRAY) and value_type(right) == kind:
    return make_value(left['value'] + right['value'], kind)
  if kind in (STRING, ARRAY):
    raise type_mismatch_error("+", "right operand", kind, right)
  _numbers("+", left, right)
  return make_number(left['value'] + right['value'])


def relay_sub(left: Dict, right: Dict) -> Dict:
  _numbers("-", left, right)
  return make_number(left['value'] - right['value'])


def relay_mul(left: Dict, right: Dict) -> Dict:
  _numbers("*", left, right)
  return make_number(left['value'] * right['value'])


def relay_div(left: Dict, right: Dict) -> Dict:
  _numbers("/", left, right)
  if right['value'] == 0:
    raise RelayRuntimeError("Division by zero")
  a, b = left['value'], right['value']
  if isinstance(a, int) and isinstance(b, int) and a % b == 0:
    return make_number(a // b)
  return make_number(a / b)


def relay_mod(left: Dict, right: Dict) -> Dict:
  _numbers("%", left, right)
  if right['value'] == 0:
    raise RelayRuntimeError("Modulo by zero")
  return make_number(left['value'] % right['value'])


def _comparison(op: str, compare: Callable) -> Callable:
  def comparison(left: Dict, right: Dict) -> Dict:
    kind = value_type(left)
    if kind not in (NUMBER, STRING):
      raise type_mismatch_error(op, "left operand", "Number or String", left)
    if value_type(right) != kind:
      raise type_mismatch_error(op, "right operand", kind, right)
    return make_bool(compare(left['value'], right['value']))
  return comparison


def relay_eq(left: Dict, right: Dict) -> Dict:
  return make_bool(values_equal(left, right))


def relay_ne(left: Dict, right: Dict) -> Dict:
  return make_bool(not values_equal(left, right))


OPERATORS: Dict[str, Callable] = {
    '+': relay_add,
    '-': relay_sub,
    '*': relay_mul,
    '/': relay_div,
    '%': relay_mod,
    '==': relay_eq,
    '!=': relay_ne,
    '<': _comparison('<', lambda a, b: a < b),
    '>': _comparison('>', lambda a, b: a > b),
    '<=': _comparison('<=', lambda a, b: a <= b),
    '>=': _comparison('>=', lambda a, b: a >= b),
}


# ============================================================================
# BUILT-IN FUNCTION REGISTRY
# ============================================================================

def make_builtin_function(name: str, func: Callable, min_args: int, max_args: Optional[int],
                          type_signature: str = "", accepts_missing: bool = False,
                          needs_runtime: bool = False) -> Dict:
  """Create a built-in function value.

  accepts_missing: a missing field passed directly as an argument arrives as
  a Missing value instead of raising (is-null?, is-defined?).
  needs_runtime: func is called as func(runtime, *args) where runtime gives
  access to closure application and the effect dispatcher.
  """
  return {
      'type': BUILTIN,
      'name': name,
      'func': func,
      'min_args': min_args,
      'max_args': max_args,
      'type_signature': type_signature,
      'accepts_missing': accepts_missing,
      'needs_runtime': needs_runtime
  }


# Note: map, filter, every, any, reduce and object are registered in interpreter.py
BUILTIN_FUNCTIONS: Dict[str, Dict] = {
    "is-null?": make_builtin_function("is-null?", relay_is_null, 1, 1, "a -> Bool", accepts_missing=True),
    "is-defined?": make_builtin_function("is-defined?", relay_is_defined, 1, 1, "a -> Bool", accepts_missing=True),
    "concat": make_builtin_function("concat", relay_concat, 2, 2, "Array -> Array -> Array"),
    "join": make_builtin_function("join", relay_join, 2, 2, "Array String -> String -> String"),
    "append": make_builtin_function("append", relay_append, 2, 2, "Array -> a -> Array"),
    "length": make_builtin_function("length", relay_length, 1, 1, "Array|String|Object -> Number"),
    "first": make_builtin_function("first", relay_first, 1, 1, "Array -> a"),
    "last": make_builtin_function("last", relay_last, 1, 1, "Array -> a"),
    "range": make_builtin_function("range", relay_range, 1, 2, "Number -> Number? -> Array"),
    "merge": make_builtin_function("merge", relay_merge, 2, 2, "Object -> Object -> Object"),
    "keys": make_builtin_function("keys", relay_keys, 1, 1, "Object -> Array"),
    "get": make_builtin_function("get", relay_get, 2, 3, "Object|Array -> String|Number -> a? -> a"),
    "has?": make_builtin_function("has?", relay_has, 2, 2, "Object -> String -> Bool"),
    "show": make_builtin_function("show", relay_show, 1, 1, "a -> String"),
    "type-of": make_builtin_function("type-of", relay_type_of, 1, 1, "a -> String"),
}

HIGHER_ORDER_NAMES = frozenset({"map", "filter", "every", "any", "reduce", "object"})

BUILTIN_NAMES = frozenset(BUILTIN_FUNCTIONS) | HIGHER_ORDER_NAMES


def list_builtin_functions() -> List[str]:
  """List all available built-in functions"""
  return sorted(BUILTIN_NAMES)
