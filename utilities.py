"""
Utilities module for the Relay runtime
Value constructors, kind checks, Python conversion and error builders
shared by the evaluator, the built-ins and the effect dispatcher
"""

from typing import Any, Dict, List, Optional, Sequence
import json

from error_handling import TypeMismatchError


# Value kinds
NUMBER = "Number"
STRING = "String"
BOOL = "Bool"
NULL = "Null"
ARRAY = "Array"
OBJECT = "Object"
FUNCTION = "Function"
BUILTIN = "Builtin"
MODEL = "Model"
RECUR = "Recur"
MISSING = "Missing"

DATA_KINDS = (NUMBER, STRING, BOOL, NULL, ARRAY, OBJECT)
CALLABLE_KINDS = (FUNCTION, BUILTIN, MODEL)


# ==================== VALUE CONSTRUCTION ====================

def make_value(value: Any, type_name: str) -> Dict:
  """Create an immutable runtime value"""
  return {
      'value': value,
      'type': type_name
  }


NULL_VALUE = make_value(None, NULL)
TRUE_VALUE = make_value(True, BOOL)
FALSE_VALUE = make_value(False, BOOL)
MISSING_VALUE = make_value(None, MISSING)


def make_bool(flag: bool) -> Dict:
  return TRUE_VALUE if flag else FALSE_VALUE


def make_number(n: Any) -> Dict:
  return make_value(n, NUMBER)


def make_string(s: str) -> Dict:
  return make_value(s, STRING)


def make_array(items: Sequence[Dict]) -> Dict:
  return make_value(list(items), ARRAY)


def make_object(fields: Dict[str, Dict]) -> Dict:
  return make_value(dict(fields), OBJECT)


# ==================== TYPE CHECKING UTILITIES ====================

def value_type(val: Dict) -> str:
  return val.get('type', 'Unknown') if isinstance(val, dict) else type(val).__name__


def is_callable_value(val: Dict) -> bool:
  return value_type(val) in CALLABLE_KINDS


def describe_value(val: Dict, limit: int = 60) -> str:
  """Short human-readable rendering of a value for error messages"""
  text = show_value(val)
  if len(text) > limit:
    text = text[:limit - 3] + "..."
  return f"{value_type(val)} {text}"


# ==================== ERROR MESSAGE BUILDERS ====================

def type_mismatch_error(
  func_name: str,
  operand: str,
  expected: str,
  actual: Dict,
  span: Optional[Dict] = None
) -> TypeMismatchError:
  """
  Generate type mismatch error

  Args:
    func_name: Function or operation name
    operand: Which operand was wrong (e.g. "argument 1")
    expected: Expected kind(s)
    actual: Actual value dict
    span: Source location of the failing node, if known

  Returns:
    TypeMismatchError with formatted message
  """
  actual_type = value_type(actual)
  return TypeMismatchError(
    f"{func_name} requires {expected} for {operand}, got {actual_type}",
    operand=operand, expected=expected, actual=actual_type, span=span
  )


def arity_error(func_name: str, expected: str, got: int, span: Optional[Dict] = None) -> TypeMismatchError:
  """
  Generate arity mismatch error

  Args:
    func_name: Function name
    expected: Accepted argument count, e.g. "2" or "1 to 3"
    got: Actual number of arguments

  Returns:
    TypeMismatchError with formatted message
  """
  return TypeMismatchError(
    f"{func_name} expects {expected} argument(s), got {got}",
    operand="arguments", expected=f"{expected} argument(s)", actual=str(got), span=span
  )


def expect_kind(func_name: str, operand: str, val: Dict, *kinds: str) -> Dict:
  """Return val unchanged if its kind is one of kinds, else raise TypeMismatchError"""
  if value_type(val) not in kinds:
    raise type_mismatch_error(func_name, operand, " or ".join(kinds), val)
  return val


def arity_range(min_args: int, max_args: Optional[int]) -> str:
  if max_args is None:
    return f"at least {min_args}"
  if min_args == max_args:
    return str(min_args)
  return f"{min_args} to {max_args}"


# ==================== PYTHON CONVERSION ====================

def to_python(val: Dict, strict: bool = False) -> Any:
  """
  Recursively unwrap a runtime value into plain Python data

  Args:
    val: Runtime value
    strict: Raise TypeMismatchError for values with no data rendering
            (functions, model handles) instead of describing them

  Returns:
    JSON-compatible Python value
  """
  kind = value_type(val)
  if kind == ARRAY:
    return [to_python(elem, strict) for elem in val['value']]
  if kind == OBJECT:
    return {key: to_python(elem, strict) for key, elem in val['value'].items()}
  if kind in (NUMBER, STRING, BOOL, NULL):
    return val['value']
  if strict:
    raise TypeMismatchError(
      f"{kind} values cannot be converted to data",
      operand="value", expected="data value", actual=kind
    )
  if kind == FUNCTION:
    return f"<function {val.get('name') or 'anonymous'}>"
  if kind == BUILTIN:
    return f"<builtin {val['name']}>"
  if kind == MODEL:
    return "<model>"
  return f"<{kind}>"


def from_python(obj: Any) -> Dict:
  """Wrap plain Python data (as produced by json.loads) into runtime values"""
  if obj is None:
    return NULL_VALUE
  if isinstance(obj, bool):
    return make_bool(obj)
  if isinstance(obj, (int, float)):
    return make_number(obj)
  if isinstance(obj, str):
    return make_string(obj)
  if isinstance(obj, (list, tuple)):
    return make_array([from_python(item) for item in obj])
  if isinstance(obj, dict):
    return make_object({str(key): from_python(item) for key, item in obj.items()})
  raise TypeMismatchError(
    f"Cannot convert Python {type(obj).__name__} into a Relay value",
    operand="value", expected="JSON data", actual=type(obj).__name__
  )


def show_value(val: Dict) -> str:
  """Render a value as compact JSON text"""
  return json.dumps(to_python(val), ensure_ascii=False)


def values_equal(left: Dict, right: Dict) -> bool:
  """Deep structural equality; callables compare by identity"""
  left_kind, right_kind = value_type(left), value_type(right)
  if left_kind != right_kind:
    return False
  if left_kind == ARRAY:
    items_l, items_r = left['value'], right['value']
    return len(items_l) == len(items_r) and all(values_equal(a, b) for a, b in zip(items_l, items_r))
  if left_kind == OBJECT:
    fields_l, fields_r = left['value'], right['value']
    return fields_l.keys() == fields_r.keys() and all(values_equal(fields_l[k], fields_r[k]) for k in fields_l)
  if left_kind in DATA_KINDS:
    return left['value'] == right['value']
  return left is right


def strings_of(func_name: str, seq: Dict) -> List[str]:
  """Extract the Python strings of an Array whose elements must all be Strings"""
  result = []
  for i, elem in enumerate(seq['value']):
    if value_type(elem) != STRING:
      raise type_mismatch_error(func_name, f"element {i} of argument 1", STRING, elem)
    result.append(elem['value'])
  return result
