"""
Relay Interpreter - Pure Functional Style
Tree-walking evaluator over the analyzed AST. Values and environments are
immutable dictionaries; the only side effects (model calls) go through the
effect dispatcher carried in the execution context
"""

from typing import Any, Dict, List, Optional
from concurrent.futures import ThreadPoolExecutor, as_completed
import logging
import threading

from error_handling import (
  RelayRuntimeError,
  UnboundIdentifierError,
  NoMatchError,
  RecurOutsideLoopError,
  ModelError
)
from effects import coerce_structured
from semantics import IT
from stdlib import BUILTIN_FUNCTIONS, OPERATORS, make_builtin_function
from utilities import (
  NUMBER, STRING, BOOL, NULL, ARRAY, OBJECT, FUNCTION, BUILTIN, MODEL, RECUR, MISSING,
  NULL_VALUE,
  MISSING_VALUE,
  make_bool,
  make_number,
  make_string,
  make_array,
  make_object,
  arity_error,
  arity_range,
  describe_value,
  expect_kind,
  is_callable_value,
  to_python,
  type_mismatch_error,
  value_type
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8


# ============================================================================
# DATA STRUCTURES (Immutable Dictionaries)
# ============================================================================

def make_runtime_env(parent: Optional[Dict] = None, bindings: Optional[Dict] = None) -> Dict:
  """Create an immutable runtime environment"""
  return {
      'parent': parent,
      'bindings': {} if bindings is None else bindings
  }


def make_function(name: Optional[str], params: List[str], defaults: List[Optional[Dict]],
                  body: Dict, closure_env: Dict) -> Dict:
  """Create a closure. closure_env is captured by reference, never copied"""
  return {
      'type': FUNCTION,
      'name': name,
      'params': params,
      'defaults': defaults,
      'body': body,
      'closure_env': closure_env
  }


def make_model_handle(template: str, options: Optional[Dict] = None) -> Dict:
  """Opaque model-invocation value: calling it routes through the dispatcher"""
  return {
      'type': MODEL,
      'template': template,
      'options': options or {}
  }


def make_recur(state: Dict) -> Dict:
  return {
      'type': RECUR,
      'state': state
  }


def make_execution_context(dispatcher=None, parallel: bool = True,
                           max_workers: int = DEFAULT_MAX_WORKERS,
                           cancel_event: Optional[threading.Event] = None) -> Dict:
  """
  Create the execution context threaded through evaluation

  Args:
    dispatcher: EffectDispatcher for model calls (None disables them)
    parallel: Fan independent suspending let bindings out onto threads
    max_workers: Upper bound on threads per fan-out
    cancel_event: Set when a sibling branch failed; only present inside fan-outs
  """
  return {
      'dispatcher': dispatcher,
      'parallel': parallel,
      'max_workers': max_workers,
      'cancel_event': cancel_event
  }


# ============================================================================
# ENVIRONMENT OPERATIONS
# ============================================================================

def env_bind(env: Dict, bindings: Dict[str, Dict]) -> Dict:
  """Return a child environment holding bindings"""
  return make_runtime_env(env, dict(bindings))


def env_lookup_value(env: Dict, name: str) -> Optional[Dict]:
  """Look up a value in the environment chain, nearest binding first"""
  while env is not None:
    if name in env['bindings']:
      return env['bindings'][name]
    env = env['parent']
  return None


# ============================================================================
# FUNCTION APPLICATION
# ============================================================================

def apply_function(func: Dict, args: List[Dict], context: Dict,
                   tail: bool = False, span: Optional[Dict] = None) -> Dict:
  """
  Apply a callable value to evaluated arguments

  Args:
    func: Closure, builtin or model handle
    args: Argument values, positional
    context: Execution context
    tail: The call is a loop body application, so the body may produce recur
    span: Call site, for error messages
  """
  kind = value_type(func)

  if kind == FUNCTION:
    params = func['params']
    defaults = func['defaults']
    if len(args) > len(params) or any(defaults[i] is None for i in range(len(args), len(params))):
      required = sum(1 for d in defaults if d is None)
      raise arity_error(func['name'] or "anonymous function",
                        arity_range(required, len(params)), len(args), span)
    bindings = dict(zip(params, args))
    for i in range(len(args), len(params)):
      # defaults see the closure scope plus the parameters bound before them
      scope = make_runtime_env(func['closure_env'], dict(bindings))
      bindings[params[i]] = eval_ast(defaults[i], scope, context)
    return eval_ast(func['body'], make_runtime_env(func['closure_env'], bindings), context, tail)

  if kind == BUILTIN:
    if len(args) < func['min_args'] or (func['max_args'] is not None and len(args) > func['max_args']):
      raise arity_error(func['name'], arity_range(func['min_args'], func['max_args']), len(args), span)
    if func['needs_runtime']:
      return func['func'](context, *args)
    return func['func'](*args)

  if kind == MODEL:
    if len(args) != 1:
      raise arity_error("model", "1", len(args), span)
    dispatcher = context.get('dispatcher')
    if dispatcher is None:
      raise ModelError("no model backend is configured", ModelError.PERMANENT, "rejected", span=span)
    return dispatcher.invoke(func, args[0], context.get('cancel_event'))

  raise type_mismatch_error("call", "callee", "Function", func, span)


# ============================================================================
# HIGHER-ORDER BUILT-INS
# ============================================================================

def _callable_arg(name: str, operand: str, func: Dict) -> Dict:
  if not is_callable_value(func):
    raise type_mismatch_error(name, operand, "Function", func)
  return func


def _predicate_result(name: str, result: Dict) -> bool:
  if value_type(result) != BOOL:
    raise type_mismatch_error(name, "predicate result", BOOL, result)
  return result['value']


def relay_map(context: Dict, seq: Dict, func: Dict) -> Dict:
  """Apply func to every element, preserving order"""
  expect_kind("map", "argument 1", seq, ARRAY)
  _callable_arg("map", "argument 2", func)
  return make_array([apply_function(func, [elem], context) for elem in seq['value']])


def relay_filter(context: Dict, seq: Dict, pred: Dict) -> Dict:
  """Keep the elements pred holds for, preserving order"""
  expect_kind("filter", "argument 1", seq, ARRAY)
  _callable_arg("filter", "argument 2", pred)
  return make_array([
      elem for elem in seq['value']
      if _predicate_result("filter", apply_function(pred, [elem], context))
  ])


def relay_every(context: Dict, seq: Dict, pred: Dict) -> Dict:
  """True when pred holds for all elements; stops at the first false"""
  expect_kind("every", "argument 1", seq, ARRAY)
  _callable_arg("every", "argument 2", pred)
  for elem in seq['value']:
    if not _predicate_result("every", apply_function(pred, [elem], context)):
      return make_bool(False)
  return make_bool(True)


def relay_any(context: Dict, seq: Dict, pred: Dict) -> Dict:
  """True when pred holds for some element; stops at the first true"""
  expect_kind("any", "argument 1", seq, ARRAY)
  _callable_arg("any", "argument 2", pred)
  for elem in seq['value']:
    if _predicate_result("any", apply_function(pred, [elem], context)):
      return make_bool(True)
  return make_bool(False)


def relay_reduce(context: Dict, seq: Dict, func: Dict, init: Dict) -> Dict:
  """Left fold: func(acc, elem) for each element, starting from init"""
  expect_kind("reduce", "argument 1", seq, ARRAY)
  _callable_arg("reduce", "argument 2", func)
  acc = init
  for elem in seq['value']:
    acc = apply_function(func, [acc, elem], context)
  return acc


def relay_object(context: Dict, value: Optional[Dict] = None) -> Dict:
  """
  Coerce a model response into an Object or Array.
  object() with no argument is the coercion function itself, so that
  `text >> object()` reads naturally
  """
  if value is None:
    return HIGHER_ORDER_FUNCTIONS["object"]
  dispatcher = context.get('dispatcher')
  if dispatcher is None:
    return coerce_structured(value)
  return dispatcher.coerce(value)


HIGHER_ORDER_FUNCTIONS: Dict[str, Dict] = {
    "map": make_builtin_function("map", relay_map, 2, 2, "Array -> (a -> b) -> Array", needs_runtime=True),
    "filter": make_builtin_function("filter", relay_filter, 2, 2, "Array -> (a -> Bool) -> Array", needs_runtime=True),
    "every": make_builtin_function("every", relay_every, 2, 2, "Array -> (a -> Bool) -> Bool", needs_runtime=True),
    "any": make_builtin_function("any", relay_any, 2, 2, "Array -> (a -> Bool) -> Bool", needs_runtime=True),
    "reduce": make_builtin_function("reduce", relay_reduce, 3, 3, "Array -> (b a -> b) -> b -> b", needs_runtime=True),
    "object": make_builtin_function("object", relay_object, 0, 1, "String -> Object|Array", needs_runtime=True),
}


def create_builtin_runtime_env() -> Dict:
  """Root environment: every built-in, nothing else"""
  return make_runtime_env(None, {**BUILTIN_FUNCTIONS, **HIGHER_ORDER_FUNCTIONS})


# ============================================================================
# EVALUATION
# ============================================================================

def eval_ast(ast_node: Dict, env: Dict, context: Dict, tail: bool = False) -> Dict:
  """
  Evaluate an AST node to a value.

  tail is True only while evaluating the result position of a loop body
  closure; it flows into let bodies and match clause bodies and nowhere
  else, so recur anywhere else fails.
  """
  node_type = ast_node['type']

  try:
    if node_type == "NUMBER":
      return make_number(ast_node['value'])
    elif node_type == "STRING":
      return make_string(ast_node['value'])
    elif node_type == "BOOL":
      return make_bool(ast_node['value'])
    elif node_type == "NULL":
      return NULL_VALUE
    elif node_type == "IDENTIFIER":
      return eval_identifier(ast_node, env, context)
    elif node_type == "CALL":
      return eval_call(ast_node, env, context)
    elif node_type == "FIELD":
      return eval_field(ast_node, env, context)
    elif node_type == "ARRAY":
      return make_array([eval_ast(item, env, context) for item in ast_node['value']])
    elif node_type == "OBJECT":
      return make_object({key: eval_ast(expr, env, context) for key, expr in ast_node['value']})
    elif node_type in ("LAMBDA", "FUNCTION_DEF"):
      value = ast_node['value']
      return make_function(value['name'], value['params'], value['defaults'], value['body'], env)
    elif node_type == "BINOP":
      return eval_binop(ast_node, env, context)
    elif node_type == "LOGIC":
      return eval_logic(ast_node, env, context)
    elif node_type == "UNARY":
      return eval_unary(ast_node, env, context)
    elif node_type == "LET":
      return eval_let(ast_node, env, context, tail)
    elif node_type == "MATCH":
      return eval_match(ast_node, env, context, tail)
    elif node_type == "LOOP":
      return eval_loop(ast_node, env, context)
    elif node_type == "RECUR":
      return eval_recur(ast_node, env, context, tail)
    elif node_type == "MODEL":
      return eval_model(ast_node, env, context)
    else:
      raise RelayRuntimeError(f"Unknown node type: {node_type}", ast_node.get('span'))
  except RelayRuntimeError as e:
    # innermost node with a known position wins
    if e.span is None and ast_node.get('span') is not None:
      e.span = ast_node['span']
    raise


def eval_identifier(ast_node: Dict, env: Dict, context: Dict) -> Dict:
  name = ast_node['value']
  value = env_lookup_value(env, name)
  if value is None:
    raise UnboundIdentifierError(name, ast_node['span'])
  return value


def eval_call(ast_node: Dict, env: Dict, context: Dict) -> Dict:
  """Evaluate a call. A piped call `x >> f` evaluates x before f"""
  value = ast_node['value']
  if value['piped']:
    args = [eval_ast(value['args'][0], env, context)]
    func = eval_ast(value['function'], env, context)
  else:
    func = eval_ast(value['function'], env, context)
    lenient = value_type(func) == BUILTIN and func['accepts_missing']
    args = [
        eval_field_lenient(arg, env, context) if lenient and arg['type'] == "FIELD"
        else eval_ast(arg, env, context)
        for arg in value['args']
    ]
  return apply_function(func, args, context, span=ast_node['span'])


def eval_field(ast_node: Dict, env: Dict, context: Dict) -> Dict:
  """value.field: value must be an Object that has the field"""
  value = ast_node['value']
  target = eval_ast(value['object'], env, context)
  if value_type(target) != OBJECT:
    raise type_mismatch_error(f".{value['field']}", "field access target", OBJECT, target, ast_node['span'])
  fields = target['value']
  if value['field'] not in fields:
    raise type_mismatch_error(
      f".{value['field']}", "field access target",
      f"Object with field '{value['field']}'", target, ast_node['span'])
  return fields[value['field']]


def eval_field_lenient(ast_node: Dict, env: Dict, context: Dict) -> Dict:
  """Field access for is-defined?/is-null?: absent fields become Missing"""
  value = ast_node['value']
  object_node = value['object']
  if object_node['type'] == "FIELD":
    target = eval_field_lenient(object_node, env, context)
  else:
    target = eval_ast(object_node, env, context)
  if value_type(target) in (MISSING, NULL):
    return MISSING_VALUE
  if value_type(target) != OBJECT:
    raise type_mismatch_error(f".{value['field']}", "field access target", OBJECT, target, ast_node['span'])
  return target['value'].get(value['field'], MISSING_VALUE)


def eval_binop(ast_node: Dict, env: Dict, context: Dict) -> Dict:
  value = ast_node['value']
  left = eval_ast(value['left'], env, context)
  right = eval_ast(value['right'], env, context)
  return OPERATORS[value['op']](left, right)


def eval_logic(ast_node: Dict, env: Dict, context: Dict) -> Dict:
  """and / or with short-circuit; both operands must be Bool"""
  value = ast_node['value']
  op = value['op']
  left = expect_kind(op, "left operand", eval_ast(value['left'], env, context), BOOL)
  if op == "and" and not left['value']:
    return left
  if op == "or" and left['value']:
    return left
  return expect_kind(op, "right operand", eval_ast(value['right'], env, context), BOOL)


def eval_unary(ast_node: Dict, env: Dict, context: Dict) -> Dict:
  value = ast_node['value']
  operand = eval_ast(value['operand'], env, context)
  if value['op'] == "not":
    return make_bool(not expect_kind("not", "operand", operand, BOOL)['value'])
  return make_number(-expect_kind("-", "operand", operand, NUMBER)['value'])


def eval_model(ast_node: Dict, env: Dict, context: Dict) -> Dict:
  """model(template[, options]) evaluates to a handle; nothing is sent yet"""
  value = ast_node['value']
  template = expect_kind("model", "template", eval_ast(value['template'], env, context), STRING)
  options = None
  if value['options'] is not None:
    options = to_python(expect_kind("model", "options", eval_ast(value['options'], env, context), OBJECT),
                        strict=True)
  return make_model_handle(template['value'], options)


# ============================================================================
# LET (sequential semantics, concurrent scheduling)
# ============================================================================

def eval_let(ast_node: Dict, env: Dict, context: Dict, tail: bool = False) -> Dict:
  """
  let a = e1, b = e2 in body

  Each binding sees only the bindings declared before it. Bindings in the
  same dependency wave that may call a model are evaluated concurrently;
  results are identical to declaration-order evaluation because no binding
  can observe a sibling in its wave.
  """
  value = ast_node['value']
  bindings = value['bindings']
  results: List[Optional[Dict]] = [None] * len(bindings)

  if context['parallel']:
    for wave in value['waves']:
      branching = [i for i in wave if bindings[i]['suspends']]
      if len(branching) >= 2:
        eval_wave_concurrently(bindings, wave, branching, results, env, context)
      else:
        for i in wave:
          results[i] = eval_ast(bindings[i]['expr'], binding_scope(bindings, results, i, env), context)
  else:
    for i in range(len(bindings)):
      results[i] = eval_ast(bindings[i]['expr'], binding_scope(bindings, results, i, env), context)

  body_env = make_runtime_env(env, {b['name']: results[i] for i, b in enumerate(bindings)})
  return eval_ast(value['body'], body_env, context, tail)


def binding_scope(bindings: List[Dict], results: List[Optional[Dict]], index: int, env: Dict) -> Dict:
  """Scope for binding `index`: the outer scope plus the bindings declared before it"""
  if index == 0:
    return env
  return make_runtime_env(env, {
      bindings[i]['name']: results[i] for i in range(index) if results[i] is not None
  })


def eval_wave_concurrently(bindings: List[Dict], wave: List[int], branching: List[int],
                           results: List[Optional[Dict]], env: Dict, context: Dict) -> None:
  """Fan the branching bindings of one wave out to threads and join them all"""
  cancel_event = context['cancel_event'] or threading.Event()
  branch_context = {**context, 'cancel_event': cancel_event}
  workers = min(len(branching), context['max_workers'])
  logger.debug("let fan-out: %s on %d worker(s)", [bindings[i]['name'] for i in branching], workers)

  executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="relay-let")
  futures = {
      executor.submit(eval_ast, bindings[i]['expr'], binding_scope(bindings, results, i, env), branch_context): i
      for i in branching
  }
  submitted = set(branching)
  try:
    for i in wave:
      if i not in submitted:
        results[i] = eval_ast(bindings[i]['expr'], binding_scope(bindings, results, i, env), branch_context)
    for future in as_completed(futures):
      results[futures[future]] = future.result()
  except BaseException as failure:
    cancel_event.set()
    for future in futures:
      future.cancel()
    raise root_cause(failure, futures)
  finally:
    executor.shutdown(wait=False, cancel_futures=True)


def is_cancellation(error: BaseException) -> bool:
  return isinstance(error, ModelError) and error.subkind == "cancelled"


def root_cause(failure: BaseException, futures: Dict) -> BaseException:
  """
  The first failure, unless it is only a cancellation echo of a sibling's
  failure; then wait for the siblings and report the real cause.
  """
  if not is_cancellation(failure):
    return failure
  for future in futures:
    if future.cancelled():
      continue
    error = future.exception()
    if error is not None and not is_cancellation(error):
      return error
  return failure


# ============================================================================
# MATCH
# ============================================================================

def eval_match(ast_node: Dict, env: Dict, context: Dict, tail: bool = False) -> Dict:
  """First clause whose guard is true wins; later guards are never evaluated"""
  value = ast_node['value']
  scope = env
  subject = None
  if value['subject'] is not None:
    subject = eval_ast(value['subject'], env, context)
    scope = make_runtime_env(env, {IT: subject})

  for clause in value['clauses']:
    if clause['guard'] is None:
      return eval_ast(clause['body'], scope, context, tail)
    verdict = eval_ast(clause['guard'], scope, context)
    if value_type(verdict) != BOOL:
      raise type_mismatch_error("match", "guard", BOOL, verdict, clause['guard'].get('span'))
    if verdict['value']:
      return eval_ast(clause['body'], scope, context, tail)

  scrutinee = describe_value(subject) if subject is not None else "guards (none was true)"
  raise NoMatchError(scrutinee, ast_node['span'])


# ============================================================================
# LOOP / RECUR (trampoline)
# ============================================================================

def eval_loop(ast_node: Dict, env: Dict, context: Dict) -> Dict:
  """
  loop(init, body): apply body to the state until it yields something
  other than recur(next). Iterative, so the stack stays flat however many
  iterations run.
  """
  value = ast_node['value']
  state = eval_ast(value['init'], env, context)
  body = eval_ast(value['body'], env, context)
  if not is_callable_value(body):
    raise type_mismatch_error("loop", "argument 2", "Function", body, ast_node['span'])

  iteration = 0
  while True:
    iteration += 1
    try:
      result = apply_function(body, [state], context, tail=True, span=ast_node['span'])
    except RelayRuntimeError as e:
      if e.history is None:
        e.history = state_history(state)
      raise
    if value_type(result) != RECUR:
      logger.debug("loop finished after %d iteration(s)", iteration)
      return result
    state = result['state']
    logger.debug("loop iteration %d recurs", iteration)


def state_history(state: Dict) -> Optional[List[Any]]:
  """The `history` array carried in a loop state, as plain data"""
  if value_type(state) != OBJECT:
    return None
  history = state['value'].get('history')
  if history is None or value_type(history) != ARRAY:
    return None
  return to_python(history)


def eval_recur(ast_node: Dict, env: Dict, context: Dict, tail: bool = False) -> Dict:
  if not tail:
    raise RecurOutsideLoopError(span=ast_node['span'])
  return make_recur(eval_ast(ast_node['value']['state'], env, context))


# ============================================================================
# PROGRAM EVALUATION
# ============================================================================

def eval_program(program: Dict, context: Dict) -> Dict:
  """
  Build the program environment: top-level functions first, so they can see
  each other, then top-level values in declaration order.

  Returns the program environment (child of the builtin root)
  """
  root = create_builtin_runtime_env()
  bindings: Dict[str, Dict] = {}
  program_env = make_runtime_env(root, bindings)

  # filled once here, before anything runs, and never touched again
  for name, node in program['functions'].items():
    fn = node['value']
    bindings[name] = make_function(name, fn['params'], fn['defaults'], fn['body'], program_env)

  for node in program['values']:
    name = node['value']['name']
    bindings[name] = eval_ast(node['value']['expr'], program_env, context)
    logger.debug("val %s = %s", name, describe_value(bindings[name]))

  return program_env
