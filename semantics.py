"""
Relay Semantic Analysis - Pure Functional Style
Lowers the parser's tagged-tuple CST into dict AST nodes, desugars pipes
into calls, rejects misplaced recur, and annotates let bindings with the
dependency waves used for concurrent evaluation
"""

from typing import Any, Dict, List, Optional, Set, Tuple

from error_handling import RelayParseError, RecurOutsideLoopError
from stdlib import BUILTIN_NAMES


IT = "it"


# ============================================================================
# DATA STRUCTURES (Immutable Dictionaries)
# ============================================================================

def make_ast_node(node_type: str, value: Any, span: Optional[Dict] = None) -> Dict:
  """Create an immutable AST node dictionary"""
  return {
      'type': node_type,
      'value': value,
      'span': span
  }


def make_program(functions: Dict[str, Dict], values: List[Dict], filename: str) -> Dict:
  return {
      'functions': functions,
      'values': values,
      'filename': filename
  }


# ============================================================================
# CST LOWERING
# ============================================================================

def lower_params(params: List[Tuple]) -> Tuple[List[str], List[Optional[Dict]]]:
  names = [info['name'] for _, info in params]
  defaults = [lower(info['default']) if info['default'] is not None else None for _, info in params]
  return names, defaults


def lower(cst: Tuple) -> Dict:
  """Convert one CST tuple into an AST node"""
  tag, payload = cst

  if tag in ("NUMBER", "STRING", "BOOL", "NULL"):
    return make_ast_node(tag, payload)

  span = payload.get('span') if isinstance(payload, dict) else None

  if tag == "IDENTIFIER":
    return make_ast_node(tag, payload['name'], span)

  if tag == "ARRAY":
    return make_ast_node(tag, [lower(item) for item in payload])

  if tag == "OBJECT":
    return make_ast_node(tag, [(key, lower(expr)) for key, expr in payload['entries']], span)

  if tag in ("LAMBDA", "FUNCTION_DEF"):
    names, defaults = lower_params(payload['params'])
    return make_ast_node(tag, {
        'name': payload.get('name'),
        'params': names,
        'defaults': defaults,
        'body': lower(payload['body'])
    }, span)

  if tag == "VALUE_DEF":
    return make_ast_node(tag, {'name': payload['name'], 'expr': lower(payload['expr'])}, span)

  if tag == "CALL":
    return make_ast_node(tag, {
        'function': lower(payload['function']),
        'args': [lower(arg) for arg in payload['args']],
        'piped': False
    }, span)

  if tag == "PIPE":
    return lower_pipe(payload, span)

  if tag == "FIELD":
    return make_ast_node(tag, {'object': lower(payload['object']), 'field': payload['field']}, span)

  if tag in ("BINOP", "LOGIC"):
    return make_ast_node(tag, {
        'op': payload['op'],
        'left': lower(payload['left']),
        'right': lower(payload['right'])
    }, span)

  if tag == "UNARY":
    return make_ast_node(tag, {'op': payload['op'], 'operand': lower(payload['operand'])}, span)

  if tag == "LET":
    bindings = [(name, lower(expr), binding_span) for name, expr, binding_span in payload['bindings']]
    return make_let(bindings, lower(payload['body']), span)

  if tag == "MATCH":
    subject = lower(payload['subject']) if payload['subject'] is not None else None
    clauses = []
    for guard, body in payload['clauses']:
      clauses.append({
          'guard': None if guard[0] == "WILDCARD" else lower(guard),
          'body': lower(body)
      })
    return make_ast_node(tag, {'subject': subject, 'clauses': clauses}, span)

  if tag == "LOOP":
    return make_ast_node(tag, {'init': lower(payload['init']), 'body': lower(payload['body'])}, span)

  if tag == "RECUR":
    return make_ast_node(tag, {'state': lower(payload['state'])}, span)

  if tag == "MODEL":
    options = lower(payload['options']) if payload['options'] is not None else None
    return make_ast_node(tag, {'template': lower(payload['template']), 'options': options}, span)

  raise RelayParseError(f"Unknown syntax node: {tag}")


def lower_pipe(payload: Dict, span: Optional[Dict]) -> Dict:
  """Desugar `x >> stage`.

  A literal stage ({...} or [...]) is evaluated with `it` bound to x;
  any other stage is a call of the stage's value with x as sole argument.
  """
  input_node = lower(payload['input'])
  stage = lower(payload['stage'])
  if stage['type'] in ("OBJECT", "ARRAY"):
    return make_let([(IT, input_node, span)], stage, span)
  return make_ast_node("CALL", {'function': stage, 'args': [input_node], 'piped': True}, span)


def make_let(bindings: List[Tuple[str, Dict, Optional[Dict]]], body: Dict, span: Optional[Dict]) -> Dict:
  """Build a LET node annotated with each binding's earlier-binding dependencies and wave"""
  entries = []
  waves: List[List[int]] = []
  for index, (name, expr, binding_span) in enumerate(bindings):
    deps = set()
    for free_name in referenced_names(expr):
      # a reference resolves to the nearest earlier binding of that name
      for earlier in range(index - 1, -1, -1):
        if bindings[earlier][0] == free_name:
          deps.add(earlier)
          break
    wave = 1 + max((entries[d]['wave'] for d in deps), default=-1)
    entries.append({
        'name': name,
        'expr': expr,
        'deps': sorted(deps),
        'wave': wave,
        'suspends': True,
        'span': binding_span
    })
    while len(waves) <= wave:
      waves.append([])
    waves[wave].append(index)
  return make_ast_node("LET", {'bindings': entries, 'waves': waves, 'body': body}, span)


# ============================================================================
# TREE WALKING HELPERS
# ============================================================================

def child_nodes(node: Dict) -> List[Dict]:
  """Direct sub-expressions of an AST node, in evaluation order"""
  node_type = node['type']
  value = node['value']

  if node_type in ("NUMBER", "STRING", "BOOL", "NULL", "IDENTIFIER"):
    return []
  if node_type == "ARRAY":
    return list(value)
  if node_type == "OBJECT":
    return [expr for _, expr in value]
  if node_type in ("LAMBDA", "FUNCTION_DEF"):
    return [d for d in value['defaults'] if d is not None] + [value['body']]
  if node_type == "VALUE_DEF":
    return [value['expr']]
  if node_type == "CALL":
    return [value['function']] + value['args']
  if node_type == "FIELD":
    return [value['object']]
  if node_type in ("BINOP", "LOGIC"):
    return [value['left'], value['right']]
  if node_type == "UNARY":
    return [value['operand']]
  if node_type == "LET":
    return [b['expr'] for b in value['bindings']] + [value['body']]
  if node_type == "MATCH":
    children = [value['subject']] if value['subject'] is not None else []
    for clause in value['clauses']:
      if clause['guard'] is not None:
        children.append(clause['guard'])
      children.append(clause['body'])
    return children
  if node_type == "LOOP":
    return [value['init'], value['body']]
  if node_type == "RECUR":
    return [value['state']]
  if node_type == "MODEL":
    return [value['template']] + ([value['options']] if value['options'] is not None else [])
  return []


def walk(node: Dict):
  """Yield every node of a subtree (iteratively, deep trees are fine)"""
  stack = [node]
  while stack:
    current = stack.pop()
    yield current
    stack.extend(reversed(child_nodes(current)))


def referenced_names(node: Dict) -> Set[str]:
  """Every identifier mentioned in a subtree. Over-approximates free variables,
  which only ever adds dependencies."""
  return {n['value'] for n in walk(node) if n['type'] == "IDENTIFIER"}


# ============================================================================
# STATIC CHECKS
# ============================================================================

def check_recur_placement(node: Dict, loop_tail: bool = False) -> None:
  """Reject recur anywhere but the tail position of a loop body closure.

  Tail positions: the body of the lambda passed directly to loop(...), and
  from there the body of a let and the clause bodies of a match.
  """
  stack = [(node, loop_tail)]
  while stack:
    current, tail = stack.pop()
    node_type = current['type']
    value = current['value']

    if node_type == "RECUR":
      if not tail:
        raise RecurOutsideLoopError(span=current['span'])
      stack.append((value['state'], False))
    elif node_type == "LOOP":
      stack.append((value['init'], False))
      body = value['body']
      if body['type'] == "LAMBDA":
        for default in body['value']['defaults']:
          if default is not None:
            stack.append((default, False))
        stack.append((body['value']['body'], True))
      else:
        stack.append((body, False))
    elif node_type == "LET":
      for binding in value['bindings']:
        stack.append((binding['expr'], False))
      stack.append((value['body'], tail))
    elif node_type == "MATCH":
      if value['subject'] is not None:
        stack.append((value['subject'], False))
      for clause in value['clauses']:
        if clause['guard'] is not None:
          stack.append((clause['guard'], False))
        stack.append((clause['body'], tail))
    else:
      for child in child_nodes(current):
        stack.append((child, False))


# ============================================================================
# EFFECT ANALYSIS
# ============================================================================

def may_suspend(node: Dict, suspending_functions: Set[str], known_functions: Set[str]) -> bool:
  """True if evaluating node might invoke a model (and so might block)"""
  for current in walk(node):
    node_type = current['type']
    if node_type == "MODEL":
      return True
    if node_type == "IDENTIFIER" and current['value'] in suspending_functions:
      return True
    if node_type == "CALL":
      callee = current['value']['function']
      if callee['type'] != "IDENTIFIER" or callee['value'] not in known_functions:
        return True
  return False


def find_suspending_functions(functions: Dict[str, Dict]) -> Set[str]:
  """Fixpoint over top-level functions: a function suspends if its body may"""
  known = set(functions) | BUILTIN_NAMES
  suspending: Set[str] = set()
  changed = True
  while changed:
    changed = False
    for name, node in functions.items():
      if name not in suspending and may_suspend(node['value']['body'], suspending, known):
        suspending.add(name)
        changed = True
  return suspending


def annotate_suspension(root: Dict, suspending: Set[str], known: Set[str]) -> None:
  """Mark which let bindings may suspend. Annotation happens once, at load."""
  for current in walk(root):
    if current['type'] == "LET":
      for binding in current['value']['bindings']:
        binding['suspends'] = may_suspend(binding['expr'], suspending, known)


# ============================================================================
# PROGRAM ANALYSIS
# ============================================================================

def analyze_program(cst_nodes: List[Tuple], filename: str = "<input>") -> Dict:
  """Lower, check and annotate a whole program.

  Returns a program dict with the top-level functions by name and the
  top-level values in declaration order.
  """
  functions: Dict[str, Dict] = {}
  values: List[Dict] = []
  seen: Dict[str, Dict] = {}

  for cst_node in cst_nodes:
    node = lower(cst_node)
    name = node['value']['name']
    if name in seen:
      span = node['span'] or {'line': 0, 'col': 0}
      raise RelayParseError(
          f"duplicate top-level definition '{name}'",
          line=span['line'], column=span['col'], filename=filename)
    seen[name] = node
    check_recur_placement(node)
    if node['type'] == "FUNCTION_DEF":
      functions[name] = node
    else:
      values.append(node)

  suspending = find_suspending_functions(functions)
  known = set(functions) | BUILTIN_NAMES
  for node in list(functions.values()) + values:
    annotate_suspension(node, suspending, known)

  return make_program(functions, values, filename)


def analyze_expression(cst: Tuple) -> Dict:
  """Lower and check a standalone expression"""
  node = lower(cst)
  check_recur_placement(node)
  annotate_suspension(node, set(), set(BUILTIN_NAMES))
  return node


def pretty_print_ast(node: Any, indent: int = 0) -> str:
  """Render an AST for --analyze output"""
  pad = "  " * indent
  if isinstance(node, dict) and 'type' in node and 'value' in node:
    value = node['value']
    if isinstance(value, (dict, list)):
      return f"{pad}{node['type']}\n" + pretty_print_ast(value, indent + 1)
    return f"{pad}{node['type']}({value!r})\n"
  if isinstance(node, dict):
    result = ""
    for key, value in node.items():
      if key == 'span':
        continue
      if isinstance(value, (dict, list, tuple)):
        result += f"{pad}{key}:\n" + pretty_print_ast(value, indent + 1)
      else:
        result += f"{pad}{key}: {value!r}\n"
    return result
  if isinstance(node, (list, tuple)):
    return "".join(pretty_print_ast(item, indent) for item in node)
  return f"{pad}{node!r}\n"
