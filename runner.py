"""
Relay Workflow Runner
Loads a program, binds its `main` entry point to caller-supplied input and
returns either the final value or the first fatal error
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging
import time

from backends import EchoBackend, ModelBackend
from effects import DispatcherConfig, EffectDispatcher
from error_handling import RelayError, RelayRuntimeError, ModelError, TypeMismatchError
from interpreter import (
  DEFAULT_MAX_WORKERS,
  apply_function,
  create_builtin_runtime_env,
  eval_ast,
  eval_program,
  make_execution_context
)
from parsing import create_parser
from semantics import analyze_expression, analyze_program
from utilities import FUNCTION, from_python, to_python, value_type

logger = logging.getLogger(__name__)

ENTRY_POINT = "main"


@dataclass
class WorkflowResult:
  """Outcome of one workflow run. value and history are plain JSON-compatible data"""
  status: str
  value: Any = None
  error: Optional[RelayError] = None
  history: Optional[List[Any]] = None

  @property
  def ok(self) -> bool:
    return self.status == "ok"

  def to_dict(self) -> Dict[str, Any]:
    if self.ok:
      return {"status": self.status, "value": self.value}
    error = {"type": type(self.error).__name__, "message": str(self.error)}
    if isinstance(self.error, ModelError):
      error["kind"] = self.error.kind
      error["subkind"] = self.error.subkind
    result = {"status": self.status, "error": error}
    if self.history is not None:
      result["history"] = self.history
    return result


class WorkflowRunner:
  """
  Drives programs against one model backend.

  A runner owns one effect dispatcher, so invocation sequence numbers keep
  increasing across runs.
  """

  def __init__(self, backend: Optional[ModelBackend] = None, config: Optional[DispatcherConfig] = None,
               parallel: bool = True, max_workers: int = DEFAULT_MAX_WORKERS, sleep=time.sleep):
    self.backend = backend or EchoBackend()
    self.dispatcher = EffectDispatcher(self.backend, config, sleep)
    self.parallel = parallel
    self.max_workers = max_workers
    self.parser = create_parser()

  def new_context(self) -> Dict:
    return make_execution_context(self.dispatcher, self.parallel, self.max_workers)

  def load(self, source: str, filename: str = "<input>") -> Dict:
    """Parse, analyze and evaluate the top level; returns the program environment"""
    cst_nodes = self.parser.parse_string(source, filename)
    program = analyze_program(cst_nodes, filename)
    logger.debug("loaded %s: %d function(s), %d value(s)",
                 filename, len(program['functions']), len(program['values']))
    return eval_program(program, self.new_context())

  def entry_point(self, program_env: Dict) -> Dict:
    main = program_env['bindings'].get(ENTRY_POINT)
    if main is None:
      raise TypeMismatchError(f"program does not define '{ENTRY_POINT}'",
                              operand=ENTRY_POINT, expected="Function", actual="nothing")
    if value_type(main) != FUNCTION:
      raise TypeMismatchError(f"'{ENTRY_POINT}' must be a function, got {value_type(main)}",
                              operand=ENTRY_POINT, expected="Function", actual=value_type(main))
    required = sum(1 for d in main['defaults'] if d is None)
    if required > 1 or not main['params']:
      raise TypeMismatchError(f"'{ENTRY_POINT}' must accept exactly one input argument",
                              operand=ENTRY_POINT, expected="1 parameter", actual=str(len(main['params'])))
    return main

  def evaluate(self, expression: str, env: Optional[Dict] = None) -> Dict:
    """Evaluate a standalone expression; returns the runtime value"""
    node = analyze_expression(self.parser.parse_expression(expression))
    return eval_ast(node, env or create_builtin_runtime_env(), self.new_context())

  def run(self, source: str, input_data: Any = None, filename: str = "<input>") -> WorkflowResult:
    """Load source and apply its main to input_data (plain Python data)"""
    try:
      program_env = self.load(source, filename)
      main = self.entry_point(program_env)
      result = apply_function(main, [from_python(input_data)], self.new_context())
      return WorkflowResult("ok", to_python(result))
    except RecursionError:
      error = RelayRuntimeError("maximum recursion depth exceeded; use loop/recur for unbounded iteration")
      logger.error("%s: %s", filename, error)
      return WorkflowResult("error", error=error)
    except RelayError as e:
      logger.error("%s: %s", filename, e)
      return WorkflowResult("error", error=e, history=getattr(e, 'history', None))

  def run_file(self, path: str, input_data: Any = None) -> WorkflowResult:
    with open(path, 'r', encoding='utf-8') as f:
      source = f.read()
    return self.run(source, input_data, filename=path)
