"""
Relay Effect Dispatcher
The only gateway between the evaluator and external model backends.
Applies the per-call timeout, retries transient failures with bounded
exponential backoff, numbers every call, and coerces textual responses
into structured values for object()
"""

from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional
import itertools
import json
import logging
import re
import threading
import time

import pykka

from backends import ModelBackend
from error_handling import ModelError, CoercionError, TypeMismatchError
from utilities import (
  STRING, ARRAY, OBJECT,
  from_python,
  make_string,
  to_python,
  type_mismatch_error,
  value_type
)

logger = logging.getLogger(__name__)

CALL_OPTIONS = ("timeout", "max_attempts")

# seconds between cancellation checks while a branch waits on a model
CANCEL_POLL_INTERVAL = 0.05


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass(frozen=True)
class DispatcherConfig:
  """Retry, timeout and coercion policy shared by every model call"""
  timeout: Optional[float] = 30.0
  max_attempts: int = 3
  backoff_base: float = 0.5
  backoff_factor: float = 2.0
  backoff_max: float = 8.0
  coercion_grammar: str = "json"

  def __post_init__(self):
    if self.timeout is not None and self.timeout <= 0:
      raise ValueError("timeout must be positive or None")
    if self.max_attempts < 1:
      raise ValueError("max_attempts must be at least 1")
    if self.backoff_base < 0 or self.backoff_max < 0 or self.backoff_factor < 1:
      raise ValueError("backoff_base and backoff_max must be >= 0 and backoff_factor >= 1")

  def backoff_delay(self, attempt: int) -> float:
    """Seconds to wait after failed attempt number `attempt` (1-based)"""
    return min(self.backoff_base * self.backoff_factor ** (attempt - 1), self.backoff_max)

  def with_options(self, options: Dict[str, Any]) -> 'DispatcherConfig':
    """Apply per-call overrides from a model(template, {...}) handle"""
    unknown = sorted(set(options) - set(CALL_OPTIONS))
    if unknown:
      raise ModelError(f"unknown model option(s): {', '.join(unknown)}",
                       ModelError.PERMANENT, "malformed_input")
    if not options:
      return self
    timeout = options.get("timeout", self.timeout)
    attempts = options.get("max_attempts", self.max_attempts)
    if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float))):
      raise ModelError("model option timeout must be a Number or null", ModelError.PERMANENT, "malformed_input")
    if isinstance(attempts, bool) or not isinstance(attempts, int):
      raise ModelError("model option max_attempts must be an integer", ModelError.PERMANENT, "malformed_input")
    try:
      return replace(self, timeout=timeout, max_attempts=attempts)
    except ValueError as e:
      raise ModelError(f"invalid model options: {e}", ModelError.PERMANENT, "malformed_input") from e


# ============================================================================
# COERCION GRAMMARS
# ============================================================================

FENCED_BLOCK = re.compile(r"\A\s*```(?:json)?[ \t]*\n(.*?)\n?```\s*\Z", re.DOTALL)
KEY_VALUE_LINE = re.compile(r"^\s*([A-Za-z_][\w\-]*)\s*:\s*(.*?)\s*$")


def parse_json_text(text: str) -> Any:
  try:
    return json.loads(text)
  except json.JSONDecodeError as e:
    raise CoercionError(f"response is not valid JSON: {e.msg} at line {e.lineno} column {e.colno}",
                        "json") from None


def parse_fenced_json_text(text: str) -> Any:
  """A single ```json fenced block, optionally surrounded by whitespace"""
  match = FENCED_BLOCK.match(text)
  if not match:
    raise CoercionError("response is not a single fenced JSON block", "json-fenced")
  try:
    return json.loads(match.group(1))
  except json.JSONDecodeError as e:
    raise CoercionError(f"fenced block is not valid JSON: {e.msg}", "json-fenced") from None


def parse_key_value_text(text: str) -> Any:
  """Non-empty `key: value` lines; every value is kept as a string"""
  fields = {}
  lines = [line for line in text.splitlines() if line.strip()]
  if not lines:
    raise CoercionError("response has no key: value lines", "key-value")
  for number, line in enumerate(lines, 1):
    match = KEY_VALUE_LINE.match(line)
    if not match:
      raise CoercionError(f"line {number} is not a key: value pair: {line.strip()[:40]!r}", "key-value")
    key, value = match.groups()
    if key in fields:
      raise CoercionError(f"duplicate key {key!r} on line {number}", "key-value")
    fields[key] = value
  return fields


COERCION_GRAMMARS: Dict[str, Callable[[str], Any]] = {
    "json": parse_json_text,
    "json-fenced": parse_fenced_json_text,
    "key-value": parse_key_value_text,
}


def register_grammar(name: str, parser: Callable[[str], Any]) -> None:
  """Register a coercion grammar: parser(text) returns a dict or list, or raises CoercionError"""
  COERCION_GRAMMARS[name] = parser


def coerce_structured(value: Dict, grammar: str = "json") -> Dict:
  """
  Interpret a model response as structured data

  Args:
    value: String response, or an already structured Object/Array
    grammar: Name of a registered coercion grammar

  Returns:
    Object or Array value

  Raises:
    CoercionError: the text does not satisfy the grammar, or parses to a scalar
    TypeMismatchError: value is neither a String nor structured
  """
  kind = value_type(value)
  if kind in (OBJECT, ARRAY):
    return value
  if kind != STRING:
    raise type_mismatch_error("object", "argument 1", "String, Object or Array", value)
  parser = COERCION_GRAMMARS.get(grammar)
  if parser is None:
    raise CoercionError(f"unknown coercion grammar: {grammar}", grammar)
  data = parser(value['value'].strip())
  if not isinstance(data, (dict, list)):
    raise CoercionError(f"expected an object or array, got {type(data).__name__}", grammar)
  return from_python(data)


# ============================================================================
# DISPATCHER
# ============================================================================

class ModelCallActor(pykka.ThreadingActor):
  """Runs one backend attempt on its own thread so the caller can stop waiting"""
  use_daemon_thread = True

  def __init__(self, backend: ModelBackend):
    super().__init__()
    self.backend = backend

  def on_receive(self, message):
    return self.backend.invoke(message['context'], message['template'])


class EffectDispatcher:
  """
  Sole gateway to model invocation. Holds no cross-call state beyond the
  sequence counter; retry bookkeeping is local to each invoke() call.
  """

  def __init__(self, backend: ModelBackend, config: Optional[DispatcherConfig] = None,
               sleep: Callable[[float], None] = time.sleep):
    self.backend = backend
    self.config = config or DispatcherConfig()
    self._sleep = sleep
    self._sequence = itertools.count(1)
    self._sequence_lock = threading.Lock()

  def next_sequence(self) -> int:
    with self._sequence_lock:
      return next(self._sequence)

  def invoke(self, handle: Dict, input_value: Dict,
             cancel_event: Optional[threading.Event] = None) -> Dict:
    """
    Invoke the model behind `handle` with `input_value` as prompt context

    Returns:
      String value holding the model's response

    Raises:
      ModelError: always PERMANENT once it leaves the dispatcher
    """
    sequence = self.next_sequence()
    template = handle['template']
    try:
      config = self.config.with_options(handle.get('options') or {})
      context = to_python(input_value, strict=True)
    except ModelError as e:
      e.sequence = sequence
      logger.info("model call #%d rejected: %s", sequence, e.message)
      raise
    except TypeMismatchError as e:
      logger.info("model call #%d rejected: %s", sequence, e.message)
      raise ModelError(f"input cannot be sent to a model: {e.message}", ModelError.PERMANENT,
                       "malformed_input", sequence) from e

    last_error = None
    for attempt in range(1, config.max_attempts + 1):
      if cancel_event is not None and cancel_event.is_set():
        raise self._cancelled(sequence, attempt - 1)
      logger.info("model call #%d attempt %d/%d: %.60r", sequence, attempt, config.max_attempts, template)
      try:
        text = self._attempt(context, template, config.timeout, cancel_event)
      except ModelError as e:
        e.sequence = sequence
        e.attempts = attempt
        if e.is_permanent:
          logger.info("model call #%d failed permanently: %s", sequence, e.message)
          raise
        last_error = e
        logger.warning("model call #%d attempt %d failed (%s): %s", sequence, attempt, e.subkind, e.message)
        if attempt < config.max_attempts:
          delay = config.backoff_delay(attempt)
          logger.debug("model call #%d backing off %.2fs", sequence, delay)
          if cancel_event is not None:
            if cancel_event.wait(delay):
              raise self._cancelled(sequence, attempt) from e
          else:
            self._sleep(delay)
        continue
      logger.info("model call #%d succeeded on attempt %d", sequence, attempt)
      return make_string(text)

    raise ModelError(
      f"gave up after {config.max_attempts} attempt(s): {last_error.message}",
      ModelError.PERMANENT, "retries_exhausted", sequence, config.max_attempts
    ) from last_error

  def _attempt(self, context: Any, template: str, timeout: Optional[float],
               cancel_event: Optional[threading.Event] = None) -> str:
    actor_ref = ModelCallActor.start(self.backend)
    try:
      future = actor_ref.ask({'context': context, 'template': template}, block=False)
      text = self._await(future, timeout, cancel_event)
    except pykka.Timeout:
      raise ModelError(f"no response within {timeout}s", ModelError.TRANSIENT, "timeout") from None
    except ModelError:
      raise
    except (ConnectionError, TimeoutError) as e:
      raise ModelError(f"{type(e).__name__}: {e}", ModelError.TRANSIENT, "network") from e
    except Exception as e:
      raise ModelError(f"{type(e).__name__}: {e}", ModelError.PERMANENT, "backend_failure") from e
    finally:
      actor_ref.stop(block=False)
    if not isinstance(text, str):
      raise ModelError(f"backend returned {type(text).__name__}, expected str",
                       ModelError.PERMANENT, "backend_failure")
    return text

  def _await(self, future: pykka.Future, timeout: Optional[float],
             cancel_event: Optional[threading.Event]) -> Any:
    """Wait for an attempt's reply; only the wait is cancelled, not the call"""
    if cancel_event is None:
      return future.get(timeout=timeout)
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
      remaining = None if deadline is None else deadline - time.monotonic()
      if remaining is not None and remaining <= 0:
        raise pykka.Timeout(f"{timeout} seconds")
      try:
        return future.get(timeout=CANCEL_POLL_INTERVAL if remaining is None else min(remaining, CANCEL_POLL_INTERVAL))
      except pykka.Timeout:
        if cancel_event.is_set():
          raise ModelError("call cancelled by a failing sibling branch", ModelError.PERMANENT, "cancelled") from None

  def _cancelled(self, sequence: int, attempts: int) -> ModelError:
    logger.info("model call #%d cancelled", sequence)
    return ModelError("call cancelled by a failing sibling branch", ModelError.PERMANENT,
                      "cancelled", sequence, attempts)

  def coerce(self, value: Dict) -> Dict:
    return coerce_structured(value, self.config.coercion_grammar)
