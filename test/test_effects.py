"""
Effect dispatcher tests: retry/backoff, timeouts, failure kinds,
sequence numbering and object() coercion
"""

import logging
import threading
import time

import pytest
from backends import ScriptedBackend
from effects import (
  DispatcherConfig,
  EffectDispatcher,
  coerce_structured,
  register_grammar,
  COERCION_GRAMMARS
)
from error_handling import ModelError, CoercionError, TypeMismatchError
from interpreter import make_model_handle
from utilities import make_string, make_object, make_number, from_python, to_python


def transient(subkind="rate_limit"):
  return ModelError("try again", ModelError.TRANSIENT, subkind)


@pytest.fixture
def delays():
  return []


@pytest.fixture
def dispatcher_for(delays):
  """Dispatcher over a scripted backend that records backoff delays instead of sleeping"""
  def factory(responses=None, responder=None, **config):
    backend = ScriptedBackend(responses, responder)
    settings = {"timeout": 5.0, "max_attempts": 3, "backoff_base": 0.1}
    settings.update(config)
    return EffectDispatcher(backend, DispatcherConfig(**settings), sleep=delays.append), backend
  return factory


HANDLE = make_model_handle("summarize")
INPUT = make_string("some text")


class TestRetryPolicy:

  def test_transient_failures_then_success(self, dispatcher_for, delays):
    dispatcher, backend = dispatcher_for([transient(), transient("timeout"), "done"])
    result = dispatcher.invoke(HANDLE, INPUT)
    assert result == make_string("done")
    assert backend.call_count == 3
    assert delays == [0.1, 0.2]

  def test_exhausted_retries_become_permanent(self, dispatcher_for):
    dispatcher, backend = dispatcher_for([transient()] * 5)
    with pytest.raises(ModelError) as exc_info:
      dispatcher.invoke(HANDLE, INPUT)
    error = exc_info.value
    assert error.is_permanent
    assert error.subkind == "retries_exhausted"
    assert error.attempts == 3
    assert backend.call_count == 3
    assert isinstance(error.__cause__, ModelError) and error.__cause__.is_transient

  def test_permanent_failure_is_not_retried(self, dispatcher_for, delays):
    dispatcher, backend = dispatcher_for([ModelError("policy", ModelError.PERMANENT, "rejected"), "unused"])
    with pytest.raises(ModelError) as exc_info:
      dispatcher.invoke(HANDLE, INPUT)
    assert exc_info.value.subkind == "rejected"
    assert backend.call_count == 1
    assert delays == []

  def test_network_errors_are_transient(self, dispatcher_for):
    dispatcher, backend = dispatcher_for([ConnectionError("reset"), "ok"])
    assert dispatcher.invoke(HANDLE, INPUT) == make_string("ok")
    assert backend.call_count == 2

  def test_unexpected_backend_errors_are_permanent(self, dispatcher_for):
    dispatcher, backend = dispatcher_for([ValueError("bug"), "unused"])
    with pytest.raises(ModelError) as exc_info:
      dispatcher.invoke(HANDLE, INPUT)
    assert exc_info.value.subkind == "backend_failure"
    assert backend.call_count == 1

  def test_backoff_is_capped(self):
    config = DispatcherConfig(backoff_base=1.0, backoff_factor=2.0, backoff_max=3.0)
    assert [config.backoff_delay(n) for n in range(1, 5)] == [1.0, 2.0, 3.0, 3.0]

  def test_invalid_config(self):
    with pytest.raises(ValueError):
      DispatcherConfig(max_attempts=0)
    with pytest.raises(ValueError):
      DispatcherConfig(timeout=0)


class TestTimeouts:

  def test_slow_backend_times_out(self, dispatcher_for):
    def slow(context, template):
      time.sleep(0.5)
      return "late"

    dispatcher, backend = dispatcher_for(responder=slow, timeout=0.05, max_attempts=2)
    started = time.monotonic()
    with pytest.raises(ModelError) as exc_info:
      dispatcher.invoke(HANDLE, INPUT)
    assert time.monotonic() - started < 0.45
    assert exc_info.value.subkind == "retries_exhausted"
    assert exc_info.value.__cause__.subkind == "timeout"
    assert backend.call_count == 2

  def test_per_call_options_override_config(self, dispatcher_for):
    dispatcher, backend = dispatcher_for([transient()] * 5)
    handle = make_model_handle("summarize", {"max_attempts": 1})
    with pytest.raises(ModelError) as exc_info:
      dispatcher.invoke(handle, INPUT)
    assert exc_info.value.subkind == "retries_exhausted"
    assert backend.call_count == 1


class TestMalformedCalls:

  def test_unknown_option(self, dispatcher_for):
    dispatcher, backend = dispatcher_for(["unused"])
    with pytest.raises(ModelError) as exc_info:
      dispatcher.invoke(make_model_handle("t", {"temperature": 0.2}), INPUT)
    assert exc_info.value.subkind == "malformed_input"
    assert backend.call_count == 0

  def test_input_must_be_data(self, dispatcher_for):
    dispatcher, backend = dispatcher_for(["unused"])
    with pytest.raises(ModelError) as exc_info:
      dispatcher.invoke(HANDLE, make_object({"callback": HANDLE}))
    assert exc_info.value.is_permanent
    assert exc_info.value.subkind == "malformed_input"
    assert backend.call_count == 0

  def test_backend_receives_plain_data(self, dispatcher_for):
    dispatcher, backend = dispatcher_for(["ok"])
    dispatcher.invoke(HANDLE, from_python({"a": [1, "b", None]}))
    assert backend.calls == [({"a": [1, "b", None]}, "summarize")]


class TestObservability:

  def test_sequence_numbers_increase(self, dispatcher_for, caplog):
    dispatcher, _ = dispatcher_for(["one", "two"])
    with caplog.at_level(logging.INFO, logger="effects"):
      dispatcher.invoke(HANDLE, INPUT)
      dispatcher.invoke(HANDLE, INPUT)
    messages = [record.getMessage() for record in caplog.records]
    assert any("model call #1 succeeded" in m for m in messages)
    assert any("model call #2 succeeded" in m for m in messages)
    assert dispatcher.next_sequence() == 3

  def test_errors_carry_sequence_number(self, dispatcher_for):
    dispatcher, _ = dispatcher_for(["fine", ModelError("no", ModelError.PERMANENT, "rejected")])
    dispatcher.invoke(HANDLE, INPUT)
    with pytest.raises(ModelError) as exc_info:
      dispatcher.invoke(HANDLE, INPUT)
    assert exc_info.value.sequence == 2
    assert "model call #2" in str(exc_info.value)


class TestCancellation:

  def test_cancelled_before_first_attempt(self, dispatcher_for):
    dispatcher, backend = dispatcher_for(["unused"])
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(ModelError) as exc_info:
      dispatcher.invoke(HANDLE, INPUT, cancel)
    assert exc_info.value.subkind == "cancelled"
    assert backend.call_count == 0

  def test_cancel_stops_waiting(self, dispatcher_for):
    release = threading.Event()

    def stuck(context, template):
      release.wait(5)
      return "too late"

    dispatcher, _ = dispatcher_for(responder=stuck)
    cancel = threading.Event()
    threading.Timer(0.1, cancel.set).start()
    started = time.monotonic()
    try:
      with pytest.raises(ModelError) as exc_info:
        dispatcher.invoke(HANDLE, INPUT, cancel)
    finally:
      release.set()
    assert exc_info.value.subkind == "cancelled"
    assert time.monotonic() - started < 2


class TestCoercion:
  """object() turns a response into structured data or fails permanently"""

  def test_json_object_and_array(self):
    assert to_python(coerce_structured(make_string('{"score": 7, "tags": ["a"]}'))) == {"score": 7, "tags": ["a"]}
    assert to_python(coerce_structured(make_string(" [1, 2] \n"))) == [1, 2]

  def test_structured_values_pass_through(self):
    value = from_python({"a": 1})
    assert coerce_structured(value) is value

  def test_non_json_is_a_permanent_parse_error(self):
    with pytest.raises(CoercionError) as exc_info:
      coerce_structured(make_string("Sure! Here is the JSON you asked for"))
    error = exc_info.value
    assert error.is_permanent
    assert error.subkind == "parse_error"

  def test_scalar_json_is_rejected(self):
    for text in ["42", '"just a string"', "null"]:
      with pytest.raises(CoercionError):
        coerce_structured(make_string(text))

  def test_partial_json_is_rejected(self):
    with pytest.raises(CoercionError):
      coerce_structured(make_string('{"a": 1, "b": '))

  def test_non_string_input(self):
    with pytest.raises(TypeMismatchError):
      coerce_structured(make_number(3))

  def test_fenced_grammar(self):
    text = 'Here you go:\n```json\n{"a": 1}\n```'
    with pytest.raises(CoercionError):
      coerce_structured(make_string(text), "json-fenced")
    assert to_python(coerce_structured(make_string('```json\n{"a": 1}\n```'), "json-fenced")) == {"a": 1}

  def test_key_value_grammar(self):
    text = "verdict: pass\nscore: 8\n"
    assert to_python(coerce_structured(make_string(text), "key-value")) == {"verdict": "pass", "score": "8"}
    with pytest.raises(CoercionError):
      coerce_structured(make_string("verdict pass"), "key-value")

  def test_custom_grammar(self):
    register_grammar("csv-row", lambda text: text.split(","))
    try:
      assert to_python(coerce_structured(make_string("a,b,c"), "csv-row")) == ["a", "b", "c"]
    finally:
      COERCION_GRAMMARS.pop("csv-row")

  def test_object_builtin_uses_configured_grammar(self, make_runner):
    runner, _ = make_runner(config=DispatcherConfig(coercion_grammar="key-value", backoff_base=0.0))
    assert to_python(runner.evaluate('"status: ok" >> object()')) == {"status": "ok"}

  def test_object_builtin_failure(self, evaluate):
    with pytest.raises(CoercionError):
      evaluate('"not json at all" >> object()')
    assert evaluate('"""{"a": [1, 2]}""" >> object()') == {"a": [1, 2]}
