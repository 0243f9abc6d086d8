"""
Evaluator tests: pipes, calls, bindings, field access and match
"""

import pytest
from error_handling import (
  RelayRuntimeError,
  UnboundIdentifierError,
  TypeMismatchError,
  NoMatchError,
  RecurOutsideLoopError
)
from interpreter import create_builtin_runtime_env, eval_ast, make_execution_context
from semantics import make_ast_node


class TestPipes:
  """x >> f >> g is exactly g(f(x))"""

  def test_pipe_associativity(self, evaluate):
    defs = "let f = fun(x) => x + 1, g = fun(x) => x * 2 in "
    for x in [0, 3, -7, 2.5]:
      assert evaluate(f"{defs} {x} >> f >> g") == evaluate(f"{defs} g(f({x}))")
    assert evaluate(f"{defs} 3 >> f >> g") == 8

  def test_pipe_into_partial_call(self, evaluate):
    assert evaluate("let add = fun(a) => fun(b) => a - b in 1 >> add(10)") == 9

  def test_pipe_into_literal(self, evaluate):
    assert evaluate("5 >> {value: it, double: it * 2}") == {"value": 5, "double": 10}
    assert evaluate("2 >> [it, it + 1]") == [2, 3]

  def test_pipe_into_builtin(self, evaluate):
    assert evaluate('["a", "b"] >> length') == 2

  def test_pipe_input_is_evaluated_first(self, make_runner):
    runner, backend = make_runner(responder=lambda context, template: template)
    value = runner.evaluate('model("first")("x") >> fun(r) => r + "|" + model("second")("y")')
    assert value['value'] == "first|second"
    assert [template for _, template in backend.calls] == ["first", "second"]


class TestCalls:
  """Positional binding, defaults and arity"""

  def test_defaults_fill_trailing_arguments(self, evaluate):
    code = "let f = fun(a, b = a + 1) => [a, b] in [f(1), f(1, 5)]"
    assert evaluate(code) == [[1, 2], [1, 5]]

  def test_too_few_arguments(self, evaluate):
    with pytest.raises(TypeMismatchError) as exc_info:
      evaluate("let f = fun(a, b) => a in f(1)")
    assert "expects 2 argument(s), got 1" in str(exc_info.value)

  def test_too_many_arguments(self, evaluate):
    with pytest.raises(TypeMismatchError):
      evaluate("let f = fun(a, b = 2) => a in f(1, 2, 3)")

  def test_calling_a_non_function(self, evaluate):
    with pytest.raises(TypeMismatchError):
      evaluate("let x = 3 in x(1)")

  def test_closures_capture_defining_scope(self, evaluate):
    assert evaluate("let x = 1, f = fun() => x, x = 2 in [f(), x]") == [1, 2]

  def test_top_level_functions_see_each_other(self, make_runner):
    runner, _ = make_runner()
    source = """
    fun is-even?(n) = match { n == 0 => true, _ => is-odd?(n - 1) }
    fun is-odd?(n) = match { n == 0 => false, _ => is-even?(n - 1) }
    fun main(n) = [is-even?(n), is-odd?(n)]
    """
    assert runner.run(source, 7).value == [False, True]

  def test_minimal_program_defines_main(self, make_runner):
    runner, _ = make_runner()
    assert runner.run("fun main(x) = x", "hi").value == "hi"
    source = """
    val greeting = "hello"
    fun main(name) = greeting + " " + name
    """
    assert runner.run(source, "relay").value == "hello relay"

  def test_deep_non_loop_recursion_is_reported(self, make_runner):
    runner, _ = make_runner()
    source = """
    fun count(n) = match { n == 0 => 0, _ => 1 + count(n - 1) }
    fun main(n) = count(n)
    """
    result = runner.run(source, 100000)
    assert result.status == "error"
    assert "loop/recur" in str(result.error)


class TestBindings:

  def test_let_is_sequential(self, evaluate):
    assert evaluate("let a = 1, b = a + 1, c = b * 10 in [a, b, c]") == [1, 2, 20]

  def test_let_cannot_see_later_bindings(self, evaluate):
    with pytest.raises(UnboundIdentifierError) as exc_info:
      evaluate("let a = b, b = 1 in a")
    assert exc_info.value.name == "b"

  def test_shadowing_resolves_to_nearest(self, evaluate):
    assert evaluate("let x = 1 in let x = x + 1 in x") == 2

  def test_unbound_identifier(self, evaluate):
    with pytest.raises(UnboundIdentifierError) as exc_info:
      evaluate("nope + 1")
    assert exc_info.value.span['line'] == 1

  def test_object_entries_keep_declaration_order(self, evaluate):
    assert list(evaluate("{z: 1, a: 2, m: 3}")) == ["z", "a", "m"]


class TestFieldAccess:

  def test_field_access(self, evaluate):
    assert evaluate("{a: {b: 42}}.a.b") == 42

  def test_missing_field_is_a_type_mismatch(self, evaluate):
    with pytest.raises(TypeMismatchError) as exc_info:
      evaluate("{a: 1}.b")
    assert "field 'b'" in str(exc_info.value)

  def test_field_of_non_object(self, evaluate):
    with pytest.raises(TypeMismatchError):
      evaluate("[1, 2].length")

  def test_is_defined_guards_missing_fields(self, evaluate):
    code = """
    let o = {a: false, b: 0, c: null}
    in [is-defined?(o.a), is-defined?(o.b), is-defined?(o.c), is-defined?(o.d), is-defined?(o.d.e)]
    """
    assert evaluate(code) == [True, True, False, False, False]

  def test_is_null_on_missing_field(self, evaluate):
    assert evaluate("let o = {a: null} in [is-null?(o.a), is-null?(o.b), is-null?(o)]") == [True, True, False]


class TestOperators:

  def test_arithmetic_and_precedence(self, evaluate):
    assert evaluate("1 + 2 * 3") == 7
    assert evaluate("(1 + 2) * 3") == 9
    assert evaluate("7 / 2") == 3.5
    assert evaluate("6 / 3") == 2
    assert evaluate("7 % 3") == 1
    assert evaluate("-(2 + 3)") == -5

  def test_concatenation(self, evaluate):
    assert evaluate('"ab" + "cd"') == "abcd"
    assert evaluate("[1] + [2, 3]") == [1, 2, 3]

  def test_mixed_addition_is_rejected(self, evaluate):
    with pytest.raises(TypeMismatchError):
      evaluate('"a" + 1')

  def test_division_by_zero(self, evaluate):
    with pytest.raises(RelayRuntimeError):
      evaluate("1 / 0")

  def test_structural_equality(self, evaluate):
    assert evaluate("{a: [1, 2]} == {a: [1, 2]}") is True
    assert evaluate("[1, 2] != [2, 1]") is True
    assert evaluate('1 == "1"') is False

  def test_logic_short_circuits(self, evaluate):
    assert evaluate("false and 1 / 0 == 1") is False
    assert evaluate("true or nope") is True
    assert evaluate("not false") is True

  def test_logic_requires_bool(self, evaluate):
    with pytest.raises(TypeMismatchError):
      evaluate("1 and true")


class TestMatch:
  """First-match-wins guarded dispatch"""

  def test_first_true_guard_wins(self, evaluate):
    assert evaluate('match { false => "a", true => "b", true => "c" }') == "b"

  def test_later_clauses_are_never_evaluated(self, make_runner):
    runner, backend = make_runner(responder=lambda context, template: "call fired")
    value = runner.evaluate("""
      match {
        false => "first",
        true => "second",
        ("x" >> model("guard check")) == "y" => "x" >> model("body check")
      }
    """)
    assert value['value'] == "second"
    assert backend.calls == []

  def test_wildcard_always_matches(self, evaluate):
    assert evaluate('match 5 { it > 10 => "big", _ => "small" }') == "small"

  def test_subject_is_bound_to_it(self, evaluate):
    assert evaluate("match {n: 4} { it.n > 3 => it.n * 2, _ => 0 }") == 8

  def test_no_match_names_the_subject(self, evaluate):
    with pytest.raises(NoMatchError) as exc_info:
      evaluate('match 5 { it > 10 => "big" }')
    assert "Number 5" in exc_info.value.scrutinee

  def test_guard_only_form_without_match(self, evaluate):
    with pytest.raises(NoMatchError):
      evaluate("match { 1 > 2 => 1 }")

  def test_guard_must_be_bool(self, evaluate):
    with pytest.raises(TypeMismatchError):
      evaluate('match { 1 => "one" }')


class TestRecurDynamicCheck:

  def test_recur_node_outside_loop(self):
    node = make_ast_node("RECUR", {'state': make_ast_node("NUMBER", 1)})
    with pytest.raises(RecurOutsideLoopError):
      eval_ast(node, create_builtin_runtime_env(), make_execution_context())

  def test_recur_node_in_loop_tail(self):
    node = make_ast_node("RECUR", {'state': make_ast_node("NUMBER", 1)})
    result = eval_ast(node, create_builtin_runtime_env(), make_execution_context(), tail=True)
    assert result['type'] == "Recur"
    assert result['state']['value'] == 1
