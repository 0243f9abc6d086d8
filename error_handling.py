"""
Error taxonomy for the Relay runtime, plus parse-error enhancement
Parse errors carry position, context lines and suggestions; runtime errors
carry an optional source span and any history collected before the failure
"""

from typing import Any, List, Optional, Dict
from pyparsing import ParseBaseException
import re


# ============================================================================
# DATA STRUCTURES (Immutable Dictionaries)
# ============================================================================

def make_parse_error(
    message: str,
    location: int,
    line: int,
    column: int,
    expected: Optional[List[str]] = None,
    got: Optional[str] = None,
    context: Optional[str] = None,
    suggestions: Optional[List[str]] = None
) -> Dict:
    """Create an immutable parse error structure"""
    return {
        'message': message,
        'location': location,
        'line': line,
        'column': column,
        'expected': expected or [],
        'got': got,
        'context': context,
        'suggestions': suggestions or []
    }


def format_parse_error(error: Dict) -> str:
    """Format parse error as string"""
    error_msg = f"Parse error at line {error['line']}, column {error['column']}:\n"
    error_msg += f"  {error['message']}\n"

    if error['expected']:
        error_msg += f"  Expected: {', '.join(error['expected'])}\n"

    if error['got']:
        error_msg += f"  Got: {error['got']}\n"

    if error['context']:
        error_msg += f"  Context:\n{error['context']}\n"

    if error['suggestions']:
        error_msg += "  Suggestions:\n"
        for suggestion in error['suggestions']:
            error_msg += f"    - {suggestion}\n"

    return error_msg


# ============================================================================
# PURE FUNCTIONS
# ============================================================================

def get_context_lines(source_text: str, line_num: int, col_num: int, context_lines: int = 2) -> str:
    """Get context lines around the error"""
    lines = source_text.split('\n')
    start_line = max(0, line_num - context_lines - 1)
    end_line = min(len(lines), line_num + context_lines)

    context_parts = []
    for i in range(start_line, end_line):
        line_prefix = f"{i+1:4d}: "
        context_parts.append(f"{line_prefix}{lines[i]}")
        if i == line_num - 1:
            context_parts.append(f"{'':6}{' ' * (col_num - 1)}^ Error here")

    return '\n'.join(context_parts)


def extract_expected(exc: ParseBaseException) -> List[str]:
    """Extract expected tokens from exception"""
    msg = str(exc)
    expected_match = re.search(r"Expected\s+(.+?)(?:,\s+found|\s+\(|$)", msg)
    if expected_match:
        return [expected_match.group(1)]
    return []


def extract_got(source_text: str, line_num: int, col_num: int) -> str:
    """Extract what was actually found at the error location"""
    lines = source_text.split('\n')

    if 0 < line_num <= len(lines):
        error_line = lines[line_num - 1]
        if col_num <= len(error_line):
            start = max(0, col_num - 1)
            end = min(len(error_line), col_num + 10)
            got_text = error_line[start:end].strip()
            if got_text:
                return f"'{got_text}'"
        return "end of line"
    return "end of input"


def generate_suggestions(message: str, got: str) -> List[str]:
    """Generate helpful suggestions based on the error"""
    suggestions = []

    if "duplicate key" in message:
        suggestions.append("Object keys must be unique within one literal - merge or rename the entry")

    if "default" in message and "parameter" in message:
        suggestions.append("Parameters with defaults must come after all parameters without defaults")

    if ";" in got:
        suggestions.append("Relay doesn't use semicolons - separate let bindings with commas")

    if "->" in got:
        suggestions.append("Anonymous functions use '=>': fun(x) => body")

    if "end of text" in message:
        suggestions.append("Top-level code must be 'fun name(...) = expr' or 'val name = expr' definitions")
        suggestions.append("Check for an unmatched ')', ']' or '}' before this point")

    return suggestions


def enhance_parse_exception_dict(exc: ParseBaseException, source_text: str) -> Dict:
    """Convert pyparsing exception to enhanced Relay error dict"""
    line_num = exc.lineno
    col_num = exc.column
    message = exc.msg if exc.msg else str(exc)

    context = get_context_lines(source_text, line_num, col_num)
    expected = extract_expected(exc)
    got = extract_got(source_text, line_num, col_num)
    suggestions = generate_suggestions(message, got)

    return make_parse_error(
        message=message,
        location=exc.loc,
        line=line_num,
        column=col_num,
        expected=expected,
        got=got,
        context=context,
        suggestions=suggestions
    )


# ============================================================================
# EXCEPTION HIERARCHY
# ============================================================================

class RelayError(Exception):
    """Base class for every error raised by the Relay runtime"""


class RelayParseError(RelayError):
    """Malformed source text"""
    def __init__(self, message: str, location: int = 0, line: int = 0, column: int = 0,
                 expected: Optional[List[str]] = None, got: Optional[str] = None,
                 context: Optional[str] = None, suggestions: Optional[List[str]] = None,
                 filename: str = "<input>"):
        self.message = message
        self.location = location
        self.line = line
        self.column = column
        self.expected = expected or []
        self.got = got
        self.context = context
        self.suggestions = suggestions or []
        self.filename = filename
        super().__init__(message)

    @classmethod
    def from_exception(cls, exc: ParseBaseException, source_text: str,
                       filename: str = "<input>") -> 'RelayParseError':
        error_dict = enhance_parse_exception_dict(exc, source_text)
        return cls(filename=filename, **error_dict)

    def __str__(self) -> str:
        error_dict = make_parse_error(
            self.message, self.location, self.line, self.column,
            self.expected, self.got, self.context, self.suggestions
        )
        return f"{self.filename}: {format_parse_error(error_dict)}"


class RelayRuntimeError(RelayError):
    """Evaluation failure. `span` locates the failing node when known; `history`
    holds the iteration history a loop had collected before the failure."""
    def __init__(self, message: str, span: Optional[Dict] = None):
        self.message = message
        self.span = span
        self.history: Optional[List[Any]] = None
        super().__init__(message)

    def __str__(self) -> str:
        if self.span:
            return f"{self.message} (line {self.span['line']}, column {self.span['col']})"
        return self.message


class UnboundIdentifierError(RelayRuntimeError):
    def __init__(self, name: str, span: Optional[Dict] = None):
        self.name = name
        super().__init__(f"Unbound identifier: {name}", span)


class TypeMismatchError(RelayRuntimeError):
    """Wrong value kind for an operation; names the operand and the expected kind"""
    def __init__(self, message: str, operand: str = "", expected: str = "",
                 actual: str = "", span: Optional[Dict] = None):
        self.operand = operand
        self.expected = expected
        self.actual = actual
        super().__init__(message, span)


class NoMatchError(RelayRuntimeError):
    def __init__(self, scrutinee: str, span: Optional[Dict] = None):
        self.scrutinee = scrutinee
        super().__init__(f"No match clause satisfied for {scrutinee}", span)


class RecurOutsideLoopError(RelayRuntimeError):
    def __init__(self, message: str = "recur used outside the tail position of a loop body",
                 span: Optional[Dict] = None):
        super().__init__(message, span)


class ModelError(RelayRuntimeError):
    """Failure of an external model invocation.

    kind is TRANSIENT (retryable) or PERMANENT; subkind names the cause, e.g.
    'timeout', 'rate_limit', 'network', 'server_error', 'rejected', 'retries_exhausted'.
    """
    TRANSIENT = "transient"
    PERMANENT = "permanent"

    def __init__(self, message: str, kind: str = PERMANENT, subkind: str = "backend_failure",
                 sequence: Optional[int] = None, attempts: int = 0, span: Optional[Dict] = None):
        if kind not in (self.TRANSIENT, self.PERMANENT):
            raise ValueError(f"unknown model error kind: {kind}")
        self.kind = kind
        self.subkind = subkind
        self.sequence = sequence
        self.attempts = attempts
        super().__init__(message, span)

    @property
    def is_transient(self) -> bool:
        return self.kind == self.TRANSIENT

    @property
    def is_permanent(self) -> bool:
        return self.kind == self.PERMANENT

    def __str__(self) -> str:
        prefix = f"[{self.kind}:{self.subkind}]"
        if self.sequence is not None:
            prefix += f" model call #{self.sequence}"
        return f"{prefix} {super().__str__()}"


class CoercionError(ModelError):
    """A textual model response that could not be read as structured data"""
    def __init__(self, message: str, grammar: str = "json", span: Optional[Dict] = None):
        self.grammar = grammar
        super().__init__(message, ModelError.PERMANENT, "parse_error", span=span)
