"""
Relay Workflow Language Parser
Turns source text into a concrete syntax tree of tagged tuples ("TAG", payload).
No semantic checks beyond syntax: duplicate object keys, malformed function
headers and unmatched delimiters are rejected here, everything else is left
to the semantic analyzer.
"""

from typing import List, Dict, Any, Optional
import textwrap

from pyparsing import (
    Regex, QuotedString, Keyword, Literal, Suppress, Forward, Group,
    Opt, ZeroOrMore, DelimitedList, StringEnd, ParserElement,
    ParseBaseException, ParseFatalException,
    alphanums, lineno, col
)

from error_handling import RelayParseError

# Enable packrat parsing for performance
ParserElement.enable_packrat()


IDENT_PATTERN = r"[A-Za-z_][A-Za-z0-9_]*(?:-[A-Za-z0-9_]+)*[?!]?"
IDENT_CHARS = alphanums + "_-?!"

RESERVED_WORDS = frozenset({
    'fun', 'val', 'let', 'in', 'match', 'loop', 'recur', 'model',
    'true', 'false', 'null', 'and', 'or', 'not', '_',
})


def make_span(source: str, loc: int) -> Dict:
    """Source position of a node, 1-based"""
    return {'line': lineno(loc, source), 'col': col(loc, source)}


def keyword(word: str) -> Keyword:
    return Keyword(word, ident_chars=IDENT_CHARS)


# Binding strength of binary operators; all are left-associative
PRECEDENCE = {
    '>>': 1,
    'or': 2,
    'and': 3,
    '==': 4, '!=': 4,
    '<': 5, '<=': 5, '>': 5, '>=': 5,
    '+': 6, '-': 6,
    '*': 7, '/': 7, '%': 7,
}


def make_operator_node(op: str, left: Any, right: Any, span: Dict) -> tuple:
    if op == '>>':
        return ("PIPE", {"input": left, "stage": right, "span": span})
    if op in ('and', 'or'):
        return ("LOGIC", {"op": op, "left": left, "right": right, "span": span})
    return ("BINOP", {"op": op, "left": left, "right": right, "span": span})


def fold_operators(items: List[Any], span: Dict) -> tuple:
    """Fold a flat [operand, op, operand, ...] sequence into a tree by precedence"""
    operands = [items[0]]
    operators: List[str] = []

    def reduce_top():
        op = operators.pop()
        right = operands.pop()
        left = operands.pop()
        operands.append(make_operator_node(op, left, right, span))

    for i in range(1, len(items), 2):
        op = items[i]
        while operators and PRECEDENCE[operators[-1]] >= PRECEDENCE[op]:
            reduce_top()
        operators.append(op)
        operands.append(items[i + 1])
    while operators:
        reduce_top()
    return operands[0]


class RelayGrammar:
    """Relay grammar definition using pyparsing"""

    def __init__(self):
        self._setup_grammar()

    def _setup_grammar(self):
        """Setup the Relay grammar"""

        expression = Forward()

        # Keywords
        fun_kw = keyword("fun")
        val_kw = keyword("val")
        let_kw = keyword("let")
        in_kw = keyword("in")
        match_kw = keyword("match")
        loop_kw = keyword("loop")
        recur_kw = keyword("recur")
        model_kw = keyword("model")
        and_kw = keyword("and")
        or_kw = keyword("or")
        not_kw = keyword("not")

        # Punctuation; '=' must not swallow the first char of '==' or '=>'
        assign = Suppress(Regex(r"=(?![=>])"))
        arrow = Suppress("=>")
        lpar, rpar = Suppress("("), Suppress(")")
        lbrack, rbrack = Suppress("["), Suppress("]")
        lbrace, rbrace = Suppress("{"), Suppress("}")
        comma = Suppress(",")

        # Literals
        number = Regex(r"\d+(?:\.\d+)?(?:[eE][+-]?\d+)?").set_parse_action(
            lambda t: ("NUMBER", float(t[0]) if any(c in t[0] for c in ".eE") else int(t[0]))
        )
        long_string = QuotedString('"""', multiline=True).set_parse_action(
            lambda t: ("STRING", textwrap.dedent(t[0]).strip())
        )
        short_string = QuotedString('"', esc_char='\\').set_parse_action(lambda t: ("STRING", t[0]))
        string_literal = long_string | short_string
        true_literal = keyword("true").set_parse_action(lambda: ("BOOL", True))
        false_literal = keyword("false").set_parse_action(lambda: ("BOOL", False))
        null_literal = keyword("null").set_parse_action(lambda: ("NULL", None))

        # Identifiers exclude reserved words; object keys and fields do not
        name = Regex(IDENT_PATTERN).add_condition(
            lambda t: t[0] not in RESERVED_WORDS, message="reserved word used as a name"
        )
        identifier = name.copy().add_parse_action(
            lambda s, loc, t: ("IDENTIFIER", {"name": t[0], "span": make_span(s, loc)})
        )
        key_name = Regex(IDENT_PATTERN) | QuotedString('"', esc_char='\\')

        # Array literals [a, b, c]
        array_literal = (
            lbrack + Group(Opt(DelimitedList(expression, allow_trailing_delim=True))) + rbrack
        ).set_parse_action(lambda t: ("ARRAY", list(t[0])))

        # Object literals {key: value, "quoted key": value}
        def make_object(s, loc, tokens):
            entries = []
            seen = set()
            for entry in tokens[0]:
                key, value = entry[0], entry[1]
                if key in seen:
                    raise ParseFatalException(s, loc, f"duplicate key '{key}' in object literal")
                seen.add(key)
                entries.append((key, value))
            return ("OBJECT", {"entries": entries, "span": make_span(s, loc)})

        object_entry = Group(key_name + Suppress(":") + expression)
        object_literal = (
            lbrace + Group(Opt(DelimitedList(object_entry, allow_trailing_delim=True))) + rbrace
        ).set_parse_action(make_object)

        # Parameter lists with optional trailing defaults
        def make_param(tokens):
            default = tokens[1] if len(tokens) > 1 else None
            return ("PARAM", {"name": tokens[0], "default": default})

        param = (name + Opt(assign + expression)).set_parse_action(make_param)

        def check_params(s, loc, tokens):
            params = list(tokens[0])
            seen = set()
            seen_default = False
            for _, info in params:
                if info["name"] in seen:
                    raise ParseFatalException(s, loc, f"duplicate parameter '{info['name']}' in function header")
                seen.add(info["name"])
                if info["default"] is not None:
                    seen_default = True
                elif seen_default:
                    raise ParseFatalException(
                        s, loc, f"non-default parameter '{info['name']}' follows default parameter")
            return [params]

        param_list = Group(Opt(DelimitedList(param))).set_parse_action(check_params)

        # Anonymous functions: fun(x, y) => body
        lambda_expr = (
            fun_kw + lpar - param_list + rpar + arrow + expression
        ).set_parse_action(
            lambda s, loc, t: ("LAMBDA", {"params": list(t[1]), "body": t[2], "span": make_span(s, loc)})
        )

        # Model-invocation templates: model("prompt") or model("prompt", {timeout: 5})
        model_expr = (
            model_kw + lpar - expression + Opt(comma + expression) + rpar
        ).set_parse_action(
            lambda s, loc, t: ("MODEL", {
                "template": t[1],
                "options": t[2] if len(t) > 2 else None,
                "span": make_span(s, loc),
            })
        )

        # Sequential bindings: let a = x, b = f(a) in body
        binding = Group(name + assign + expression).set_parse_action(
            lambda s, loc, t: [(t[0][0], t[0][1], make_span(s, loc))]
        )
        let_expr = (
            let_kw - Group(DelimitedList(binding)) + in_kw + expression
        ).set_parse_action(
            lambda s, loc, t: ("LET", {"bindings": list(t[1]), "body": t[3], "span": make_span(s, loc)})
        )

        # Guarded dispatch: match [subject] { guard => expr, _ => expr }
        wildcard = Regex(r"_(?![A-Za-z0-9_?!-])").set_parse_action(lambda: ("WILDCARD", None))
        clause = Group((wildcard | expression) + arrow + expression).set_parse_action(
            lambda t: [(t[0][0], t[0][1])]
        )

        def make_match(s, loc, tokens):
            subject = tokens[1] if len(tokens) == 3 else None
            clauses = list(tokens[-1])
            return ("MATCH", {"subject": subject, "clauses": clauses, "span": make_span(s, loc)})

        match_expr = (
            match_kw + Opt(expression) + lbrace - Group(DelimitedList(clause, allow_trailing_delim=True)) + rbrace
        ).set_parse_action(make_match)

        # loop(initial_state, fun(state) => ...) and recur(next_state)
        loop_expr = (
            loop_kw + lpar - expression + comma + expression + rpar
        ).set_parse_action(
            lambda s, loc, t: ("LOOP", {"init": t[1], "body": t[2], "span": make_span(s, loc)})
        )
        recur_expr = (
            recur_kw + lpar - expression + rpar
        ).set_parse_action(lambda s, loc, t: ("RECUR", {"state": t[1], "span": make_span(s, loc)}))

        parenthesized = lpar + expression + rpar

        primary_expr = (
            number | string_literal | true_literal | false_literal | null_literal |
            array_literal | object_literal |
            lambda_expr | model_expr | let_expr | match_expr | loop_expr | recur_expr |
            identifier | parenthesized
        )

        # Postfix calls and field access: f(a)(b).field
        call_suffix = Group(lpar + Opt(DelimitedList(expression)) + rpar).set_parse_action(
            lambda s, loc, t: ("CALL_SUFFIX", {"args": list(t[0]), "span": make_span(s, loc)})
        )
        field_suffix = (Suppress(".") + key_name).set_parse_action(
            lambda s, loc, t: ("FIELD_SUFFIX", {"field": t[0], "span": make_span(s, loc)})
        )

        def make_postfix(tokens):
            result = tokens[0]
            for tag, info in tokens[1:]:
                if tag == "CALL_SUFFIX":
                    result = ("CALL", {"function": result, "args": info["args"], "span": info["span"]})
                else:
                    result = ("FIELD", {"object": result, "field": info["field"], "span": info["span"]})
            return result

        postfix_expr = (primary_expr + ZeroOrMore(call_suffix | field_suffix)).set_parse_action(make_postfix)

        # Operators. Operands and operators are parsed as one flat sequence
        # and folded by precedence, so nesting depth stays independent of
        # the number of precedence tiers
        def make_unary(s, loc, tokens):
            return ("UNARY", {"op": tokens[0], "operand": tokens[1], "span": make_span(s, loc)})

        unary_expr = Forward()
        unary_expr <<= (
            (Literal("-") | not_kw) + unary_expr
        ).set_parse_action(make_unary) | postfix_expr

        binary_op = Regex(r">>|==|!=|<=|>=|<|>|[+*/%]|-(?!-)") | and_kw | or_kw

        def make_operators(s, loc, tokens):
            items = list(tokens)
            if len(items) == 1:
                return items[0]
            return fold_operators(items, make_span(s, loc))

        expression <<= (unary_expr + ZeroOrMore(binary_op + unary_expr)).set_parse_action(make_operators)

        # Top-level definitions
        function_def = (
            fun_kw + name + lpar - param_list + rpar + assign + expression
        ).set_parse_action(
            lambda s, loc, t: ("FUNCTION_DEF", {
                "name": t[1], "params": list(t[2]), "body": t[3], "span": make_span(s, loc)
            })
        )
        value_def = (
            val_kw - name + assign + expression
        ).set_parse_action(
            lambda s, loc, t: ("VALUE_DEF", {"name": t[1], "expr": t[2], "span": make_span(s, loc)})
        )

        program = ZeroOrMore(function_def | value_def) + StringEnd()

        comment = Regex(r"#[^\n]*")
        program.ignore(comment)
        expression.ignore(comment)

        # Store grammar elements
        self.expression = expression
        self.program = program
        self.function_def = function_def
        self.param_list = param_list

    def parse_program(self, text: str, filename: str = "<input>") -> List[Any]:
        """Parse a whole program into a list of top-level definitions"""
        try:
            return list(self.program.parse_string(text, parse_all=True))
        except ParseBaseException as e:
            raise RelayParseError.from_exception(e, text, filename) from None
        except RecursionError:
            raise RelayParseError("expression nested too deeply to parse", filename=filename) from None

    def parse_expression(self, text: str, filename: str = "<input>") -> Any:
        """Parse a single Relay expression"""
        try:
            return self.expression.parse_string(text, parse_all=True)[0]
        except ParseBaseException as e:
            raise RelayParseError.from_exception(e, text, filename) from None
        except RecursionError:
            raise RelayParseError("expression nested too deeply to parse", filename=filename) from None


class RelayParser:
    """Main Relay parser wrapping the grammar"""

    def __init__(self):
        self.grammar = RelayGrammar()

    def parse_file(self, filepath: str) -> List[Any]:
        """Parse a Relay source file"""
        try:
            with open(filepath, 'r', encoding='utf-8') as f:
                content = f.read()
        except FileNotFoundError:
            raise RelayParseError(f"File not found: {filepath}", filename=filepath)
        except UnicodeDecodeError as e:
            raise RelayParseError(f"Cannot decode file {filepath}: {e}", filename=filepath)
        return self.grammar.parse_program(content, filepath)

    def parse_string(self, text: str, filename: str = "<input>") -> List[Any]:
        """Parse Relay source code from string"""
        return self.grammar.parse_program(text, filename)

    def parse_expression(self, text: str, filename: str = "<input>") -> Any:
        """Parse a single Relay expression"""
        return self.grammar.parse_expression(text, filename)


_default_parser: Optional[RelayParser] = None


def create_parser() -> RelayParser:
    """Create a Relay parser; the grammar is built once and shared"""
    global _default_parser
    if _default_parser is None:
        _default_parser = RelayParser()
    return _default_parser


def parse(source_text: str, filename: str = "<input>") -> List[Any]:
    """parse(sourceText) -> CST, or RelayParseError with position and message"""
    return create_parser().parse_string(source_text, filename)


# Utility functions for working with the CST
def find_nodes_by_type(cst: Any, node_type: str) -> List[Any]:
    """Find all tagged tuples of a specific type in a CST"""
    result = []

    def search(node):
        if isinstance(node, tuple) and len(node) == 2 and isinstance(node[0], str):
            if node[0] == node_type:
                result.append(node)
            search(node[1])
        elif isinstance(node, dict):
            for value in node.values():
                search(value)
        elif isinstance(node, (list, tuple)):
            for item in node:
                search(item)

    search(cst)
    return result


def pretty_print_cst(cst: Any, indent: int = 0) -> str:
    """Pretty print a CST node for debugging"""
    pad = "  " * indent
    if isinstance(cst, tuple) and len(cst) == 2 and isinstance(cst[0], str) and cst[0].isupper():
        tag, payload = cst
        if isinstance(payload, (dict, list)):
            return f"{pad}{tag}\n" + pretty_print_cst(payload, indent + 1)
        return f"{pad}{tag}({payload!r})\n"
    if isinstance(cst, dict):
        result = ""
        for key, value in cst.items():
            if key == "span":
                continue
            if isinstance(value, (tuple, dict, list)):
                result += f"{pad}{key}:\n" + pretty_print_cst(value, indent + 1)
            else:
                result += f"{pad}{key}: {value!r}\n"
        return result
    if isinstance(cst, (list, tuple)):
        return "".join(pretty_print_cst(item, indent) for item in cst)
    return f"{pad}{cst!r}\n"
