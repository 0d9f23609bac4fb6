"""
Evaluation of the HCL expressions python-hcl2 leaves unevaluated.

python-hcl2 decodes literals into Python values but returns every other
expression as a "${...}" string: `upstream = base` becomes "${base}" and
`"${base}/current"` stays a template. This module evaluates those strings
against a mapping of variables, with the `concat`, `flatten` and `merge`
functions available.
"""
import json
import logging
from collections.abc import Mapping

from lark import Lark, Transformer, v_args
from lark.exceptions import LarkError, VisitError

logger = logging.getLogger(__name__)

_GRAMMAR = r"""
start: expr

expr: atom                    -> passthrough
    | expr "." NAME           -> get_attr
    | expr "[" expr "]"       -> get_index

atom: STRING                  -> string
    | NUMBER                  -> number
    | NAME "(" args? ")"      -> call
    | NAME                    -> variable
    | "[" args? "]"           -> tuple
    | "{" pairs? "}"          -> object
    | "(" expr ")"            -> passthrough
    | "${" expr "}"           -> passthrough

args: expr ("," expr)* ","?
pairs: pair ("," pair)* ","?
pair: (NAME | STRING) ("=" | ":") expr

NAME: /[A-Za-z_][A-Za-z0-9_-]*/
NUMBER: /-?\d+(\.\d+)?([eE][+-]?\d+)?/
STRING: /"(?:[^"\\]|\\.)*"/ | /'(?:[^'\\]|\\.)*'/

%import common.WS
%ignore WS
"""

_PARSER = Lark(_GRAMMAR, parser="lalr")

_CONSTANTS = {"true": True, "false": False, "null": None}


class ExpressionError(ValueError):
    """Raised when an expression cannot be parsed or evaluated."""


def _concat(*sequences):
    result = []
    for sequence in sequences:
        if not isinstance(sequence, list):
            raise ExpressionError(f"concat: expected lists, got {type(sequence).__name__}")
        result.extend(sequence)
    return result


def _flatten(sequence):
    if not isinstance(sequence, list):
        raise ExpressionError(f"flatten: expected a list, got {type(sequence).__name__}")
    result = []
    for item in sequence:
        if isinstance(item, list):
            result.extend(_flatten(item))
        else:
            result.append(item)
    return result


def _merge(*mappings):
    result = {}
    for mapping in mappings:
        if mapping is None:
            continue
        if not isinstance(mapping, dict):
            raise ExpressionError(f"merge: expected maps, got {type(mapping).__name__}")
        result.update(mapping)
    return result


FUNCTIONS = {
    "concat": _concat,
    "flatten": _flatten,
    "merge": _merge,
}


def _unquote(token) -> str:
    text = str(token)
    if text.startswith('"'):
        try:
            return json.loads(text)
        except ValueError as e:
            raise ExpressionError(f"invalid string literal {text}: {e}") from e
    # python-hcl2 renders lists nested in function calls with Python quoting
    return text[1:-1].replace("\\'", "'").replace("\\\\", "\\")


def _to_string(value) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else str(value)
    if value is None:
        raise ExpressionError("cannot interpolate a null value")
    raise ExpressionError(f"cannot interpolate a {type(value).__name__} into a string")


@v_args(inline=True)
class _Evaluator(Transformer):

    def __init__(self, scope: Mapping):
        super().__init__()
        self.scope = scope

    def start(self, value):
        return value

    def passthrough(self, value):
        return value

    def string(self, token):
        return interpolate(_unquote(token), self.scope)

    def number(self, token):
        text = str(token)
        if any(c in text for c in ".eE"):
            return float(text)
        return int(text)

    def variable(self, name):
        name = str(name)
        if name in _CONSTANTS:
            return _CONSTANTS[name]
        try:
            return self.scope[name]
        except KeyError:
            raise ExpressionError(f"unknown variable '{name}'") from None

    def call(self, name, args=None):
        function = FUNCTIONS.get(str(name))
        if function is None:
            raise ExpressionError(f"unknown function '{name}'")
        return function(*(args or []))

    def args(self, *values):
        return list(values)

    def tuple(self, values=None):
        return list(values or [])

    def pair(self, key, value):
        if key.type == "STRING":
            return _unquote(key), value
        return str(key), value

    def pairs(self, *pairs):
        return list(pairs)

    def object(self, pairs=None):
        return dict(pairs or [])

    def get_attr(self, value, name):
        if not isinstance(value, dict):
            raise ExpressionError(f"cannot read attribute '{name}' of a {type(value).__name__}")
        try:
            return value[str(name)]
        except KeyError:
            raise ExpressionError(f"no attribute '{name}'") from None

    def get_index(self, value, key):
        if isinstance(value, dict):
            if str(key) not in value:
                raise ExpressionError(f"no key '{key}'")
            return value[str(key)]
        if isinstance(value, list):
            if isinstance(key, bool) or not isinstance(key, int):
                raise ExpressionError(f"list index must be a whole number, got {key!r}")
            if not 0 <= key < len(value):
                raise ExpressionError(f"index {key} out of range for a list of {len(value)}")
            return value[key]
        raise ExpressionError(f"cannot index a {type(value).__name__}")


def evaluate_expression(text: str, scope: Mapping):
    """Evaluates the body of one ${...} reference."""
    try:
        tree = _PARSER.parse(text)
    except LarkError as e:
        raise ExpressionError(f"invalid expression '{text}': {e}") from e
    try:
        return _Evaluator(scope).transform(tree)
    except VisitError as e:
        if isinstance(e.orig_exc, ExpressionError):
            raise e.orig_exc from None
        raise ExpressionError(f"cannot evaluate '{text}': {e.orig_exc}") from e.orig_exc


def _closing_brace(text: str, start: int) -> int:
    depth = 1
    quote = None
    i = start
    while i < len(text):
        char = text[i]
        if quote:
            if char == "\\":
                i += 1
            elif char == quote:
                quote = None
        elif char in "\"'":
            quote = char
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    raise ExpressionError(f"unterminated '${{' in '{text}'")


def interpolate(text: str, scope: Mapping):
    """
    Renders a template string. A string that is exactly one ${...} reference
    evaluates to the referenced value itself, which need not be a string.
    "$${" stands for a literal "${".
    """
    parts = []
    pos = 0
    while True:
        start = text.find("${", pos)
        if start == -1:
            parts.append(text[pos:])
            return "".join(parts)
        if start > 0 and text[start - 1] == "$":
            parts.append(text[pos:start - 1] + "${")
            pos = start + 2
            continue
        end = _closing_brace(text, start + 2)
        value = evaluate_expression(text[start + 2:end], scope)
        if start == 0 and end == len(text) - 1:
            return value
        parts.append(text[pos:start])
        parts.append(_to_string(value))
        pos = end + 1


def evaluate(value, scope: Mapping):
    """Evaluates every template string inside a decoded configuration value."""
    if isinstance(value, str):
        return interpolate(value, scope)
    if isinstance(value, list):
        return [evaluate(item, scope) for item in value]
    if isinstance(value, dict):
        return {key: evaluate(item, scope) for key, item in value.items()}
    return value
