"""
Conditional Node Expressions

A small whitelisted grammar evaluated against the session state map:

    expr       := or_expr
    or_expr    := and_expr (("||" | "or") and_expr)*
    and_expr   := not_expr (("&&" | "and") not_expr)*
    not_expr   := ("!" | "not") not_expr | comparison
    comparison := operand (COMPARATOR operand)?
    operand    := literal | path | "(" expr ")" | "-" NUMBER
    path       := IDENT ("." IDENT | "[" (STRING | NUMBER) "]")*

Paths starting with ``stateData`` (or ``state``) are resolved inside the state
map; any other leading identifier is treated as a state key. Missing values
resolve to None. Comparisons follow the loose rules authors expect from the
flow builder: numeric strings compare as numbers, ordering between
incompatible values is false.
"""
import re
from typing import Any, Mapping

MAX_EXPRESSION_LENGTH = 500
MAX_NESTING = 20

_TOKEN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d+)?)
  | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||[<>!().\[\]-])
  | (?P<ident>[A-Za-z_$][A-Za-z0-9_$]*)
    """,
    re.VERBOSE,
)

_COMPARATORS = {"==", "!=", "===", "!==", "<", "<=", ">", ">="}
_ROOT_NAMES = {"stateData", "state"}
_LITERALS = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "None": None,
    "undefined": None,
}
_MISSING = object()


class ConditionError(ValueError):
    """Raised for expressions outside the supported grammar"""


def _tokenize(expression: str) -> list[tuple[str, str]]:
    tokens = []
    position = 0
    while position < len(expression):
        match = _TOKEN.match(expression, position)
        if not match:
            raise ConditionError(
                f"Unexpected character {expression[position]!r} at {position}"
            )
        kind = match.lastgroup
        if kind != "ws":
            tokens.append((kind, match.group(kind)))
        position = match.end()
    return tokens


def _unquote(raw: str) -> str:
    body = raw[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


def _as_number(value: Any) -> Any:
    """Numeric view of a value, or _MISSING when it has none"""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value.strip()) if value.strip() else _MISSING
        except ValueError:
            return _MISSING
    return _MISSING


def _loose_equals(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if type(left) is type(right) or (
        isinstance(left, str) and isinstance(right, str)
    ):
        return left == right
    left_number, right_number = _as_number(left), _as_number(right)
    if left_number is not _MISSING and right_number is not _MISSING:
        return left_number == right_number
    return left == right


def _strict_equals(left: Any, right: Any) -> bool:
    numeric = (int, float)
    if (
        isinstance(left, numeric) and not isinstance(left, bool)
        and isinstance(right, numeric) and not isinstance(right, bool)
    ):
        return left == right
    return type(left) is type(right) and left == right


def _ordered(left: Any, right: Any, op: str) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        pair = (left, right)
    else:
        left_number, right_number = _as_number(left), _as_number(right)
        if left_number is _MISSING or right_number is _MISSING:
            return False
        pair = (left_number, right_number)

    if op == "<":
        return pair[0] < pair[1]
    if op == "<=":
        return pair[0] <= pair[1]
    if op == ">":
        return pair[0] > pair[1]
    return pair[0] >= pair[1]


def _compare(left: Any, op: str, right: Any) -> bool:
    if op == "==":
        return _loose_equals(left, right)
    if op == "!=":
        return not _loose_equals(left, right)
    if op == "===":
        return _strict_equals(left, right)
    if op == "!==":
        return not _strict_equals(left, right)
    return _ordered(left, right, op)


class _Parser:
    """Recursive-descent evaluator; parses and evaluates in one pass"""

    def __init__(self, tokens: list[tuple[str, str]], state: Mapping[str, Any]):
        self.tokens = tokens
        self.index = 0
        self.depth = 0
        self.state = state

    def _peek(self) -> tuple[str, str] | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _accept(self, *values: str) -> str | None:
        token = self._peek()
        if token and token[0] in ("op", "ident") and token[1] in values:
            self.index += 1
            return token[1]
        return None

    def _expect(self, value: str) -> None:
        if not self._accept(value):
            raise ConditionError(f"Expected {value!r}")

    def parse(self) -> Any:
        if not self.tokens:
            raise ConditionError("Empty expression")
        value = self._or()
        if self._peek() is not None:
            raise ConditionError(f"Unexpected token {self._peek()[1]!r}")
        return value

    def _or(self) -> Any:
        value = self._and()
        while self._accept("||", "or"):
            right = self._and()
            value = value or right
        return value

    def _and(self) -> Any:
        value = self._not()
        while self._accept("&&", "and"):
            right = self._not()
            value = value and right
        return value

    def _not(self) -> Any:
        negations = 0
        while self._accept("!", "not"):
            negations += 1
        value = self._comparison()
        if negations:
            return bool(value) if negations % 2 == 0 else not value
        return value

    def _comparison(self) -> Any:
        left = self._operand()
        token = self._peek()
        if token and token[0] == "op" and token[1] in _COMPARATORS:
            self.index += 1
            right = self._operand()
            return _compare(left, token[1], right)
        return left

    def _operand(self) -> Any:
        token = self._peek()
        if token is None:
            raise ConditionError("Unexpected end of expression")
        kind, value = token

        if kind == "number":
            self.index += 1
            return float(value) if "." in value else int(value)
        if kind == "string":
            self.index += 1
            return _unquote(value)
        if kind == "op" and value == "(":
            self.index += 1
            self.depth += 1
            if self.depth > MAX_NESTING:
                raise ConditionError("Expression nested too deeply")
            result = self._or()
            self._expect(")")
            self.depth -= 1
            return result
        if kind == "op" and value == "-":
            self.index += 1
            number = self._peek()
            if not number or number[0] != "number":
                raise ConditionError("'-' must precede a number")
            self.index += 1
            return -(float(number[1]) if "." in number[1] else int(number[1]))
        if kind == "ident":
            if value in _LITERALS:
                self.index += 1
                return _LITERALS[value]
            return self._path()

        raise ConditionError(f"Unexpected token {value!r}")

    def _path(self) -> Any:
        _, root = self.tokens[self.index]
        self.index += 1

        parts: list[Any] = []
        if root not in _ROOT_NAMES:
            parts.append(root)

        while True:
            if self._accept("."):
                token = self._peek()
                if not token or token[0] != "ident":
                    raise ConditionError("Expected a name after '.'")
                self.index += 1
                parts.append(token[1])
            elif self._accept("["):
                token = self._peek()
                if not token or token[0] not in ("string", "number"):
                    raise ConditionError("Only literal keys are allowed inside []")
                self.index += 1
                parts.append(_unquote(token[1]) if token[0] == "string" else int(float(token[1])))
                self._expect("]")
            else:
                break

        if not parts:
            # Bare "stateData" is truthy when the state has anything in it
            return dict(self.state)
        return _resolve(self.state, parts)


def _resolve(state: Mapping[str, Any], parts: list[Any]) -> Any:
    current: Any = state
    for part in parts:
        if isinstance(current, Mapping):
            current = current.get(str(part))
        elif isinstance(current, (list, tuple)) and isinstance(part, int):
            current = current[part] if -len(current) <= part < len(current) else None
        elif isinstance(current, str) and part == "length":
            current = len(current)
        else:
            return None
        if current is None:
            return None
    return current


def evaluate_condition(expression: str, state: Mapping[str, Any]) -> bool:
    """
    Evaluate a conditional-node expression against the state map.

    Raises ConditionError for anything outside the grammar; callers decide
    the fallback branch.
    """
    if not isinstance(expression, str) or not expression.strip():
        raise ConditionError("Empty expression")
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ConditionError("Expression too long")
    return bool(_Parser(_tokenize(expression), state).parse())
