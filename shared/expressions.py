"""Expression evaluator for ``{{ ... }}`` values in node configuration.

Expressions use a small JavaScript-like grammar parsed by a recursive-descent
parser; nothing is handed to the host interpreter. Readable roots:

- ``$node["<id>"].json.<path>``: data recorded for an upstream node
- ``$vars.<name>``: user-promoted variables
- ``$input``: the node's resolved upstream input
- ``$execution``: ``{id, workflowId, mode}``
- ``$now``, ``$uuid()``, ``Date.now()``, ``new Date()``, ``Math.*``,
  ``crypto.randomUUID()``

Missing node ids, paths and variables raise ``ExpressionError``.
"""

from __future__ import annotations

import copy
import json
import math
import random
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from shared.errors import ExpressionError
from shared.workflow_contracts import ExecutionState, NodeOutput

_EXPRESSION_PATTERN = re.compile(r"^\s*\{\{(.*)\}\}\s*$", re.DOTALL)
_PATH_SEGMENT = re.compile(r"""\[\s*(-?\d+)\s*\]|\[\s*["']([^"']*)["']\s*\]|([^.\[\]]+)|(\.)""")


# ─── Public helpers ────────────────────────────────────────────


@dataclass(frozen=True)
class ExpressionContext:
    """Read-only view an expression is evaluated against."""

    outputs: Mapping[str, NodeOutput] = field(default_factory=dict)
    variables: Mapping[str, Any] = field(default_factory=dict)
    input: Any = None
    execution: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_state(cls, state: ExecutionState, input_data: Any = None) -> "ExpressionContext":
        return cls(
            outputs=state.outputs,
            variables=state.variables,
            input=input_data,
            execution={"id": state.id, "workflowId": state.workflow_id, "mode": state.mode},
        )


def is_expression(value: Any) -> bool:
    """True for strings wrapped in ``{{ ... }}``."""
    return isinstance(value, str) and _EXPRESSION_PATTERN.match(value) is not None


def evaluate(source: str, context: ExpressionContext) -> Any:
    """Evaluate an expression; static values are returned verbatim."""
    if not is_expression(source):
        return source
    match = _EXPRESSION_PATTERN.match(source)
    inner = match.group(1) if match else ""
    try:
        tree = _Parser(inner).parse()
        result = _Evaluator(context).eval(tree)
    except ExpressionError:
        raise
    except (ArithmeticError, ValueError, RecursionError) as exc:
        raise ExpressionError(f"Cannot evaluate \"{inner.strip()}\": {exc}") from exc
    return copy.deepcopy(_to_plain(result))


def resolve_config(value: Any, context: ExpressionContext, *, tolerant: bool = False) -> Any:
    """Resolve every string leaf of ``value`` independently."""
    if isinstance(value, dict):
        return {key: resolve_config(item, context, tolerant=tolerant) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_config(item, context, tolerant=tolerant) for item in value]
    if not is_expression(value):
        return value
    try:
        return evaluate(value, context)
    except ExpressionError:
        if tolerant:
            return ""
        raise


def lookup_path(data: Any, path: str) -> Any:
    """Drill into ``data`` along ``a.b[0].c`` (or ``a.b.0.c``); empty path returns ``data``."""
    current = data
    for segment in _split_path(path):
        current = _step(current, segment, path)
    return current


def _split_path(path: str) -> list[str | int]:
    text = str(path or "").strip()
    segments: list[str | int] = []
    pos = 0
    while pos < len(text):
        match = _PATH_SEGMENT.match(text, pos)
        if match is None:
            raise ExpressionError(f"Invalid path '{path}'")
        index, quoted, plain, _dot = match.groups()
        if index is not None:
            segments.append(int(index))
        elif quoted is not None:
            segments.append(quoted)
        elif plain is not None:
            plain = plain.strip()
            segments.append(int(plain) if plain.isdigit() else plain)
        pos = match.end()
    return segments


def _step(current: Any, segment: str | int, path: str) -> Any:
    if isinstance(current, dict):
        key = segment if segment in current else str(segment)
        if key not in current:
            raise ExpressionError(f"Path '{path}' does not exist (missing '{segment}')")
        return current[key]
    if isinstance(current, (list, tuple)):
        if not isinstance(segment, int):
            raise ExpressionError(f"Path '{path}' does not exist (expected an index, got '{segment}')")
        if segment < 0 or segment >= len(current):
            raise ExpressionError(f"Path '{path}' does not exist (index {segment} out of range)")
        return current[segment]
    raise ExpressionError(f"Path '{path}' does not exist (cannot read '{segment}' of {_type_name(current)})")


# ─── Tokenizer ─────────────────────────────────────────────────

_PUNCTUATORS = (
    "===", "!==", "==", "!=", "<=", ">=", "&&", "||", "??",
    "<", ">", "+", "-", "*", "/", "%", "!", "?", ":", ".", ",", "(", ")", "[", "]",
)
_IDENT_START = re.compile(r"[A-Za-z_$]")
_IDENT_BODY = re.compile(r"[A-Za-z0-9_$]*")
_NUMBER = re.compile(r"\d+(\.\d+)?([eE][+-]?\d+)?|\.\d+([eE][+-]?\d+)?")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", "'": "'", '"': '"', "0": "\0"}


@dataclass(frozen=True)
class _Token:
    kind: str  # num|str|ident|op|eof
    value: Any
    pos: int


def _tokenize(source: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    length = len(source)
    while pos < length:
        char = source[pos]
        if char.isspace():
            pos += 1
            continue
        if char in ("'", '"'):
            text, pos = _read_string(source, pos)
            tokens.append(_Token("str", text, pos))
            continue
        number = _NUMBER.match(source, pos)
        if number is not None:
            raw = number.group(0)
            value: Any = float(raw) if any(c in raw for c in ".eE") else int(raw)
            tokens.append(_Token("num", value, pos))
            pos = number.end()
            continue
        if _IDENT_START.match(char):
            body = _IDENT_BODY.match(source, pos + 1)
            end = body.end() if body else pos + 1
            tokens.append(_Token("ident", source[pos:end], pos))
            pos = end
            continue
        for punct in _PUNCTUATORS:
            if source.startswith(punct, pos):
                tokens.append(_Token("op", punct, pos))
                pos += len(punct)
                break
        else:
            raise ExpressionError(f"Unexpected character '{char}' at position {pos}")
    tokens.append(_Token("eof", None, length))
    return tokens


def _read_string(source: str, pos: int) -> tuple[str, int]:
    quote = source[pos]
    pos += 1
    chars: list[str] = []
    while pos < len(source):
        char = source[pos]
        if char == "\\" and pos + 1 < len(source):
            chars.append(_ESCAPES.get(source[pos + 1], source[pos + 1]))
            pos += 2
            continue
        if char == quote:
            return "".join(chars), pos + 1
        chars.append(char)
        pos += 1
    raise ExpressionError("Unterminated string literal")


# ─── Parser ────────────────────────────────────────────────────


@dataclass(frozen=True)
class _Literal:
    value: Any


@dataclass(frozen=True)
class _Identifier:
    name: str


@dataclass(frozen=True)
class _Member:
    obj: Any
    name: str


@dataclass(frozen=True)
class _Index:
    obj: Any
    index: Any


@dataclass(frozen=True)
class _Call:
    callee: Any
    args: tuple[Any, ...]


@dataclass(frozen=True)
class _New:
    name: str
    args: tuple[Any, ...]


@dataclass(frozen=True)
class _Unary:
    op: str
    operand: Any


@dataclass(frozen=True)
class _Binary:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class _Logical:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class _Conditional:
    test: Any
    body: Any
    orelse: Any


@dataclass(frozen=True)
class _Array:
    items: tuple[Any, ...]


_KEYWORD_LITERALS = {"true": True, "false": False, "null": None, "undefined": None}
_BINARY_LEVELS: tuple[tuple[str, ...], ...] = (
    ("==", "!=", "===", "!=="),
    ("<", "<=", ">", ">="),
    ("+", "-"),
    ("*", "/", "%"),
)


class _Parser:
    def __init__(self, source: str):
        if not source.strip():
            raise ExpressionError("Empty expression")
        self.tokens = _tokenize(source)
        self.pos = 0

    def parse(self) -> Any:
        node = self._conditional()
        if self._peek().kind != "eof":
            token = self._peek()
            raise ExpressionError(f"Unexpected token '{token.value}' at position {token.pos}")
        return node

    def _peek(self) -> _Token:
        return self.tokens[self.pos]

    def _advance(self) -> _Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def _accept(self, *ops: str) -> str | None:
        token = self._peek()
        if token.kind == "op" and token.value in ops:
            self.pos += 1
            return token.value
        return None

    def _expect(self, op: str) -> None:
        if self._accept(op) is None:
            token = self._peek()
            found = "end of expression" if token.kind == "eof" else f"'{token.value}'"
            raise ExpressionError(f"Expected '{op}' but found {found}")

    def _conditional(self) -> Any:
        test = self._logical(0)
        if self._accept("?"):
            body = self._conditional()
            self._expect(":")
            orelse = self._conditional()
            return _Conditional(test, body, orelse)
        return test

    def _logical(self, level: int) -> Any:
        levels = (("??",), ("||",), ("&&",))
        if level == len(levels):
            return self._binary(0)
        node = self._logical(level + 1)
        while (op := self._accept(*levels[level])) is not None:
            node = _Logical(op, node, self._logical(level + 1))
        return node

    def _binary(self, level: int) -> Any:
        if level == len(_BINARY_LEVELS):
            return self._unary()
        node = self._binary(level + 1)
        while (op := self._accept(*_BINARY_LEVELS[level])) is not None:
            node = _Binary(op, node, self._binary(level + 1))
        return node

    def _unary(self) -> Any:
        op = self._accept("!", "-", "+")
        if op is not None:
            return _Unary(op, self._unary())
        return self._postfix()

    def _postfix(self) -> Any:
        node = self._primary()
        while True:
            if self._accept("."):
                token = self._advance()
                if token.kind != "ident":
                    raise ExpressionError(f"Expected property name at position {token.pos}")
                node = _Member(node, token.value)
            elif self._accept("["):
                index = self._conditional()
                self._expect("]")
                node = _Index(node, index)
            elif self._accept("("):
                node = _Call(node, self._arguments())
            else:
                return node

    def _arguments(self) -> tuple[Any, ...]:
        args: list[Any] = []
        if self._accept(")"):
            return ()
        while True:
            args.append(self._conditional())
            if self._accept(")"):
                return tuple(args)
            self._expect(",")

    def _primary(self) -> Any:
        token = self._advance()
        if token.kind in ("num", "str"):
            return _Literal(token.value)
        if token.kind == "ident":
            if token.value in _KEYWORD_LITERALS:
                return _Literal(_KEYWORD_LITERALS[token.value])
            if token.value == "new":
                name = self._advance()
                if name.kind != "ident":
                    raise ExpressionError("Expected constructor name after 'new'")
                args: tuple[Any, ...] = ()
                if self._accept("("):
                    args = self._arguments()
                return _New(name.value, args)
            return _Identifier(token.value)
        if token.kind == "op" and token.value == "(":
            node = self._conditional()
            self._expect(")")
            return node
        if token.kind == "op" and token.value == "[":
            items: list[Any] = []
            if not self._accept("]"):
                while True:
                    items.append(self._conditional())
                    if self._accept("]"):
                        break
                    self._expect(",")
            return _Array(tuple(items))
        if token.kind == "eof":
            raise ExpressionError("Unexpected end of expression")
        raise ExpressionError(f"Unexpected token '{token.value}' at position {token.pos}")


# ─── Runtime values ────────────────────────────────────────────


class _MonotonicClock:
    """Epoch milliseconds that never go backwards within the process."""

    def __init__(self) -> None:
        self._last = 0

    def now_ms(self) -> int:
        value = max(int(time.time() * 1000), self._last)
        self._last = value
        return value


_CLOCK = _MonotonicClock()


@dataclass(frozen=True)
class _Builtin:
    name: str
    fn: Callable[..., Any]


class _Namespace:
    def __init__(self, name: str, members: dict[str, Any]):
        self.name = name
        self.members = members


class _JsDate:
    def __init__(self, moment: datetime):
        self.moment = moment

    def iso(self) -> str:
        return self.moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class _NodeRef:
    node_id: str
    output: NodeOutput


class _NodeAccessor:
    def __init__(self, outputs: Mapping[str, NodeOutput]):
        self.outputs = outputs

    def get(self, node_id: Any) -> _NodeRef:
        key = str(node_id)
        output = self.outputs.get(key)
        if output is None:
            raise ExpressionError(f"Node '{key}' has no output in this execution")
        return _NodeRef(key, output)


class _VariableScope:
    def __init__(self, variables: Mapping[str, Any]):
        self.variables = variables

    def get(self, name: Any) -> Any:
        key = str(name)
        if key not in self.variables:
            raise ExpressionError(f"Variable '{key}' is not defined")
        return self.variables[key]


@dataclass(frozen=True)
class _BoundMethod:
    target: Any
    name: str


def _iso_now() -> str:
    return _JsDate(datetime.now(timezone.utc)).iso()


def _math_fn(fn: Callable[..., Any]) -> Callable[..., Any]:
    def wrapper(*args: Any) -> Any:
        try:
            return fn(*[_to_number(arg) for arg in args])
        except (TypeError, ValueError, OverflowError) as exc:
            raise ExpressionError(f"Invalid Math argument: {exc}") from exc

    return wrapper


def _js_round(value: float) -> int:
    return math.floor(value + 0.5)


_GLOBALS: dict[str, Any] = {
    "Date": _Namespace("Date", {"now": _Builtin("Date.now", _CLOCK.now_ms)}),
    "Math": _Namespace(
        "Math",
        {
            "random": _Builtin("Math.random", random.random),
            "floor": _Builtin("Math.floor", _math_fn(math.floor)),
            "ceil": _Builtin("Math.ceil", _math_fn(math.ceil)),
            "round": _Builtin("Math.round", _math_fn(_js_round)),
            "abs": _Builtin("Math.abs", _math_fn(abs)),
            "min": _Builtin("Math.min", _math_fn(min)),
            "max": _Builtin("Math.max", _math_fn(max)),
            "PI": math.pi,
        },
    ),
    "crypto": _Namespace("crypto", {"randomUUID": _Builtin("crypto.randomUUID", lambda: str(uuid.uuid4()))}),
    "$uuid": _Builtin("$uuid", lambda: str(uuid.uuid4())),
}

_STRING_METHODS = {"toUpperCase", "toLowerCase", "trim", "toString", "includes", "startsWith", "endsWith", "split"}
_LIST_METHODS = {"includes", "join", "toString"}
_DATE_METHODS = {"toISOString", "getTime", "toString"}


# ─── Evaluator ─────────────────────────────────────────────────


class _Evaluator:
    def __init__(self, context: ExpressionContext):
        self.context = context

    def eval(self, node: Any) -> Any:
        if isinstance(node, _Literal):
            return node.value
        if isinstance(node, _Identifier):
            return self._identifier(node.name)
        if isinstance(node, _Member):
            return self._member(self.eval(node.obj), node.name)
        if isinstance(node, _Index):
            return self._index(self.eval(node.obj), self.eval(node.index))
        if isinstance(node, _Call):
            return self._call(self.eval(node.callee), [self.eval(arg) for arg in node.args])
        if isinstance(node, _New):
            return self._new(node.name, [self.eval(arg) for arg in node.args])
        if isinstance(node, _Array):
            return [_to_plain(self.eval(item)) for item in node.items]
        if isinstance(node, _Unary):
            return self._unary(node.op, self.eval(node.operand))
        if isinstance(node, _Logical):
            left = self.eval(node.left)
            if node.op == "&&":
                return self.eval(node.right) if truthy(left) else left
            if node.op == "||":
                return left if truthy(left) else self.eval(node.right)
            return self.eval(node.right) if left is None else left
        if isinstance(node, _Binary):
            return self._binary(node.op, _to_plain(self.eval(node.left)), _to_plain(self.eval(node.right)))
        if isinstance(node, _Conditional):
            return self.eval(node.body if truthy(self.eval(node.test)) else node.orelse)
        raise ExpressionError(f"Unsupported expression node: {type(node).__name__}")

    def _identifier(self, name: str) -> Any:
        if name == "$node":
            return _NodeAccessor(self.context.outputs)
        if name == "$vars":
            return _VariableScope(self.context.variables)
        if name == "$input":
            return self.context.input
        if name == "$execution":
            return dict(self.context.execution)
        if name == "$now":
            return _iso_now()
        if name in _GLOBALS:
            return _GLOBALS[name]
        raise ExpressionError(f"'{name}' is not defined")

    def _member(self, value: Any, name: str) -> Any:
        if isinstance(value, _NodeAccessor):
            return value.get(name)
        if isinstance(value, _NodeRef):
            if name == "json":
                return value.output.data
            if name in ("status", "error"):
                return getattr(value.output, name)
            raise ExpressionError(f"Unknown property '{name}' on $node[\"{value.node_id}\"]")
        if isinstance(value, _VariableScope):
            return value.get(name)
        if isinstance(value, _Namespace):
            if name not in value.members:
                raise ExpressionError(f"'{value.name}.{name}' is not available")
            return value.members[name]
        if isinstance(value, _JsDate):
            if name in _DATE_METHODS:
                return _BoundMethod(value, name)
            raise ExpressionError(f"Unknown Date property '{name}'")
        if isinstance(value, dict):
            if name not in value:
                raise ExpressionError(f"Property '{name}' does not exist")
            return value[name]
        if isinstance(value, (str, list)):
            if name == "length":
                return len(value)
            allowed = _STRING_METHODS if isinstance(value, str) else _LIST_METHODS
            if name in allowed:
                return _BoundMethod(value, name)
        raise ExpressionError(f"Cannot read property '{name}' of {_type_name(value)}")

    def _index(self, value: Any, index: Any) -> Any:
        if isinstance(value, (_NodeAccessor, _VariableScope)):
            return value.get(index)
        if isinstance(value, (list, str)):
            if isinstance(index, float) and index.is_integer():
                index = int(index)
            if not isinstance(index, int) or isinstance(index, bool):
                if index == "length":
                    return len(value)
                raise ExpressionError(f"Index must be an integer, got {_type_name(index)}")
            if index < 0 or index >= len(value):
                raise ExpressionError(f"Index {index} out of range")
            return value[index]
        if isinstance(value, dict):
            key = index if index in value else str(index)
            if key not in value:
                raise ExpressionError(f"Property '{index}' does not exist")
            return value[key]
        if isinstance(index, str):
            return self._member(value, index)
        raise ExpressionError(f"Cannot index {_type_name(value)}")

    def _call(self, callee: Any, args: list[Any]) -> Any:
        args = [_to_plain(arg) for arg in args]
        if isinstance(callee, _Builtin):
            try:
                return callee.fn(*args)
            except TypeError as exc:
                raise ExpressionError(f"Bad arguments for {callee.name}(): {exc}") from exc
        if isinstance(callee, _BoundMethod):
            return _call_method(callee.target, callee.name, args)
        raise ExpressionError(f"{_type_name(callee)} is not callable")

    def _new(self, name: str, args: list[Any]) -> Any:
        if name != "Date":
            raise ExpressionError(f"Constructor '{name}' is not allowed")
        if not args:
            return _JsDate(datetime.now(timezone.utc))
        raw = _to_plain(args[0])
        try:
            if isinstance(raw, (int, float)) and not isinstance(raw, bool):
                return _JsDate(datetime.fromtimestamp(raw / 1000, tz=timezone.utc))
            moment = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except (ValueError, OverflowError, OSError) as exc:
            raise ExpressionError(f"Invalid date: {raw!r}") from exc
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return _JsDate(moment)

    def _unary(self, op: str, operand: Any) -> Any:
        operand = _to_plain(operand)
        if op == "!":
            return not truthy(operand)
        number = _to_number(operand)
        return -number if op == "-" else number

    def _binary(self, op: str, left: Any, right: Any) -> Any:
        if op in ("==", "==="):
            return left == right
        if op in ("!=", "!=="):
            return left != right
        if op == "+" and (isinstance(left, str) or isinstance(right, str)):
            return _to_text(left) + _to_text(right)
        try:
            if op == "<":
                return left < right
            if op == "<=":
                return left <= right
            if op == ">":
                return left > right
            if op == ">=":
                return left >= right
            lnum, rnum = _to_number(left), _to_number(right)
            if op == "+":
                return lnum + rnum
            if op == "-":
                return lnum - rnum
            if op == "*":
                return lnum * rnum
            if op == "/":
                result = lnum / rnum
                return int(result) if isinstance(result, float) and result.is_integer() else result
            if op == "%":
                return math.fmod(lnum, rnum) if isinstance(lnum, float) or isinstance(rnum, float) else lnum % rnum
        except ExpressionError:
            raise
        except ZeroDivisionError as exc:
            raise ExpressionError("Division by zero") from exc
        except (ValueError, OverflowError) as exc:
            raise ExpressionError(f"Invalid operands for '{op}': {exc}") from exc
        except TypeError as exc:
            raise ExpressionError(f"Unsupported operands for '{op}': {exc}") from exc
        raise ExpressionError(f"Unsupported operator '{op}'")


def _call_method(target: Any, name: str, args: list[Any]) -> Any:
    if isinstance(target, _JsDate):
        if name in ("toISOString", "toString"):
            return target.iso()
        return int(target.moment.timestamp() * 1000)
    if isinstance(target, str):
        if name == "toUpperCase":
            return target.upper()
        if name == "toLowerCase":
            return target.lower()
        if name == "trim":
            return target.strip()
        if name == "toString":
            return target
        if name == "split":
            separator = _to_text(args[0]) if args else None
            return [target] if separator is None else (list(target) if separator == "" else target.split(separator))
        needle = _to_text(args[0]) if args else ""
        if name == "includes":
            return needle in target
        if name == "startsWith":
            return target.startswith(needle)
        return target.endswith(needle)
    if name == "includes":
        return (args[0] if args else None) in target
    separator = _to_text(args[0]) if args else ","
    return separator.join(_to_text(item) for item in target)


def truthy(value: Any) -> bool:
    value = _to_plain(value)
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def _to_number(value: Any) -> int | float:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if value is None:
        return 0
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            return int(text)
        except ValueError:
            try:
                return float(text)
            except ValueError as exc:
                raise ExpressionError(f"Cannot convert '{value}' to a number") from exc
    raise ExpressionError(f"Cannot convert {_type_name(value)} to a number")


def _to_text(value: Any) -> str:
    value = _to_plain(value)
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def _to_plain(value: Any) -> Any:
    if isinstance(value, _JsDate):
        return value.iso()
    if isinstance(value, _NodeRef):
        return value.output.model_dump(mode="json")
    if isinstance(value, (_NodeAccessor, _VariableScope, _Namespace, _Builtin, _BoundMethod)):
        raise ExpressionError(f"{_type_name(value)} cannot be used as a value")
    return value


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, _NodeAccessor):
        return "$node"
    if isinstance(value, _VariableScope):
        return "$vars"
    if isinstance(value, _Namespace):
        return value.name
    if isinstance(value, _Builtin):
        return f"function {value.name}"
    if isinstance(value, _BoundMethod):
        return f"method {value.name}"
    return type(value).__name__
