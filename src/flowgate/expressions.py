# expressions.py
"""
Small, pure evaluator for `if` guards and `cancel_in_progress` policies.

Supported grammar:

    expr    := or
    or      := and ( '||' and )*
    and     := unary ( '&&' unary )*
    unary   := '!' unary | compare
    compare := primary ( ('==' | '!=') primary )?
    primary := STRING | NUMBER | 'true' | 'false' | 'null'
             | NAME '(' [ expr (',' expr)* ] ')'
             | NAME
             | '(' expr ')'

Names resolve against an `ExpressionScope`:
    event, ref, actor, workflow, number      run context fields
    matrix.<axis>                            current matrix point
    needs.<job>.result                       aggregated predecessor result
    needs.*.result                           list of predecessor results

Functions: startsWith, endsWith, contains, always, success, failure, cancelled.
Function names and string comparisons are case-insensitive.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import ExpressionError
from .model import RunContext


ROOTS = {"event", "ref", "actor", "workflow", "number", "matrix", "needs"}
STATUS_FUNCTIONS = {"always", "success", "failure", "cancelled"}

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
      (?P<string>'(?:[^']|'')*'|"(?:[^"\\]|\\.)*")
    | (?P<number>-?\d+(?:\.\d+)?)
    | (?P<op>==|!=|&&|\|\||!|\(|\)|,)
    | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*(?:\.(?:\*|[A-Za-z_][A-Za-z0-9_\-]*))*)
    )
    """,
    re.VERBOSE,
)

_ESCAPE_RE = re.compile(r"\\(.)")
_ESCAPES = {"n": "\n", "t": "\t"}


@dataclass
class ExpressionScope:
    context: RunContext = field(default_factory=RunContext)
    matrix: Dict[str, Any] = field(default_factory=dict)
    needs: Dict[str, str] = field(default_factory=dict)
    ok: bool = True          # no blocking predecessor failure
    failed: bool = False     # some predecessor failed
    run_cancelled: bool = False


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise ExpressionError(f"Unexpected character at {pos} in {text!r}")
        kind = m.lastgroup
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


def _unquote(raw: str) -> str:
    if raw.startswith("'"):
        return raw[1:-1].replace("''", "'")
    return _ESCAPE_RE.sub(lambda m: _ESCAPES.get(m.group(1), m.group(1)), raw[1:-1])


# AST nodes are plain tuples: (tag, ...)

class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.i = 0

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def _take(self, value: str | None = None) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise ExpressionError(f"Unexpected end of expression: {self.text!r}")
        if value is not None and tok[1] != value:
            raise ExpressionError(f"Expected {value!r}, got {tok[1]!r} in {self.text!r}")
        self.i += 1
        return tok

    def parse(self):
        if not self.tokens:
            raise ExpressionError("Empty expression")
        node = self._or()
        if self._peek() is not None:
            raise ExpressionError(f"Trailing input {self._peek()[1]!r} in {self.text!r}")
        return node

    def _or(self):
        node = self._and()
        while self._peek() == ("op", "||"):
            self._take()
            node = ("or", node, self._and())
        return node

    def _and(self):
        node = self._unary()
        while self._peek() == ("op", "&&"):
            self._take()
            node = ("and", node, self._unary())
        return node

    def _unary(self):
        if self._peek() == ("op", "!"):
            self._take()
            return ("not", self._unary())
        return self._compare()

    def _compare(self):
        node = self._primary()
        tok = self._peek()
        if tok in (("op", "=="), ("op", "!=")):
            self._take()
            node = ("eq" if tok[1] == "==" else "ne", node, self._primary())
        return node

    def _primary(self):
        kind, value = self._take()
        if kind == "string":
            return ("lit", _unquote(value))
        if kind == "number":
            return ("lit", float(value) if "." in value else int(value))
        if kind == "op" and value == "(":
            node = self._or()
            self._take(")")
            return node
        if kind == "name":
            if value in ("true", "false"):
                return ("lit", value == "true")
            if value == "null":
                return ("lit", None)
            if self._peek() == ("op", "("):
                return self._call(value)
            root = value.split(".", 1)[0]
            if root not in ROOTS:
                raise ExpressionError(f"Unknown name {value!r} in {self.text!r}")
            return ("name", value)
        raise ExpressionError(f"Unexpected token {value!r} in {self.text!r}")

    def _call(self, name: str):
        # function names are case-insensitive: startsWith == startswith
        fn = name.lower()
        if fn not in _FUNCTIONS and fn not in STATUS_FUNCTIONS:
            raise ExpressionError(f"Unknown function {name}() in {self.text!r}")
        self._take("(")
        args = []
        if self._peek() != ("op", ")"):
            args.append(self._or())
            while self._peek() == ("op", ","):
                self._take()
                args.append(self._or())
        self._take(")")
        return ("call", fn, tuple(args))


def _norm(v: Any) -> Any:
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return str(v)
    return v.lower() if isinstance(v, str) else v


def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, (list, tuple)):
        return any(_norm(h) == _norm(needle) for h in haystack)
    return str(_norm(needle)) in str(_norm(haystack if haystack is not None else ""))


_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "startswith": lambda s, p: str(_norm(s) or "").startswith(str(_norm(p))),
    "endswith": lambda s, p: str(_norm(s) or "").endswith(str(_norm(p))),
    "contains": _contains,
}


def _truthy(v: Any) -> bool:
    if isinstance(v, (list, tuple)):
        return len(v) > 0
    return bool(v)


class Expression:
    """A parsed expression; evaluate() is pure over the given scope."""

    def __init__(self, text: str):
        self.text = text
        self._ast = _Parser(text).parse()

    def __repr__(self) -> str:
        return f"Expression({self.text!r})"

    @property
    def uses_status_functions(self) -> bool:
        def walk(node) -> bool:
            tag = node[0]
            if tag == "call":
                return node[1] in STATUS_FUNCTIONS or any(walk(a) for a in node[2])
            if tag in ("and", "or", "eq", "ne"):
                return walk(node[1]) or walk(node[2])
            if tag == "not":
                return walk(node[1])
            return False
        return walk(self._ast)

    def evaluate(self, scope: ExpressionScope) -> bool:
        return _truthy(self._eval(self._ast, scope))

    def _eval(self, node, scope: ExpressionScope) -> Any:
        tag = node[0]
        if tag == "lit":
            return node[1]
        if tag == "name":
            return _resolve(node[1], scope)
        if tag == "not":
            return not _truthy(self._eval(node[1], scope))
        if tag == "and":
            return _truthy(self._eval(node[1], scope)) and _truthy(self._eval(node[2], scope))
        if tag == "or":
            return _truthy(self._eval(node[1], scope)) or _truthy(self._eval(node[2], scope))
        if tag in ("eq", "ne"):
            same = _norm(self._eval(node[1], scope)) == _norm(self._eval(node[2], scope))
            return same if tag == "eq" else not same
        if tag == "call":
            fn, args = node[1], [self._eval(a, scope) for a in node[2]]
            if fn == "always":
                return True
            if fn == "success":
                return scope.ok and not scope.run_cancelled
            if fn == "failure":
                return scope.failed
            if fn == "cancelled":
                return scope.run_cancelled
            try:
                return _FUNCTIONS[fn](*args)
            except TypeError as e:
                raise ExpressionError(f"Bad arguments to {fn}() in {self.text!r}") from e
        raise ExpressionError(f"Cannot evaluate node {tag!r}")


def _resolve(name: str, scope: ExpressionScope) -> Any:
    parts = name.split(".")
    root = parts[0]
    if root == "matrix":
        if len(parts) == 1:
            return scope.matrix
        return scope.matrix.get(parts[1])
    if root == "needs":
        if len(parts) != 3 or parts[2] != "result":
            raise ExpressionError(f"Expected needs.<job>.result, got {name!r}")
        if parts[1] == "*":
            return list(scope.needs.values())
        return scope.needs.get(parts[1])
    if len(parts) != 1:
        raise ExpressionError(f"{root!r} has no attributes ({name!r})")
    return scope.context.as_dict()[root]


@lru_cache(maxsize=512)
def compile_expression(text: str) -> Expression:
    return Expression(text)


def evaluate(text: str, scope: ExpressionScope) -> bool:
    return Expression(text).evaluate(scope)
