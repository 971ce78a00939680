"""A small engine for the template syntax used in CI provider metadata.

Supported: ``{{ .field }}`` lookups (chained with dots), ``{{ . }}``,
string/number/boolean literals, ``if``/``else``/``else if``/``end``,
comments, ``{{-``/``-}}`` whitespace trimming and the functions ``eq``,
``ne``, ``not``, ``and``, ``or`` and ``len``.  Lookups of missing keys are
errors, and output is HTML-escaped as in an HTML text context.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sized
from dataclasses import dataclass, field
from typing import Any, Union


class TemplateError(ValueError):
    """Raised when a template cannot be parsed or executed."""


_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<str>"(?:[^"\\]|\\.)*")
      | (?P<raw>`[^`]*`)
      | (?P<field>(?:\.[A-Za-z_][A-Za-z0-9_]*)+)
      | (?P<dot>\.)
      | (?P<num>-?\d+(?:\.\d+)?)
      | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
      | (?P<lp>\()
      | (?P<rp>\))
    )""",
    re.VERBOSE,
)

_ESCAPES = {
    '"': "&#34;",
    "'": "&#39;",
    "&": "&amp;",
    "+": "&#43;",
    "<": "&lt;",
    ">": "&gt;",
    "\0": "\ufffd",
}

_LITERAL_IDENTS = {"true": True, "false": False, "nil": None}


@dataclass
class _Action:
    expr: tuple


@dataclass
class _If:
    cond: tuple
    then: list = field(default_factory=list)
    otherwise: list = field(default_factory=list)


_Node = Union[str, _Action, _If]


@dataclass
class _Frame:
    node: _If
    in_else: bool = False
    chained: bool = False

    @property
    def body(self) -> list:
        return self.node.otherwise if self.in_else else self.node.then


def _lex(text: str) -> list[tuple[str, str]]:
    tokens = []
    pos = 0
    while pos < len(text):
        if not text[pos:].strip():
            break
        m = _TOKEN_RE.match(text, pos)
        if m is None or m.end() == pos:
            bad = text[pos:].strip()[:1]
            raise TemplateError(f"unexpected {bad!r} in command")
        kind = m.lastgroup
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


def _parse_operand(tokens: list, pos: int) -> tuple[tuple, int]:
    kind, value = tokens[pos]
    if kind == "str":
        return ("lit", bytes(value[1:-1], "utf-8").decode("unicode_escape")), pos + 1
    if kind == "raw":
        return ("lit", value[1:-1]), pos + 1
    if kind == "field":
        return ("field", tuple(value[1:].split("."))), pos + 1
    if kind == "dot":
        return ("dot",), pos + 1
    if kind == "num":
        return ("lit", float(value) if "." in value else int(value)), pos + 1
    if kind == "ident":
        if value in _LITERAL_IDENTS:
            return ("lit", _LITERAL_IDENTS[value]), pos + 1
        return ("call", value, ()), pos + 1
    if kind == "lp":
        depth, end = 1, pos + 1
        while end < len(tokens) and depth:
            if tokens[end][0] == "lp":
                depth += 1
            elif tokens[end][0] == "rp":
                depth -= 1
            end += 1
        if depth:
            raise TemplateError("unclosed left paren")
        return _parse_command(tokens[pos + 1:end - 1]), end
    raise TemplateError("unexpected right paren")


def _parse_command(tokens: list) -> tuple:
    if not tokens:
        raise TemplateError("missing value for command")
    operands = []
    pos = 0
    while pos < len(tokens):
        operand, pos = _parse_operand(tokens, pos)
        operands.append(operand)
    head = operands[0]
    if head[0] == "call" and tokens[0][0] == "ident":
        return ("call", head[1], tuple(operands[1:]))
    if len(operands) > 1:
        raise TemplateError("can't give argument to non-function")
    return head


def _split(text: str) -> list[tuple[str, str]]:
    segments: list[tuple[str, str]] = []
    pos = 0
    trim_next = False
    while True:
        i = text.find("{{", pos)
        chunk = text[pos:] if i < 0 else text[pos:i]
        if trim_next:
            chunk = chunk.lstrip()
        start = i + 2
        trim_left = i >= 0 and text[start:start + 2] in ("- ", "-\t", "-\n", "-\r")
        if trim_left:
            chunk = chunk.rstrip()
            start += 1
        if chunk:
            segments.append(("text", chunk))
        if i < 0:
            return segments
        j = text.find("}}", start)
        if j < 0:
            raise TemplateError("unclosed action")
        inner = text[start:j]
        trim_next = len(inner) >= 2 and inner[-1] == "-" and inner[-2].isspace()
        if trim_next:
            inner = inner[:-1]
        segments.append(("action", inner))
        pos = j + 2


def parse_template(text: str) -> "Template":
    """Parse template text, raising TemplateError on syntax errors."""
    root: list[_Node] = []
    stack: list[_Frame] = []

    def body() -> list:
        return stack[-1].body if stack else root

    for kind, value in _split(text):
        if kind == "text":
            body().append(value)
            continue
        stripped = value.strip()
        if stripped.startswith("/*") and stripped.endswith("*/"):
            continue
        tokens = _lex(value)
        if not tokens:
            raise TemplateError("missing value for command")
        first = tokens[0]
        if first == ("ident", "if"):
            if len(tokens) == 1:
                raise TemplateError("missing value for if")
            node = _If(_parse_command(tokens[1:]))
            body().append(node)
            stack.append(_Frame(node))
        elif first == ("ident", "else"):
            if not stack or stack[-1].in_else:
                raise TemplateError("unexpected {{else}}")
            stack[-1].in_else = True
            if len(tokens) > 1:
                if tokens[1] != ("ident", "if") or len(tokens) == 2:
                    raise TemplateError("unexpected tokens after else")
                node = _If(_parse_command(tokens[2:]))
                stack[-1].body.append(node)
                stack.append(_Frame(node, chained=True))
        elif first == ("ident", "end"):
            if len(tokens) > 1:
                raise TemplateError("unexpected tokens after end")
            if not stack:
                raise TemplateError("unexpected {{end}}")
            while stack and stack.pop().chained:
                pass
        elif first[0] == "ident" and first[1] in ("range", "with", "define", "block", "template"):
            raise TemplateError(f"unsupported action {first[1]!r}")
        else:
            body().append(_Action(_parse_command(tokens)))
    if stack:
        raise TemplateError("unexpected EOF")
    return Template(root)


def _truth(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (bool, int, float)):
        return bool(value)
    if isinstance(value, Sized):
        return len(value) > 0
    return True


def _category(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if value is None:
        return "nil"
    raise TemplateError("incompatible types for comparison")


def _eq(args: list) -> bool:
    if len(args) < 2:
        raise TemplateError("missing argument for comparison")
    first = args[0]
    for other in args[1:]:
        if _category(first) != _category(other):
            raise TemplateError("incompatible types for comparison")
        if first == other:
            return True
    return False


def _and(args: list) -> Any:
    if not args:
        raise TemplateError("wrong number of args for and")
    for arg in args:
        if not _truth(arg):
            return arg
    return args[-1]


def _or(args: list) -> Any:
    if not args:
        raise TemplateError("wrong number of args for or")
    for arg in args:
        if _truth(arg):
            return arg
    return args[-1]


def _not(args: list) -> bool:
    if len(args) != 1:
        raise TemplateError("wrong number of args for not")
    return not _truth(args[0])


def _len(args: list) -> int:
    if len(args) != 1 or not isinstance(args[0], Sized):
        raise TemplateError("len of unsupported type")
    return len(args[0])


_FUNCS = {
    "eq": _eq,
    "ne": lambda args: not _eq(args),
    "and": _and,
    "or": _or,
    "not": _not,
    "len": _len,
}


def _format(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return "".join(_ESCAPES.get(ch, ch) for ch in str(value))


class Template:
    """A parsed template that can be executed against a mapping."""

    def __init__(self, nodes: list) -> None:
        self._nodes = nodes

    def execute(self, data: Any) -> str:
        """Render the template; missing keys raise TemplateError."""
        out: list[str] = []
        self._render(self._nodes, data, out)
        return "".join(out)

    def _render(self, nodes: list, data: Any, out: list[str]) -> None:
        for node in nodes:
            if isinstance(node, str):
                out.append(node)
            elif isinstance(node, _Action):
                out.append(_format(self._eval(node.expr, data)))
            elif _truth(self._eval(node.cond, data)):
                self._render(node.then, data, out)
            else:
                self._render(node.otherwise, data, out)

    def _eval(self, expr: tuple, data: Any) -> Any:
        kind = expr[0]
        if kind == "lit":
            return expr[1]
        if kind == "dot":
            return data
        if kind == "field":
            value = data
            for name in expr[1]:
                if isinstance(value, Mapping):
                    if name not in value:
                        raise TemplateError(f'map has no entry for key "{name}"')
                    value = value[name]
                elif hasattr(value, name):
                    value = getattr(value, name)
                else:
                    raise TemplateError(f"can't evaluate field {name}")
            return value
        name, args = expr[1], expr[2]
        func = _FUNCS.get(name)
        if func is None:
            raise TemplateError(f'function "{name}" not defined')
        return func([self._eval(arg, data) for arg in args])