"""GitHub Actions expression trees.

Conditions and computed values in the emitted workflow are built as small
trees and rendered to text only at serialization time. Every node can also
be evaluated against a plain context mapping, following the Actions
expression semantics for truthiness, ``||``/``&&`` value propagation and
case-insensitive string comparison, so conditions can be checked without a
runner.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Mapping


class Expr:
    """Base class for expression nodes."""

    def render(self) -> str:
        raise NotImplementedError

    def evaluate(self, ctx: Mapping[str, Any]) -> Any:
        raise NotImplementedError

    def wrap(self) -> str:
        """Render inside ``${{ }}``."""
        return "${{ " + self.render() + " }}"

    def __str__(self) -> str:
        return self.render()


def truthy(value: Any) -> bool:
    """Actions coercion: false, 0, '', null (and NaN) are falsy."""
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)):
        return value == value and value != 0
    if isinstance(value, str):
        return value != ""
    return True


def _equals(left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        return left.lower() == right.lower()
    return left == right


# ── Leaves ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Ref(Expr):
    """A context property path, e.g. ``github.event.issue.number``."""

    path: str

    def render(self) -> str:
        return self.path

    def evaluate(self, ctx: Mapping[str, Any]) -> Any:
        value: Any = ctx
        for part in self.path.split("."):
            if not isinstance(value, Mapping) or part not in value:
                return None
            value = value[part]
        return value


@dataclass(frozen=True)
class Lit(Expr):
    value: str | int | bool | None

    def render(self) -> str:
        if self.value is None:
            return "null"
        if isinstance(self.value, bool):
            return "true" if self.value else "false"
        if isinstance(self.value, str):
            return "'" + self.value.replace("'", "''") + "'"
        return str(self.value)

    def evaluate(self, ctx: Mapping[str, Any]) -> Any:
        return self.value


# ── Functions ────────────────────────────────────────────────────────────────


def _ends_with(s: Any, suffix: Any) -> bool:
    return str(s or "").lower().endswith(str(suffix or "").lower())


def _starts_with(s: Any, prefix: Any) -> bool:
    return str(s or "").lower().startswith(str(prefix or "").lower())


def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, list):
        return any(_equals(item, needle) for item in haystack)
    return str(needle or "").lower() in str(haystack or "").lower()


_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "endsWith": _ends_with,
    "startsWith": _starts_with,
    "contains": _contains,
    "toJSON": lambda v: json.dumps(v, indent=2),
    "fromJSON": lambda v: json.loads(v),
}

# Job status functions read their answer from the evaluation context.
_STATUS_FUNCTIONS = {
    "always": lambda ctx: True,
    "success": lambda ctx: ctx.get("__status__", "success") == "success",
    "failure": lambda ctx: ctx.get("__status__", "success") == "failure",
    "cancelled": lambda ctx: ctx.get("__status__", "success") == "cancelled",
}


@dataclass(frozen=True)
class Call(Expr):
    name: str
    args: tuple[Expr, ...] = ()

    def render(self) -> str:
        return f"{self.name}({', '.join(a.render() for a in self.args)})"

    def evaluate(self, ctx: Mapping[str, Any]) -> Any:
        if self.name in _STATUS_FUNCTIONS:
            return _STATUS_FUNCTIONS[self.name](ctx)
        fn = _FUNCTIONS.get(self.name)
        if fn is None:
            raise ValueError(f"Unsupported expression function: {self.name}")
        return fn(*(a.evaluate(ctx) for a in self.args))


# ── Operators ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Eq(Expr):
    left: Expr
    right: Expr
    negate: bool = False

    def render(self) -> str:
        op = "!=" if self.negate else "=="
        return f"{self.left.render()} {op} {self.right.render()}"

    def evaluate(self, ctx: Mapping[str, Any]) -> bool:
        result = _equals(self.left.evaluate(ctx), self.right.evaluate(ctx))
        return not result if self.negate else result


@dataclass(frozen=True)
class And(Expr):
    terms: tuple[Expr, ...]

    def render(self) -> str:
        return " && ".join(_grouped(t, (Or,)) for t in self.terms)

    def evaluate(self, ctx: Mapping[str, Any]) -> Any:
        value: Any = True
        for term in self.terms:
            value = term.evaluate(ctx)
            if not truthy(value):
                return value
        return value


@dataclass(frozen=True)
class Or(Expr):
    terms: tuple[Expr, ...]

    def render(self) -> str:
        return " || ".join(_grouped(t, (And,)) for t in self.terms)

    def evaluate(self, ctx: Mapping[str, Any]) -> Any:
        value: Any = None
        for term in self.terms:
            value = term.evaluate(ctx)
            if truthy(value):
                return value
        return value


@dataclass(frozen=True)
class Not(Expr):
    operand: Expr

    def render(self) -> str:
        return "!" + _grouped(self.operand, (And, Or, Eq))

    def evaluate(self, ctx: Mapping[str, Any]) -> bool:
        return not truthy(self.operand.evaluate(ctx))


def _grouped(expr: Expr, needs_parens: tuple[type, ...]) -> str:
    text = expr.render()
    return f"({text})" if isinstance(expr, needs_parens) else text


# ── Interpolated strings ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Template:
    """A string mixing literal text and ``${{ }}`` expressions."""

    parts: tuple[str | Expr, ...]

    def render(self) -> str:
        return "".join(p if isinstance(p, str) else p.wrap() for p in self.parts)

    def evaluate(self, ctx: Mapping[str, Any]) -> str:
        out = []
        for part in self.parts:
            if isinstance(part, str):
                out.append(part)
                continue
            value = part.evaluate(ctx)
            if value is None:
                value = ""
            elif isinstance(value, bool):
                value = "true" if value else "false"
            out.append(str(value))
        return "".join(out)

    def __str__(self) -> str:
        return self.render()


# ── Builders ─────────────────────────────────────────────────────────────────


def ref(path: str) -> Ref:
    return Ref(path)


def lit(value: str | int | bool | None) -> Lit:
    return Lit(value)


def call(name: str, *args: Expr) -> Call:
    return Call(name, tuple(args))


def all_of(*terms: Expr) -> Expr:
    flat: list[Expr] = []
    for term in terms:
        flat.extend(term.terms if isinstance(term, And) else (term,))
    return flat[0] if len(flat) == 1 else And(tuple(flat))


def any_of(*terms: Expr) -> Expr:
    flat: list[Expr] = []
    for term in terms:
        flat.extend(term.terms if isinstance(term, Or) else (term,))
    return flat[0] if len(flat) == 1 else Or(tuple(flat))


def not_(expr: Expr) -> Not:
    return Not(expr)


def eq(left: Expr, right: Expr | str | int | bool) -> Eq:
    return Eq(left, right if isinstance(right, Expr) else Lit(right))


def always() -> Call:
    return Call("always")


def walk(expr: Expr):
    """Yield every node of the tree, depth first."""
    yield expr
    if isinstance(expr, (And, Or)):
        children: tuple[Expr, ...] = expr.terms
    elif isinstance(expr, Not):
        children = (expr.operand,)
    elif isinstance(expr, Eq):
        children = (expr.left, expr.right)
    elif isinstance(expr, Call):
        children = expr.args
    else:
        children = ()
    for child in children:
        yield from walk(child)


def condition_text(expr: Expr) -> str:
    """Text for a job/step ``if:``. Leading ``!`` must be wrapped for YAML."""
    text = expr.render()
    return expr.wrap() if text.startswith("!") else text
