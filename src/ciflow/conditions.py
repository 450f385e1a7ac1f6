"""
Condition expressions for jobs, steps and concurrency templates.

Expressions are parsed once at load time into a small tree of nodes
(Literal, Var, Not, And, Or, Equals, HasStatus, Call) and evaluated
against an EvalContext built from the run. Evaluation never raises for
missing data: reading an undefined variable makes the whole predicate
false.

    parse("github.ref != 'refs/heads/main' && !draft")
    evaluate(expr, EvalContext.for_run(run.context, run.statuses()))
    resolve("${{ github.workflow }}-${{ github.ref }}", ctx)
"""
from __future__ import annotations

import json
import platform
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import ExpressionError
from .model import RunContext, Status


class _Undefined(Exception):
    """Internal: a variable lookup hit a missing key."""


STATUS_ALIASES = {
    "success": Status.SUCCEEDED,
    "succeeded": Status.SUCCEEDED,
    "failure": Status.FAILED,
    "failed": Status.FAILED,
    "cancelled": Status.CANCELLED,
    "canceled": Status.CANCELLED,
    "skipped": Status.SKIPPED,
}

_RUNNER_OS = {"Darwin": "macOS"}.get(platform.system(), platform.system())


# ---------------------------------------------------------------------
# Evaluation context
# ---------------------------------------------------------------------

@dataclass
class EvalContext:
    namespace: Dict[str, Any]
    statuses: Mapping[str, Status] = field(default_factory=dict)
    needs: Tuple[str, ...] = ()
    cancelled: bool = False
    step_failed: Optional[bool] = None  # set only in step scope

    @classmethod
    def for_run(
        cls,
        context: RunContext,
        statuses: Optional[Mapping[str, Status]] = None,
        *,
        needs: Sequence[str] = (),
        cancelled: bool = False,
        step_failed: Optional[bool] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> "EvalContext":
        statuses = dict(statuses or {})
        merged_env = dict(context.env)
        if env:
            merged_env.update(env)

        results = {
            name: {"result": st.value}
            for name, st in statuses.items()
            if st.terminal
        }
        ns: Dict[str, Any] = {
            "event": context.event,
            "ref": context.ref,
            "draft": context.draft,
            "action": context.action,
            "base_ref": context.base_ref,
            "actor": context.actor,
            "sha": context.sha,
            "workflow": context.workflow,
            "protected": context.protected,
            "github": {
                "event_name": context.event,
                "ref": context.ref,
                "base_ref": context.base_ref,
                "actor": context.actor,
                "sha": context.sha,
                "workflow": context.workflow,
                "event": {
                    "action": context.action,
                    "pull_request": {"draft": context.draft},
                },
            },
            "runner": {"os": _RUNNER_OS},
            "vars": dict(context.vars),
            "env": merged_env,
            "needs": results,
        }
        return cls(
            namespace=ns,
            statuses=statuses,
            needs=tuple(needs),
            cancelled=cancelled,
            step_failed=step_failed,
        )

    @classmethod
    def static(cls, env: Optional[Mapping[str, str]] = None, **extra: Any) -> "EvalContext":
        """Context for load-time resolution (only env and explicit values)."""
        ns: Dict[str, Any] = {"env": dict(env or {})}
        ns.update(extra)
        return cls(namespace=ns)

    def lookup(self, path: Tuple[str, ...]) -> Any:
        cur: Any = self.namespace
        for part in path:
            if isinstance(cur, Mapping) and part in cur:
                cur = cur[part]
            else:
                raise _Undefined(".".join(path))
        return cur


# ---------------------------------------------------------------------
# Expression tree
# ---------------------------------------------------------------------

class Expr:
    def eval(self, ctx: EvalContext) -> Any:  # pragma: no cover - abstract
        raise NotImplementedError


@dataclass(frozen=True)
class Literal(Expr):
    value: Any

    def eval(self, ctx: EvalContext) -> Any:
        return self.value


@dataclass(frozen=True)
class Var(Expr):
    path: Tuple[str, ...]

    def eval(self, ctx: EvalContext) -> Any:
        return ctx.lookup(self.path)


@dataclass(frozen=True)
class Not(Expr):
    operand: Expr

    def eval(self, ctx: EvalContext) -> Any:
        return not _truthy(self.operand.eval(ctx))


@dataclass(frozen=True)
class And(Expr):
    left: Expr
    right: Expr

    def eval(self, ctx: EvalContext) -> Any:
        lv = self.left.eval(ctx)
        if not _truthy(lv):
            return lv
        return self.right.eval(ctx)


@dataclass(frozen=True)
class Or(Expr):
    left: Expr
    right: Expr

    def eval(self, ctx: EvalContext) -> Any:
        lv = self.left.eval(ctx)
        if _truthy(lv):
            return lv
        return self.right.eval(ctx)


@dataclass(frozen=True)
class Equals(Expr):
    left: Expr
    right: Expr

    def eval(self, ctx: EvalContext) -> Any:
        return _loose_eq(self.left.eval(ctx), self.right.eval(ctx))


@dataclass(frozen=True)
class HasStatus(Expr):
    """True when `job` has reached `status`. Undefined while the job is not terminal."""
    job: str
    status: Status

    def eval(self, ctx: EvalContext) -> Any:
        st = ctx.statuses.get(self.job)
        if st is None or not st.terminal:
            raise _Undefined(f"needs.{self.job}.result")
        return st is self.status


@dataclass(frozen=True)
class Call(Expr):
    name: str
    args: Tuple[Expr, ...] = ()

    def eval(self, ctx: EvalContext) -> Any:
        fn = _FUNCTIONS.get(self.name.lower())
        if fn is None:
            raise _Undefined(f"{self.name}()")
        return fn(ctx, [a.eval(ctx) for a in self.args])


def _truthy(v: Any) -> bool:
    if isinstance(v, str):
        return v != ""
    return bool(v)


def _loose_eq(a: Any, b: Any) -> bool:
    # 'true' from an env var compares equal to the literal true
    if isinstance(a, bool) and isinstance(b, str):
        return str(a).lower() == b.lower()
    if isinstance(b, bool) and isinstance(a, str):
        return str(b).lower() == a.lower()
    return a == b


# ---------------------------------------------------------------------
# Status / helper functions
# ---------------------------------------------------------------------

def _fn_success(ctx: EvalContext, args: List[Any]) -> bool:
    if ctx.step_failed is not None:
        return not ctx.step_failed and not ctx.cancelled
    return not ctx.cancelled and all(ctx.statuses.get(n) is Status.SUCCEEDED for n in ctx.needs)


def _fn_failure(ctx: EvalContext, args: List[Any]) -> bool:
    if ctx.step_failed is not None:
        return bool(ctx.step_failed)
    return any(ctx.statuses.get(n) is Status.FAILED for n in ctx.needs)


def _fn_always(ctx: EvalContext, args: List[Any]) -> bool:
    return True


def _fn_cancelled(ctx: EvalContext, args: List[Any]) -> bool:
    return ctx.cancelled


def _fn_contains(ctx: EvalContext, args: List[Any]) -> bool:
    hay, needle = _two(args, "contains")
    if isinstance(hay, (list, tuple)):
        return needle in hay
    return str(needle).lower() in str(hay).lower()


def _fn_starts_with(ctx: EvalContext, args: List[Any]) -> bool:
    s, prefix = _two(args, "startsWith")
    return str(s).lower().startswith(str(prefix).lower())


def _fn_from_json(ctx: EvalContext, args: List[Any]) -> Any:
    if len(args) != 1:
        raise _Undefined("fromJSON()")
    try:
        return json.loads(args[0])
    except (TypeError, ValueError):
        raise _Undefined("fromJSON()")


def _fn_status(ctx: EvalContext, args: List[Any]) -> str:
    if len(args) != 1:
        raise _Undefined("status()")
    st = ctx.statuses.get(str(args[0]))
    if st is None:
        raise _Undefined(f"status({args[0]})")
    return st.value


def _two(args: List[Any], name: str) -> Tuple[Any, Any]:
    if len(args) != 2:
        raise _Undefined(f"{name}()")
    return args[0], args[1]


_FUNCTIONS = {
    "success": _fn_success,
    "failure": _fn_failure,
    "always": _fn_always,
    "cancelled": _fn_cancelled,
    "contains": _fn_contains,
    "startswith": _fn_starts_with,
    "fromjson": _fn_from_json,
    "status": _fn_status,
}


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------

_TOKEN = re.compile(
    r"""\s*(?:
        (?P<num>-?\d+(?:\.\d+)?)
      | (?P<str>'(?:[^']|'')*')
      | (?P<op>==|!=|&&|\|\||!|\(|\)|,)
      | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z_][A-Za-z0-9_\-]*)*)
    )""",
    re.VERBOSE,
)

_WRAPPED = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)
_TEMPLATE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN.match(text, pos)
        if not m or m.end() == pos:
            raise ExpressionError(text, f"unexpected character at position {pos}: {text[pos:pos + 10]!r}")
        kind = m.lastgroup
        if kind is None:
            break
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.i = 0

    def peek(self) -> Tuple[str, str] | None:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def take(self) -> Tuple[str, str]:
        tok = self.peek()
        if tok is None:
            raise ExpressionError(self.text, "unexpected end of expression")
        self.i += 1
        return tok

    def expect_op(self, op: str) -> None:
        tok = self.take()
        if tok != ("op", op):
            raise ExpressionError(self.text, f"expected {op!r}, got {tok[1]!r}")

    def at_op(self, *ops: str) -> bool:
        tok = self.peek()
        return tok is not None and tok[0] == "op" and tok[1] in ops

    def parse(self) -> Expr:
        if not self.tokens:
            raise ExpressionError(self.text, "empty expression")
        node = self.or_expr()
        if self.peek() is not None:
            raise ExpressionError(self.text, f"unexpected token {self.peek()[1]!r}")
        return node

    def or_expr(self) -> Expr:
        node = self.and_expr()
        while self.at_op("||"):
            self.take()
            node = Or(node, self.and_expr())
        return node

    def and_expr(self) -> Expr:
        node = self.unary()
        while self.at_op("&&"):
            self.take()
            node = And(node, self.unary())
        return node

    def unary(self) -> Expr:
        if self.at_op("!"):
            self.take()
            return Not(self.unary())
        return self.comparison()

    def comparison(self) -> Expr:
        left = self.primary()
        if self.at_op("==", "!="):
            op = self.take()[1]
            right = self.primary()
            node = _status_check(left, right) or Equals(left, right)
            return node if op == "==" else Not(node)
        return left

    def primary(self) -> Expr:
        kind, val = self.take()
        if kind == "num":
            return Literal(float(val) if "." in val else int(val))
        if kind == "str":
            return Literal(val[1:-1].replace("''", "'"))
        if kind == "op":
            if val == "(":
                node = self.or_expr()
                self.expect_op(")")
                return node
            raise ExpressionError(self.text, f"unexpected operator {val!r}")
        # identifier
        low = val.lower()
        if low == "true":
            return Literal(True)
        if low == "false":
            return Literal(False)
        if low == "null":
            return Literal(None)
        if self.at_op("("):
            self.take()
            args: List[Expr] = []
            if not self.at_op(")"):
                args.append(self.or_expr())
                while self.at_op(","):
                    self.take()
                    args.append(self.or_expr())
            self.expect_op(")")
            if low not in _FUNCTIONS:
                raise ExpressionError(self.text, f"unknown function {val}()")
            return Call(val, tuple(args))
        return Var(tuple(val.split(".")))


def _status_check(left: Expr, right: Expr) -> Optional[HasStatus]:
    """needs.<job>.result == 'failure'  ->  HasStatus(job, FAILED)"""
    for var, lit in ((left, right), (right, left)):
        if (
            isinstance(var, Var)
            and isinstance(lit, Literal)
            and len(var.path) == 3
            and var.path[0] == "needs"
            and var.path[2] == "result"
            and isinstance(lit.value, str)
            and lit.value.lower() in STATUS_ALIASES
        ):
            return HasStatus(var.path[1], STATUS_ALIASES[lit.value.lower()])
    return None


def parse(text: Union[str, bool, Expr, None]) -> Optional[Expr]:
    """
    Parse an expression. Accepts the `${{ ... }}` wrapper, booleans and
    already-parsed trees. None stays None (no condition).
    """
    if text is None or isinstance(text, Expr):
        return text
    if isinstance(text, bool):
        return Literal(text)
    src = str(text)
    m = _WRAPPED.match(src)
    if m:
        src = m.group(1)
    return _Parser(src).parse()


def value(expr: Expr, ctx: EvalContext, default: Any = None) -> Any:
    """Evaluate to a raw value, or `default` when it reads undefined data."""
    try:
        return expr.eval(ctx)
    except _Undefined:
        return default


def evaluate(expr: Union[Expr, str, bool, None], ctx: EvalContext) -> bool:
    """Evaluate a predicate. No condition means True; undefined data means False."""
    node = parse(expr)
    if node is None:
        return True
    try:
        return _truthy(node.eval(ctx))
    except _Undefined:
        return False


def resolve(template: str, ctx: EvalContext) -> str:
    """Render `${{ expr }}` segments of a string template."""

    def _render(m: "re.Match[str]") -> str:
        node = _Parser(m.group(1)).parse()
        try:
            v = node.eval(ctx)
        except _Undefined:
            return ""
        if v is None:
            return ""
        if isinstance(v, bool):
            return "true" if v else "false"
        return str(v)

    return _TEMPLATE.sub(_render, template)


def is_template(text: Any) -> bool:
    return isinstance(text, str) and "${{" in text


def check_template(template: str) -> None:
    """Parse every segment of a template, raising ExpressionError on bad syntax."""
    for m in _TEMPLATE.finditer(template):
        _Parser(m.group(1)).parse()
