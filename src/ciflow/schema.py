# src/ciflow/schema.py
"""
Declarative pipeline documents (YAML/JSON) validated with pydantic and
compiled into PipelineDefinition.

Field names follow the usual workflow-file spelling (`if`,
`continue-on-error`, `timeout-minutes`, `working-directory`, `with`).
Keys the engine has no use for (`runs-on`, `id`, `shell`, ...) are ignored.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .conditions import EvalContext, check_template, evaluate, is_template, parse, value
from .errors import DefinitionError, ExpressionError
from .model import (
    EVENT_KINDS,
    NO_RETRY,
    ConcurrencySpec,
    EventFilter,
    Job,
    PipelineDefinition,
    RetryPolicy,
    Step,
)
from .triggers import normalize_kind

Scalar = Union[str, int, float, bool]

# `uses:` names compiled into a plain `run` step with a retry policy
RETRY_ACTIONS = ("retry",)


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RetryIn(_Model):
    max_attempts: int = Field(1, alias="max-attempts", ge=1)
    delay_seconds: float = Field(0.0, alias="delay-seconds", ge=0)
    retry_on_timeout: bool = Field(True, alias="retry-on-timeout")
    fatal_exit_codes: List[int] = Field(default_factory=list, alias="fatal-exit-codes")


class StepIn(_Model):
    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    if_: Union[bool, str, None] = Field(None, alias="if")
    timeout_minutes: Union[float, str, None] = Field(None, alias="timeout-minutes")
    continue_on_error: Union[bool, str] = Field(False, alias="continue-on-error")
    env: Dict[str, Optional[Scalar]] = Field(default_factory=dict)
    working_directory: Optional[str] = Field(None, alias="working-directory")
    retry: Optional[RetryIn] = None

    @model_validator(mode="after")
    def _run_or_uses(self) -> "StepIn":
        if bool(self.run) == bool(self.uses):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        return self


class JobIn(_Model):
    name: Optional[str] = None
    needs: List[str] = Field(default_factory=list)
    if_: Union[bool, str, None] = Field(None, alias="if")
    continue_on_error: Union[bool, str] = Field(False, alias="continue-on-error")
    timeout_minutes: Union[float, str, None] = Field(None, alias="timeout-minutes")
    env: Dict[str, Optional[Scalar]] = Field(default_factory=dict)
    steps: List[StepIn] = Field(min_length=1)

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_list(cls, v: Any) -> Any:
        return [v] if isinstance(v, str) else v


class TriggerIn(_Model):
    branches: Optional[List[str]] = None
    types: Optional[List[str]] = None
    draft: Optional[bool] = None

    @field_validator("branches", "types", mode="before")
    @classmethod
    def _listify(cls, v: Any) -> Any:
        return [v] if isinstance(v, str) else v


class ConcurrencyIn(_Model):
    group: str
    cancel_in_progress: Union[bool, str] = Field(True, alias="cancel-in-progress")


class PipelineIn(_Model):
    name: Optional[str] = None
    on: Union[str, List[str], Dict[str, Any]] = Field(default_factory=lambda: list(EVENT_KINDS))
    concurrency: Union[str, ConcurrencyIn, None] = None
    env: Dict[str, Optional[Scalar]] = Field(default_factory=dict)
    vars: Dict[str, Any] = Field(default_factory=dict)
    jobs: Dict[str, JobIn] = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _yaml_on_key(cls, data: Any) -> Any:
        # YAML 1.1 reads a bare `on:` key as boolean True
        if isinstance(data, dict) and True in data and "on" not in data:
            data = dict(data)
            data["on"] = data.pop(True)
        return data


# ---------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------

def _env(raw: Dict[str, Optional[Scalar]]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k, v in raw.items():
        if v is None:
            out[k] = ""
        elif isinstance(v, bool):
            out[k] = "true" if v else "false"
        else:
            out[k] = str(v)
    return out


_UNRESOLVED = object()


def _static(raw: Any, env: Dict[str, str], where: str, problems: List[str]) -> Any:
    """Resolve a load-time `${{ expr }}` value against the document env."""
    if not is_template(raw):
        return raw
    try:
        resolved = value(parse(raw), EvalContext.static(env), default=_UNRESOLVED)
    except ExpressionError as e:
        problems.append(f"{where}: {e.message}")
        return None
    if resolved is _UNRESOLVED:
        problems.append(f"{where}: cannot resolve {raw!r} at load time")
        return None
    return resolved


def _minutes(raw: Any, env: Dict[str, str], where: str, problems: List[str]) -> Optional[float]:
    raw = _static(raw, env, where, problems)
    if raw is None:
        return None
    try:
        minutes = float(raw)
    except (TypeError, ValueError):
        problems.append(f"{where}: timeout-minutes must be a number, got {raw!r}")
        return None
    if minutes <= 0:
        problems.append(f"{where}: timeout-minutes must be > 0")
        return None
    return minutes * 60.0


def _flag(raw: Union[bool, str], env: Dict[str, str], where: str, problems: List[str]) -> bool:
    if isinstance(raw, bool):
        return raw
    try:
        return evaluate(raw, EvalContext.static(env))
    except ExpressionError as e:
        problems.append(f"{where}: {e.message}")
        return False


def _condition(raw: Union[bool, str, None], where: str, problems: List[str]) -> Any:
    try:
        return parse(raw)
    except ExpressionError as e:
        problems.append(f"{where}: invalid condition {raw!r}: {e.message}")
        return None


def _step(job_name: str, idx: int, s: StepIn, env: Dict[str, str], problems: List[str]) -> Step:
    name = s.name or (s.run.strip().splitlines()[0] if s.run else s.uses) or f"step-{idx + 1}"
    where = f"jobs.{job_name}.steps[{idx}]"
    step_env = {**env, **_env(s.env)}

    run = s.run
    uses = s.uses
    with_ = dict(s.with_)
    timeout = _minutes(s.timeout_minutes, step_env, where, problems)
    policy = NO_RETRY
    if s.retry is not None:
        policy = RetryPolicy(
            max_attempts=s.retry.max_attempts,
            delay=s.retry.delay_seconds,
            retry_on_timeout=s.retry.retry_on_timeout,
            fatal_exit_codes=tuple(s.retry.fatal_exit_codes),
        )

    if uses and uses.split("@", 1)[0].rsplit("/", 1)[-1].lower() in RETRY_ACTIONS:
        command = with_.get("command")
        if not command:
            problems.append(f"{where}: retry step needs 'with.command'")
        else:
            run, uses = str(command), None
            try:
                policy = RetryPolicy(
                    max_attempts=int(with_.get("max_attempts", 3)),
                    delay=float(with_.get("retry_wait_seconds", 0)),
                )
            except (TypeError, ValueError) as e:
                problems.append(f"{where}: {e}")
            if with_.get("timeout_minutes") is not None:
                timeout = _minutes(with_["timeout_minutes"], step_env, where, problems)
            elif with_.get("timeout_seconds") is not None:
                timeout = float(with_["timeout_seconds"])
            with_ = {}

    for template in [run or ""] + [v for v in s.env.values() if isinstance(v, str)]:
        try:
            check_template(template)
        except ExpressionError as e:
            problems.append(f"{where}: {e.message}")

    return Step(
        name=name,
        run=run,
        uses=uses,
        with_=with_,
        cwd=s.working_directory,
        env=_env(s.env),
        condition=_condition(s.if_, f"{where}.if", problems),
        timeout=timeout,
        retry=policy,
        continue_on_error=_flag(s.continue_on_error, step_env, where, problems),
    )


def _triggers(on: Union[str, List[str], Dict[str, Any]], problems: List[str]) -> Dict[str, EventFilter]:
    if isinstance(on, str):
        on = [on]
    if isinstance(on, list):
        on = {k: None for k in on}

    out: Dict[str, EventFilter] = {}
    for raw_kind, body in on.items():
        kind = normalize_kind(str(raw_kind))
        if kind not in EVENT_KINDS:
            problems.append(f"on: unknown event kind '{raw_kind}'")
            continue
        # schedule carries a list of cron entries; timing is external
        if body is None or isinstance(body, list):
            out[kind] = EventFilter()
            continue
        try:
            t = TriggerIn.model_validate(body)
        except ValidationError as e:
            problems.extend(f"on.{raw_kind}: {err['msg']}" for err in e.errors())
            continue
        out[kind] = EventFilter(
            branches=tuple(t.branches) if t.branches is not None else None,
            types=tuple(t.types) if t.types is not None else None,
            draft=t.draft,
        )
    return out


def _concurrency(raw: Union[str, ConcurrencyIn, None], problems: List[str]) -> Optional[ConcurrencySpec]:
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = ConcurrencyIn(group=raw)
    try:
        check_template(raw.group)
    except ExpressionError as e:
        problems.append(f"concurrency.group: {e.message}")
    cip: Any = raw.cancel_in_progress
    if isinstance(cip, str):
        cip = _condition(cip, "concurrency.cancel-in-progress", problems)
    return ConcurrencySpec(group=raw.group, cancel_in_progress=cip)


def compile_pipeline(doc: PipelineIn, *, default_name: str = "pipeline", source: str | None = None) -> PipelineDefinition:
    problems: List[str] = []
    env = _env(doc.env)

    jobs: List[Job] = []
    for job_id, j in doc.jobs.items():
        job_env = {**env, **_env(j.env)}
        where = f"jobs.{job_id}"
        jobs.append(
            Job(
                name=job_id,
                steps=tuple(_step(job_id, i, s, job_env, problems) for i, s in enumerate(j.steps)),
                needs=tuple(j.needs),
                condition=_condition(j.if_, f"{where}.if", problems),
                continue_on_error=_flag(j.continue_on_error, job_env, where, problems),
                timeout=_minutes(j.timeout_minutes, job_env, where, problems),
                env=_env(j.env),
                display_name=j.name,
            )
        )

    definition = PipelineDefinition(
        name=doc.name or default_name,
        jobs=tuple(jobs),
        triggers=_triggers(doc.on, problems),
        concurrency=_concurrency(doc.concurrency, problems),
        env=env,
        vars=dict(doc.vars),
        source=source,
    )
    if problems:
        raise DefinitionError("invalid pipeline definition", problems, source=source)
    return definition


def load_document(data: Any, *, default_name: str = "pipeline", source: str | None = None) -> PipelineDefinition:
    """Validate a parsed YAML/JSON document and compile it."""
    if not isinstance(data, dict):
        raise DefinitionError("pipeline document must be a mapping", source=source)
    try:
        doc = PipelineIn.model_validate(data)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        ]
        raise DefinitionError("invalid pipeline definition", problems, source=source) from e
    return compile_pipeline(doc, default_name=default_name, source=source)
