# executor.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from .actions import ActionContext, ActionRegistry, ActionResult
from .artifacts import ArtifactStore
from .conditions import EvalContext, is_template, resolve
from .errors import StepCancelled, StepFailure, StepTimeout
from .model import Job, PipelineRun, Step
from .retry import CommandResult

OUTPUT_TAIL = 4000
POLL_INTERVAL = 0.1

TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "cargo": "Install the Rust toolchain (rustup) or fix PATH.",
    "make": "Install make (build-essential) or fix PATH.",
}


def hint_for(cmd: str | None, exit_code: int | None) -> Optional[str]:
    """Suggest a fix for 'command not found' failures."""
    if exit_code != 127 or not cmd:
        return None
    words = cmd.strip().split()
    if words and words[0] == "sudo":
        words = words[1:]
    tool = words[0] if words else ""
    return TOOL_HINTS.get(tool, f"'{tool}' was not found on PATH." if tool else None)


@dataclass
class StepContext:
    """Where and with what a step of a given run/job executes."""
    run: PipelineRun
    job: Job
    workspace: Path
    artifacts: ArtifactStore
    base_env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))

    def render(self, value: Any, step: Optional[Step] = None) -> Any:
        """Interpolate `${{ ... }}` segments in strings (recursing into lists and dicts)."""
        if isinstance(value, str):
            if not is_template(value):
                return value
            env = {**self.job.env, **(step.env if step is not None else {})}
            return resolve(value, EvalContext.for_run(self.run.context, self.run.statuses(), needs=self.job.needs, env=env))
        if isinstance(value, list):
            return [self.render(v, step) for v in value]
        if isinstance(value, Mapping):
            return {k: self.render(v, step) for k, v in value.items()}
        return value

    def env_for(self, step: Step) -> Dict[str, str]:
        # process env < pipeline env < job env < step env
        env = dict(self.base_env)
        for layer in (self.run.definition.env, self.job.env, step.env):
            env.update({k: str(self.render(v, step)) for k, v in layer.items()})
        env.setdefault("CI", "1")
        env["CIFLOW_RUN_ID"] = self.run.id
        env["CIFLOW_JOB"] = self.job.name
        env["CIFLOW_REF"] = self.run.context.ref
        env["CIFLOW_EVENT"] = self.run.context.event
        return env


class StepExecutor:
    """
    Invokes one attempt of a step: `run` steps as shell commands, `uses`
    steps through the action registry.

    Commands that overrun their timeout or see the run cancelled are asked
    to terminate (SIGTERM to the process group) and only killed once
    `kill_grace` seconds have passed.
    """

    def __init__(
        self,
        actions: Optional[ActionRegistry] = None,
        *,
        kill_grace: float = 10.0,
        log: Callable[[str], None] = print,
    ):
        self.actions = actions or ActionRegistry()
        self.kill_grace = kill_grace
        self.log = log

    def invoke(self, ctx: StepContext, step: Step, timeout: Optional[float]) -> CommandResult:
        if step.uses:
            return self._run_action(ctx, step, timeout)
        return self._run_shell(ctx, step, timeout)

    # ---- shell ----

    def _cwd(self, ctx: StepContext, step: Step) -> Path:
        cwd = (ctx.workspace / os.path.expanduser(step.cwd or ".")).resolve()
        if not cwd.exists():
            raise StepFailure(ctx.job.name, step.name, f"cwd not found: {cwd}", cmd=step.run, fatal=True)
        return cwd

    def _run_shell(self, ctx: StepContext, step: Step, timeout: Optional[float]) -> CommandResult:
        cwd = self._cwd(ctx, step)
        cancel = ctx.run.cancel_event
        if cancel.is_set():
            raise StepCancelled(ctx.job.name, step.name)

        proc = subprocess.Popen(
            ctx.render(step.run, step),
            shell=True,
            cwd=str(cwd),
            env=ctx.env_for(step),
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=(os.name == "posix"),
        )

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            wait = POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    out, err = self._stop(proc)
                    raise StepTimeout(ctx.job.name, step.name, timeout or 0.0, cmd=step.run, stdout=out, stderr=err)
                wait = min(wait, remaining)
            try:
                out, err = proc.communicate(timeout=wait)
                break
            except subprocess.TimeoutExpired:
                if cancel.is_set():
                    self._stop(proc)
                    raise StepCancelled(ctx.job.name, step.name)

        return CommandResult(
            exit_code=proc.returncode,
            stdout=(out or "")[-OUTPUT_TAIL:],
            stderr=(err or "")[-OUTPUT_TAIL:],
        )

    def _signal(self, proc: subprocess.Popen, sig: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except ProcessLookupError:
            pass

    def _stop(self, proc: subprocess.Popen) -> tuple[str, str]:
        """Ask the command to exit, escalating to a kill after the grace period."""
        self._signal(proc, signal.SIGTERM)
        try:
            out, err = proc.communicate(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            out, err = proc.communicate()
        return (out or "")[-OUTPUT_TAIL:], (err or "")[-OUTPUT_TAIL:]

    # ---- actions ----

    def _run_action(self, ctx: StepContext, step: Step, timeout: Optional[float]) -> CommandResult:
        assert step.uses is not None
        try:
            handler = self.actions.get(step.uses)
        except KeyError:
            raise StepFailure(
                ctx.job.name,
                step.name,
                f"unknown action '{step.uses}' (known: {self.actions.names()})",
                cmd=step.uses,
                fatal=True,
            )

        abort = threading.Event()
        actx = ActionContext(
            run_id=ctx.run.id,
            job=ctx.job.name,
            step=step.name,
            params=ctx.render(dict(step.with_), step),
            workspace=self._cwd(ctx, step),
            env=ctx.env_for(step),
            artifacts=ctx.artifacts,
            cancel_event=abort,
            log=lambda msg: self.log(f"[{ctx.job.name}] {msg}"),
        )

        box: Dict[str, object] = {}

        def target() -> None:
            try:
                box["result"] = handler(actx)
            except BaseException as e:  # handed back to the calling thread
                box["error"] = e

        worker = threading.Thread(target=target, name=f"action-{ctx.job.name}-{step.name}", daemon=True)
        worker.start()

        deadline = None if timeout is None else time.monotonic() + timeout
        while worker.is_alive():
            wait = POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    abort.set()
                    worker.join(self.kill_grace)
                    raise StepTimeout(ctx.job.name, step.name, timeout or 0.0, cmd=step.uses)
                wait = min(wait, remaining)
            worker.join(wait)
            if worker.is_alive() and ctx.run.cancel_event.is_set():
                abort.set()
                worker.join(self.kill_grace)
                raise StepCancelled(ctx.job.name, step.name)

        if "error" in box:
            raise box["error"]  # type: ignore[misc]

        res = box.get("result")
        if res is None:
            return CommandResult(exit_code=0)
        if isinstance(res, ActionResult):
            return CommandResult(exit_code=res.exit_code, stdout=res.output[-OUTPUT_TAIL:])
        if isinstance(res, CommandResult):
            return res
        raise StepFailure(
            ctx.job.name,
            step.name,
            f"action '{step.uses}' returned {type(res).__name__}, expected ActionResult",
            cmd=step.uses,
            fatal=True,
        )
