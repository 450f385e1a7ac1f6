# loader.py
from __future__ import annotations

import json
import runpy
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .dag import validate
from .dsl import pipeline
from .errors import DefinitionError
from .model import Job, PipelineDefinition
from .schema import load_document

DEFAULT_FILES = ("ciflow.yml", "ciflow.yaml", "ciflow_workflow.py")
YAML_SUFFIXES = (".yml", ".yaml")


def find_definition_files(directory: str | Path = ".") -> List[Path]:
    """
    Find pipeline definition files in a directory.

    Looks for ciflow.yml / ciflow.yaml / ciflow_workflow.py, then any
    other *_workflow.py file.
    """
    root = Path(directory)
    found: List[Path] = [root / name for name in DEFAULT_FILES if (root / name).exists()]
    for path in sorted(root.glob("*_workflow.py")):
        if path not in found:
            found.append(path)
    return found


def load_definition(path: str | Path) -> PipelineDefinition:
    """
    Load and validate a pipeline definition.

    Python files must define one of:
      - workflow() -> PipelineDefinition | List[Job]
      - PIPELINE = pipeline(...)
      - JOBS = [Job, ...]
    and may define ACTIONS = {"name": handler} for custom actions.

    YAML/JSON documents are validated against the pipeline schema.

    Raises DefinitionError for anything that would keep the pipeline from
    being scheduled (bad syntax, unknown needs, cycles, ...).
    """
    def_path = Path(path).expanduser().resolve()
    if not def_path.exists():
        raise DefinitionError(f"definition file not found: {def_path}", source=str(def_path))

    suffix = def_path.suffix.lower()
    if suffix == ".py":
        definition = _load_python(def_path)
    elif suffix in YAML_SUFFIXES or suffix == ".json":
        definition = load_document(_read_document(def_path), default_name=def_path.stem, source=str(def_path))
    else:
        raise DefinitionError(
            f"unsupported definition type '{def_path.suffix}' (expected .py, .yml, .yaml or .json)",
            source=str(def_path),
        )

    try:
        validate(definition.jobs)
    except DefinitionError as e:
        raise DefinitionError(e.message, e.problems, source=str(def_path)) from e
    return definition


def _read_document(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise DefinitionError(f"cannot parse {path.name}", [str(e)], source=str(path)) from e


def _load_python(path: Path) -> PipelineDefinition:
    module_name = f"ciflow_workflow_{path.stem}"
    try:
        globals_dict = runpy.run_path(str(path), run_name=module_name)
    except DefinitionError:
        raise
    except Exception as e:
        raise DefinitionError(
            f"error while executing {path.name}",
            [f"{type(e).__name__}: {e}"],
            source=str(path),
        ) from e

    obj: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            obj = globals_dict["workflow"]()
        except TypeError as e:
            if "positional arguments but" in str(e) and "was given" in str(e):
                raise DefinitionError(
                    "workflow() is being called with arguments (name collision with a helper). "
                    "Use `wf` or `pipeline` inside your own `def workflow():`.",
                    source=str(path),
                ) from e
            raise
    elif "PIPELINE" in globals_dict:
        obj = globals_dict["PIPELINE"]
    elif "JOBS" in globals_dict:
        obj = globals_dict["JOBS"]

    actions: Dict[str, Any] = dict(globals_dict.get("ACTIONS") or {})
    return _coerce(obj, path, actions)


def _coerce(obj: Any, path: Path, actions: Mapping[str, Any]) -> PipelineDefinition:
    if isinstance(obj, PipelineDefinition):
        definition = obj
    elif isinstance(obj, (list, tuple)) and all(isinstance(j, Job) for j in obj):
        # bare job lists accept every event kind and have no concurrency group
        definition = pipeline(path.stem, *obj)
    else:
        raise DefinitionError(
            "workflow must produce a PipelineDefinition or a list of Jobs. "
            "Define workflow(), PIPELINE = pipeline(...) or JOBS = [Job, ...].",
            source=str(path),
        )

    merged: Dict[str, Any] = dict(definition.actions)
    merged.update(actions)
    for name, handler in merged.items():
        if not callable(handler):
            raise DefinitionError(f"ACTIONS[{name!r}] is not callable", source=str(path))
    return replace(definition, actions=merged, source=str(path))


def discover_definition(arg: Optional[str] = None, directory: str | Path = ".") -> Path:
    """
    Resolve the definition path from a CLI argument or by discovery.

    Raises DefinitionError when nothing (or more than one candidate) is found.
    """
    if arg:
        p = Path(arg)
        if not p.exists() and not p.suffix:
            for suffix in (".yml", ".yaml", ".py"):
                if p.with_suffix(suffix).exists():
                    return p.with_suffix(suffix)
        if not p.exists():
            raise DefinitionError(f"definition file not found: {arg}", source=arg)
        return p

    files = find_definition_files(directory)
    if not files:
        raise DefinitionError(
            "no pipeline definition found",
            ["looked for: " + ", ".join(DEFAULT_FILES) + ", *_workflow.py"],
        )
    if len(files) > 1:
        raise DefinitionError(
            "multiple pipeline definitions found; pass one explicitly",
            [str(f) for f in files],
        )
    return files[0]
