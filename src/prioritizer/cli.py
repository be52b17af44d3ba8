"""CLI commands for inspecting and maintaining task orderings."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, NoReturn, Optional, Union

import typer
import yaml
from pydantic import ValidationError

from .config import (
    DEFAULT_CONFIG_NAME,
    ConfigError,
    EngineSettings,
    copy_config_template,
    load_config,
    write_config,
)
from .errors import PrioritizerError
from .graph.cycles import propose_edges
from .graph.relationships import RelationshipGraph
from .memory.reflections import classify_reflection, interpret_reflections
from .memory.schema import (
    BridgingTask,
    OrderedPlan,
    Reflection,
    ReflectionClassification,
    RelationshipEdge,
    Task,
)
from .memory.store import SNAPSHOT_KINDS, SnapshotStore
from .models.planner import PlannerRequest, ReplayPlanner
from .planning.bridging import insert_bridging_tasks
from .planning.gaps import detect_gaps
from .planning.ranking import adjust as adjust_plan
from .planning.validator import PlanValidator, Verdict

APP_HELP = "Dependency-aware task ordering: gaps, bridging, re-ranking, and plan validation."

app = typer.Typer(help=APP_HELP)
snapshot_app = typer.Typer(help="Save and inspect versioned graph and baseline snapshots.")
app.add_typer(snapshot_app, name="snapshot")

CONFIG_OPTION_HELP = "Path to the prioritizer configuration file."


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level for diagnostic output."),
) -> None:
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Helpers -------------------------------------------------------------------------------
def _load_settings(config: str) -> EngineSettings:
    config_path = Path(config)
    if not config_path.exists():
        template = copy_config_template()
        template["paths"]["logs"] = None
        return EngineSettings.from_config(template, base_dir=Path.cwd())
    try:
        data = load_config(config_path)
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    return EngineSettings.from_config(data, base_dir=config_path.resolve().parent)


def _read_document(path: Path) -> Any:
    """Read a YAML or JSON document (JSON is valid YAML)."""
    if not path.exists():
        raise typer.BadParameter(f"File not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            return yaml.safe_load(handle)
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse {path}: {error}")
        raise typer.Exit(code=1) from error


def _read_state(path: Path) -> Dict[str, Any]:
    data = _read_document(path) or {}
    if not isinstance(data, dict):
        typer.echo("State file must be a mapping with tasks, edges, and plan.")
        raise typer.Exit(code=1)
    return data


def _list_section(data: Any, key: str) -> List[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, Mapping):
        value = data.get(key)
        return list(value) if isinstance(value, list) else []
    return []


def _build_graph(state: Mapping[str, Any]) -> RelationshipGraph:
    tasks = [Task.model_validate(item) for item in state.get("tasks") or []]
    edges = [RelationshipEdge.model_validate(item) for item in state.get("edges") or []]
    return RelationshipGraph(tasks, edges, version=int(state.get("version") or 0))


def _build_plan(state: Mapping[str, Any], graph: RelationshipGraph) -> OrderedPlan:
    payload = state.get("plan")
    if isinstance(payload, Mapping):
        return OrderedPlan.model_validate(payload)
    if isinstance(payload, list):
        return OrderedPlan(ordered_task_ids=[str(item) for item in payload])
    return OrderedPlan(ordered_task_ids=[task_id for task_id, task in graph.tasks.items() if task.sequenceable])


def _classifications(state: Mapping[str, Any]) -> Dict[str, ReflectionClassification]:
    items = [ReflectionClassification.model_validate(item) for item in state.get("classifications") or []]
    return {item.reflection_id: item for item in items}


def _emit(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _write_state(path: Path, state: Mapping[str, Any], graph: RelationshipGraph, plan: OrderedPlan) -> None:
    updated = dict(state)
    updated["version"] = graph.version
    updated["tasks"] = [task.model_dump(mode="json") for task in graph.tasks.values()]
    updated["edges"] = [edge.model_dump(mode="json") for edge in graph.edges]
    updated["plan"] = plan.model_dump(mode="json")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(updated, indent=2), encoding="utf-8")
    typer.echo(f"Wrote updated state to {path.as_posix()}", err=True)


def _fail(error: Union[PrioritizerError, ValidationError]) -> NoReturn:
    if isinstance(error, ValidationError):
        payload = {
            "error": "ValidationError",
            "message": f"Invalid {error.title} record in input",
            "context": {"errors": error.errors(include_url=False)},
        }
    else:
        payload = error.to_dict()
    _emit(payload)
    raise typer.Exit(code=1) from error


# Commands ------------------------------------------------------------------------------
@app.command()
def init(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)
    write_config(config_path, copy_config_template())
    typer.echo(f"Wrote configuration to {config_path}.")


@app.command()
def gaps(
    state: Path = typer.Argument(..., help="YAML/JSON state file with tasks, edges, and plan."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
) -> None:
    """Report weak adjacent pairs in the current ordering."""
    settings = _load_settings(config)
    data = _read_state(state)
    try:
        graph = _build_graph(data)
        found = detect_gaps(_build_plan(data, graph), graph, settings=settings.gaps)
    except (PrioritizerError, ValidationError) as error:
        _fail(error)
    _emit([gap.model_dump(mode="json") for gap in found])


@app.command()
def resolve(
    state: Path = typer.Argument(..., help="YAML/JSON state file with tasks and edges."),
    candidates: Path = typer.Option(..., "--candidates", help="File with candidate edges (list or {edges: [...]})."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the resolved state here."),
) -> None:
    """Insert candidate edges and break any cycles they introduce."""
    data = _read_state(state)
    raw_edges = _list_section(_read_document(candidates), "edges")
    try:
        graph = _build_graph(data)
        proposal = propose_edges(graph, [RelationshipEdge.model_validate(item) for item in raw_edges])
    except (PrioritizerError, ValidationError) as error:
        _fail(error)
    _emit(proposal.to_dict())
    if output is not None:
        _write_state(output, data, proposal.graph, _build_plan(data, proposal.graph))


@app.command()
def bridge(
    state: Path = typer.Argument(..., help="YAML/JSON state file with tasks, edges, and plan."),
    bridges: Path = typer.Option(..., "--bridges", help="File with accepted bridging tasks."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the updated state here."),
) -> None:
    """Splice accepted bridging tasks into the ordering."""
    settings = _load_settings(config)
    data = _read_state(state)
    raw_bridges = _list_section(_read_document(bridges), "bridges")
    try:
        accepted = [BridgingTask.model_validate(item) for item in raw_bridges]
        graph = _build_graph(data)
        result = insert_bridging_tasks(_build_plan(data, graph), graph, accepted, settings.bridging)
    except (PrioritizerError, ValidationError) as error:
        _fail(error)
    _emit(result.to_dict())
    if output is not None:
        _write_state(output, data, result.graph, result.plan)


@app.command()
def adjust(
    state: Path = typer.Argument(..., help="State file with tasks, plan, reflections, and optional locks."),
    lock: List[str] = typer.Option(None, "--lock", "-l", help="Task id to keep in place (repeatable)."),
) -> None:
    """Re-rank the baseline ordering from active reflections."""
    data = _read_state(state)
    try:
        graph = _build_graph(data)
        plan = _build_plan(data, graph)
        reflections = [Reflection.model_validate(item) for item in data.get("reflections") or []]
        effects = interpret_reflections(reflections, graph.tasks.values(), _classifications(data))
        locks = frozenset([*(data.get("locks") or []), *(lock or [])])
        result = adjust_plan(plan, effects, locks)
    except (PrioritizerError, ValidationError) as error:
        _fail(error)
    _emit(result.to_dict())


@app.command()
def validate(
    state: Path = typer.Argument(..., help="State file with tasks, reflections, and optional classifications."),
    candidate: List[Path] = typer.Option(..., "--candidate", help="Recorded planner output, replayed in order."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    run_id: str = typer.Option("plan", "--run-id", help="Identifier used for the validator log file."),
) -> None:
    """Validate recorded planner output through the repair loop."""
    settings = _load_settings(config)
    data = _read_state(state)
    payloads = [path.read_text(encoding="utf-8") for path in candidate]
    try:
        graph = _build_graph(data)
        tasks = list(graph.tasks.values())
        provided = _classifications(data)
        reflections = [Reflection.model_validate(item) for item in data.get("reflections") or []]
    except (PrioritizerError, ValidationError) as error:
        _fail(error)
    directives = [
        provided.get(reflection.id) or classify_reflection(reflection, tasks)
        for reflection in reflections
        if reflection.is_active
    ]

    validator = PlanValidator(
        tasks,
        directives,
        settings.validator,
        logs_root=settings.logs_root,
        run_id=run_id,
    )
    request = PlannerRequest(tasks=tasks, directives=directives, outcome=str(data.get("outcome") or ""))
    report = asyncio.run(validator.run(ReplayPlanner(payloads), request))
    _emit(report.to_dict())
    if report.log_path is not None:
        typer.echo(f"Validator log: {report.log_path.as_posix()}", err=True)
    if report.verdict is Verdict.REJECTED:
        raise typer.Exit(code=1)


@snapshot_app.command("save")
def snapshot_save(
    state: Path = typer.Argument(..., help="State file with tasks, edges, and plan."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    expected_version: Optional[int] = typer.Option(
        None, "--expected-version", help="Only save when the stored graph is at this version."
    ),
    label: str = typer.Option("", "--label", help="Free-form label stored with the snapshot."),
) -> None:
    """Store the graph and baseline plan from a state file."""
    settings = _load_settings(config)
    data = _read_state(state)
    try:
        graph = _build_graph(data)
        plan = _build_plan(data, graph)
        with SnapshotStore(settings.db_path) as store:
            baseline_expected = None
            if expected_version is not None:
                baseline_expected = store.current_version("baseline")
            graph_version = store.save_graph(graph, expected_version=expected_version, label=label)
            baseline_version = store.save_baseline(plan, expected_version=baseline_expected, label=label)
    except (PrioritizerError, ValidationError) as error:
        _fail(error)
    _emit({"graph_version": graph_version, "baseline_version": baseline_version})


@snapshot_app.command("show")
def snapshot_show(
    kind: str = typer.Option("baseline", "--kind", help=f"Snapshot kind: {', '.join(SNAPSHOT_KINDS)}."),
    version: Optional[int] = typer.Option(None, "--version", help="Specific version (default: latest)."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
) -> None:
    """Print a stored snapshot."""
    if kind not in SNAPSHOT_KINDS:
        raise typer.BadParameter(f"Unknown snapshot kind: {kind}")
    settings = _load_settings(config)
    with SnapshotStore(settings.db_path) as store:
        if kind == "graph":
            graph = store.get_graph(version)
            payload = graph.to_dict() if graph is not None else None
        else:
            loaded = store.get_baseline(version)
            payload = {"version": loaded[0], "plan": loaded[1].model_dump(mode="json")} if loaded else None
    if payload is None:
        typer.echo(f"No {kind} snapshot stored.")
        raise typer.Exit(code=1)
    _emit(payload)


@snapshot_app.command("history")
def snapshot_history(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
) -> None:
    """List stored snapshot versions."""
    settings = _load_settings(config)
    with SnapshotStore(settings.db_path) as store:
        _emit(store.history())


if __name__ == "__main__":
    app()
