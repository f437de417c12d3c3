from __future__ import annotations

"""Developer-facing CLI for inspecting plans, tool catalogs and session manifests."""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from pydantic import ValidationError

from reelagent.src.core.errors import AgentError
from reelagent.src.core.manifest import ExecutionManifest, load_manifest_schema
from reelagent.src.core.references import collect_references
from reelagent.src.core.scheduler import execution_order
from reelagent.src.core.tools import ToolRegistry
from reelagent.src.core.types import Plan, RiskLevel
from reelagent.src.core.validator import DEFAULT_MAX_STEPS, PlanValidator


app = typer.Typer(help="Utility commands for inspecting reelagent artefacts.")
plan_app = typer.Typer(help="Validate and inspect plans.")
tools_app = typer.Typer(help="List tool catalog metadata.")
manifest_app = typer.Typer(help="Work with session manifests.")
app.add_typer(plan_app, name="plan")
app.add_typer(tools_app, name="tools")
app.add_typer(manifest_app, name="manifest")


def _fail(message: str) -> typer.Exit:
    typer.secho(message, err=True, fg=typer.colors.RED)
    return typer.Exit(code=1)


def _load_json_file(path: Path) -> Any:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise _fail(f"Failed to read {path}: {exc}") from exc
    try:
        return json.loads(content)
    except json.JSONDecodeError as exc:
        raise _fail(f"Invalid JSON in {path}: {exc}") from exc


def _load_catalog(path: Path) -> ToolRegistry:
    data = _load_json_file(path)
    entries = data.get("tools") if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise _fail(f"Tool catalog {path} must be a list or an object with a 'tools' list")
    try:
        return ToolRegistry.from_catalog(entries)
    except (KeyError, ValueError, TypeError, SchemaError) as exc:
        raise _fail(f"Invalid tool catalog {path}: {exc}") from exc


def _load_plan(path: Path) -> Plan:
    data = _load_json_file(path)
    try:
        return Plan.from_dict(data)
    except (KeyError, ValueError, TypeError, AttributeError) as exc:
        raise _fail(f"Malformed plan {path}: {exc}") from exc


@plan_app.command("validate")
def plan_validate(
    path: Path = typer.Argument(..., exists=True, resolve_path=True, help="Path to plan JSON."),
    catalog: Path = typer.Option(..., "--catalog", "-c", exists=True, resolve_path=True, help="Tool catalog JSON."),
    context: Optional[Path] = typer.Option(
        None, "--context", exists=True, resolve_path=True, help="Editing context JSON used for id checks."
    ),
    max_steps: int = typer.Option(DEFAULT_MAX_STEPS, "--max-steps", min=1, help="Maximum allowed plan steps."),
) -> None:
    """Validate a plan against a tool catalog."""

    candidate = _load_json_file(path)
    context_data = _load_json_file(context) if context is not None else None
    validator = PlanValidator(_load_catalog(catalog), max_steps=max_steps)
    result = validator.check(candidate, context_data)
    if not result.valid:
        typer.secho(f"Plan rejected ({result.stage}):", err=True, fg=typer.colors.RED)
        for error in result.errors:
            typer.secho(f"- {error}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    assert result.plan is not None
    typer.secho(f"Plan is valid ({len(result.plan.steps)} steps)", fg=typer.colors.GREEN)


@plan_app.command("order")
def plan_order(
    path: Path = typer.Argument(..., exists=True, resolve_path=True, help="Path to plan JSON."),
) -> None:
    """Print the execution order of a plan's steps."""

    plan = _load_plan(path)
    try:
        order = execution_order(plan.steps)
    except AgentError as exc:
        raise _fail(exc.message) from exc
    typer.echo(json.dumps([step.id for step in order], indent=2))


@plan_app.command("refs")
def plan_refs(
    path: Path = typer.Argument(..., exists=True, resolve_path=True, help="Path to plan JSON."),
) -> None:
    """List cross-step references embedded in a plan."""

    plan = _load_plan(path)
    payload: List[Dict[str, Any]] = []
    for step in plan.steps:
        for source_path, reference in collect_references(step.args):
            entry: Dict[str, Any] = {
                "step": step.id,
                "source_path": source_path,
                "from_step": reference.from_step,
                "path": reference.path,
            }
            if reference.has_default:
                entry["default"] = reference.default
            payload.append(entry)
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=True))


@tools_app.command("list")
def tools_list(
    catalog: Path = typer.Argument(..., exists=True, resolve_path=True, help="Tool catalog JSON."),
    max_risk: Optional[str] = typer.Option(None, "--max-risk", help="Only list tools up to this risk level."),
) -> None:
    """Summarise the tools in a catalog."""

    registry = _load_catalog(catalog)
    if max_risk:
        try:
            specs = registry.tools_up_to_risk(RiskLevel.parse(max_risk))
        except ValueError as exc:
            raise _fail(f"Unknown risk level: {max_risk}") from exc
    else:
        specs = registry.list_tools()
    payload = [
        {
            "name": spec.name,
            "description": spec.description,
            "risk_level": spec.risk_level.value,
            "category": spec.category,
            "required_args": list(spec.required_args),
            "parallelizable": spec.parallelizable,
        }
        for spec in specs
    ]
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=True))


def _validate_against_schema(data: Any, schema_path: Path | None = None) -> None:
    schema = load_manifest_schema() if schema_path is None else _load_json_file(schema_path)
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda err: list(err.path))
    if errors:
        typer.secho("Manifest failed JSON schema validation:", err=True, fg=typer.colors.RED)
        for error in errors[:5]:
            location = "/".join(str(part) for part in error.path) or "<root>"
            typer.secho(f"- {location}: {error.message}", err=True, fg=typer.colors.RED)
        if len(errors) > 5:
            typer.secho(f"... {len(errors) - 5} additional errors omitted", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)


@manifest_app.command("validate")
def manifest_validate(
    path: Path = typer.Argument(..., exists=True, resolve_path=True, help="Path to manifest.json"),
    schema: Optional[Path] = typer.Option(None, "--schema", exists=True, resolve_path=True, help="Override schema."),
) -> None:
    """Validate a session manifest."""

    raw = _load_json_file(path)
    _validate_against_schema(raw, schema)
    try:
        manifest = ExecutionManifest.model_validate(raw)
    except ValidationError as exc:
        typer.secho("Manifest validation failed:", err=True, fg=typer.colors.RED)
        typer.echo(exc)
        raise typer.Exit(code=1) from exc
    status = "succeeded" if manifest.success else "failed"
    typer.secho(
        f"Manifest {manifest.run_id} is valid: {len(manifest.iterations)} iterations, session {status}",
        fg=typer.colors.GREEN,
    )


@manifest_app.command("schema")
def manifest_schema(
    output: Path = typer.Argument(..., resolve_path=True, help="Where to write the JSON schema."),
) -> None:
    """Write the manifest JSON schema."""

    output.parent.mkdir(parents=True, exist_ok=True)
    ExecutionManifest.write_schema(output)
    typer.echo(f"Schema written to {output}")


def main() -> None:
    """Entrypoint for ``python -m reelagent.cli``."""

    app()


if __name__ == "__main__":  # pragma: no cover
    main()
