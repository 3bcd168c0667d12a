"""Typer CLI: inspect the model catalog, run analyses, browse history, manage face identities."""

import json
import logging
from pathlib import Path

import typer
import yaml
from rich.console import Console
from rich.table import Table

from visionhub.ai.schema import MB, SelectionConstraints
from visionhub.core.config import get_config
from visionhub.core.errors import InvalidInput, VisionError
from visionhub.core.logging import dump_flight_log, setup_logging
from visionhub.core.services import Services, build_registry, build_services, get_session_factory
from visionhub.pipelines.face_recognition import FaceRecognitionPipeline
from visionhub.pipelines.schema import (
    DEFAULT_OPTIONS,
    AnalysisResultItem,
    PipelineKind,
    PipelineSettings,
    parse_pipeline_config,
)
from visionhub.repository.analysis_repo import VisionAnalysisRepository
from visionhub.repository.identity_repo import FaceIdentityRepository

_log = logging.getLogger(__name__)

app = typer.Typer(no_args_is_help=True)
models_app = typer.Typer(help="Inspect the model catalog and routing decisions.")
app.add_typer(models_app, name="models")
history_app = typer.Typer(help="Browse persisted analyses.")
app.add_typer(history_app, name="history")
faces_app = typer.Typer(help="Register and list known face identities.")
app.add_typer(faces_app, name="faces")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at the configured log_level (default INFO) to the console."),
) -> None:
    setup_logging(get_config().log_level if verbose else None)


def _get_session_factory():
    return get_session_factory(get_config().database_url)


def _build_services(with_storage: bool = True) -> Services:
    cfg = get_config()
    return build_services(
        cfg,
        _get_session_factory() if with_storage else None,
        with_storage=with_storage,
    )


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(1)


def _dump_flight_log(label: str) -> None:
    path = dump_flight_log(label)
    if path is not None:
        typer.secho(f"Flight log written to {path}", fg=typer.colors.YELLOW)


@models_app.command("list")
def models_list(
    task: str | None = typer.Option(None, "--task", help="Only capabilities serving this task"),
) -> None:
    """List registered capabilities (Id | Name | Tasks | Size | Quantized | Latency | Runtime)."""
    registry = build_registry(get_config())
    descriptors = registry.list_by_task(task) if task else registry.list_all()
    if not descriptors:
        typer.echo("No capabilities registered.")
        return
    table = Table(title=None)
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("Tasks")
    table.add_column("Size (MB)", justify="right")
    table.add_column("Quantized")
    table.add_column("Latency")
    table.add_column("Runtime")
    for d in descriptors:
        table.add_row(
            d.id,
            d.name,
            ", ".join(sorted(d.tasks)),
            f"{d.size_bytes / MB:.0f}",
            "yes" if d.quantized else "no",
            d.latency_class.value,
            d.runtime,
        )
    console = Console()
    console.print(table)


@models_app.command("select")
def models_select(
    task: str = typer.Argument(..., help="Task name, e.g. object-detection or image-captioning"),
    device: str | None = typer.Option(None, "--device", help="Device class: server, desktop, mobile"),
    real_time: bool = typer.Option(False, "--real-time", help="Prefer real-time capable models"),
    max_size_mb: int | None = typer.Option(None, "--max-size-mb", help="Penalize models larger than this"),
    prefer_quantized: bool = typer.Option(False, "--prefer-quantized", help="Prefer quantized artifacts"),
    model: str | None = typer.Option(None, "--model", help="Explicit capability id hint"),
) -> None:
    """Show which capability the router would pick for a task, with every candidate's score."""
    from visionhub.ai.router import CapabilityRouter

    try:
        constraints = SelectionConstraints(
            device_class=device,
            real_time=real_time,
            max_size=max_size_mb * MB if max_size_mb is not None else None,
            prefer_quantized=prefer_quantized,
            model_id=model,
        )
    except ValueError as e:
        _fail(f"Invalid constraints: {e}")
    registry = build_registry(get_config())
    router = CapabilityRouter(registry)
    selected = router.select_for_task(task, constraints)
    if selected is None:
        _fail(f"No capability serves task '{task}'.")
    typer.echo(f"Selected: {selected.id}")
    table = Table(title=None)
    table.add_column("Id")
    table.add_column("Score", justify="right")
    for descriptor, score in router.rank(task, constraints):
        table.add_row(descriptor.id, f"{score:.2f}")
    Console().print(table)


def _pipeline_config_from_options(
    pipelines: list[str],
    threshold: float | None,
    prompt: str | None,
    config_file: Path | None,
):
    if config_file is not None:
        if not config_file.exists():
            raise InvalidInput(f"Pipeline config not found: {config_file}")
        with open(config_file) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise InvalidInput("Pipeline config must be a mapping of pipeline kind to settings")
        return parse_pipeline_config(raw)
    raw: dict = {}
    for name in pipelines or [k.value for k in PipelineKind]:
        options: dict = {}
        if name == PipelineKind.object_detection.value and threshold is not None:
            options["threshold"] = threshold
        if name in (PipelineKind.scene_description.value, PipelineKind.ocr.value) and prompt:
            options["prompt"] = prompt
        raw[name] = {"enabled": True, "options": options}
    return parse_pipeline_config(raw)


def _faces_enabled(pipeline_config) -> bool:
    settings = pipeline_config.get(PipelineKind.face_recognition)
    return settings is not None and settings.enabled


def _summarize(item: AnalysisResultItem) -> str:
    if item.error is not None:
        return f"{item.error.kind.value}: {item.error.message}"
    payload = item.payload
    if payload is None:
        return ""
    if payload.kind == PipelineKind.object_detection.value:
        return payload.summary
    if payload.kind == PipelineKind.scene_description.value:
        return payload.description
    if payload.kind == PipelineKind.ocr.value:
        return payload.text or "(no text)"
    names = [f.person_name or "unknown" for f in payload.faces]
    return ", ".join(names) if names else "No faces detected."


@app.command("analyze")
def analyze(
    image_path: Path = typer.Argument(..., help="Image file to analyze"),
    pipeline: list[str] = typer.Option(
        [], "--pipeline", "-p", help="Pipeline kind to run (repeatable). Default: all."
    ),
    threshold: float | None = typer.Option(None, "--threshold", help="Object detection confidence threshold"),
    prompt: str | None = typer.Option(None, "--prompt", help="Prompt for scene description and OCR"),
    config_file: Path | None = typer.Option(
        None, "--pipeline-config", help="YAML/JSON file mapping pipeline kind to {enabled, options}"
    ),
    user: str | None = typer.Option(None, "--user", help="User id (required with --persist)"),
    session: str | None = typer.Option(None, "--session", help="Session id to group results"),
    device: str | None = typer.Option(None, "--device", help="Device class: server, desktop, mobile"),
    persist: bool = typer.Option(False, "--persist", help="Save successful results to the database"),
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON"),
) -> None:
    """Run the selected analysis pipelines on one image."""
    if persist and not user:
        _fail("--persist requires --user.")
    if not image_path.is_file():
        _fail(f"Image not found: {image_path}")
    services = None
    try:
        pipeline_config = _pipeline_config_from_options(pipeline, threshold, prompt, config_file)
        services = _build_services(with_storage=persist or _faces_enabled(pipeline_config))
        services.manager.initialize()
        items = services.orchestrator.run(
            image_path.read_bytes(),
            pipeline_config,
            user_id=user,
            session_id=session,
            device_class=device,
            persist=persist,
            file_name=image_path.name,
        )
    except InvalidInput as e:
        _fail(str(e))
    except Exception as e:
        _log.error("analyze failed: %s", e, exc_info=True)
        _dump_flight_log("analyze")
        _fail(f"Analysis failed: {e}")
    finally:
        if services is not None:
            services.close()

    if as_json:
        typer.echo(json.dumps([item.model_dump(mode="json") for item in items], indent=2))
    else:
        table = Table(title=None)
        table.add_column("Pipeline")
        table.add_column("Status")
        table.add_column("Confidence", justify="right")
        table.add_column("Model")
        table.add_column("Time (ms)", justify="right")
        table.add_column("Result")
        for item in items:
            table.add_row(
                item.kind.value,
                "ok" if item.ok else "failed",
                f"{item.confidence:.2f}",
                item.model_used or "",
                f"{item.processing_time_ms:.0f}" if item.processing_time_ms is not None else "",
                _summarize(item),
            )
        Console().print(table)
    if items and not any(item.ok for item in items):
        raise typer.Exit(1)


def _read_face_images(image_paths: list[Path]) -> list[bytes]:
    for path in image_paths:
        if not path.is_file():
            _fail(f"Image not found: {path}")
    return [path.read_bytes() for path in image_paths]


def _face_pipeline(services: Services) -> FaceRecognitionPipeline:
    return services.pipelines[PipelineKind.face_recognition]


def _history_table(rows) -> Table:
    table = Table(title=None)
    table.add_column("Id", justify="right")
    table.add_column("Kind")
    table.add_column("Session")
    table.add_column("Model")
    table.add_column("Confidence", justify="right")
    table.add_column("Created At")
    for row in rows:
        table.add_row(
            str(row.id),
            row.kind,
            row.session_id or "",
            row.model_used or "",
            f"{row.confidence:.2f}",
            str(row.created_at),
        )
    return table


@history_app.command("user")
def history_user(
    user_id: str = typer.Argument(..., help="User id"),
    limit: int = typer.Option(20, "--limit", help="Page size"),
    offset: int = typer.Option(0, "--offset", help="Rows to skip"),
    kind: str | None = typer.Option(None, "--kind", help="Only this pipeline kind"),
) -> None:
    """List a user's analyses, newest first."""
    repo = VisionAnalysisRepository(_get_session_factory())
    rows, total = repo.query_by_user(user_id, limit=limit, offset=offset, kind=kind)
    if not rows:
        typer.echo(f"No analyses for user '{user_id}'.")
        return
    Console().print(_history_table(rows))
    typer.echo(f"Showing {len(rows)} of {total}.")


@history_app.command("session")
def history_session(session_id: str = typer.Argument(..., help="Session id")) -> None:
    """List the analyses recorded in one session."""
    repo = VisionAnalysisRepository(_get_session_factory())
    rows = repo.query_by_session(session_id)
    if not rows:
        typer.echo(f"No analyses for session '{session_id}'.")
        return
    Console().print(_history_table(rows))


@history_app.command("show")
def history_show(record_id: int = typer.Argument(..., help="Analysis id")) -> None:
    """Print one analysis record as JSON."""
    repo = VisionAnalysisRepository(_get_session_factory())
    row = repo.get_by_id(record_id)
    if row is None:
        _fail(f"Analysis {record_id} not found.")
    typer.echo(json.dumps(row.model_dump(mode="json"), indent=2))


@faces_app.command("register")
def faces_register(
    name: str = typer.Argument(..., help="Person name"),
    image_paths: list[Path] = typer.Argument(..., help="One or more images of the person's face"),
    user: str | None = typer.Option(None, "--user", help="Owner user id (omit for a shared identity)"),
) -> None:
    """Register a person from the largest face in each image (embeddings are averaged)."""
    images = _read_face_images(image_paths)
    services = _build_services(with_storage=True)
    try:
        embedding = _face_pipeline(services).reference_embedding(images)
        identity = services.identities.add_identity(name, embedding, user_id=user)
    except (VisionError, ValueError) as e:
        _fail(str(e))
    finally:
        services.close()
    typer.echo(f"Registered '{identity.name}' with id {identity.id} from {len(images)} image(s).")


@faces_app.command("update")
def faces_update(
    identity_id: int = typer.Argument(..., help="Identity id"),
    image_paths: list[Path] | None = typer.Argument(None, help="New reference images (optional)"),
    name: str | None = typer.Option(None, "--name", help="New person name"),
) -> None:
    """Rename an identity and/or re-enroll it from new images."""
    if not image_paths and name is None:
        _fail("Nothing to update: pass --name and/or images.")
    images = _read_face_images(image_paths) if image_paths else []
    services = _build_services(with_storage=True)
    try:
        embedding = _face_pipeline(services).reference_embedding(images) if images else None
        identity = services.identities.update_identity(identity_id, name=name, embedding=embedding)
    except (VisionError, ValueError) as e:
        _fail(str(e))
    finally:
        services.close()
    if identity is None:
        _fail(f"Identity {identity_id} not found.")
    typer.echo(f"Updated '{identity.name}' (id {identity.id}).")


@faces_app.command("list")
def faces_list(
    user: str | None = typer.Option(None, "--user", help="Only identities visible to this user"),
) -> None:
    """List registered identities (Id | Name | Owner | Dimensions)."""
    repo = FaceIdentityRepository(_get_session_factory())
    identities = repo.list_identities(user)
    if not identities:
        typer.echo("No registered identities.")
        return
    table = Table(title=None)
    table.add_column("Id", justify="right")
    table.add_column("Name")
    table.add_column("Owner")
    table.add_column("Dimensions", justify="right")
    for identity in identities:
        table.add_row(str(identity.id), identity.name, identity.user_id or "(shared)", str(len(identity.embedding)))
    Console().print(table)


@faces_app.command("remove")
def faces_remove(identity_id: int = typer.Argument(..., help="Identity id")) -> None:
    """Delete a registered identity."""
    repo = FaceIdentityRepository(_get_session_factory())
    if not repo.remove_identity(identity_id):
        _fail(f"Identity {identity_id} not found.")
    typer.echo("Identity removed.")


@app.command("options")
def options_schema(kind: str = typer.Argument(..., help="Pipeline kind")) -> None:
    """Print the default options of one pipeline kind as JSON (camelCase keys)."""
    try:
        pipeline_kind = PipelineKind(kind)
    except ValueError:
        _fail(f"Unknown pipeline: {kind}")
    settings = PipelineSettings(options=DEFAULT_OPTIONS[pipeline_kind]())
    typer.echo(json.dumps(settings.options.model_dump(mode="json", by_alias=True), indent=2))


if __name__ == "__main__":
    app()
