import json
from pathlib import Path
from typing import Optional

import anyio
import click
from pydantic import SecretStr, ValidationError

from threatdoc.config import Settings, get_settings
from threatdoc.document_processors.registry import create_default_registry
from threatdoc.logging_config import setup_logging
from threatdoc.models import Document, ProcessingOptions
from threatdoc.pipeline import BatchResult, DocumentPipeline
from threatdoc.plugins import PluginHost
from threatdoc.tlp import classify as classify_text


@click.group()
@click.option(
    "--log-level",
    "-l",
    default=None,
    type=click.Choice(["critical", "error", "warning", "info", "debug"]),
    help="Logging level (default: LOG_LEVEL env var or info)",
)
@click.option(
    "--log-format",
    default=None,
    type=click.Choice(["text", "json"]),
    help="Log output format (default: LOG_FORMAT env var or text)",
)
@click.pass_context
def cli(ctx: click.Context, log_level: Optional[str], log_format: Optional[str]):
    """Extract text, metadata and TLP designations from threat-intel documents."""
    try:
        settings = get_settings()
    except ValueError as e:
        raise click.ClickException(f"Invalid configuration: {e}")

    redactor = setup_logging(
        log_format=log_format or settings.log_format,
        log_level=log_level or settings.log_level,
        secrets=[settings.default_password] if settings.default_password else None,
    )
    ctx.obj = {"settings": settings, "redactor": redactor}


@cli.command()
@click.argument(
    "paths", nargs=-1, required=True, type=click.Path(path_type=Path)
)
@click.option("--json", "as_json", is_flag=True, help="Print results as JSON")
@click.option("--no-ocr", is_flag=True, help="Disable the OCR fallback")
@click.option(
    "--preserve-formatting",
    is_flag=True,
    help="Keep bold/italic markers and render tables with pipes",
)
@click.option(
    "--password",
    help="Default password for encrypted PDFs (can also use "
    "THREATDOC_DEFAULT_PASSWORD env var)",
)
@click.option(
    "--plugin-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory of processor plugins (can also use THREATDOC_PLUGIN_DIR env var)",
)
@click.option(
    "--indicators", is_flag=True, help="Extract indicators (emails, IPs, CVEs, ...)"
)
@click.pass_context
def process(
    ctx: click.Context,
    paths: tuple[Path, ...],
    as_json: bool,
    no_ocr: bool,
    preserve_formatting: bool,
    password: Optional[str],
    plugin_dir: Optional[Path],
    indicators: bool,
):
    """Process one or more documents."""
    settings: Settings = ctx.obj["settings"]

    overrides = {}
    if no_ocr:
        overrides["enable_ocr"] = False
    if preserve_formatting:
        overrides["preserve_formatting"] = True
    if indicators:
        overrides["extract_indicators"] = True
    if password:
        ctx.obj["redactor"].add_secret(password)
        overrides["default_password"] = SecretStr(password)

    try:
        options = settings.to_processing_options(**overrides)
    except ValidationError as e:
        raise click.ClickException(f"Invalid processing options: {e}")

    plugin_dir = plugin_dir or (
        Path(settings.plugin_dir) if settings.plugin_dir else None
    )
    result = anyio.run(_process_documents, settings, options, list(paths), plugin_dir)

    if as_json:
        click.echo(json.dumps(_batch_to_dict(result), indent=2, default=str))
    else:
        _print_batch(result)

    if result.failed:
        ctx.exit(1)


async def _process_documents(
    settings: Settings,
    options: ProcessingOptions,
    paths: list[Path],
    plugin_dir: Optional[Path],
) -> BatchResult:
    registry = create_default_registry(settings)
    try:
        async with PluginHost(registry, settings) as host:
            if plugin_dir:
                await host.load_directory(plugin_dir)
            pipeline = DocumentPipeline(registry, options)
            return await pipeline.process_batch(paths)
    finally:
        registry.close()


def _batch_to_dict(result: BatchResult) -> dict:
    return {
        "documents": [document.model_dump(mode="json") for document in result.documents],
        "errors": {
            path: error.model_dump(mode="json") for path, error in result.errors.items()
        },
        "summary": {
            "total": result.total,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "success_rate": result.success_rate,
            "duration": result.duration,
        },
    }


def _print_document(document: Document) -> None:
    if document.succeeded:
        tlp = document.tlp_designation.value if document.tlp_designation else "-"
        click.echo(
            click.style("✓ ", fg="green")
            + f"{document.file_name} [{document.file_type}] "
            f"pages={document.page_count} chars={document.extracted_text_length} "
            f"tlp={tlp}"
            + (" scanned" if document.is_scanned else "")
            + (" degraded" if document.is_degraded else "")
        )
    else:
        click.echo(
            click.style("✗ ", fg="red")
            + f"{document.file_name}: {document.error_message}"
        )
    for warning in document.warnings:
        click.echo(click.style(f"  ! {warning.code}: ", fg="yellow") + warning.message)


def _print_batch(result: BatchResult) -> None:
    for document in result.documents:
        _print_document(document)
    for path, error in result.errors.items():
        click.echo(click.style("✗ ", fg="red") + f"{path}: {error.message}")

    click.echo(
        f"\n{result.succeeded}/{result.total} processed successfully "
        f"in {result.duration:.2f}s"
    )


@cli.command()
@click.option(
    "--plugin-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Also list processors contributed by plugins in this directory",
)
@click.pass_context
def formats(ctx: click.Context, plugin_dir: Optional[Path]):
    """List registered processors and supported extensions."""
    settings: Settings = ctx.obj["settings"]

    async def collect() -> list[tuple[str, int, list[str]]]:
        registry = create_default_registry(settings)
        try:
            async with PluginHost(registry, settings) as host:
                if plugin_dir:
                    await host.load_directory(plugin_dir)
                return [
                    (r.name, r.priority, sorted(r.extensions))
                    for r in registry.registrations()
                ]
        finally:
            registry.close()

    for name, priority, extensions in anyio.run(collect):
        click.echo(
            f"{click.style(name, fg='cyan')} (priority={priority}): "
            f"{', '.join(extensions)}"
        )


@cli.command()
@click.argument("file", type=click.File("r", encoding="utf-8", errors="replace"))
@click.pass_context
def classify(ctx: click.Context, file):
    """Print the TLP designation of a text file ("-" reads stdin)."""
    settings: Settings = ctx.obj["settings"]
    try:
        options = settings.to_processing_options()
    except ValidationError as e:
        raise click.ClickException(f"Invalid processing options: {e}")

    designation = classify_text(file.read(), options)
    click.echo(f"TLP:{designation.value.upper()}")


if __name__ == "__main__":
    cli()
