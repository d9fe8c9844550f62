"""
CLI interface for carenotes.

Usage:
    carenotes add "Jane Doe" --type Patient --field gender=Female
    carenotes search "type 2 diabetes"
    carenotes sync
"""

import json
import os
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import CareNotes
from .errors import CareNotesError, log_exception
from .logging_config import configure_quiet_mode, enable_debug_mode
from .search import similarity
from .types import decode_payload, node_types

# Configure quiet mode by default (suppress verbose library output)
# Set CARENOTES_VERBOSE=1 to enable debug mode via environment
if os.environ.get("CARENOTES_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"carenotes {version('carenotes')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


app = typer.Typer(
    name="carenotes",
    help="Local-first clinical notes with on-device semantic search.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="CARENOTES_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Local-first clinical notes with on-device semantic search."""


def _get_app() -> CareNotes:
    """Open the store, turning failures into a clean message and exit code."""
    import atexit

    try:
        notes = CareNotes(_store_override)
    except Exception as e:
        log_path = log_exception(e, "open store")
        typer.echo(f"Error: {e} (details in {log_path})", err=True)
        raise typer.Exit(1)
    atexit.register(notes.close)
    return notes


def _echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _parse_fields(fields: Optional[list[str]]) -> dict[str, str]:
    """Parse key=value options into a payload mapping."""
    payload: dict[str, str] = {}
    for item in fields or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            typer.echo(f"Error: Invalid field {item!r}, expected key=value", err=True)
            raise typer.Exit(1)
        payload[key.strip()] = value.strip()
    return payload


def _format_node(row: dict) -> str:
    parent = f"  (parent {row['parentid']})" if row.get("parentid") else ""
    line = f"{row['id']}  {row['nodetype']:<12}  {row['universalcode']:<10}  {row['title']}{parent}"
    payload = decode_payload(row.get("payload"))
    if payload:
        line += "\n    " + ", ".join(f"{k}={v}" for k, v in payload.items())
    return line


def _ensure_model(notes: CareNotes) -> None:
    """Load the embedding model in the foreground; exit if it fails."""
    if not notes.is_embedding_ready:
        typer.echo("Loading embedding model...", err=True)
        notes.load_model(background=False)
    if not notes.is_embedding_ready:
        typer.echo(f"Error: Embedding model unavailable: {notes.generator.error}", err=True)
        raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------

@app.command()
def add(
    title: Annotated[str, typer.Argument(help="Title or name of the record")],
    nodetype: Annotated[str, typer.Option(
        "--type", "-t", help="Node type (see 'carenotes types')"
    )] = "Patient",
    parent: Annotated[Optional[str], typer.Option(
        "--parent", "-p", help="ID of the parent record (e.g. the patient)"
    )] = None,
    field: Annotated[Optional[list[str]], typer.Option(
        "--field", "-f", help="Payload field as key=value (repeatable)"
    )] = None,
    code: Annotated[Optional[str], typer.Option(
        "--code", help="Universal code (generated if omitted)"
    )] = None,
):
    """Add a record."""
    payload = _parse_fields(field)
    notes = _get_app()
    try:
        node = notes.add_node(nodetype, title, parentid=parent, payload=payload, universalcode=code)
    except (ValueError, CareNotesError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if _json_output:
        _echo_json(node.to_row())
    else:
        typer.echo(node.id)


@app.command()
def actor(
    name: Annotated[str, typer.Argument(help="Actor name")],
    actortype: Annotated[str, typer.Option("--type", "-t", help="Actor type")] = "Person",
    code: Annotated[Optional[str], typer.Option("--code", help="Global code")] = None,
    parent: Annotated[Optional[str], typer.Option("--parent", "-p", help="Parent actor ID")] = None,
    metadata: Annotated[Optional[str], typer.Option("--metadata", "-m", help="Free-form metadata")] = None,
):
    """Add an actor (person or organisation)."""
    notes = _get_app()
    try:
        created = notes.add_actor(actortype, name, globalcode=code, parentid=parent, metadata=metadata)
    except (ValueError, CareNotesError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if _json_output:
        _echo_json(created.to_row())
    else:
        typer.echo(created.id)


@app.command()
def event(
    streamid: Annotated[str, typer.Argument(help="Stream the event belongs to")],
    opcode: Annotated[int, typer.Argument(help="Operation code")],
    refid: Annotated[str, typer.Argument(help="ID of the affected record")],
    scope: Annotated[str, typer.Option("--scope", help="Event scope")] = "private",
    status: Annotated[str, typer.Option("--status", help="Event status")] = "pending",
    payload: Annotated[Optional[str], typer.Option("--payload", help="Free-form payload")] = None,
):
    """Append an operational event."""
    notes = _get_app()
    try:
        created = notes.add_event(streamid, opcode, refid, scope, status=status, payload=payload)
    except CareNotesError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if _json_output:
        _echo_json(created.to_row())
    else:
        typer.echo(created.id)


@app.command("list")
def list_nodes(
    parent: Annotated[Optional[str], typer.Option(
        "--parent", "-p", help="Only records attached to this parent"
    )] = None,
    nodetype: Annotated[Optional[str], typer.Option("--type", "-t", help="Only this node type")] = None,
):
    """List records."""
    notes = _get_app()
    rows = notes.get_nodes(parent)
    if nodetype:
        rows = [r for r in rows if r["nodetype"] == nodetype]
    if _json_output:
        _echo_json(rows)
        return
    for row in rows:
        typer.echo(_format_node(row))


@app.command()
def events(
    stream: Annotated[Optional[str], typer.Option("--stream", help="Only this stream")] = None,
):
    """List operational events, newest first."""
    notes = _get_app()
    rows = notes.get_events(stream)
    if _json_output:
        _echo_json(rows)
        return
    for row in rows:
        typer.echo(
            f"{row['ts']}  {row['streamid']}  op={row['opcode']}  "
            f"ref={row['refid']}  {row['status'] or ''}"
        )


@app.command()
def types():
    """List node types and their payload fields."""
    schemas = node_types()
    if _json_output:
        _echo_json([
            {
                "nodetype": s.nodetype,
                "label": s.label,
                "fields": list(s.fields),
                "choices": {k: list(v) for k, v in s.choices.items()},
                "requires_parent": s.requires_parent,
            }
            for s in schemas
        ])
        return
    for s in schemas:
        fields = ", ".join(
            f"{f}[{'/'.join(s.choices[f])}]" if f in s.choices else f for f in s.fields
        )
        parent = f" (attaches to {s.parent_type})" if s.requires_parent else ""
        typer.echo(f"{s.nodetype:<14} {fields}{parent}")


# -----------------------------------------------------------------------------
# Indexing, search, sync
# -----------------------------------------------------------------------------

@app.command()
def index(
    max_scans: Annotated[Optional[int], typer.Option(
        "--max-scans", help="Stop after this many batches"
    )] = None,
):
    """
    Embed records that aren't searchable yet.

    Counts cover the whole command, including the catch-up scan that runs
    as soon as the model is ready. Exits 1 if any row failed to embed.
    """
    notes = _get_app()
    _ensure_model(notes)
    notes.indexer.drain(max_scans=max_scans)
    processed = notes.indexer.processed_count
    errors = notes.indexer.error_count
    remaining = notes.store.count_unindexed()
    if _json_output:
        _echo_json({"processed": processed, "errors": errors, "remaining": remaining})
    else:
        typer.echo(
            f"Indexed {processed} row(s), {errors} failed; "
            f"{remaining['nodes']} node(s) and {remaining['actors']} actor(s) remaining"
        )
    if errors:
        raise typer.Exit(1)


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search text (typed or transcribed)")],
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum results")] = 10,
    actors: Annotated[bool, typer.Option("--actors", help="Search actors instead of records")] = False,
):
    """Semantic search over indexed records."""
    if limit <= 0:
        typer.echo("Error: --limit must be positive", err=True)
        raise typer.Exit(1)
    notes = _get_app()
    _ensure_model(notes)
    results = notes.search_text(query, limit, kind="actors" if actors else "entities")
    if _json_output:
        _echo_json(results)
        return
    if not results:
        typer.echo("No matches (unindexed records are not searchable yet)", err=True)
        return
    for row in results:
        label = row.get("title") or row.get("name")
        kind = row.get("nodetype") or row.get("actortype")
        typer.echo(f"{similarity(row['distance']):6.1%}  {row['id']}  {kind:<12}  {label}")


@app.command()
def sync():
    """Pull remote changes, then push local ones."""
    notes = _get_app()
    if not notes.syncer.is_configured:
        typer.echo(
            "Sync URL or token missing; running in local-only mode. "
            "Set CARENOTES_SYNC_URL and CARENOTES_SYNC_TOKEN.",
            err=True,
        )
        raise typer.Exit(1)
    ok = notes.sync()
    if _json_output:
        _echo_json({"ok": ok, "error": notes.syncer.last_error})
    elif ok:
        typer.echo("Sync complete")
    else:
        typer.echo(f"Sync failed: {notes.syncer.last_error}", err=True)
    if not ok:
        raise typer.Exit(1)


@app.command()
def status():
    """Show model, indexing and sync state."""
    notes = _get_app()
    info = notes.status()
    if _json_output:
        _echo_json(info)
        return
    emb, idx, syn = info["embedding"], info["indexing"], info["sync"]
    typer.echo(f"Store:      {info['store']}")
    typer.echo(f"Embedding:  {emb['state']}" + (f" ({emb['error']})" if emb["error"] else ""))
    typer.echo(
        f"Unindexed:  {idx['unindexed']['nodes']} node(s), {idx['unindexed']['actors']} actor(s)"
    )
    typer.echo(
        f"Sync:       {'configured' if syn['configured'] else 'local-only'}, "
        f"{syn['pending_changes']} change(s) to push"
    )


def main():
    try:
        app()
    except SystemExit:
        raise
    except Exception as e:
        log_path = log_exception(e, "carenotes")
        typer.echo(f"Error: {e} (details in {log_path})", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
