"""
CLI interface for the memex item store.

Usage:
    memex add https://example.com --title "Example"
    memex list --tag reading
    memex enrich ID summary
    memex sync --watch
"""

import json
import os
import sys
import time
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import Memex, SyncStatus
from .errors import MemexError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import ArtifactKind, ContentKind, Entity, Space, SyncOp
from .views import SORT_OLDEST, SORT_RECENT, FilterState

# Configure quiet mode by default (suppress verbose library output)
# Set MEMEX_VERBOSE=1 to enable debug mode via environment
if os.environ.get("MEMEX_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import PackageNotFoundError, version
        try:
            typer.echo(f"memex {version('memex-store')}")
        except PackageNotFoundError:
            typer.echo("memex (not installed)")
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


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="memex",
    help="Save things, enrich them, sync them. Works offline.",
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
        envvar="MEMEX_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Save things, enrich them, sync them. Works offline."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        envvar="MEMEX_STORE_PATH",
        help="Path to the store directory (default: ~/.memex/)"
    )
]

LimitOption = Annotated[
    int,
    typer.Option(
        "--limit", "-n",
        help="Maximum results to return"
    )
]

IdArgument = Annotated[str, typer.Argument(help="Entity ID")]


def _get_memex(store: Optional[Path]) -> Memex:
    """Open the store, turning setup errors into a clean exit."""
    actual_store = store if store is not None else _get_store_override()
    try:
        return Memex(actual_store)
    except (MemexError, ValueError) as e:
        typer.echo(f"Error opening store: {e}", err=True)
        raise typer.Exit(1)


def _fail(message: str, code: int = 1):
    typer.echo(message, err=True)
    raise typer.Exit(code)


# -----------------------------------------------------------------------------
# Output Formatting
# -----------------------------------------------------------------------------

def _format_entity_line(entity: Entity) -> str:
    date = entity.created_at[:10]
    title = entity.title or entity.url or entity.description[:60] or "(untitled)"
    line = f"{entity.id}  {date}  [{entity.kind.value}]  {title}"
    if entity.tags:
        line += "  #" + " #".join(sorted(entity.tags))
    return line


def _format_entity_full(entity: Entity, mx: Memex) -> str:
    lines = ["---", f"id: {entity.id}", f"kind: {entity.kind.value}"]
    for field_name in ("title", "url", "description", "notes", "thumbnail_url"):
        value = getattr(entity, field_name)
        if value:
            lines.append(f"{field_name}: {value}")
    if entity.tags:
        lines.append(f"tags: [{', '.join(sorted(entity.tags))}]")
    spaces = mx.spaces_for(entity.id)
    if spaces:
        lines.append(f"spaces: [{', '.join(s.name for s in spaces)}]")
    if entity.is_archived:
        lines.append("archived: true")
    lines.append(f"created: {entity.created_at}")
    lines.append(f"updated: {entity.updated_at}")
    artifacts = mx.artifacts(entity.id)
    if artifacts:
        lines.append("artifacts:")
        for artifact in artifacts:
            label = artifact.kind.value
            if artifact.sub_key != "-":
                label += f" ({artifact.sub_key})"
            value = artifact.value.replace("\n", " ")
            lines.append(f"  {label}: {value}")
    lines.append("---")
    if entity.content:
        lines.append(entity.content)
    return "\n".join(lines)


def _format_op(op: SyncOp) -> str:
    line = f"{op.kind.value:<16} {op.target}  attempts={op.attempts}"
    if op.last_error:
        line += f"  error: {op.last_error}"
    return line


def _format_status(status: SyncStatus) -> str:
    if not status.configured:
        state = "not configured"
    elif status.running:
        state = "running"
    else:
        state = "idle"
    line = f"sync {state}: {status.pending} pending, {status.in_flight} in flight, {status.failed} failed"
    if status.last_sync_at:
        line += f", last sync {status.last_sync_at[:19]}"
    if status.last_error:
        line += f"\nlast error: {status.last_error}"
    return line


def _echo_entities(entities: list[Entity]) -> None:
    if _get_json_output():
        typer.echo(json.dumps([e.to_dict() for e in entities], indent=2))
        return
    for entity in entities:
        typer.echo(_format_entity_line(entity))


def _parse_kind(kind: Optional[str]) -> Optional[ContentKind]:
    if kind is None:
        return None
    try:
        return ContentKind(kind)
    except ValueError:
        valid = ", ".join(k.value for k in ContentKind)
        raise typer.BadParameter(f"Unknown kind {kind!r}. Valid kinds: {valid}")


def _parse_artifact_kind(kind: str) -> ArtifactKind:
    try:
        return ArtifactKind(kind)
    except ValueError:
        valid = ", ".join(k.value for k in ArtifactKind)
        raise typer.BadParameter(f"Unknown artifact kind {kind!r}. Valid kinds: {valid}")


def _resolve_space(mx: Memex, ref: str) -> Space:
    """Find a live space by ID, then by name (case-insensitive)."""
    space = mx.get_space(ref)
    if space is not None:
        return space
    matches = [s for s in mx.spaces() if s.name.casefold() == ref.casefold()]
    if len(matches) > 1:
        _fail(f"Ambiguous space name {ref!r}: use one of {', '.join(s.id for s in matches)}")
    if not matches:
        _fail(f"Space not found: {ref}")
    return matches[0]


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def add(
    url: Annotated[Optional[str], typer.Argument(help="URL to save")] = None,
    kind: Annotated[Optional[str], typer.Option(
        "--kind", "-k", help="Content kind (default: bookmark, or note without a URL)"
    )] = None,
    title: Annotated[str, typer.Option("--title", "-t", help="Title")] = "",
    description: Annotated[str, typer.Option("--description", "-d", help="Short description")] = "",
    content: Annotated[Optional[str], typer.Option(
        "--content", "-c", help="Body text ('-' reads stdin)"
    )] = None,
    notes: Annotated[str, typer.Option("--notes", help="Personal notes")] = "",
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-g", help="Tag (repeatable)"
    )] = None,
    id: Annotated[Optional[str], typer.Option("--id", help="Explicit ID")] = None,
    store: StoreOption = None,
):
    """
    Save a new item.

    \b
    Examples:
        memex add https://example.com --title "Example" -g reading
        memex add --kind note --content "remember the milk"
        echo "long text" | memex add --content -
    """
    if content == "-":
        content = sys.stdin.read()
    if url is None and not (title or content or description):
        _fail("Nothing to save: give a URL, --title or --content")
    content_kind = _parse_kind(kind) or (ContentKind.BOOKMARK if url else ContentKind.NOTE)

    with _get_memex(store) as mx:
        try:
            entity = mx.create(
                content_kind,
                id=id,
                url=url,
                title=title,
                description=description,
                content=content or "",
                notes=notes,
                tags=tag or [],
            )
        except ValueError as e:
            _fail(f"Error: {e}")
        if _get_json_output():
            typer.echo(json.dumps(entity.to_dict(), indent=2))
        else:
            typer.echo(entity.id)


@app.command()
def get(
    id: IdArgument,
    store: StoreOption = None,
):
    """Show an item with its artifacts."""
    with _get_memex(store) as mx:
        entity = mx.get(id)
        if entity is None:
            _fail(f"Not found: {id}")
        if _get_json_output():
            data = entity.to_dict()
            data["artifacts"] = [a.to_dict() for a in mx.artifacts(id)]
            typer.echo(json.dumps(data, indent=2))
        else:
            typer.echo(_format_entity_full(entity, mx))


@app.command("list")
def list_items(
    store: StoreOption = None,
    limit: LimitOption = 20,
    kind: Annotated[Optional[str], typer.Option(
        "--kind", "-k", help="Only this content kind"
    )] = None,
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-g", help="Require tag (repeatable, all must match)"
    )] = None,
    query: Annotated[Optional[str], typer.Option(
        "--query", "-q", help="Case-insensitive text match"
    )] = None,
    sort: Annotated[str, typer.Option(
        "--sort", help="Sort order: 'recent' (default) or 'oldest'"
    )] = SORT_RECENT,
    archived: Annotated[bool, typer.Option(
        "--archived", help="Show archived items instead"
    )] = False,
    space: Annotated[Optional[str], typer.Option(
        "--space", help="Only items in this space (ID or name)"
    )] = None,
    saved: Annotated[bool, typer.Option(
        "--saved", help="Use the saved filter state and ignore other filter options"
    )] = False,
    tags: Annotated[bool, typer.Option(
        "--tags", help="List tags in use instead of items"
    )] = False,
):
    """
    List items, newest first.

    \b
    Examples:
        memex list                     # Recent items
        memex list -k youtube -g music # YouTube items tagged music
        memex list -q "local-first"    # Text search
        memex list --tags              # Tags in use
        memex list --space Reading     # Items in a space
    """
    if sort not in (SORT_RECENT, SORT_OLDEST):
        raise typer.BadParameter(f"--sort must be '{SORT_RECENT}' or '{SORT_OLDEST}'")

    with _get_memex(store) as mx:
        if tags:
            names = mx.list_tags()
            typer.echo(json.dumps(names) if _get_json_output() else "\n".join(names))
            return
        if saved:
            filters = mx.filters()
        else:
            filters = FilterState(
                sort_order=sort,
                content_kind=_parse_kind(kind),
                tags=frozenset(tag or ()),
                query=query or "",
                archived=archived,
                space_id=_resolve_space(mx, space).id if space else None,
            )
        _echo_entities(mx.list_entities(filters)[:limit])


@app.command()
def edit(
    id: IdArgument,
    title: Annotated[Optional[str], typer.Option("--title", "-t")] = None,
    url: Annotated[Optional[str], typer.Option("--url")] = None,
    description: Annotated[Optional[str], typer.Option("--description", "-d")] = None,
    content: Annotated[Optional[str], typer.Option(
        "--content", "-c", help="Body text ('-' reads stdin)"
    )] = None,
    notes: Annotated[Optional[str], typer.Option("--notes")] = None,
    kind: Annotated[Optional[str], typer.Option("--kind", "-k")] = None,
    archive: Annotated[Optional[bool], typer.Option(
        "--archive/--unarchive", help="Archive or unarchive"
    )] = None,
    store: StoreOption = None,
):
    """Change fields of an item."""
    if content == "-":
        content = sys.stdin.read()
    patch = {
        name: value for name, value in (
            ("title", title), ("url", url), ("description", description),
            ("content", content), ("notes", notes), ("is_archived", archive),
        )
        if value is not None
    }
    if kind is not None:
        patch["kind"] = _parse_kind(kind)
    if not patch:
        _fail("Nothing to change")

    with _get_memex(store) as mx:
        try:
            entity = mx.mutate(id, patch)
        except KeyError:
            _fail(f"Not found: {id}")
        if _get_json_output():
            typer.echo(json.dumps(entity.to_dict(), indent=2))
        else:
            typer.echo(_format_entity_line(entity))


@app.command()
def tag(
    id: IdArgument,
    add: Annotated[Optional[list[str]], typer.Argument(help="Tags to add")] = None,
    remove: Annotated[Optional[list[str]], typer.Option(
        "--remove", "-r", help="Tag to remove (repeatable)"
    )] = None,
    store: StoreOption = None,
):
    """Add or remove tags on an item."""
    if not add and not remove:
        _fail("Give tags to add or --remove")
    with _get_memex(store) as mx:
        try:
            entity = mx.tag(id, add=add or (), remove=remove or ())
        except KeyError:
            _fail(f"Not found: {id}")
        except ValueError as e:
            _fail(f"Error: {e}")
        if _get_json_output():
            typer.echo(json.dumps(sorted(entity.tags)))
        else:
            typer.echo(" ".join(sorted(entity.tags)))


@app.command()
def delete(
    id: IdArgument,
    store: StoreOption = None,
):
    """Delete an item (and its artifacts) locally and, on next sync, remotely."""
    with _get_memex(store) as mx:
        # Tombstones awaiting the remote delete count as gone
        if mx.get(id) is None or not mx.delete_entity(id):
            _fail(f"Not found: {id}")
        typer.echo(f"Deleted {id}", err=True)


@app.command()
def enrich(
    id: IdArgument,
    kind: Annotated[str, typer.Argument(
        help="Artifact kind: tags, summary, image_description, transcript"
    )] = ArtifactKind.SUMMARY.value,
    sub_key: Annotated[str, typer.Option(
        "--sub-key", help="Artifact sub-key (e.g. image URL)"
    )] = "-",
    store: StoreOption = None,
):
    """Generate an artifact for an item with the configured producer."""
    artifact_kind = _parse_artifact_kind(kind)
    with _get_memex(store) as mx:
        try:
            future = mx.request_enrichment(id, artifact_kind, sub_key)
        except KeyError:
            _fail(f"Not found: {id}")
        except MemexError as e:
            _fail(f"Error: {e}")
        result = future.result()
        if result.busy:
            typer.echo(f"Already generating {kind} for {id}", err=True)
            return
        if not result.ok:
            _fail(f"Failed to generate {kind}: {result.error}")
        if _get_json_output():
            typer.echo(json.dumps(result.artifact.to_dict(), indent=2))
        else:
            typer.echo(result.artifact.value)


@app.command()
def sync(
    watch: Annotated[bool, typer.Option(
        "--watch", "-w", help="Keep syncing in the background until Ctrl-C"
    )] = False,
    limit: Annotated[Optional[int], typer.Option(
        "--limit", "-n", help="Upload at most this many ops"
    )] = None,
    store: StoreOption = None,
):
    """Upload queued changes to the remote."""
    with _get_memex(store) as mx:
        if not mx.sync_status().configured:
            _fail("Sync is not configured. Set sync.api_url in memex.toml or MEMEX_API_URL.")

        if watch:
            mx.start_sync()
            typer.echo("Syncing (Ctrl-C to stop)...", err=True)
            try:
                while True:
                    time.sleep(mx.config.sync.poll_interval)
                    typer.echo(_format_status(mx.sync_status()), err=True)
            except KeyboardInterrupt:
                mx.stop_sync()
            return

        result = mx.drain(limit)
        if _get_json_output():
            typer.echo(json.dumps(result, indent=2))
        else:
            typer.echo(
                f"Uploaded {result['processed']}, retrying {result['failed']}, "
                f"abandoned {result['abandoned']}"
            )
            for error in result["errors"]:
                typer.echo(f"  {error}", err=True)
        if result["failed"] or result["abandoned"]:
            raise typer.Exit(1)


@app.command("pending")
def pending_cmd(
    failed: Annotated[bool, typer.Option(
        "--failed", help="List failed (dead-lettered) ops"
    )] = False,
    retry: Annotated[bool, typer.Option(
        "--retry", help="Reset failed ops back to pending for retry"
    )] = False,
    store: StoreOption = None,
):
    """Show queued sync work."""
    with _get_memex(store) as mx:
        if retry:
            count = mx.retry_failed()
            typer.echo(f"Reset {count} failed ops")
            return
        if failed:
            ops = mx.failed_ops()
            if _get_json_output():
                typer.echo(json.dumps([
                    {"op_id": op.op_id, "kind": op.kind.value, "target": op.target,
                     "attempts": op.attempts, "last_error": op.last_error}
                    for op in ops
                ], indent=2))
            elif not ops:
                typer.echo("No failed ops.")
            else:
                for op in ops:
                    typer.echo(_format_op(op))
            return

        if _get_json_output():
            typer.echo(json.dumps(mx.pending_stats(), indent=2))
            return
        typer.echo(_format_status(mx.sync_status()))
        for op in mx.pending_ops():
            typer.echo(f"  {_format_op(op)}")


@app.command()
def pull(
    store: StoreOption = None,
):
    """Fetch remote changes and merge them (newest wins)."""
    with _get_memex(store) as mx:
        try:
            applied = mx.pull()
        except RuntimeError as e:
            _fail(str(e))
        except MemexError as e:
            _fail(f"Pull failed: {e}")
        if _get_json_output():
            typer.echo(json.dumps(applied, indent=2))
        else:
            total = sum(applied.values())
            typer.echo(f"Merged {total} records")


# -----------------------------------------------------------------------------
# Spaces
# -----------------------------------------------------------------------------

space_app = typer.Typer(
    name="space",
    help="Group items into spaces.",
    no_args_is_help=True,
    rich_markup_mode=None,
)
app.add_typer(space_app)

SpaceArgument = Annotated[str, typer.Argument(help="Space ID or name")]


@space_app.command("list")
def space_list(
    store: StoreOption = None,
):
    """List spaces with their item counts."""
    with _get_memex(store) as mx:
        spaces = [(s, len(mx.space_entities(s.id))) for s in mx.spaces()]
        if _get_json_output():
            typer.echo(json.dumps(
                [{**s.to_dict(), "item_count": n} for s, n in spaces], indent=2,
            ))
            return
        for space, count in spaces:
            typer.echo(f"{space.id}  {space.name}  ({count} items)")


@space_app.command("create")
def space_create(
    name: Annotated[str, typer.Argument(help="Space name")],
    description: Annotated[Optional[str], typer.Option("--description", "-d")] = None,
    color: Annotated[Optional[str], typer.Option("--color", help="Display color, e.g. '#FF9500'")] = None,
    store: StoreOption = None,
):
    """Create a space. Prints its ID."""
    fields = {k: v for k, v in (("description", description), ("color", color)) if v is not None}
    with _get_memex(store) as mx:
        try:
            space = mx.create_space(name, **fields)
        except ValueError as e:
            _fail(f"Error: {e}")
        typer.echo(space.id)


@space_app.command("rename")
def space_rename(
    space: SpaceArgument,
    name: Annotated[str, typer.Argument(help="New name")],
    store: StoreOption = None,
):
    """Rename a space."""
    with _get_memex(store) as mx:
        target = _resolve_space(mx, space)
        try:
            updated = mx.update_space(target.id, {"name": name})
        except ValueError as e:
            _fail(f"Error: {e}")
        typer.echo(f"{updated.id}  {updated.name}")


@space_app.command("delete")
def space_delete(
    space: SpaceArgument,
    store: StoreOption = None,
):
    """Delete a space. Its items are kept."""
    with _get_memex(store) as mx:
        target = _resolve_space(mx, space)
        mx.delete_space(target.id)
        typer.echo(f"Deleted space {target.name}", err=True)


@space_app.command("add")
def space_add(
    id: IdArgument,
    space: SpaceArgument,
    store: StoreOption = None,
):
    """Put an item in a space."""
    with _get_memex(store) as mx:
        target = _resolve_space(mx, space)
        try:
            mx.add_to_space(id, target.id)
        except KeyError:
            _fail(f"Not found: {id}")
        typer.echo(f"Added {id} to {target.name}", err=True)


@space_app.command("remove")
def space_remove(
    id: IdArgument,
    space: SpaceArgument,
    store: StoreOption = None,
):
    """Take an item out of a space."""
    with _get_memex(store) as mx:
        target = _resolve_space(mx, space)
        if not mx.remove_from_space(id, target.id):
            _fail(f"{id} is not in {target.name}")
        typer.echo(f"Removed {id} from {target.name}", err=True)


@app.command()
def config(
    path: Annotated[Optional[str], typer.Argument(
        help="Config value to show (e.g. 'store', 'file', 'sync.api_url', 'producers')"
    )] = None,
    store: StoreOption = None,
):
    """
    Show configuration. Optionally get a specific value by path.

    \b
    Examples:
        memex config              # Show all config
        memex config file         # Config file location
        memex config sync.backend # One value
    """
    from .config import get_default_store_path, load_or_create_config

    actual_store = store if store is not None else _get_store_override()
    store_path = Path(actual_store).expanduser().resolve() if actual_store else get_default_store_path()
    cfg = load_or_create_config(store_path)

    values = {
        "store": str(cfg.path),
        "file": str(cfg.config_path),
        "sync.backend": cfg.sync.backend,
        "sync.api_url": cfg.sync.api_url,
        "sync.api_key": "***" if cfg.sync.api_key else None,
        "sync.max_attempts": cfg.sync.max_attempts,
        "sync.backoff_base": cfg.sync.backoff_base,
        "sync.backoff_max": cfg.sync.backoff_max,
        "sync.workers": cfg.sync.workers,
        "sync.batch_size": cfg.sync.batch_size,
        "sync.poll_interval": cfg.sync.poll_interval,
        "enrichment.workers": cfg.enrichment_workers,
        "producers": {kind: p.name for kind, p in cfg.producers.items()},
    }

    if path:
        if path not in values:
            _fail(f"Unknown config path: {path}. Known: {', '.join(values)}")
        value = values[path]
        if _get_json_output():
            typer.echo(json.dumps({path: value}, indent=2))
        elif isinstance(value, (list, dict)):
            typer.echo(json.dumps(value))
        else:
            typer.echo("" if value is None else str(value))
        return

    if _get_json_output():
        typer.echo(json.dumps(values, indent=2))
        return
    for key, value in values.items():
        if isinstance(value, dict):
            value = ", ".join(f"{k}={v}" for k, v in value.items())
        typer.echo(f"{key}: {'' if value is None else value}")


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="memex CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
