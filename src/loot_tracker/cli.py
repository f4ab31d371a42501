"""Command-line interface for the guild loot tracker."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, List, Optional

import typer

from .config import TrackerSettings
from .paths import default_export_path, get_db_path, get_log_path
from .server_runner import run_server

if TYPE_CHECKING:
    from .engine import TrackerEngine

app = typer.Typer(help="Track guild kills, loot and participation during activities.")
participant_app = typer.Typer(help="Manage the participants of the current activity.")
app.add_typer(participant_app, name="participant")

DB_OPTION = typer.Option(
    None,
    "--db",
    path_type=Path,
    help="Location of the tracker SQLite database.",
)


@app.callback(no_args_is_help=True)
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs."),
    log_file: bool = typer.Option(
        False, "--log-file", help="Also append logs to the tracker log file."
    ),
) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(get_log_path(), encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=handlers,
    )


@contextmanager
def _open_engine(
    db_path: Optional[Path], settings: Optional[TrackerSettings] = None
) -> Iterator[TrackerEngine]:
    from .db import SqliteStore
    from .engine import TrackerEngine
    from .sources import AlbionEventSource
    from .valuation import AlbionPriceService

    settings = settings or TrackerSettings()
    path = db_path or get_db_path()
    source = AlbionEventSource(settings)
    prices = AlbionPriceService(settings)
    engine = TrackerEngine(source, prices, SqliteStore(path), settings, directory=source)
    try:
        engine.load()
        yield engine
    finally:
        for notice in engine.notices:
            typer.echo(f"[{notice.kind.value}] {notice.message}", err=True)
        source.close()
        prices.close()


@app.command()
def configure(
    guild_name: str = typer.Argument(..., help="Name of the guild to track."),
    members: Optional[str] = typer.Option(
        None, "--members", help="Comma-separated member names."
    ),
    members_file: Optional[Path] = typer.Option(
        None,
        "--members-file",
        path_type=Path,
        exists=True,
        dir_okay=False,
        help="Text file with one member name per line.",
    ),
    guild_id: Optional[str] = typer.Option(None, "--guild-id", help="Guild id on the kill feed."),
    refresh: bool = typer.Option(
        False, "--refresh", help="Fetch the member roster from the kill feed (needs --guild-id)."
    ),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Set the tracked guild and its member roster."""
    from .normalization import parse_member_names

    text = members or ""
    if members_file:
        text += "\n" + members_file.read_text(encoding="utf-8")
    with _open_engine(db_path) as engine:
        config = engine.configure_guild(guild_name, parse_member_names(text), guild_id)
        if refresh:
            engine.refresh_guild_members()
        typer.echo(f"Tracking {config.guild_name} with {len(config.members)} members.")


@app.command()
def start(
    name: str = typer.Argument(..., help="Activity name."),
    participants: List[str] = typer.Option(
        [], "--participant", "-p", help="Participant name (repeatable)."
    ),
    all_members: bool = typer.Option(
        False, "--all-members", help="Add every configured guild member."
    ),
    city: Optional[str] = typer.Option(None, "--city", help="Market city used for loot prices."),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Start a new activity."""
    from .normalization import parse_member_names

    names = parse_member_names("\n".join(participants))
    with _open_engine(db_path) as engine:
        if all_members and engine.config:
            names += [n for n in engine.config.member_names if n not in names]
        activity = engine.start_activity(name, names, city=city)
        if activity is None:
            raise typer.Exit(code=1)
        typer.echo(
            f"Started {activity.name} ({activity.id}) with {len(activity.participants)} participants."
        )


@app.command()
def poll(
    include_all: bool = typer.Option(
        False, "--all", help="Re-read the whole feed window instead of only new events."
    ),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Fetch new kills once and add relevant ones as pending."""
    from .reporting import format_kill

    with _open_engine(db_path) as engine:
        report = engine.poll(include_all=True if include_all else None)
        if report.skipped:
            typer.echo("Nothing polled.")
            return
        typer.echo(
            f"Fetched {report.fetched} events, {report.relevant} relevant, "
            f"{report.added} new pending kills (lastEventId {report.last_event_id})."
        )
        activity = engine.current_activity
        for kill in activity.pending_kills if activity else []:
            typer.echo(f"  {format_kill(kill)}")


@app.command()
def confirm(
    event_id: int = typer.Argument(..., help="Event id of the pending kill."),
    items: List[int] = typer.Option(
        [],
        "--item",
        "-i",
        help="Index into the victim inventory to keep (repeatable). Defaults to everything.",
    ),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Confirm a pending kill and move its loot into the chest."""
    from .valuation import format_price, total_value

    with _open_engine(db_path) as engine:
        if items:
            kill = engine.confirm_kill_by_index(event_id, items)
        else:
            kill = engine.confirm_kill(event_id)
        if kill is None:
            raise typer.Exit(code=1)
        value = total_value(kill.loot_confirmed)
        typer.echo(
            f"Confirmed kill {kill.event_id}: {kill.confirmed_count} items kept "
            f"({format_price(value)}), {kill.destroyed_count} destroyed."
        )


@app.command()
def discard(
    event_id: int = typer.Argument(..., help="Event id of the pending kill."),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Drop a pending kill without recording it."""
    with _open_engine(db_path) as engine:
        if not engine.discard_kill(event_id):
            raise typer.Exit(code=1)
        typer.echo(f"Discarded kill {event_id}.")


def _participant_command(operation: str, name: str, db_path: Optional[Path]) -> None:
    with _open_engine(db_path) as engine:
        if not getattr(engine, f"{operation}_participant")(name):
            typer.echo(f"Could not {operation} {name}.", err=True)
            raise typer.Exit(code=1)
        typer.echo(f"{name}: {operation} ok.")


@participant_app.command("add")
def participant_add(name: str, db_path: Optional[Path] = DB_OPTION) -> None:
    """Add a participant to the current activity."""
    _participant_command("add", name, db_path)


@participant_app.command("pause")
def participant_pause(name: str, db_path: Optional[Path] = DB_OPTION) -> None:
    """Pause a participant; paused time does not count as active."""
    _participant_command("pause", name, db_path)


@participant_app.command("resume")
def participant_resume(name: str, db_path: Optional[Path] = DB_OPTION) -> None:
    """Resume a paused participant."""
    _participant_command("resume", name, db_path)


@participant_app.command("remove")
def participant_remove(name: str, db_path: Optional[Path] = DB_OPTION) -> None:
    """Mark a participant as having left the activity."""
    _participant_command("remove", name, db_path)


@app.command()
def city(
    name: str = typer.Argument(..., help="Market city used for loot prices."),
    reprice: bool = typer.Option(False, "--reprice", help="Refresh chest prices afterwards."),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Change the market city of the current activity."""
    with _open_engine(db_path) as engine:
        if not engine.set_city(name):
            raise typer.Exit(code=1)
        updated = engine.refresh_chest_prices() if reprice else 0
        typer.echo(f"City set to {name}; {updated} chest stacks repriced.")


@app.command("rename-chest")
def rename_chest(
    name: str = typer.Argument(..., help="New chest name; empty restores the default."),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Rename the loot chest of the current activity."""
    with _open_engine(db_path) as engine:
        if not engine.rename_chest(name):
            raise typer.Exit(code=1)


@app.command()
def status(db_path: Optional[Path] = DB_OPTION) -> None:
    """Print a summary of the current activity."""
    from .reporting import ActivitySummaryPrinter

    with _open_engine(db_path) as engine:
        ActivitySummaryPrinter().print_activity(engine.current_activity, engine.clock())


@app.command()
def end(
    cancel: bool = typer.Option(False, "--cancel", help="Cancel instead of completing."),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Finish the current activity and move it to the history."""
    from .reporting import ActivitySummaryPrinter

    with _open_engine(db_path) as engine:
        activity = engine.cancel_activity() if cancel else engine.complete_activity()
        if activity is None:
            raise typer.Exit(code=1)
        ActivitySummaryPrinter().print_activity(activity)


@app.command()
def history(
    limit: int = typer.Option(10, "--limit", min=1, help="Number of activities to show."),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """List finished activities, most recent first."""
    from .reporting import ActivitySummaryPrinter

    with _open_engine(db_path) as engine:
        ActivitySummaryPrinter().print_history(engine.history(), limit=limit)


@app.command("find-guild")
def find_guild(query: str = typer.Argument(..., help="Part of the guild name.")) -> None:
    """Look up guild ids on the kill feed for use with configure --guild-id."""
    from .errors import FeedUnavailableError
    from .sources import AlbionEventSource

    source = AlbionEventSource()
    try:
        guilds = source.search_guilds(query)
    except FeedUnavailableError as exc:
        typer.echo(f"Guild search failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    finally:
        source.close()
    if not guilds:
        typer.echo("No guilds found.")
    for guild in guilds:
        alliance = guild.get("AllianceName") or "-"
        typer.echo(f"{guild.get('Id')}  {guild.get('Name')}  (alliance {alliance})")


@app.command("other-kills")
def other_kills(
    offset: int = typer.Option(0, "--offset", min=0, help="Feed offset to read from."),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Show guild kills that are not part of the current activity."""
    from .reporting import format_kill

    with _open_engine(db_path) as engine:
        kills = engine.load_other_guild_kills(offset)
        if not kills:
            typer.echo("No other guild kills found.")
        for kill in kills:
            typer.echo(format_kill(kill))


@app.command("export")
def export_command(
    output: Optional[Path] = typer.Argument(
        None, path_type=Path, help="Destination JSON file (defaults to the exports folder)."
    ),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Write configuration, the current activity and history to a JSON file."""
    with _open_engine(db_path) as engine:
        data = engine.export_data()
        output = output or default_export_path(engine.clock())
    output.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    typer.echo(f"Exported to {output}.")


@app.command("import")
def import_command(
    source: Path = typer.Argument(
        ..., path_type=Path, exists=True, dir_okay=False, help="JSON export file."
    ),
    activity_only: bool = typer.Option(
        False, "--activity-only", help="Only restore the activity from the file."
    ),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Restore data from a JSON export."""
    from .errors import ImportFormatError

    try:
        data = json.loads(source.read_text(encoding="utf-8"))
    except ValueError as exc:
        typer.echo(f"{source} is not valid JSON: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    with _open_engine(db_path) as engine:
        try:
            engine.import_data(data, activity_only=activity_only)
        except ImportFormatError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=1) from exc
    typer.echo(f"Imported {source}.")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the API."),
    port: int = typer.Option(8765, "--port", min=1, max=65535, help="TCP port for the API."),
    poll_seconds: float = typer.Option(
        180.0, "--interval", min=10.0, help="Kill feed polling interval in seconds."
    ),
    page_size: Optional[int] = typer.Option(
        None, "--page-size", min=1, max=51, help="Events requested per feed page."
    ),
    city: Optional[str] = typer.Option(None, "--city", help="Default market city."),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Run the JSON API with background kill polling."""
    settings = TrackerSettings.from_intervals(
        poll_seconds=poll_seconds, page_size=page_size, default_city=city
    )
    run_server(host=host, port=port, db_path=db_path or get_db_path(), settings=settings)
