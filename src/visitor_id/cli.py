"""
visitor-id Command Line Interface.

Commands: init-db, identify, compare, history, stats, serve, demo
"""

from __future__ import annotations

import json

import click

from .config import Settings
from .errors import VisitorIdError
from .identity.models import DeviceFingerprint
from .identity.resolver import IdentityResolver
from .log import setup_logging
from .matching import SimilarityScorer
from .payload import fingerprint_from_payload
from .store import InMemoryStore, create_store, init_database
from .store.sql import create_store_engine


def _load_settings(database_url: str | None) -> Settings:
    settings = Settings.from_env()
    if database_url:
        settings.database_url = database_url
    setup_logging(settings.log_level, settings.log_format)
    return settings


def _build_resolver(settings: Settings) -> IdentityResolver:
    return IdentityResolver(
        store=create_store(settings.database_url),
        scorer=SimilarityScorer(settings.matcher),
        candidate_limit=settings.candidate_limit,
    )


def _read_payload(path: str) -> DeviceFingerprint:
    with open(path) as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as exc:
            raise click.BadParameter(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise click.BadParameter(f"{path} must hold a JSON object")
    device_info = data.get("device_info", data)
    return fingerprint_from_payload(device_info, ip_address=data.get("ip_address"))


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


database_option = click.option(
    "--database-url", default=None, help="Database URL (defaults to DATABASE_URL or SQLite file)"
)


@click.group()
@click.version_option(version="0.1.0")
def cli():
    """visitor-id: recognize returning visitors across token loss and device changes"""
    pass


@cli.command("init-db")
@database_option
def init_db(database_url: str | None):
    """Create the database tables."""
    settings = _load_settings(database_url)
    init_database(create_store_engine(settings.database_url))
    click.echo(f"[+] Database ready at {settings.database_url}")


@cli.command()
@click.option("--token", required=True, help="Client token sent by the browser")
@click.argument("payload_file", type=click.Path(exists=True, dir_okay=False))
@database_option
def identify(token: str, payload_file: str, database_url: str | None):
    """Resolve a token and a collector payload file to an identity."""
    settings = _load_settings(database_url)
    resolver = _build_resolver(settings)
    try:
        result = resolver.identify(token, _read_payload(payload_file))
    except VisitorIdError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(result.to_dict())


@cli.command()
@click.argument("first_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("second_file", type=click.Path(exists=True, dir_okay=False))
def compare(first_file: str, second_file: str):
    """Score the similarity of two collector payload files."""
    settings = _load_settings(None)
    scorer = SimilarityScorer(settings.matcher)
    first = _read_payload(first_file)
    second = _read_payload(second_file)

    similarity = scorer.calculate_similarity(first, second)
    click.echo(f"\n--- Fingerprint Comparison ---")
    click.echo(f"Total Score:  {similarity.total_score:.4f}")
    click.echo(f"Is Match:     {'YES' if similarity.is_match else 'no'} (threshold {scorer.threshold})")
    click.echo(f"\nComponent Scores:")
    for comp, score in similarity.breakdown.items():
        bar = "#" * int(score * 30)
        click.echo(f"  {comp:10s} {score:.4f} |{bar}")

    changed = scorer.detect_changes(first, second)
    if changed:
        classification = scorer.classify_change(first, second)
        click.echo(f"\nChanged: {', '.join(changed)}")
        click.echo(
            f"Classified as {classification.change_type.value} "
            f"({classification.category.value}, confidence={classification.confidence})"
        )
    else:
        click.echo("\nNo tracked attribute changed")


@cli.command()
@click.argument("identity_id")
@click.option("--page", default=1, help="Page number")
@click.option("--per-page", default=50, help="Events per page")
@click.option("--change-type", default=None, help="Only show this change type")
@database_option
def history(identity_id: str, page: int, per_page: int, change_type: str | None,
            database_url: str | None):
    """Show the device change history of an identity."""
    resolver = _build_resolver(_load_settings(database_url))
    try:
        result = resolver.device_history(identity_id, page, per_page, change_type)
    except VisitorIdError as exc:
        raise click.ClickException(str(exc)) from exc

    pagination = result["pagination"]
    click.echo(f"--- Device History: {identity_id} ---")
    click.echo(f"Page {pagination['page']}/{pagination['total_pages']} ({pagination['total']} events)")
    for event in result["data"]:
        fields = ", ".join(event["changed_fields"]) or "-"
        click.echo(
            f"  [{event['change_type']}] {event['change_category']} "
            f"session={event['session_id']} confidence={event['confidence']:.4f} fields={fields}"
        )


@cli.command()
@click.argument("identity_id", required=False)
@click.option("--limit", default=None, type=int, help="Summarize only the latest N match attempts")
@database_option
def stats(identity_id: str | None, limit: int | None, database_url: str | None):
    """Show identity statistics, or the match log summary without an ID."""
    resolver = _build_resolver(_load_settings(database_url))
    if identity_id is None:
        _echo_json(resolver.match_summary(limit))
        return
    data = resolver.user_statistics(identity_id)
    if data is None:
        raise click.ClickException(f"User not found: {identity_id}")
    _echo_json(data)


@cli.command()
@click.option("--host", default="127.0.0.1", help="API host")
@click.option("--port", default=5000, help="API port")
@database_option
def serve(host: str, port: int, database_url: str | None):
    """Run the REST API."""
    from .api import create_app

    settings = _load_settings(database_url)
    click.echo(f"[*] Starting visitor-id API on {host}:{port} ({settings.database_url})")
    app = create_app(settings=settings)
    app.run(host=host, port=port)


@cli.command()
def demo():
    """Run a complete recognition scenario against an in-memory store."""
    click.echo("=" * 60)
    click.echo("  visitor-id  -  Complete Demo Scenario")
    click.echo("=" * 60)

    resolver = IdentityResolver(InMemoryStore())
    laptop = DeviceFingerprint(
        canvas_hash="c" * 64,
        audio_hash="a" * 64,
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/119.0.0.0 Safari/537.36",
        platform="Win32",
        language="en-US",
        timezone="Europe/Berlin",
        screen_width=1920,
        screen_height=1080,
        color_depth=24,
        pixel_ratio=1.0,
        hardware_concurrency=8,
        device_memory=8.0,
        fonts=["Arial", "Calibri", "Segoe UI", "Times New Roman"],
        ip_address="203.0.113.10",
    )

    click.echo("\n[1/4] First visit...")
    first = resolver.identify("tok-demo-1", laptop)
    click.echo(f"    {first.status.value}: user={first.identity_id} session={first.session_id}")

    click.echo("\n[2/4] Return visit, same device...")
    again = resolver.identify("tok-demo-1", laptop)
    click.echo(f"    {again.status.value}: user={again.identity_id} changed={again.device_changed}")

    click.echo("\n[3/4] Browser update...")
    updated = laptop.to_fingerprint()
    updated.user_agent = laptop.user_agent.replace("Chrome/119", "Chrome/120")
    changed = resolver.identify("tok-demo-1", updated)
    click.echo(
        f"    {changed.status.value}: change={changed.change_type.value} "
        f"session={changed.session_id}"
    )

    click.echo("\n[4/4] Cookies cleared, new token...")
    recovered = resolver.identify("tok-demo-2", updated)
    click.echo(
        f"    {recovered.status.value}: user={recovered.identity_id} "
        f"confidence={recovered.confidence:.4f}"
    )

    timeline = resolver.device_history(first.identity_id)
    click.echo(f"\n    History for {first.identity_id}:")
    for event in reversed(timeline["data"]):
        click.echo(f"      {event['change_type']:10s} {event['change_category']}")

    click.echo("\n" + "=" * 60)
    click.echo("  Demo complete. Same visitor, four visits, one identity.")
    click.echo("=" * 60)


def main():
    cli()


if __name__ == "__main__":
    main()
