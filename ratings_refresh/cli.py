"""Command line entry point for the ratings refresh."""

from __future__ import annotations

import json
import sys

import click

from ratings_refresh.dependencies import (
    get_cache_manager,
    get_database,
    get_refresh_runner,
    get_runs_repository,
    get_settings,
)
from ratings_refresh.logging_config import configure_application_logging
from ratings_refresh.repositories.catalog_repository import CatalogRepository
from ratings_refresh.services.errors import RatingsRefreshError, error_category


@click.group()
@click.version_option(version="0.1.0")
def main():
    """Ratings Refresh - keep catalog community ratings in sync with IMDb."""
    configure_application_logging(get_settings())


@main.command()
@click.option("--minimum-votes", type=int, default=None, help="Override the minimum vote count")
@click.option("--movies/--no-movies", default=None, help="Include movies")
@click.option("--series/--no-series", default=None, help="Include series and episodes")
@click.option("--verbose-items", is_flag=True, help="Log sampled per-item decisions")
def run(minimum_votes, movies, series, verbose_items):
    """Run one ratings refresh and print its summary."""
    runner = get_refresh_runner()
    options = runner.default_options.with_overrides(
        minimum_votes=minimum_votes,
        include_movies=movies,
        include_series=series,
        enable_item_debug_logging=True if verbose_items else None,
    )

    try:
        summary = runner.run_now(trigger="cli", options=options)
    except RatingsRefreshError as exc:
        click.echo(f"Refresh failed [{error_category(exc)}]: {exc}", err=True)
        if exc.partial_summary is not None:
            click.echo(json.dumps(exc.partial_summary.to_dict(), indent=2, sort_keys=True), err=True)
        sys.exit(1)

    if summary.used_stale_cache:
        click.echo("Warning: download failed, stale cached ratings were used", err=True)
    click.echo(json.dumps(summary.to_dict(), indent=2, sort_keys=True))


@main.command(name="invalidate-cache")
def invalidate_cache():
    """Delete the cached ratings file so the next run downloads it again."""
    if get_cache_manager().invalidate():
        click.echo("Ratings cache deleted")
    else:
        click.echo("No ratings cache to delete")


@main.command()
@click.option("--limit", type=click.IntRange(min=1), default=10, help="Number of runs to show")
def runs(limit):
    """List recent refresh runs."""
    records = get_runs_repository().list_recent(limit=limit)
    if not records:
        click.echo("No refresh runs recorded")
        return

    for record in records:
        line = f"{record.started_at}  {record.run_id}  {record.trigger:<9}  {record.status}"
        if record.summary is not None:
            line += f"  updated={record.summary.get('updated', 0)}"
        if record.error_category is not None:
            line += f"  error={record.error_category}"
        click.echo(line)


@main.command(name="cache-info")
def cache_info():
    """Show where the ratings cache lives and how old it is."""
    cache = get_cache_manager()
    click.echo(f"Path:  {cache.cache_path}")
    last_success = get_runs_repository().last_succeeded_at()
    click.echo(f"Last successful refresh: {last_success or 'never'}")
    age = cache.cache_age_seconds()
    if age is None:
        click.echo("State: missing")
        return

    state = "fresh" if cache.is_fresh() else "stale"
    click.echo(f"State: {state}")
    click.echo(f"Age:   {age / 3600:.1f}h")
    click.echo(f"Size:  {cache.cache_path.stat().st_size} bytes")


@main.command(name="show-item")
@click.argument("item_id")
def show_item(item_id):
    """Show the stored rating fields of one catalog item."""
    item = CatalogRepository(get_database()).get_item(item_id)
    if item is None:
        click.echo(f"Catalog item not found: {item_id}", err=True)
        sys.exit(1)

    click.echo(f"Item:    {item.item_id} ({item.kind}) {item.name}")
    click.echo(f"IMDb id: {item.external_rating_id or '-'}")
    rating = "-" if item.community_rating is None else f"{item.community_rating:.1f}"
    click.echo(f"Rating:  {rating}")
    if item.parent_key is not None:
        click.echo(f"Parent:  {item.parent_key}")


if __name__ == "__main__":
    main()
