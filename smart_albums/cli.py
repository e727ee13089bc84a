"""
Command line interface for generating and inspecting smart albums.
"""

import json

import click

from smart_albums.cache_validity import (
    CacheValidityTracker, KEY_ALBUM_COUNT, KEY_IS_VALID, KEY_LAST_UPDATE, KEY_LIBRARY_HASH,
)
from smart_albums.config import load_config
from smart_albums.database import AlbumStore
from smart_albums.error_handling import SmartAlbumError, setup_logging
from smart_albums.library import FolderAssetLibrary
from smart_albums.models import EventKind
from smart_albums.pipeline import SmartAlbumService


def _album_dict(album):
    return {
        'id': album.id,
        'title': album.title,
        'created_at': album.created_at.isoformat(),
        'relevance_score': album.relevance_score,
        'tags': album.tags,
        'asset_count': len(album.asset_ids),
        'thumbnail_asset_id': album.thumbnail_asset_id,
    }


def _echo_albums(albums, as_json):
    if as_json:
        click.echo(json.dumps([_album_dict(album) for album in albums], indent=2))
        return

    if not albums:
        click.echo("No albums found")
        return

    for album in albums:
        click.echo(f"[{album.relevance_score:3d}] {album.title} "
                   f"({len(album.asset_ids)} assets, {album.created_at:%Y-%m-%d}) {album.id}")
        click.echo(f"      tags: {', '.join(album.tags)}")


@click.group()
@click.option('--env-file', type=click.Path(dir_okay=False), help='Load settings from this .env file')
@click.option('--db', 'db_path', type=click.Path(dir_okay=False), help='Album database path')
@click.option('--log-level', default=None, help='Logging level (DEBUG, INFO, WARNING, ERROR)')
@click.pass_context
def cli(ctx, env_file, db_path, log_level):
    """Smart album generation"""
    try:
        config = load_config(env_file)
    except SmartAlbumError as e:
        raise click.ClickException(str(e))

    if db_path:
        config.database_path = db_path
    if log_level:
        config.log_level = log_level
    setup_logging(config.log_level, config.log_file)

    ctx.obj = {'config': config}


def _store(ctx) -> AlbumStore:
    return AlbumStore(ctx.obj['config'].database_path)


@cli.command()
@click.argument('folder', type=click.Path(exists=True, file_okay=False, dir_okay=True))
@click.option('--recursive/--no-recursive', default=True, help='Recurse into subdirectories')
@click.option('--limit', '-l', default=0, help='Maximum number of albums to create (0 for all)')
@click.option('--force', is_flag=True, help='Regenerate even when cached albums are still valid')
@click.pass_context
def generate(ctx, folder, recursive, limit, force):
    """Generate smart albums from the images in FOLDER"""
    config = ctx.obj['config']
    library = FolderAssetLibrary(folder, recursive=recursive)
    service = SmartAlbumService(library, _store(ctx), config=config,
                                validate_cache_in_background=False)

    try:
        if not force and not limit and not service.needs_regeneration:
            click.echo("Cached albums are up to date (use --force to regenerate)")
            _echo_albums(service.load_albums(), as_json=False)
            return

        def on_event(event):
            if event.kind == EventKind.BATCH_SAVED:
                click.echo(f"  {event.progress:.0%} - {event.albums_saved} albums saved")

        service.subscribe(on_event)
        outcome = service.generate(limit=limit, wait=True)
    finally:
        service.close()

    click.echo(f"\nGeneration {outcome.state.value}")
    click.echo(f"  Clusters processed: {outcome.processed_clusters}/{outcome.total_clusters}")
    click.echo(f"  Albums saved: {outcome.albums_saved}")
    click.echo(f"  Heuristic tagging: {outcome.fallback_clusters} clusters")
    if outcome.failed_batches:
        click.echo(f"  Failed batches: {outcome.failed_batches}")
    if outcome.error:
        raise click.ClickException(outcome.error)


@cli.command(name='list')
@click.option('--sort', type=click.Choice(['created_at', 'relevance_score']), default='created_at',
              help='Sort order (descending)')
@click.option('--json', 'as_json', is_flag=True, help='Print albums as JSON')
@click.pass_context
def list_albums(ctx, sort, as_json):
    """List stored albums"""
    _echo_albums(_store(ctx).get_all_albums(sort_by=sort), as_json)


@cli.command()
@click.option('--limit', '-l', default=5, help='Number of featured albums')
@click.option('--json', 'as_json', is_flag=True, help='Print albums as JSON')
@click.pass_context
def featured(ctx, limit, as_json):
    """Show the featured albums"""
    _echo_albums(_store(ctx).get_featured_albums(limit=limit), as_json)


@cli.command()
@click.argument('album_id')
@click.pass_context
def delete(ctx, album_id):
    """Delete the album ALBUM_ID"""
    if _store(ctx).delete_album(album_id):
        click.echo(f"Deleted album {album_id}")
    else:
        raise click.ClickException(f"Album {album_id} not found")


@cli.command(name='cache-info')
@click.argument('folder', required=False, type=click.Path(exists=True, file_okay=False, dir_okay=True))
@click.pass_context
def cache_info(ctx, folder):
    """Show album cache state, validated against FOLDER when given"""
    store = _store(ctx)
    click.echo(f"Stored albums:   {store.count_albums()}")
    click.echo(f"Last update:     {store.get_metadata(KEY_LAST_UPDATE) or 'never'}")
    click.echo(f"Library hash:    {store.get_metadata(KEY_LIBRARY_HASH) or '-'}")
    click.echo(f"Cached count:    {store.get_metadata(KEY_ALBUM_COUNT) or 0}")

    if folder:
        tracker = CacheValidityTracker(store, FolderAssetLibrary(folder),
                                       ttl=ctx.obj['config'].cache_ttl,
                                       validate_in_background=False)
        click.echo(f"Valid:           {tracker.should_use_cached_albums()}")
        tracker.close()
    else:
        click.echo(f"Marked valid:    {store.get_metadata(KEY_IS_VALID) == '1'}")


def main():
    cli()


if __name__ == '__main__':
    main()
