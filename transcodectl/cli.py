import json
import click

from .broker import BrokerClient, BrokerError
from .config import load_settings
from .db import init_db, connect_db
from .dispatcher import Dispatcher
from .logging_config import configure_logging
from .models import ASSET_STATES
from .repository import list_assets, counts
from .scheduler import Scheduler, consumer_names, run_schedulers
from .service import AssetNotFound, MediaService
from .worker import TranscodeWorker


def _service(settings):
    broker = BrokerClient.from_url(settings.redis_url)
    return MediaService(
        Dispatcher(broker, settings.stream),
        upload_dir=settings.upload_dir,
        db_path=settings.db_path,
    )


@click.group(help="transcodectl — media transcoding queue CLI")
@click.pass_context
def cli(ctx):
    try:
        settings = load_settings()
    except (ValueError, RuntimeError) as e:
        raise click.ClickException(str(e))
    configure_logging("transcodectl", env=settings.env, level=settings.log_level)
    # Ensure DB/schema exist before any command runs
    init_db(settings.db_path)
    ctx.obj = settings


@cli.command("init", help="Create the database and data directories")
@click.pass_obj
def init_cmd(settings):
    click.secho(
        f"Ready: db={settings.db_path} uploads={settings.upload_dir} output={settings.output_dir}",
        fg="green",
    )


# ---------- Submit ----------
@cli.command("submit", help="Upload a local media file and queue it for transcoding")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--name", "filename", default=None, help="Name to store the upload under")
@click.pass_obj
def submit_cmd(settings, path, filename):
    try:
        media_id = _service(settings).submit_upload(path, filename=filename)
    except (ValueError, RuntimeError) as e:
        # SubmissionError is a RuntimeError
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    click.secho(f"Accepted media {media_id} (PROCESSING)", fg="green")
    click.echo(json.dumps({"mediaId": media_id}))


@cli.command("fetch", help="Fetch media from an http(s) URL and queue it for transcoding")
@click.argument("url")
@click.option("--wait/--no-wait", default=True, show_default=True,
              help="Wait for the download and hand-off before exiting")
@click.pass_obj
def fetch_cmd(settings, url, wait):
    try:
        media_id, task = _service(settings).fetch_remote(url)
    except (ValueError, RuntimeError) as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    click.secho(f"Accepted media {media_id} (fetching {url})", fg="green")
    if wait:
        task.join()
    click.echo(json.dumps({"mediaId": media_id}))


# ---------- Playback / inspection ----------
@cli.command("play", help="Show the playback descriptor for a media id")
@click.argument("media_id", type=int)
@click.pass_obj
def play_cmd(settings, media_id):
    service = _service(settings)
    try:
        descriptor = service.playback(media_id)
    except AssetNotFound as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    click.echo(json.dumps(descriptor, indent=2))


@cli.command("list")
@click.option("--status", type=click.Choice([s.lower() for s in ASSET_STATES]), default=None)
@click.pass_obj
def list_cmd(settings, status):
    conn = connect_db(settings.db_path)
    try:
        rows = list_assets(conn, status=status.upper() if status else None)
    finally:
        conn.close()

    if not rows:
        click.echo("No media.")
        return

    for r in rows:
        click.echo(
            f"{r['id']:>8} | {r['status']:<10} | owner={r['owner_id']} "
            f"| updated={r['updated_at']} | source={r['original_url']}"
        )


@cli.command("status")
@click.pass_obj
def status_cmd(settings):
    conn = connect_db(settings.db_path)
    try:
        out = counts(conn)
    finally:
        conn.close()
    try:
        broker = BrokerClient.from_url(settings.redis_url)
        out["pending_entries"] = broker.pending_count(settings.stream, settings.group)
    except BrokerError as e:
        out["pending_entries"] = None
        click.secho(f"Warning: {e}", fg="yellow", err=True)
    click.echo(json.dumps(out, indent=2))


@cli.command("ping", help="Check that Redis is reachable")
@click.pass_obj
def ping_cmd(settings):
    try:
        BrokerClient.from_url(settings.redis_url).ping()
    except BrokerError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    click.secho(f"Redis OK at {settings.redis_url}", fg="green")


# ---------- Workers ----------
@cli.group("worker", help="Manage transcoding schedulers")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--count", type=int, default=1, show_default=True, help="Number of schedulers")
@click.option("--consumer", default=None, help="Consumer name (defaults to QUEUE_CONSUMER)")
@click.pass_obj
def worker_start(settings, count, consumer):
    if count < 1:
        raise click.BadParameter("count must be >= 1", param_hint="--count")
    broker = BrokerClient.from_url(settings.redis_url)
    worker = TranscodeWorker(
        settings.ffmpeg_binary,
        settings.output_dir,
        db_path=settings.db_path,
        timeout=settings.transcode_timeout,
    )
    schedulers = [
        Scheduler(broker, worker, settings.stream, group=settings.group, consumer=name)
        for name in consumer_names(consumer or settings.consumer, count)
    ]
    click.secho(f"Starting {count} scheduler(s) on {settings.stream}. Press Ctrl+C to stop…", fg="cyan")
    try:
        run_schedulers(schedulers)
    except BrokerError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    click.secho("Schedulers stopped.", fg="yellow")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("show")
@click.pass_obj
def config_show(settings):
    click.echo(json.dumps(settings.as_dict(), indent=2))


def main():
    cli()
