"""
Command-line entry points.

    ccdc-scoring engine --config event.conf
    ccdc-scoring worker --concurrency 32

The engine and the workers only share the Redis transport (REDIS_URL,
REDIS_PASSWORD in the environment), so workers can run on other hosts.
"""

import logging
import sqlite3
import sys
import threading

import click

from ccdc_scoring import __version__, database
from ccdc_scoring.app import create_app
from ccdc_scoring.config import ConfigError, ConfigWatcher, load_config
from ccdc_scoring.engine import ScoringEngine
from ccdc_scoring.transport import Transport
from ccdc_scoring.worker import DEFAULT_CONCURRENCY, Worker

LOG_FORMAT = "%(asctime)s  %(levelname)-5s  %(message)s"

log = logging.getLogger("scoring")


def setup_logging(verbose=False, log_file=None):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )
    if log_file:
        handler = logging.FileHandler(log_file)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logging.getLogger().addHandler(handler)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output")
@click.pass_context
def cli(ctx, verbose):
    """CCDC service scoring engine."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


# -------------------------------------------------------------------------
# Engine
# -------------------------------------------------------------------------


@cli.command()
@click.option("--config", "-c", "config_path", default="event.conf", show_default=True,
              type=click.Path(dir_okay=False), help="Event configuration file")
@click.pass_context
def engine(ctx, config_path):
    """Run the round scheduler and the control API."""
    try:
        conf = load_config(config_path)
    except (ConfigError, OSError) as exc:
        click.echo(f"Error: invalid configuration {config_path}:\n{exc}", err=True)
        sys.exit(1)

    setup_logging(ctx.obj["verbose"], conf.misc.log_file)
    scoring = ScoringEngine(conf, Transport.from_env())
    try:
        database.configure(conf.required.db_connect_url)
        database.init_db()
        scoring.prepare()
    except (OSError, ValueError, sqlite3.Error) as exc:
        log.error("Engine startup failed: %s", exc)
        sys.exit(1)
    watcher = ConfigWatcher(config_path, scoring.set_config).start()

    thread = threading.Thread(target=scoring.start, name="scheduler", daemon=True)
    thread.start()

    log.info(
        "Starting %s (%s) API on %s:%d",
        conf.required.event_name, conf.required.event_type,
        conf.required.bind_address, conf.misc.port,
    )
    app = create_app(scoring)
    try:
        app.run(host=conf.required.bind_address, port=conf.misc.port, debug=False, use_reloader=False)
    finally:
        watcher.stop()
        scoring.stop()
        thread.join(timeout=10)


# -------------------------------------------------------------------------
# Worker
# -------------------------------------------------------------------------


@cli.command()
@click.option("--concurrency", "-n", default=DEFAULT_CONCURRENCY, show_default=True,
              type=click.IntRange(min=1), help="Checks run in parallel")
@click.option("--name", default=None, help="Runner name used in logs (default: RUNNER_ID or hostname)")
@click.pass_context
def worker(ctx, concurrency, name):
    """Pop check tasks from Redis and push back results."""
    setup_logging(ctx.obj["verbose"])
    stop = threading.Event()
    try:
        Worker(Transport.from_env(), concurrency=concurrency, name=name).serve(stop)
    except KeyboardInterrupt:
        stop.set()
        log.info("Worker interrupted, exiting")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
