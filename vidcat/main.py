import typer
from pathlib import Path
from typing import Optional, Sequence
from pydantic import ValidationError
from rich.console import Console

from vidcat.config.loader import load_config
from vidcat.config.models import AppConfig
from vidcat.domain.errors import BrokerError, StoreError
from vidcat.domain.models import EntryStatus
from vidcat.infrastructure.broker import BrokerClient
from vidcat.infrastructure.catalog_store import SQLiteCatalogStore
from vidcat.infrastructure.event_bus import EventBus
from vidcat.infrastructure.ffmpeg import FFmpegAdapter
from vidcat.infrastructure.file_scanner import DirectoryScanner
from vidcat.infrastructure.housekeeping import HousekeepingService
from vidcat.infrastructure.logging import setup_logging
from vidcat.pipeline.catalog_service import CatalogService
from vidcat.pipeline.dispatcher import JobDispatcher
from vidcat.pipeline.reconciler import CatalogReconciler, chain_transcode_requests
from vidcat.ui.catalog_table import render_catalog

app = typer.Typer(help="vidcat - video catalog and transcoding pipeline")
console = Console()

DEFAULT_CONFIG = Path("conf/vidcat.yaml")

ConfigOption = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to YAML config")
BrokerUrlOption = typer.Option(None, "--broker-url", envvar="VIDCAT_BROKER_URL", help="AMQP URL (overrides config)")
DebugOption = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging")


def _fail(message: str, code: int = 1):
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=code)


def _load(config_path: Path, broker_url: Optional[str] = None, debug: bool = False) -> AppConfig:
    try:
        # The default location is optional; an explicit --config must exist
        config = load_config(config_path, required=config_path != DEFAULT_CONFIG)
    except (FileNotFoundError, ValidationError, ValueError) as exc:
        _fail(str(exc))
    if broker_url:
        config.broker.url = broker_url
    if debug:
        config.logging.debug = True
    return config


def _init_logging(config: AppConfig, process_name: str):
    log_path = Path(config.logging.log_path) if config.logging.log_path else None
    return setup_logging(log_path, debug=config.logging.debug, process_name=process_name)


def _connect(config: AppConfig, queues: Sequence[str]) -> BrokerClient:
    broker = BrokerClient(config.broker)
    broker.connect()
    for queue in queues:
        broker.declare_queue(queue, durable=True)
    return broker


def _run_consumer(name: str, run):
    """Runs a consume loop; broker failures end the process so a supervisor restarts it."""
    try:
        run()
    except KeyboardInterrupt:
        typer.secho(f"\n{name} stopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)
    except BrokerError as exc:
        _fail(f"{name}: {exc}")


@app.command()
def worker(
    config_path: Path = ConfigOption,
    broker_url: Optional[str] = BrokerUrlOption,
    video_root: Optional[Path] = typer.Option(None, "--video-root", envvar="VIDCAT_VIDEO_ROOT", help="Source tree to scan"),
    output_root: Optional[Path] = typer.Option(None, "--output-root", envvar="VIDCAT_OUTPUT_ROOT", help="Transcoded output tree"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-j", min=1, help="Max simultaneous encoders"),
    debug: bool = DebugOption,
):
    """Scan directories and transcode videos from the transcode queue."""
    config = _load(config_path, broker_url, debug)
    if video_root is not None:
        config.paths.video_root = str(video_root)
    if output_root is not None:
        config.paths.output_root = str(output_root)
    if concurrency is not None:
        config.worker.concurrency = concurrency

    logger = _init_logging(config, "worker")
    logger.info(
        f"Worker config: video_root={config.paths.video_root}, output_root={config.paths.output_root}, "
        f"concurrency={config.worker.resolved_concurrency()}"
    )

    if config.worker.cleanup_on_start:
        HousekeepingService().cleanup_temp_files(
            Path(config.paths.output_root), older_than=config.worker.stale_temp_age
        )

    ffmpeg_adapter = FFmpegAdapter(
        config.transcoder,
        source_root=Path(config.paths.video_root),
        output_root=Path(config.paths.output_root),
    )

    def run():
        broker = _connect(config, [config.broker.transcode_queue, config.broker.db_queue])
        dispatcher = JobDispatcher(
            config=config,
            broker=broker,
            file_scanner=DirectoryScanner(config.scanner.extensions),
            ffmpeg_adapter=ffmpeg_adapter,
            event_bus=EventBus(),
        )
        try:
            # Prefetch equals the slot count
            broker.consume(config.broker.transcode_queue, dispatcher.handle, prefetch=dispatcher.concurrency_limit)
        except (BrokerError, KeyboardInterrupt):
            # Handler threads block interpreter exit until their encoders end
            killed = ffmpeg_adapter.abort_all()
            if killed:
                logger.warning(f"Killed {killed} running encoders; their jobs return to the queue")
            raise

    _run_consumer("worker", run)


@app.command("db-consumer")
def db_consumer(
    config_path: Path = ConfigOption,
    broker_url: Optional[str] = BrokerUrlOption,
    database: Optional[Path] = typer.Option(None, "--database", help="SQLite catalog path (overrides config)"),
    debug: bool = DebugOption,
):
    """Apply catalog create/update messages to the catalog store."""
    config = _load(config_path, broker_url, debug)
    if database is not None:
        config.store.database = str(database)

    logger = _init_logging(config, "db-consumer")
    logger.info(f"Catalog database: {config.store.database}")

    def run():
        try:
            store = SQLiteCatalogStore(config.store.database)
        except StoreError as exc:
            _fail(str(exc))
        broker = _connect(config, [config.broker.db_queue, config.broker.transcode_queue])
        bus = EventBus()
        chain_transcode_requests(bus, broker.publish, config.broker.transcode_queue)
        reconciler = CatalogReconciler(store, bus)
        try:
            broker.consume(config.broker.db_queue, reconciler.handle, prefetch=1)
        finally:
            store.close()

    _run_consumer("db-consumer", run)


def _service(config: AppConfig, with_store: bool = True, with_broker: bool = False) -> CatalogService:
    try:
        store = SQLiteCatalogStore(config.store.database) if with_store else None
    except StoreError as exc:
        _fail(str(exc))
    broker = None
    if with_broker:
        try:
            broker = _connect(config, [config.broker.transcode_queue])
        except BrokerError as exc:
            _fail(str(exc))
    return CatalogService(store, broker, config.broker)


@app.command()
def scan(
    config_path: Path = ConfigOption,
    broker_url: Optional[str] = BrokerUrlOption,
):
    """Ask the worker to scan the video root for new files."""
    config = _load(config_path, broker_url)
    service = _service(config, with_store=False, with_broker=True)
    try:
        if not service.trigger_scan():
            _fail("Scan request could not be published")
    finally:
        service.broker.close()
    typer.secho("Scan requested.", fg=typer.colors.GREEN)


@app.command()
def catalog(
    config_path: Path = ConfigOption,
    status: Optional[EntryStatus] = typer.Option(None, "--status", "-s", help="Only entries with this status"),
):
    """List cataloged videos."""
    config = _load(config_path)
    service = _service(config)
    try:
        entries = service.list_catalog(status)
    except StoreError as exc:
        _fail(str(exc))
    console.print(render_catalog(entries, title=f"Catalog ({len(entries)} entries)"))


@app.command()
def show(
    entry_id: int = typer.Argument(..., help="Catalog entry id"),
    config_path: Path = ConfigOption,
):
    """Print one catalog entry as JSON."""
    config = _load(config_path)
    try:
        entry = _service(config).find_by_id(entry_id)
    except StoreError as exc:
        _fail(str(exc))
    if entry is None:
        _fail(f"No catalog entry with id {entry_id}")
    console.print_json(data=entry.to_wire())


@app.command()
def stream(
    entry_id: int = typer.Argument(..., help="Catalog entry id"),
    config_path: Path = ConfigOption,
    broker_url: Optional[str] = BrokerUrlOption,
):
    """Request an on-demand transcode of an entry's source file."""
    config = _load(config_path, broker_url)
    service = _service(config, with_broker=True)
    try:
        request = service.request_stream(entry_id)
    except StoreError as exc:
        _fail(str(exc))
    finally:
        service.broker.close()
    typer.secho(f"Transcode requested for {request.original_path}", fg=typer.colors.GREEN)


@app.command()
def retry(
    entry_id: int = typer.Argument(..., help="Catalog entry id"),
    config_path: Path = ConfigOption,
    broker_url: Optional[str] = BrokerUrlOption,
):
    """Reset a failed entry to pending and request a new transcode."""
    config = _load(config_path, broker_url)
    service = _service(config, with_broker=True)
    try:
        entry = service.retry_entry(entry_id)
    except StoreError as exc:
        _fail(str(exc))
    finally:
        service.broker.close()
    typer.secho(f"Entry {entry.id} reset to pending; transcode requested.", fg=typer.colors.GREEN)


if __name__ == "__main__":
    app()
