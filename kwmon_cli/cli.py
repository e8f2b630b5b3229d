import logging
import signal
import sys
import threading
from typing import Any, Optional, Tuple

import click
import colorama
from colorama import Fore, Style
from dotenv import load_dotenv

from .exceptions import ConfigError, NotificationError, StateError
from .config import AppConfig, ConfigManager, DEFAULT_CONFIG_PATH
from .fetcher import GitHubFetcher
from .monitor import Monitor
from .notifications import NotificationManager
from .scanner import ScanEngine
from .state import WatermarkStore

colorama.init(autoreset=True)


# --- Custom Colored Log Formatter ---
class ColoredFormatter(logging.Formatter):
    LEVEL_MAP = {
        logging.DEBUG:    (Fore.CYAN,    "⚙️ DEBUG"),
        logging.INFO:     (Fore.GREEN,   "ℹ️ INFO"),
        logging.WARNING:  (Fore.YELLOW,  "⚠️ WARNING"),
        logging.ERROR:    (Fore.RED,     "❌ ERROR"),
        logging.CRITICAL: (Fore.MAGENTA + Style.BRIGHT, "🔥 CRITICAL"),
    }
    def format(self, record):
        color, level_prefix = self.LEVEL_MAP.get(record.levelno, (Fore.WHITE, record.levelname))
        asctime = self.formatTime(record, self.datefmt)
        message = record.getMessage()

        log_entry = (
            f"{Style.DIM}{asctime}{Style.RESET_ALL} "
            f"{color}{Style.BRIGHT}{level_prefix}{Style.RESET_ALL} "
            f"{message}"
        )

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            log_entry += f"\n{Fore.RED}{Style.DIM}{record.exc_text}{Style.RESET_ALL}"
        return log_entry

# --- Configure Logging using ColoredFormatter ---
console_handler = logging.StreamHandler(sys.stdout)
console_handler.setFormatter(ColoredFormatter(fmt='%(message)s', datefmt='%Y-%m-%d %H:%M:%S'))

base_logger = logging.getLogger('kwmon-cli')
for handler in base_logger.handlers[:]: base_logger.removeHandler(handler)
base_logger.addHandler(console_handler)
base_logger.setLevel(logging.INFO) # Default level, overridden after config load
base_logger.propagate = False

logging.getLogger("urllib3").setLevel(logging.WARNING)
logging.getLogger("requests").setLevel(logging.WARNING)
# --- End Logging Setup ---


def apply_log_settings(config: AppConfig, level_override: Optional[str] = None) -> None:
    """Applies the configured level and optional log file to the kwmon-cli logger."""
    level_name = (level_override or config.general.log_level).upper()
    base_logger.setLevel(getattr(logging, level_name, logging.INFO))

    if config.general.log_file:
        log_path = config.general.log_file
        if not any(isinstance(h, logging.FileHandler) and h.baseFilename == str(log_path)
                   for h in base_logger.handlers):
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path, encoding='utf-8')
            file_handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))
            base_logger.addHandler(file_handler)


def build_components(config: AppConfig, notify: bool = True) -> Tuple[WatermarkStore, GitHubFetcher, ScanEngine, NotificationManager]:
    """Constructs the long-lived state, fetcher, notifier and engine from the validated config."""
    store = WatermarkStore(config.general.state_file)
    store.load()

    fetcher = GitHubFetcher(
        token=config.github.token,
        api_url=str(config.github.api_url),
        timeout=config.github.request_timeout,
        max_retries=config.github.max_retries,
    )
    notifier = NotificationManager(config.alerting.model_dump(), suppress_init_logging=not notify)
    engine = ScanEngine.from_config(config, fetcher, store, alert_sink=notifier.send_alert if notify else None)
    return store, fetcher, engine, notifier


def _load_config(config_path: str) -> AppConfig:
    try:
        return ConfigManager(config_path).get_config_model()
    except ConfigError as e:
        click.echo(click.style(f"❌ Configuration Error: {e}", fg='red', bold=True), err=True)
        sys.exit(1)


def _install_signal_handlers(shutdown_event: threading.Event) -> None:
    def _handler(signum: int, _frame: Any) -> None:
        logging.getLogger('kwmon-cli.signals').warning(
            f"🚨 Received {signal.Signals(signum).name}; finishing current work and shutting down..."
        )
        shutdown_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


config_option = click.option(
    '-c', '--config', 'config_path', default=DEFAULT_CONFIG_PATH, envvar='KWMON_CONFIG_PATH',
    type=click.Path(dir_okay=False, resolve_path=True), show_default=True, help='Config file path'
)


# --- Click CLI Definition ---
@click.group()
@click.version_option(package_name='kwmon-cli')
def cli():
    """kwmon-cli: Watch repositories for keywords in new commits, email on matches."""
    load_dotenv()


@cli.command()
@config_option
def monitor(config_path):
    """Run continuous monitoring of configured repositories."""
    logger = logging.getLogger('kwmon-cli.monitor')
    config = _load_config(config_path)
    apply_log_settings(config)

    store, fetcher, engine, _ = build_components(config)
    shutdown_event = threading.Event()
    _install_signal_handlers(shutdown_event)

    scheduler = Monitor(
        engine,
        config.repositories,
        config.polling.check_interval_minutes,
        concurrency=config.general.api_concurrency,
    )
    logger.info(f"  • Check interval: {config.polling.check_interval_minutes} min")
    logger.info(f"  • Repositories: {len(config.repositories)}")
    logger.info(f"  • State file: {store.state_file}")

    try:
        exit_code = scheduler.run(shutdown_event)
    except Exception as e:
        logger.critical(f"💥 Fatal error in monitor loop: {e}", exc_info=True)
        scheduler.shutdown()
        exit_code = 1
    finally:
        fetcher.close()
    sys.exit(exit_code)


@cli.command()
@config_option
@click.option('--log-level', type=click.Choice(['debug', 'info', 'warning', 'error', 'critical'], case_sensitive=False), help='Log level (overrides config general.log_level)')
@click.option('--notify/--no-notify', 'use_notifications', default=True, help='Send alert emails for matches')
def scan(config_path, log_level, use_notifications):
    """Run a single scan pass over all repositories and exit."""
    logger = logging.getLogger('kwmon-cli.scan')
    config = _load_config(config_path)
    apply_log_settings(config, log_level)

    store, fetcher, engine, _ = build_components(config, notify=use_notifications)
    scheduler = Monitor(engine, config.repositories, config.polling.check_interval_minutes,
                        concurrency=config.general.api_concurrency)
    shutdown_event = threading.Event()
    _install_signal_handlers(shutdown_event)

    try:
        summary = scheduler.run_cycle(shutdown_event)
    finally:
        fetcher.close()

    if shutdown_event.is_set():
        click.echo(click.style("\n🚦 Scan interrupted. Saving state...", fg='yellow'), err=True)
        scheduler.shutdown()
        sys.exit(130)

    try:
        store.flush()
    except StateError as e:
        logger.error(f"❌ Could not save watermark state: {e}")
        sys.exit(1)

    for url, error in summary.errors.items():
        click.echo(click.style(f"✗ {url}: {error}", fg='red'), err=True)
    sys.exit(0 if summary.success else 1)


@cli.command()
@click.option('--test', is_flag=True, help='Send a test email based on config.')
@config_option
def notify(test, config_path):
    """Show alerting status or send a test email."""
    config = _load_config(config_path)
    nm_notify = NotificationManager(config.alerting.model_dump(), suppress_init_logging=True)

    if not test:
        click.echo("ℹ️ Use --test to send a test notification.")
        click.echo(f"Status (from {config_path}):")
        click.echo(f"  Email: {nm_notify.email_enabled}")
        if nm_notify.email_enabled:
            click.echo(f"  SMTP: {nm_notify.smtp.get('host')}:{nm_notify.smtp.get('port')}")
            click.echo(f"  To: {', '.join(nm_notify.to_addresses)}")
        return

    try:
        if nm_notify.send_test_notification():
            click.echo(click.style("✅ Test notification sent successfully!", fg='green', bold=True))
        else:
            click.echo(click.style("⚠️ Email notifications are disabled.", fg='yellow'), err=True)
            sys.exit(1)
    except NotificationError as e:
        click.echo(click.style(f"❌ Test Notification Failed: {e}", fg='red', bold=True), err=True)
        sys.exit(1)


@cli.command()
@config_option
def state(config_path):
    """Print the stored watermark for every repository/branch."""
    config = _load_config(config_path)
    store = WatermarkStore(config.general.state_file)
    store.load()
    entries = store.entries()
    if not entries:
        click.echo(f"No watermarks stored in {store.state_file}")
        return
    for key, sha in sorted(entries.items()):
        click.echo(f"{key}  {sha}")


if __name__ == "__main__":
    cli()
