import argparse
import copy
import json
import logging
import logging.config
import os
import re
import sys
from typing import Any, Dict, List, Optional, Tuple

from arr_api import ArrClient, ArrError, RadarrClient, SonarrClient
from config import (
    CONFIG_ENV_VAR,
    ConfigError,
    ServiceSettings,
    default_config_path,
    load_config,
    resolve_service_settings,
)
from fields import RADARR_SCHEMA, Schema, sonarr_schema
from filterql import FilterQL, FilterQLError
from operations import CUSTOM_OPERATIONS
from output import OUTPUT_TYPES, OutputOptions, get_stats, print_media_data

__version__ = "1.0.0"

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

# =========================
# Logging setup
# =========================
class Colors:
    OKBLUE = '\033[94m'
    OKCYAN = '\033[96m'
    WARNING = '\033[93m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'

class ColoredFormatter(logging.Formatter):
    colon_pattern = re.compile(r'^(.*?):\s(.*)$')

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = sys.stderr.isatty()

    def format(self, record):
        base_message = super().format(record)
        if not (self.use_color and getattr(record, 'is_console', False)):
            return base_message
        if record.levelno >= logging.ERROR:
            return f"{Colors.FAIL}{base_message}{Colors.ENDC}"
        if record.levelno >= logging.WARNING:
            return f"{Colors.WARNING}{base_message}{Colors.ENDC}"

        match = self.colon_pattern.match(base_message)
        if match:
            colored_label = f"{Colors.OKCYAN}{match.group(1)}{Colors.ENDC}"
            colored_value = f"{Colors.OKBLUE}{match.group(2)}{Colors.ENDC}"
            base_message = f"{colored_label}: {colored_value}"
        return base_message

class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, self.datefmt),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)

class ConsoleFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.is_console = True
        return True

LOGGING_CONFIG: Dict[str, Any] = {
    'version': 1,
    'disable_existing_loggers': False,

    'formatters': {
        'colored':  {'()': f'{__name__}.ColoredFormatter',
                     'format': '%(message)s'},
        'json':     {'()': f'{__name__}.JsonFormatter'}
    },

    'filters': {
        'console_filter': {'()': f'{__name__}.ConsoleFilter'},
    },

    # stdout carries the table/JSON, so everything else goes to stderr
    'handlers': {
        'console': {
            'level': 'DEBUG', 'class': 'logging.StreamHandler',
            'stream': 'ext://sys.stderr',
            'formatter': 'colored',
            'filters': ['console_filter']
        },
    },

    'root': {
        'level': os.environ.get('LOG_LEVEL', 'INFO'),
        'handlers': ['console']
    }
}

def build_logging_config(level: Optional[str] = None, log_file: Optional[str] = None, quiet: bool = False) -> Dict[str, Any]:
    cfg = copy.deepcopy(LOGGING_CONFIG)
    if level:
        cfg['root']['level'] = level.upper()
    if quiet:
        cfg['handlers']['console']['level'] = 'WARNING'
    if log_file:
        cfg['handlers']['file'] = {
            'level': 'DEBUG', 'class': 'logging.FileHandler',
            'filename': log_file, 'formatter': 'json', 'encoding': 'utf-8',
        }
        cfg['root']['handlers'].append('file')
    return cfg

def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None, quiet: bool = False):
    logging.config.dictConfig(build_logging_config(level, log_file, quiet))

def format_error_chain(exc: BaseException) -> str:
    """'outer: inner: root cause' from an exception and its __cause__ chain."""
    messages = []
    current: Optional[BaseException] = exc
    while current is not None:
        messages.append(str(current) or type(current).__name__)
        current = current.__cause__
    return ": ".join(messages)

# =========================
# CLI
# =========================
def _add_service_arguments(p: argparse.ArgumentParser, service: str) -> None:
    label = service.capitalize()
    upper = service.upper()

    svc = p.add_argument_group('Service options')
    svc.add_argument('--url', help=f'The URL of the {label} instance (default: ${upper}_URL)')
    svc.add_argument('--api-key', dest='api_key', metavar='API_KEY',
                     help=f'The API key of the {label} instance (default: ${upper}_API_KEY)')

    out = p.add_argument_group('Output options')
    out.add_argument('--all', action='store_true',
                     help='Show fields that are hidden by default in the markdown table')
    out.add_argument('--output', type=str.lower, choices=OUTPUT_TYPES, default='md',
                     help='The type of output to generate ("json" implies --quiet)')
    out.add_argument('--quiet', action='store_true',
                     help='Suppress all output except the markdown/JSON')
    out.add_argument('--short-headers', dest='short_headers', action='store_true',
                     help='Use the field aliases as the markdown table headers')

    p.add_argument('query', nargs='?', default='', metavar='QUERY', help='The FilterQL query')

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='inspectarr',
        description='Inspect the media in a Radarr or Sonarr library with a filter query',
    )
    parser.add_argument('-c', '--config', default=None,
                        help=f'Path to a YAML config file (default: ${CONFIG_ENV_VAR})')
    parser.add_argument('--log-level', type=str.upper, choices=LOG_LEVELS, default=None,
                        help='Log level (default: $LOG_LEVEL or INFO)')
    parser.add_argument('--log-file', default=None, help='Also write JSON-lines logs to this file')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    sub = parser.add_subparsers(dest='command')

    p_radarr = sub.add_parser('radarr', help='Inspect movies in Radarr')
    _add_service_arguments(p_radarr, 'radarr')
    p_radarr.set_defaults(command_parser=p_radarr)

    p_sonarr = sub.add_parser('sonarr', help='Inspect series in Sonarr')
    _add_service_arguments(p_sonarr, 'sonarr')
    gran = p_sonarr.add_argument_group('Sonarr options')
    gran.add_argument('--by-season', dest='by_season', action='store_true',
                      help='Display media by individual season')
    gran.add_argument('--by-episode', dest='by_episode', action='store_true',
                      help='Display media by individual episode (overrides --by-season)')
    p_sonarr.set_defaults(command_parser=p_sonarr)

    return parser

def parse_cli_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)

def build_client(args: argparse.Namespace, settings: ServiceSettings) -> Tuple[ArrClient, Schema]:
    kwargs = {'retries': settings.retries, 'timeout': settings.timeout}
    if args.command == 'radarr':
        return RadarrClient(settings.url, settings.api_key, **kwargs), RADARR_SCHEMA

    by_season = bool(getattr(args, 'by_season', False))
    by_episode = bool(getattr(args, 'by_episode', False))
    client = SonarrClient(settings.url, settings.api_key, by_season=by_season, by_episode=by_episode, **kwargs)
    return client, sonarr_schema(by_season, by_episode)

def inspect_media(client: ArrClient, filterql: FilterQL, query: str, options: OutputOptions) -> List[Dict[str, Any]]:
    """Fetch, filter and transform the library; returns the rows to print."""
    logging.info("Fetching media...")
    media_data = client.get_normalized_media_data()

    try:
        parsed = filterql.parse(query)
    except FilterQLError as exc:
        raise FilterQLError(f"failed to parse query '{query}'") from exc

    try:
        filtered = filterql.apply_filter(media_data, parsed.filter)
    except FilterQLError as exc:
        raise FilterQLError(f"failed to filter media with query '{query}'") from exc

    # JSON output always carries every field
    operations = parsed.operations
    if options.output == 'json':
        operations = [op for op in operations if op.name != 'EXCLUDE']

    try:
        transformed = filterql.apply_operations(filtered, operations)
    except FilterQLError as exc:
        raise FilterQLError(f"failed to apply operations to media with query '{query}'") from exc

    logging.info(f"{client.name} has: {get_stats(media_data)}")
    if len(media_data) != len(transformed):
        logging.info(f"The query matched: {get_stats(transformed)}")
    return transformed

def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help(sys.stderr)
        return 1

    options = OutputOptions(
        output=args.output,
        quiet=args.quiet,
        short_headers=args.short_headers,
        show_all=args.all,
    )
    try:
        setup_logging(args.log_level, args.log_file, options.quiet)
    except ValueError as exc:
        print(format_error_chain(exc), file=sys.stderr)
        return 1

    try:
        config = load_config(args.config or default_config_path())
        settings = resolve_service_settings(args.command, args.url, args.api_key, config)
    except ConfigError as exc:
        print(format_error_chain(exc), file=sys.stderr)
        args.command_parser.print_help(sys.stderr)
        return 1

    client, schema = build_client(args, settings)
    filterql = FilterQL(schema, CUSTOM_OPERATIONS)

    try:
        rows = inspect_media(client, filterql, args.query or '', options)
    except (ArrError, FilterQLError) as exc:
        logging.debug("Inspection failed", exc_info=True)
        print(format_error_chain(exc), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    except Exception:
        logging.exception("Unexpected error")
        return 1

    # an empty table prints nothing, empty JSON is still "[]"
    if rows or options.output == 'json':
        logging.info("")
        print_media_data(rows, schema, options)
    return 0

def cli() -> None:
    sys.exit(main())


if __name__ == '__main__':
    sys.exit(main())
