#!/usr/bin/env python3 -u

"""
HAProxy Stats Exporter

Description:
---------------------

Polls one or more HAProxy instances for their `show stat` CSV report and
republishes the data as Prometheus metrics:
- Fair round-robin polling of many sources inside a fixed cycle duration
- Global ceiling on concurrently running scrapes (skips, never queues)
- HTTP(S), local file and unix stats socket sources
- Tolerant CSV parsing (bad rows and fields are counted, not fatal)
- Prometheus exposition endpoint, health endpoint and optional snapshot file
- Rotating file logging, console logging and systemd journal integration

Usage:
---------------------
    haproxy-exporter --config /etc/haproxy-exporter/exporter.yml
    haproxy-exporter --listen 0.0.0.0:9100 -v
    haproxy-exporter version

Metrics are served at http://<listen>/metrics, health at http://<listen>/health

Configuration:
---------------------

listen: 127.0.0.1:9100    # HTTP listen address
scan_duration: 1000       # Cycle duration in ms, every source is polled once per cycle
max_concurrent: 50        # Maximum number of scrapes in flight
timeout: 5                # Per-scrape fetch timeout in seconds
metrics:                  # Optional allow-list of stats columns (default: all)
    - scur
    - status
labels:                   # Labels attached to the haproxy_exporter_* counters
    host: lb-01
sources:
    - uri: unix:///run/haproxy/admin.sock
      labels:
          cluster: edge
    - uri: http://10.0.0.12:8404/stats;csv
    - include: /etc/haproxy-exporter/sources.d/*.yml
snapshot:                 # Optional periodic dump of the rendered metrics
    path: /var/lib/haproxy-exporter/metrics.prom
    period_sec: 60
health:
    failure_threshold: 20 # Consecutive failed scrapes before /health reports 503
logging:
    level: INFO
    console_level: INFO
    file: /var/log/haproxy-exporter.log
    file_level: DEBUG
    journal_level: WARNING
    max_bytes: 10485760
    backup_count: 3

Configuration files are merged in order: /etc/haproxy-exporter/default.yml,
~/.haproxy-exporter/default.yml, ./default.yml, then --config. Scalar keys may be
overridden from the environment (HAEXPORT_LISTEN, HAEXPORT_SCAN_DURATION,
HAEXPORT_MAX_CONCURRENT, HAEXPORT_TIMEOUT).

Dependencies:
---------------------
- Python 3.9+
- prometheus_client
- pyyaml
- httpx
- click
- cysystemd (for systemd integration)

Notes:
---------------------
- All timestamps are in UTC
- Sources and labels are fixed at startup
- Every source gets an `i` label with its position in the source list, unless
  its own labels set `i`; sources whose label sets collide are rejected
- A failed scrape clears the source's published metrics until the next good one
"""

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Imports
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

# Standard library imports
import asyncio
import csv
import glob
import json
import logging
import os
import re
import signal
import socket
import sys
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from copy import deepcopy
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import (
    Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union
)
from urllib.parse import urlsplit
from wsgiref.simple_server import WSGIRequestHandler, make_server

# Third party imports
import click
import httpx
import yaml
from cysystemd import journal
from cysystemd.daemon import Notification, notify
from prometheus_client import CollectorRegistry, generate_latest, make_wsgi_app
from prometheus_client.core import (
    CounterMetricFamily, GaugeMetricFamily, Metric
)

__version__ = "1.4.0"

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Exceptions
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ExporterError(Exception):
    """Base class for exporter errors."""
    pass

class ConfigurationError(ExporterError):
    """Error in exporter configuration, fatal at startup."""
    pass

class FetchError(ExporterError):
    """Error opening a stats stream. Fatal to one scrape."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

class ParseError(ExporterError):
    """Base class for stats report parsing errors."""
    pass

class StructuralParseError(ParseError):
    """Stats stream broke while reading. Fatal to one scrape."""
    pass

class RowParseError(ParseError):
    """Malformed or short record. The row is skipped."""
    pass

class FieldConversionError(ParseError):
    """Non-numeric value in a numeric column. The field is skipped."""
    pass

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Stats Report Layout
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

NAMESPACE = 'haproxy'
STATS_SUBSYSTEM = 'stats'
EXPORTER_SUBSYSTEM = 'exporter'

# Column positions of the `show stat` CSV
PXNAME_FIELD = 0
SVNAME_FIELD = 1
STATUS_FIELD = 17
TYPE_FIELD = 32

MIN_CSV_FIELD_COUNT = 52
COMMENT_PREFIX = '#'
HEADER_PREFIX = '# pxname'
STATS_COMMAND = b"show stat\n"

UP_STATUSES = frozenset({'UP', 'UP 1/3', 'UP 2/3', 'OPEN', 'no check'})
OBJECT_TYPES = {0: 'frontend', 1: 'backend', 2: 'server', 3: 'listen'}

ROW_LABELS = ('pxname', 'svname', 'type')
LABEL_NAME_RE = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')
SOURCE_INDEX_LABEL = 'i'

@dataclass(frozen=True)
class MetricSpec:
    """A numeric column of the stats report."""
    index: int
    name: str
    description: str

    @property
    def prometheus_name(self) -> str:
        return f"{NAMESPACE}_{STATS_SUBSYSTEM}_{self.name}"

# 0 pxname, 1 svname, 32 type, 36 check_status, 37 check_code, 45 hanafail,
# 56 last_chk and 57 last_agt are not numeric and are not exported.
STATS_METRICS: Tuple[MetricSpec, ...] = (
    MetricSpec(2, 'qcur', "Current number of queued requests not assigned to any server."),
    MetricSpec(3, 'qmax', "Maximum observed number of queued requests not assigned to any server."),
    MetricSpec(4, 'scur', "Current number of active sessions."),
    MetricSpec(5, 'smax', "Maximum observed number of active sessions."),
    MetricSpec(6, 'slim', "Configured session limit."),
    MetricSpec(7, 'stot', "Total number of connections."),
    MetricSpec(8, 'bin', "Current total of incoming bytes."),
    MetricSpec(9, 'bout', "Current total of outgoing bytes."),
    MetricSpec(10, 'dreq', "Total of requests denied for security."),
    MetricSpec(11, 'dresp', "Total of responses denied for security."),
    MetricSpec(12, 'ereq', "Total of request errors."),
    MetricSpec(13, 'econ', "Total of connection errors."),
    MetricSpec(14, 'eresp', "Total of response errors."),
    MetricSpec(15, 'wretr', "Total of retry warnings."),
    MetricSpec(16, 'wredis', "Total of redispatch warnings."),
    MetricSpec(17, 'status', "Current health status of the backend (1 = UP, 0 = DOWN)."),
    MetricSpec(18, 'weight', "Total weight of the servers in the backend."),
    MetricSpec(19, 'act', "Number of active servers (backend), server is active (server)."),
    MetricSpec(20, 'bck', "Number of backup servers (backend), server is backup (server)."),
    MetricSpec(21, 'chkfail', "Total number of failed health checks."),
    MetricSpec(22, 'chkdown', "Number of UP->DOWN transitions, for backends the whole backend going down."),
    MetricSpec(23, 'lastchg', "Number of seconds since the last UP<->DOWN transition."),
    MetricSpec(24, 'downtime', "Total downtime in seconds."),
    MetricSpec(25, 'qlimit', "Configured maxqueue for the server."),
    MetricSpec(26, 'pid', "Process id."),
    MetricSpec(27, 'iid', "Unique proxy id."),
    MetricSpec(28, 'sid', "Server id."),
    MetricSpec(29, 'throttle', "Current throttle percentage for the server."),
    MetricSpec(30, 'lbtot', "Total number of times a server was selected."),
    MetricSpec(31, 'tracked', "Id of proxy/server if tracking is enabled."),
    MetricSpec(33, 'current_session_rate', "Current number of sessions per second over last elapsed second."),
    MetricSpec(34, 'limit_session_rate', "Configured limit on new sessions per second."),
    MetricSpec(35, 'max_session_rate', "Maximum observed number of sessions per second."),
    MetricSpec(38, 'check_duration', "Previously run health check duration, in milliseconds."),
    MetricSpec(39, 'hrsp_1xx', "Http responses with 1xx code."),
    MetricSpec(40, 'hrsp_2xx', "Http responses with 2xx code."),
    MetricSpec(41, 'hrsp_3xx', "Http responses with 3xx code."),
    MetricSpec(42, 'hrsp_4xx', "Http responses with 4xx code."),
    MetricSpec(43, 'hrsp_5xx', "Http responses with 5xx code."),
    MetricSpec(44, 'hrsp_other', "Http responses with other code."),
    MetricSpec(46, 'req_rate', "HTTP requests per second over last elapsed second."),
    MetricSpec(47, 'req_rate_max', "Max number of HTTP requests per second observed."),
    MetricSpec(48, 'req_tot', "Total HTTP requests received."),
    MetricSpec(49, 'cli_abrt', "Number of data transfers aborted by the client."),
    MetricSpec(50, 'srv_abrt', "Number of data transfers aborted by the server."),
    MetricSpec(51, 'comp_in', "Number of HTTP response bytes fed to the compressor."),
    MetricSpec(52, 'comp_out', "Number of HTTP response bytes emitted by the compressor."),
    MetricSpec(53, 'comp_byp', "Number of bytes that bypassed the HTTP compressor."),
    MetricSpec(54, 'comp_rsp', "Number of HTTP responses that were compressed."),
    MetricSpec(55, 'lastsess', "Number of seconds since last session assigned to server/backend."),
    MetricSpec(58, 'qtime', "Average queue time in ms over the 1024 last requests."),
    MetricSpec(59, 'ctime', "Average connect time in ms over the 1024 last requests."),
    MetricSpec(60, 'rtime', "Average response time in ms over the 1024 last requests."),
    MetricSpec(61, 'ttime', "Average total session time in ms over the 1024 last requests."),
)

METRICS_BY_NAME: Dict[str, MetricSpec] = {spec.name: spec for spec in STATS_METRICS}

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Data Classes
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

SUPPORTED_SCHEMES = ('http', 'https', 'file', 'unix')

@dataclass(frozen=True)
class Source:
    """A polled stats endpoint.

    Attributes:
        uri: Endpoint URI (http, https, file or unix scheme)
        labels: Static labels attached to every sample, sorted by name
        origin: Include file this source was loaded from, if any
    """
    uri: str
    labels: Tuple[Tuple[str, str], ...] = ()
    origin: Optional[str] = None

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        origin: Optional[str] = None
    ) -> 'Source':
        """Build a source from a `sources` entry, validating scheme and labels."""
        if not isinstance(config, dict):
            raise ConfigurationError("Source entry must be a dictionary")
        uri = config.get('uri')
        if not uri or not isinstance(uri, str):
            raise ConfigurationError("Source entry must specify a uri")

        scheme = urlsplit(uri).scheme
        if scheme not in SUPPORTED_SCHEMES:
            raise ConfigurationError(f"unsupported scheme: {scheme!r}")

        labels = config.get('labels') or {}
        if not isinstance(labels, dict):
            raise ConfigurationError(f"Labels of source {uri} must be a dictionary")
        for name in labels:
            if not isinstance(name, str) or not LABEL_NAME_RE.match(name):
                raise ConfigurationError(f"Invalid label name {name!r} for source {uri}")
            if name in ROW_LABELS:
                raise ConfigurationError(f"Label name {name!r} is reserved for stats rows")

        return cls(
            uri=uri,
            labels=tuple(sorted((name, str(value)) for name, value in labels.items())),
            origin=origin
        )

    def with_index(self, index: int) -> 'Source':
        """Copy carrying the source position as `i` label, unless one is set."""
        labels = self.label_dict()
        labels.setdefault(SOURCE_INDEX_LABEL, str(index))
        return replace(self, labels=tuple(sorted(labels.items())))

    @property
    def scheme(self) -> str:
        return urlsplit(self.uri).scheme

    def label_dict(self) -> Dict[str, str]:
        return dict(self.labels)

@dataclass(frozen=True)
class Sample:
    """One labelled value produced from one stats row."""
    name: str
    labels: Tuple[Tuple[str, str], ...]
    value: float

    @property
    def key(self) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
        return (self.name, self.labels)

    def label_dict(self) -> Dict[str, str]:
        return dict(self.labels)

@dataclass(frozen=True)
class ScrapeResult:
    """Outcome of one scrape of one source.

    Published results are replaced as a whole, never modified in place.
    """
    samples: Tuple[Sample, ...] = ()
    row_failures: int = 0
    failed: bool = False
    error: Optional[str] = None
    timestamp: Optional[datetime] = None
    duration: float = 0.0

@dataclass
class SchedulerStats:
    """Scheduling statistics for the scrape scheduler.

    The four counters only ever increase. All fields are read and written
    under one lock so a snapshot is never torn across the group.

    Attributes:
        attempted (int): Scrapes dispatched
        skipped (int): Ticks dropped because no concurrency slot was free
        failed (int): Scrapes that failed to fetch or broke mid-stream
        row_failures (int): Non-fatal row and field errors, summed over scrapes
        in_flight (int): Scrapes currently running
        consecutive_failures (int): Current streak of failed scrapes
    """
    attempted: int = 0
    skipped: int = 0
    failed: int = 0
    row_failures: int = 0
    in_flight: int = 0
    consecutive_failures: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_attempt(self) -> None:
        with self._lock:
            self.attempted += 1
            self.in_flight += 1

    def record_skip(self) -> None:
        with self._lock:
            self.skipped += 1

    def record_outcome(self, result: ScrapeResult) -> None:
        with self._lock:
            self.in_flight -= 1
            self.row_failures += result.row_failures
            if result.failed:
                self.failed += 1
                self.consecutive_failures += 1
            else:
                self.consecutive_failures = 0

    def snapshot(self) -> Dict[str, int]:
        """Consistent copy of all statistics."""
        with self._lock:
            return {
                'attempted': self.attempted,
                'skipped': self.skipped,
                'failed': self.failed,
                'row_failures': self.row_failures,
                'in_flight': self.in_flight,
                'consecutive_failures': self.consecutive_failures
            }

    def is_healthy(self, threshold: int) -> bool:
        with self._lock:
            return self.consecutive_failures < threshold

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Configuration
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class ProgramSource:
    """Program identity and configuration file locations."""
    config_file: Optional[Path] = None
    base_name: str = 'haproxy-exporter'

    @property
    def logger_name(self) -> str:
        """Logger name derived from program name."""
        return self.base_name.replace('-', '_')

    @property
    def search_dirs(self) -> Tuple[Path, ...]:
        """Directories searched for default.yml, lowest precedence first."""
        return (
            Path('/etc') / self.base_name,
            Path.home() / f".{self.base_name}",
            Path.cwd()
        )

    @property
    def config_paths(self) -> List[Path]:
        """Existing configuration files in merge order."""
        paths = [
            directory / 'default.yml'
            for directory in self.search_dirs
            if (directory / 'default.yml').is_file()
        ]

        if self.config_file is not None:
            path = Path(self.config_file)
            if not (path.is_file() and os.access(path, os.R_OK)):
                raise ConfigurationError(f"Config file {path} not found")
            paths.append(path)

        return paths

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramConfig:
    """Program configuration with defaults, file merging and validation."""

    DEFAULT_LISTEN = '127.0.0.1:9100'
    DEFAULT_SCAN_DURATION = 1000  # ms
    DEFAULT_MAX_CONCURRENT = 50
    DEFAULT_TIMEOUT = 5.0
    DEFAULT_SNAPSHOT_PERIOD = 60
    DEFAULT_FAILURE_THRESHOLD = 20

    # Logging defaults
    DEFAULT_LOG_LEVEL = 'INFO'
    DEFAULT_LOG_FILE_LEVEL = 'DEBUG'
    DEFAULT_LOG_CONSOLE_LEVEL = 'INFO'
    DEFAULT_LOG_JOURNAL_LEVEL = 'WARNING'
    DEFAULT_LOG_MAX_BYTES = 10485760  # 10MB
    DEFAULT_LOG_BACKUP_COUNT = 3
    DEFAULT_LOG_FORMAT = '%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s'
    DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

    ENV_PREFIX = 'HAEXPORT_'
    ENV_OVERRIDES = {
        'listen': str,
        'scan_duration': int,
        'max_concurrent': int,
        'timeout': float
    }

    def __init__(self, source: ProgramSource):
        """Initialize configuration manager."""
        self._source = source
        self._config = self._get_defaults()
        self._sources: List[Source] = []
        self._metric_specs: Tuple[MetricSpec, ...] = STATS_METRICS
        self._running_under_systemd = bool(os.getenv('INVOCATION_ID'))
        self._start_time = self.now_utc()
        self.logger = None

        # Track validation status
        self._validation_stats = {
            'sources': {'valid': 0, 'invalid': 0},
            'metrics': {'valid': 0, 'invalid': 0}
        }

    def _log_message(self, level: str, message: str) -> None:
        """Safe logging wrapper."""
        if self.logger:
            getattr(self.logger, level)(message)

    def _get_defaults(self) -> Dict[str, Any]:
        """Get default configuration."""
        return {
            'listen': self.DEFAULT_LISTEN,
            'scan_duration': self.DEFAULT_SCAN_DURATION,
            'max_concurrent': self.DEFAULT_MAX_CONCURRENT,
            'timeout': self.DEFAULT_TIMEOUT,
            'metrics': None,
            'labels': {},
            'sources': [],
            'snapshot': None,
            'health': {
                'failure_threshold': self.DEFAULT_FAILURE_THRESHOLD
            },
            'logging': {
                'level': self.DEFAULT_LOG_LEVEL,
                'file': None,
                'file_level': self.DEFAULT_LOG_FILE_LEVEL,
                'console_level': self.DEFAULT_LOG_CONSOLE_LEVEL,
                'journal_level': self.DEFAULT_LOG_JOURNAL_LEVEL,
                'max_bytes': self.DEFAULT_LOG_MAX_BYTES,
                'backup_count': self.DEFAULT_LOG_BACKUP_COUNT,
                'format': self.DEFAULT_LOG_FORMAT,
                'date_format': self.DEFAULT_LOG_DATE_FORMAT
            }
        }

    def read(self, overrides: Optional[Dict[str, Any]] = None) -> None:
        """Merge configuration files, environment and overrides onto defaults.

        Sources and the metric allow-list are validated separately by
        initialize() once a logger is attached.
        """
        config = self._get_defaults()

        for path in self._source.config_paths:
            config = self._merge_with_defaults(config, self._load_file(path))

        config = self._apply_environment(config)

        for key, value in (overrides or {}).items():
            if value is not None:
                config[key] = value

        self._validate_scalars(config)
        self._config = config

    def initialize(self) -> None:
        """Validate sources and metric filter after logger is attached."""
        self._reset_validation_stats()
        try:
            self._sources = self._validate_sources(self._config.get('sources'))
            self._metric_specs = self._validate_metric_filter(self._config.get('metrics'))
        except Exception as e:
            self._log_message('error', f"Failed to load initial configuration: {e}")
            raise
        self._log_validation_summary()

    def _reset_validation_stats(self):
        """Reset validation statistics."""
        for section in self._validation_stats.values():
            section['valid'] = 0
            section['invalid'] = 0

    @staticmethod
    def _load_file(path: Path) -> Dict[str, Any]:
        try:
            with open(path) as f:
                content = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load config file {path}: {e}")

        if not isinstance(content, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
        return content

    def _merge_with_defaults(self, defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Simple merge of override values with defaults."""
        result = deepcopy(defaults)
        for key, value in override.items():
            if isinstance(value, dict) and key in result and isinstance(result[key], dict):
                result[key] = self._merge_with_defaults(result[key], value)
            else:
                result[key] = deepcopy(value)
        return result

    def _apply_environment(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Override scalar settings from HAEXPORT_* environment variables."""
        for key, convert in self.ENV_OVERRIDES.items():
            env_name = f"{self.ENV_PREFIX}{key.upper()}"
            raw = os.getenv(env_name)
            if raw is None:
                continue
            try:
                config[key] = convert(raw)
            except ValueError:
                raise ConfigurationError(f"Invalid value {raw!r} for {env_name}")
        return config

    def _validate_scalars(self, config: Dict[str, Any]) -> None:
        """Basic validation of scalar settings."""
        self._parse_listen(config['listen'])

        scan_duration = config['scan_duration']
        if not isinstance(scan_duration, int) or isinstance(scan_duration, bool) or scan_duration < 1:
            raise ConfigurationError(f"Invalid scan_duration {scan_duration}")

        max_concurrent = config['max_concurrent']
        if not isinstance(max_concurrent, int) or isinstance(max_concurrent, bool) or max_concurrent < 1:
            raise ConfigurationError(f"Invalid max_concurrent {max_concurrent}")

        timeout = config['timeout']
        if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0:
            raise ConfigurationError(f"Invalid timeout {timeout}")

        if not isinstance(config.get('labels') or {}, dict):
            raise ConfigurationError("labels must be a dictionary")
        for name in (config.get('labels') or {}):
            if not isinstance(name, str) or not LABEL_NAME_RE.match(name):
                raise ConfigurationError(f"Invalid label name {name!r}")

        snapshot = config.get('snapshot')
        if snapshot is not None:
            if not isinstance(snapshot, dict) or not snapshot.get('path'):
                raise ConfigurationError("snapshot section must specify a path")
            period = snapshot.get('period_sec', self.DEFAULT_SNAPSHOT_PERIOD)
            if not isinstance(period, (int, float)) or isinstance(period, bool) or period <= 0:
                raise ConfigurationError(f"Invalid snapshot period_sec {period}")

        threshold = (config.get('health') or {}).get('failure_threshold', self.DEFAULT_FAILURE_THRESHOLD)
        if not isinstance(threshold, int) or isinstance(threshold, bool) or threshold < 1:
            raise ConfigurationError(f"Invalid health failure_threshold {threshold}")

    @staticmethod
    def _parse_listen(listen: Any) -> Tuple[str, int]:
        if not isinstance(listen, str) or ':' not in listen:
            raise ConfigurationError(f"Invalid listen address {listen!r}, expected host:port")
        host, _, port = listen.rpartition(':')
        try:
            port_number = int(port)
        except ValueError:
            raise ConfigurationError(f"Invalid listen port {port!r}")
        if port_number < 1 or port_number > 65535:
            raise ConfigurationError(f"Invalid listen port {port_number}")
        return host.strip('[]'), port_number

    def _validate_sources(self, sources_config: Any) -> List[Source]:
        """Validate sources section with optimistic parsing."""
        if not isinstance(sources_config, list):
            raise ConfigurationError("Sources section must be a list")

        validated: List[Source] = []
        for entry in sources_config:
            if isinstance(entry, dict) and 'include' in entry:
                validated.extend(self._load_include(entry['include']))
                continue
            source = self._validate_source(entry)
            if source:
                validated.append(source)

        validated = self._index_sources(validated)

        if not validated:
            raise ConfigurationError("No valid sources found in configuration")

        return validated

    def _index_sources(self, sources: List[Source]) -> List[Source]:
        """Label sources with their position and drop colliding label sets."""
        indexed: List[Source] = []
        seen: Dict[Tuple[Tuple[str, str], ...], str] = {}
        for index, source in enumerate(sources):
            source = source.with_index(index)
            if source.labels in seen:
                self._validation_stats['sources']['valid'] -= 1
                self._validation_stats['sources']['invalid'] += 1
                self._log_message(
                    'warning',
                    f"Source {source.uri} has the same labels as {seen[source.labels]}, "
                    "its series would collide. Skipping this source."
                )
                continue
            seen[source.labels] = source.uri
            indexed.append(source)
        return indexed

    def _validate_source(self, entry: Any, origin: Optional[str] = None) -> Optional[Source]:
        try:
            source = Source.from_config(entry, origin=origin)
            self._validation_stats['sources']['valid'] += 1
            return source
        except ConfigurationError as e:
            self._validation_stats['sources']['invalid'] += 1
            location = f" in {origin}" if origin else ""
            self._log_message(
                'warning',
                f"Failed to validate source {entry!r}{location}: {e}. "
                "Skipping this source but continuing with others."
            )
            return None

    def _load_include(self, pattern: Any) -> List[Source]:
        """Load sources from every YAML file matching an include glob."""
        if not isinstance(pattern, str):
            raise ConfigurationError(f"Invalid include pattern {pattern!r}")

        paths = sorted(glob.glob(os.path.expanduser(pattern)))
        if not paths:
            self._log_message('warning', f"Include pattern {pattern} matched no files")

        sources = []
        for path in paths:
            try:
                with open(path) as f:
                    content = yaml.safe_load(f) or []
            except (OSError, yaml.YAMLError) as e:
                self._log_message('warning', f"Failed to load include file {path}: {e}")
                continue

            if isinstance(content, dict):
                content = content.get('sources', [])
            if not isinstance(content, list):
                self._log_message('warning', f"Include file {path} must contain a list of sources")
                continue

            for entry in content:
                source = self._validate_source(entry, origin=path)
                if source:
                    sources.append(source)

        return sources

    def _validate_metric_filter(self, names: Any) -> Tuple[MetricSpec, ...]:
        """Restrict collected columns to the configured allow-list."""
        if names is None:
            self._validation_stats['metrics']['valid'] = len(STATS_METRICS)
            return STATS_METRICS

        if not isinstance(names, list):
            raise ConfigurationError("metrics must be a list of metric names")

        wanted = set()
        for name in names:
            if name in METRICS_BY_NAME:
                wanted.add(name)
                self._validation_stats['metrics']['valid'] += 1
            else:
                self._validation_stats['metrics']['invalid'] += 1
                self._log_message('warning', f"Unknown metric {name!r} in allow-list, ignoring")

        if not wanted:
            raise ConfigurationError("No valid metrics in allow-list")

        return tuple(spec for spec in STATS_METRICS if spec.name in wanted)

    def _log_validation_summary(self) -> None:
        """Log validation statistics summary."""
        if not self.logger:
            return

        stats = self._validation_stats
        total_sources = stats['sources']['valid'] + stats['sources']['invalid']
        total_metrics = stats['metrics']['valid'] + stats['metrics']['invalid']

        self.logger.info(
            f"Configuration loaded with "
            f"{stats['sources']['valid']}/{total_sources} sources, "
            f"{stats['metrics']['valid']}/{total_metrics} metrics valid"
        )

    @staticmethod
    def now_utc() -> datetime:
        """Get current UTC datetime."""
        return datetime.now(timezone.utc)

    def get_uptime_seconds(self) -> float:
        """Get service uptime in seconds."""
        return (self.now_utc() - self._start_time).total_seconds()

    @property
    def start_time(self) -> datetime:
        return self._start_time

    @property
    def running_under_systemd(self) -> bool:
        """Check if running under systemd."""
        return self._running_under_systemd

    @property
    def sources(self) -> List[Source]:
        return list(self._sources)

    @property
    def metric_specs(self) -> Tuple[MetricSpec, ...]:
        return self._metric_specs

    @property
    def listen(self) -> str:
        return self._config['listen']

    @property
    def listen_address(self) -> Tuple[str, int]:
        """Listen address as (host, port)."""
        return self._parse_listen(self._config['listen'])

    @property
    def scan_duration(self) -> int:
        """Get cycle duration in milliseconds."""
        return self._config['scan_duration']

    @property
    def max_concurrent(self) -> int:
        """Get maximum number of scrapes in flight."""
        return self._config['max_concurrent']

    @property
    def timeout(self) -> float:
        """Get fetch timeout in seconds."""
        return float(self._config['timeout'])

    @property
    def labels(self) -> Dict[str, str]:
        return {name: str(value) for name, value in (self._config.get('labels') or {}).items()}

    @property
    def snapshot_path(self) -> Optional[Path]:
        snapshot = self._config.get('snapshot')
        return Path(snapshot['path']) if snapshot else None

    @property
    def snapshot_period(self) -> float:
        snapshot = self._config.get('snapshot') or {}
        return snapshot.get('period_sec', self.DEFAULT_SNAPSHOT_PERIOD)

    @property
    def failure_threshold(self) -> int:
        """Get failure threshold count."""
        return (self._config.get('health') or {}).get('failure_threshold', self.DEFAULT_FAILURE_THRESHOLD)

    @property
    def logging(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self._config.get('logging') or {}

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Logging
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramLogger:
    """Manages logging configuration and setup."""

    # Verbose logging config
    VERBOSE_DEBUG = True
    VERBOSE_LEVEL = 15  # DEBUG 10, INFO 20

    class VerboseLogger(logging.Logger):
        """Enhanced Logger class adding verbose debugging capabilities"""

        def verbose(
            self,
            msg: Union[str, Callable[[], str]],
            *args: Any,
            **kwargs: Any
        ) -> None:
            """Log verbose debug messages with efficient deferred evaluation."""

            if not ProgramLogger.VERBOSE_DEBUG:
                return
            if not self.isEnabledFor(ProgramLogger.VERBOSE_LEVEL):
                return

            # Handle deferred evaluation of expensive computations
            if callable(msg):
                self.log(ProgramLogger.VERBOSE_LEVEL, msg())
            # Handle string formatting
            elif args or kwargs:
                self.log(ProgramLogger.VERBOSE_LEVEL, msg.format(*args, **kwargs))
            # Handle simple strings
            else:
                self.log(ProgramLogger.VERBOSE_LEVEL, msg)

    @classmethod
    def get_logger(cls, name: str) -> 'ProgramLogger.VerboseLogger':
        """Get a logger supporting verbose(), installing the logger class if needed."""
        logging.addLevelName(cls.VERBOSE_LEVEL, 'VERBOSE')
        logging.setLoggerClass(cls.VerboseLogger)
        return logging.getLogger(name)

    def __init__(
        self,
        source: ProgramSource,
        config: ProgramConfig,
        verbose: bool = False
    ):
        """Initialize logging configuration.

        Args:
            source: Program source information
            config: Program configuration
            verbose: Force DEBUG level on the logger and console
        """
        self.source = source
        self.config = config
        self.verbose = verbose
        self._handlers: Dict[str, logging.Handler] = {}

        self._logger = self._setup_logging()

        # Attach logger to config after setup
        self.config.logger = self._logger

    @property
    def logger(self) -> logging.Logger:
        """Get the configured logger instance."""
        return self._logger

    @property
    def level(self) -> str:
        """Get current log level."""
        return logging.getLevelName(self._logger.level)

    @property
    def handlers(self) -> Dict[str, logging.Handler]:
        """Get dictionary of configured handlers."""
        return self._handlers

    def _get_logging_config(self) -> Dict[str, Any]:
        """Get logging configuration with defaults filled in."""
        logging_config = self.config.logging
        settings = {
            'level': logging_config.get('level', self.config.DEFAULT_LOG_LEVEL),
            'file': logging_config.get('file'),
            'file_level': logging_config.get('file_level', self.config.DEFAULT_LOG_FILE_LEVEL),
            'console_level': logging_config.get('console_level', self.config.DEFAULT_LOG_CONSOLE_LEVEL),
            'journal_level': logging_config.get('journal_level', self.config.DEFAULT_LOG_JOURNAL_LEVEL),
            'max_bytes': logging_config.get('max_bytes', self.config.DEFAULT_LOG_MAX_BYTES),
            'backup_count': logging_config.get('backup_count', self.config.DEFAULT_LOG_BACKUP_COUNT),
            'format': logging_config.get('format', self.config.DEFAULT_LOG_FORMAT),
            'date_format': logging_config.get('date_format', self.config.DEFAULT_LOG_DATE_FORMAT)
        }
        if self.verbose:
            settings['level'] = 'DEBUG'
            settings['console_level'] = 'DEBUG'
        return settings

    def _setup_logging(self) -> logging.Logger:
        """Set up logging with configuration from config file.

        Creates and configures:
        - Base logger
        - Console handler
        - File handler with rotation (if a log file is configured)
        - Journal handler (if running under systemd)

        Note:
            If handler setup fails, ensures at least basic console logging
            is available as a fallback.
        """
        logger = self.get_logger(self.source.logger_name)
        logger.handlers.clear()

        log_settings = self._get_logging_config()
        logger.setLevel(log_settings['level'])

        formatter = logging.Formatter(
            log_settings['format'],
            log_settings['date_format']
        )

        try:
            # Console handler
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(log_settings['console_level'])
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)
            self._handlers['console'] = console_handler

            # File handler
            if log_settings['file']:
                file_handler = RotatingFileHandler(
                    log_settings['file'],
                    maxBytes=log_settings['max_bytes'],
                    backupCount=log_settings['backup_count']
                )
                file_handler.setLevel(log_settings['file_level'])
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)
                self._handlers['file'] = file_handler

            # Journal handler for systemd
            if self.config.running_under_systemd:
                journal_handler = journal.JournaldLogHandler()
                journal_handler.setLevel(log_settings['journal_level'])
                journal_handler.setFormatter(formatter)
                logger.addHandler(journal_handler)
                self._handlers['journal'] = journal_handler

        except Exception as e:
            # If handler setup fails, ensure we have at least a basic console handler
            if not logger.handlers:
                basic_handler = logging.StreamHandler(sys.stdout)
                basic_handler.setFormatter(logging.Formatter(self.config.DEFAULT_LOG_FORMAT))
                logger.addHandler(basic_handler)
                self._handlers['console'] = basic_handler
            print(f"Failed to setup handlers: {e}, using basic console handler", file=sys.stderr)

        return logger

    def close(self) -> None:
        """Close all handlers."""
        for name, handler in list(self._handlers.items()):
            self._logger.removeHandler(handler)
            handler.close()
            del self._handlers[name]

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Source Fetchers
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ReportStream:
    """Line stream of one stats report.

    Closes the underlying transport on exit. Reading past the deadline
    raises StructuralParseError so a trickling source cannot hold a
    scrape slot longer than its timeout. Fetchers decode with replacement,
    so bytes that are not valid UTF-8 end up inside a field and never
    break the stream.
    """

    def __init__(
        self,
        lines: Iterable[str],
        close: Callable[[], None],
        deadline: Optional[float] = None
    ):
        self._lines = lines
        self._close = close
        self._deadline = deadline

    def __iter__(self) -> Iterator[str]:
        for line in self._lines:
            if self._deadline is not None and time.monotonic() > self._deadline:
                raise StructuralParseError("Read deadline exceeded")
            yield line

    def close(self) -> None:
        self._close()

    def __enter__(self) -> 'ReportStream':
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class SourceFetcher(ABC):
    """Opens the stats report of one source."""

    def __init__(self, source: Source, timeout: float):
        self.source = source
        self.timeout = timeout

    @classmethod
    def for_source(cls, source: Source, timeout: float, **kwargs: Any) -> 'SourceFetcher':
        """Pick the fetcher matching the source URI scheme."""
        scheme = source.scheme
        if scheme in ('http', 'https'):
            return HttpFetcher(source, timeout, **kwargs)
        if scheme == 'file':
            return FileFetcher(source, timeout)
        if scheme == 'unix':
            return UnixSocketFetcher(source, timeout)
        raise ConfigurationError(f"unsupported scheme: {scheme!r}")

    @abstractmethod
    def open(self) -> ReportStream:
        """Open the report stream, raising FetchError on failure."""
        ...

    def _deadline(self) -> float:
        return time.monotonic() + self.timeout

    def close(self) -> None:
        pass

class HttpFetcher(SourceFetcher):
    """GET the CSV stats page over HTTP(S)."""

    def __init__(
        self,
        source: Source,
        timeout: float,
        transport: Optional[httpx.BaseTransport] = None
    ):
        super().__init__(source, timeout)
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def open(self) -> ReportStream:
        deadline = self._deadline()
        try:
            request = self._client.build_request('GET', self.source.uri)
            response = self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise FetchError(f"GET {self.source.uri} failed: {e}")

        if not response.is_success:
            response.close()
            raise FetchError(
                f"HTTP status {response.status_code}",
                status_code=response.status_code
            )

        return ReportStream(response.iter_lines(), response.close, deadline)

    def close(self) -> None:
        self._client.close()

class FileFetcher(SourceFetcher):
    """Read a stats report dumped to a local file."""

    @property
    def path(self) -> str:
        parts = urlsplit(self.source.uri)
        return parts.netloc + parts.path

    def open(self) -> ReportStream:
        try:
            f = open(self.path, 'r', encoding='utf-8', errors='replace', newline='')
        except OSError as e:
            raise FetchError(f"Cannot open {self.path}: {e}")
        return ReportStream(f, f.close, self._deadline())

class UnixSocketFetcher(SourceFetcher):
    """Ask HAProxy's stats socket for `show stat`."""

    @property
    def path(self) -> str:
        parts = urlsplit(self.source.uri)
        return parts.netloc + parts.path

    def open(self) -> ReportStream:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(self.path)
            sent = sock.send(STATS_COMMAND)
        except OSError as e:
            sock.close()
            raise FetchError(f"Stats socket {self.path} failed: {e}")

        if sent != len(STATS_COMMAND):
            sock.close()
            raise FetchError(f"Short write to {self.path}: {sent}/{len(STATS_COMMAND)} bytes")

        reader = sock.makefile('r', encoding='utf-8', errors='replace', newline='')

        def close():
            reader.close()
            sock.close()

        return ReportStream(reader, close, self._deadline())

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Stats Parsing
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class StatsReader:
    """Lazy, single-pass reader of `show stat` CSV records.

    Yields each row as a list of fields once its line has been read.
    Comment lines (including the header) and blank lines are skipped. When
    the report ends its records with a comma, as HAProxy does, the empty
    field that comma leaves is dropped. The header line decides whether it
    does, or the first record when there is no header.

    Malformed records, rows shorter than `min_fields` and rows whose field
    count differs from the first accepted row are skipped and counted in
    `row_failures`. I/O failures of the underlying stream raise
    StructuralParseError and end the iteration.
    """

    def __init__(
        self,
        lines: Iterable[str],
        logger: Optional[logging.Logger] = None,
        min_fields: int = MIN_CSV_FIELD_COUNT
    ):
        self._lines = lines
        self.logger = logger
        self.min_fields = min_fields
        self.row_failures = 0
        self.rows_read = 0
        self.last_error: Optional[RowParseError] = None
        self._expected_fields: Optional[int] = None
        self._trailing_comma: Optional[bool] = None

    def _records(self) -> Iterator[str]:
        try:
            for line in self._lines:
                if line.startswith(HEADER_PREFIX) and self._trailing_comma is None:
                    self._trailing_comma = line.rstrip('\r\n').endswith(',')
                if not line.strip() or line.startswith(COMMENT_PREFIX):
                    continue
                yield line
        except (OSError, httpx.HTTPError) as e:
            raise StructuralParseError(f"Stats stream broken: {e}") from e

    def _reject(self, message: str) -> None:
        self.row_failures += 1
        self.last_error = RowParseError(message)
        if self.logger:
            self.logger.warning(message)

    def __iter__(self) -> Iterator[List[str]]:
        reader = csv.reader(self._records(), strict=True)
        while True:
            try:
                row = next(reader)
            except StopIteration:
                return
            except csv.Error as e:
                self._reject(f"Malformed CSV record near line {reader.line_num}: {e}")
                continue

            if self._trailing_comma is None:
                self._trailing_comma = len(row) > 1 and row[-1] == ''
            if self._trailing_comma and len(row) > 1 and row[-1] == '':
                row = row[:-1]

            if len(row) < self.min_fields:
                self._reject(f"Wrong CSV field count: {len(row)} < {self.min_fields}")
                continue

            if self._expected_fields is None:
                self._expected_fields = len(row)
            elif len(row) != self._expected_fields:
                self._reject(
                    f"Wrong CSV field count: {len(row)} != {self._expected_fields}"
                )
                continue

            self.rows_read += 1
            yield row

def parse(lines: Iterable[str], logger: Optional[logging.Logger] = None) -> StatsReader:
    """Parse a stats report into rows, see StatsReader."""
    return StatsReader(lines, logger)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Metric Mapping
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def recode_status(value: str) -> int:
    """Map a status string to 1 (serving) or 0."""
    return 1 if value in UP_STATUSES else 0

def recode_type(value: str) -> str:
    """Map the numeric object type to its name, empty when unknown."""
    try:
        return OBJECT_TYPES.get(int(value), '')
    except ValueError:
        return ''

def convert_field(spec: MetricSpec, value: str) -> int:
    if spec.index == STATUS_FIELD:
        return recode_status(value)
    try:
        return int(value, 10)
    except ValueError:
        raise FieldConversionError(f"Can't parse CSV field {spec.name} value {value!r}")

def map_row(
    row: List[str],
    metric_specs: Iterable[MetricSpec],
    static_labels: Optional[Dict[str, str]] = None,
    logger: Optional[logging.Logger] = None
) -> Tuple[List[Sample], int]:
    """Turn one stats row into samples.

    Empty or missing fields are absent metrics. Values that don't convert
    are skipped and counted.

    Returns:
        Samples of the row and the number of field conversion failures
    """
    labels = dict(static_labels or {})
    labels['pxname'] = row[PXNAME_FIELD]
    labels['svname'] = row[SVNAME_FIELD]
    labels['type'] = recode_type(row[TYPE_FIELD])
    label_items = tuple(sorted(labels.items()))

    samples = []
    failures = 0

    for spec in metric_specs:
        if spec.index >= len(row):
            continue
        raw = row[spec.index]
        if raw == '':
            continue

        try:
            value = convert_field(spec, raw)
        except FieldConversionError as e:
            failures += 1
            if logger:
                logger.warning(str(e))
            continue

        samples.append(Sample(name=spec.name, labels=label_items, value=float(value)))

    return samples, failures

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Exporter
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class Exporter:
    """Scrapes one source and publishes its latest result.

    Only one scrape runs at a time per exporter. The published result is
    swapped under a lock held just for the swap, so readers always get a
    complete result, either the previous one or the new one.
    """

    def __init__(
        self,
        source: Source,
        fetcher: SourceFetcher,
        metric_specs: Iterable[MetricSpec],
        logger: logging.Logger
    ):
        self.source = source
        self.fetcher = fetcher
        self.metric_specs = tuple(metric_specs)
        self.logger = logger

        self._published = ScrapeResult()
        self._lock = threading.Lock()
        self._scrape_lock = threading.Lock()

        self._registry = CollectorRegistry(auto_describe=False)
        self._registry.register(StatsCollector([self]))

    @classmethod
    def from_source(
        cls,
        source: Source,
        timeout: float,
        metric_specs: Iterable[MetricSpec],
        logger: logging.Logger
    ) -> 'Exporter':
        return cls(source, SourceFetcher.for_source(source, timeout), metric_specs, logger)

    @property
    def uri(self) -> str:
        return self.source.uri

    @property
    def published(self) -> ScrapeResult:
        """Currently published scrape result."""
        with self._lock:
            return self._published

    def _publish(self, result: ScrapeResult) -> None:
        with self._lock:
            self._published = result

    def _fail(self, error: Exception, started: float) -> ScrapeResult:
        result = ScrapeResult(
            failed=True,
            error=str(error),
            timestamp=ProgramConfig.now_utc(),
            duration=time.monotonic() - started
        )
        # Last good or empty: drop the previous samples
        self._publish(result)
        return result

    def scrape(self) -> ScrapeResult:
        """Fetch, parse and publish one stats report."""
        with self._scrape_lock:
            started = time.monotonic()
            self.logger.verbose(lambda: f"Scraping {self.uri}")

            try:
                stream = self.fetcher.open()
            except FetchError as e:
                return self._fail(e, started)

            samples: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], Sample] = {}
            failures = 0
            static_labels = self.source.label_dict()

            try:
                with stream:
                    reader = StatsReader(stream, self.logger)
                    for row in reader:
                        row_samples, row_failures = map_row(
                            row, self.metric_specs, static_labels, self.logger
                        )
                        failures += row_failures
                        for sample in row_samples:
                            samples[sample.key] = sample
                    failures += reader.row_failures
            except StructuralParseError as e:
                return self._fail(e, started)

            result = ScrapeResult(
                samples=tuple(samples.values()),
                row_failures=failures,
                timestamp=ProgramConfig.now_utc(),
                duration=time.monotonic() - started
            )
            self._publish(result)

            self.logger.verbose(
                lambda: f"Scraped {self.uri} in {result.duration:.3f}s: "
                f"{len(result.samples)} samples, {failures} row failures"
            )
            return result

    def metrics(self) -> bytes:
        """Published samples in Prometheus text format."""
        return generate_latest(self._registry)

    def close(self) -> None:
        self.fetcher.close()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Scrape Scheduler
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ScrapeScheduler:
    """Spreads scrapes of all exporters over one cycle.

    Every tick either dispatches the next exporter in round-robin order on
    the worker pool, or, when all `max_concurrent` slots are taken, counts
    a skip. A skipped tick is dropped and the cursor stays on the same
    exporter so it goes first on the next tick.
    """

    MIN_TICK_INTERVAL = 0.001  # seconds

    def __init__(
        self,
        exporters: List[Exporter],
        cycle_duration: float,
        max_concurrent: int,
        logger: logging.Logger,
        labels: Optional[Dict[str, str]] = None
    ):
        """Initialize the scheduler.

        Args:
            exporters: Exporters in polling order
            cycle_duration: Seconds to go through every exporter once
            max_concurrent: Maximum number of scrapes in flight
            logger: Configured logger instance
            labels: Labels attached to the scheduler counters
        """
        if not exporters:
            raise ConfigurationError("Scheduler needs at least one exporter")
        if max_concurrent < 1:
            raise ConfigurationError(f"Invalid max_concurrent {max_concurrent}")

        self.exporters = list(exporters)
        self.cycle_duration = cycle_duration
        self.max_concurrent = max_concurrent
        self.logger = logger
        self.labels = dict(labels or {})
        self.stats = SchedulerStats()

        self._slots = threading.BoundedSemaphore(max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent,
            thread_name_prefix='scrape'
        )
        self._cursor = 0

    @property
    def tick_interval(self) -> float:
        """Seconds between two scheduling decisions."""
        return max(self.cycle_duration / len(self.exporters), self.MIN_TICK_INTERVAL)

    def tick(self) -> Optional[Future]:
        """Make one scheduling decision.

        Returns:
            Future of the dispatched scrape, or None when the tick was skipped
        """
        if not self._slots.acquire(blocking=False):
            self.stats.record_skip()
            self.logger.verbose(
                lambda: f"No free scrape slot, skipping {self.exporters[self._cursor].uri}"
            )
            return None

        exporter = self.exporters[self._cursor]
        self._cursor = (self._cursor + 1) % len(self.exporters)
        self.stats.record_attempt()

        try:
            return self._executor.submit(self._run_scrape, exporter)
        except RuntimeError:
            self._slots.release()
            self.stats.record_outcome(ScrapeResult(failed=True, error="scheduler shut down"))
            raise

    def _run_scrape(self, exporter: Exporter) -> ScrapeResult:
        try:
            result = exporter.scrape()
        except Exception as e:
            self.logger.error(f"Unexpected error scraping {exporter.uri}: {e}", exc_info=True)
            result = ScrapeResult(failed=True, error=str(e), timestamp=ProgramConfig.now_utc())

        # in_flight must drop before the slot can be claimed again
        try:
            self.stats.record_outcome(result)
        finally:
            self._slots.release()

        if result.failed:
            self.logger.error(f"Scrape fail for {exporter.uri}: {result.error}")
        elif result.row_failures:
            self.logger.warning(f"Scrape of {exporter.uri} had {result.row_failures} row failures")
        return result

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Tick at a fixed rate until shutdown. Late ticks are not caught up."""
        loop = asyncio.get_running_loop()
        interval = self.tick_interval
        next_tick = loop.time() + interval

        self.logger.info(
            f"Scheduling {len(self.exporters)} sources every {self.cycle_duration:.3f}s "
            f"(tick {interval:.3f}s, {self.max_concurrent} concurrent)"
        )

        while not shutdown_event.is_set():
            delay = next_tick - loop.time()
            if delay > 0:
                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass

            try:
                self.tick()
            except RuntimeError as e:
                self.logger.error(f"Failed to dispatch scrape: {e}")
                break

            next_tick += interval
            now = loop.time()
            if next_tick <= now:
                next_tick = now + interval

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool and close fetchers."""
        self._executor.shutdown(wait=wait)
        for exporter in self.exporters:
            try:
                exporter.close()
            except Exception as e:
                self.logger.error(f"Error closing {exporter.uri}: {e}")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Prometheus Collectors
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class StatsCollector:
    """Renders the published samples of a set of exporters.

    Samples of the same metric from different sources go into one family.
    """

    def __init__(self, exporters: List[Exporter]):
        self._exporters = exporters

    def collect(self) -> Iterator[Metric]:
        families: Dict[str, Metric] = {}
        for exporter in self._exporters:
            for sample in exporter.published.samples:
                family = families.get(sample.name)
                if family is None:
                    spec = METRICS_BY_NAME[sample.name]
                    family = Metric(spec.prometheus_name, spec.description, 'gauge')
                    families[sample.name] = family
                family.add_sample(family.name, sample.label_dict(), sample.value)

        for spec in STATS_METRICS:
            if spec.name in families:
                yield families[spec.name]

class SchedulerCollector:
    """Renders the scheduler counters."""

    def __init__(self, scheduler: ScrapeScheduler):
        self._scheduler = scheduler

    def collect(self) -> Iterator[Metric]:
        stats = self._scheduler.stats.snapshot()
        label_names = sorted(self._scheduler.labels)
        label_values = [self._scheduler.labels[name] for name in label_names]
        prefix = f"{NAMESPACE}_{EXPORTER_SUBSYSTEM}"

        counters = (
            ('scrape', 'attempted', 'Scrapes dispatched.'),
            ('scrape_skipped', 'skipped', 'Scheduling ticks skipped because no scrape slot was free.'),
            ('scrape_failures', 'failed', 'Scrapes that failed to fetch or read the stats report.'),
            ('row_failures', 'row_failures', 'Stats rows or fields that could not be parsed.'),
        )
        for name, key, documentation in counters:
            family = CounterMetricFamily(f"{prefix}_{name}", documentation, labels=label_names)
            family.add_metric(label_values, stats[key])
            yield family

        in_flight = GaugeMetricFamily(
            f"{prefix}_scrape_in_flight", 'Scrapes currently running.', labels=label_names
        )
        in_flight.add_metric(label_values, stats['in_flight'])
        yield in_flight

        sources = GaugeMetricFamily(
            f"{prefix}_sources", 'Configured stats sources.', labels=label_names
        )
        sources.add_metric(label_values, len(self._scheduler.exporters))
        yield sources

def build_registry(scheduler: ScrapeScheduler) -> CollectorRegistry:
    """Registry exposing every exporter and the scheduler counters."""
    registry = CollectorRegistry(auto_describe=False)
    registry.register(StatsCollector(scheduler.exporters))
    registry.register(SchedulerCollector(scheduler))
    return registry

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Snapshot Files
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class SnapshotWriter:
    """Periodically dumps the rendered metrics to a file.

    Each snapshot goes to a timestamped temporary file next to the target
    and is renamed into place, so readers never see a partial file.
    """

    def __init__(self, path: Path, render: Callable[[], bytes], logger: logging.Logger):
        self.path = Path(path)
        self.render = render
        self.logger = logger

    def write(self) -> Path:
        stamp = ProgramConfig.now_utc().strftime('%Y%m%dT%H%M%S%fZ')
        temp_path = self.path.with_name(f".{self.path.name}.{stamp}.tmp")
        try:
            temp_path.write_bytes(self.render())
            os.rename(temp_path, self.path)
        except OSError:
            if temp_path.exists():
                temp_path.unlink()
            raise
        self.logger.verbose(lambda: f"Wrote snapshot {self.path}")
        return self.path

    async def run(self, period: float, shutdown_event: asyncio.Event) -> None:
        self.logger.info(f"Writing snapshots to {self.path} every {period}s")
        while not shutdown_event.is_set():
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=period)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await asyncio.to_thread(self.write)
            except OSError as e:
                self.logger.error(f"Failed to write snapshot {self.path}: {e}")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# HTTP Endpoint
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

INDEX_PAGE = b"""<html>
<head><title>Haproxy Exporter</title></head>
<body>
<h1>Haproxy Exporter</h1>
<p><a href="/metrics">Metrics</a></p>
<p><a href="/health">Health</a></p>
</body>
</html>
"""

class _LoggingRequestHandler(WSGIRequestHandler):
    """Send access logs to the program logger instead of stderr."""

    logger: Optional[logging.Logger] = None

    def log_message(self, format, *args):
        if self.logger:
            self.logger.debug(f"{self.address_string()} {format % args}")

class MetricsServer:
    """HTTP endpoint serving metrics, health and an index page.

    Endpoints:
        GET /metrics: Prometheus exposition of all sources and scheduler counters
        GET /health: Service health status as JSON
        GET /: Index page
    """

    def __init__(
        self,
        config: ProgramConfig,
        scheduler: ScrapeScheduler,
        registry: CollectorRegistry,
        logger: logging.Logger
    ):
        self.config = config
        self.scheduler = scheduler
        self.registry = registry
        self.logger = logger
        self._metrics_app = make_wsgi_app(registry)
        self._server = None
        self._thread = None

    def start(self) -> bool:
        """Start HTTP server in a separate thread."""
        host, port = self.config.listen_address
        try:
            handler = type('RequestHandler', (_LoggingRequestHandler,), {'logger': self.logger})
            self._server = make_server(host, port, self.create_wsgi_app(), handler_class=handler)
            self._thread = threading.Thread(
                target=self._server.serve_forever,
                name="MetricsServer",
                daemon=True
            )
            self._thread.start()
            self.logger.info(f"Listen {self.config.listen}")
            return True
        except Exception as e:
            self.logger.error(f"Failed to start HTTP server on {self.config.listen}: {e}")
            return False

    def stop(self) -> None:
        """Stop HTTP server."""
        if not self._server:
            return

        try:
            self.logger.info("Stopping HTTP server")
            self._server.shutdown()
            self._server.server_close()
            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=5)
                if self._thread.is_alive():
                    self.logger.warning("HTTP server thread failed to stop")
        except Exception as e:
            self.logger.error(f"Error stopping HTTP server: {e}")
        finally:
            self._server = None
            self._thread = None

    def _create_error_response(self, status: str, message: str) -> bytes:
        """Create standardized error response."""
        response = {
            "status": status,
            "error": message,
            "timestamp_utc": self.config.now_utc().isoformat()
        }
        return json.dumps(response, indent=2).encode()

    def create_wsgi_app(self):
        """Create WSGI application routing the three endpoints."""
        def app(environ, start_response):
            path = environ.get('PATH_INFO', '').rstrip('/')
            try:
                if path == '/metrics':
                    return self._metrics_app(environ, start_response)

                if path == '/health':
                    is_healthy = self.scheduler.stats.is_healthy(self.config.failure_threshold)
                    status = '200 OK' if is_healthy else '503 Service Unavailable'
                    start_response(status, [
                        ('Content-Type', 'application/json'),
                        ('Cache-Control', 'no-cache, no-store, must-revalidate')
                    ])
                    return [json.dumps(self.health_report(is_healthy), indent=2).encode()]

                if path == '':
                    start_response('200 OK', [('Content-Type', 'text/html')])
                    return [INDEX_PAGE]

                start_response('404 Not Found', [('Content-Type', 'application/json')])
                return [self._create_error_response("error", "Not Found")]

            except Exception as e:
                self.logger.error(f"Request error on {path}: {e}", exc_info=True)
                start_response('500 Internal Server Error', [('Content-Type', 'application/json')])
                return [self._create_error_response("error", str(e))]

        return app

    def health_report(self, is_healthy: bool) -> Dict[str, Any]:
        """Build the /health response body."""
        stats = self.scheduler.stats.snapshot()
        sources = []
        for exporter in self.scheduler.exporters:
            result = exporter.published
            sources.append({
                "uri": exporter.uri,
                "origin": exporter.source.origin,
                "labels": exporter.source.label_dict(),
                "samples": len(result.samples),
                "row_failures": result.row_failures,
                "failed": result.failed,
                "error": result.error,
                "last_scrape_datetime_utc": result.timestamp.isoformat() if result.timestamp else None,
                "last_scrape_seconds": round(result.duration, 3)
            })

        return {
            "service": {
                "status": "healthy" if is_healthy else "unhealthy",
                "up": True,
                "version": __version__,
                "current_datetime_utc": self.config.now_utc().isoformat(),
                "service_start_datetime_utc": self.config.start_time.isoformat(),
                "uptime_seconds": round(self.config.get_uptime_seconds(), 6),
                "process_id": os.getpid(),
                "systemd_managed": self.config.running_under_systemd
            },
            "stats": {
                "scheduler": dict(stats, failure_threshold=self.config.failure_threshold),
                "configuration": {
                    "scan_duration_ms": self.config.scan_duration,
                    "tick_interval_seconds": round(self.scheduler.tick_interval, 6),
                    "max_concurrent": self.scheduler.max_concurrent,
                    "timeout_seconds": self.config.timeout,
                    "metrics": [spec.name for spec in self.config.metric_specs]
                }
            },
            "sources": sources
        }

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Main Service Class and Entry Point
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ExporterService:
    """Main service class for the HAProxy exporter.

    Wires exporters, scheduler, HTTP endpoint and snapshot writer, and
    manages their lifecycle.

    Attributes:
        config (ProgramConfig): Program configuration
        logger (logging.Logger): Configured logger instance
        scheduler (ScrapeScheduler): Scrape scheduler owning the exporters
        registry (CollectorRegistry): Registry rendered on /metrics
        server (MetricsServer): HTTP endpoint
        snapshot_writer (Optional[SnapshotWriter]): Snapshot file writer
    """

    SHUTDOWN_TIMEOUT = 30  # seconds

    def __init__(self, config: ProgramConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger
        self.shutdown_event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self.logger.info("HAProxy exporter starting")

        exporters = []
        for source in self.config.sources:
            exporters.append(Exporter.from_source(
                source, self.config.timeout, self.config.metric_specs, self.logger
            ))
            origin = f" (from {source.origin})" if source.origin else ""
            self.logger.verbose(lambda: f"Added source {source.uri}{origin}")

        self.scheduler = ScrapeScheduler(
            exporters,
            cycle_duration=self.config.scan_duration / 1000,
            max_concurrent=self.config.max_concurrent,
            logger=self.logger,
            labels=self.config.labels
        )
        self.registry = build_registry(self.scheduler)
        self.server = MetricsServer(self.config, self.scheduler, self.registry, self.logger)

        self.snapshot_writer = None
        if self.config.snapshot_path:
            self.snapshot_writer = SnapshotWriter(
                self.config.snapshot_path,
                lambda: generate_latest(self.registry),
                self.logger
            )

    def _handle_signal(self, signum, frame):
        """Handle shutdown signals."""
        signal_name = signal.Signals(signum).name
        self.logger.info(f"Received {signal_name}, initiating shutdown...")
        if self._loop:
            self._loop.call_soon_threadsafe(self.shutdown_event.set)

    def check_listen(self) -> bool:
        """Check that the listen address can be bound."""
        host, port = self.config.listen_address
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            return True
        except OSError as e:
            self.logger.error(f"Listen address {self.config.listen} is not available: {e}")
            return False
        finally:
            sock.close()

    def _notify(self, notification: Notification) -> None:
        if self.config.running_under_systemd:
            notify(notification)

    async def _cleanup_async(self, tasks: List[asyncio.Task]) -> None:
        """Stop ticking, drain scrapes, stop the HTTP server."""
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self.logger.info("Waiting for in-flight scrapes...")
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.scheduler.shutdown, True),
                timeout=self.SHUTDOWN_TIMEOUT
            )
        except asyncio.TimeoutError:
            self.logger.warning(f"Scrapes did not finish within {self.SHUTDOWN_TIMEOUT} seconds")

        self.server.stop()

    async def run(self) -> int:
        """Main service loop."""
        self._loop = asyncio.get_running_loop()
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

        if not self.check_listen() or not self.server.start():
            self._notify(Notification.STOPPING)
            self.scheduler.shutdown(wait=False)
            return 1

        self._notify(Notification.READY)
        self.logger.info("Started")

        tasks = [asyncio.create_task(self.scheduler.run(self.shutdown_event))]
        if self.snapshot_writer:
            tasks.append(asyncio.create_task(
                self.snapshot_writer.run(self.config.snapshot_period, self.shutdown_event)
            ))

        try:
            await self.shutdown_event.wait()
            self.logger.info("Shutdown event received, stopping service")
            return 0
        except asyncio.CancelledError:
            self.logger.warning("Service operation cancelled")
            raise
        finally:
            self._notify(Notification.STOPPING)
            await self._cleanup_async(tasks)
            self.logger.info("Service shutdown complete")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

async def main(
    config_file: Optional[Path] = None,
    verbose: bool = False,
    listen: Optional[str] = None
) -> int:
    """Entry point for the exporter service."""
    program_logger = None
    try:
        source = ProgramSource(config_file=config_file)
        config = ProgramConfig(source)
        config.read(overrides={'listen': listen})
        program_logger = ProgramLogger(source, config, verbose=verbose)
        logger = program_logger.logger
        config.initialize()

        service = ExporterService(config, logger)
        return await service.run()

    except ConfigurationError as e:
        print(f"Fatal error in configuration: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Fatal error during startup: {e}", file=sys.stderr)
        return 1
    finally:
        if program_logger:
            program_logger.close()

@click.group(invoke_without_command=True)
@click.option('--config', 'config_file', default=None,
              type=click.Path(dir_okay=False, path_type=Path), help="config file to use")
@click.option('-v', '--verbose', is_flag=True, default=False, help="verbose output")
@click.option('--listen', default=None, help="listen address (default 127.0.0.1:9100)")
@click.pass_context
def cli(ctx, config_file: Optional[Path], verbose: bool, listen: Optional[str]):
    """HAProxy exporter expose HAProxy stats as Prometheus metrics."""
    if ctx.invoked_subcommand is None:
        sys.exit(asyncio.run(main(config_file, verbose, listen)))

@cli.command()
def version():
    """Print the version number."""
    click.echo(f"haproxy-exporter {__version__}")

if __name__ == '__main__':
    cli()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
