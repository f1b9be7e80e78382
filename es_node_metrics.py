#!/usr/bin/env python3
"""
Elasticsearch Node Metrics Check

This script queries the local node of an Elasticsearch cluster over its REST
API and prints JVM, OS and process metrics as flat timestamped lines, one per
metric, for consumption by a Graphite-style metrics pipeline.

Features:
- Detects the Elasticsearch version and picks the matching node endpoints
- Optional HTTP Basic authentication and HTTPS
- Merges the heap size from node info into the node stats
- Exits with a warning status when the node cannot be reached
"""

import copy
import json
import re
import sys
import logging
import socket
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, NamedTuple, Optional, Tuple
import argparse
import os
from pathlib import Path

try:
    import requests
    from requests.adapters import HTTPAdapter
    from urllib3.util.retry import Retry
except ImportError:
    print("Please install required packages: pip install requests")
    sys.exit(1)


CHECK_NAME = "ESNodeMetrics"

EXIT_OK = 0
EXIT_WARNING = 1
EXIT_CRITICAL = 2

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 9200
DEFAULT_TIMEOUT = 30.0

# Emitted in this order; each name is also the path inside a node document.
METRIC_NAMES = [
    'os.load_average',
    'jvm.mem.heap_used_in_bytes',
    'jvm.mem.heap_used_percent',
    'jvm.mem.non_heap_used_in_bytes',
    'jvm.gc.collectors.old.collection_count',
    'jvm.gc.collectors.young.collection_count',
    'jvm.gc.collectors.old.collection_time_in_millis',
    'jvm.gc.collectors.young.collection_time_in_millis',
    'jvm.threads.count',
    'os.cpu.idle',
    'os.cpu.stolen',
    'os.cpu.sys',
    'os.cpu.usage',
    'os.cpu.user',
    'os.mem.actual_free_in_bytes',
    'os.mem.actual_used_in_bytes',
    'os.mem.free_in_bytes',
    'os.mem.free_percent',
    'os.mem.used_in_bytes',
    'os.mem.used_percent',
    'os.swap.free_in_bytes',
    'os.swap.used_in_bytes',
    'process.cpu.percent',
    'process.cpu.sys_in_millis',
    'process.cpu.total_in_millis',
    'process.cpu.user_in_millis',
    'process.mem.resident_in_bytes',
    'process.mem.share_in_bytes',
    'process.mem.total_virtual_in_bytes',
    'process.open_file_descriptors',
]

LOAD_AVERAGE = 'os.load_average'
HEAP_MAX_PATH = 'jvm.mem.heap_max_in_bytes'

VERSION_PATTERN = re.compile(r'^\s*(\d+)(?:\.(\d+))?(?:\.(\d+))?')


class ConnectivityError(Exception):
    """The node could not be reached (refused or timed out)"""


class DocumentShapeError(Exception):
    """A response document does not have the expected structure"""


def load_config_from_file(config_path: str = "config.env") -> Dict[str, str]:
    """
    Load configuration from a .env file

    Args:
        config_path: Path to the configuration file

    Returns:
        Dictionary containing configuration values
    """
    config = {}
    config_file = Path(config_path)

    if not config_file.exists():
        return config

    try:
        with open(config_file, 'r') as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()

                # Skip empty lines and comments
                if not line or line.startswith('#'):
                    continue

                if '=' in line:
                    key, value = line.split('=', 1)
                    key = key.strip()
                    value = value.strip()

                    if (value.startswith('"') and value.endswith('"')) or \
                       (value.startswith("'") and value.endswith("'")):
                        value = value[1:-1]

                    config[key] = value
                else:
                    logging.getLogger(__name__).warning(
                        f"Invalid line {line_num} in {config_path}: {line}")

    except OSError as e:
        logging.getLogger(__name__).error(
            f"Error reading config file {config_path}: {e}")

    return config


def str_to_bool(value: str) -> bool:
    """Convert string to boolean"""
    if isinstance(value, bool):
        return value
    return value.lower() in ('true', '1', 'yes', 'on')


@dataclass(frozen=True)
class ConnectionParameters:
    """Where and how to reach the Elasticsearch node"""
    scheme: str = 'http'
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    user: Optional[str] = None
    password: Optional[str] = None
    timeout: Optional[float] = DEFAULT_TIMEOUT

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"

    @property
    def has_credentials(self) -> bool:
        return bool(self.user) and bool(self.password)


def connection_parameters_from_args(args) -> ConnectionParameters:
    """Build connection parameters from parsed command line arguments"""
    return ConnectionParameters(
        scheme='https' if args.https else 'http',
        host=args.host,
        port=args.port,
        user=args.user,
        password=args.password,
        timeout=args.timeout,
    )


class EsVersion(NamedTuple):
    """Elasticsearch version, ordered by (major, minor, patch)"""
    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, text: str) -> 'EsVersion':
        """
        Parse a version string such as "1.7.0", "5.0.0-alpha1" or
        "6.8.23-SNAPSHOT"

        Only the leading numeric components take part in comparisons;
        missing minor/patch numbers count as zero.
        """
        match = VERSION_PATTERN.match(str(text))
        if match is None:
            raise DocumentShapeError(f"Unparseable version number: {text!r}")
        return cls(*(int(part or 0) for part in match.groups()))

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


V1 = EsVersion(1, 0, 0)
V2 = EsVersion(2, 0, 0)


class Endpoints(NamedTuple):
    info_path: str
    stats_path: str


def select_endpoints(version: EsVersion) -> Endpoints:
    """Pick the node info and node stats paths for the given server version"""
    if version >= V1:
        return Endpoints('/_nodes/_local', '/_nodes/_local/stats')
    return Endpoints('/_cluster/nodes/_local', '/_cluster/nodes/_local/stats')


def structured_load_average(version: EsVersion) -> bool:
    """From 2.0.0 on the load average is reported as-is instead of an array"""
    return version >= V2


def get_value_at_path(document: Any, path: str) -> Any:
    """
    Walk a dotted path through nested JSON objects

    Args:
        document: Parsed JSON document
        path: Dotted key path, e.g. "jvm.mem.heap_used_in_bytes"

    Returns:
        The value found at the path

    Raises:
        DocumentShapeError: if a key is missing or an intermediate value is
            not an object
    """
    current = document
    walked = []
    for key in path.split('.'):
        if not isinstance(current, dict):
            parent = '.'.join(walked) or '<root>'
            raise DocumentShapeError(f"Expected an object at '{parent}'")
        walked.append(key)
        if key not in current:
            raise DocumentShapeError(f"Missing field '{'.'.join(walked)}'")
        current = current[key]
    return current


def get_number_at_path(document: Any, path: str):
    """Like get_value_at_path, but the value must be an int or a float"""
    value = get_value_at_path(document, path)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DocumentShapeError(f"Expected a number at '{path}', got {value!r}")
    return value


def get_array_at_path(document: Any, path: str) -> List[Any]:
    """Like get_value_at_path, but the value must be an array"""
    value = get_value_at_path(document, path)
    if not isinstance(value, list):
        raise DocumentShapeError(f"Expected an array at '{path}', got {value!r}")
    return value


def single_node(document: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return the payload of the only node in a node info/stats response

    The "nodes" object is keyed by a generated node id; the local node
    endpoints must return exactly one entry.
    """
    nodes = get_value_at_path(document, 'nodes')
    if not isinstance(nodes, dict):
        raise DocumentShapeError("Expected an object at 'nodes'")
    if len(nodes) != 1:
        raise DocumentShapeError(
            f"Expected exactly one node in response, found {len(nodes)}")
    node = next(iter(nodes.values()))
    if not isinstance(node, dict):
        raise DocumentShapeError("Expected an object as node payload")
    return node


def merge_heap_max(stats_node: Dict[str, Any], info_node: Dict[str, Any]) -> Dict[str, Any]:
    """
    Copy the maximum heap size from node info into node stats

    Node stats do not report the configured heap maximum, so it is taken from
    node info. The inputs are left untouched.

    Args:
        stats_node: Node payload from the stats endpoint
        info_node: Node payload from the info endpoint

    Returns:
        A copy of stats_node with jvm.mem.heap_max_in_bytes set
    """
    heap_max = get_number_at_path(info_node, HEAP_MAX_PATH)
    merged = copy.deepcopy(stats_node)
    jvm_mem = get_value_at_path(merged, 'jvm.mem')
    if not isinstance(jvm_mem, dict):
        raise DocumentShapeError("Expected an object at 'jvm.mem'")
    jvm_mem['heap_max_in_bytes'] = heap_max
    return merged


def extract_metrics(node: Dict[str, Any], version: EsVersion) -> 'OrderedDict[str, Any]':
    """
    Read the fixed metric set from a node stats payload

    Args:
        node: Node stats payload (usually the result of merge_heap_max)
        version: Version of the queried server

    Returns:
        Ordered mapping of metric name to value, in METRIC_NAMES order
    """
    metrics = OrderedDict()
    for name in METRIC_NAMES:
        if name == LOAD_AVERAGE:
            if structured_load_average(version):
                metrics[name] = get_value_at_path(node, name)
            else:
                load = get_array_at_path(node, name)
                if not load:
                    raise DocumentShapeError(f"Empty array at '{name}'")
                if isinstance(load[0], bool) or not isinstance(load[0], (int, float)):
                    raise DocumentShapeError(
                        f"Expected a number at '{name}[0]', got {load[0]!r}")
                metrics[name] = load[0]
        else:
            metrics[name] = get_number_at_path(node, name)
    return metrics


def format_value(value: Any) -> str:
    """Render a metric value on a single line"""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return json.dumps(value, separators=(',', ':'), sort_keys=True)


def format_metric_lines(scheme: str, metrics: Dict[str, Any], timestamp: int) -> List[str]:
    """Format metrics as "<scheme>.<name> <value> <timestamp>" lines"""
    return [
        f"{scheme}.{name} {format_value(value)} {timestamp}"
        for name, value in metrics.items()
    ]


def is_connection_refused(error: BaseException) -> bool:
    """
    Tell whether a requests ConnectionError was caused by a refused connection

    requests wraps the socket error as ConnectionError(MaxRetryError(reason=
    NewConnectionError)), so the chain is searched through exception args,
    urllib3's ``reason`` and the ``__cause__``/``__context__`` links.
    DNS, TLS and other connect failures are not refusals.
    """
    pending = [error]
    seen = set()
    while pending:
        current = pending.pop()
        if not isinstance(current, BaseException) or id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, ConnectionRefusedError):
            return True
        pending.append(getattr(current, 'reason', None))
        pending.append(current.__cause__)
        pending.append(current.__context__)
        pending.extend(arg for arg in current.args if isinstance(arg, BaseException))
    return False


class NodeStatsClient:
    """Fetch node info and node stats from a single Elasticsearch node"""

    def __init__(self, params: ConnectionParameters):
        """
        Initialize the client

        Args:
            params: Resolved connection parameters
        """
        self.params = params
        self.base_url = params.base_url
        self.logger = self._setup_logging()
        self.session = self._create_session()

    def _setup_logging(self) -> logging.Logger:
        """Set up logging configuration"""
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        return logging.getLogger(__name__)

    def _create_session(self) -> requests.Session:
        """Create HTTP session that tries every request exactly once"""
        session = requests.Session()
        # read=False: read timeouts are raised as ReadTimeout, not wrapped in MaxRetryError
        retry_strategy = Retry(total=0, read=False)
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        session.headers.update({'Accept': 'application/json'})
        if self.params.has_credentials:
            session.auth = (self.params.user, self.params.password)

        return session

    def get_resource(self, resource: str) -> Any:
        """
        GET a resource from the node and parse it as JSON

        Args:
            resource: Path starting with "/"

        Returns:
            Parsed JSON document

        Raises:
            ConnectivityError: on connection refused or timeout
        """
        url = f"{self.base_url}{resource}"
        self.logger.debug(f"GET {url}")
        try:
            response = self.session.get(url, timeout=self.params.timeout)
        except requests.exceptions.Timeout as e:
            self.logger.debug(f"Request to {url} timed out: {e}")
            raise ConnectivityError("Connection timed out") from e
        except (requests.exceptions.SSLError, requests.exceptions.ProxyError):
            raise
        except requests.exceptions.ConnectionError as e:
            if not is_connection_refused(e):
                raise
            self.logger.debug(f"Connection to {url} refused: {e}")
            raise ConnectivityError("Connection refused") from e

        response.raise_for_status()
        return response.json()

    def acquire_version(self) -> EsVersion:
        """Read the server version from the root resource"""
        info = self.get_resource('/')
        number = get_value_at_path(info, 'version.number')
        version = EsVersion.parse(number)
        self.logger.debug(f"Elasticsearch version: {version}")
        return version

    def collect_metrics(self, timestamp: Optional[int] = None) -> Tuple[int, 'OrderedDict[str, Any]']:
        """
        Collect the full metric set from the node

        Args:
            timestamp: Unix timestamp to stamp the metrics with (defaults to now)

        Returns:
            Tuple of (timestamp, ordered metrics)
        """
        version = self.acquire_version()
        endpoints = select_endpoints(version)
        self.logger.debug(
            f"Using endpoints {endpoints.info_path} and {endpoints.stats_path}")

        info = self.get_resource(endpoints.info_path)
        stats = self.get_resource(endpoints.stats_path)

        if timestamp is None:
            timestamp = int(time.time())
        node = merge_heap_max(single_node(stats), single_node(info))
        return timestamp, extract_metrics(node, version)


def setup_argument_parser(file_config: Dict[str, str], config_file_path: str,
                          hostname: str) -> argparse.ArgumentParser:
    """Set up command line argument parser with config file defaults"""
    parser = argparse.ArgumentParser(
        description='Elasticsearch node metrics',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration can be provided via:
1. Command line arguments (highest priority)
2. config.env file (if present)
3. Environment variables (lowest priority)

Example config.env file:
    ELASTICSEARCH_HOST=es01.example.com
    ELASTICSEARCH_PORT=9200
    ELASTICSEARCH_USER=monitor
    ELASTICSEARCH_PASSWORD=secret
    ELASTICSEARCH_HTTPS=true
    METRIC_SCHEME=es01.elasticsearch
        """
    )

    def get_default(key: str, default=None):
        """Get default value from file config, then env vars, then provided default"""
        return file_config.get(key, os.getenv(key, default))

    parser.add_argument('-s', '--scheme',
                        default=get_default('METRIC_SCHEME', f"{hostname}.elasticsearch"),
                        help='Metric naming scheme, text to prepend to metric names '
                             '(default: <hostname>.elasticsearch)')
    parser.add_argument('-H', '--host',
                        default=get_default('ELASTICSEARCH_HOST', DEFAULT_HOST),
                        help='Elasticsearch server host (default: localhost)')
    parser.add_argument('-p', '--port',
                        type=int,
                        default=get_default('ELASTICSEARCH_PORT', DEFAULT_PORT),
                        help='Elasticsearch port (default: 9200)')
    parser.add_argument('-u', '--user',
                        default=get_default('ELASTICSEARCH_USER'),
                        help='Elasticsearch user')
    parser.add_argument('-P', '--password',
                        default=get_default('ELASTICSEARCH_PASSWORD'),
                        help='Elasticsearch password')
    parser.add_argument('-e', '--https',
                        action='store_true',
                        default=str_to_bool(get_default('ELASTICSEARCH_HTTPS', 'false')),
                        help='Enables HTTPS')
    parser.add_argument('-t', '--timeout',
                        type=float,
                        default=get_default('REQUEST_TIMEOUT', DEFAULT_TIMEOUT),
                        help='Per-request timeout in seconds (default: 30)')
    parser.add_argument('--verbose', '-v',
                        action='store_true',
                        default=str_to_bool(get_default('VERBOSE', 'false')),
                        help='Enable verbose logging')
    parser.add_argument('--config-file',
                        default=config_file_path,
                        help='Path to configuration file (default: config.env)')

    return parser


def report(status: str, message: str):
    """Print a one-line check status"""
    print(f"{CHECK_NAME} {status}: {message}")


def run_check(args) -> int:
    """Run the check with the given arguments"""
    client = NodeStatsClient(connection_parameters_from_args(args))
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        timestamp, metrics = client.collect_metrics()
    except ConnectivityError as e:
        client.logger.warning(f"{client.base_url}: {e}")
        report('WARNING', str(e))
        return EXIT_WARNING
    except KeyboardInterrupt:
        client.logger.info("Check interrupted by user")
        return EXIT_CRITICAL
    except Exception as e:
        client.logger.exception(f"Unexpected error: {e}")
        report('CRITICAL', f"Check failed to run: {e}")
        return EXIT_CRITICAL

    for line in format_metric_lines(args.scheme, metrics, timestamp):
        print(line)
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """Main function"""
    config_file_path = os.getenv('CONFIG_FILE', 'config.env')

    # Quick parse to get config file if specified
    temp_parser = argparse.ArgumentParser(add_help=False)
    temp_parser.add_argument('--config-file', default=config_file_path)
    temp_args, _ = temp_parser.parse_known_args(argv)

    file_config = load_config_from_file(temp_args.config_file)

    parser = setup_argument_parser(file_config, temp_args.config_file,
                                   socket.gethostname())
    args = parser.parse_args(argv)

    return run_check(args)


if __name__ == '__main__':
    sys.exit(main())
