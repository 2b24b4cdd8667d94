#!/usr/bin/env python3
"""
printwatch_collector.py

PaperCut Print Log Collector and Collector API Poster (YAML configuration version)

Tails the daily PaperCut print-audit CSV log, converts newly appended rows into
print events, checks with the collector API whether each event is already known,
posts the ones that are not, and keeps every event that could not be delivered
in a local pending queue that is retried on the next polling cycle.

Compatible with Linux and Windows hosts running Python 3.7+.

Requires:
    - requests
    - pyyaml
    - psutil

License: GNU GPL v3 or later

"""

import os
import re
import io
import csv
import socket
import time
import datetime
import tempfile
import threading
import requests
import argparse
import logging
import yaml
import psutil
import sys
import warnings
import typing
from pathlib import Path
import json
import signal
from requests.packages.urllib3.exceptions import InsecureRequestWarning

# --- Logging Setup ---

class ISO8601Formatter(logging.Formatter):
    """
    Logging formatter producing ISO8601 timestamps with milliseconds and timezone.

    Returns timestamps in the format: YYYY-MM-DDTHH:MM:SS.mmm+ZZZZ
    """
    def formatTime(self, record, datefmt=None):
        t = time.localtime(record.created)
        s = time.strftime('%Y-%m-%dT%H:%M:%S', t)
        ms = int(record.msecs)
        tz = time.strftime('%z', t)
        return f"{s}.{ms:03d}{tz}"

def setup_logging(debug: bool = False, log_file: typing.Optional[str] = None) -> None:
    """
    Configure logging to stdout and, optionally, to an append-only log file.

    Args:
        debug (bool): Enable debug-level logging if True.
        log_file (str, optional): Path of a file that receives the same records.
    """
    level = logging.DEBUG if debug else logging.INFO
    logger = logging.getLogger()
    logger.handlers.clear()
    logger.setLevel(level)
    formatter = ISO8601Formatter('%(asctime)s %(levelname)s %(message)s')
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    console.setLevel(level)
    logger.addHandler(console)
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

# --- Argument Parsing ---

def parse_args(argv: typing.Optional[list] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        argparse.Namespace: Parsed arguments.
    """
    parser = argparse.ArgumentParser(description="PaperCut print log collector and collector API poster (YAML config)")
    parser.add_argument('--config', default='config.yaml', help='Path to YAML configuration file')
    parser.add_argument('--state-dir', default='state', help='Directory for tail offset state')
    parser.add_argument('--queue-dir', default='pending', help='Directory for pending impression files')
    parser.add_argument('--log-file', default=None, help='Also write log records to this file')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    parser.add_argument('--test', action='store_true', help='Test mode: do not post, log the impressions that would be sent')
    parser.add_argument('--once', action='store_true', help='Run a single polling cycle and exit')
    return parser.parse_args(argv)

# --- Configuration Loading and Validation ---

DEFAULT_LOG_DIR = r'C:\Program Files (x86)\PaperCut Print Logger\logs\csv\daily'

CONFIG_DEFAULTS = {
    'sector': '',
    'company_id': 0,
    'log_dir': DEFAULT_LOG_DIR,
    'api_base_url': 'http://localhost:3005',
    'polling_interval_seconds': 10,
    'timeout_seconds': 30,
}

def load_config(config_path: str) -> dict:
    """
    Load YAML configuration from file, validate it and fill in defaults.

    JSON configuration files are accepted as well, since YAML is a superset of JSON.

    Args:
        config_path (str): Path to YAML configuration file.

    Returns:
        dict: Configuration with every key of CONFIG_DEFAULTS present.

    Raises:
        OSError: If the file cannot be read.
        ValueError: If the configuration is malformed.
    """
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f)
    if config is None:
        config = {}
    validate_config(config)
    return apply_defaults(config)

def validate_config(config: dict) -> None:
    """
    Validate the types of the configuration values that are present.

    Args:
        config (dict): Configuration dictionary.

    Raises:
        ValueError: If the document is not a mapping or a value has the wrong type.
    """
    if not isinstance(config, dict):
        raise ValueError("Configuration must be a mapping of keys to values")
    for key in ('sector', 'log_dir', 'api_base_url'):
        value = config.get(key)
        if value is not None and not isinstance(value, str):
            raise ValueError(f"Config key {key} must be a string, got {value!r}")
    company_id = config.get('company_id')
    if company_id is not None and (isinstance(company_id, bool) or not isinstance(company_id, int)):
        raise ValueError(f"Config key company_id must be an integer, got {company_id!r}")
    for key in ('polling_interval_seconds', 'timeout_seconds'):
        value = config.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"Config key {key} must be a whole number of seconds, got {value!r}")
    tls = config.get('tls')
    if tls is not None and not isinstance(tls, dict):
        raise ValueError("Config key tls must be a mapping")

def apply_defaults(config: dict) -> dict:
    """
    Return a copy of config with defaults applied to absent, empty or zero values.
    """
    merged = dict(config)
    for key, default in CONFIG_DEFAULTS.items():
        if not merged.get(key):
            logging.warning("%s not set in configuration, using default: %r", key, default)
            merged[key] = default
    merged['api_base_url'] = merged['api_base_url'].rstrip('/')
    merged['tls'] = merged.get('tls') or {}
    return merged

# --- Network Information ---

VIRTUAL_INTERFACE_MARKERS = ('virtual', 'vmware', 'hyper-v')
NULL_MAC = '00:00:00:00:00:00'

def _interface_addresses(addrs: list) -> typing.Tuple[typing.Optional[str], typing.Optional[str]]:
    """
    Pick the first non-loopback IPv4 address and the hardware address of one interface.

    Hardware addresses are normalized to lowercase colon-separated form, since
    Windows reports them with dashes.
    """
    ip = mac = None
    for addr in addrs:
        if addr.family == socket.AF_INET and ip is None and not addr.address.startswith('127.'):
            ip = addr.address
        elif addr.family == psutil.AF_LINK and mac is None:
            mac = addr.address.replace('-', ':').lower()
    return ip, mac

def get_network_info() -> typing.Tuple[str, str]:
    """
    Find the host's IPv4 address and hardware address.

    Walks the interfaces in name order and returns the first one that is up,
    is not a loopback, does not look like a virtual adapter, has a hardware
    address and carries a non-loopback IPv4 address.

    Returns:
        tuple: (ip, mac) as strings.

    Raises:
        LookupError: If no interface qualifies.
        OSError: If the interface list cannot be read.
    """
    addresses = psutil.net_if_addrs()
    stats = psutil.net_if_stats()
    for iface in sorted(addresses):
        iface_stats = stats.get(iface)
        if iface_stats is None or not iface_stats.isup:
            continue
        if 'loopback' in getattr(iface_stats, 'flags', '').split(','):
            continue
        if any(marker in iface.lower() for marker in VIRTUAL_INTERFACE_MARKERS):
            continue
        ip, mac = _interface_addresses(addresses[iface])
        if not mac or mac == NULL_MAC:
            logging.debug("Interface %s has no hardware address, skipping", iface)
            continue
        if ip is None:
            logging.debug("Interface %s has no usable IPv4 address, skipping", iface)
            continue
        return ip, mac
    raise LookupError("no suitable network interface found")

# --- State Persistence ---

def write_json_atomic(path, data) -> None:
    """
    Write data as JSON to path so that readers see either the old or the new content.

    The JSON goes to a temporary file in the same directory, is flushed to disk,
    and is then renamed over path. On POSIX the directory is flushed as well so
    the rename itself survives a crash.
    """
    path = Path(path)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), suffix='.tmp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, str(path))
    except Exception:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    if os.name == 'posix':
        dir_fd = os.open(str(path.parent), os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

def load_state(state_dir: str, name: str) -> dict:
    """
    Load collector state from a JSON file.

    Args:
        state_dir (str): Directory for state files.
        name (str): State name.

    Returns:
        dict: State data, or empty dict if not found.
    """
    path = Path(state_dir) / f"{name}.json"
    if path.exists():
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    return {}

def save_state(state_dir: str, name: str, state: dict) -> None:
    """
    Save collector state to a JSON file atomically.
    """
    write_json_atomic(Path(state_dir) / f"{name}.json", state)

# --- Print Events ---

TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'
TIMESTAMP_RE = re.compile(r'^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$')
COUNT_RE = re.compile(r"^\+?[0-9]+$")

# Column layout of the PaperCut daily CSV log:
# Time,User,Pages,Copies,Printer,Document Name,Client,Paper Size,Language,Height,Width,Duplex,Grayscale,Size
MIN_COLUMNS = 14

# (attribute, JSON key) pairs understood by the collector API
STRING_FIELDS = (
    ('user', 'usuario'),
    ('sector', 'setor'),
    ('printer', 'impressora'),
    ('document', 'nomearquivo'),
    ('document_type', 'tipo'),
    ('client', 'nomepc'),
    ('paper_size', 'tipopage'),
    ('color_mode', 'cor'),
    ('size_label', 'tamanho'),
    ('ip', 'ip'),
    ('mac', 'mac'),
)
INT_FIELDS = (
    ('pages', 'paginas'),
    ('copies', 'copias'),
    ('company_id', 'empresa'),
)

class PrintEvent(typing.NamedTuple):
    """
    One print job from the PaperCut log, normalized for the collector API.

    Events compare by value; two events are the same impression when every
    field matches.
    """
    date: datetime.date
    time: datetime.time
    user: str
    sector: str
    pages: int
    copies: int
    printer: str
    document: str
    document_type: str
    client: str
    paper_size: str
    color_mode: str
    size_label: str
    ip: str
    mac: str
    company_id: int

    def to_json(self) -> dict:
        """Return the JSON body posted to the collector API."""
        body = {
            'data': self.date.strftime('%Y-%m-%d'),
            'hora': self.time.strftime('%H:%M:%S'),
        }
        for attr, key in STRING_FIELDS + INT_FIELDS:
            body[key] = getattr(self, attr)
        return body

    @classmethod
    def from_json(cls, body) -> 'PrintEvent':
        """
        Rebuild an event from its JSON body.

        Raises:
            ValueError: If a key is missing or a value has the wrong type.
        """
        if not isinstance(body, dict):
            raise ValueError("print event must be a JSON object")
        day = body.get('data', body.get('date'))
        if not isinstance(day, str) or not isinstance(body.get('hora'), str):
            raise ValueError("print event needs string 'data' and 'hora' values")
        values = {
            'date': datetime.datetime.strptime(day, '%Y-%m-%d').date(),
            'time': datetime.datetime.strptime(body['hora'], '%H:%M:%S').time(),
        }
        for attr, key in STRING_FIELDS:
            value = body.get(key)
            if not isinstance(value, str):
                raise ValueError(f"print event key {key!r} must be a string, got {value!r}")
            values[attr] = value
        for attr, key in INT_FIELDS:
            value = body.get(key)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"print event key {key!r} must be an integer, got {value!r}")
            values[attr] = value
        return cls(**values)

# --- Record Parsing ---

class SkipRecord(ValueError):
    """
    A CSV row that cannot become a print event. Only that row is dropped.
    """
    def __init__(self, reason: str, row: typing.Optional[list] = None):
        super().__init__(reason)
        self.reason = reason
        self.row = row

def parse_count(value: str, default: int, label: str) -> int:
    """
    Parse a non-negative integer column, falling back to default with a warning.
    """
    value = value.strip()
    if COUNT_RE.match(value):
        return int(value)
    logging.warning("Could not parse %s %r to int, using %d", label, value, default)
    return default

def document_type(document: str) -> str:
    """
    Return the lowercase extension of a document name without its dot, or ''.
    """
    name = re.split(r'[\\/]', document)[-1]
    dot = name.rfind('.')
    if dot < 0:
        return ''
    return name[dot + 1:].lower()

def parse_record(
    row: list,
    config: dict,
    network_info: typing.Optional[typing.Callable[[], typing.Tuple[str, str]]] = None
) -> PrintEvent:
    """
    Convert one PaperCut CSV row into a PrintEvent.

    Args:
        row (list): Fields of one CSV record.
        config (dict): Configuration; supplies sector and company_id.
        network_info (callable, optional): Returns the (ip, mac) pair of this host.
            Defaults to get_network_info.

    Returns:
        PrintEvent: The normalized event.

    Raises:
        SkipRecord: If the row has fewer than 14 columns or an unparseable timestamp.

    Note:
        - Unparseable page and copy counts become 0 and 1.
        - The address pair is the host's address at parse time, never taken from the row.
    """
    if len(row) < MIN_COLUMNS:
        raise SkipRecord("too few columns", row)
    fields = [field.strip() for field in row]
    if not TIMESTAMP_RE.match(fields[0]):
        raise SkipRecord("unparseable timestamp", row)
    try:
        printed_at = datetime.datetime.strptime(fields[0], TIMESTAMP_FORMAT)
    except ValueError:
        raise SkipRecord("unparseable timestamp", row)

    if network_info is None:
        network_info = get_network_info
    try:
        ip, mac = network_info()
    except (LookupError, OSError) as e:
        logging.warning("Could not get network info: %s. IP and MAC will be empty.", e)
        ip, mac = '', ''

    return PrintEvent(
        date=printed_at.date(),
        time=printed_at.time(),
        user=fields[1],
        sector=config['sector'],
        pages=parse_count(fields[2], 0, 'pages'),
        copies=parse_count(fields[3], 1, 'copies'),
        printer=fields[4],
        document=fields[5],
        document_type=document_type(fields[5]),
        client=fields[6],
        paper_size=fields[7],
        color_mode=fields[12],
        size_label=fields[13],
        ip=ip,
        mac=mac,
        company_id=config['company_id'],
    )

# --- Log Tailing ---

LOG_FILE_TEMPLATE = 'papercut-print-log-{day}.csv'

def log_file_path(log_dir: str, day: datetime.date) -> str:
    """
    Absolute path of the PaperCut daily log for a given day.
    """
    name = LOG_FILE_TEMPLATE.format(day=day.strftime('%Y-%m-%d'))
    return os.path.abspath(os.path.join(log_dir, name))

class LogTailer:
    """
    Reads the rows appended to PaperCut daily logs since the previous call.

    The tailer keeps the byte offset consumed so far for every log file it has
    opened. With a state directory the offsets are also saved to
    offsets.json there, so a restarted collector resumes instead of replaying
    the day's file.
    """
    STATE_NAME = 'offsets'

    def __init__(self, state_dir: typing.Optional[str] = None) -> None:
        self._state_dir = state_dir
        self._offsets: typing.Dict[str, int] = {}
        if state_dir:
            self._offsets = self._load_offsets()

    def _load_offsets(self) -> dict:
        try:
            saved = load_state(self._state_dir, self.STATE_NAME)
        except (OSError, ValueError) as e:
            logging.warning("Could not load tail offsets from %s, log files will be read from the start: %s", self._state_dir, e)
            return {}
        if not isinstance(saved, dict):
            logging.warning("Ignoring malformed tail offsets in %s", self._state_dir)
            return {}
        return {
            path: offset for path, offset in saved.items()
            if isinstance(offset, int) and not isinstance(offset, bool) and offset >= 0
        }

    def _save_offsets(self) -> None:
        if not self._state_dir:
            return
        try:
            save_state(self._state_dir, self.STATE_NAME, self._offsets)
        except OSError as e:
            logging.error("Could not save tail offsets to %s: %s", self._state_dir, e)

    @property
    def offsets(self) -> dict:
        """Copy of the path -> consumed byte offset map."""
        return dict(self._offsets)

    def offset(self, path: str) -> int:
        return self._offsets.get(os.path.abspath(path), 0)

    def read_new_records(self, log_dir: str, day: datetime.date) -> typing.Iterator[list]:
        """
        Yield the CSV rows appended to the day's log since the last call.

        Args:
            log_dir (str): Directory holding the PaperCut daily logs.
            day (datetime.date): Day whose log is read.

        Yields:
            list: Fields of each new CSV record.

        Raises:
            OSError: If the log file exists but cannot be opened or read.

        Note:
            - A missing file yields nothing; today's log may not exist yet.
            - Reading from offset 0 discards the header record first.
            - Only complete lines are consumed; a partially written last line
              is left for the next call.
            - Rows the CSV reader rejects are logged and skipped.
            - The stored offset advances once the generator is exhausted.
        """
        path = log_file_path(log_dir, day)
        try:
            fhandle = open(path, 'rb')
        except FileNotFoundError:
            logging.info("PaperCut log file for %s does not exist yet: %s", day, path)
            return
        with fhandle:
            offset = self._offsets.get(path)
            if offset is None:
                logging.info("Starting to read new log file %s from offset 0", path)
                offset = self._offsets[path] = 0
            size = os.fstat(fhandle.fileno()).st_size
            if size < offset:
                logging.warning(
                    "Log file %s is shorter (%d bytes) than its stored offset %d, reading it from the start",
                    path, size, offset
                )
                offset = 0
            fhandle.seek(offset)
            data = fhandle.read()

        end = data.rfind(b'\n') + 1
        text = data[:end].decode('utf-8', errors='replace')
        reader = csv.reader(io.StringIO(text, newline=''), delimiter=',', strict=False)

        if offset == 0 and end:
            try:
                next(reader, None)
            except csv.Error as e:
                logging.warning("Failed to read CSV header from %s: %s", path, e)

        row_count = 0
        while True:
            try:
                row = next(reader)
            except StopIteration:
                break
            except csv.Error as e:
                logging.warning("Failed to read CSV record from %s, skipping: %s", path, e)
                continue
            if not row:
                continue
            row_count += 1
            yield row

        self._offsets[path] = offset + end
        self._save_offsets()
        logging.debug("Read %d new record(s) from %s, offset now %d", row_count, path, offset + end)

# --- Collector API Delivery ---

VERIFY_PATH = '/central/verifyimpression'
INGEST_PATH = '/central/receptprintreq'
VERIFY_TIMEOUT = 15

DELIVERED = 'delivered'
ALREADY_EXISTS = 'already_exists'
FAILED = 'failed'

class DeliveryResult(typing.NamedTuple):
    """Outcome of delivering one event: DELIVERED, ALREADY_EXISTS or FAILED."""
    status: str
    reason: str = ''

    @property
    def ok(self) -> bool:
        return self.status in (DELIVERED, ALREADY_EXISTS)

class CollectorError(Exception):
    """The collector API could not be reached or answered with an error status."""

def get_verify_from_tls_opts(tls_opts: dict):
    """
    Determine whether to verify SSL certificates based on TLS options.

    Args:
        tls_opts (dict): TLS options.

    Returns:
        bool or str: True/False or path to CA cert.
    """
    ca_cert = tls_opts.get("ca_cert", True)
    if isinstance(ca_cert, str) and ca_cert.strip().lower() == "false":
        warnings.simplefilter('ignore', InsecureRequestWarning)
        return False
    return ca_cert if ca_cert else True

class CollectorClient:
    """
    Posts print events to the collector API with a verify-then-send exchange.

    The verify endpoint is asked first whether the impression is already
    stored; only when it is not is the event posted to the ingest endpoint.
    """

    def __init__(
        self,
        api_base_url: str,
        timeout: float = CONFIG_DEFAULTS['timeout_seconds'],
        tls_opts: typing.Optional[dict] = None,
        test_mode: bool = False
    ) -> None:
        base = api_base_url.rstrip('/')
        self.verify_url = base + VERIFY_PATH
        self.ingest_url = base + INGEST_PATH
        self._timeout = timeout
        self._test_mode = test_mode
        tls_opts = tls_opts or {}
        self._request_opts = {"verify": get_verify_from_tls_opts(tls_opts)}
        if tls_opts.get("client_cert") and tls_opts.get("client_key"):
            self._request_opts["cert"] = (tls_opts["client_cert"], tls_opts["client_key"])

    def _post(self, url: str, event: PrintEvent, timeout: float) -> requests.Response:
        try:
            return requests.post(url, json=event.to_json(), timeout=timeout, **self._request_opts)
        except requests.RequestException as e:
            raise CollectorError(f"HTTP POST to {url} failed: {e}") from e

    def verify_exists(self, event: PrintEvent) -> bool:
        """
        Ask the verify endpoint whether the collector already has this impression.

        Returns:
            bool: True only when the response carries status "true".

        Raises:
            CollectorError: On transport failure or a non-200 status.

        Note:
            - A body that is not valid JSON is taken to mean the impression does not exist.
        """
        logging.debug("Verifying impression existence at %s", self.verify_url)
        resp = self._post(self.verify_url, event, VERIFY_TIMEOUT)
        if resp.status_code != 200:
            raise CollectorError(
                f"verification API {self.verify_url} returned non-200 status: {resp.status_code} - {resp.text.strip()[:200]}"
            )
        logging.debug("Verification API raw response: %s", resp.text)
        try:
            body = resp.json()
        except ValueError as e:
            logging.warning("Could not parse JSON from verification API, assuming impression does not exist: %s", e)
            return False
        return isinstance(body, dict) and body.get('status') == 'true'

    def send(self, event: PrintEvent) -> None:
        """
        Post the event to the ingest endpoint.

        Raises:
            CollectorError: On transport failure or a status other than 200/201.
        """
        logging.debug("Sending impression to %s: %s", self.ingest_url, event.to_json())
        resp = self._post(self.ingest_url, event, self._timeout)
        if resp.status_code not in (200, 201):
            raise CollectorError(
                f"API {self.ingest_url} returned non-200/201 status: {resp.status_code} - {resp.text.strip()[:200]}"
            )
        logging.debug("API response status for %s: %s", self.ingest_url, resp.status_code)

    def deliver(self, event: PrintEvent) -> DeliveryResult:
        """
        Deliver one event: verify, then send if the collector does not have it.

        Returns:
            DeliveryResult: DELIVERED, ALREADY_EXISTS, or FAILED with a reason.
        """
        if self._test_mode:
            logging.info("[TEST MODE] Would post impression to %s: %s", self.ingest_url, event.to_json())
            return DeliveryResult(DELIVERED)
        try:
            exists = self.verify_exists(event)
        except CollectorError as e:
            logging.warning("API_COMM_FAIL (Verify) for user %s: %s", event.user, e)
            return DeliveryResult(FAILED, str(e))
        if exists:
            logging.info("Impression for user %s at %s %s already exists, skipping.", event.user, event.date, event.time)
            return DeliveryResult(ALREADY_EXISTS)
        try:
            self.send(event)
        except CollectorError as e:
            logging.warning("API_COMM_FAIL (Send) for user %s: %s", event.user, e)
            return DeliveryResult(FAILED, str(e))
        logging.info("Successfully sent print data for user %s at %s %s.", event.user, event.date, event.time)
        return DeliveryResult(DELIVERED)

# --- Pending Queue ---

class PendingQueue:
    """
    Durable store of print events whose delivery failed.

    Each event is one JSON file named after its creation time in nanoseconds.
    Files are written to a temporary name and renamed into place, so a crash
    never leaves a half-written record under a .json name.
    """
    SUFFIX = '.json'

    def __init__(self, queue_dir: str) -> None:
        self._dir = Path(queue_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._last_ns = 0
        for stale in self._dir.glob('*.tmp'):
            logging.warning("Removing incomplete pending file left by an interrupted write: %s", stale)
            stale.unlink()
        logging.info("Pending impressions directory initialized at: %s", self._dir)

    @property
    def directory(self) -> Path:
        return self._dir

    def _next_path(self) -> Path:
        while True:
            ns = max(time.time_ns(), self._last_ns + 1)
            self._last_ns = ns
            path = self._dir / f"{ns}{self.SUFFIX}"
            if not path.exists():
                return path

    def enqueue(self, event: PrintEvent) -> Path:
        """
        Store an event for a later retry.

        Returns:
            Path: The record written.

        Raises:
            OSError: If the record cannot be written.
        """
        path = self._next_path()
        write_json_atomic(path, event.to_json())
        logging.info("Saved impression for user %s to pending queue: %s", event.user, path)
        return path

    def records(self) -> typing.List[Path]:
        """
        Pending record files, oldest first.

        Only <digits>.json names are records, so other JSON files sharing the
        directory (such as tail offsets) are left alone.
        """
        return sorted(
            (p for p in self._dir.iterdir()
             if p.suffix == self.SUFFIX and p.stem.isdigit() and p.is_file()),
            key=lambda p: p.name
        )

    def __len__(self) -> int:
        return len(self.records())

    def load(self, path) -> PrintEvent:
        """
        Read one record.

        Raises:
            OSError: If the file cannot be read.
            ValueError: If its content is not a valid print event.
        """
        with open(path, 'r', encoding='utf-8') as f:
            return PrintEvent.from_json(json.load(f))

    def remove(self, path) -> None:
        Path(path).unlink()

    def _discard(self, path: Path) -> bool:
        try:
            self.remove(path)
        except OSError as e:
            logging.error("Failed to remove pending file %s: %s", path, e)
            return False
        return True

    def drain(self, deliver: typing.Callable[[PrintEvent], DeliveryResult]) -> dict:
        """
        Retry every pending record with deliver.

        Args:
            deliver (callable): Delivers one event and returns a DeliveryResult.

        Returns:
            dict: Counts of records 'delivered', 'existing', 'failed' and 'purged'.

        Note:
            - Delivered and already-existing records are removed.
            - Failed records stay for the next drain.
            - Records that cannot be decoded are deleted so they never block the queue.
            - A directory that cannot be listed is logged and drained as empty.
        """
        summary = {'delivered': 0, 'existing': 0, 'failed': 0, 'purged': 0}
        try:
            records = self.records()
        except OSError as e:
            logging.error("Failed to read pending impressions directory %s: %s", self._dir, e)
            return summary
        if not records:
            logging.debug("No pending impressions to process.")
            return summary
        logging.info("Found %d pending impression(s) to process.", len(records))

        for path in records:
            try:
                event = self.load(path)
            except OSError as e:
                logging.error("Failed to read pending file %s: %s", path, e)
                summary['failed'] += 1
                continue
            except ValueError as e:
                logging.error("Failed to decode pending file %s, deleting corrupt file: %s", path, e)
                if self._discard(path):
                    summary['purged'] += 1
                continue

            result = deliver(event)
            if result.ok:
                logging.info("Processed pending impression %s (%s), removing from queue.", path.name, result.status)
                self._discard(path)
                summary['delivered' if result.status == DELIVERED else 'existing'] += 1
            else:
                logging.warning("Failed to process pending impression %s, will retry later: %s", path.name, result.reason)
                summary['failed'] += 1

        logging.info(
            "Pending queue summary: %d delivered, %d already existed, %d failed, %d corrupt removed.",
            summary['delivered'], summary['existing'], summary['failed'], summary['purged']
        )
        return summary

# --- Polling Loop ---

IDLE = 'idle'
DRAINING = 'draining'
TAILING = 'tailing'
STOPPED = 'stopped'

class PrintCollector:
    """
    Runs the polling cycle: drain the pending queue, then tail today's log.

    State moves idle -> draining -> tailing -> idle on every tick. stop() is
    observed at the next phase boundary and moves the collector to stopped.
    status() only reads attributes, so it can be called from a signal handler
    while a phase is running.
    """

    def __init__(
        self,
        config: dict,
        tailer: LogTailer,
        client: CollectorClient,
        queue: PendingQueue,
        test_mode: bool = False,
        network_info: typing.Optional[typing.Callable[[], typing.Tuple[str, str]]] = None,
        today: typing.Callable[[], datetime.date] = datetime.date.today
    ) -> None:
        self._config = config
        self._tailer = tailer
        self._client = client
        self._queue = queue
        self._test_mode = test_mode
        self._network_info = network_info
        self._today = today
        self._stop_event = threading.Event()
        self.state = IDLE
        self.ticks = 0
        self.last_tick_at: typing.Optional[datetime.datetime] = None
        self.last_error: typing.Optional[str] = None

    def _enter(self, state: str) -> bool:
        if self._stop_event.is_set():
            self.state = STOPPED
            return False
        self.state = state
        return True

    def stop(self) -> None:
        """Request shutdown; honored between phases."""
        logging.info("PrintWatch collector received stop request.")
        self._stop_event.set()
        if self.state == IDLE:
            self.state = STOPPED

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def status(self) -> dict:
        """Snapshot of the collector's progress."""
        try:
            pending = len(self._queue)
        except OSError:
            pending = None
        return {
            'state': self.state,
            'ticks': self.ticks,
            'last_tick_at': self.last_tick_at.isoformat() if self.last_tick_at else None,
            'last_error': self.last_error,
            'pending': pending,
            'offsets': self._tailer.offsets,
        }

    def tick(self, day: typing.Optional[datetime.date] = None) -> dict:
        """
        Run one polling cycle.

        Args:
            day (datetime.date, optional): Log day to tail; defaults to today.

        Returns:
            dict: Counts for the cycle, with the drain summary under 'pending'.

        Raises:
            OSError: If the day's log file exists but cannot be read.
        """
        summary = {'pending': None, 'delivered': 0, 'existing': 0, 'queued': 0, 'skipped': 0, 'lost': 0}
        try:
            if not self._enter(DRAINING):
                return summary
            if self._test_mode:
                logging.info("[TEST MODE] Skipping pending queue drain.")
            else:
                summary['pending'] = self._queue.drain(self._client.deliver)
            if not self._enter(TAILING):
                return summary
            self._tail(day or self._today(), summary)
            self.ticks += 1
            self.last_tick_at = datetime.datetime.now()
        finally:
            self._enter(IDLE)
        logging.info(
            "Cycle summary: %d delivered, %d already existed, %d queued, %d skipped, %d lost.",
            summary['delivered'], summary['existing'], summary['queued'], summary['skipped'], summary['lost']
        )
        return summary

    def _tail(self, day: datetime.date, summary: dict) -> None:
        log_dir = self._config['log_dir']
        source = log_file_path(log_dir, day)
        for row in self._tailer.read_new_records(log_dir, day):
            try:
                event = parse_record(row, self._config, network_info=self._network_info)
            except SkipRecord as e:
                logging.warning("Skipping record from %s (%s): %r", source, e.reason, row)
                summary['skipped'] += 1
                continue

            result = self._client.deliver(event)
            if result.status == DELIVERED:
                summary['delivered'] += 1
            elif result.status == ALREADY_EXISTS:
                summary['existing'] += 1
            else:
                try:
                    self._queue.enqueue(event)
                except OSError as e:
                    logging.critical(
                        "FAILED TO SAVE PENDING IMPRESSION for user %s from %s. Data may be lost: %s",
                        event.user, source, e
                    )
                    summary['lost'] += 1
                else:
                    summary['queued'] += 1

    def run(self) -> None:
        """
        Tick immediately, then every polling_interval_seconds until stop().
        """
        interval = self._config['polling_interval_seconds']
        logging.info("PrintWatch collector polling %s every %s seconds.", self._config['log_dir'], interval)
        while not self._stop_event.is_set():
            try:
                self.tick()
                self.last_error = None
            except Exception as e:
                self.last_error = str(e)
                logging.error("Error during log processing: %s", e, exc_info=True)
            if self._stop_event.wait(interval):
                break
        self.state = STOPPED
        logging.info("PrintWatch collector stopped.")

# --- Signal Handling ---

def install_signal_handlers(collector: PrintCollector) -> None:
    """
    Stop the collector on SIGINT/SIGTERM and log its status on SIGUSR1.
    """
    def handle_signal(signum, frame):
        logging.info("Received signal %s, shutting down gracefully...", signum)
        collector.stop()

    def handle_interrogate(signum, frame):
        logging.info("Collector status: %s", collector.status())

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)
    if hasattr(signal, 'SIGUSR1'):
        signal.signal(signal.SIGUSR1, handle_interrogate)


def main(argv: typing.Optional[list] = None) -> None:
    """
    Main entry point for the print log collector.

    """
    args = parse_args(argv)
    setup_logging(debug=args.debug, log_file=args.log_file)
    logging.info(
        "PrintWatch collector starting with config: %s, state_dir: %s, queue_dir: %s",
        args.config, args.state_dir, args.queue_dir
    )
    try:
        config = load_config(args.config)
        Path(args.state_dir).mkdir(parents=True, exist_ok=True)
        queue = PendingQueue(args.queue_dir)
    except (OSError, ValueError, yaml.YAMLError) as e:
        logging.critical("Failed to start: %s", e)
        sys.exit(1)
    logging.info(
        "Config loaded: sector=%s, company_id=%d, log_dir=%s, api_base_url=%s",
        config['sector'], config['company_id'], config['log_dir'], config['api_base_url']
    )

    client = CollectorClient(
        config['api_base_url'],
        timeout=config['timeout_seconds'],
        tls_opts=config['tls'],
        test_mode=args.test
    )
    collector = PrintCollector(config, LogTailer(state_dir=args.state_dir), client, queue, test_mode=args.test)
    if args.once:
        collector.tick()
    else:
        install_signal_handlers(collector)
        collector.run()
    logging.info("PrintWatch collector finished.")

if __name__ == '__main__':
    main()
