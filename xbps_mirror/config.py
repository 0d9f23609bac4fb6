import json
import logging
import re
from collections import ChainMap
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urljoin, urlparse

import hcl2

from .expressions import ExpressionError, evaluate

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "config.hcl"
DEFAULT_INTERVAL = 300.0 # seconds between index polls
USER_AGENT = "xbps-mirror/1.0"
MAX_RETRIES = 3
RETRY_DELAY = 5  # seconds
CHUNK_SIZE = 64 * 1024 # cancellation is checked between chunks
CONNECT_TIMEOUT = 15 # seconds
READ_TIMEOUT = 60 # seconds
MAX_WORKERS = 8 # Default concurrent downloads

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}
_IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_-]*")
_REPOSITORY_KEYS = {"upstream", "destination", "architecture", "interval"}
_TOP_LEVEL_KEYS = {"jobs", "locals", "repository", "dynamic"}


class ConfigError(Exception):
    """Raised when the configuration file cannot be loaded or is invalid."""


@dataclass
class RepositoryConfig:
    """One mirrored repository: an upstream URL mirrored into a local directory."""
    upstream: str # always ends with '/'
    destination: Path
    architecture: str
    interval: float = DEFAULT_INTERVAL

    def url_for(self, filename: str) -> str:
        return urljoin(self.upstream, filename)

    def path_for(self, filename: str) -> Path:
        return self.destination / filename


@dataclass
class MirrorConfig:
    repositories: list[RepositoryConfig] = field(default_factory=list)
    jobs: int = MAX_WORKERS


def parse_duration(value) -> float:
    """
    Parses a duration such as "30s", "5m" or "1h30m" into seconds.
    Bare numbers are taken as seconds.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip()
        pos = 0
        seconds = 0.0
        for match in _DURATION_RE.finditer(text):
            if match.start() != pos:
                break
            seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
            pos = match.end()
        if not text or pos != len(text):
            raise ValueError(f"invalid duration {value!r}")
    if seconds <= 0:
        raise ValueError(f"duration must be positive, got {value!r}")
    return seconds


def _evaluate(value, variables: Mapping, where: str):
    try:
        return evaluate(value, variables)
    except ExpressionError as e:
        raise ConfigError(f"{where}: {e}") from e


def _blocks(raw: dict, name: str) -> list[dict]:
    # HCL yields a list of bodies per block type, JSON may give a single object
    blocks = raw.get(name, [])
    if isinstance(blocks, dict):
        blocks = [blocks]
    if not isinstance(blocks, list) or not all(isinstance(b, dict) for b in blocks):
        raise ConfigError(f"'{name}' must be a block or a list of blocks")
    return blocks


class _Locals(Mapping):
    """
    Local values, each evaluated on first use so that locals may refer to one
    another regardless of the order they are declared in.
    """

    def __init__(self, expressions: dict):
        self._expressions = expressions
        self._values = {}
        self._resolving = []

    def __getitem__(self, name: str):
        if name in self._values:
            return self._values[name]
        expression = self._expressions[name]
        if name in self._resolving:
            cycle = self._resolving[self._resolving.index(name):] + [name]
            raise ExpressionError(f"locals refer to each other in a cycle: {' -> '.join(cycle)}")
        self._resolving.append(name)
        try:
            value = evaluate(expression, self)
        finally:
            self._resolving.pop()
        self._values[name] = value
        return value

    def __iter__(self):
        return iter(self._expressions)

    def __len__(self) -> int:
        return len(self._expressions)


def resolve_locals(raw: dict) -> dict:
    """Evaluates all `locals` blocks into a name -> value mapping."""
    expressions = {}
    for block in _blocks(raw, "locals"):
        for name, expression in block.items():
            if not _IDENTIFIER_RE.fullmatch(name):
                raise ConfigError(f"locals: invalid variable name '{name}'")
            expressions[name] = expression
    local_vars = _Locals(expressions)
    values = {}
    for name in local_vars:
        try:
            values[name] = local_vars[name]
        except ExpressionError as e:
            raise ConfigError(f"locals.{name}: {e}") from e
    return values


def _reference_name(value, where: str) -> str:
    # python-hcl2 hands back a bare identifier as "${name}"
    name = value[2:-1].strip() if isinstance(value, str) and value.startswith("${") and value.endswith("}") else value
    if not isinstance(name, str) or not _IDENTIFIER_RE.fullmatch(name):
        raise ConfigError(f"{where}: invalid iterator name {value!r}")
    return name


def _expand_dynamic(block_type: str, body, variables: Mapping) -> list[tuple[dict, Mapping]]:
    """
    Expands one `dynamic "<type>"` block into one (content, scope) pair per
    element of its for_each collection. Inside the content the iterator
    variable (named after the block type unless `iterator` says otherwise)
    has a `key` and a `value`.
    """
    where = f'dynamic "{block_type}"'
    if not isinstance(body, dict):
        raise ConfigError(f"{where}: expected a block")
    if "for_each" not in body:
        raise ConfigError(f"{where}: missing required attribute 'for_each'")
    unknown = set(body) - {"for_each", "iterator", "content"}
    if unknown:
        logger.warning(f"{where}: ignoring unknown attributes: {', '.join(sorted(unknown))}")

    contents = body.get("content")
    if isinstance(contents, dict):
        contents = [contents]
    if not isinstance(contents, list) or len(contents) != 1 or not isinstance(contents[0], dict):
        raise ConfigError(f"{where}: expected exactly one 'content' block")
    iterator = _reference_name(body.get("iterator", block_type), f"{where}.iterator")

    collection = _evaluate(body["for_each"], variables, f"{where}.for_each")
    if isinstance(collection, dict):
        items = list(collection.items())
    elif isinstance(collection, list):
        items = list(enumerate(collection))
    else:
        raise ConfigError(f"{where}.for_each: expected a list or a map, got {type(collection).__name__}")

    return [
        (contents[0], ChainMap({iterator: {"key": key, "value": value}}, variables))
        for key, value in items
    ]


def _dynamic_blocks(raw: dict, variables: Mapping) -> list[tuple[dict, Mapping]]:
    expanded = []
    for block in _blocks(raw, "dynamic"):
        for label, bodies in block.items():
            block_type = label.strip('"')
            if block_type != "repository":
                raise ConfigError(f"dynamic blocks of type '{block_type}' are not supported")
            for body in bodies if isinstance(bodies, list) else [bodies]:
                expanded.extend(_expand_dynamic(block_type, body, variables))
    return expanded


def parse_repository_config(block: dict, variables: Mapping | None = None, index: int = 0) -> RepositoryConfig:
    """Evaluates and validates one repository block."""
    variables = variables if variables is not None else {}
    where = f"repository[{index}]"
    values = {key: _evaluate(val, variables, f"{where}.{key}") for key, val in block.items()}

    for required in ("upstream", "destination", "architecture"):
        value = values.get(required)
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"{where}: missing or empty required attribute '{required}'")

    upstream = values["upstream"].strip()
    parsed = urlparse(upstream)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(f"{where}: invalid upstream {upstream!r}, expected an http(s) URL")
    if not upstream.endswith("/"):
        upstream += "/"

    interval = DEFAULT_INTERVAL
    if values.get("interval") not in (None, ""):
        try:
            interval = parse_duration(values["interval"])
        except ValueError as e:
            raise ConfigError(f"{where}: invalid interval: {e}") from e

    unknown = set(values) - _REPOSITORY_KEYS
    if unknown:
        logger.warning(f"{where}: ignoring unknown attributes: {', '.join(sorted(unknown))}")

    return RepositoryConfig(
        upstream=upstream,
        destination=Path(values["destination"].strip()),
        architecture=values["architecture"].strip(),
        interval=interval,
    )


def parse_config(raw: dict) -> MirrorConfig:
    """Builds a validated MirrorConfig from the decoded configuration document."""
    if not isinstance(raw, dict):
        raise ConfigError("configuration root must be an object")
    unknown = set(raw) - _TOP_LEVEL_KEYS
    if unknown:
        logger.warning(f"ignoring unknown top-level entries: {', '.join(sorted(unknown))}")

    variables = resolve_locals(raw)

    jobs = _evaluate(raw.get("jobs", MAX_WORKERS), variables, "jobs")
    if isinstance(jobs, bool) or not isinstance(jobs, int) or jobs < 1:
        raise ConfigError(f"'jobs' must be a positive integer, got {jobs!r}")

    # Static blocks come first, then the expansion of each dynamic block
    sources = [(block, variables) for block in _blocks(raw, "repository")]
    sources.extend(_dynamic_blocks(raw, variables))
    repositories = [
        parse_repository_config(block, scope, i)
        for i, (block, scope) in enumerate(sources)
    ]
    if not repositories:
        raise ConfigError("no repository blocks configured")

    seen = set()
    for repo in repositories:
        key = (repo.destination, repo.architecture)
        if key in seen:
            raise ConfigError(f"duplicate repository for {repo.architecture} in {repo.destination}")
        seen.add(key)

    return MirrorConfig(repositories=repositories, jobs=jobs)


def load_config(path) -> MirrorConfig:
    """Loads an HCL or JSON configuration file."""
    path = Path(path)
    suffix = path.suffix.lower()
    try:
        with open(path, "r", encoding="utf-8") as f:
            if suffix == ".hcl":
                raw = hcl2.load(f)
            elif suffix == ".json":
                raw = json.load(f)
            else:
                raise ConfigError(f"cannot read {path}: unrecognized file format suffix {suffix!r}")
    except OSError as e:
        raise ConfigError(f"cannot read {path}: {e}") from e
    except ConfigError:
        raise
    except Exception as e:
        # lark and json errors share no common base class
        raise ConfigError(f"cannot parse {path}: {e}") from e
    return parse_config(raw)
