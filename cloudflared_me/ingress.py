"""Shared ingress configuration (config.yaml) for cloudflared tunnels.

The file holds one or more tunnels in cloudflared's flat single-tunnel
layout, concatenated::

    tunnel: <id>
    credentials-file: <dir>/<id>.json

    ingress:
      - hostname: app.example.com
        service: http://localhost:8080
      - service: http_status:404

Each top-level ``tunnel:`` line starts a new record. Records are parsed
only to answer "is this tunnel or hostname already configured?"; new
records are appended as text so operator formatting and comments are
never rewritten.
"""

import fcntl
import os
import re
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

import yaml

from cloudflared_me.errors import CloudflaredMeError
from cloudflared_me.logs import get_logger

logger = get_logger(__name__)

CONFIG_FILENAME = "config.yaml"
BACKUP_SUFFIX = ".bak"
LOCK_SUFFIX = ".lock"
CATCH_ALL_SERVICE = "http_status:404"

TOP_LEVEL_TUNNEL = re.compile(r"^tunnel:")
BOM = "\ufeff"


class ConfigStoreError(CloudflaredMeError):
    """Error reading or writing the shared config."""

    pass


class ConfigIOError(ConfigStoreError):
    """Filesystem failure during lock, backup, read or write."""

    pass


class ConfigFormatError(ConfigStoreError):
    """Existing config cannot be parsed. Nothing was written."""

    pass


class MergeStatus(Enum):
    MERGED = "merged"
    SKIPPED = "skipped"


class SkipReason(Enum):
    DUPLICATE_TUNNEL = "duplicate_tunnel"
    DUPLICATE_DOMAIN = "duplicate_domain"


@dataclass(frozen=True)
class IngressRule:
    """A hostname-to-service mapping. ``hostname`` is None for the catch-all."""

    service: str
    hostname: Optional[str] = None

    @property
    def is_catch_all(self) -> bool:
        return self.hostname is None


@dataclass
class TunnelRecord:
    """One tunnel's entry in the shared config."""

    tunnel_id: str
    credentials_path: Optional[str] = None
    ingress_rules: list[IngressRule] = field(default_factory=list)

    @property
    def hostnames(self) -> list[str]:
        return [rule.hostname for rule in self.ingress_rules if rule.hostname is not None]


@dataclass
class ConfigDocument:
    """Parsed view of config.yaml.

    ``hostnames`` also covers rules that appear before the first
    ``tunnel:`` key.
    """

    records: list[TunnelRecord] = field(default_factory=list)
    hostnames: list[str] = field(default_factory=list)

    @property
    def has_tunnel_key(self) -> bool:
        """Whether the content already holds at least one top-level tunnel."""
        return bool(self.records)

    def find_tunnel(self, tunnel_id: str) -> Optional[TunnelRecord]:
        for record in self.records:
            if record.tunnel_id == tunnel_id:
                return record
        return None

    def has_hostname(self, hostname: str) -> bool:
        return hostname in self.hostnames


@dataclass(frozen=True)
class MergeOutcome:
    """Result of merge_ingress_rule."""

    status: MergeStatus
    config_path: Path
    reason: Optional[SkipReason] = None
    backup_path: Optional[Path] = None

    @property
    def merged(self) -> bool:
        return self.status is MergeStatus.MERGED

    @property
    def skipped(self) -> bool:
        return self.status is MergeStatus.SKIPPED


def config_path_for(config_dir: Path) -> Path:
    """Return path to config.yaml inside ``config_dir``."""
    return Path(config_dir) / CONFIG_FILENAME


def backup_path_for(config_path: Path) -> Path:
    """Return path of the backup kept next to ``config_path``."""
    return config_path.with_name(config_path.name + BACKUP_SUFFIX)


def _strip_bom(text: str) -> str:
    # Editors on Windows often save UTF-8 with a byte order mark
    return text[len(BOM):] if text.startswith(BOM) else text


def _is_comment(line: str) -> bool:
    return line.lstrip().startswith("#")


def _split_segments(text: str) -> list[str]:
    """Split content at top-level ``tunnel:`` lines.

    The first segment is whatever precedes the first tunnel (possibly
    empty); every following segment starts with its ``tunnel:`` line.
    """
    segments: list[list[str]] = [[]]
    for line in text.splitlines(keepends=True):
        if TOP_LEVEL_TUNNEL.match(line):
            segments.append([])
        segments[-1].append(line)
    return ["".join(lines) for lines in segments]


def _load_segment(segment: str) -> dict:
    # BaseLoader keeps every scalar a string, so IDs like 0123 or 1e3 stay as written
    try:
        data = yaml.load(segment, Loader=yaml.BaseLoader)
    except yaml.YAMLError as e:
        raise ConfigFormatError(f"Cannot parse config: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigFormatError("Cannot parse config: expected a mapping of keys")
    return data


def _parse_rules(raw_rules) -> list[IngressRule]:
    if not raw_rules:
        return []
    if not isinstance(raw_rules, list):
        raise ConfigFormatError("Cannot parse config: 'ingress' must be a list")

    rules = []
    for raw in raw_rules:
        if not isinstance(raw, dict):
            raise ConfigFormatError("Cannot parse config: ingress rules must be mappings")
        hostname = raw.get("hostname") or None
        rules.append(IngressRule(service=str(raw.get("service", "")), hostname=hostname))
    return rules


def parse_document(text: str) -> ConfigDocument:
    """Parse config.yaml content into tunnel records.

    Raises:
        ConfigFormatError: If a segment is not valid YAML
    """
    document = ConfigDocument()

    for index, segment in enumerate(_split_segments(_strip_bom(text))):
        data = _load_segment(segment)
        rules = _parse_rules(data.get("ingress"))
        document.hostnames.extend(rule.hostname for rule in rules if rule.hostname)

        if index == 0:
            # Content before the first tunnel key
            continue

        document.records.append(
            TunnelRecord(
                tunnel_id=str(data.get("tunnel", "")),
                credentials_path=data.get("credentials-file"),
                ingress_rules=rules,
            )
        )

    return document


def render_tunnel_block(config_dir: Path, tunnel_id: str, domain: str, port: int) -> str:
    """Render the config block for a new tunnel, ending with a newline."""
    credentials = Path(config_dir) / f"{tunnel_id}.json"
    return (
        f"tunnel: {tunnel_id}\n"
        f"credentials-file: {credentials}\n"
        f"\n"
        f"ingress:\n"
        f"  - hostname: {domain}\n"
        f"    service: http://localhost:{port}\n"
        f"  - service: {CATCH_ALL_SERVICE}\n"
    )


def append_block(existing: str, block: str) -> str:
    """Append ``block`` after ``existing``, separated by one blank line.

    ``existing`` is kept byte-for-byte as the prefix of the result.
    """
    if not existing:
        return block
    separator = "\n" if existing.endswith("\n") else "\n\n"
    return existing + separator + block


@contextmanager
def locked(config_path: Path) -> Iterator[None]:
    """Hold an exclusive advisory lock for ``config_path``.

    The lock lives on a sibling ``.lock`` file so the config itself can be
    replaced by rename while locked.
    """
    lock_path = config_path.with_name(config_path.name + LOCK_SUFFIX)
    try:
        lock_file = open(lock_path, "a")
    except OSError as e:
        raise ConfigIOError(f"Cannot open lock file {lock_path}: {e}") from e

    try:
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        except OSError as e:
            raise ConfigIOError(f"Cannot lock {lock_path}: {e}") from e
        try:
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
    finally:
        lock_file.close()


def backup_config(config_path: Path) -> Optional[Path]:
    """Copy config.yaml to config.yaml.bak, overwriting any previous backup.

    Returns:
        Backup path, or None if there was nothing to back up

    Raises:
        ConfigIOError: If the copy fails
    """
    if not config_path.exists():
        return None

    backup_path = backup_path_for(config_path)
    logger.info("Backing up existing %s...", config_path.name)
    try:
        shutil.copyfile(config_path, backup_path)
    except OSError as e:
        raise ConfigIOError(f"Failed to back up {config_path}: {e}") from e
    logger.info("Backup created: %s", backup_path)
    return backup_path


def read_config(config_path: Path) -> str:
    """Read config content, or an empty string if the file does not exist.

    Raises:
        ConfigIOError: If the file exists but cannot be read
    """
    if not config_path.exists():
        return ""
    try:
        # newline="" keeps CRLF files intact when the content is written back
        with open(config_path, encoding="utf-8", newline="") as f:
            return f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigIOError(f"Failed to read {config_path}: {e}") from e


def write_atomic(config_path: Path, content: str) -> None:
    """Replace ``config_path`` with ``content`` via write-temp-then-rename.

    The file mode of an existing config is kept.

    Raises:
        ConfigIOError: If writing or renaming fails
    """
    try:
        fd, temp_path = tempfile.mkstemp(
            dir=config_path.parent, prefix=f".{config_path.name}.", suffix=".tmp"
        )
    except OSError as e:
        raise ConfigIOError(f"Failed to create temporary file for {config_path}: {e}") from e

    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if config_path.exists():
            shutil.copymode(config_path, temp_path)
        os.replace(temp_path, config_path)
    except OSError as e:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise ConfigIOError(f"Failed to write {config_path}: {e}") from e


def merge_ingress_rule(config_dir: Path, tunnel_id: str, domain: str, port: int) -> MergeOutcome:
    """Add a tunnel and its ingress rule to ``config_dir/config.yaml``.

    The existing file is always backed up first. The merge is skipped when
    the tunnel ID or the hostname is already configured.

    Args:
        config_dir: Directory holding config.yaml
        tunnel_id: ID returned by ``cloudflared tunnel create``
        domain: Public hostname to route
        port: Local port to forward to

    Returns:
        MergeOutcome (MERGED, or SKIPPED with a reason)

    Raises:
        ConfigIOError: On filesystem failures
        ConfigFormatError: If the existing config cannot be parsed
    """
    config_dir = Path(config_dir)
    config_path = config_path_for(config_dir)
    logger.info("Generating or modifying %s...", config_path)

    with locked(config_path):
        backup_path = backup_config(config_path)
        existing = read_config(config_path)
        document = parse_document(existing)

        if document.find_tunnel(tunnel_id) is not None:
            logger.info("Tunnel with the same ID already exists in %s.", config_path.name)
            return MergeOutcome(
                status=MergeStatus.SKIPPED,
                reason=SkipReason.DUPLICATE_TUNNEL,
                config_path=config_path,
                backup_path=backup_path,
            )

        if document.has_hostname(domain):
            logger.info("Domain %s already exists in %s.", domain, config_path.name)
            return MergeOutcome(
                status=MergeStatus.SKIPPED,
                reason=SkipReason.DUPLICATE_DOMAIN,
                config_path=config_path,
                backup_path=backup_path,
            )

        block = render_tunnel_block(config_dir, tunnel_id, domain, port)
        if document.has_tunnel_key:
            content = append_block(existing, block)
        else:
            lines = _strip_bom(existing).splitlines()
            if any(line.strip() and not _is_comment(line) for line in lines):
                logger.warning(
                    "%s has no tunnel key; replacing its content (previous copy kept at %s)",
                    config_path.name,
                    backup_path,
                )
            content = block

        write_atomic(config_path, content)

    logger.info("%s created/modified successfully.", config_path.name)
    return MergeOutcome(status=MergeStatus.MERGED, config_path=config_path, backup_path=backup_path)
