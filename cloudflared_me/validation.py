"""Validation of provisioning requests."""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from cloudflared_me.config import DEFAULT_CONFIG_DIR
from cloudflared_me.errors import CloudflaredMeError
from cloudflared_me.ingress import ConfigIOError

PORT_PATTERN = re.compile(r"[0-9]+")
DOMAIN_PATTERN = re.compile(r"[A-Za-z0-9.-]+")

MIN_PORT = 1
MAX_PORT = 65535


class ValidationError(CloudflaredMeError):
    """Request is invalid. Nothing has been changed."""

    pass


class InvalidPort(ValidationError):
    """Port is not a plain integer in 1..65535."""

    pass


class InvalidDomain(ValidationError):
    """Domain contains characters outside [A-Za-z0-9.-]."""

    pass


class MissingArgument(ValidationError):
    """A required argument was not supplied."""

    pass


@dataclass
class OperationRequest:
    """Raw provisioning request, as received from the command line."""

    port: Optional[str]
    domain: Optional[str]
    tunnel_name: Optional[str]
    config_dir: Optional[Union[str, Path]] = None


@dataclass(frozen=True)
class ValidatedRequest:
    """Provisioning request that passed validation."""

    port: int
    domain: str
    tunnel_name: str
    config_dir: Path


def parse_port(value: Optional[str]) -> int:
    """Parse a port given as a plain base-10 string.

    Signs, decimals, whitespace and other radixes are rejected.

    Raises:
        InvalidPort: If the value is not an integer in 1..65535
    """
    if value is None or value == "":
        raise MissingArgument("port is required")

    text = str(value)
    if not PORT_PATTERN.fullmatch(text):
        raise InvalidPort(
            f"Invalid port number {text!r}. "
            f"Please provide a valid port number between {MIN_PORT} and {MAX_PORT}."
        )

    port = int(text)
    if port < MIN_PORT or port > MAX_PORT:
        raise InvalidPort(
            f"Invalid port number {text!r}. "
            f"Please provide a valid port number between {MIN_PORT} and {MAX_PORT}."
        )
    return port


def check_domain(value: Optional[str]) -> str:
    """Check the domain's character set. DNS syntax is not checked."""
    if value is None or value == "":
        raise MissingArgument("domain is required")

    if not DOMAIN_PATTERN.fullmatch(value):
        raise InvalidDomain(f"Invalid domain name {value!r}. Please provide a valid domain name.")
    return value


def validate(request: OperationRequest) -> ValidatedRequest:
    """Validate a request and make sure its config directory exists.

    Args:
        request: Raw request

    Returns:
        ValidatedRequest with typed fields

    Raises:
        ValidationError: If any field is missing or invalid
        ConfigIOError: If the config directory cannot be created
    """
    port = parse_port(request.port)
    domain = check_domain(request.domain)

    if not request.tunnel_name:
        raise MissingArgument("tunnel name is required")

    if request.config_dir:
        config_dir = Path(request.config_dir).expanduser()
    else:
        config_dir = DEFAULT_CONFIG_DIR

    try:
        config_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigIOError(f"Cannot create config directory {config_dir}: {e}") from e

    return ValidatedRequest(
        port=port,
        domain=domain,
        tunnel_name=request.tunnel_name,
        config_dir=config_dir,
    )
