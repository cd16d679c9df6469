"""Connection settings loaded from the environment (``.env`` supported via dotenv)."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

_DEFAULT_TIMEOUT_SECONDS = 10


class ConfigError(ValueError):
    """A required setting is missing or malformed."""


class ReceiveProtocol(str, Enum):
    IMAP = "imap"
    POP3 = "pop3"


@dataclass(frozen=True)
class ServerConfig:
    host: str
    port: int
    secure: bool

    def describe(self) -> str:
        return f"{self.host}:{self.port} (secure: {self.secure})"


@dataclass(frozen=True)
class Settings:
    """Everything needed to open the receive and send connections.

    Build with ``Settings.from_env()``; every server value is required and
    has no default so a misconfigured server fails at startup, not on the
    first tool call.
    """

    protocol: ReceiveProtocol
    receive: ServerConfig
    smtp: ServerConfig
    username: str
    password: str
    timeout: int = _DEFAULT_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build Settings from environment variables.

        IMAP is used when ``IMAP_HOST`` is set, otherwise POP3.

        Raises:
            ConfigError: on any missing or malformed value.
        """
        env = os.environ if environ is None else environ
        protocol = ReceiveProtocol.IMAP if env.get("IMAP_HOST") else ReceiveProtocol.POP3
        prefix = protocol.value.upper()
        if protocol is ReceiveProtocol.POP3 and not env.get("POP3_HOST"):
            raise ConfigError(
                "Missing required environment variable: IMAP_HOST (or POP3_HOST). "
                "Please set it in your MCP server configuration."
            )

        timeout_raw = env.get("MAIL_TIMEOUT_SECONDS", "")
        timeout = _parse_int("MAIL_TIMEOUT_SECONDS", timeout_raw) if timeout_raw else _DEFAULT_TIMEOUT_SECONDS
        if timeout <= 0:
            raise ConfigError(f"MAIL_TIMEOUT_SECONDS must be positive, got {timeout}")

        return cls(
            protocol=protocol,
            receive=_server(env, prefix),
            smtp=_server(env, "SMTP"),
            username=_required(env, "EMAIL_USER"),
            password=_required(env, "EMAIL_PASS"),
            timeout=timeout,
        )

    def describe(self) -> list[str]:
        """Log-safe summary lines; the password is never included."""
        return [
            f"{self.protocol.value.upper()}: {self.receive.describe()}",
            f"SMTP: {self.smtp.describe()}",
            f"User: {self.username}",
            "Password: [CONFIGURED]",
        ]


def _server(env: Mapping[str, str], prefix: str) -> ServerConfig:
    return ServerConfig(
        host=_required(env, f"{prefix}_HOST"),
        port=_port(env, f"{prefix}_PORT"),
        secure=_bool(env, f"{prefix}_SECURE"),
    )


def _required(env: Mapping[str, str], name: str) -> str:
    value = env.get(name, "").strip()
    if not value:
        raise ConfigError(
            f"Missing required environment variable: {name}. "
            "Please set this variable in your MCP server configuration."
        )
    return value


def _bool(env: Mapping[str, str], name: str) -> bool:
    value = _required(env, name).lower()
    if value not in ("true", "false"):
        raise ConfigError(
            f"Invalid boolean value for environment variable {name}: {value}. "
            "Must be 'true' or 'false'."
        )
    return value == "true"


def _port(env: Mapping[str, str], name: str) -> int:
    port = _parse_int(name, _required(env, name))
    if not 0 < port < 65536:
        raise ConfigError(f"Invalid port for environment variable {name}: {port}")
    return port


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ConfigError(
            f"Invalid number value for environment variable {name}: {value}. "
            "Must be a valid number."
        ) from None
