from __future__ import annotations

import argparse
import os
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

from tailpoint import __version__
from tailpoint.errors import ConfigError

ENV_PREFIX = "TAILPOINT_"

DEFAULT_FILENAME = "/var/log/nginx/access.log"
DEFAULT_FORMAT = (
    '$remote_addr - $remote_user [$time_local] "$request" $status $body_bytes_sent '
    '"$http_referer" "$http_user_agent" "$http_x_forwarded_for" $request_time'
)
DEFAULT_LISTEN_ADDRESS = "0.0.0.0:4040"
DEFAULT_TELEMETRY_PATH = "/metrics"

LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


class Settings(BaseModel):
    filename: str = DEFAULT_FILENAME
    format: str = DEFAULT_FORMAT
    labels: Dict[str, str] = Field(default_factory=dict)
    listen_address: str = DEFAULT_LISTEN_ADDRESS
    telemetry_path: str = DEFAULT_TELEMETRY_PATH
    namespace: str = "nginx"
    poll_interval: float = Field(default=0.25, gt=0)
    reopen_timeout: float = Field(default=5.0, gt=0)
    log_level: str = "info"

    @field_validator("listen_address")
    @classmethod
    def _check_listen_address(cls, v: str) -> str:
        split_listen_address(v)
        return v

    @field_validator("telemetry_path")
    @classmethod
    def _check_telemetry_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("telemetry path must start with '/'")
        return v

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, v: str) -> str:
        v = v.lower()
        if v not in LOG_LEVELS:
            raise ValueError(f"log level must be one of {', '.join(LOG_LEVELS)}")
        return v

    @property
    def host(self) -> str:
        return split_listen_address(self.listen_address)[0]

    @property
    def port(self) -> int:
        return split_listen_address(self.listen_address)[1]


def split_listen_address(addr: str) -> Tuple[str, int]:
    """
    "0.0.0.0:4040" -> ("0.0.0.0", 4040)
    ":4040"        -> ("0.0.0.0", 4040)
    "[::1]:4040"   -> ("::1", 4040)
    """
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"listen address {addr!r} must be host:port")
    try:
        port_num = int(port)
    except ValueError:
        raise ValueError(f"listen address {addr!r} has a non-numeric port") from None
    if not 0 <= port_num <= 65535:
        raise ValueError(f"listen address {addr!r} has an out-of-range port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host or "0.0.0.0", port_num


def parse_labels(specs: Sequence[str]) -> Dict[str, str]:
    """
    Supports:
      [] -> {}
      ["env=prod"] -> {"env": "prod"}
      ["env=prod,dc=ams", "host=web1"] -> {"env": "prod", "dc": "ams", "host": "web1"}
    """
    out: Dict[str, str] = {}
    for item in specs:
        parts = [p.strip() for p in item.split(",") if p.strip()]
        for p in parts:
            if "=" not in p:
                raise ConfigError(f"label {p!r} must be written as key=value")
            key, value = p.split("=", 1)
            key = key.strip()
            if not key:
                raise ConfigError(f"label {p!r} has an empty name")
            out[key] = value.strip()
    return out


def create_parser(environ: Mapping[str, str]) -> argparse.ArgumentParser:
    def env(name: str, default: Optional[str] = None) -> Optional[str]:
        return environ.get(ENV_PREFIX + name, default)

    parser = argparse.ArgumentParser(
        prog="tailpoint",
        description="Export metrics from a web server access log for Prometheus",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-f", "--filename",
        default=env("FILENAME", DEFAULT_FILENAME),
        help="Path to logfile to parse",
    )
    parser.add_argument(
        "--format",
        default=env("FORMAT", DEFAULT_FORMAT),
        help="Access log format, e.g. nginx log_format with $variables",
    )
    parser.add_argument(
        "-l", "--labels",
        action="append",
        default=[],
        help="Labels which to add to metrics (key=value, comma separated, repeatable)",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=env("LISTEN_ADDRESS", DEFAULT_LISTEN_ADDRESS),
        help="Address to listen on for web interface and telemetry",
    )
    parser.add_argument(
        "--web.telemetry-path",
        dest="telemetry_path",
        default=env("TELEMETRY_PATH", DEFAULT_TELEMETRY_PATH),
        help="Path under which to expose metrics",
    )
    parser.add_argument(
        "--namespace",
        default=env("NAMESPACE", "nginx"),
        help="Prefix for all metric names",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=float(env("POLL_INTERVAL", "0.25")),
        help="Seconds between checks of the log file when idle",
    )
    parser.add_argument(
        "--reopen-timeout",
        type=float,
        default=float(env("REOPEN_TIMEOUT", "5")),
        help="Seconds to wait for a removed log file to reappear before giving up",
    )
    parser.add_argument(
        "--log-level",
        default=env("LOG_LEVEL", "info"),
        help="Logging level (critical, error, warning, info, debug)",
    )
    return parser


def load_settings(argv: Optional[List[str]] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from command-line flags, falling back to TAILPOINT_* variables."""
    environ = os.environ if environ is None else environ
    try:
        parser = create_parser(environ)
    except ValueError as e:
        raise ConfigError(f"invalid numeric {ENV_PREFIX}* setting: {e}") from e
    args = parser.parse_args(argv)

    label_specs = list(args.labels)
    if not label_specs and environ.get(ENV_PREFIX + "LABELS"):
        label_specs = [environ[ENV_PREFIX + "LABELS"]]

    try:
        return Settings(
            filename=args.filename,
            format=args.format,
            labels=parse_labels(label_specs),
            listen_address=args.listen_address,
            telemetry_path=args.telemetry_path,
            namespace=args.namespace,
            poll_interval=args.poll_interval,
            reopen_timeout=args.reopen_timeout,
            log_level=args.log_level,
        )
    except ValidationError as e:
        msgs = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise ConfigError(msgs) from e
