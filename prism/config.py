from __future__ import annotations

import argparse
import configparser
import logging
import re
from dataclasses import dataclass
from typing import Optional, Sequence

from prism.readiness import Upstream

SECTION = "prism"

_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m)?\s*$")
_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, None: 1.0}


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class Config:
    """Everything the operator can set, fixed before startup.

    All timeouts are in seconds.

    Attributes
    ----------
    listen_host:
        Interface to bind.  ``None`` binds every interface.
    listen_port:
        Port the proxy accepts clients on.
    target:
        Base URL of the automation server.
    wait_timeout:
        How long startup waits for ``target`` to answer at all.
    grace_period:
        How long shutdown waits for in-flight requests to finish.
    browser_name, browser_version:
        Canonical identity written into every successful session response.
    connect_timeout:
        TCP (+ TLS for https targets) connect budget per upstream connection.
    request_timeout:
        Budget for reading one request from the client, and for one
        upstream round trip.
    idle_timeout:
        How long a keep-alive connection may sit idle between requests.
    """

    listen_host: Optional[str] = None
    listen_port: int = 4444
    target: str = "http://localhost:4545"
    wait_timeout: float = 30.0
    grace_period: float = 30.0
    browser_name: str = "safari"
    browser_version: str = "13.0"

    connect_timeout: float = 10.0
    request_timeout: float = 120.0
    idle_timeout: float = 90.0
    read_buffer_size: int = 65536

    log_level: str = "INFO"

    @property
    def listen(self) -> str:
        return f"{self.listen_host or ''}:{self.listen_port}"


def parse_duration(value: str) -> float:
    """``"30"``, ``"30s"``, ``"250ms"`` and ``"2m"`` are all accepted."""
    match = _DURATION.match(str(value))
    if not match:
        raise ConfigError(f"invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _UNITS[unit]


def parse_listen(value: str) -> tuple[Optional[str], int]:
    """Split ``host:port`` or ``:port``; IPv6 hosts go in brackets."""
    host, sep, port = value.strip().rpartition(":")
    if not sep:
        raise ConfigError(f"listen address needs a port: {value!r}")
    try:
        port_num = int(port)
    except ValueError:
        raise ConfigError(f"invalid listen port: {value!r}") from None
    if not 0 <= port_num <= 65535:
        raise ConfigError(f"listen port out of range: {value!r}")
    host = host.strip("[]")
    return (host or None), port_num


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="prism",
        description="Reverse proxy that normalizes browser identity in WebDriver sessions",
    )
    parser.add_argument('-c', '--config', type=str, metavar='PATH', default='./prism.ini', help="Path to config")
    parser.add_argument('--listen', dest='listen', type=str, metavar='ADDR', default=None, help='Address to listen on (default: :4444)')
    parser.add_argument('--target', dest='target', type=str, metavar='URL', default=None, help='Upstream automation server (default: http://localhost:4545)')
    parser.add_argument('--wait-timeout', dest='wait_timeout', type=str, metavar='DURATION', default=None, help='Time to wait for the target to come up (default: 30s)')
    parser.add_argument('--grace-period', dest='grace_period', type=str, metavar='DURATION', default=None, help='Time to let in-flight requests finish on shutdown (default: 30s)')
    parser.add_argument('--browser-name', dest='browser_name', type=str, default=None, help='Browser name reported to clients (default: safari)')
    parser.add_argument('--browser-version', dest='browser_version', type=str, default=None, help='Browser version reported to clients (default: 13.0)')
    parser.add_argument('--connect-timeout', dest='connect_timeout', type=str, metavar='DURATION', default=None, help='Upstream connect timeout (default: 10s)')
    parser.add_argument('--request-timeout', dest='request_timeout', type=str, metavar='DURATION', default=None, help='Per-request timeout (default: 120s)')
    parser.add_argument('--idle-timeout', dest='idle_timeout', type=str, metavar='DURATION', default=None, help='Keep-alive idle timeout (default: 90s)')
    parser.add_argument('--log-level', dest='log_level', type=str, default=None, help='TRACE, DEBUG, INFO, WARNING or ERROR (default: INFO)')
    return parser


def load_config(argv: Optional[Sequence[str]] = None) -> Config:
    """Resolve flags over the INI file over built-in defaults."""
    args = build_parser().parse_args(argv)
    ini = configparser.ConfigParser()
    try:
        ini.read(args.config, encoding="utf-8")
    except configparser.Error as e:
        raise ConfigError(f"{args.config}: {e}") from e

    defaults = Config()

    def pick(name: str, fallback: str) -> str:
        value = getattr(args, name)
        if value is not None:
            return value
        return ini.get(SECTION, name, fallback=fallback)

    listen_host, listen_port = parse_listen(pick("listen", defaults.listen))

    target = pick("target", defaults.target)
    try:
        Upstream.parse(target)
    except ValueError as e:
        raise ConfigError(str(e)) from e

    log_level = pick("log_level", defaults.log_level).upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigError(f"unknown log level: {log_level!r}")

    return Config(
        listen_host=listen_host,
        listen_port=listen_port,
        target=target,
        wait_timeout=parse_duration(pick("wait_timeout", str(defaults.wait_timeout))),
        grace_period=parse_duration(pick("grace_period", str(defaults.grace_period))),
        browser_name=pick("browser_name", defaults.browser_name),
        browser_version=pick("browser_version", defaults.browser_version),
        connect_timeout=parse_duration(pick("connect_timeout", str(defaults.connect_timeout))),
        request_timeout=parse_duration(pick("request_timeout", str(defaults.request_timeout))),
        idle_timeout=parse_duration(pick("idle_timeout", str(defaults.idle_timeout))),
        log_level=log_level,
    )
