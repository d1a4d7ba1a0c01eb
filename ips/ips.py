#!/usr/bin/env python3
"""
ips - List local interface addresses and, optionally, your public IP.
Prints plain "address<TAB>interface" lines or a JSON array.
"""

import argparse
import ipaddress
import json
import logging
import os
import socket
import sys
from typing import List, NamedTuple, Optional

import psutil
import requests

PUBLIC_IP_URL = "https://wtfismyip.com/text"
USER_AGENT = "curl/8.7.1"
DEFAULT_TIMEOUT = 10.0
ENV_PREFIX = "IPS_"

log = logging.getLogger("ips")


class IpsError(Exception):
    """Base class for errors that abort a run"""


class PublicIpError(IpsError):
    """The public IP lookup failed"""


class PublicIpTimeout(PublicIpError):
    """The public IP lookup did not answer in time"""


class InterfaceError(IpsError):
    """Local interfaces could not be enumerated"""


class SerializationError(IpsError):
    """Collected addresses could not be encoded as JSON"""


class AddressRecord(NamedTuple):
    address: str
    interface: str

    def __str__(self):
        return f"{self.address}\t{self.interface}"

    def to_dict(self):
        return {"Address": self.address, "Interface": self.interface}


class Config(NamedTuple):
    public: bool = False
    all: bool = False
    json_output: bool = False
    log_level: int = 0
    timeout: float = DEFAULT_TIMEOUT


# Configuration

_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


def _bool(value):
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value: {value!r}")


def _uint(value):
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid unsigned integer: {value!r}")
    if number < 0:
        raise argparse.ArgumentTypeError(f"invalid unsigned integer: {value!r}")
    return number


def _seconds(value):
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid timeout: {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"timeout must be positive: {value!r}")
    return number


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that reports usage errors with exit code 1"""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


# (flag name, dest, converter) for every option an environment variable can set
_ENV_OPTIONS = [
    ("p", "public", _bool),
    ("a", "all", _bool),
    ("json", "json_output", _bool),
    ("l", "log_level", _uint),
    ("timeout", "timeout", _seconds),
]


def build_parser():
    parser = _ArgumentParser(
        prog="ips",
        description="List local interface addresses and, optionally, your public IP.",
        epilog="Every flag can also be set through IPS_<FLAG>, e.g. IPS_JSON=true or IPS_L=2.",
    )
    # Boolean flags take an optional value, so -a=false can undo IPS_A=true
    parser.add_argument("-p", "--p", dest="public", nargs="?", const=True, default=False,
                        type=_bool, metavar="BOOL",
                        help="print public ip only, exclusive to -a")
    parser.add_argument("-a", "--a", dest="all", nargs="?", const=True, default=False,
                        type=_bool, metavar="BOOL",
                        help="print public ip and all local ips (wins over -p)")
    parser.add_argument("-json", "--json", dest="json_output", nargs="?", const=True,
                        default=False, type=_bool, metavar="BOOL",
                        help="output as JSON")
    parser.add_argument("-l", "--l", dest="log_level", type=_uint, default=0, metavar="LEVEL",
                        help="log level: 0=warn, 1=info, 2+=debug (default: 0)")
    parser.add_argument("-timeout", "--timeout", dest="timeout", type=_seconds,
                        default=DEFAULT_TIMEOUT, metavar="SECONDS",
                        help=f"public ip lookup timeout (default: {DEFAULT_TIMEOUT:g})")
    return parser


def parse_args(argv=None, environ=None) -> Config:
    """
    Build the run configuration from the command line.
    IPS_* environment variables provide defaults; explicit flags win.
    Malformed values exit with status 1.
    """
    if environ is None:
        environ = os.environ

    parser = build_parser()

    defaults = {}
    for flag, dest, convert in _ENV_OPTIONS:
        name = ENV_PREFIX + flag.upper()
        raw = environ.get(name)
        if raw is None:
            continue
        try:
            defaults[dest] = convert(raw)
        except argparse.ArgumentTypeError as e:
            parser.error(f"environment variable {name}: {e}")
    parser.set_defaults(**defaults)

    args = parser.parse_args(argv)
    return Config(
        public=args.public,
        all=args.all,
        json_output=args.json_output,
        log_level=args.log_level,
        timeout=args.timeout,
    )


# Logging

class KeyValueFormatter(logging.Formatter):
    """Render a record as key=value pairs; fields passed via extra= are appended"""

    _reserved = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

    def __init__(self, project="ips"):
        super().__init__()
        self.project = project

    @staticmethod
    def _quote(value):
        text = str(value)
        if not text or any(c.isspace() or c in '"=' for c in text):
            return json.dumps(text, ensure_ascii=False)
        return text

    def format(self, record):
        fields = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "msg": record.getMessage(),
            "project": self.project,
        }
        for key, value in vars(record).items():
            if key not in self._reserved:
                fields[key] = value
        if record.exc_info:
            fields["exc"] = self.formatException(record.exc_info)
        return " ".join(f"{key}={self._quote(value)}" for key, value in fields.items())


def log_level_for(verbosity: int) -> int:
    if verbosity <= 0:
        return logging.WARNING
    if verbosity == 1:
        return logging.INFO
    return logging.DEBUG


def setup_logging(verbosity=0, stream=None):
    """Setup logging configuration"""
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(KeyValueFormatter())
    logging.basicConfig(
        level=log_level_for(verbosity),
        handlers=[handler],
        force=True,
    )
    return log


# Collection

def get_public_ip(timeout=DEFAULT_TIMEOUT) -> AddressRecord:
    """
    Gets the public IP address using an external service
    """
    log.info("looking up public ip", extra={"url": PUBLIC_IP_URL})
    try:
        response = requests.get(
            PUBLIC_IP_URL,
            headers={"User-Agent": USER_AGENT},
            timeout=timeout,
        )
        response.raise_for_status()
        body = response.text
    except requests.exceptions.Timeout as e:
        raise PublicIpTimeout(f"public ip lookup timed out after {timeout:g}s: {e}") from e
    except requests.exceptions.RequestException as e:
        raise PublicIpError(f"public ip lookup failed: {e}") from e

    record = AddressRecord(body.strip(), "public")
    log.debug("public ip", extra={"address": record.address})
    return record


def _prefix_length(netmask: str) -> int:
    return bin(int(ipaddress.ip_address(netmask))).count("1")


def format_address(address: str, netmask: Optional[str]) -> str:
    """
    Render an OS-reported address as address/prefixlen.
    IPv6 zone suffixes are dropped; without a netmask the bare address is kept.
    """
    address = address.split("%", 1)[0]
    if not netmask:
        return address
    try:
        return f"{address}/{_prefix_length(netmask.split('%', 1)[0])}"
    except ValueError:
        log.debug("unusable netmask", extra={"address": address, "netmask": netmask})
        return address


def local_ips() -> List[AddressRecord]:
    """
    Get IPv4 and IPv6 addresses of every NIC, in the order the OS reports them.
    """
    try:
        interfaces = psutil.net_if_addrs()
    except (OSError, psutil.Error) as e:
        raise InterfaceError(f"could not list network interfaces: {e}") from e

    results = []
    for nic, addrs in interfaces.items():
        ips = [
            format_address(addr.address, addr.netmask)
            for addr in addrs
            if addr.family in (socket.AF_INET, socket.AF_INET6)
        ]
        if not ips:
            log.debug("skipping interface without addresses", extra={"interface": nic})
            continue
        for ip in ips:
            results.append(AddressRecord(ip, nic))
    return results


def get_ip_addresses(config: Config) -> List[AddressRecord]:
    """
    Collect the records to print: the public address first when -p or -a is
    set, then every local address unless only -p was given.
    Any failure aborts the whole collection.
    """
    ips = []
    if config.public or config.all:
        ips.append(get_public_ip(timeout=config.timeout))
    if config.public and not config.all:
        return ips
    ips.extend(local_ips())
    return ips


# Output

def format_text(records) -> List[str]:
    return [str(record) for record in records]


def format_json(records) -> str:
    try:
        return json.dumps(
            [record.to_dict() for record in records],
            separators=(",", ":"),
            ensure_ascii=False,
        )
    except (TypeError, ValueError) as e:
        raise SerializationError(f"could not encode addresses as JSON: {e}") from e


def print_addresses(records, json_output=False, stream=None):
    if stream is None:
        stream = sys.stdout
    if json_output:
        lines = [format_json(records)]
    else:
        lines = format_text(records)
    for line in lines:
        print(line, file=stream)


def main(argv=None) -> int:
    config = parse_args(argv)
    setup_logging(config.log_level)

    log.debug(
        "starting",
        extra={
            "public": config.public,
            "all": config.all,
            "json": config.json_output,
            "logLevel": config.log_level,
            "timeout": config.timeout,
        },
    )

    try:
        ips = get_ip_addresses(config)
    except IpsError as e:
        log.error("could not get ip addresses", extra={"err": e})
        return 1

    try:
        print_addresses(ips, json_output=config.json_output)
    except SerializationError as e:
        log.error("could not print ip addresses", extra={"err": e})
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
