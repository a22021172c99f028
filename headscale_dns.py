#!/usr/bin/env python3
"""
headscale-dns - Publish container hostnames as Headscale extra records

Watches the local Docker daemon for running containers carrying a
subdomain label and writes them to a Headscale extra_records JSON file,
pointing every subdomain at this node's Tailscale addresses.

Headscale checksums the file to detect changes, so the output is always
sorted by (name, type) and rendered byte-for-byte the same for the same
set of containers.

Environment Variables:
    HEADSCALE_DNS_JSON_PATH: Path of the extra_records JSON file (required)
    HEADSCALE_DNS_NODE_HOSTNAME: Tailnet hostname of this node (required)
    HEADSCALE_DNS_NODE_IP: IPv4 address of this node, see `tailscale ip -4` (required)
    HEADSCALE_DNS_NODE_IP6: IPv6 address of this node (optional, enables AAAA records)
    HEADSCALE_DNS_BASE_DOMAIN: Tailnet base domain (default: ts.net)
    HEADSCALE_DNS_LABEL_KEY: Container label to read (default: headscale.dns.subdomain)
    HEADSCALE_DNS_REFRESH_SECONDS: Seconds between passes (default: 60)
    HEADSCALE_DNS_LOG_LEVEL: Logging level (default: INFO)

    # Docker connection:
    DOCKER_HOST: Docker daemon URL, read by the Docker SDK
    DOCKER_CONTEXT: Named Docker CLI context to connect through

Container Labels:
    headscale.dns.subdomain: One or more subdomains separated by "|"
        (e.g. "app" or "web | api"), published as
        <subdomain>.<node hostname>.<base domain>
"""

import os
import sys
import json
import time
import logging
from typing import Iterable, List, Mapping, Optional
from dataclasses import dataclass, field

import docker
import docker.errors
from docker.context import ContextAPI
import dns.exception
import dns.ipv4
import dns.ipv6
import dns.name

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)

DEFAULT_LABEL_KEY = 'headscale.dns.subdomain'
DEFAULT_BASE_DOMAIN = 'ts.net'
DEFAULT_REFRESH_SECONDS = 60
LABEL_SEPARATOR = '|'


class ConfigError(Exception):
    """Invalid or missing configuration"""


class SyncError(Exception):
    """A single sync pass failed"""


def normalize_ipv4(text: str) -> str:
    """Return the dotted-quad form of an IPv4 address"""
    try:
        return dns.ipv4.inet_ntoa(dns.ipv4.inet_aton(text.strip()))
    except (dns.exception.SyntaxError, ValueError):
        raise ConfigError(f"Invalid IPv4 address: {text!r}") from None


def normalize_ipv6(text: str) -> str:
    """Return the compressed lowercase form of an IPv6 address"""
    try:
        return dns.ipv6.inet_ntoa(dns.ipv6.inet_aton(text.strip()))
    except (dns.exception.SyntaxError, ValueError):
        raise ConfigError(f"Invalid IPv6 address: {text!r}") from None


@dataclass(frozen=True)
class NodeAddress:
    """Addresses every published subdomain resolves to"""
    ipv4: str
    ipv6: Optional[str] = None

    @classmethod
    def parse(cls, ipv4: str, ipv6: Optional[str] = None) -> 'NodeAddress':
        """
        Validate and normalize textual addresses.

        Two spellings of the same address produce the same records file.
        """
        return cls(normalize_ipv4(ipv4), normalize_ipv6(ipv6) if ipv6 else None)

    def __str__(self) -> str:
        if self.ipv6:
            return f"{self.ipv4}/{self.ipv6}"
        return self.ipv4


@dataclass(frozen=True)
class DNSRecord:
    """One Headscale extra record"""
    name: str  # e.g. "app.node1.ts.net"
    type: str  # "A" or "AAAA"
    value: str  # textual IP address

    def to_dict(self) -> dict:
        """Headscale record object, keys in output order"""
        return {'name': self.name, 'type': self.type, 'value': self.value}


def split_label_value(value: str) -> List[str]:
    """Split a label value into subdomains, dropping blank entries"""
    return [part.strip() for part in value.split(LABEL_SEPARATOR) if part.strip()]


def extract_subdomains(containers: Iterable, label_key: str) -> List[str]:
    """
    Collect requested subdomains from container labels.

    Containers without the label contribute nothing. Subdomains keep label
    order within a container and container order across containers; the same
    subdomain on two containers is returned twice.
    """
    subdomains = []
    for container in containers:
        labels: Mapping[str, str] = container.labels or {}
        if label_key in labels:
            subdomains.extend(split_label_value(labels[label_key]))
    return subdomains


def render_records(subdomains: Iterable[str], node_fqdn: str,
                   address: NodeAddress) -> List[DNSRecord]:
    """Build an A record, plus an AAAA record when IPv6 is set, per subdomain"""
    records = []
    for subdomain in subdomains:
        name = f"{subdomain}.{node_fqdn}"
        records.append(DNSRecord(name, 'A', address.ipv4))
        if address.ipv6:
            records.append(DNSRecord(name, 'AAAA', address.ipv6))
    return records


def canonicalize(records: Iterable[DNSRecord]) -> List[DNSRecord]:
    """Return records sorted by name, then type"""
    return sorted(records, key=lambda record: (record.name, record.type))


def serialize(records: Iterable[DNSRecord]) -> bytes:
    """Render records as the extra_records JSON document"""
    document = [record.to_dict() for record in records]
    return json.dumps(document, indent=2, ensure_ascii=False).encode('utf-8')


def build_records_json(containers: Iterable, label_key: str, node_fqdn: str,
                       address: NodeAddress) -> bytes:
    """Run the whole containers -> JSON pipeline"""
    subdomains = extract_subdomains(containers, label_key)
    return serialize(canonicalize(render_records(subdomains, node_fqdn, address)))


@dataclass
class Config:
    """Settings read once from the environment at startup"""
    json_path: str
    node_hostname: str
    address: NodeAddress
    base_domain: str = DEFAULT_BASE_DOMAIN
    label_key: str = DEFAULT_LABEL_KEY
    refresh_seconds: int = DEFAULT_REFRESH_SECONDS
    log_level: str = 'INFO'
    docker_context: Optional[str] = None
    node_fqdn: str = field(init=False)

    def __post_init__(self):
        if not self.node_hostname:
            raise ConfigError("Node hostname must not be empty")
        if self.refresh_seconds <= 0:
            raise ConfigError(f"Refresh interval must be positive, got {self.refresh_seconds}")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ConfigError(f"Unknown log level: {self.log_level}")

        self.node_fqdn = f"{self.node_hostname}.{self.base_domain}"
        try:
            dns.name.from_text(self.node_fqdn)
        except dns.exception.DNSException as e:
            raise ConfigError(f"Invalid node domain {self.node_fqdn!r}: {e}") from None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Config':
        """Build configuration from HEADSCALE_DNS_* variables"""
        if environ is None:
            environ = os.environ

        def required(name: str, hint: str = '') -> str:
            value = environ.get(name)
            if not value:
                raise ConfigError(f"{name} environment variable is required{hint}")
            return value

        json_path = required('HEADSCALE_DNS_JSON_PATH')
        node_hostname = required('HEADSCALE_DNS_NODE_HOSTNAME')
        ipv4 = required('HEADSCALE_DNS_NODE_IP', '. Use `tailscale ip -4` to get the node IP.')

        ipv6 = environ.get('HEADSCALE_DNS_NODE_IP6')
        if not ipv6:
            log.warning("HEADSCALE_DNS_NODE_IP6 is not set, AAAA records will not be created")

        refresh_str = environ.get('HEADSCALE_DNS_REFRESH_SECONDS', str(DEFAULT_REFRESH_SECONDS))
        try:
            refresh_seconds = int(refresh_str)
        except ValueError:
            raise ConfigError(
                f"Invalid HEADSCALE_DNS_REFRESH_SECONDS value: {refresh_str!r}") from None

        try:
            ipv4 = normalize_ipv4(ipv4)
        except ConfigError as e:
            raise ConfigError(f"{e} in HEADSCALE_DNS_NODE_IP") from None
        if ipv6:
            try:
                ipv6 = normalize_ipv6(ipv6)
            except ConfigError as e:
                raise ConfigError(f"{e} in HEADSCALE_DNS_NODE_IP6") from None

        return cls(
            json_path=json_path,
            node_hostname=node_hostname,
            address=NodeAddress(ipv4, ipv6 or None),
            base_domain=environ.get('HEADSCALE_DNS_BASE_DOMAIN', DEFAULT_BASE_DOMAIN),
            label_key=environ.get('HEADSCALE_DNS_LABEL_KEY', DEFAULT_LABEL_KEY),
            refresh_seconds=refresh_seconds,
            log_level=environ.get('HEADSCALE_DNS_LOG_LEVEL', 'INFO').upper(),
            docker_context=environ.get('DOCKER_CONTEXT') or None,
        )

    def log_settings(self):
        """Log every setting and an example record at startup"""
        log.info("headscale-dns Configuration:")
        log.info(f"  Label Key: {self.label_key}")
        log.info(f"  JSON extra_records path: {self.json_path}")
        log.info(f"  Base Domain: {self.base_domain}")
        log.info(f"  Node Hostname: {self.node_hostname}")
        log.info(f"  Node IPv4 Address: {self.address.ipv4}")
        if self.address.ipv6:
            log.info(f"  Node IPv6 Address: {self.address.ipv6}")
        log.info(f"  Example URL: service.{self.node_fqdn} -> {self.address}")
        log.info(f"  Refresh Interval: {self.refresh_seconds} seconds")


def docker_client(context_name: Optional[str] = None) -> docker.DockerClient:
    """Connect to Docker through DOCKER_HOST or a named CLI context"""
    if not context_name:
        docker_host = os.environ.get('DOCKER_HOST')
        if docker_host:
            log.info(f"Using DOCKER_HOST: {docker_host}")
        return docker.from_env()

    context = ContextAPI.get_context(context_name)
    if context is None:
        raise ConfigError(f"Docker context {context_name!r} not found")
    log.info(f"Using DOCKER_CONTEXT: {context_name} ({context.Host})")
    return docker.DockerClient(base_url=context.Host, tls=context.TLSConfig or False)


class Clock:
    """Time source for the poll loop; tests substitute a fake"""

    def monotonic(self) -> float:
        """Seconds on a clock that never goes backwards"""
        return time.monotonic()

    def sleep(self, seconds: float):
        """Block for the given number of seconds"""
        time.sleep(seconds)


class RecordsWriter:
    """Regenerates the extra_records file from running containers"""

    def __init__(self, config: Config, docker_client, clock: Optional[Clock] = None):
        self.config = config
        self.docker_client = docker_client
        self.clock = clock or Clock()

    def list_running_containers(self) -> list:
        """List running containers, leaving out paused ones"""
        containers = self.docker_client.containers.list(
            filters={'status': 'running'}, ignore_removed=True)
        log.info(f"Found {len(containers)} running containers")
        return containers

    def write_file(self, data: bytes):
        """Replace the records file in one step"""
        path = self.config.json_path
        tmp_path = path + '.tmp'
        try:
            with open(tmp_path, 'wb') as f:
                f.write(data)
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def sync_once(self) -> int:
        """Run one full pass and return the number of records written"""
        try:
            containers = self.list_running_containers()
        except (docker.errors.DockerException, OSError) as e:
            raise SyncError(f"Error getting running containers: {e}") from e

        subdomains = extract_subdomains(containers, self.config.label_key)
        log.info(f"Discovered {len(subdomains)} subdomains")

        records = canonicalize(render_records(subdomains, self.config.node_fqdn, self.config.address))
        for record in records:
            log.debug(f"{record.type} {record.name} -> {record.value}")

        try:
            self.write_file(serialize(records))
        except OSError as e:
            raise SyncError(f"Error writing JSON file {self.config.json_path}: {e}") from e

        log.info(f"Successfully wrote {len(records)} DNS records to JSON file")
        return len(records)

    def run(self, max_cycles: Optional[int] = None):
        """
        Sync now, then on every refresh interval.

        Ticks are aligned to the start of the loop; a pass that overruns its
        slot waits for the next aligned tick rather than running back to back.
        A failed pass is logged and retried on the next tick.
        """
        interval = self.config.refresh_seconds
        log.info(f"Starting headscale-dns (polling every {interval}s)")

        start = self.clock.monotonic()
        cycles = 0
        while True:
            try:
                self.sync_once()
            except SyncError as e:
                log.error(str(e))

            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                return

            elapsed = self.clock.monotonic() - start
            next_tick = (int(elapsed // interval) + 1) * interval
            self.clock.sleep(next_tick - elapsed)


def main():
    try:
        config = Config.from_env()
    except ConfigError as e:
        log.error(str(e))
        sys.exit(1)

    logging.getLogger().setLevel(config.log_level)
    config.log_settings()

    try:
        client = docker_client(config.docker_context)
    except (ConfigError, docker.errors.DockerException) as e:
        log.error(f"Could not connect to Docker: {e}")
        sys.exit(1)

    try:
        RecordsWriter(config, client).run()
    finally:
        client.close()


if __name__ == '__main__':
    main()
