#!/usr/bin/env python3
"""external-mdns - Advertise Kubernetes Services and Ingresses over mDNS

Watches Services and Ingresses in a Kubernetes cluster and announces them on
the local network with multicast DNS, so LAN clients can resolve
`<name>.local` hostnames without a central DNS server. Similar in spirit to
Kubernetes external-dns, but the "DNS provider" is the local link.

Supported Sources:
    - service: Services of type LoadBalancer (and ClusterIP when enabled)
    - ingress: Ingress rules whose host ends in ".local"

Service annotations (all optional, prefix "external-mdns.blake.github.io/"):

    hostname           Overrides the default "<name>.<namespace>.local." hostname
    service-instance   Overrides the default "<namespace>/<name>" DNS-SD instance name
    service-txt        JSON object of TXT data keyed by port name, e.g.
                         {"http": {"path": "/", "version": "1"}}
    publish            Presence alone marks the Service for publication

Environment variables (command-line flags take precedence):

    Kubernetes:
        EXTERNAL_MDNS_KUBECONFIG        Path to a kubeconfig file (default: ~/.kube/config
                                        when present, otherwise in-cluster config)
        EXTERNAL_MDNS_MASTER            URL of the Kubernetes API server (optional)

    Publication:
        EXTERNAL_MDNS_SOURCE            Comma-separated sources: "service", "ingress"
        EXTERNAL_MDNS_PUBLISH_ALL       Publish all Services, including those without
                                        annotations (default: false)
        EXTERNAL_MDNS_PUBLISH_INTERNAL  Publish the cluster IP of ClusterIP Services
                                        (default: false)
        EXTERNAL_MDNS_NAMESPACE         Limit sources to a single namespace (default: all)
        EXTERNAL_MDNS_RECORD_TTL        DNS record time-to-live in seconds (default: 120)
        EXTERNAL_MDNS_PUBLISHER         "multicast" or "log" (dry run) (default: multicast)

    Runtime:
        EXTERNAL_MDNS_CONFIG            Optional YAML file with any of the settings above,
                                        using snake_case keys, e.g.
                                          sources: [service, ingress]
                                          publish_all: false
                                          record_ttl: 120
        EXTERNAL_MDNS_SYNC_TIMEOUT      Seconds to wait for the initial cache sync (default: 60)
        LOG_LEVEL                       DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import argparse
import ipaddress
import json
import logging
import os
import signal
import socket
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import yaml
import zeroconf
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from zeroconf.const import (
    _FLAGS_AA,
    _FLAGS_QR_RESPONSE,
    _TYPE_A,
    _TYPE_AAAA,
    _TYPE_PTR,
    _TYPE_SRV,
    _TYPE_TXT,
)

logger = logging.getLogger(__name__)

ANNOTATION_PREFIX = "external-mdns.blake.github.io/"
HOSTNAME_ANNOTATION = ANNOTATION_PREFIX + "hostname"
INSTANCE_ANNOTATION = ANNOTATION_PREFIX + "service-instance"
TXT_ANNOTATION = ANNOTATION_PREFIX + "service-txt"
PUBLISH_ANNOTATION = ANNOTATION_PREFIX + "publish"

CLASS_IN = 1
LOCAL_SUFFIX = ".local."

# =============================================================================
# Logging Setup
# =============================================================================


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# =============================================================================
# Enums
# =============================================================================


class SourceKind(Enum):
    """Kubernetes resource kinds that can be advertised."""

    SERVICE = "service"
    INGRESS = "ingress"


class Action(Enum):
    """What the dispatcher should do with the records of an event.

    Updates are never modelled directly: a watcher emits REMOVED for the old
    object followed by ADDED for the new one.
    """

    ADDED = "added"
    REMOVED = "removed"


class RecordType(Enum):
    A = "A"
    AAAA = "AAAA"
    PTR = "PTR"
    SRV = "SRV"
    TXT = "TXT"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class DNSRecord:
    """Represents a DNS record to be announced.

    Only the fields relevant to `rtype` are populated. `ttl` and `rclass` stay
    at zero until the dispatcher stamps them.
    """

    name: str
    rtype: RecordType
    address: str = ""
    target: str = ""
    priority: int = 0
    weight: int = 0
    port: int = 0
    text: Tuple[str, ...] = ()
    ttl: int = 0
    rclass: int = 0

    def __str__(self) -> str:
        if self.rtype in (RecordType.A, RecordType.AAAA):
            data = self.address
        elif self.rtype == RecordType.PTR:
            data = self.target
        elif self.rtype == RecordType.SRV:
            data = f"{self.priority} {self.weight} {self.port} {self.target}"
        else:
            data = " ".join(json.dumps(t) for t in self.text)
        return f"{self.name} {self.ttl} {self.rtype.value} {data}"

    def to_zeroconf(self) -> zeroconf.DNSRecord:
        """Convert to a zeroconf record for wire encoding."""
        rclass = self.rclass or CLASS_IN
        if self.rtype == RecordType.A:
            packed = socket.inet_pton(socket.AF_INET, self.address)
            return zeroconf.DNSAddress(self.name, _TYPE_A, rclass, self.ttl, packed)
        if self.rtype == RecordType.AAAA:
            packed = socket.inet_pton(socket.AF_INET6, self.address)
            return zeroconf.DNSAddress(self.name, _TYPE_AAAA, rclass, self.ttl, packed)
        if self.rtype == RecordType.PTR:
            return zeroconf.DNSPointer(self.name, _TYPE_PTR, rclass, self.ttl, self.target)
        if self.rtype == RecordType.SRV:
            return zeroconf.DNSService(
                self.name,
                _TYPE_SRV,
                rclass,
                self.ttl,
                self.priority,
                self.weight,
                self.port,
                self.target,
            )
        # TXT rdata is a run of length-prefixed strings
        rdata = b"".join(
            bytes((len(data),)) + data for data in (t.encode("utf-8")[:255] for t in self.text)
        )
        return zeroconf.DNSText(self.name, _TYPE_TXT, rclass, self.ttl, rdata)


@dataclass(frozen=True)
class ResourceEvent:
    """A translated cluster change, handed from a watcher to the dispatcher."""

    source_kind: SourceKind
    action: Action
    records: Tuple[DNSRecord, ...] = ()


@dataclass(frozen=True)
class ServicePort:
    name: str
    port: int
    protocol: str


@dataclass(frozen=True)
class ServiceDescriptor:
    """Read-only view of a Kubernetes Service."""

    name: str
    namespace: str
    type: str
    cluster_ip: str = ""
    load_balancer_ips: Tuple[str, ...] = ()
    ports: Tuple[ServicePort, ...] = ()
    annotations: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_resource(cls, obj: Any) -> Optional["ServiceDescriptor"]:
        """Project a `V1Service`; returns None for any other object."""
        if not isinstance(obj, client.V1Service):
            return None
        metadata = obj.metadata or client.V1ObjectMeta()
        spec = obj.spec or client.V1ServiceSpec()
        ports = tuple(
            ServicePort(name=p.name or "", port=int(p.port or 0), protocol=p.protocol or "")
            for p in spec.ports or []
        )
        return cls(
            name=metadata.name or "",
            namespace=metadata.namespace or "",
            type=spec.type or "ClusterIP",
            cluster_ip=spec.cluster_ip or "",
            load_balancer_ips=_load_balancer_ips(obj.status),
            ports=ports,
            annotations=dict(metadata.annotations or {}),
        )


@dataclass(frozen=True)
class IngressDescriptor:
    """Read-only view of a Kubernetes Ingress."""

    name: str
    namespace: str
    load_balancer_ips: Tuple[str, ...] = ()
    hosts: Tuple[str, ...] = ()

    @classmethod
    def from_resource(cls, obj: Any) -> Optional["IngressDescriptor"]:
        """Project a `V1Ingress`; returns None for any other object."""
        if not isinstance(obj, client.V1Ingress):
            return None
        metadata = obj.metadata or client.V1ObjectMeta()
        rules = (obj.spec.rules if obj.spec else None) or []
        return cls(
            name=metadata.name or "",
            namespace=metadata.namespace or "",
            load_balancer_ips=_load_balancer_ips(obj.status),
            hosts=tuple(rule.host or "" for rule in rules),
        )


@dataclass(frozen=True)
class EligibilityDecision:
    eligible: bool
    hostname: str = ""
    instance_name: str = ""
    text_by_port: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)


def _load_balancer_ips(status: Any) -> Tuple[str, ...]:
    load_balancer = getattr(status, "load_balancer", None)
    ingress = getattr(load_balancer, "ingress", None) or []
    return tuple(getattr(entry, "ip", None) or "" for entry in ingress)


# =============================================================================
# Record Builders
# =============================================================================


def reverse_name(ip: Union[ipaddress.IPv4Address, ipaddress.IPv6Address]) -> str:
    """Return the in-addr.arpa./ip6.arpa. owner name for an address."""
    return f"{ip.reverse_pointer}."


def build_address_records(name: str, address: str, add_reverse: bool) -> List[DNSRecord]:
    """Build the forward A/AAAA record, optionally followed by its reverse PTR.

    IPv4-mapped IPv6 addresses are published as plain IPv4.
    """
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        logger.debug(f"Skipping unparseable address '{address}' for {name}")
        return []

    if ip.version == 6 and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped

    rtype = RecordType.A if ip.version == 4 else RecordType.AAAA
    forward = DNSRecord(name=name, rtype=rtype, address=str(ip))
    if not add_reverse:
        return [forward]
    reverse = DNSRecord(name=reverse_name(ip), rtype=RecordType.PTR, target=name)
    return [forward, reverse]


_SD_PROTOCOLS = {"TCP": "tcp", "UDP": "udp"}


def build_service_discovery_records(
    instance_name: str,
    service_name: str,
    protocol: str,
    hostname: str,
    port: int,
    text: Sequence[str] = (),
) -> List[DNSRecord]:
    """Build the DNS-SD PTR/SRV/TXT bundle for one service port.

    Returns an empty list when a required field is missing or the protocol is
    neither TCP nor UDP.
    """
    if not instance_name or not service_name or not hostname or port == 0:
        return []

    proto = _SD_PROTOCOLS.get(protocol)
    if proto is None:
        logger.debug(f"Skipping port '{service_name}' with unsupported protocol '{protocol}'")
        return []

    group = f"_{service_name.lower()}._{proto}.local."
    instance = f"{instance_name}.{group}"
    return [
        DNSRecord(name=group, rtype=RecordType.PTR, target=instance),
        DNSRecord(name=instance, rtype=RecordType.SRV, port=port, target=hostname),
        DNSRecord(name=instance, rtype=RecordType.TXT, text=tuple(text) or ("",)),
    ]


# =============================================================================
# Annotation Policy
# =============================================================================


def normalize_hostname(hostname: str) -> str:
    """Ensure a single trailing dot and a ".local." suffix."""
    hostname = hostname.rstrip(".") + "."
    if not hostname.endswith(LOCAL_SUFFIX):
        hostname = hostname + "local."
    return hostname


def parse_service_txt(value: str) -> Dict[str, Tuple[str, ...]]:
    """Flatten the service-txt annotation into `key=value` strings per port.

    Malformed input (invalid JSON, or anything other than an object of flat
    string objects) is treated as absent. JSON `null` is accepted: a null port
    entry carries no text and a null value is an empty string.
    """
    if not value:
        return {}
    try:
        raw = json.loads(value)
    except json.JSONDecodeError:
        logger.debug(f"Ignoring malformed {TXT_ANNOTATION} annotation: {value!r}")
        return {}

    if not isinstance(raw, dict):
        return {}
    text_by_port: Dict[str, Tuple[str, ...]] = {}
    for port_name, entries in raw.items():
        if entries is None:
            continue
        if not isinstance(entries, dict) or not all(
            v is None or isinstance(v, str) for v in entries.values()
        ):
            logger.debug(f"Ignoring malformed {TXT_ANNOTATION} annotation: {value!r}")
            return {}
        text_by_port[port_name] = tuple(
            f"{k}={v if v is not None else ''}" for k, v in entries.items()
        )
    return text_by_port


def in_namespace(namespace: str, restrict_to: str) -> bool:
    return not restrict_to or namespace == restrict_to


def evaluate_service(service: ServiceDescriptor, publish_all: bool) -> EligibilityDecision:
    """Decide whether a Service is published and with which names and TXT data.

    Presence of any recognized annotation is enough, regardless of its content.
    """
    annotations = service.annotations
    has_hostname = HOSTNAME_ANNOTATION in annotations
    has_instance = INSTANCE_ANNOTATION in annotations
    has_txt = TXT_ANNOTATION in annotations
    has_publish = PUBLISH_ANNOTATION in annotations

    if not (publish_all or has_hostname or has_instance or has_txt or has_publish):
        return EligibilityDecision(eligible=False)

    if has_hostname:
        hostname = annotations[HOSTNAME_ANNOTATION]
    else:
        hostname = f"{service.name}.{service.namespace}.local."

    if has_instance:
        instance_name = annotations[INSTANCE_ANNOTATION]
    else:
        instance_name = f"{service.namespace}/{service.name}"

    return EligibilityDecision(
        eligible=True,
        hostname=normalize_hostname(hostname),
        instance_name=instance_name,
        text_by_port=parse_service_txt(annotations.get(TXT_ANNOTATION, "")),
    )


def is_eligible_ingress_host(host: str) -> bool:
    return bool(host) and host.endswith(".local")


def _last_non_empty(values: Sequence[str]) -> str:
    chosen = ""
    for value in values:
        if value:
            chosen = value
    return chosen


def select_service_address(service: ServiceDescriptor, publish_internal: bool) -> str:
    """Pick the address to advertise for a Service, or "" when there is none."""
    if service.type == "LoadBalancer":
        return _last_non_empty(service.load_balancer_ips)
    if service.type == "ClusterIP" and publish_internal:
        return service.cluster_ip
    return ""


# =============================================================================
# Configuration
# =============================================================================


class ConfigError(ValueError):
    """Raised for invalid configuration values."""


SUPPORTED_SOURCES = ("service", "ingress")
SUPPORTED_PUBLISHERS = ("multicast", "log")


def default_kubeconfig_path() -> str:
    path = Path.home() / ".kube" / "config"
    return str(path) if path.exists() else ""


@dataclass(frozen=True)
class Settings:
    """Process configuration, built once at startup."""

    sources: Tuple[str, ...] = ()
    publish_all: bool = False
    publish_internal: bool = False
    namespace: str = ""
    record_ttl: int = 120
    sync_timeout: float = 60.0
    kubeconfig: str = ""
    master: str = ""
    publisher: str = "multicast"
    log_level: str = "INFO"
    test: bool = False

    def describe(self) -> List[str]:
        return [f"{f.name}:{getattr(self, f.name)!r}" for f in fields(self)]


def _parse_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "y", "on"}:
        return True
    if text in {"0", "false", "no", "n", "off", ""}:
        return False
    raise ConfigError(f"Invalid boolean value: {value!r}")


def _parse_int(value: Any, key: str) -> int:
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigError(f"{key}: invalid integer {value!r}") from None


def _parse_float(value: Any, key: str) -> float:
    try:
        return float(str(value).strip())
    except ValueError:
        raise ConfigError(f"{key}: invalid number {value!r}") from None


def _parse_sources(value: Any) -> Tuple[str, ...]:
    """Parse a source list, ignoring unknown names and duplicates."""
    if value is None:
        return ()
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = [str(v) for v in value]
    sources: List[str] = []
    for raw_item in items:
        item = raw_item.strip().lower()
        if item in SUPPORTED_SOURCES and item not in sources:
            sources.append(item)
    return tuple(sources)


def load_config_file(path: str) -> Dict[str, Any]:
    """Load settings from a YAML file; keys may use dashes or underscores."""
    config_file = Path(path)
    if not config_file.is_file():
        raise ConfigError(f"Config file not found: {path}")
    try:
        data = yaml.safe_load(config_file.read_text("utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return {str(k).replace("-", "_"): v for k, v in data.items()}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="external-mdns",
        description="Advertise Kubernetes Services and Ingresses over mDNS",
    )
    # Every default is None so that unset flags fall through to env and file.
    parser.add_argument("--config", help="Path to a YAML configuration file")
    parser.add_argument("--kubeconfig", help="(optional) Absolute path to the kubeconfig file")
    parser.add_argument("--master", help="URL to Kubernetes master")
    parser.add_argument(
        "--publish-all",
        action="store_true",
        default=None,
        help="Publish all services, including those without annotation (default: false)",
    )
    parser.add_argument(
        "--publish-internal",
        action="store_true",
        default=None,
        help="Publish the cluster IP of ClusterIP services (default: false)",
    )
    parser.add_argument(
        "--namespace",
        help="Limit sources of endpoints to a specific namespace (default: all namespaces)",
    )
    parser.add_argument(
        "--source",
        action="append",
        dest="sources",
        help="The resource types that are queried for endpoints; specify multiple "
        "times for multiple sources (required, options: service, ingress)",
    )
    parser.add_argument("--record-ttl", help="DNS record time-to-live")
    parser.add_argument("--sync-timeout", help="Seconds to wait for the initial cache sync")
    parser.add_argument("--publisher", help="Record publisher: multicast or log")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument(
        "--test",
        action="store_true",
        help="testing mode, no connection to k8s",
    )
    return parser


def load_settings(
    argv: Optional[Sequence[str]] = None, environ: Optional[Mapping[str, str]] = None
) -> Settings:
    """Build Settings from defaults, config file, environment and flags."""
    args = build_parser().parse_args(argv)
    env = os.environ if environ is None else environ

    config_path = args.config or env.get("EXTERNAL_MDNS_CONFIG", "")
    file_values = load_config_file(config_path) if config_path else {}

    def lookup(flag_value: Any, env_key: str, file_key: str) -> Any:
        if flag_value is not None:
            return flag_value
        if env_key in env:
            return env[env_key]
        return file_values.get(file_key)

    kubeconfig = lookup(args.kubeconfig, "EXTERNAL_MDNS_KUBECONFIG", "kubeconfig")
    record_ttl = lookup(args.record_ttl, "EXTERNAL_MDNS_RECORD_TTL", "record_ttl")
    sync_timeout = lookup(args.sync_timeout, "EXTERNAL_MDNS_SYNC_TIMEOUT", "sync_timeout")

    return Settings(
        sources=_parse_sources(lookup(args.sources, "EXTERNAL_MDNS_SOURCE", "sources")),
        publish_all=_parse_bool(
            lookup(args.publish_all, "EXTERNAL_MDNS_PUBLISH_ALL", "publish_all")
        ),
        publish_internal=_parse_bool(
            lookup(args.publish_internal, "EXTERNAL_MDNS_PUBLISH_INTERNAL", "publish_internal")
        ),
        namespace=str(lookup(args.namespace, "EXTERNAL_MDNS_NAMESPACE", "namespace") or "").strip(),
        record_ttl=(
            _parse_int(record_ttl, "record_ttl") if record_ttl is not None else Settings.record_ttl
        ),
        sync_timeout=(
            _parse_float(sync_timeout, "sync_timeout")
            if sync_timeout is not None
            else Settings.sync_timeout
        ),
        kubeconfig=str(kubeconfig) if kubeconfig is not None else default_kubeconfig_path(),
        master=str(lookup(args.master, "EXTERNAL_MDNS_MASTER", "master") or "").strip(),
        publisher=str(
            lookup(args.publisher, "EXTERNAL_MDNS_PUBLISHER", "publisher") or "multicast"
        )
        .strip()
        .lower(),
        log_level=str(lookup(args.log_level, "LOG_LEVEL", "log_level") or "INFO").strip(),
        test=args.test,
    )


def validate_settings(settings: Settings) -> List[str]:
    """Return a list of configuration errors (empty when valid)."""
    errors = []
    if settings.record_ttl <= 0:
        errors.append(f"record_ttl must be positive, got {settings.record_ttl}")
    if settings.sync_timeout <= 0:
        errors.append(f"sync_timeout must be positive, got {settings.sync_timeout}")
    if settings.publisher not in SUPPORTED_PUBLISHERS:
        errors.append(
            f"Unsupported publisher: '{settings.publisher}'. "
            f"Supported: {', '.join(SUPPORTED_PUBLISHERS)}"
        )
    if not settings.test and not settings.sources:
        errors.append("Specify at least one source to sync records from.")
    return errors


# =============================================================================
# Publisher Interface and Implementations
# =============================================================================


class Publisher(ABC):
    """Abstract base class for record publishers.

    Both operations are idempotent: publishing a record twice, or retracting a
    record that was never published, is a no-op.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the publisher name for logging."""
        pass

    @abstractmethod
    def publish(self, record: DNSRecord) -> bool:
        """Announce a record."""
        pass

    @abstractmethod
    def unpublish(self, record: DNSRecord) -> bool:
        """Retract a previously announced record."""
        pass

    def close(self) -> None:
        """Release resources held by the publisher."""
        pass


def _record_key(record: DNSRecord) -> DNSRecord:
    return replace(record, ttl=0, rclass=0)


class MulticastAnnouncer(Publisher):
    """Announces records on the local link through zeroconf.

    Publishing multicasts an unsolicited response carrying the record,
    retracting multicasts a goodbye (TTL 0). Published records are announced
    again every `refresh_interval` seconds so they never age out of client
    caches.
    """

    def __init__(
        self,
        zc: Optional[zeroconf.Zeroconf] = None,
        refresh_interval: Optional[float] = None,
    ):
        self._zc = zc if zc is not None else zeroconf.Zeroconf()
        self._records: Dict[DNSRecord, DNSRecord] = {}
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._refresher: Optional[threading.Thread] = None
        if refresh_interval:
            self._refresher = threading.Thread(
                target=self._refresh_loop,
                args=(refresh_interval,),
                name="mdns-refresh",
                daemon=True,
            )
            self._refresher.start()

    @property
    def name(self) -> str:
        return "mDNS multicast"

    @property
    def records(self) -> List[DNSRecord]:
        with self._lock:
            return list(self._records.values())

    def publish(self, record: DNSRecord) -> bool:
        key = _record_key(record)
        with self._lock:
            if key in self._records:
                logger.debug(f"Record already published: {record}")
                return True
            if not self._send([record]):
                return False
            self._records[key] = record
        logger.info(f"Published record: {record}")
        return True

    def unpublish(self, record: DNSRecord) -> bool:
        key = _record_key(record)
        with self._lock:
            published = self._records.pop(key, None)
            if published is None:
                logger.debug(f"Record not published, nothing to retract: {record}")
                return True
            if not self._send([replace(published, ttl=0)]):
                return False
        logger.info(f"Unpublished record: {record}")
        return True

    def refresh(self) -> bool:
        """Announce every published record again."""
        with self._lock:
            records = list(self._records.values())
            if not records:
                return True
            logger.debug(f"Re-announcing {len(records)} record(s)")
            return self._send(records)

    def close(self) -> None:
        self._closed.set()
        if self._refresher is not None:
            self._refresher.join(timeout=5)
        for record in self.records:
            self.unpublish(record)
        self._zc.close()

    def _refresh_loop(self, interval: float) -> None:
        while not self._closed.wait(interval):
            self.refresh()

    def _send(self, records: List[DNSRecord]) -> bool:
        out = zeroconf.DNSOutgoing(_FLAGS_QR_RESPONSE | _FLAGS_AA)
        try:
            for record in records:
                out.add_answer_at_time(record.to_zeroconf(), 0)
            self._zc.send(out)
            return True
        except (OSError, ValueError) as e:
            names = ", ".join(record.name for record in records)
            logger.error(f"Failed to send mDNS announcement for {names}: {e}")
            return False


class LogPublisher(Publisher):
    """Dry-run publisher that only logs what would be announced."""

    def __init__(self) -> None:
        self._records: Dict[DNSRecord, DNSRecord] = {}

    @property
    def name(self) -> str:
        return "log (dry run)"

    @property
    def records(self) -> List[DNSRecord]:
        return list(self._records.values())

    def publish(self, record: DNSRecord) -> bool:
        key = _record_key(record)
        if key not in self._records:
            self._records[key] = record
            logger.info(f"[dry-run] Would publish: {record}")
        return True

    def unpublish(self, record: DNSRecord) -> bool:
        if self._records.pop(_record_key(record), None) is not None:
            logger.info(f"[dry-run] Would unpublish: {record}")
        return True


def create_publisher(settings: Settings) -> Publisher:
    """Factory function to create the configured publisher."""
    if settings.publisher == "multicast":
        return MulticastAnnouncer(refresh_interval=settings.record_ttl / 2)
    elif settings.publisher == "log":
        return LogPublisher()
    else:
        raise ValueError(
            f"Unsupported publisher: '{settings.publisher}'. Supported publishers: multicast, log"
        )


# =============================================================================
# Shared Channel
# =============================================================================


class RendezvousChannel:
    """Unbuffered many-producer, single-consumer handoff.

    `send` returns only once the consumer has taken the item, so everything a
    producer sends is observed by the consumer in the order it was sent.
    """

    POLL_INTERVAL = 0.1

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._item: Any = None
        self._full = False
        self._sent = 0
        self._received = 0

    def send(self, item: Any, stop_event: threading.Event) -> bool:
        with self._cond:
            while self._full:
                if stop_event.is_set():
                    return False
                self._cond.wait(self.POLL_INTERVAL)
            self._item = item
            self._full = True
            self._sent += 1
            ticket = self._sent
            self._cond.notify_all()

            while self._received < ticket:
                if stop_event.is_set():
                    # Withdraw the item if the consumer never took it.
                    self._item = None
                    self._full = False
                    self._sent -= 1
                    self._cond.notify_all()
                    return False
                self._cond.wait(self.POLL_INTERVAL)
            return True

    def receive(self, stop_event: threading.Event, timeout: Optional[float] = None) -> Any:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._full:
                if stop_event.is_set():
                    return None
                if deadline is not None and time.monotonic() >= deadline:
                    return None
                self._cond.wait(self.POLL_INTERVAL)
            item = self._item
            self._item = None
            self._full = False
            self._received += 1
            self._cond.notify_all()
            return item


# =============================================================================
# Cluster Change Notification
# =============================================================================


def object_key(obj: Any) -> str:
    metadata = obj.metadata
    if metadata.namespace:
        return f"{metadata.namespace}/{metadata.name}"
    return metadata.name


def _resource_version(obj: Any) -> str:
    metadata = getattr(obj, "metadata", None)
    return getattr(metadata, "resource_version", None) or ""


class ResourceInformer(threading.Thread):
    """List and watch one resource kind, keeping a local cache.

    Registered handlers receive `on_added(obj)`, `on_updated(old, new)` and
    `on_removed(obj)` calls from this thread.
    """

    def __init__(
        self,
        kind: str,
        list_func: Callable[..., Any],
        stop_event: threading.Event,
        *,
        list_kwargs: Optional[Dict[str, Any]] = None,
        watch_timeout: int = 60,
        retry_interval: float = 5.0,
        watch_factory: Callable[[], Any] = watch.Watch,
    ):
        super().__init__(daemon=True, name=f"{kind}-informer")
        self.kind = kind
        self._list_func = list_func
        self._list_kwargs = list_kwargs or {}
        self._stop_event = stop_event
        self._watch_timeout = watch_timeout
        self._retry_interval = retry_interval
        self._watch_factory = watch_factory
        self._handlers: List[Any] = []
        self._cache: Dict[str, Any] = {}
        self._synced = threading.Event()

    def add_event_handler(self, handler: Any) -> None:
        self._handlers.append(handler)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def cached_keys(self) -> List[str]:
        return sorted(self._cache)

    def run(self) -> None:
        resource_version = ""
        while not self._stop_event.is_set():
            try:
                if not resource_version:
                    resource_version = self._list_and_reconcile()
                    self._synced.set()
                resource_version = self._watch(resource_version)
            except ApiException as e:
                resource_version = ""
                if e.status == 410:
                    logger.info(f"{self.kind} watch expired, relisting")
                    continue
                logger.warning(f"{self.kind} watch failed: {e.status} {e.reason}")
                self._stop_event.wait(self._retry_interval)
            except Exception as e:
                resource_version = ""
                logger.error(f"{self.kind} informer error: {e}", exc_info=True)
                self._stop_event.wait(self._retry_interval)
        logger.debug(f"{self.kind} informer stopped")

    def _list_and_reconcile(self) -> str:
        result = self._list_func(**self._list_kwargs)
        current = {object_key(obj): obj for obj in result.items or []}
        previous = self._cache
        self._cache = dict(current)
        logger.debug(f"Listed {len(current)} {self.kind} object(s)")

        for key in sorted(set(previous) - set(current)):
            self._notify("on_removed", previous[key])
        for key, obj in current.items():
            old = previous.get(key)
            if old is None:
                self._notify("on_added", obj)
            elif _resource_version(old) != _resource_version(obj):
                self._notify("on_updated", old, obj)
        return result.metadata.resource_version or ""

    def _watch(self, resource_version: str) -> str:
        w = self._watch_factory()
        for event in w.stream(
            self._list_func,
            resource_version=resource_version,
            timeout_seconds=self._watch_timeout,
            **self._list_kwargs,
        ):
            if self._stop_event.is_set():
                w.stop()
                break
            event_type = event.get("type")
            obj = event.get("object")
            resource_version = _resource_version(obj) or resource_version
            if event_type not in ("ADDED", "MODIFIED", "DELETED"):
                continue

            key = object_key(obj)
            if event_type == "DELETED":
                self._notify("on_removed", self._cache.pop(key, obj))
                continue
            old = self._cache.get(key)
            self._cache[key] = obj
            if old is None:
                self._notify("on_added", obj)
            else:
                self._notify("on_updated", old, obj)
        return resource_version

    def _notify(self, method: str, *objs: Any) -> None:
        for handler in self._handlers:
            getattr(handler, method)(*objs)


def wait_for_cache_sync(
    stop_event: threading.Event,
    has_synced: Callable[[], bool],
    timeout: float,
    interval: float = 0.1,
) -> bool:
    """Block until `has_synced()` is true; False on stop or timeout."""
    deadline = time.monotonic() + timeout
    while not has_synced():
        if stop_event.is_set() or time.monotonic() >= deadline:
            return False
        stop_event.wait(interval)
    return True


def create_api_client(kubeconfig: str, master: str) -> client.ApiClient:
    """Create a Kubernetes API client from a kubeconfig file or in-cluster config."""
    configuration = client.Configuration()
    if kubeconfig and Path(kubeconfig).exists():
        config.load_kube_config(config_file=kubeconfig, client_configuration=configuration)
    else:
        config.load_incluster_config(client_configuration=configuration)
    if master:
        configuration.host = master
    return client.ApiClient(configuration)


# =============================================================================
# Source Watchers
# =============================================================================


def _wait_for_informer(
    informer: Optional[ResourceInformer],
    stop_event: threading.Event,
    timeout: float,
    kind: SourceKind,
) -> bool:
    if informer is None:
        return True
    if not wait_for_cache_sync(stop_event, informer.has_synced, timeout):
        logger.error(f"Timed out waiting for {kind.value} caches to sync")
        return False
    logger.info(f"{kind.value} watcher ready")
    return True


class ServiceWatcher:
    """Translates Service notifications into ResourceEvents."""

    SOURCE_KIND = SourceKind.SERVICE

    def __init__(
        self,
        settings: Settings,
        channel: RendezvousChannel,
        stop_event: threading.Event,
        informer: Optional[ResourceInformer] = None,
    ):
        self.settings = settings
        self._channel = channel
        self._stop_event = stop_event
        self._informer = informer
        if informer is not None:
            informer.add_event_handler(self)

    def start(self) -> None:
        if self._informer is not None:
            self._informer.start()

    def wait_for_sync(self, sync_timeout: float) -> bool:
        return _wait_for_informer(self._informer, self._stop_event, sync_timeout, self.SOURCE_KIND)

    def run(self, sync_timeout: float) -> bool:
        """Start the informer and wait for the initial cache sync."""
        self.start()
        return self.wait_for_sync(sync_timeout)

    def on_added(self, obj: Any) -> None:
        self._emit(Action.ADDED, obj)

    def on_removed(self, obj: Any) -> None:
        self._emit(Action.REMOVED, obj)

    def on_updated(self, old: Any, new: Any) -> None:
        self.on_removed(old)
        self.on_added(new)

    def _emit(self, action: Action, obj: Any) -> None:
        event = ResourceEvent(self.SOURCE_KIND, action, tuple(self.build_records(obj)))
        logger.debug(f"service event: {action.value} with {len(event.records)} record(s)")
        self._channel.send(event, self._stop_event)

    def build_records(self, obj: Any) -> List[DNSRecord]:
        service = ServiceDescriptor.from_resource(obj)
        if service is None:
            return []
        if not in_namespace(service.namespace, self.settings.namespace):
            return []

        decision = evaluate_service(service, self.settings.publish_all)
        if not decision.eligible:
            logger.debug(f"Service {service.namespace}/{service.name} not marked for publication")
            return []

        address = select_service_address(service, self.settings.publish_internal)
        if not address:
            logger.debug(f"Service {service.namespace}/{service.name} has no address to publish")
            return []

        records = build_address_records(decision.hostname, address, True)
        if not records:
            return []
        for port in service.ports:
            records.extend(
                build_service_discovery_records(
                    decision.instance_name,
                    port.name,
                    port.protocol,
                    decision.hostname,
                    port.port,
                    decision.text_by_port.get(port.name, ()),
                )
            )
        return records


class IngressWatcher:
    """Translates Ingress notifications into ResourceEvents."""

    SOURCE_KIND = SourceKind.INGRESS

    def __init__(
        self,
        settings: Settings,
        channel: RendezvousChannel,
        stop_event: threading.Event,
        informer: Optional[ResourceInformer] = None,
    ):
        self.settings = settings
        self._channel = channel
        self._stop_event = stop_event
        self._informer = informer
        if informer is not None:
            informer.add_event_handler(self)

    def start(self) -> None:
        if self._informer is not None:
            self._informer.start()

    def wait_for_sync(self, sync_timeout: float) -> bool:
        return _wait_for_informer(self._informer, self._stop_event, sync_timeout, self.SOURCE_KIND)

    def run(self, sync_timeout: float) -> bool:
        """Start the informer and wait for the initial cache sync."""
        self.start()
        return self.wait_for_sync(sync_timeout)

    def on_added(self, obj: Any) -> None:
        self._emit(Action.ADDED, obj)

    def on_removed(self, obj: Any) -> None:
        self._emit(Action.REMOVED, obj)

    def on_updated(self, old: Any, new: Any) -> None:
        self.on_removed(old)
        self.on_added(new)

    def _emit(self, action: Action, obj: Any) -> None:
        event = ResourceEvent(self.SOURCE_KIND, action, tuple(self.build_records(obj)))
        logger.debug(f"ingress event: {action.value} with {len(event.records)} record(s)")
        self._channel.send(event, self._stop_event)

    def build_records(self, obj: Any) -> List[DNSRecord]:
        ingress = IngressDescriptor.from_resource(obj)
        if ingress is None:
            return []

        address = _last_non_empty(ingress.load_balancer_ips)
        if not address:
            return []
        if not in_namespace(ingress.namespace, self.settings.namespace):
            return []

        # Advertise each .local hostname under this Ingress
        records: List[DNSRecord] = []
        for host in ingress.hosts:
            if is_eligible_ingress_host(host):
                records.extend(build_address_records(f"{host}.", address, False))
        return records


def create_watchers(
    settings: Settings,
    api_client: client.ApiClient,
    channel: RendezvousChannel,
    stop_event: threading.Event,
) -> List[Any]:
    """Create one watcher, with its informer, per configured source."""
    core = client.CoreV1Api(api_client)
    networking = client.NetworkingV1Api(api_client)
    namespace_kwargs = {"namespace": settings.namespace} if settings.namespace else {}

    watchers: List[Any] = []
    for source in settings.sources:
        if source == "service":
            list_func = (
                core.list_namespaced_service
                if settings.namespace
                else core.list_service_for_all_namespaces
            )
            informer = ResourceInformer(
                "service", list_func, stop_event, list_kwargs=namespace_kwargs
            )
            watchers.append(ServiceWatcher(settings, channel, stop_event, informer))
        elif source == "ingress":
            list_func = (
                networking.list_namespaced_ingress
                if settings.namespace
                else networking.list_ingress_for_all_namespaces
            )
            informer = ResourceInformer(
                "ingress", list_func, stop_event, list_kwargs=namespace_kwargs
            )
            watchers.append(IngressWatcher(settings, channel, stop_event, informer))
    return watchers


def start_watchers(watchers: Sequence[Any], sync_timeout: float) -> bool:
    """Start every informer, then wait for each initial cache sync.

    A watcher that does not sync in time is logged and left running degraded;
    it never holds back the others.
    """
    for watcher in watchers:
        watcher.start()
    synced = [watcher.wait_for_sync(sync_timeout) for watcher in watchers]
    return all(synced)


# =============================================================================
# Synchronization Dispatcher
# =============================================================================


class SyncDispatcher:
    """Single consumer of the shared channel; the only caller of the publisher."""

    def __init__(self, publisher: Publisher, channel: RendezvousChannel, record_ttl: int):
        self.publisher = publisher
        self._channel = channel
        self._record_ttl = record_ttl

    def stamp(self, record: DNSRecord) -> DNSRecord:
        return replace(record, ttl=self._record_ttl, rclass=CLASS_IN)

    def handle(self, event: ResourceEvent) -> None:
        logger.debug(
            f"Dispatching {event.source_kind.value} {event.action.value} "
            f"({len(event.records)} record(s))"
        )
        for record in event.records:
            record = self.stamp(record)
            if event.action == Action.ADDED:
                self.publisher.publish(record)
            elif event.action == Action.REMOVED:
                self.publisher.unpublish(record)

    def run(self, stop_event: threading.Event) -> None:
        logger.info(f"Dispatcher started (publisher: {self.publisher.name})")
        while not stop_event.is_set():
            event = self._channel.receive(stop_event)
            if event is None:
                continue
            self.handle(event)
        logger.info("Dispatcher stopped")


# =============================================================================
# Main
# =============================================================================


def run_test_mode(dispatcher: SyncDispatcher, stop_event: threading.Event) -> None:
    """Publish a fixed record set without connecting to Kubernetes."""
    dispatcher.handle(
        ResourceEvent(
            SourceKind.SERVICE,
            Action.ADDED,
            (DNSRecord("router.local.", RecordType.A, address="192.168.1.254"),),
        )
    )
    dispatcher.handle(
        ResourceEvent(
            SourceKind.SERVICE,
            Action.REMOVED,
            (
                DNSRecord(
                    "254.1.168.192.in-addr.arpa.", RecordType.PTR, target="router.local."
                ),
            ),
        )
    )
    while not stop_event.is_set():
        stop_event.wait(1.0)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    try:
        settings = load_settings(argv)
    except ConfigError as e:
        setup_logging("INFO")
        logger.error(f"Configuration error: {e}")
        return 1

    setup_logging(settings.log_level)
    logger.info(f"app.config {settings.describe()}")

    errors = validate_settings(settings)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        return 1

    stop_event = threading.Event()

    def _shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        publisher = create_publisher(settings)
    except OSError as e:
        logger.error(f"Failed to start the {settings.publisher} publisher: {e}")
        return 1
    channel = RendezvousChannel()
    dispatcher = SyncDispatcher(publisher, channel, settings.record_ttl)

    if settings.test:
        try:
            run_test_mode(dispatcher, stop_event)
        finally:
            publisher.close()
        return 0

    try:
        api_client = create_api_client(settings.kubeconfig, settings.master)
    except config.ConfigException as e:
        logger.error(f"Failed to create Kubernetes client: {e}")
        publisher.close()
        return 1

    logger.info(f"Publisher: {publisher.name}")
    logger.info(f"Sources: {', '.join(settings.sources)}")

    dispatcher_thread = threading.Thread(
        target=dispatcher.run, args=(stop_event,), name="dispatcher", daemon=True
    )
    dispatcher_thread.start()

    watchers = create_watchers(settings, api_client, channel, stop_event)
    if not start_watchers(watchers, settings.sync_timeout):
        logger.warning("Continuing with unsynced caches")

    try:
        while not stop_event.is_set():
            stop_event.wait(1.0)
    except KeyboardInterrupt:
        stop_event.set()

    dispatcher_thread.join(timeout=5)
    publisher.close()
    logger.info("Stopping program")
    return 0


if __name__ == "__main__":
    sys.exit(main())
