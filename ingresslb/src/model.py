from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

PROTOCOL_H2 = "h2"
PROTOCOL_HTTP11 = "http/1.1"
PROTOCOLS = (PROTOCOL_H2, PROTOCOL_HTTP11)

AFFINITY_NONE = "none"
AFFINITY_IP = "ip"
AFFINITY_COOKIE = "cookie"
AFFINITIES = (AFFINITY_NONE, AFFINITY_IP, AFFINITY_COOKIE)

# Backend used when the default service has no usable endpoints.
PLACEHOLDER_ADDRESS = "127.0.0.1"
PLACEHOLDER_PORT = "8181"


@dataclass(frozen=True)
class BackendConfig:
    """Per service-port backend overrides.  ``None`` means "not specified"."""

    proto: str | None = None
    tls: bool | None = None
    sni: str | None = None
    dns: bool | None = None
    affinity: str | None = None

    def merged_over(self, base: BackendConfig | None) -> BackendConfig:
        """Return a copy where unspecified fields are taken from *base*."""
        if base is None:
            return self
        return BackendConfig(
            proto=self.proto if self.proto is not None else base.proto,
            tls=self.tls if self.tls is not None else base.tls,
            sni=self.sni if self.sni is not None else base.sni,
            dns=self.dns if self.dns is not None else base.dns,
            affinity=self.affinity if self.affinity is not None else base.affinity,
        )


@dataclass(frozen=True)
class PathConfig:
    """Per host/path overrides.  Timeouts are in seconds."""

    read_timeout: float | None = None
    write_timeout: float | None = None
    redirect_if_not_tls: bool | None = None
    mruby: str | None = None

    def merged_over(self, base: PathConfig | None) -> PathConfig:
        if base is None:
            return self
        return PathConfig(
            read_timeout=self.read_timeout if self.read_timeout is not None else base.read_timeout,
            write_timeout=(
                self.write_timeout if self.write_timeout is not None else base.write_timeout
            ),
            redirect_if_not_tls=(
                self.redirect_if_not_tls
                if self.redirect_if_not_tls is not None
                else base.redirect_if_not_tls
            ),
            mruby=self.mruby if self.mruby is not None else base.mruby,
        )


@dataclass(frozen=True)
class UpstreamServer:
    """One backend address of an upstream."""

    address: str
    port: str
    protocol: str = PROTOCOL_HTTP11
    tls: bool = False
    sni: str = ""
    dns: bool = False
    affinity: str = AFFINITY_NONE

    def sort_key(self) -> tuple[str, int, str]:
        return (self.address, _port_number(self.port), self.port)


def placeholder_server() -> UpstreamServer:
    return UpstreamServer(address=PLACEHOLDER_ADDRESS, port=PLACEHOLDER_PORT)


@dataclass(frozen=True)
class Upstream:
    name: str
    host: str
    path: str
    backends: tuple[UpstreamServer, ...]
    redirect_if_not_tls: bool = False
    read_timeout: float | None = None
    write_timeout: float | None = None
    mruby: str | None = None

    @property
    def is_default(self) -> bool:
        return self.host == "" and self.path == "/"


@dataclass(frozen=True)
class TLSCred:
    """A validated certificate/private-key pair.

    ``identity`` is derived from the Secret identity only, so it survives
    content changes; ``checksum`` changes whenever the bytes do.
    """

    identity: str
    key: bytes = field(repr=False)
    cert: bytes = field(repr=False)
    checksum: str
    key_path: str
    cert_path: str


@dataclass(frozen=True)
class IngressConfig:
    """Configuration model handed to the proxy sink.  Rebuilt on every sync."""

    tls: bool = False
    default_tls_cred: TLSCred | None = None
    sub_tls_creds: tuple[TLSCred, ...] = ()
    upstreams: tuple[Upstream, ...] = ()
    tuning_options: tuple[tuple[str, str], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Render the model without key material, for hashing and serialisation."""
        return {
            "tls": self.tls,
            "defaultTLSCred": _cred_dict(self.default_tls_cred),
            "subTLSCreds": [_cred_dict(cred) for cred in self.sub_tls_creds],
            "upstreams": [_upstream_dict(upstream) for upstream in self.upstreams],
            "tuningOptions": dict(self.tuning_options),
        }


def _cred_dict(cred: TLSCred | None) -> dict[str, str] | None:
    if cred is None:
        return None
    return {
        "identity": cred.identity,
        "checksum": cred.checksum,
        "keyPath": cred.key_path,
        "certPath": cred.cert_path,
    }


def _upstream_dict(upstream: Upstream) -> dict[str, Any]:
    return {
        "name": upstream.name,
        "host": upstream.host,
        "path": upstream.path,
        "redirectIfNotTLS": upstream.redirect_if_not_tls,
        "readTimeout": upstream.read_timeout,
        "writeTimeout": upstream.write_timeout,
        "mruby": upstream.mruby,
        "backends": [
            {
                "address": server.address,
                "port": server.port,
                "protocol": server.protocol,
                "tls": server.tls,
                "sni": server.sni,
                "dns": server.dns,
                "affinity": server.affinity,
            }
            for server in upstream.backends
        ],
    }


def _port_number(port: str) -> int:
    try:
        return int(port)
    except ValueError:
        return -1


def sort_and_dedup_servers(servers: list[UpstreamServer]) -> tuple[UpstreamServer, ...]:
    """Sort by ``(address, port)`` and drop adjacent duplicates, keeping the first."""
    result: list[UpstreamServer] = []
    for server in sorted(servers, key=UpstreamServer.sort_key):
        if result and result[-1].address == server.address and result[-1].port == server.port:
            continue
        result.append(server)
    return tuple(result)


def sort_and_dedup_creds(creds: list[TLSCred]) -> list[TLSCred]:
    """Sort by identity and drop entries whose identity was already seen."""
    result: list[TLSCred] = []
    for cred in sorted(creds, key=lambda c: c.identity):
        if result and result[-1].identity == cred.identity:
            continue
        result.append(cred)
    return result
