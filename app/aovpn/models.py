import base64
import textwrap
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


@dataclass
class OperationResult:
    success: bool
    message: str
    status: str = ""
    details: str = ""


@dataclass
class VpnConnection:
    name: str
    server_address: str
    tunnel_type: str
    authentication_method: str
    connection_status: str
    all_users: bool = False


@dataclass
class AovpnConnectionSpec:
    profile_name: str
    profile_xml: str
    device_tunnel: bool = False
    user_sid: str = ""


@dataclass
class TestConnectionSpec:
    __test__ = False

    name: str
    server_address: str
    authentication: str = "MachineCertificate"
    all_users: bool = True
    dns_suffix: str = ""


@dataclass
class CsrRequest:
    subject: str
    subject_alternative_names: list[str] = field(default_factory=list)
    key_length: int = 2048
    key_algorithm: str = "RSA"
    hash_algorithm: str = "SHA256"
    exportable: bool = False
    machine_key_set: bool = True
    friendly_name: str = ""
    ike_intermediate: bool = False


@dataclass
class CertificateInfo:
    subject: str
    issuer: str
    serial_number: str
    thumbprint: str
    not_before: datetime
    not_after: datetime
    subject_alternative_names: list[str] = field(default_factory=list)
    der: bytes = b""

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now > self.not_after

    def days_remaining(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        return (self.not_after - now).days

    def to_pem(self) -> str:
        body = "\n".join(textwrap.wrap(base64.b64encode(self.der).decode("ascii"), 64))
        return f"-----BEGIN CERTIFICATE-----\n{body}\n-----END CERTIFICATE-----\n"


@dataclass
class PublicIpInfo:
    ip: str
    hostname: str = ""
    city: str = ""
    region: str = ""
    country: str = ""
    org: str = ""


@dataclass
class VpnServerSettings:
    tunnel_types: list[str] = field(default_factory=list)
    authentication_methods: list[str] = field(default_factory=list)
    root_certificate_thumbprint: str = ""
    ike_fragmentation_enabled: bool = False
    crl_check_enabled: bool = False
    raw: dict = field(default_factory=dict)
