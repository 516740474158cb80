import ipaddress
import re
import socket
import ssl
from pathlib import Path
from typing import Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from aovpn import config
from aovpn.logger import get_logger
from aovpn.models import CertificateInfo, CsrRequest, OperationResult
from aovpn.powershell import PowerShellRunner

_THUMBPRINT_RE = re.compile(r"^[0-9A-F]{40}$")
# Copying a thumbprint out of the Windows certificate dialog brings a left-to-right mark along.
_INVISIBLE_CHARS = "\u200e\u200f\ufeff"


def normalize_thumbprint(value: str) -> str:
    cleaned = "".join(ch for ch in (value or "") if ch not in _INVISIBLE_CHARS)
    cleaned = cleaned.replace(" ", "").replace(":", "").upper()
    if not _THUMBPRINT_RE.match(cleaned):
        raise ValueError(f"'{value}' is not a valid certificate thumbprint (40 hex digits).")
    return cleaned


def build_csr_inf(request: CsrRequest) -> str:
    """Render a certreq.exe INF policy file for ``request``.

    A bare host name is accepted as subject and becomes ``CN=<host>``. When no
    subject alternative names are given, the common name is used as the only
    DNS name so the certificate is valid for IKEv2 and SSTP clients.
    """
    subject = (request.subject or "").strip()
    if not subject:
        raise ValueError("Subject is required.")
    if '"' in subject:
        raise ValueError("Subject must not contain double quotes.")
    if "=" not in subject:
        subject = f"CN={subject}"

    algorithm = request.key_algorithm.upper()
    if algorithm == "RSA":
        if request.key_length not in config.RSA_KEY_LENGTHS:
            raise ValueError(f"RSA key length must be one of {config.RSA_KEY_LENGTHS}.")
        key_algorithm = "RSA"
        key_usage = "0xA0"
    elif algorithm in ("ECDSA", "EC"):
        if request.key_length not in config.ECDSA_KEY_LENGTHS:
            raise ValueError(f"ECDSA key length must be one of {config.ECDSA_KEY_LENGTHS}.")
        key_algorithm = f"ECDSA_P{request.key_length}"
        key_usage = "0x80"
    else:
        raise ValueError(f"Unsupported key algorithm {request.key_algorithm}.")

    names = _subject_alternative_names(subject, request.subject_alternative_names)

    lines = [
        "[Version]",
        'Signature="$Windows NT$"',
        "",
        "[NewRequest]",
        f'Subject = "{subject}"',
    ]
    if request.friendly_name:
        lines.append(f'FriendlyName = "{request.friendly_name}"')
    lines.extend(
        [
            f"KeyAlgorithm = {key_algorithm}",
            f"KeyLength = {request.key_length}",
            f"HashAlgorithm = {request.hash_algorithm.upper()}",
            f"Exportable = {'TRUE' if request.exportable else 'FALSE'}",
            f"MachineKeySet = {'TRUE' if request.machine_key_set else 'FALSE'}",
            'ProviderName = "Microsoft Software Key Storage Provider"',
            f"KeyUsage = {key_usage}",
            "RequestType = PKCS10",
            "",
            "[EnhancedKeyUsageExtension]",
            f"OID={config.SERVER_AUTH_EKU}",
        ]
    )
    if request.ike_intermediate:
        lines.append(f"OID={config.IKE_INTERMEDIATE_EKU}")
    if names:
        lines.extend(["", "[Extensions]", '2.5.29.17 = "{text}"'])
        lines.extend(f'_continue_ = "{_san_entry(name)}&"' for name in names)
    return "\n".join(lines) + "\n"


def new_csr(
    request: CsrRequest,
    output_dir: Union[str, Path],
    name: Optional[str] = None,
    runner: Optional[PowerShellRunner] = None,
) -> OperationResult:
    logger = get_logger()
    runner = runner or PowerShellRunner()
    try:
        inf_text = build_csr_inf(request)
    except ValueError as exc:
        logger.warning("Invalid certificate request: %s", exc)
        return OperationResult(False, str(exc), status="Error")

    if request.machine_key_set:
        admin_error = runner.ensure_admin("create a request in the local machine key store")
        if admin_error:
            return admin_error

    directory = Path(output_dir)
    directory.mkdir(parents=True, exist_ok=True)
    base_name = name or _file_stem(request.subject)
    inf_path = directory / f"{base_name}.inf"
    csr_path = directory / f"{base_name}.csr"
    inf_path.write_text(inf_text, encoding="utf-16")
    logger.debug("Wrote certificate request policy to %s", inf_path)

    result = runner.run_executable(
        ["certreq.exe", "-new", "-q", str(inf_path), str(csr_path)],
        success_message=f"Certificate signing request written to {csr_path}.",
    )
    if result.success:
        logger.info(result.message)
        result.details = str(csr_path)
    return result


def get_tls_certificate(
    host: str,
    port: int = 443,
    server_name: Optional[str] = None,
    timeout: float = 10,
    output_file: Optional[Union[str, Path]] = None,
) -> CertificateInfo:
    if not host:
        raise ValueError("Host is required.")
    if not 0 < int(port) < 65536:
        raise ValueError(f"Port {port} is out of range.")

    logger = get_logger()
    logger.debug("Retrieving TLS certificate from %s:%s", host, port)
    try:
        der = _fetch_peer_certificate(host, int(port), server_name or host, timeout)
    except OSError as exc:
        logger.warning("TLS handshake with %s:%s failed: %s", host, port, exc)
        raise RuntimeError(f"Could not retrieve certificate from {host}:{port}: {exc}") from exc

    info = describe_certificate(der)
    if output_file:
        save_certificate(info, output_file)
    return info


def describe_certificate(der: bytes) -> CertificateInfo:
    cert = x509.load_der_x509_certificate(der)
    try:
        extension = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        names: list[str] = []
    else:
        names = list(extension.value.get_values_for_type(x509.DNSName))
        names.extend(str(ip) for ip in extension.value.get_values_for_type(x509.IPAddress))

    return CertificateInfo(
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        serial_number=format(cert.serial_number, "X"),
        thumbprint=cert.fingerprint(hashes.SHA1()).hex().upper(),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        subject_alternative_names=names,
        der=der,
    )


def certificate_thumbprint(path: Union[str, Path]) -> str:
    data = Path(path).read_bytes()
    try:
        if b"-----BEGIN" in data:
            cert = x509.load_pem_x509_certificate(data)
        else:
            cert = x509.load_der_x509_certificate(data)
    except ValueError as exc:
        raise ValueError(f"{path} is not a PEM or DER encoded certificate.") from exc
    return cert.fingerprint(hashes.SHA1()).hex().upper()


def save_certificate(info: CertificateInfo, path: Union[str, Path]) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    if target.suffix.lower() in (".pem", ".crt"):
        target.write_text(info.to_pem(), encoding="ascii")
    else:
        target.write_bytes(info.der)
    get_logger().info("Saved certificate %s to %s", info.thumbprint, target)
    return target


def _fetch_peer_certificate(host: str, port: int, server_name: str, timeout: float) -> bytes:
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    with socket.create_connection((host, port), timeout=timeout) as sock:
        with context.wrap_socket(sock, server_hostname=server_name) as tls:
            der = tls.getpeercert(binary_form=True)
    if not der:
        raise ssl.SSLError(f"{host}:{port} did not present a certificate.")
    return der


def _subject_alternative_names(subject: str, names: list[str]) -> list[str]:
    result: list[str] = []
    candidates = list(names)
    if not candidates:
        match = re.search(r"CN=([^,]+)", subject, re.IGNORECASE)
        if match:
            candidates.append(match.group(1))
    for name in candidates:
        name = name.strip()
        if name and name.lower() not in (item.lower() for item in result):
            result.append(name)
    return result


def _san_entry(name: str) -> str:
    try:
        ipaddress.ip_address(name)
    except ValueError:
        return f"dns={name}"
    return f"ipaddress={name}"


def _file_stem(subject: str) -> str:
    match = re.search(r"CN=([^,]+)", subject, re.IGNORECASE)
    value = match.group(1) if match else subject
    return re.sub(r"[^A-Za-z0-9.-]+", "_", value.strip()) or "request"
