import os
import re
import subprocess
import tempfile
from datetime import datetime, timedelta, timezone
from ipaddress import ip_address

os.environ.setdefault("AOVPN_LOG_DIR", tempfile.mkdtemp(prefix="aovpn-logs-"))

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from aovpn.models import OperationResult
from aovpn.powershell import PowerShellRunner


class FakeRunner(PowerShellRunner):
    """Records commands instead of starting powershell.exe."""

    def __init__(self, admin=True, run_results=None, exe_results=None, json_responses=None):
        super().__init__(executable="powershell.exe")
        self.admin = admin
        self.run_results = list(run_results or [])
        self.exe_results = list(exe_results or [])
        self.json_responses = list(json_responses or [])
        self.commands = []
        self.executables = []
        self.encodings = []

    def is_admin(self):
        return self.admin

    def run(self, command, timeout=None, success_message="PowerShell command completed."):
        self.commands.append(command)
        if self.run_results:
            return self.run_results.pop(0)
        return OperationResult(True, success_message)

    def run_json(self, command, timeout=None):
        self.commands.append(command)
        if not self.json_responses:
            return []
        response = self.json_responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def run_executable(self, args, timeout=None, success_message="", encoding=None):
        self.executables.append(list(args))
        self.encodings.append(encoding)
        if self.exe_results:
            return self.exe_results.pop(0)
        return OperationResult(True, success_message or f"{args[0]} completed.")


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class FakeSubprocess:
    """Stands in for subprocess.run and keeps every call."""

    def __init__(self):
        self.calls = []
        self.outcome = completed()

    def __call__(self, args, **kwargs):
        self.calls.append((args, kwargs))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


_KEYWORD_RE = re.compile(r"^(if|elseif|else|foreach|for|while|do|switch|try)\b", re.IGNORECASE)


def top_level_statements(script):
    """Splits a PowerShell script on semicolons outside quotes and brackets."""
    statements = []
    current = []
    depth = 0
    quote = None
    for char in script:
        if quote:
            if char == quote:
                quote = None
        elif char in "\"'":
            quote = char
        elif char in "({[":
            depth += 1
        elif char in ")}]":
            depth -= 1
            assert depth >= 0, f"unbalanced brackets in {script!r}"
        elif char == ";" and depth == 0:
            statements.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    assert depth == 0 and quote is None, f"unterminated block or string in {script!r}"
    statements.append("".join(current).strip())
    return [statement for statement in statements if statement]


def starts_with_keyword(statement):
    return bool(_KEYWORD_RE.match(statement))


def make_certificate(common_name="vpn.example.com", sans=("vpn.example.com",), days=365):
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    general_names = []
    for value in sans:
        try:
            general_names.append(x509.IPAddress(ip_address(value)))
        except ValueError:
            general_names.append(x509.DNSName(value))
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
    )
    if general_names:
        builder = builder.add_extension(x509.SubjectAlternativeName(general_names), critical=False)
    return builder.sign(key, hashes.SHA256())


@pytest.fixture
def certificate():
    return make_certificate()


@pytest.fixture
def certificate_der(certificate):
    return certificate.public_bytes(serialization.Encoding.DER)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def unprivileged_runner():
    return FakeRunner(admin=False)


@pytest.fixture
def fake_run(monkeypatch):
    fake = FakeSubprocess()
    monkeypatch.setattr(subprocess, "run", fake)
    return fake


@pytest.fixture(autouse=True)
def _reset_console_logging():
    """Drop the CLI's stderr handler after each test; pytest closes the captured stream it holds."""
    yield
    from aovpn import logger as aovpn_logger

    if aovpn_logger._CONSOLE_HANDLER is not None:
        aovpn_logger.get_logger().removeHandler(aovpn_logger._CONSOLE_HANDLER)
        aovpn_logger._CONSOLE_HANDLER = None
