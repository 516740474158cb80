import argparse
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Optional, Sequence

from aovpn import certificates, network
from aovpn.client import PowerShellClientBackend
from aovpn.logger import enable_console_logging, get_logger
from aovpn.models import (
    AovpnConnectionSpec,
    CertificateInfo,
    CsrRequest,
    OperationResult,
    TestConnectionSpec,
)
from aovpn.server import VpnServerTools


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aovpn",
        description="Configure RRAS VPN servers and Always On VPN client connections.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="show debug output")
    commands = parser.add_subparsers(dest="command", required=True)

    # server
    cmd = commands.add_parser("install-vpn-server", help="install and configure the RRAS VPN role")
    cmd.add_argument("--no-configure", action="store_true", help="only install the role")
    cmd.add_argument("--no-fragmentation", action="store_true", help="leave IKEv2 fragmentation unchanged")
    cmd.add_argument("--no-restart", action="store_true", help="do not restart RemoteAccess")

    cmd = commands.add_parser("install-nps-server", help="install the NPS role")
    cmd.add_argument("--no-auditing", action="store_true", help="do not enable NPS auditing")

    commands.add_parser("enable-nps-auditing", help="audit NPS success and failure events")

    cmd = commands.add_parser("set-ikev2-root-certificate", help="restrict IKEv2 to one root CA")
    source = cmd.add_mutually_exclusive_group(required=True)
    source.add_argument("--thumbprint")
    source.add_argument("--certificate-file", type=Path)
    cmd.add_argument("--restart", action="store_true", help="restart RemoteAccess afterwards")

    cmd = commands.add_parser("enable-ikev2-crl-check", help="check revocation of IKEv2 client certificates")
    cmd.add_argument("--restart", action="store_true", help="restart RemoteAccess afterwards")

    cmd = commands.add_parser("get-server-config", help="show the RRAS VPN configuration")
    cmd.add_argument("--json", action="store_true")

    cmd = commands.add_parser("export-server-config", help="export the RRAS configuration with netsh")
    cmd.add_argument("path", type=Path)
    cmd.add_argument("--force", action="store_true", help="overwrite an existing file")

    cmd = commands.add_parser("import-server-config", help="import an RRAS configuration with netsh")
    cmd.add_argument("path", type=Path)
    cmd.add_argument("--no-restart", action="store_true")

    commands.add_parser("restart-remote-access", help="restart the RemoteAccess service")

    # certificates
    cmd = commands.add_parser("new-csr", help="create a certificate signing request with certreq")
    cmd.add_argument("subject", help="subject, e.g. vpn.example.com or CN=vpn.example.com")
    cmd.add_argument("--san", action="append", default=[], help="subject alternative name (repeatable)")
    cmd.add_argument("--key-algorithm", choices=["RSA", "ECDSA"], default="RSA")
    cmd.add_argument("--key-length", type=int, default=2048)
    cmd.add_argument("--friendly-name", default="")
    cmd.add_argument("--exportable", action="store_true")
    cmd.add_argument("--user-key-set", action="store_true", help="use the current user key store")
    cmd.add_argument("--ike-intermediate", action="store_true", help="add the IKE intermediate EKU")
    cmd.add_argument("--output-dir", type=Path, default=Path.cwd())
    cmd.add_argument("--name", help="base name of the .inf and .csr files")

    cmd = commands.add_parser("get-tls-certificate", help="show the certificate a TLS server presents")
    cmd.add_argument("host")
    cmd.add_argument("--port", type=int, default=443)
    cmd.add_argument("--server-name", help="SNI name if different from host")
    cmd.add_argument("--timeout", type=float, default=10)
    cmd.add_argument("--output-file", type=Path)
    cmd.add_argument("--json", action="store_true")

    # network
    cmd = commands.add_parser("get-public-ip", help="show the public IP address of this host")
    cmd.add_argument("--url")
    cmd.add_argument("--json", action="store_true")

    # client
    cmd = commands.add_parser("list-connections", help="list VPN connections")
    cmd.add_argument("--all-users", action="store_true")
    cmd.add_argument("--json", action="store_true")

    cmd = commands.add_parser("new-connection", help="create an Always On VPN connection from ProfileXML")
    cmd.add_argument("profile_xml", type=Path, help="ProfileXML file")
    cmd.add_argument("--name", required=True, help="connection name")
    cmd.add_argument("--device-tunnel", action="store_true")
    cmd.add_argument("--user-sid", default="")

    cmd = commands.add_parser("remove-connection", help="remove an Always On VPN connection or a same-named VPN connection")
    cmd.add_argument("name")
    cmd.add_argument("--device-tunnel", action="store_true")
    cmd.add_argument("--user-sid", default="")

    cmd = commands.add_parser("get-profile-xml", help="print the ProfileXML of a connection")
    cmd.add_argument("name")
    cmd.add_argument("--device-tunnel", action="store_true")
    cmd.add_argument("--user-sid", default="")
    cmd.add_argument("--output-file", type=Path)

    cmd = commands.add_parser("new-test-connection", help="create an IKEv2 connection for testing")
    cmd.add_argument("name")
    cmd.add_argument("server_address")
    cmd.add_argument("--authentication", choices=["MachineCertificate", "Eap"], default="MachineCertificate")
    cmd.add_argument("--current-user", action="store_true", help="create it for the current user only")
    cmd.add_argument("--dns-suffix", default="")
    cmd.add_argument("--connect", action="store_true", help="dial the connection after creating it")

    for command, verb in (("connect", "dial"), ("disconnect", "hang up")):
        cmd = commands.add_parser(command, help=f"{verb} a VPN connection")
        cmd.add_argument("name")
        cmd.add_argument("--all-users", action="store_true")

    cmd = commands.add_parser("update-group-policy", help="run gpupdate /force")
    cmd.add_argument("--target", choices=["Computer", "User"], default="Computer")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    enable_console_logging(args.verbose)
    logger = get_logger()

    try:
        return _dispatch(args)
    except (RuntimeError, ValueError, OSError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


def _dispatch(args: argparse.Namespace) -> int:
    command = args.command

    if command == "install-vpn-server":
        return _report(
            VpnServerTools().install_vpn_server(
                configure=not args.no_configure,
                enable_fragmentation=not args.no_fragmentation,
                restart=not args.no_restart,
            )
        )
    if command == "install-nps-server":
        return _report(VpnServerTools().install_nps_server(enable_auditing=not args.no_auditing))
    if command == "enable-nps-auditing":
        return _report(VpnServerTools().enable_nps_auditing())
    if command == "set-ikev2-root-certificate":
        return _report(
            VpnServerTools().set_ikev2_vpn_root_certificate(
                thumbprint=args.thumbprint,
                certificate_file=args.certificate_file,
                restart=args.restart,
            )
        )
    if command == "enable-ikev2-crl-check":
        return _report(VpnServerTools().enable_ikev2_crl_check(restart=args.restart))
    if command == "get-server-config":
        settings = VpnServerTools().get_vpn_server_configuration()
        if args.json:
            return _print_json(asdict(settings))
        print(f"Tunnel types:          {', '.join(settings.tunnel_types) or '-'}")
        print(f"Authentication:        {', '.join(settings.authentication_methods) or '-'}")
        print(f"Root certificate:      {settings.root_certificate_thumbprint or '(any trusted root)'}")
        print(f"IKEv2 fragmentation:   {'enabled' if settings.ike_fragmentation_enabled else 'disabled'}")
        print(f"IKEv2 CRL check:       {'enabled' if settings.crl_check_enabled else 'disabled'}")
        return 0
    if command == "export-server-config":
        return _report(VpnServerTools().export_vpn_server_configuration(args.path, force=args.force))
    if command == "import-server-config":
        return _report(VpnServerTools().import_vpn_server_configuration(args.path, restart=not args.no_restart))
    if command == "restart-remote-access":
        return _report(VpnServerTools().restart_remote_access())

    if command == "new-csr":
        request = CsrRequest(
            subject=args.subject,
            subject_alternative_names=args.san,
            key_length=args.key_length,
            key_algorithm=args.key_algorithm,
            exportable=args.exportable,
            machine_key_set=not args.user_key_set,
            friendly_name=args.friendly_name,
            ike_intermediate=args.ike_intermediate,
        )
        return _report(certificates.new_csr(request, args.output_dir, name=args.name))
    if command == "get-tls-certificate":
        info = certificates.get_tls_certificate(
            args.host,
            port=args.port,
            server_name=args.server_name,
            timeout=args.timeout,
            output_file=args.output_file,
        )
        if args.json:
            return _print_json(_certificate_dict(info))
        _print_certificate(info)
        return 0

    if command == "get-public-ip":
        ip_info = network.get_public_ip_address(url=args.url)
        if args.json:
            return _print_json(asdict(ip_info))
        print(ip_info.ip)
        location = ", ".join(part for part in [ip_info.city, ip_info.region, ip_info.country] if part)
        if ip_info.hostname:
            print(f"Hostname: {ip_info.hostname}")
        if location:
            print(f"Location: {location}")
        if ip_info.org:
            print(f"Network:  {ip_info.org}")
        return 0

    backend = PowerShellClientBackend()
    if command == "list-connections":
        connections = backend.list_connections(include_all_users=args.all_users)
        if backend.last_error:
            get_logger().warning(backend.last_error)
        if args.json:
            return _print_json([asdict(connection) for connection in connections])
        for connection in connections:
            scope = "System" if connection.all_users else "User"
            print(
                f"{connection.name:<30} {scope:<7} {connection.server_address:<30} "
                f"{connection.tunnel_type:<10} {connection.connection_status}"
            )
        return 0
    if command == "new-connection":
        spec = AovpnConnectionSpec(
            profile_name=args.name,
            profile_xml=args.profile_xml.read_text(encoding="utf-8-sig"),
            device_tunnel=args.device_tunnel,
            user_sid=args.user_sid,
        )
        return _report(backend.new_aovpn_connection(spec))
    if command == "remove-connection":
        return _report(backend.remove_aovpn_connection(args.name, args.device_tunnel, args.user_sid))
    if command == "get-profile-xml":
        profile_xml = backend.get_vpn_profile_xml(
            args.name,
            device_tunnel=args.device_tunnel,
            user_sid=args.user_sid,
            output_file=args.output_file,
        )
        if not args.output_file:
            print(profile_xml, end="")
        return 0
    if command == "new-test-connection":
        spec = TestConnectionSpec(
            name=args.name,
            server_address=args.server_address,
            authentication=args.authentication,
            all_users=not args.current_user,
            dns_suffix=args.dns_suffix,
        )
        return _report(backend.new_test_connection(spec, connect=args.connect))
    if command == "connect":
        return _report(backend.connect_and_wait(args.name, args.all_users))
    if command == "disconnect":
        return _report(backend.disconnect(args.name, args.all_users))
    if command == "update-group-policy":
        return _report(backend.update_group_policy(args.target))
    raise ValueError(f"Unknown command {command}")


def _report(result: OperationResult) -> int:
    if result.success:
        print(result.message)
        return 0
    print(f"Error: {result.message}", file=sys.stderr)
    return 1


def _print_json(data: object) -> int:
    print(json.dumps(data, indent=2, default=str))
    return 0


def _certificate_dict(info: CertificateInfo) -> dict:
    data = asdict(info)
    data.pop("der")
    data["days_remaining"] = info.days_remaining()
    return data


def _print_certificate(info: CertificateInfo) -> None:
    print(f"Subject:     {info.subject}")
    print(f"Issuer:      {info.issuer}")
    print(f"Serial:      {info.serial_number}")
    print(f"Thumbprint:  {info.thumbprint}")
    print(f"Valid from:  {info.not_before:%Y-%m-%d %H:%M} UTC")
    print(f"Valid until: {info.not_after:%Y-%m-%d %H:%M} UTC")
    if info.subject_alternative_names:
        print(f"SANs:        {', '.join(info.subject_alternative_names)}")
    if info.is_expired():
        print("WARNING: certificate has expired.")


if __name__ == "__main__":
    raise SystemExit(main())
