import os
import re
import time
import xml.etree.ElementTree as ElementTree
from pathlib import Path
from typing import Optional
from urllib.parse import quote as uri_escape
from xml.dom import minidom
from xml.parsers.expat import ExpatError
from xml.sax.saxutils import escape as xml_escape

from aovpn import config
from aovpn.backend import VpnClientBackend
from aovpn.logger import get_logger
from aovpn.models import AovpnConnectionSpec, OperationResult, TestConnectionSpec, VpnConnection
from aovpn.powershell import PowerShellRunner

_INVALID_NAME_CHARS = set('\\/:*?"<>|')
_SID_RE = re.compile(r"^S-1-\d+(-\d+)+$", re.IGNORECASE)

# rasdial / IKEv2 error codes commonly seen while testing Always On VPN.
_ERROR_HINTS = {
    "691": "The server rejected the credentials.",
    "809": "IKE traffic is blocked. Check UDP 500/4500 and IKEv2 fragmentation on the server.",
    "812": "The connection was refused by NPS network policy.",
    "13801": "The server certificate is not trusted or its EKUs are not acceptable.",
    "13806": "No valid machine certificate was found on this device.",
    "13868": "The IKEv2 policy does not match the server (check the IPsec configuration).",
}


class PowerShellClientBackend(VpnClientBackend):
    def __init__(self, runner: Optional[PowerShellRunner] = None) -> None:
        self.runner = runner or PowerShellRunner()
        self.logger = get_logger()
        self.last_error = ""

    def list_connections(self, include_all_users: bool = False) -> list[VpnConnection]:
        self.last_error = ""
        connections = self._query_connections(all_users=False)
        if include_all_users:
            if not self.runner.is_admin():
                self.last_error = (
                    "Admin privileges are required to list all-user VPN connections. "
                    "Run as Administrator."
                )
                return connections
            try:
                connections.extend(self._query_connections(all_users=True))
            except RuntimeError as exc:
                self.last_error = f"All-user query failed: {exc}"
                self.logger.warning(self.last_error)
        return connections

    def get_status(self, name: str, all_users: bool = False) -> str:
        all_users_flag = " -AllUserConnection" if all_users else ""
        try:
            data = self.runner.run_json(
                f"Get-VpnConnection -Name {self.runner.quote(name)}{all_users_flag} "
                "| Select-Object ConnectionStatus",
                timeout=15,
            )
        except RuntimeError as exc:
            self.logger.error("Status query failed for %s: %s", name, exc)
            return "Error"

        if not data:
            return "Unknown"
        return str(data[0].get("ConnectionStatus") or "Unknown")

    def connect(self, name: str, all_users: bool = False, timeout: int = 30) -> OperationResult:
        result = self.runner.run_executable(
            ["rasdial.exe", *self._rasdial_args(name, all_users)],
            timeout=timeout,
            success_message=f"Dialed {name}.",
        )
        if result.success:
            result.status = "Connected"
        else:
            result.message = self._add_error_hint(result.message, result.details)
        return result

    def disconnect(self, name: str, all_users: bool = False, timeout: int = 20) -> OperationResult:
        result = self.runner.run_executable(
            ["rasdial.exe", *self._rasdial_args(name, all_users, disconnect=True)],
            timeout=timeout,
            success_message=f"Disconnected {name}.",
        )
        if result.success:
            result.status = self.get_status(name, all_users)
        return result

    def connect_and_wait(
        self,
        name: str,
        all_users: bool = False,
        poll_interval: float = config.CONNECT_POLL_INTERVAL,
        max_wait: int = config.CONNECT_MAX_WAIT,
    ) -> OperationResult:
        result = self.connect(name, all_users, timeout=max_wait)
        if not result.success:
            result.status = "Error"
            return result

        waited = 0.0
        last_status = self.get_status(name, all_users)
        while last_status.lower() != "connected" and waited < max_wait:
            if last_status.lower() == "error":
                break
            time.sleep(poll_interval)
            waited += poll_interval
            last_status = self.get_status(name, all_users)

        if last_status.lower() == "connected":
            return OperationResult(True, f"Connected to {name}.", status=last_status, details=result.details)
        return OperationResult(
            False,
            f"Timed out waiting for {name} to connect.",
            status=last_status or "Error",
            details=result.details,
        )

    def new_aovpn_connection(self, spec: AovpnConnectionSpec) -> OperationResult:
        problem = self._validate_name(spec.profile_name) or self._validate_profile_xml(spec)
        if not problem and spec.user_sid and not _SID_RE.match(spec.user_sid):
            problem = f"'{spec.user_sid}' is not a valid security identifier."
        if problem:
            self.logger.warning(problem)
            return OperationResult(False, problem, status="Error")

        admin_error = self.runner.ensure_admin("create an Always On VPN connection")
        if admin_error:
            return admin_error

        cleanup = self._cleanup(spec.profile_name, spec.device_tunnel, spec.user_sid)
        if not cleanup.success:
            return cleanup

        instance_id = self.runner.quote(uri_escape(spec.profile_name, safe=""))
        profile_xml = self.runner.quote(
            xml_escape(spec.profile_xml.strip(), {'"': "&quot;", "'": "&apos;"})
        )
        statements = self._cim_preamble(spec.device_tunnel, spec.user_sid) + [
            "$instance = New-Object Microsoft.Management.Infrastructure.CimInstance $className, $namespace",
            "$instance.CimInstanceProperties.Add([Microsoft.Management.Infrastructure.CimProperty]::Create("
            f"'ParentID', {self.runner.quote(config.MDM_VPN_PARENT_ID)}, 'String', 'Key'))",
            "$instance.CimInstanceProperties.Add([Microsoft.Management.Infrastructure.CimProperty]::Create("
            f"'InstanceID', {instance_id}, 'String', 'Key'))",
            "$instance.CimInstanceProperties.Add([Microsoft.Management.Infrastructure.CimProperty]::Create("
            f"'ProfileXML', {profile_xml}, 'String', 'Property'))",
            "$session.CreateInstance($namespace, $instance, $options) | Out-Null",
        ]
        kind = "device tunnel" if spec.device_tunnel else "user tunnel"
        result = self.runner.run(
            "; ".join(statements),
            success_message=f"Created Always On VPN {kind} {spec.profile_name}.",
        )
        if result.success:
            self.logger.info(result.message)
        elif spec.device_tunnel:
            result.message = f"{result.message} Device tunnels must be created from the SYSTEM context."
        return result

    def remove_aovpn_connection(
        self,
        name: str,
        device_tunnel: bool = False,
        user_sid: str = "",
    ) -> OperationResult:
        problem = self._validate_name(name)
        if problem:
            return OperationResult(False, problem, status="Error")
        admin_error = self.runner.ensure_admin("remove an Always On VPN connection")
        if admin_error:
            return admin_error

        result = self._cleanup(name, device_tunnel, user_sid, require_existing=True)
        if result.success:
            result.message = f"Removed VPN connection {name}."
            self.logger.info(result.message)
        return result

    def get_vpn_profile_xml(
        self,
        name: str,
        device_tunnel: bool = False,
        user_sid: str = "",
        output_file: Optional[str] = None,
    ) -> str:
        problem = self._validate_name(name)
        if problem:
            raise ValueError(problem)

        instance_id = self.runner.quote(uri_escape(name, safe=""))
        statements = self._cim_preamble(device_tunnel, user_sid) + [
            "$instance = $session.EnumerateInstances($namespace, $className, $options) "
            f"| Where-Object {{ $_.InstanceID -eq {instance_id} }} | Select-Object -First 1",
            "$instance | Select-Object InstanceID, ProfileXML",
        ]
        data = self.runner.run_json("; ".join(statements))
        if not data or not data[0].get("ProfileXML"):
            raise RuntimeError(f"No Always On VPN profile named {name} was found.")

        profile_xml = self.format_profile_xml(str(data[0]["ProfileXML"]))
        if output_file:
            target = Path(output_file)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(profile_xml, encoding="utf-8")
            self.logger.info("Saved ProfileXML for %s to %s", name, target)
        return profile_xml

    def new_test_connection(self, spec: TestConnectionSpec, connect: bool = False) -> OperationResult:
        problem = self._validate_name(spec.name)
        if not problem and not spec.server_address.strip():
            problem = "Server address is required."
        if not problem and spec.authentication not in ("MachineCertificate", "Eap"):
            problem = f"Unsupported authentication method {spec.authentication}."
        if problem:
            self.logger.warning(problem)
            return OperationResult(False, problem, status="Error")

        if spec.all_users:
            admin_error = self.runner.ensure_admin("create an all-user test connection")
            if admin_error:
                return admin_error

        name = self.runner.quote(spec.name)
        all_users_flag = " -AllUserConnection" if spec.all_users else ""
        add_command = (
            f"Add-VpnConnection -Name {name} "
            f"-ServerAddress {self.runner.quote(spec.server_address.strip())} "
            "-TunnelType Ikev2 -EncryptionLevel Required "
        )
        if spec.authentication == "Eap":
            add_command += (
                "-AuthenticationMethod Eap "
                "-EapConfigXmlStream (New-EapConfiguration -Tls -UserCertificate).EapConfigXmlStream "
            )
        else:
            add_command += "-AuthenticationMethod MachineCertificate "
        if spec.dns_suffix:
            add_command += f"-DnsSuffix {self.runner.quote(spec.dns_suffix)} "
        add_command += f"-Force{all_users_flag}"

        ipsec = " ".join(f"-{key} {value}" for key, value in config.IPSEC_POLICY.items())
        statements = [
            f"if (Get-VpnConnection -Name {name}{all_users_flag} -ErrorAction SilentlyContinue) "
            f"{{ Remove-VpnConnection -Name {name}{all_users_flag} -Force }}",
            add_command,
            f"Set-VpnConnectionIPsecConfiguration -ConnectionName {name} {ipsec} -Force{all_users_flag}",
        ]
        result = self.runner.run(
            "; ".join(statements),
            success_message=f"Created IKEv2 test connection {spec.name}.",
        )
        if not result.success or not connect:
            return result

        self.logger.info(result.message)
        dialed = self.connect_and_wait(spec.name, spec.all_users)
        dialed.message = f"{result.message} {dialed.message}"
        return dialed

    def update_group_policy(self, target: str = "Computer") -> OperationResult:
        if target.lower() not in ("computer", "user"):
            return OperationResult(False, f"Unknown Group Policy target {target}.", status="Error")
        return self.runner.run_executable(
            ["gpupdate.exe", f"/target:{target.lower()}", "/force"],
            timeout=300,
            success_message=f"{target.capitalize()} Group Policy updated.",
        )

    @staticmethod
    def format_profile_xml(profile_xml: str) -> str:
        try:
            pretty = minidom.parseString(profile_xml.strip()).toprettyxml(indent="  ")
        except ExpatError:
            return profile_xml
        lines = [line for line in pretty.splitlines() if line.strip()]
        # toprettyxml always adds a declaration; ProfileXML is stored without one
        if lines and lines[0].startswith("<?xml"):
            lines = lines[1:]
        return "\n".join(lines) + "\n"

    def _query_connections(self, all_users: bool) -> list[VpnConnection]:
        all_users_flag = " -AllUserConnection" if all_users else ""
        data = self.runner.run_json(
            f"Get-VpnConnection{all_users_flag} "
            "| Select-Object Name,ServerAddress,TunnelType,AuthenticationMethod,ConnectionStatus",
            timeout=15,
        )
        connections: list[VpnConnection] = []
        for entry in data:
            connections.append(
                VpnConnection(
                    name=str(entry.get("Name", "")),
                    server_address=self._stringify(entry.get("ServerAddress")),
                    tunnel_type=self._stringify(entry.get("TunnelType")) or "Automatic",
                    authentication_method=self._stringify(entry.get("AuthenticationMethod")),
                    connection_status=self._stringify(entry.get("ConnectionStatus") or "Unknown"),
                    all_users=all_users,
                )
            )
        return connections

    def _cleanup(
        self,
        name: str,
        device_tunnel: bool,
        user_sid: str,
        require_existing: bool = False,
    ) -> OperationResult:
        instance_id = self.runner.quote(uri_escape(name, safe=""))
        quoted_name = self.runner.quote(name)
        all_users_flag = " -AllUserConnection" if device_tunnel else ""
        pattern = self.runner.quote("^" + re.escape(name) + r"( \d+)?$")
        profiles_key = self.runner.quote(config.NETWORK_LIST_PROFILES_KEY)
        statements = self._cim_preamble(device_tunnel, user_sid) + [
            "$removed = 0",
            "$session.EnumerateInstances($namespace, $className, $options) "
            f"| Where-Object {{ $_.InstanceID -eq {instance_id} }} "
            "| ForEach-Object { $session.DeleteInstance($namespace, $_, $options); $removed++ }",
            # connections added with Add-VpnConnection or rasphone have no MDM instance
            f"Get-VpnConnection -Name {quoted_name}{all_users_flag} -ErrorAction SilentlyContinue "
            f"| ForEach-Object {{ Remove-VpnConnection -Name $_.Name{all_users_flag} -Force; $removed++ }}",
            f"Get-ChildItem -Path {profiles_key} "
            f"| Where-Object {{ (Get-ItemProperty -Path $_.PSPath).ProfileName -match {pattern} }} "
            "| Remove-Item -Recurse -Force",
        ]
        if require_existing:
            missing = self.runner.quote(f"No VPN connection named {name} was found.")
            statements.append(f"if ($removed -eq 0) {{ throw {missing} }}")
        return self.runner.run(
            "; ".join(statements),
            success_message=f"Removed previous configuration for {name}.",
        )

    def _cim_preamble(self, device_tunnel: bool, user_sid: str) -> list[str]:
        statements = [
            f"$namespace = {self.runner.quote(config.MDM_NAMESPACE)}",
            f"$className = {self.runner.quote(config.MDM_VPN_CLASS)}",
            "$session = New-CimSession",
            "$options = New-Object Microsoft.Management.Infrastructure.Options.CimOperationOptions",
        ]
        if device_tunnel:
            return statements

        if user_sid:
            statements.append(f"$sid = {self.runner.quote(user_sid)}")
        else:
            statements.extend(
                [
                    "$user = (Get-CimInstance -ClassName Win32_ComputerSystem).UserName",
                    "if (-not $user) { throw 'No interactive user is logged on. Specify the user SID.' }",
                    "$sid = (New-Object System.Security.Principal.NTAccount($user))"
                    ".Translate([System.Security.Principal.SecurityIdentifier]).Value",
                ]
            )
        statements.extend(
            [
                "$options.SetCustomOption('PolicyPlatformContext_PrincipalContext_Type', "
                "'PolicyPlatform_UserContext', $false)",
                "$options.SetCustomOption('PolicyPlatformContext_PrincipalContext_Id', $sid, $false)",
            ]
        )
        return statements

    def _validate_name(self, name: str) -> str:
        if not name or not name.strip():
            return "Connection name is required."
        bad = sorted(set(name) & _INVALID_NAME_CHARS)
        if bad:
            return f"Connection name must not contain {' '.join(bad)}."
        return ""

    def _validate_profile_xml(self, spec: AovpnConnectionSpec) -> str:
        if not spec.profile_xml or not spec.profile_xml.strip():
            return "ProfileXML is empty."
        try:
            root = ElementTree.fromstring(spec.profile_xml.strip())
        except ElementTree.ParseError as exc:
            return f"ProfileXML is not well-formed XML: {exc}"
        if root.tag.split("}")[-1] != "VPNProfile":
            return f"ProfileXML root element must be VPNProfile, found {root.tag}."

        device_flag = root.findtext("DeviceTunnel", default="").strip().lower() == "true"
        if device_flag != spec.device_tunnel:
            self.logger.warning(
                "ProfileXML DeviceTunnel=%s does not match the requested %s tunnel.",
                device_flag,
                "device" if spec.device_tunnel else "user",
            )
        return ""

    def _rasdial_args(self, name: str, all_users: bool, disconnect: bool = False) -> list[str]:
        args = [name]
        phonebook = self._rasphonebook_path(all_users)
        if phonebook:
            args.append(f"/PHONEBOOK:{phonebook}")
        if disconnect:
            args.append("/disconnect")
        return args

    def _rasphonebook_path(self, all_users: bool) -> Optional[str]:
        if not all_users:
            return None
        base_dir = os.environ.get("PROGRAMDATA")
        if not base_dir:
            return None
        return os.path.join(base_dir, "Microsoft", "Network", "Connections", "Pbk", "rasphone.pbk")

    def _stringify(self, value: Optional[object]) -> str:
        if value is None:
            return ""
        if isinstance(value, list):
            return ", ".join(str(item) for item in value)
        return str(value)

    def _add_error_hint(self, message: str, details: str) -> str:
        combined = f"{message}\n{details}"
        for code, hint in _ERROR_HINTS.items():
            if re.search(rf"\b{code}\b", combined):
                return f"{message.strip()} {hint}"
        return message.strip()
