from pathlib import Path
from typing import Optional, Union

from aovpn import config
from aovpn.certificates import certificate_thumbprint, normalize_thumbprint
from aovpn.logger import get_logger
from aovpn.models import OperationResult, VpnServerSettings
from aovpn.powershell import PowerShellRunner


class VpnServerTools:
    """Configuration helpers for an RRAS VPN server and its NPS server."""

    def __init__(self, runner: Optional[PowerShellRunner] = None) -> None:
        self.runner = runner or PowerShellRunner()
        self.logger = get_logger()

    def install_vpn_server(
        self,
        configure: bool = True,
        enable_fragmentation: bool = True,
        restart: bool = True,
    ) -> OperationResult:
        admin_error = self.runner.ensure_admin("install the VPN server role")
        if admin_error:
            return admin_error

        steps = [
            (
                f"Install-WindowsFeature -Name {self.runner.quote(config.VPN_FEATURE_NAME)} "
                "-IncludeManagementTools | Out-Null",
                f"Installed {config.VPN_FEATURE_NAME} role.",
            )
        ]
        if configure:
            steps.append(
                (
                    "if ((Get-RemoteAccess).VpnStatus -ne 'Installed') "
                    "{ Install-RemoteAccess -VpnType Vpn -Legacy }",
                    "Configured Routing and Remote Access for VPN.",
                )
            )
        if enable_fragmentation:
            steps.append(
                (
                    self._set_ikev2_dword_command(config.IKEV2_FRAGMENTATION_VALUE, 1),
                    "Enabled IKEv2 fragmentation.",
                )
            )
        if restart:
            steps.append((self._restart_command(), "Restarted RemoteAccess service."))
        return self._run_steps(steps)

    def install_nps_server(self, enable_auditing: bool = True) -> OperationResult:
        admin_error = self.runner.ensure_admin("install the NPS role")
        if admin_error:
            return admin_error

        result = self.runner.run(
            f"Install-WindowsFeature -Name {self.runner.quote(config.NPS_FEATURE_NAME)} "
            "-IncludeManagementTools | Out-Null",
            timeout=config.FEATURE_INSTALL_TIMEOUT,
            success_message=f"Installed {config.NPS_FEATURE_NAME} role.",
        )
        if not result.success or not enable_auditing:
            return result

        audit = self.enable_nps_auditing()
        return self._merge([result, audit])

    def enable_nps_auditing(self) -> OperationResult:
        admin_error = self.runner.ensure_admin("change the audit policy")
        if admin_error:
            return admin_error

        return self.runner.run_executable(
            [
                "auditpol.exe",
                "/set",
                f"/subcategory:{config.NPS_AUDIT_SUBCATEGORY}",
                "/success:enable",
                "/failure:enable",
            ],
            success_message="Enabled Network Policy Server success and failure auditing.",
        )

    def set_ikev2_vpn_root_certificate(
        self,
        thumbprint: Optional[str] = None,
        certificate_file: Optional[Union[str, Path]] = None,
        restart: bool = False,
    ) -> OperationResult:
        if bool(thumbprint) == bool(certificate_file):
            return OperationResult(
                False,
                "Specify either a root certificate thumbprint or a certificate file.",
                status="Error",
            )
        try:
            if certificate_file:
                value = certificate_thumbprint(certificate_file)
            else:
                value = normalize_thumbprint(thumbprint)
        except (OSError, ValueError) as exc:
            self.logger.warning("Invalid root certificate: %s", exc)
            return OperationResult(False, str(exc), status="Error")

        admin_error = self.runner.ensure_admin("change the IKEv2 root certificate")
        if admin_error:
            return admin_error

        store = self.runner.quote(config.ROOT_CERT_STORE)
        missing = self.runner.quote(
            f"Root certificate {value} was not found in the local machine Trusted Root store."
        )
        steps = [
            (
                f"$cert = Get-ChildItem -Path {store} | Where-Object {{ $_.Thumbprint -eq '{value}' }}; "
                f"if (-not $cert) {{ throw {missing} }}; "
                "Set-VpnAuthProtocol -RootCertificateNameToAccept $cert -PassThru | Out-Null",
                f"IKEv2 root certificate set to {value}.",
            )
        ]
        if restart:
            steps.append((self._restart_command(), "Restarted RemoteAccess service."))
        else:
            self.logger.info("Restart the RemoteAccess service for the root certificate change to apply.")
        return self._run_steps(steps)

    def enable_ikev2_crl_check(self, restart: bool = False) -> OperationResult:
        admin_error = self.runner.ensure_admin("enable IKEv2 certificate revocation checking")
        if admin_error:
            return admin_error

        steps = [
            (
                self._set_ikev2_dword_command(
                    config.IKEV2_CERT_AUTH_FLAGS_VALUE, config.IKEV2_CRL_CHECK_FLAG
                ),
                "Enabled IKEv2 certificate revocation checking.",
            )
        ]
        if restart:
            steps.append((self._restart_command(), "Restarted RemoteAccess service."))
        return self._run_steps(steps)

    def get_vpn_server_configuration(self) -> VpnServerSettings:
        key = self.runner.quote(config.IKEV2_PARAMETERS_KEY)
        data = self.runner.run_json(
            "$auth = Get-VpnAuthProtocol; "
            "$server = Get-VpnServerConfiguration; "
            f"$ike = Get-ItemProperty -Path {key} -ErrorAction SilentlyContinue; "
            "[PSCustomObject]@{ "
            "TunnelType = \"$($server.TunnelType)\"; "
            "UserAuthProtocolAccepted = @($auth.UserAuthProtocolAccepted | ForEach-Object { \"$_\" }); "
            "RootCertificateThumbprint = \"$($auth.RootCertificateNameToAccept.Thumbprint)\"; "
            f"{config.IKEV2_FRAGMENTATION_VALUE} = $ike.{config.IKEV2_FRAGMENTATION_VALUE}; "
            f"{config.IKEV2_CERT_AUTH_FLAGS_VALUE} = $ike.{config.IKEV2_CERT_AUTH_FLAGS_VALUE} "
            "}"
        )
        if not data:
            raise RuntimeError("RRAS returned no configuration. Is the VPN server role installed?")

        raw = data[0]
        flags = raw.get(config.IKEV2_CERT_AUTH_FLAGS_VALUE) or 0
        return VpnServerSettings(
            tunnel_types=self._as_list(raw.get("TunnelType")),
            authentication_methods=self._as_list(raw.get("UserAuthProtocolAccepted")),
            root_certificate_thumbprint=str(raw.get("RootCertificateThumbprint") or ""),
            ike_fragmentation_enabled=raw.get(config.IKEV2_FRAGMENTATION_VALUE) == 1,
            crl_check_enabled=bool(int(flags) & config.IKEV2_CRL_CHECK_FLAG),
            raw=raw,
        )

    def export_vpn_server_configuration(
        self,
        path: Union[str, Path],
        force: bool = False,
    ) -> OperationResult:
        target = Path(path)
        if target.exists() and not force:
            return OperationResult(
                False,
                f"{target} already exists. Use force to overwrite it.",
                status="Error",
            )

        admin_error = self.runner.ensure_admin("export the RRAS configuration")
        if admin_error:
            return admin_error

        result = self.runner.run_executable(
            ["netsh.exe", "ras", "dump"],
            encoding=config.NETSH_OUTPUT_ENCODING,
        )
        if not result.success:
            return result

        target.parent.mkdir(parents=True, exist_ok=True)
        # netsh exec expects one command per line
        target.write_text(result.details + "\n", encoding=config.NETSH_SCRIPT_ENCODING, errors="replace")
        self.logger.info("Exported RRAS configuration to %s", target)
        return OperationResult(True, f"Exported RRAS configuration to {target}.", details=str(target))

    def import_vpn_server_configuration(
        self,
        path: Union[str, Path],
        restart: bool = True,
    ) -> OperationResult:
        source = Path(path)
        if not source.is_file():
            return OperationResult(False, f"Configuration file {source} not found.", status="Error")

        admin_error = self.runner.ensure_admin("import the RRAS configuration")
        if admin_error:
            return admin_error

        result = self.runner.run_executable(
            ["netsh.exe", "exec", str(source)],
            success_message=f"Imported RRAS configuration from {source}.",
        )
        if not result.success or not restart:
            return result
        return self._merge([result, self.restart_remote_access()])

    def restart_remote_access(self) -> OperationResult:
        admin_error = self.runner.ensure_admin("restart the RemoteAccess service")
        if admin_error:
            return admin_error
        return self.runner.run(self._restart_command(), success_message="Restarted RemoteAccess service.")

    def _run_steps(self, steps: list[tuple[str, str]]) -> OperationResult:
        results: list[OperationResult] = []
        for command, success_message in steps:
            result = self.runner.run(
                command,
                timeout=config.FEATURE_INSTALL_TIMEOUT,
                success_message=success_message,
            )
            results.append(result)
            if not result.success:
                break
        return self._merge(results)

    def _merge(self, results: list[OperationResult]) -> OperationResult:
        failed = next((result for result in results if not result.success), None)
        details = "\n".join(result.details for result in results if result.details)
        if failed:
            done = " ".join(result.message for result in results if result.success)
            message = f"{done} {failed.message}".strip() if done else failed.message
            return OperationResult(False, message, status="Error", details=details)
        message = " ".join(result.message for result in results)
        for result in results:
            self.logger.info(result.message)
        return OperationResult(True, message, details=details)

    def _set_ikev2_dword_command(self, name: str, value: int) -> str:
        key = self.runner.quote(config.IKEV2_PARAMETERS_KEY)
        return (
            f"if (-not (Test-Path -Path {key})) {{ New-Item -Path {key} -Force | Out-Null }}; "
            f"New-ItemProperty -Path {key} -Name {self.runner.quote(name)} "
            f"-PropertyType DWord -Value {int(value)} -Force | Out-Null"
        )

    def _restart_command(self) -> str:
        return f"Restart-Service -Name {self.runner.quote(config.REMOTE_ACCESS_SERVICE)} -Force"

    def _as_list(self, value: Optional[object]) -> list[str]:
        if value is None:
            return []
        if isinstance(value, list):
            return [str(item) for item in value if str(item)]
        return [part.strip() for part in str(value).split(",") if part.strip()]
