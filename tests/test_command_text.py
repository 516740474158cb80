import json

import pytest

from aovpn import config
from aovpn.client import PowerShellClientBackend
from aovpn.models import AovpnConnectionSpec
from aovpn.powershell import PowerShellRunner
from aovpn.server import VpnServerTools
from conftest import completed, starts_with_keyword, top_level_statements

PREFIX = "$ErrorActionPreference='Stop'; "
JSON_SUFFIX = " | ConvertTo-Json -Depth 4"


@pytest.fixture
def elevated_runner(monkeypatch):
    runner = PowerShellRunner()
    monkeypatch.setattr(runner, "is_admin", lambda: True)
    return runner


def _script(fake_run, index=0):
    args, _kwargs = fake_run.calls[index]
    assert args[-2] == "-Command"
    assert args[-1].startswith(PREFIX)
    return args[-1]


def _assert_json_pipeline(script):
    assert script.endswith(JSON_SUFFIX)
    last = top_level_statements(script)[-1]
    assert last.endswith(JSON_SUFFIX.strip())
    # language statements cannot feed a pipeline
    assert not starts_with_keyword(last), last


class TestQueries:
    def test_profile_xml_pipeline(self, fake_run):
        fake_run.outcome = completed(
            stdout=json.dumps({"InstanceID": "Contoso%20VPN", "ProfileXML": "<VPNProfile/>"})
        )
        profile_xml = PowerShellClientBackend(PowerShellRunner()).get_vpn_profile_xml("Contoso VPN")
        assert profile_xml == "<VPNProfile/>\n"

        script = _script(fake_run)
        _assert_json_pipeline(script)
        assert "$instance | Select-Object InstanceID, ProfileXML" in script
        assert "'Contoso%20VPN'" in script

    def test_device_tunnel_profile_xml_pipeline(self, fake_run):
        fake_run.outcome = completed(stdout=json.dumps({"ProfileXML": "<VPNProfile/>"}))
        PowerShellClientBackend(PowerShellRunner()).get_vpn_profile_xml("Device Tunnel", device_tunnel=True)
        script = _script(fake_run)
        _assert_json_pipeline(script)
        assert "PolicyPlatform_UserContext" not in script

    def test_missing_profile_yields_no_output(self, fake_run):
        fake_run.outcome = completed(stdout="")
        with pytest.raises(RuntimeError, match="Contoso VPN"):
            PowerShellClientBackend(PowerShellRunner()).get_vpn_profile_xml("Contoso VPN")

    def test_server_configuration_pipeline(self, fake_run):
        fake_run.outcome = completed(
            stdout=json.dumps(
                {
                    "TunnelType": "IKEv2",
                    "UserAuthProtocolAccepted": ["Certificate"],
                    "RootCertificateThumbprint": "",
                    config.IKEV2_FRAGMENTATION_VALUE: 1,
                    config.IKEV2_CERT_AUTH_FLAGS_VALUE: 4,
                }
            )
        )
        settings = VpnServerTools(PowerShellRunner()).get_vpn_server_configuration()
        assert settings.crl_check_enabled

        script = _script(fake_run)
        _assert_json_pipeline(script)
        assert top_level_statements(script)[-1].startswith("[PSCustomObject]@{")

    @pytest.mark.parametrize("all_users", [False, True])
    def test_connection_listing_pipeline(self, fake_run, elevated_runner, all_users):
        fake_run.outcome = completed(stdout="[]")
        PowerShellClientBackend(elevated_runner).list_connections(include_all_users=all_users)
        assert len(fake_run.calls) == (2 if all_users else 1)
        for index in range(len(fake_run.calls)):
            script = _script(fake_run, index)
            _assert_json_pipeline(script)
            assert top_level_statements(script)[-1].startswith("Get-VpnConnection")
        if all_users:
            assert "Get-VpnConnection -AllUserConnection" in _script(fake_run, 1)


class TestProvisioningScripts:
    def test_removal_script_is_balanced(self, fake_run, elevated_runner):
        PowerShellClientBackend(elevated_runner).remove_aovpn_connection("AOVPN Test", device_tunnel=True)
        script = _script(fake_run)
        assert not script.endswith(JSON_SUFFIX)
        statements = top_level_statements(script)
        assert any(
            statement.startswith("Get-VpnConnection -Name 'AOVPN Test' -AllUserConnection")
            and "Remove-VpnConnection" in statement
            for statement in statements
        )
        assert statements[-1].startswith("if ($removed -eq 0)")

    def test_new_connection_scripts_are_balanced(self, fake_run, elevated_runner):
        profile = "<VPNProfile><NativeProfile><Servers>vpn.example.com</Servers></NativeProfile></VPNProfile>"
        spec = AovpnConnectionSpec(profile_name="Bob's VPN", profile_xml=profile)
        assert PowerShellClientBackend(elevated_runner).new_aovpn_connection(spec).success
        assert len(fake_run.calls) == 2
        for index in range(2):
            top_level_statements(_script(fake_run, index))
        assert "Get-VpnConnection -Name 'Bob''s VPN'" in _script(fake_run, 0)


def test_export_decodes_and_writes_pinned_encodings(fake_run, elevated_runner, monkeypatch, tmp_path):
    monkeypatch.setattr(config, "NETSH_OUTPUT_ENCODING", "cp850")
    monkeypatch.setattr(config, "NETSH_SCRIPT_ENCODING", "cp1252")
    fake_run.outcome = completed(stdout="pushd ras\nset user name = Müller\npopd")
    target = tmp_path / "rras.txt"

    result = VpnServerTools(elevated_runner).export_vpn_server_configuration(target)
    assert result.success
    args, kwargs = fake_run.calls[0]
    assert args == ["netsh.exe", "ras", "dump"]
    assert kwargs["encoding"] == "cp850"
    assert target.read_bytes().decode("cp1252").splitlines()[1] == "set user name = Müller"
