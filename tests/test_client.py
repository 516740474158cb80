import pytest

from aovpn import client as client_module
from aovpn import config
from aovpn.client import PowerShellClientBackend
from aovpn.models import AovpnConnectionSpec, OperationResult, TestConnectionSpec
from conftest import FakeRunner

USER_PROFILE = """<VPNProfile>
  <AlwaysOn>true</AlwaysOn>
  <NativeProfile>
    <Servers>vpn.example.com</Servers>
    <NativeProtocolType>IKEv2</NativeProtocolType>
  </NativeProfile>
</VPNProfile>"""

DEVICE_PROFILE = """<VPNProfile>
  <AlwaysOn>true</AlwaysOn>
  <DeviceTunnel>true</DeviceTunnel>
  <NativeProfile><Servers>vpn.example.com</Servers></NativeProfile>
</VPNProfile>"""


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(client_module.time, "sleep", lambda _seconds: None)


class TestListConnections:
    def test_parses_rows(self):
        runner = FakeRunner(
            json_responses=[
                [
                    {
                        "Name": "Contoso VPN",
                        "ServerAddress": "vpn.example.com",
                        "TunnelType": "Ikev2",
                        "AuthenticationMethod": ["Eap"],
                        "ConnectionStatus": "Disconnected",
                    },
                    {"Name": "Legacy", "ServerAddress": None, "TunnelType": None},
                ]
            ]
        )
        connections = PowerShellClientBackend(runner).list_connections()
        assert [c.name for c in connections] == ["Contoso VPN", "Legacy"]
        assert connections[0].authentication_method == "Eap"
        assert connections[1].tunnel_type == "Automatic"
        assert connections[1].connection_status == "Unknown"
        assert not connections[0].all_users

    def test_all_users_needs_admin(self):
        runner = FakeRunner(admin=False, json_responses=[[]])
        backend = PowerShellClientBackend(runner)
        assert backend.list_connections(include_all_users=True) == []
        assert "Admin privileges" in backend.last_error
        assert len(runner.commands) == 1

    def test_all_user_failure_is_recorded(self):
        runner = FakeRunner(json_responses=[[{"Name": "User"}], RuntimeError("Access denied")])
        backend = PowerShellClientBackend(runner)
        connections = backend.list_connections(include_all_users=True)
        assert len(connections) == 1
        assert "Access denied" in backend.last_error
        assert runner.commands[1].startswith("Get-VpnConnection -AllUserConnection")


class TestDialing:
    def test_status_error(self):
        runner = FakeRunner(json_responses=[RuntimeError("boom")])
        assert PowerShellClientBackend(runner).get_status("Contoso VPN") == "Error"

    def test_connect_and_wait(self):
        runner = FakeRunner(
            json_responses=[[{"ConnectionStatus": "Connecting"}], [{"ConnectionStatus": "Connected"}]]
        )
        result = PowerShellClientBackend(runner).connect_and_wait("Contoso VPN", poll_interval=0.1, max_wait=2)
        assert result.success
        assert result.status == "Connected"
        assert runner.executables == [["rasdial.exe", "Contoso VPN"]]

    def test_connect_and_wait_times_out(self):
        runner = FakeRunner(json_responses=[[{"ConnectionStatus": "Connecting"}]] * 10)
        result = PowerShellClientBackend(runner).connect_and_wait("Contoso VPN", poll_interval=1, max_wait=3)
        assert not result.success
        assert result.status == "Connecting"

    def test_connect_failure_gets_hint(self):
        runner = FakeRunner(
            exe_results=[OperationResult(False, "Remote Access error 809 - The network connection could not be established.", status="Error")]
        )
        result = PowerShellClientBackend(runner).connect_and_wait("Contoso VPN")
        assert not result.success
        assert "UDP 500/4500" in result.message

    def test_all_user_phonebook(self, monkeypatch):
        monkeypatch.setenv("PROGRAMDATA", "C:\\ProgramData")
        runner = FakeRunner(json_responses=[[{"ConnectionStatus": "Disconnected"}]])
        result = PowerShellClientBackend(runner).disconnect("Device Tunnel", all_users=True)
        args = runner.executables[0]
        assert args[0] == "rasdial.exe"
        assert args[2].startswith("/PHONEBOOK:") and args[2].endswith("rasphone.pbk")
        assert args[-1] == "/disconnect"
        assert result.status == "Disconnected"


class TestNewAovpnConnection:
    def test_user_tunnel(self, runner):
        spec = AovpnConnectionSpec(profile_name="Contoso VPN", profile_xml=USER_PROFILE)
        result = PowerShellClientBackend(runner).new_aovpn_connection(spec)
        assert result.success
        assert len(runner.commands) == 2

        cleanup, create = runner.commands
        assert "DeleteInstance" in cleanup
        assert "Get-VpnConnection -Name 'Contoso VPN' -ErrorAction SilentlyContinue" in cleanup
        assert "Remove-VpnConnection -Name $_.Name -Force" in cleanup
        assert "$removed -eq 0" not in cleanup
        assert config.NETWORK_LIST_PROFILES_KEY in cleanup
        assert "'Contoso%20VPN'" in create
        assert "&lt;VPNProfile&gt;" in create
        assert config.MDM_VPN_PARENT_ID in create
        assert "PolicyPlatform_UserContext" in create
        assert "Win32_ComputerSystem" in create

    def test_explicit_user_sid(self, runner):
        spec = AovpnConnectionSpec(
            profile_name="Contoso VPN",
            profile_xml=USER_PROFILE,
            user_sid="S-1-5-21-1004336348-1177238915-682003330-1001",
        )
        PowerShellClientBackend(runner).new_aovpn_connection(spec)
        assert "$sid = 'S-1-5-21-1004336348-1177238915-682003330-1001'" in runner.commands[1]
        assert "Win32_ComputerSystem" not in runner.commands[1]

    def test_device_tunnel_uses_machine_context(self, runner):
        spec = AovpnConnectionSpec(profile_name="Device Tunnel", profile_xml=DEVICE_PROFILE, device_tunnel=True)
        result = PowerShellClientBackend(runner).new_aovpn_connection(spec)
        assert result.success
        assert "device tunnel" in result.message
        assert all("PolicyPlatform_UserContext" not in command for command in runner.commands)

    def test_single_quotes_survive(self, runner):
        profile = USER_PROFILE.replace("vpn.example.com", "vpn.example.com' ; Remove-Item C:\\ ;'")
        spec = AovpnConnectionSpec(profile_name="Contoso VPN", profile_xml=profile)
        PowerShellClientBackend(runner).new_aovpn_connection(spec)
        assert "&apos; ; Remove-Item" in runner.commands[1]

    @pytest.mark.parametrize(
        "spec",
        [
            AovpnConnectionSpec(profile_name="", profile_xml=USER_PROFILE),
            AovpnConnectionSpec(profile_name="Contoso/VPN", profile_xml=USER_PROFILE),
            AovpnConnectionSpec(profile_name="Contoso VPN", profile_xml=""),
            AovpnConnectionSpec(profile_name="Contoso VPN", profile_xml="<VPNProfile>"),
            AovpnConnectionSpec(profile_name="Contoso VPN", profile_xml="<Profile></Profile>"),
            AovpnConnectionSpec(profile_name="Contoso VPN", profile_xml=USER_PROFILE, user_sid="bob"),
        ],
    )
    def test_invalid_input_runs_nothing(self, runner, spec):
        result = PowerShellClientBackend(runner).new_aovpn_connection(spec)
        assert not result.success
        assert runner.commands == []

    def test_requires_admin(self, unprivileged_runner):
        spec = AovpnConnectionSpec(profile_name="Contoso VPN", profile_xml=USER_PROFILE)
        result = PowerShellClientBackend(unprivileged_runner).new_aovpn_connection(spec)
        assert not result.success
        assert unprivileged_runner.commands == []

    def test_cleanup_failure_stops(self):
        runner = FakeRunner(run_results=[OperationResult(False, "Access denied.", status="Error")])
        spec = AovpnConnectionSpec(profile_name="Contoso VPN", profile_xml=USER_PROFILE)
        result = PowerShellClientBackend(runner).new_aovpn_connection(spec)
        assert not result.success
        assert len(runner.commands) == 1


class TestRemoveConnection:
    def test_removes_mdm_instance_and_vpn_connection(self, runner):
        result = PowerShellClientBackend(runner).remove_aovpn_connection("Device Tunnel", device_tunnel=True)
        assert result.success
        assert result.message == "Removed VPN connection Device Tunnel."
        command = runner.commands[0]
        assert "'Device%20Tunnel'" in command
        assert "DeleteInstance" in command
        assert "Get-VpnConnection -Name 'Device Tunnel' -AllUserConnection" in command
        assert "Remove-VpnConnection -Name $_.Name -AllUserConnection -Force" in command

    def test_plain_test_connection_is_removed(self, runner):
        result = PowerShellClientBackend(runner).remove_aovpn_connection("AOVPN Test")
        assert result.success
        assert "Get-VpnConnection -Name 'AOVPN Test' -ErrorAction SilentlyContinue" in runner.commands[0]
        assert "Remove-VpnConnection -Name $_.Name -Force" in runner.commands[0]

    def test_nothing_removed_is_a_failure(self):
        runner = FakeRunner(
            run_results=[OperationResult(False, "No VPN connection named AOVPN Test was found.", status="Error")]
        )
        result = PowerShellClientBackend(runner).remove_aovpn_connection("AOVPN Test", device_tunnel=True)
        assert not result.success
        assert "was found" in result.message
        assert "if ($removed -eq 0) { throw 'No VPN connection named AOVPN Test was found.' }" in runner.commands[0]

    def test_requires_admin(self, unprivileged_runner):
        assert not PowerShellClientBackend(unprivileged_runner).remove_aovpn_connection("AOVPN Test").success
        assert unprivileged_runner.commands == []


class TestProfileXml:
    def test_pretty_prints(self):
        runner = FakeRunner(json_responses=[[{"InstanceID": "Contoso%20VPN", "ProfileXML": "<VPNProfile><AlwaysOn>true</AlwaysOn></VPNProfile>"}]])
        profile_xml = PowerShellClientBackend(runner).get_vpn_profile_xml("Contoso VPN")
        assert profile_xml == "<VPNProfile>\n  <AlwaysOn>true</AlwaysOn>\n</VPNProfile>\n"

    def test_writes_file(self, tmp_path):
        runner = FakeRunner(json_responses=[[{"ProfileXML": "<VPNProfile/>"}]])
        target = tmp_path / "out" / "profile.xml"
        PowerShellClientBackend(runner).get_vpn_profile_xml("Device Tunnel", device_tunnel=True, output_file=str(target))
        assert target.read_text(encoding="utf-8") == "<VPNProfile/>\n"

    def test_missing_profile(self, runner):
        with pytest.raises(RuntimeError, match="Contoso VPN"):
            PowerShellClientBackend(runner).get_vpn_profile_xml("Contoso VPN")

    def test_malformed_xml_is_returned_as_is(self):
        assert PowerShellClientBackend.format_profile_xml("<VPNProfile>") == "<VPNProfile>"


class TestTestConnection:
    def test_machine_certificate(self, runner):
        spec = TestConnectionSpec(name="AOVPN Test", server_address="vpn.example.com", dns_suffix="corp.example.com")
        result = PowerShellClientBackend(runner).new_test_connection(spec)
        assert result.success
        command = runner.commands[0]
        assert "Remove-VpnConnection -Name 'AOVPN Test' -AllUserConnection -Force" in command
        assert "-TunnelType Ikev2" in command
        assert "-AuthenticationMethod MachineCertificate" in command
        assert "-DnsSuffix 'corp.example.com'" in command
        assert "-DHGroup Group14" in command
        assert "-PfsGroup ECP256" in command
        assert runner.executables == []

    def test_eap_for_current_user(self, unprivileged_runner):
        spec = TestConnectionSpec(name="AOVPN Test", server_address="vpn.example.com", authentication="Eap", all_users=False)
        result = PowerShellClientBackend(unprivileged_runner).new_test_connection(spec)
        assert result.success
        assert "New-EapConfiguration -Tls" in unprivileged_runner.commands[0]
        assert "-AllUserConnection" not in unprivileged_runner.commands[0]

    def test_connect_after_create(self):
        runner = FakeRunner(json_responses=[[{"ConnectionStatus": "Connected"}]])
        spec = TestConnectionSpec(name="AOVPN Test", server_address="vpn.example.com", all_users=False)
        result = PowerShellClientBackend(runner).new_test_connection(spec, connect=True)
        assert result.success
        assert result.message == "Created IKEv2 test connection AOVPN Test. Connected to AOVPN Test."
        assert runner.executables == [["rasdial.exe", "AOVPN Test"]]

    @pytest.mark.parametrize(
        "spec",
        [
            TestConnectionSpec(name="AOVPN Test", server_address=" "),
            TestConnectionSpec(name="AOVPN Test", server_address="vpn.example.com", authentication="Pap"),
        ],
    )
    def test_invalid(self, runner, spec):
        assert not PowerShellClientBackend(runner).new_test_connection(spec).success
        assert runner.commands == []


def test_update_group_policy(runner):
    backend = PowerShellClientBackend(runner)
    assert backend.update_group_policy().success
    assert runner.executables == [["gpupdate.exe", "/target:computer", "/force"]]
    assert not backend.update_group_policy("Domain").success
