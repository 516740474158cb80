from abc import ABC, abstractmethod
from typing import List, Optional

from aovpn.models import AovpnConnectionSpec, OperationResult, TestConnectionSpec, VpnConnection


class VpnClientBackend(ABC):
    last_error: str = ""

    @abstractmethod
    def list_connections(self, include_all_users: bool = False) -> List[VpnConnection]:
        raise NotImplementedError

    @abstractmethod
    def get_status(self, name: str, all_users: bool = False) -> str:
        raise NotImplementedError

    @abstractmethod
    def connect_and_wait(
        self,
        name: str,
        all_users: bool = False,
        poll_interval: float = 1.0,
        max_wait: int = 30,
    ) -> OperationResult:
        raise NotImplementedError

    @abstractmethod
    def disconnect(self, name: str, all_users: bool = False, timeout: int = 20) -> OperationResult:
        raise NotImplementedError

    @abstractmethod
    def new_aovpn_connection(self, spec: AovpnConnectionSpec) -> OperationResult:
        raise NotImplementedError

    @abstractmethod
    def remove_aovpn_connection(
        self,
        name: str,
        device_tunnel: bool = False,
        user_sid: str = "",
    ) -> OperationResult:
        raise NotImplementedError

    @abstractmethod
    def get_vpn_profile_xml(
        self,
        name: str,
        device_tunnel: bool = False,
        user_sid: str = "",
        output_file: Optional[str] = None,
    ) -> str:
        raise NotImplementedError

    @abstractmethod
    def new_test_connection(self, spec: TestConnectionSpec, connect: bool = False) -> OperationResult:
        raise NotImplementedError
