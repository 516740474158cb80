from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional

from PySide6.QtCore import QThreadPool, QTimer
from PySide6.QtWidgets import (
    QAbstractItemView,
    QCheckBox,
    QFileDialog,
    QHBoxLayout,
    QLabel,
    QLineEdit,
    QMainWindow,
    QMessageBox,
    QPushButton,
    QTableWidget,
    QTableWidgetItem,
    QTextEdit,
    QVBoxLayout,
    QWidget,
)

from aovpn import certificates, network
from aovpn.backend import VpnClientBackend
from aovpn.logger import get_logger
from aovpn.models import CertificateInfo, OperationResult, PublicIpInfo, VpnConnection
from aovpn_gui.dialogs import AovpnConnectionDialog, TestConnectionDialog, TlsCertificateDialog
from aovpn_gui.resources import app_logo_icon
from aovpn_gui.workers import Worker

ConnectionKey = tuple[str, bool]


class MainWindow(QMainWindow):
    POLL_INTERVAL_MS = 5000
    COLUMNS = ["Name", "Scope", "Server Address", "Tunnel Type", "Authentication", "Status"]

    def __init__(self, backend: VpnClientBackend) -> None:
        super().__init__()
        self.backend = backend
        self.logger = get_logger()
        self.thread_pool = QThreadPool()

        self.connections: list[VpnConnection] = []
        self.visible_connections: list[VpnConnection] = []
        self.pending_key: Optional[ConnectionKey] = None
        self.busy = False
        self.refresh_in_flight = False

        self.setWindowTitle("AOVPN Tools")
        self.setWindowIcon(app_logo_icon())
        self.resize(1080, 700)

        self._build_ui()
        self._connect_signals()
        self._start_auto_refresh_timer()
        self.refresh_connections()

    def _build_ui(self) -> None:
        central = QWidget()
        layout = QVBoxLayout(central)

        top_bar = QHBoxLayout()
        self.search_input = QLineEdit()
        self.search_input.setPlaceholderText("Search...")
        self.include_all_users = QCheckBox("Include all-user / device tunnels")
        self.refresh_button = QPushButton("Refresh")
        top_bar.addWidget(QLabel("Search:"))
        top_bar.addWidget(self.search_input, 1)
        top_bar.addWidget(self.include_all_users)
        top_bar.addWidget(self.refresh_button)

        self.table = QTableWidget(0, len(self.COLUMNS))
        self.table.setHorizontalHeaderLabels(self.COLUMNS)
        self.table.horizontalHeader().setStretchLastSection(True)
        self.table.setSelectionBehavior(QAbstractItemView.SelectRows)
        self.table.setSelectionMode(QAbstractItemView.SingleSelection)
        self.table.setEditTriggers(QAbstractItemView.NoEditTriggers)

        action_bar = QHBoxLayout()
        self.status_label = QLabel("Status: -")
        self.new_button = QPushButton("New Always On VPN...")
        self.test_button = QPushButton("New Test Connection...")
        self.export_button = QPushButton("Export ProfileXML...")
        self.remove_button = QPushButton("Remove")
        self.connect_button = QPushButton("Connect")
        action_bar.addWidget(self.status_label)
        action_bar.addStretch(1)
        for button in (
            self.new_button,
            self.test_button,
            self.export_button,
            self.remove_button,
            self.connect_button,
        ):
            action_bar.addWidget(button)

        tools_bar = QHBoxLayout()
        self.public_ip_button = QPushButton("Public IP")
        self.tls_button = QPushButton("TLS Certificate...")
        self.gpupdate_button = QPushButton("Update Group Policy")
        tools_bar.addWidget(QLabel("Tools:"))
        tools_bar.addWidget(self.public_ip_button)
        tools_bar.addWidget(self.tls_button)
        tools_bar.addWidget(self.gpupdate_button)
        tools_bar.addStretch(1)

        self.log_output = QTextEdit()
        self.log_output.setReadOnly(True)
        self.log_output.setMaximumHeight(160)

        layout.addLayout(top_bar)
        layout.addWidget(self.table, 1)
        layout.addLayout(action_bar)
        layout.addLayout(tools_bar)
        layout.addWidget(QLabel("Output:"))
        layout.addWidget(self.log_output)
        self.setCentralWidget(central)
        self._update_action_state()

    def _connect_signals(self) -> None:
        self.refresh_button.clicked.connect(lambda: self.refresh_connections())
        self.search_input.textChanged.connect(self.apply_filter)
        self.include_all_users.stateChanged.connect(lambda _state: self.refresh_connections())
        self.table.itemSelectionChanged.connect(self._update_action_state)
        self.table.itemDoubleClicked.connect(self._toggle_selected)
        self.connect_button.clicked.connect(self._toggle_selected)
        self.new_button.clicked.connect(self._new_aovpn_connection)
        self.test_button.clicked.connect(self._new_test_connection)
        self.export_button.clicked.connect(self._export_profile_xml)
        self.remove_button.clicked.connect(self._remove_connection)
        self.public_ip_button.clicked.connect(self._show_public_ip)
        self.tls_button.clicked.connect(self._show_tls_certificate)
        self.gpupdate_button.clicked.connect(self._update_group_policy)

    def _start_auto_refresh_timer(self) -> None:
        self.auto_refresh_timer = QTimer(self)
        self.auto_refresh_timer.setInterval(self.POLL_INTERVAL_MS)
        self.auto_refresh_timer.timeout.connect(self._auto_refresh_tick)
        self.auto_refresh_timer.start()

    def _auto_refresh_tick(self) -> None:
        if self.busy or self.refresh_in_flight:
            return
        self.refresh_connections(silent=True)

    def refresh_connections(self, silent: bool = False) -> None:
        if self.refresh_in_flight:
            return
        self.refresh_in_flight = True
        self.refresh_button.setEnabled(False)
        if not silent:
            self._log_message("Refreshing VPN connections...")
        worker = Worker(self.backend.list_connections, self.include_all_users.isChecked())
        worker.signals.finished.connect(lambda connections: self._on_connections_loaded(connections, silent))
        worker.signals.error.connect(self._on_refresh_error)
        self.thread_pool.start(worker)

    def apply_filter(self) -> None:
        selected_key = self._current_key()
        text = self.search_input.text().strip().lower()

        visible = []
        for connection in self.connections:
            searchable = " ".join(
                [
                    connection.name,
                    connection.server_address,
                    connection.tunnel_type,
                    connection.authentication_method,
                    self._scope_label(connection),
                    connection.connection_status,
                ]
            ).lower()
            if text and text not in searchable:
                continue
            visible.append(connection)

        # Connected entries first, then by name.
        visible.sort(key=lambda c: (self._normalize_status(c.connection_status) != "Connected", c.name.lower()))
        self.visible_connections = visible
        self._populate_table()
        if selected_key:
            self._select_key(selected_key)
        self._update_action_state()

    def _populate_table(self) -> None:
        self.table.blockSignals(True)
        self.table.setRowCount(len(self.visible_connections))
        for row, connection in enumerate(self.visible_connections):
            values = [
                connection.name,
                self._scope_label(connection),
                connection.server_address,
                connection.tunnel_type,
                connection.authentication_method,
                self._normalize_status(connection.connection_status),
            ]
            for column, value in enumerate(values):
                self.table.setItem(row, column, QTableWidgetItem(value))
        self.table.blockSignals(False)

    def _scope_label(self, connection: VpnConnection) -> str:
        return "System" if connection.all_users else "User"

    def _normalize_status(self, status: str) -> str:
        value = (status or "").strip().lower()
        if value in ("connected", "connecting", "error"):
            return value.capitalize()
        if value in ("disconnected", "notconnected"):
            return "Disconnected"
        return "Unknown"

    def _selected(self) -> Optional[VpnConnection]:
        row = self.table.currentRow()
        if row < 0 or row >= len(self.visible_connections):
            return None
        return self.visible_connections[row]

    def _current_key(self) -> Optional[ConnectionKey]:
        connection = self._selected()
        return (connection.name, connection.all_users) if connection else None

    def _select_key(self, key: ConnectionKey) -> None:
        for row, connection in enumerate(self.visible_connections):
            if (connection.name, connection.all_users) == key:
                self.table.setCurrentCell(row, 0)
                return

    def _update_action_state(self) -> None:
        connection = self._selected()
        idle = not self.busy
        for button in (self.new_button, self.test_button, self.public_ip_button, self.tls_button, self.gpupdate_button):
            button.setEnabled(idle)
        for button in (self.export_button, self.remove_button, self.connect_button):
            button.setEnabled(idle and connection is not None)
        if not connection:
            self.status_label.setText("Status: -")
            self.connect_button.setText("Connect")
            return

        status = self._normalize_status(connection.connection_status)
        self.status_label.setText(f"Status: {status}")
        self.connect_button.setText("Disconnect" if status == "Connected" else "Connect")
        if status == "Connecting":
            self.connect_button.setEnabled(False)

    def _run_task(
        self,
        message: str,
        fn: Callable[..., Any],
        *args: Any,
        on_finished: Optional[Callable[[Any], None]] = None,
    ) -> None:
        self._set_busy(True)
        self._log_message(message)
        worker = Worker(fn, *args)
        worker.signals.finished.connect(lambda result: self._on_task_finished(result, on_finished))
        worker.signals.error.connect(self._on_task_error)
        self.thread_pool.start(worker)

    def _toggle_selected(self) -> None:
        connection = self._selected()
        if not connection or self.busy:
            return
        status = self._normalize_status(connection.connection_status)
        if status == "Connecting":
            return
        self.pending_key = (connection.name, connection.all_users)
        if status == "Connected":
            self._run_task(
                f"Disconnecting {connection.name}...",
                self.backend.disconnect,
                connection.name,
                connection.all_users,
            )
        else:
            self._set_status(self.pending_key, "Connecting")
            self._run_task(
                f"Connecting to {connection.name}...",
                self.backend.connect_and_wait,
                connection.name,
                connection.all_users,
            )

    def _new_aovpn_connection(self) -> None:
        dialog = AovpnConnectionDialog(self)
        if dialog.exec() != AovpnConnectionDialog.Accepted:
            return
        try:
            spec = dialog.connection_spec()
        except OSError as exc:
            self._log_message(f"Could not read ProfileXML: {exc}")
            return
        self._run_task(f"Creating Always On VPN connection {spec.profile_name}...", self.backend.new_aovpn_connection, spec)

    def _new_test_connection(self) -> None:
        dialog = TestConnectionDialog(self)
        if dialog.exec() != TestConnectionDialog.Accepted:
            return
        spec = dialog.connection_spec()
        self._run_task(
            f"Creating test connection {spec.name}...",
            self.backend.new_test_connection,
            spec,
            dialog.connect_after(),
        )

    def _remove_connection(self) -> None:
        connection = self._selected()
        if not connection:
            return
        confirm = QMessageBox.question(
            self,
            "Remove Connection",
            f"Remove VPN connection '{connection.name}' ({self._scope_label(connection)})?",
            QMessageBox.Yes | QMessageBox.No,
        )
        if confirm != QMessageBox.Yes:
            return
        self._run_task(
            f"Removing {connection.name}...",
            self.backend.remove_aovpn_connection,
            connection.name,
            connection.all_users,
        )

    def _export_profile_xml(self) -> None:
        connection = self._selected()
        if not connection:
            return
        path, _ = QFileDialog.getSaveFileName(
            self, "Save ProfileXML", f"{connection.name}.xml", "XML files (*.xml)"
        )
        if not path:
            return
        self._run_task(
            f"Exporting ProfileXML of {connection.name}...",
            self.backend.get_vpn_profile_xml,
            connection.name,
            connection.all_users,
            "",
            path,
            on_finished=lambda _xml: self._log_message(f"Saved ProfileXML to {path}."),
        )

    def _show_public_ip(self) -> None:
        self._run_task("Looking up public IP address...", network.get_public_ip_address, on_finished=self._on_public_ip)

    def _show_tls_certificate(self) -> None:
        connection = self._selected()
        dialog = TlsCertificateDialog(self, connection.server_address if connection else "")
        if dialog.exec() != TlsCertificateDialog.Accepted:
            return
        host, port, server_name = dialog.target()
        self._run_task(
            f"Retrieving certificate from {host}:{port}...",
            certificates.get_tls_certificate,
            host,
            port,
            server_name,
            on_finished=self._on_certificate,
        )

    def _update_group_policy(self) -> None:
        update = getattr(self.backend, "update_group_policy", None)
        if update is None:
            self._log_message("This backend cannot update Group Policy.")
            return
        self._run_task("Updating computer Group Policy...", update)

    def _on_connections_loaded(self, connections: list[VpnConnection], silent: bool) -> None:
        self.refresh_in_flight = False
        self.refresh_button.setEnabled(not self.busy)
        self.connections = connections
        self.apply_filter()
        if not silent:
            if self.backend.last_error:
                self._log_message(self.backend.last_error)
            self._log_message(f"Loaded {len(connections)} VPN connections.")

    def _on_refresh_error(self, error_text: str) -> None:
        self.refresh_in_flight = False
        self.refresh_button.setEnabled(not self.busy)
        self._log_message(f"Refresh failed: {error_text}")

    def _on_task_finished(self, result: Any, on_finished: Optional[Callable[[Any], None]]) -> None:
        self._set_busy(False)
        if on_finished is not None:
            on_finished(result)
        elif isinstance(result, OperationResult):
            self._log_message(result.message if result.success else f"Failed: {result.message}")
            if self.pending_key and result.status:
                self._set_status(self.pending_key, result.status)
        self.pending_key = None
        self.refresh_connections(silent=True)

    def _on_task_error(self, error_text: str) -> None:
        self._set_busy(False)
        if self.pending_key:
            self._set_status(self.pending_key, "Error")
        self.pending_key = None
        self._log_message(f"Failed: {error_text}")

    def _on_public_ip(self, info: PublicIpInfo) -> None:
        location = ", ".join(part for part in [info.city, info.region, info.country] if part)
        self._log_message(f"Public IP address: {info.ip} {location} {info.org}".strip())

    def _on_certificate(self, info: CertificateInfo) -> None:
        self._log_message(f"Subject: {info.subject}")
        self._log_message(f"Issuer: {info.issuer}")
        self._log_message(f"Thumbprint: {info.thumbprint}")
        self._log_message(f"Valid until: {info.not_after:%Y-%m-%d} ({info.days_remaining()} days)")
        if info.subject_alternative_names:
            self._log_message(f"SANs: {', '.join(info.subject_alternative_names)}")

    def _set_status(self, key: ConnectionKey, status: str) -> None:
        for connection in self.connections:
            if (connection.name, connection.all_users) == key:
                connection.connection_status = status
        self.apply_filter()

    def _set_busy(self, busy: bool) -> None:
        self.busy = busy
        self.include_all_users.setEnabled(not busy)
        self.refresh_button.setEnabled(not busy and not self.refresh_in_flight)
        self._update_action_state()

    def _log_message(self, message: str) -> None:
        timestamp = datetime.now().strftime("%H:%M:%S")
        self.log_output.append(f"[{timestamp}] {message}")
        self.logger.info(message)
