from __future__ import annotations

from pathlib import Path
from typing import Optional

from PySide6.QtWidgets import (
    QCheckBox,
    QComboBox,
    QDialog,
    QDialogButtonBox,
    QFileDialog,
    QFormLayout,
    QHBoxLayout,
    QLineEdit,
    QMessageBox,
    QPushButton,
    QSpinBox,
    QVBoxLayout,
    QWidget,
)

from aovpn.models import AovpnConnectionSpec, TestConnectionSpec
from aovpn_gui.resources import app_logo_icon


def _with_buttons(dialog: QDialog, form_layout: QFormLayout) -> None:
    buttons = QDialogButtonBox(QDialogButtonBox.Ok | QDialogButtonBox.Cancel)
    buttons.accepted.connect(dialog.accept)
    buttons.rejected.connect(dialog.reject)

    layout = QVBoxLayout(dialog)
    layout.addLayout(form_layout)
    layout.addWidget(buttons)


class AovpnConnectionDialog(QDialog):
    def __init__(self, parent: Optional[QWidget] = None) -> None:
        super().__init__(parent)
        self.setWindowTitle("New Always On VPN Connection")
        self.setWindowIcon(app_logo_icon())

        self.name_input = QLineEdit()
        self.xml_input = QLineEdit()
        self.xml_input.setPlaceholderText("ProfileXML file")
        browse_button = QPushButton("Browse...")
        browse_button.clicked.connect(self._browse)
        self.device_checkbox = QCheckBox("Device tunnel (runs as SYSTEM)")
        self.sid_input = QLineEdit()
        self.sid_input.setPlaceholderText("Interactive user when empty")

        xml_row = QHBoxLayout()
        xml_row.addWidget(self.xml_input, 1)
        xml_row.addWidget(browse_button)

        form_layout = QFormLayout()
        form_layout.addRow("Name:", self.name_input)
        form_layout.addRow("ProfileXML:", xml_row)
        form_layout.addRow("", self.device_checkbox)
        form_layout.addRow("User SID:", self.sid_input)
        self.device_checkbox.toggled.connect(lambda checked: self.sid_input.setEnabled(not checked))
        _with_buttons(self, form_layout)

    def connection_spec(self) -> AovpnConnectionSpec:
        return AovpnConnectionSpec(
            profile_name=self.name_input.text().strip(),
            profile_xml=Path(self.xml_input.text().strip()).read_text(encoding="utf-8-sig"),
            device_tunnel=self.device_checkbox.isChecked(),
            user_sid="" if self.device_checkbox.isChecked() else self.sid_input.text().strip(),
        )

    def _browse(self) -> None:
        path, _ = QFileDialog.getOpenFileName(self, "Select ProfileXML", "", "XML files (*.xml);;All files (*)")
        if path:
            self.xml_input.setText(path)
            if not self.name_input.text().strip():
                self.name_input.setText(Path(path).stem)

    def accept(self) -> None:
        if not self.name_input.text().strip():
            QMessageBox.warning(self, "Validation", "Name is required.")
            return
        if not Path(self.xml_input.text().strip()).is_file():
            QMessageBox.warning(self, "Validation", "Select an existing ProfileXML file.")
            return
        super().accept()


class TestConnectionDialog(QDialog):
    def __init__(self, parent: Optional[QWidget] = None) -> None:
        super().__init__(parent)
        self.setWindowTitle("New Test Connection")
        self.setWindowIcon(app_logo_icon())

        self.name_input = QLineEdit("AOVPN Test")
        self.server_input = QLineEdit()
        self.auth_combo = QComboBox()
        self.auth_combo.addItems(["MachineCertificate", "Eap"])
        self.dns_suffix_input = QLineEdit()
        self.all_users_checkbox = QCheckBox("All users (Admin)")
        self.all_users_checkbox.setChecked(True)
        self.connect_checkbox = QCheckBox("Connect after creating")
        self.connect_checkbox.setChecked(True)

        form_layout = QFormLayout()
        form_layout.addRow("Name:", self.name_input)
        form_layout.addRow("Server Address:", self.server_input)
        form_layout.addRow("Authentication:", self.auth_combo)
        form_layout.addRow("DNS Suffix:", self.dns_suffix_input)
        form_layout.addRow("", self.all_users_checkbox)
        form_layout.addRow("", self.connect_checkbox)
        _with_buttons(self, form_layout)

    def connection_spec(self) -> TestConnectionSpec:
        return TestConnectionSpec(
            name=self.name_input.text().strip(),
            server_address=self.server_input.text().strip(),
            authentication=self.auth_combo.currentText(),
            all_users=self.all_users_checkbox.isChecked(),
            dns_suffix=self.dns_suffix_input.text().strip(),
        )

    def connect_after(self) -> bool:
        return self.connect_checkbox.isChecked()

    def accept(self) -> None:
        if not self.name_input.text().strip():
            QMessageBox.warning(self, "Validation", "Name is required.")
            return
        if not self.server_input.text().strip():
            QMessageBox.warning(self, "Validation", "Server address is required.")
            return
        super().accept()


class TlsCertificateDialog(QDialog):
    def __init__(self, parent: Optional[QWidget] = None, host: str = "") -> None:
        super().__init__(parent)
        self.setWindowTitle("Fetch TLS Certificate")
        self.setWindowIcon(app_logo_icon())

        self.host_input = QLineEdit(host)
        self.port_input = QSpinBox()
        self.port_input.setRange(1, 65535)
        self.port_input.setValue(443)
        self.sni_input = QLineEdit()
        self.sni_input.setPlaceholderText("Same as host")

        form_layout = QFormLayout()
        form_layout.addRow("Host:", self.host_input)
        form_layout.addRow("Port:", self.port_input)
        form_layout.addRow("Server Name:", self.sni_input)
        _with_buttons(self, form_layout)

    def target(self) -> tuple[str, int, Optional[str]]:
        return (
            self.host_input.text().strip(),
            self.port_input.value(),
            self.sni_input.text().strip() or None,
        )

    def accept(self) -> None:
        if not self.host_input.text().strip():
            QMessageBox.warning(self, "Validation", "Host is required.")
            return
        super().accept()
