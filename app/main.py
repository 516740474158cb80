import sys

from PySide6.QtWidgets import QApplication

from aovpn.client import PowerShellClientBackend
from aovpn_gui.main_window import MainWindow
from aovpn_gui.resources import app_logo_icon


def main() -> int:
    if len(sys.argv) > 1:
        from aovpn.cli import main as cli_main

        return cli_main(sys.argv[1:])

    app = QApplication(sys.argv)
    app.setWindowIcon(app_logo_icon())
    backend = PowerShellClientBackend()
    window = MainWindow(backend)
    window.show()
    return app.exec()


if __name__ == "__main__":
    raise SystemExit(main())
