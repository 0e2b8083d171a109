from __future__ import annotations

import sys

from PySide6.QtWidgets import QApplication

from pdh_upload.ui.main_window import MainWindow


def run_app() -> int:
    app = QApplication(sys.argv)
    w = MainWindow()
    w.show()
    return app.exec()


def main() -> None:
    raise SystemExit(run_app())


if __name__ == "__main__":
    main()
