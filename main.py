# main.py  - launches the soldering robot operator console

from __future__ import annotations
import sys
import argparse
import logging

from PySide6 import QtWidgets

from solderbot.core.config import CONFIG_FILE, load_config
from solderbot.core.session import ConsoleSession
from solderbot.ui.main_window import MainWindow
from solderbot.ui.styling import STYLE_SHEET


def main(argv=None):
    parser = argparse.ArgumentParser(description="Soldering robot operator console")
    parser.add_argument("--config", default=CONFIG_FILE, help="JSON config file")
    parser.add_argument("--simulated", action="store_true", help="offer the simulated controller port")
    parser.add_argument("--log", default="solderbot.log", help="log file")
    args = parser.parse_args(argv)

    logging.basicConfig(
        filename=args.log,
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        filemode="a",
    )
    logging.info("=== Console Started ===")

    cfg = load_config(args.config)
    if args.simulated:
        cfg["simulated"] = True

    app = QtWidgets.QApplication(sys.argv[:1])
    app.setApplicationName("Solderbot")
    app.setStyle("Fusion")
    app.setStyleSheet(STYLE_SHEET)

    session = ConsoleSession(cfg, config_path=args.config)
    win = MainWindow(session, config_path=args.config)
    win.show()
    sys.exit(app.exec())


if __name__ == "__main__":
    main()
