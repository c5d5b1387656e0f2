import sys
import logging

from PyQt6.QtWidgets import QApplication

from . import config
from .utils.log import setup_logging

logger = logging.getLogger(__name__)


def main():
    """
    Initializes and runs the PyQt6 application: sets up colored logging,
    creates the MainWindow, shows it and starts the Qt event loop.
    """
    setup_logging(config.LOG_LEVEL)
    logger.info("Starting RC Car Remote application...")

    # Imported after logging is configured so module-level log lines are colorized.
    from .ui.main_window import MainWindow

    app = QApplication(sys.argv)

    logger.info("Initializing Main Window...")
    window = MainWindow()
    window.show()

    logger.info("Application event loop started.")
    exit_code = app.exec()
    logger.info(f"Application exited with code {exit_code}.")
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
