import logging
from colorama import Fore, Style, init as colorama_init


class ColorFormatter(logging.Formatter):
    """
    A logging formatter that adds color to log messages based on their level.
    """
    COLORS = {
        logging.DEBUG: Fore.CYAN,
        logging.INFO: Fore.GREEN,
        logging.WARNING: Fore.YELLOW,
        logging.ERROR: Fore.RED,
        logging.CRITICAL: Fore.MAGENTA + Style.BRIGHT,
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelno, "")  # Default to no color if level not mapped
        message = super().format(record)
        return f"{color}{message}{Style.RESET_ALL}"


def setup_logging(level: str = "INFO",
                  fmt: str = "%(asctime)s - %(name)s - %(levelname)s: %(message)s") -> logging.Logger:
    """
    Replaces the root logger's handlers with one colorized console handler.

    Args:
        level: Level name, e.g. "INFO" or "DEBUG". Unknown names fall back to INFO.
        fmt: Format string passed to the ColorFormatter.

    Returns:
        The configured root logger.
    """
    # autoreset=True ensures that color changes are reset after each print statement.
    colorama_init(autoreset=True)

    handler = logging.StreamHandler()
    handler.setFormatter(ColorFormatter(fmt))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    return root_logger
