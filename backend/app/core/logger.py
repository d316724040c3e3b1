import logging
import sys
from pathlib import Path


class LoggerConfig:
    """Configuration for logger singleton"""

    def __init__(self, name: str = "aliasmessenger"):
        self.logger = logging.getLogger(name)
        if not self.logger.handlers:
            self._setup_logging(name)

    def _setup_logging(self, name: str):
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        )

        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        self.logger.addHandler(console)

        file_handler = logging.FileHandler(Path(f"{name}.log"))
        file_handler.setFormatter(formatter)
        self.logger.addHandler(file_handler)

        self.logger.setLevel(logging.INFO)

    def get_logger(self):
        return self.logger


logger_config = LoggerConfig()
logger = logger_config.get_logger()
