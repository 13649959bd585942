import logging

from gsheets_mcp.config import load_runtime_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"


def build_logger(name: str) -> logging.Logger:
    # stdout carries the MCP stdio transport, so log to a file only.
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    settings = load_runtime_settings()
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.DEBUG))
    logger.propagate = False
    file_handler = logging.FileHandler(settings.log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(file_handler)
    return logger
