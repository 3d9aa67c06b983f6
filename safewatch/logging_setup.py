import logging
import os


def setup_logging(name: str = "safewatch") -> logging.Logger:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    # httpx логирует каждый запрос на INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logging.getLogger(name)


def mask_address(address: str) -> str:
    value = str(address or "")
    if value.startswith("tg:") or len(value) < 6:
        return value
    return "*" * (len(value) - 4) + value[-4:]
