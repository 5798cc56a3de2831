from __future__ import annotations

import logging


def silence_httpx_logs() -> None:
    for logger_name in ("httpx", "httpcore", "web3.providers", "web3.manager"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)
