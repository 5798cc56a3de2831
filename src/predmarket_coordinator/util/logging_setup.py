from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

import structlog

FRIENDLY_EVENT_MAP: dict[str, str] = {
    "session_start": "session started",
    "session_shutdown": "session closed",
    "account_connected": "wallet connected",
    "account_disconnected": "wallet disconnected",
    "markets_loaded": "markets loaded",
    "markets_load_failed": "could not load markets",
    "market_selected": "market selected",
    "order_book_refreshed": "order book refreshed",
    "order_book_discarded": "stale order book dropped",
    "balances_published": "balances updated",
    "balances_stale_read_dropped": "older balance read dropped",
    "funds_request_rejected": "funds request rejected",
    "funds_approve_submitted": "approval sent",
    "funds_approve_confirmed": "approval confirmed",
    "funds_deposit_confirmed": "deposit confirmed",
    "funds_withdraw_confirmed": "withdrawal confirmed",
    "funds_mint_confirmed": "test tokens minted",
    "funds_action_failed": "funds action failed",
    "order_rejected_locally": "order rejected before sending",
    "order_placed": "order placed",
    "order_place_failed": "order placement failed",
    "order_market_lookup_failed": "market lookup failed before placing order",
    "order_cancelled": "order cancelled",
    "order_cancel_failed": "order cancel failed",
    "orders_refreshed": "orders refreshed",
    "poll_started": "polling started",
    "poll_stopped": "polling stopped",
    "poll_failed": "poll failed",
    "poll_skipped_overlap": "poll skipped, previous run still going",
    "poll_result_discarded": "poll result discarded after stop",
    "state_listener_failed": "state listener raised",
    "market_request_retry": "retrying market service request",
}


def _apply_event_style(style: str):
    style_value = (style or "").lower()

    def processor(_: object, __: str, event_dict: dict) -> dict:
        if style_value != "friendly":
            return event_dict
        event = event_dict.get("event")
        if not isinstance(event, str):
            return event_dict
        event_dict.setdefault("event_key", event)
        event_dict["event"] = FRIENDLY_EVENT_MAP.get(event, event.replace("_", " "))
        return event_dict

    return processor


def resolve_log_path(file_path: str | None, now: datetime | None = None) -> str | None:
    """Stamp a log file name so repeated runs never append to one file.

    ``{ts}`` in the template is replaced by the stamp; otherwise the stamp is
    inserted before the suffix.
    """
    if not file_path:
        return None
    moment = now or datetime.now(tz=UTC)
    stamp = moment.astimezone(UTC).strftime("%Y%m%d-%H%M%S")
    if "{ts}" in file_path:
        return file_path.replace("{ts}", stamp)
    path = Path(file_path)
    stamped = path.with_name(f"{path.stem}-{stamp}{path.suffix}")
    return stamped.as_posix()


def configure_logging(
    level: str,
    style: str = "plain",
    console: bool = True,
    file_path: str | None = None,
) -> None:
    level_name = level.upper()
    numeric_level = logging.getLevelNamesMapping().get(level_name, logging.INFO)
    handlers: list[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler())
    resolved = resolve_log_path(file_path)
    if resolved:
        path = Path(resolved)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=numeric_level,
        format="%(message)s",
        handlers=handlers,
        force=True,
    )
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _apply_event_style(style),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
