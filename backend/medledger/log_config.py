"""structlog configuration for the API process."""
from __future__ import annotations

import logging
import sys
from typing import Any, MutableMapping

import structlog


REDACTED_KEYS = frozenset(
    {
        "authorization",
        "profile_image_base64",
        "verification_docs_base64",
        "reports_base64",
        "aadhaar_card_base64",
        "hospital_logo_base64",
        "paper_prescription_image_base64",
        "clinical_reports_base64",
    }
)


def drop_sensitive_keys(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in REDACTED_KEYS.intersection(event_dict):
        del event_dict[key]
    return event_dict


def configure_logging(level: str = "DEBUG", json_logs: bool = False) -> None:
    """Route structlog and stdlib loggers through one stdout handler.

    JSON output is meant for production; the console renderer for local runs.
    """

    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        drop_sensitive_keys,
    ]
    final_processor = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=final_processor,
        foreign_pre_chain=pre_chain,
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())
