from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from ingresslb.src.config import ConfigError, load_config
from ingresslb.src.controller import LoadBalancerController
from ingresslb.src.health import start_health_server
from ingresslb.src.kube import build_clients, load_kube_configuration
from ingresslb.src.metrics import METRICS
from ingresslb.src.sink import FileConfigSink

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"-----BEGIN ([A-Z ]*)PRIVATE KEY-----.*?-----END \1PRIVATE KEY-----", re.DOTALL),
        "[REDACTED PRIVATE KEY]",
    ),
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level, logging.INFO))


def main() -> None:
    """Controller entrypoint: configure logging, wire the controller and run until signalled."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO").upper())
    logger = logging.getLogger(__name__)

    try:
        config = load_config()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        raise SystemExit(2) from exc
    logging.root.setLevel(getattr(logging, config.log_level, logging.INFO))

    build_info = {
        "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
        "revision": os.getenv("GIT_SHA", "unknown"),
    }
    METRICS.build_info.info(build_info)

    load_kube_configuration()
    core_api, networking_api = build_clients()

    controller = LoadBalancerController(
        config=config,
        core_api=core_api,
        networking_api=networking_api,
        sink=FileConfigSink(config.proxy_conf_dir, reload_command=config.proxy_reload_command),
    )
    health_server = start_health_server(
        ready=controller.ready,
        port=config.health_port,
        build_info=build_info,
        stop=controller.stop,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        controller.run_forever(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()
    logger.info("Exiting")


if __name__ == "__main__":
    main()
