from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from wtcontroller.src.combiner import build_service_combiner
from wtcontroller.src.config import NAMESPACE_RBAC, SERVICE_COMBINER, Settings
from wtcontroller.src.health import start_health_server
from wtcontroller.src.kube import build_clients, load_kube_configuration
from wtcontroller.src.metrics import METRICS
from wtcontroller.src.rbac import build_namespace_rbac
from wtcontroller.src.reconciler import Controller

RUNTIME_VERSION = "0.1.0"
CONTROLLER_STOP_TIMEOUT_SECONDS = 45
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|client_key)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation.

    The owning controller is taken from the thread name (``<controller>-worker``
    / ``<controller>-informer``) so interleaved output of both controllers
    can be told apart.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        controller, _, role = (record.threadName or "").rpartition("-")
        if controller and role in {"worker", "informer", "controller"}:
            log_entry["controller"] = controller
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level, logging.INFO))


def build_controllers(settings: Settings) -> list[Controller]:
    core_api, rbac_api = build_clients()
    controllers: list[Controller] = []
    if SERVICE_COMBINER in settings.enabled_controllers:
        controllers.append(build_service_combiner(settings, core_api))
    if NAMESPACE_RBAC in settings.enabled_controllers:
        controllers.append(build_namespace_rbac(settings, core_api, rbac_api))
    return controllers


def main() -> int:
    """Entrypoint: configure logging, start every enabled controller and wait for shutdown.

    Returns a non-zero exit code if a controller stopped on its own (for
    example because its informer was denied access), so the pod restarts.
    """
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    controllers = build_controllers(settings)

    health_server = start_health_server(
        controllers=controllers,
        port=settings.health_port,
        debug_enabled=settings.debug_endpoints_enabled,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    threads: list[threading.Thread] = []
    for controller in controllers:
        thread = threading.Thread(
            target=controller.run,
            kwargs={"shutdown_event": shutdown_event},
            name=f"{controller.name}-controller",
            daemon=True,
        )
        thread.start()
        threads.append(thread)

    unexpected_exit = False
    while not shutdown_event.wait(timeout=1.0):
        stopped = [thread.name for thread in threads if not thread.is_alive()]
        if stopped:
            logger.error(
                "Controller thread(s) exited without a stop signal: %s; terminating process",
                ", ".join(stopped),
            )
            unexpected_exit = True
            shutdown_event.set()

    for thread in threads:
        thread.join(timeout=CONTROLLER_STOP_TIMEOUT_SECONDS)
        if thread.is_alive():
            logger.error(
                "Controller thread %s did not stop within %ss",
                thread.name,
                CONTROLLER_STOP_TIMEOUT_SECONDS,
            )

    health_server.shutdown()
    logger.info("Controllers stopped")
    return 1 if unexpected_exit else 0


if __name__ == "__main__":
    raise SystemExit(main())
