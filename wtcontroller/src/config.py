from __future__ import annotations

import os
from dataclasses import dataclass

from wtcontroller.src.informer import parse_selector

SERVICE_COMBINER = "service-combiner"
NAMESPACE_RBAC = "namespace-rbac"
KNOWN_CONTROLLERS = (SERVICE_COMBINER, NAMESPACE_RBAC)


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(name: str, default: float, *, minimum: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be a number") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    return value


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_selector(name: str, default: str) -> str:
    selector = os.getenv(name, default)
    if not parse_selector(selector):
        raise ValueError(f"{name} must contain at least one key=value pair, got: {selector!r}")
    return selector


@dataclass(frozen=True)
class Settings:
    """Process configuration for both controllers.

    Environment variables (with defaults):
        ``RESYNC_PERIOD_SECONDS`` -- informer resync period, ``0`` disables (``600``).
        ``HEALTH_PORT`` -- health/metrics listener port (``8080``).
        ``LOG_LEVEL`` -- root log level (``INFO``).
        ``SERVICE_SELECTOR`` -- source Service filter (``creator=Wutong,service_type=inner``).
        ``NAMESPACE_SELECTOR`` -- managed namespace filter (``app.kubernetes.io/managed-by=wutong``).
        ``SYSTEM_NAMESPACE`` -- namespace holding the dev service accounts (``ambassador``).
        ``ENABLED_CONTROLLERS`` -- comma separated controller names (both).
        ``RETRY_BASE_DELAY_SECONDS`` / ``RETRY_MAX_DELAY_SECONDS`` -- queue backoff (``1`` / ``30``).
        ``DEBUG_ENDPOINTS_ENABLED`` -- expose ``/debug/threads`` (``false``).
    """

    resync_period_seconds: int = 600
    health_port: int = 8080
    log_level: str = "INFO"
    service_selector: str = "creator=Wutong,service_type=inner"
    namespace_selector: str = "app.kubernetes.io/managed-by=wutong"
    system_namespace: str = "ambassador"
    enabled_controllers: tuple[str, ...] = KNOWN_CONTROLLERS
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    debug_endpoints_enabled: bool = False

    @classmethod
    def from_env(cls) -> Settings:
        system_namespace = os.getenv("SYSTEM_NAMESPACE", "ambassador")
        if not system_namespace.strip():
            raise ValueError("SYSTEM_NAMESPACE must be a non-empty string")

        raw_enabled = os.getenv("ENABLED_CONTROLLERS", ",".join(KNOWN_CONTROLLERS))
        enabled = tuple(part.strip() for part in raw_enabled.split(",") if part.strip())
        if not enabled:
            raise ValueError("ENABLED_CONTROLLERS must name at least one controller")
        unknown = [name for name in enabled if name not in KNOWN_CONTROLLERS]
        if unknown:
            raise ValueError(
                f"ENABLED_CONTROLLERS contains unknown controller(s): {', '.join(unknown)}"
            )

        retry_base = env_float("RETRY_BASE_DELAY_SECONDS", 1.0, minimum=0.001)
        retry_max = env_float("RETRY_MAX_DELAY_SECONDS", 30.0, minimum=0.001)
        if retry_max < retry_base:
            raise ValueError(
                "RETRY_MAX_DELAY_SECONDS must be >= RETRY_BASE_DELAY_SECONDS"
            )

        return cls(
            resync_period_seconds=env_int("RESYNC_PERIOD_SECONDS", 600, minimum=0),
            health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            service_selector=_env_selector(
                "SERVICE_SELECTOR", "creator=Wutong,service_type=inner"
            ),
            namespace_selector=_env_selector(
                "NAMESPACE_SELECTOR", "app.kubernetes.io/managed-by=wutong"
            ),
            system_namespace=system_namespace.strip(),
            enabled_controllers=enabled,
            retry_base_delay_seconds=retry_base,
            retry_max_delay_seconds=retry_max,
            debug_endpoints_enabled=env_bool("DEBUG_ENDPOINTS_ENABLED", default=False),
        )
