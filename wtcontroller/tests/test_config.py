from __future__ import annotations

import pytest

from wtcontroller.src.config import KNOWN_CONTROLLERS, Settings, env_bool, env_float, env_int

_SETTINGS_ENV = (
    "RESYNC_PERIOD_SECONDS",
    "HEALTH_PORT",
    "LOG_LEVEL",
    "SERVICE_SELECTOR",
    "NAMESPACE_SELECTOR",
    "SYSTEM_NAMESPACE",
    "ENABLED_CONTROLLERS",
    "RETRY_BASE_DELAY_SECONDS",
    "RETRY_MAX_DELAY_SECONDS",
    "DEBUG_ENDPOINTS_ENABLED",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)


class TestEnvHelpers:
    def test_env_int_default_when_unset(self) -> None:
        assert env_int("HEALTH_PORT", 8080) == 8080

    def test_env_int_rejects_non_integer(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HEALTH_PORT", "eighty")
        with pytest.raises(ValueError, match="HEALTH_PORT must be an integer"):
            env_int("HEALTH_PORT", 8080)

    def test_env_int_enforces_bounds(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HEALTH_PORT", "0")
        with pytest.raises(ValueError, match="HEALTH_PORT must be >= 1, got: 0"):
            env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)

    def test_env_float_rejects_non_number(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RETRY_BASE_DELAY_SECONDS", "soon")
        with pytest.raises(ValueError, match="must be a number"):
            env_float("RETRY_BASE_DELAY_SECONDS", 1.0)

    @pytest.mark.parametrize("value", ["true", "True", "1", "yes", "on", "  true  "])
    def test_env_bool_truthy_values(self, monkeypatch: pytest.MonkeyPatch, value: str) -> None:
        monkeypatch.setenv("DEBUG_ENDPOINTS_ENABLED", value)
        assert env_bool("DEBUG_ENDPOINTS_ENABLED") is True

    @pytest.mark.parametrize("value", ["false", "0", "no", "off", ""])
    def test_env_bool_falsy_values(self, monkeypatch: pytest.MonkeyPatch, value: str) -> None:
        monkeypatch.setenv("DEBUG_ENDPOINTS_ENABLED", value)
        assert env_bool("DEBUG_ENDPOINTS_ENABLED", default=True) is False

    def test_env_bool_default_when_unset(self) -> None:
        assert env_bool("DEBUG_ENDPOINTS_ENABLED", default=True) is True


class TestSettingsFromEnv:
    def test_defaults(self) -> None:
        settings = Settings.from_env()

        assert settings == Settings()
        assert settings.resync_period_seconds == 600
        assert settings.service_selector == "creator=Wutong,service_type=inner"
        assert settings.namespace_selector == "app.kubernetes.io/managed-by=wutong"
        assert settings.system_namespace == "ambassador"
        assert settings.enabled_controllers == KNOWN_CONTROLLERS

    def test_custom_values(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RESYNC_PERIOD_SECONDS", "0")
        monkeypatch.setenv("HEALTH_PORT", "9000")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("SYSTEM_NAMESPACE", " dev-tools ")
        monkeypatch.setenv("ENABLED_CONTROLLERS", "namespace-rbac")
        monkeypatch.setenv("RETRY_BASE_DELAY_SECONDS", "0.5")
        monkeypatch.setenv("RETRY_MAX_DELAY_SECONDS", "10")
        monkeypatch.setenv("SERVICE_SELECTOR", "creator=Wutong")

        settings = Settings.from_env()

        assert settings.resync_period_seconds == 0
        assert settings.health_port == 9000
        assert settings.log_level == "DEBUG"
        assert settings.system_namespace == "dev-tools"
        assert settings.enabled_controllers == ("namespace-rbac",)
        assert settings.retry_base_delay_seconds == 0.5
        assert settings.retry_max_delay_seconds == 10.0
        assert settings.service_selector == "creator=Wutong"

    def test_rejects_empty_system_namespace(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SYSTEM_NAMESPACE", "  ")
        with pytest.raises(ValueError, match="SYSTEM_NAMESPACE must be a non-empty string"):
            Settings.from_env()

    def test_rejects_empty_controller_list(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ENABLED_CONTROLLERS", " , ")
        with pytest.raises(ValueError, match="must name at least one controller"):
            Settings.from_env()

    def test_rejects_unknown_controller(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ENABLED_CONTROLLERS", "service-combiner,ingress-sync")
        with pytest.raises(ValueError, match="unknown controller\\(s\\): ingress-sync"):
            Settings.from_env()

    def test_rejects_max_delay_below_base(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RETRY_BASE_DELAY_SECONDS", "5")
        monkeypatch.setenv("RETRY_MAX_DELAY_SECONDS", "1")
        with pytest.raises(ValueError, match="RETRY_MAX_DELAY_SECONDS must be >="):
            Settings.from_env()

    def test_rejects_negative_resync_period(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RESYNC_PERIOD_SECONDS", "-1")
        with pytest.raises(ValueError, match="RESYNC_PERIOD_SECONDS must be >= 0"):
            Settings.from_env()

    def test_rejects_selector_without_pairs(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("NAMESPACE_SELECTOR", "managed")
        with pytest.raises(ValueError, match="NAMESPACE_SELECTOR must contain"):
            Settings.from_env()
