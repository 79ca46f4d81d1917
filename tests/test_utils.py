"""Unit tests for configuration helpers in external_mdns.cli.

Tests cover:
- Boolean parsing (_parse_bool)
- Source list parsing (_parse_sources)
- YAML config file loading (load_config_file)
- Settings precedence (load_settings)
- Settings validation (validate_settings) and main() exit codes
"""

from pathlib import Path

import pytest

from external_mdns.cli import (
    ConfigError,
    Settings,
    _parse_bool,
    _parse_sources,
    load_config_file,
    load_settings,
    main,
    validate_settings,
)

# =============================================================================
# Boolean Parsing Tests
# =============================================================================


def test_parse_bool_none_returns_default() -> None:
    assert _parse_bool(None, default=True) is True
    assert _parse_bool(None, default=False) is False


def test_parse_bool_passes_through_bool() -> None:
    assert _parse_bool(True) is True
    assert _parse_bool(False) is False


@pytest.mark.parametrize("value", ["1", "true", "TRUE", " yes ", "y", "on"])
def test_parse_bool_truthy_strings(value: str) -> None:
    assert _parse_bool(value) is True


@pytest.mark.parametrize("value", ["0", "false", "False", "no", "n", "off", ""])
def test_parse_bool_falsy_strings(value: str) -> None:
    assert _parse_bool(value) is False


def test_parse_bool_invalid_raises() -> None:
    with pytest.raises(ConfigError):
        _parse_bool("maybe")


# =============================================================================
# Source Parsing Tests
# =============================================================================


def test_parse_sources_comma_separated() -> None:
    assert _parse_sources("service, ingress") == ("service", "ingress")


def test_parse_sources_ignores_unknown_and_duplicates() -> None:
    assert _parse_sources(["ingress", "pods", "Ingress", "service"]) == ("ingress", "service")


def test_parse_sources_empty() -> None:
    assert _parse_sources(None) == ()
    assert _parse_sources("") == ()


# =============================================================================
# Config File Tests
# =============================================================================


def test_load_config_file_normalizes_keys(tmp_path: Path) -> None:
    config_file = tmp_path / "external-mdns.yaml"
    config_file.write_text(
        """
sources: [service]
publish-all: true
record_ttl: 30
""",
        encoding="utf-8",
    )

    assert load_config_file(str(config_file)) == {
        "sources": ["service"],
        "publish_all": True,
        "record_ttl": 30,
    }


def test_load_config_file_empty_is_empty_mapping(tmp_path: Path) -> None:
    config_file = tmp_path / "empty.yaml"
    config_file.write_text("", encoding="utf-8")

    assert load_config_file(str(config_file)) == {}


def test_load_config_file_missing_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config_file(str(tmp_path / "missing.yaml"))


def test_load_config_file_non_mapping_raises(tmp_path: Path) -> None:
    config_file = tmp_path / "list.yaml"
    config_file.write_text("- service\n- ingress\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config_file(str(config_file))


def test_load_config_file_invalid_yaml_raises(tmp_path: Path) -> None:
    config_file = tmp_path / "broken.yaml"
    config_file.write_text("sources: [service\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config_file(str(config_file))


# =============================================================================
# Settings Tests
# =============================================================================


def test_load_settings_defaults() -> None:
    settings = load_settings([], environ={"EXTERNAL_MDNS_KUBECONFIG": ""})

    assert settings == Settings()


def test_load_settings_from_environment() -> None:
    settings = load_settings(
        [],
        environ={
            "EXTERNAL_MDNS_SOURCE": "service,ingress",
            "EXTERNAL_MDNS_PUBLISH_ALL": "true",
            "EXTERNAL_MDNS_PUBLISH_INTERNAL": "1",
            "EXTERNAL_MDNS_NAMESPACE": "media",
            "EXTERNAL_MDNS_RECORD_TTL": "60",
            "EXTERNAL_MDNS_PUBLISHER": "LOG",
            "EXTERNAL_MDNS_KUBECONFIG": "/tmp/kubeconfig",
            "LOG_LEVEL": "DEBUG",
        },
    )

    assert settings.sources == ("service", "ingress")
    assert settings.publish_all is True
    assert settings.publish_internal is True
    assert settings.namespace == "media"
    assert settings.record_ttl == 60
    assert settings.publisher == "log"
    assert settings.kubeconfig == "/tmp/kubeconfig"
    assert settings.log_level == "DEBUG"


def test_flags_override_environment() -> None:
    settings = load_settings(
        ["--source", "ingress", "--record-ttl", "10", "--publish-all", "--namespace", "a"],
        environ={
            "EXTERNAL_MDNS_SOURCE": "service",
            "EXTERNAL_MDNS_RECORD_TTL": "60",
            "EXTERNAL_MDNS_PUBLISH_ALL": "false",
            "EXTERNAL_MDNS_NAMESPACE": "b",
        },
    )

    assert settings.sources == ("ingress",)
    assert settings.record_ttl == 10
    assert settings.publish_all is True
    assert settings.namespace == "a"


def test_repeated_source_flags() -> None:
    settings = load_settings(["--source", "service", "--source", "ingress"], environ={})

    assert settings.sources == ("service", "ingress")


def test_environment_overrides_config_file(tmp_path: Path) -> None:
    config_file = tmp_path / "external-mdns.yaml"
    config_file.write_text(
        "sources: [service]\nrecord_ttl: 30\nnamespace: media\nsync_timeout: 5\n",
        encoding="utf-8",
    )

    settings = load_settings(
        ["--config", str(config_file)], environ={"EXTERNAL_MDNS_RECORD_TTL": "45"}
    )

    assert settings.sources == ("service",)
    assert settings.namespace == "media"
    assert settings.record_ttl == 45
    assert settings.sync_timeout == 5.0


def test_config_file_from_environment(tmp_path: Path) -> None:
    config_file = tmp_path / "external-mdns.yaml"
    config_file.write_text("publish_internal: yes\n", encoding="utf-8")

    settings = load_settings([], environ={"EXTERNAL_MDNS_CONFIG": str(config_file)})

    assert settings.publish_internal is True


def test_invalid_integer_raises() -> None:
    with pytest.raises(ConfigError):
        load_settings([], environ={"EXTERNAL_MDNS_RECORD_TTL": "two minutes"})


def test_invalid_boolean_raises() -> None:
    with pytest.raises(ConfigError):
        load_settings([], environ={"EXTERNAL_MDNS_PUBLISH_ALL": "sometimes"})


def test_describe_lists_every_setting() -> None:
    described = Settings(sources=("service",)).describe()

    assert "sources:('service',)" in described
    assert "record_ttl:120" in described
    assert len(described) == 11


# =============================================================================
# Validation Tests
# =============================================================================


def test_validate_settings_ok() -> None:
    assert validate_settings(Settings(sources=("service",))) == []


def test_validate_settings_requires_source() -> None:
    assert validate_settings(Settings()) == ["Specify at least one source to sync records from."]


def test_validate_settings_test_mode_needs_no_source() -> None:
    assert validate_settings(Settings(test=True)) == []


def test_validate_settings_rejects_bad_values() -> None:
    errors = validate_settings(
        Settings(sources=("service",), record_ttl=0, sync_timeout=-1, publisher="avahi")
    )

    assert len(errors) == 3


def test_main_exits_on_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EXTERNAL_MDNS_RECORD_TTL", "abc")

    assert main([]) == 1


def test_main_exits_without_sources(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("EXTERNAL_MDNS_SOURCE", raising=False)
    monkeypatch.delenv("EXTERNAL_MDNS_CONFIG", raising=False)
    monkeypatch.delenv("EXTERNAL_MDNS_RECORD_TTL", raising=False)

    assert main([]) == 1
