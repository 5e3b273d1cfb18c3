"""Tests for configuration loading and validation."""

import pytest
import yaml

from haproxy_exporter import (
    STATS_METRICS, ConfigurationError, ProgramConfig, ProgramSource
)

SOURCES = [{"uri": "unix:///run/haproxy/admin.sock"}]


def test_defaults_apply(load_config):
    config = load_config({"sources": SOURCES})

    assert config.listen == "127.0.0.1:9100"
    assert config.listen_address == ("127.0.0.1", 9100)
    assert config.scan_duration == 1000
    assert config.max_concurrent == 50
    assert config.timeout == 5.0
    assert config.metric_specs == STATS_METRICS
    assert config.snapshot_path is None
    assert config.failure_threshold == ProgramConfig.DEFAULT_FAILURE_THRESHOLD


def test_missing_config_file_is_fatal(isolated_env):
    config = ProgramConfig(ProgramSource(config_file=isolated_env / "nope.yml"))
    with pytest.raises(ConfigurationError):
        config.read()


def test_working_directory_default_is_merged_under_config_file(isolated_env, load_config):
    (isolated_env / "work" / "default.yml").write_text(yaml.safe_dump({
        "max_concurrent": 9,
        "logging": {"level": "DEBUG", "file_level": "INFO"},
    }))
    config = load_config({"sources": SOURCES, "logging": {"file_level": "WARNING"}})

    assert config.max_concurrent == 9
    assert config.logging["level"] == "DEBUG"
    assert config.logging["file_level"] == "WARNING"
    assert config.logging["backup_count"] == ProgramConfig.DEFAULT_LOG_BACKUP_COUNT


def test_environment_overrides_file(load_config, monkeypatch):
    monkeypatch.setenv("HAEXPORT_MAX_CONCURRENT", "7")
    monkeypatch.setenv("HAEXPORT_LISTEN", "0.0.0.0:9200")
    config = load_config({"sources": SOURCES, "max_concurrent": 3})

    assert config.max_concurrent == 7
    assert config.listen_address == ("0.0.0.0", 9200)


def test_invalid_environment_value_is_fatal(load_config, monkeypatch):
    monkeypatch.setenv("HAEXPORT_SCAN_DURATION", "fast")
    with pytest.raises(ConfigurationError):
        load_config({"sources": SOURCES})


def test_override_wins_over_environment(load_config, monkeypatch):
    monkeypatch.setenv("HAEXPORT_LISTEN", "0.0.0.0:9200")
    config = load_config({"sources": SOURCES}, overrides={"listen": "127.0.0.1:9300"})
    assert config.listen == "127.0.0.1:9300"


@pytest.mark.parametrize("content", [
    {"listen": "9100"},
    {"listen": "host:notaport"},
    {"scan_duration": 0},
    {"max_concurrent": -1},
    {"timeout": 0},
    {"snapshot": {"period_sec": 10}},
    {"health": {"failure_threshold": 0}},
    {"labels": {"bad-name": "x"}},
])
def test_invalid_settings_are_fatal(load_config, content):
    with pytest.raises(ConfigurationError):
        load_config(dict(content, sources=SOURCES))


def test_invalid_sources_are_skipped(load_config):
    config = load_config({"sources": [
        {"uri": "ftp://lb.example/stats"},
        {"labels": {"a": "b"}},
        {"uri": "http://lb.example/stats;csv", "labels": {"pxname": "x"}},
        {"uri": "http://lb.example/stats;csv", "labels": {"dc": 3}},
    ]})

    assert [s.uri for s in config.sources] == ["http://lb.example/stats;csv"]
    assert config.sources[0].labels == (("dc", "3"), ("i", "0"))
    assert config._validation_stats["sources"] == {"valid": 1, "invalid": 3}


def test_no_valid_sources_is_fatal(load_config):
    with pytest.raises(ConfigurationError):
        load_config({"sources": [{"uri": "gopher://lb.example"}]})


def test_include_loads_sources_with_provenance(isolated_env, load_config):
    included = isolated_env / "sources.d"
    included.mkdir()
    (included / "a.yml").write_text(yaml.safe_dump([
        {"uri": "http://a.example/stats;csv", "labels": {"site": "a"}},
    ]))
    (included / "b.yml").write_text(yaml.safe_dump({"sources": [
        {"uri": "file:///var/lib/haproxy/b.csv"},
    ]}))

    config = load_config({"sources": SOURCES + [{"include": str(included / "*.yml")}]})

    assert [s.uri for s in config.sources] == [
        "unix:///run/haproxy/admin.sock",
        "http://a.example/stats;csv",
        "file:///var/lib/haproxy/b.csv",
    ]
    assert config.sources[0].origin is None
    assert config.sources[1].origin == str(included / "a.yml")


def test_metric_allow_list(load_config):
    config = load_config({"sources": SOURCES, "metrics": ["status", "nonsense", "scur"]})

    assert [spec.name for spec in config.metric_specs] == ["scur", "status"]
    assert config._validation_stats["metrics"] == {"valid": 2, "invalid": 1}


def test_empty_allow_list_is_fatal(load_config):
    with pytest.raises(ConfigurationError):
        load_config({"sources": SOURCES, "metrics": ["nonsense"]})


def test_snapshot_and_labels(load_config, isolated_env):
    config = load_config({
        "sources": SOURCES,
        "labels": {"host": "lb-01", "rack": 4},
        "snapshot": {"path": str(isolated_env / "metrics.prom")},
    })

    assert config.labels == {"host": "lb-01", "rack": "4"}
    assert config.snapshot_path == isolated_env / "metrics.prom"
    assert config.snapshot_period == ProgramConfig.DEFAULT_SNAPSHOT_PERIOD


def test_sources_are_labelled_with_their_position(load_config):
    config = load_config({"sources": [
        {"uri": "unix:///run/haproxy/a.sock"},
        {"uri": "unix:///run/haproxy/b.sock", "labels": {"i": "edge"}},
        {"uri": "unix:///run/haproxy/c.sock"},
    ]})

    assert [s.label_dict()["i"] for s in config.sources] == ["0", "edge", "2"]


def test_colliding_label_sets_are_skipped(load_config):
    config = load_config({"sources": [
        {"uri": "unix:///run/haproxy/a.sock"},
        {"uri": "unix:///run/haproxy/b.sock", "labels": {"i": "0"}},
    ]})

    assert [s.uri for s in config.sources] == ["unix:///run/haproxy/a.sock"]
    assert config._validation_stats["sources"] == {"valid": 1, "invalid": 1}
