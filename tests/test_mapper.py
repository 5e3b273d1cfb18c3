"""Tests for mapping stats rows to samples."""

import pytest

from haproxy_exporter import (
    METRICS_BY_NAME, STATS_METRICS, map_row, parse, recode_status, recode_type
)


def _row(stats_line, **kwargs):
    return list(parse([stats_line(**kwargs)]))[0]


def _by_name(samples):
    return {sample.name: sample for sample in samples}


@pytest.mark.parametrize("status", ["UP", "UP 1/3", "UP 2/3", "OPEN", "no check"])
def test_serving_statuses_recode_to_one(status):
    assert recode_status(status) == 1


@pytest.mark.parametrize("status", ["DOWN", "NOLB", "MAINT", "DOWN 1/2", "up", "garbage"])
def test_other_statuses_recode_to_zero(status):
    assert recode_status(status) == 0


@pytest.mark.parametrize("code,expected", [
    ("0", "frontend"),
    ("1", "backend"),
    ("2", "server"),
    ("3", "listen"),
    ("4", ""),
    ("-1", ""),
    ("", ""),
    ("x", ""),
])
def test_type_recoding(code, expected):
    assert recode_type(code) == expected


def test_labels_combine_row_and_static_labels(stats_line):
    row = _row(stats_line, pxname="app", svname="srv1", type_code="2", scur=3)
    samples, failures = map_row(row, STATS_METRICS, {"cluster": "edge"})

    assert failures == 0
    scur = _by_name(samples)["scur"]
    assert scur.label_dict() == {
        "cluster": "edge", "pxname": "app", "svname": "srv1", "type": "server"
    }
    assert scur.value == 3


def test_status_sample_uses_recoded_value(stats_line):
    samples, _ = map_row(_row(stats_line, status="UP 2/3"), STATS_METRICS)
    assert _by_name(samples)["status"].value == 1

    samples, _ = map_row(_row(stats_line, status="MAINT"), STATS_METRICS)
    assert _by_name(samples)["status"].value == 0


def test_empty_fields_are_absent_without_failure(stats_line):
    samples, failures = map_row(_row(stats_line, scur=1), STATS_METRICS)
    names = set(_by_name(samples))
    assert names == {"scur", "status"}
    assert failures == 0


def test_non_numeric_field_is_counted_and_skipped(stats_line):
    row = _row(stats_line, scur="lots", smax=4)
    samples, failures = map_row(row, STATS_METRICS)
    names = set(_by_name(samples))
    assert "scur" not in names
    assert "smax" in names
    assert failures == 1


def test_fields_beyond_row_length_are_absent(stats_line):
    row = _row(stats_line, fields=52, scur=1)
    row[50] = "7"
    samples, failures = map_row(row, STATS_METRICS)
    names = set(_by_name(samples))
    assert "srv_abrt" in names
    assert "ttime" not in names
    assert failures == 0


def test_allow_list_restricts_metrics(stats_line):
    row = _row(stats_line, scur=1, smax=2, stot=3)
    specs = [METRICS_BY_NAME["smax"]]
    samples, _ = map_row(row, specs)
    assert [sample.name for sample in samples] == ["smax"]


def test_unknown_type_gives_empty_type_label(stats_line):
    samples, _ = map_row(_row(stats_line, type_code="9", scur=1), STATS_METRICS)
    assert _by_name(samples)["scur"].label_dict()["type"] == ""
