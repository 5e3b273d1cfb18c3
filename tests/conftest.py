"""Shared fixtures for the exporter tests."""

import logging

import pytest
import yaml

from haproxy_exporter import (
    METRICS_BY_NAME, ProgramConfig, ProgramLogger, ProgramSource
)

HEADER = (
    "# pxname,svname,qcur,qmax,scur,smax,slim,stot,bin,bout,dreq,dresp,ereq,econ,"
    "eresp,wretr,wredis,status,weight,act,bck,chkfail,chkdown,lastchg,downtime,"
    "qlimit,pid,iid,sid,throttle,lbtot,tracked,type,rate,rate_lim,rate_max,"
    "check_status,check_code,check_duration,hrsp_1xx,hrsp_2xx,hrsp_3xx,hrsp_4xx,"
    "hrsp_5xx,hrsp_other,hanafail,req_rate,req_rate_max,req_tot,cli_abrt,srv_abrt,"
    "comp_in,comp_out,comp_byp,comp_rsp,lastsess,last_chk,last_agt,qtime,ctime,"
    "rtime,ttime,"
)


def _stats_line(pxname="web", svname="FRONTEND", type_code="0", status="OPEN",
                fields=62, **values) -> str:
    row = [""] * fields
    row[0], row[1], row[17], row[32] = pxname, svname, status, type_code
    for name, value in values.items():
        row[METRICS_BY_NAME[name].index] = str(value)
    # HAProxy terminates every record with a comma
    return ",".join(row) + ","


@pytest.fixture
def stats_line():
    return _stats_line


@pytest.fixture
def report(stats_line):
    """A small stats report with a frontend, a backend and a server."""
    return "\n".join([
        HEADER,
        stats_line("web", "FRONTEND", "0", "OPEN", scur=5, smax=9, stot=120),
        stats_line("app", "srv1", "2", "UP 1/3", scur=2, weight=1, check_duration=3),
        stats_line("app", "BACKEND", "1", "DOWN", scur=2, weight=1),
        "",
    ])


@pytest.fixture
def logger():
    logger = ProgramLogger.get_logger("haproxy_exporter.tests")
    logger.setLevel(logging.DEBUG)
    return logger


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Keep home and working directory config files out of the tests."""
    home = tmp_path / "home"
    work = tmp_path / "work"
    home.mkdir()
    work.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(work)
    for key in ProgramConfig.ENV_OVERRIDES:
        monkeypatch.delenv(f"{ProgramConfig.ENV_PREFIX}{key.upper()}", raising=False)
    monkeypatch.delenv("INVOCATION_ID", raising=False)
    return tmp_path


@pytest.fixture
def load_config(isolated_env, logger):
    """Write a config file and load it the way the service does."""
    def _load(content, overrides=None):
        path = isolated_env / "exporter.yml"
        path.write_text(yaml.safe_dump(content))
        config = ProgramConfig(ProgramSource(config_file=path))
        config.read(overrides=overrides)
        config.logger = logger
        config.initialize()
        return config
    return _load


@pytest.fixture
def header():
    return HEADER
