from datetime import datetime, timedelta

import pytest

from conftest import NOW, failed_login_lines, xrdp_line
from xrdpguard.log_parser import (
    CONNECTION,
    LOGIN_FAILURE,
    LOGIN_SUCCESS,
    RESTART,
    LogFormatError,
    LoginAttempt,
    Outcome,
    classify_line,
    correlate,
    extract_connection,
    format_attempt,
    parse_log,
)


def test_classify_line_rules():
    assert classify_line("[20240105-10:00:00] [INFO ] starting xrdp with pid 812") is RESTART
    assert classify_line("[20240105-10:00:01] [INFO ] connection received from 10.0.0.5 port 1234") is CONNECTION
    assert classify_line("[20240105-10:00:02] [INFO ] login failed for user: bob") is LOGIN_FAILURE
    assert classify_line("[20240105-10:00:02] [ERROR] xrdp_sec_incoming: xrdp_iso_incoming failed") is LOGIN_FAILURE
    assert classify_line("[20240105-10:00:02] [INFO ] login successful for user bob on display 10") is LOGIN_SUCCESS
    assert classify_line("[20240105-10:00:03] [INFO ] Using default X.509 certificate") is None


def test_extract_connection():
    ts, ip = extract_connection("[20240105-10:15:00] [INFO ] connection received from ::ffff:10.0.0.5 port 51234")
    assert ts == datetime(2024, 1, 5, 10, 15, 0)
    # Literal kept as logged; normalization happens at the firewall boundary.
    assert ip == "::ffff:10.0.0.5"


def test_paired_lines_give_one_attempt_each():
    lines = [
        xrdp_line(NOW, "connection received from 10.0.0.5 port 1"),
        xrdp_line(NOW + timedelta(seconds=1), "login failed for user: admin"),
        xrdp_line(NOW + timedelta(seconds=10), "connection received from 10.0.0.6 port 2"),
        xrdp_line(NOW + timedelta(seconds=11), "login successful for user bob on display 10"),
        xrdp_line(NOW + timedelta(seconds=20), "connection received from 10.0.0.5 port 3"),
        xrdp_line(NOW + timedelta(seconds=21), "login failed for user: root"),
    ]
    attempts = correlate(lines)
    assert attempts == [
        LoginAttempt(NOW, "10.0.0.5", Outcome.FAILURE),
        LoginAttempt(NOW + timedelta(seconds=10), "10.0.0.6", Outcome.SUCCESS),
        LoginAttempt(NOW + timedelta(seconds=20), "10.0.0.5", Outcome.FAILURE),
    ]


def test_open_connection_at_end_of_input_is_a_failure():
    attempts = correlate([xrdp_line(NOW, "connection received from 10.0.0.9 port 1")])
    assert attempts == [LoginAttempt(NOW, "10.0.0.9", Outcome.FAILURE)]


def test_superseded_connection_is_a_failure():
    later = NOW + timedelta(seconds=3)
    lines = [
        xrdp_line(NOW, "connection received from 10.0.0.1 port 1"),
        xrdp_line(later, "connection received from 10.0.0.2 port 2"),
        xrdp_line(later, "login successful for user bob"),
    ]
    attempts = correlate(lines)
    assert [(a.address, a.outcome) for a in attempts] == [
        ("10.0.0.1", Outcome.FAILURE),
        ("10.0.0.2", Outcome.SUCCESS),
    ]


def test_restart_discards_earlier_records():
    lines = failed_login_lines("10.0.0.5", NOW, 3)
    lines.append(xrdp_line(NOW + timedelta(minutes=1), "connection received from 10.0.0.7 port 9"))
    lines.append(xrdp_line(NOW + timedelta(minutes=2), "starting xrdp with pid 4242"))
    lines += failed_login_lines("10.0.0.8", NOW + timedelta(minutes=3), 1)
    attempts = correlate(lines)
    assert [a.address for a in attempts] == ["10.0.0.8"]


def test_outcome_without_connection_is_ignored():
    lines = [
        xrdp_line(NOW, "login failed for user: admin"),
        xrdp_line(NOW, "login successful for user bob"),
    ]
    assert correlate(lines) == []


def test_outcome_is_used_once():
    lines = [
        xrdp_line(NOW, "connection received from 10.0.0.5 port 1"),
        xrdp_line(NOW, "login successful for user bob"),
        xrdp_line(NOW, "login failed for user: bob"),
    ]
    assert [a.outcome for a in correlate(lines)] == [Outcome.SUCCESS]


def test_aborted_handshake_counts_as_failure():
    lines = [
        xrdp_line(NOW, "connection received from 2001:db8::7 port 1"),
        xrdp_line(NOW, "xrdp_sec_incoming: xrdp_iso_incoming failed", level="ERROR"),
    ]
    assert correlate(lines) == [LoginAttempt(NOW, "2001:db8::7", Outcome.FAILURE)]


def test_bad_timestamp_aborts_with_line_number():
    lines = [
        xrdp_line(NOW, "starting xrdp"),
        "[2024-01-05 10:15] [INFO ] connection received from 10.0.0.5 port 1",
    ]
    with pytest.raises(LogFormatError) as exc:
        correlate(lines)
    assert exc.value.line_number == 2
    assert "timestamp" in str(exc.value)


def test_missing_port_section_aborts():
    with pytest.raises(LogFormatError):
        correlate([xrdp_line(NOW, "connection received from 10.0.0.5")])


def test_parse_log_reads_file(write_log):
    path = write_log(failed_login_lines("10.0.0.5", NOW, 2))
    attempts = parse_log(path)
    assert len(attempts) == 2
    assert all(a.failed for a in attempts)


def test_parse_log_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        parse_log(tmp_path / "nope.log")


def test_format_attempt():
    attempt = LoginAttempt(datetime(2024, 1, 5, 10, 15, 0), "10.0.0.5", Outcome.FAILURE)
    assert format_attempt(attempt) == "2024-01-05 10:15:00.000\t10.0.0.5\tFAIL"
    ok = LoginAttempt(datetime(2024, 1, 5, 10, 15, 0), "::1", Outcome.SUCCESS)
    assert format_attempt(ok).endswith("\t::1\tSUCCESS")
