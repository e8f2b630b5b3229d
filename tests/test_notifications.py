"""Tests for email alert delivery."""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from kwmon_cli.exceptions import NotificationError
from kwmon_cli.models import AlertEvent
from kwmon_cli.notifications import NotificationManager

ALERTING = {
    "enabled": True,
    "from_address": "kwmon@example.com",
    "to_address": ["team@example.com", "lead@example.com"],
    "subject_prefix": "Keyword Alert",
    "smtp": {"host": "smtp.example.com", "port": 587, "username": "kwmon", "password": "pw",
             "use_tls": True, "use_ssl": False, "timeout": 10},
}


@pytest.fixture
def event():
    return AlertEvent(
        repository_url="https://github.com/acme/widgets",
        branch="main",
        commit_sha="d" * 40,
        author_name="Ada <admin>",
        commit_message="Fix <script> security hole",
        commit_url="https://github.com/acme/widgets/commit/ddd",
        matched_in_message=["security"],
        matched_in_files=[{"filename": "auth.py", "matched_keywords": ["token"]}],
    )


@pytest.fixture
def manager():
    return NotificationManager(ALERTING)


@patch("kwmon_cli.notifications.smtplib.SMTP")
def test_send_alert(mock_smtp, manager, event):
    conn = mock_smtp.return_value

    assert manager.send_alert(event) is True

    mock_smtp.assert_called_once_with("smtp.example.com", 587, timeout=10.0)
    conn.starttls.assert_called_once()
    conn.login.assert_called_once_with("kwmon", "pw")
    msg = conn.send_message.call_args[0][0]
    assert msg["Subject"] == "Keyword Alert: https://github.com/acme/widgets (main)"
    assert msg["To"] == "team@example.com, lead@example.com"
    plain = msg.get_body(preferencelist=("plain",)).get_content()
    html_body = msg.get_body(preferencelist=("html",)).get_content()
    assert "Keywords found: security, token" in plain
    assert "In auth.py: token" in plain
    assert "&lt;script&gt;" in html_body
    conn.quit.assert_called_once()


@patch("kwmon_cli.notifications.smtplib.SMTP_SSL")
def test_implicit_tls(mock_smtp_ssl, event):
    config = dict(ALERTING, smtp=dict(ALERTING["smtp"], use_ssl=True, use_tls=False, port=465))
    NotificationManager(config).send_alert(event)

    mock_smtp_ssl.assert_called_once_with("smtp.example.com", 465, timeout=10.0)
    mock_smtp_ssl.return_value.starttls.assert_not_called()


@patch("kwmon_cli.notifications.time.sleep")
@patch("kwmon_cli.notifications.smtplib.SMTP")
def test_transient_failure_is_retried(mock_smtp, mock_sleep, manager, event):
    conn = MagicMock()
    mock_smtp.side_effect = [smtplib.SMTPServerDisconnected("bye"), conn]

    assert manager.send_alert(event) is True
    assert mock_smtp.call_count == 2
    conn.send_message.assert_called_once()
    mock_sleep.assert_called_once()


@patch("kwmon_cli.notifications.time.sleep")
@patch("kwmon_cli.notifications.smtplib.SMTP")
def test_persistent_connection_failure_raises(mock_smtp, mock_sleep, manager, event):
    mock_smtp.side_effect = ConnectionRefusedError("refused")

    with pytest.raises(NotificationError) as exc_info:
        manager.send_alert(event)
    assert mock_smtp.call_count == 3
    assert "ConnectionRefusedError" in str(exc_info.value)


@patch("kwmon_cli.notifications.smtplib.SMTP")
def test_auth_failure_is_not_retried(mock_smtp, manager, event):
    mock_smtp.return_value.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")

    with pytest.raises(NotificationError) as exc_info:
        manager.send_alert(event)
    assert exc_info.value.status_code == 535
    assert mock_smtp.call_count == 1


def test_disabled_when_incomplete(event):
    manager = NotificationManager({"from_address": "a@example.com", "to_address": [], "smtp": {"host": "h"}})
    assert manager.email_enabled is False
    assert manager.send_alert(event) is False


@patch("kwmon_cli.notifications.smtplib.SMTP")
def test_send_test_notification(mock_smtp, manager):
    assert manager.send_test_notification() is True
    msg = mock_smtp.return_value.send_message.call_args[0][0]
    assert msg["Subject"] == "Keyword Alert: test notification"
