import base64
import re
import smtplib
from unittest import mock

import pytest

from sagax.mail import DEFAULT_SIGNATURE, Email, new


def _message(email: Email) -> str:
    return email.build_bytes().decode("utf-8")


def test_build_joins_parts_with_crlf():
    email = Email()
    email.set_subject("Hello")
    email.set_from("Alice", "alice@example.com")
    email.set_to(["bob@example.com", "carol@example.com"])
    email.set_cc(["dave@example.com"])
    email.set_content_html()
    email.set_content("<p>hi</p>")
    email.set_others("X-Custom: yes")
    expected = "\r\n".join(
        [
            "Hello",
            "From: Alice <alice@example.com>",
            "To: bob@example.com,carol@example.com",
            "Cc: dave@example.com",
            "Content-Type: text/html; charset=UTF-8",
            "<p>hi</p>",
            "X-Custom: yes",
        ]
    )
    assert email.build() == expected


def test_build_of_empty_email_is_empty():
    assert Email().build() == ""


def test_build_bytes_without_attachments():
    email = Email()
    email.set_subject("Report")
    email.set_to(["bob@example.com"])
    email.set_content("body text")
    text = _message(email)
    assert text.startswith("MIME-Version: 1.0\nSubject: Report\nTo: bob@example.com\n")
    assert "Content-Type: text/plain; charset=utf-8\n" in text
    assert "multipart/mixed" not in text
    assert text.endswith("Content-Transfer-Encoding: 7bit\nbody text\n")


def test_build_bytes_with_attachment_round_trips_content():
    payload = b"\x00\x01binary data\xff"
    email = Email()
    email.set_to(["bob@example.com"])
    email.set_cc(["carol@example.com"])
    email.add_attachment("report.bin", "application/octet-stream", payload)
    text = _message(email)

    assert "Cc: carol@example.com\n" in text
    match = re.search(r'boundary="([0-9a-f]+)"', text)
    boundary = match.group(1)
    assert text.endswith(f"\n--{boundary}--")

    marker = 'Content-Disposition: attachment; filename="report.bin"\n'
    encoded = text.split(marker, 1)[1].rsplit(f"\n--{boundary}--", 1)[0]
    assert base64.b64decode(encoded) == payload


def test_boundaries_differ_between_builds():
    email = Email()
    email.add_attachment("a.txt", "text/plain", b"a")
    first = re.search(r'boundary="([0-9a-f]+)"', _message(email)).group(1)
    second = re.search(r'boundary="([0-9a-f]+)"', _message(email)).group(1)
    assert first != second and len(first) == len(second)


def test_default_signature_is_used_when_empty():
    email = Email()
    email.set_default_signature("")
    assert email.signature == DEFAULT_SIGNATURE
    assert DEFAULT_SIGNATURE + "\n" in _message(email)


def test_custom_signature_appears_in_message():
    email = Email()
    email.set_signature("-- team")
    assert "-- team\n" in _message(email)


def test_prepare_returns_fresh_email():
    password = "password"
    conn = new("smtp.example.com", "587", "user@example.com", password)
    first = conn.prepare()
    first.set_subject("one")
    assert conn.prepare().subject == ""


@mock.patch("sagax.mail.smtplib.SMTP")
def test_send_authenticates_and_sends_to_all_recipients(mock_smtp):
    server = mock_smtp.return_value.__enter__.return_value
    server.has_extn.side_effect = lambda name: name == "auth"
    password = "password"
    conn = new("smtp.example.com", "587", "user@example.com", password)
    email = conn.prepare()
    email.set_to(["bob@example.com"])
    email.set_cc(["carol@example.com"])
    email.set_content("hello")

    conn.send(email)

    mock_smtp.assert_called_once_with("smtp.example.com", 587)
    server.login.assert_called_once_with("user@example.com", password)
    server.starttls.assert_not_called()
    sender, recipients, body = server.sendmail.call_args.args
    assert sender == "user@example.com"
    assert recipients == ["bob@example.com", "carol@example.com"]
    expected = email.build_bytes()
    assert body == expected
    assert expected.startswith(b"MIME-Version: 1.0\n")
    assert b"To: bob@example.com\nCc: carol@example.com\n" in expected


@mock.patch("sagax.mail.smtplib.SMTP")
def test_send_fails_without_auth_support(mock_smtp):
    server = mock_smtp.return_value.__enter__.return_value
    server.has_extn.return_value = False
    password = "password"
    conn = new("smtp.example.com", "25", "user@example.com", password)
    with pytest.raises(smtplib.SMTPNotSupportedError):
        conn.send(conn.prepare())
    server.sendmail.assert_not_called()