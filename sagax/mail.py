"""Composing plain, HTML and attachment e-mails and sending them over SMTP."""

from __future__ import annotations

import base64
import secrets
import smtplib
import ssl
from dataclasses import dataclass, field

DEFAULT_SIGNATURE = """
		-- 
		*System*

		CONFIDENTIALITY NOTICE:

		The contents of this email message and any attachments are intended solely
		for the addressee(s) and may contain confidential and/or privileged
		information and may be legally protected from disclosure. If you are not
		the intended recipient of this message or their agent, or if this message
		has been addressed to you in error, please immediately alert the sender by
		reply email and then delete this message and any attachments. If you are
		not the intended recipient, you are hereby notified that any use,
		dissemination, copying, or storage of this message or its attachments is
		strictly prohibited
	"""


@dataclass
class Attachment:
    """A file attached to an e-mail."""

    name: str
    file_type: str
    content: bytes


@dataclass
class Email:
    """An e-mail message being composed."""

    from_header: str = ""
    content_type: str = ""
    subject: str = ""
    content: str = ""
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    others: list[str] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)
    signature: str = ""

    def set_subject(self, subject: str) -> None:
        self.subject = subject

    def set_from(self, from_name: str, from_email: str) -> None:
        """Set the sender name and address."""
        self.from_header = " ".join(["From:", from_name, f"<{from_email}>"])

    def set_to(self, to: list[str]) -> None:
        self.to = list(to)

    def set_cc(self, cc: list[str]) -> None:
        self.cc = list(cc)

    def set_content_html(self) -> None:
        """Mark the content as HTML."""
        self.content_type = " ".join(["Content-Type:", "text/html; charset=UTF-8"])

    def set_content(self, content: str) -> None:
        self.content = content

    def set_others(self, content: str) -> None:
        """Append a custom line, such as an extra header."""
        self.others.append(content)

    def add_attachment(self, name: str, file_type: str, content: bytes) -> None:
        self.attachments.append(Attachment(name=name, file_type=file_type, content=bytes(content)))

    def set_signature(self, content: str) -> None:
        self.signature = content

    def set_default_signature(self, value: str) -> None:
        """Use ``value`` as signature, or the default notice when it is empty."""
        self.signature = value or DEFAULT_SIGNATURE

    def build(self) -> str:
        """Return the headers and content joined by CRLF."""
        lines = []
        if self.subject:
            lines.append(self.subject)
        if self.from_header:
            lines.append(self.from_header)
        if self.to:
            lines.append("To: " + ",".join(self.to))
        if self.cc:
            lines.append("Cc: " + ",".join(self.cc))
        if self.content_type:
            lines.append(self.content_type)
        if self.content:
            lines.append(self.content)
        lines.extend(self.others)
        return "\r\n".join(lines)

    def build_bytes(self) -> bytes:
        """Return the MIME message that is handed to the SMTP server."""
        parts: list[str] = [
            "MIME-Version: 1.0\n",
            f"Subject: {self.subject}\n",
            f"To: {','.join(self.to)}\n",
        ]
        if self.cc:
            parts.append(f"Cc: {','.join(self.cc)}\n")
        if self.bcc:
            parts.append(f"Bcc: {','.join(self.bcc)}\n")
        if self.signature:
            parts.append(f"{self.signature}\n")

        boundary = secrets.token_hex(30)
        if self.attachments:
            parts.append(f'Content-Type: multipart/mixed; boundary="{boundary}"\n')
            parts.append(f"r\n--{boundary}\r\n")
        else:
            parts.append("Content-Type: text/plain; charset=utf-8\n")

        parts.append("Content-Type: text/html; charset=utf-8\n")
        parts.append("Content-Transfer-Encoding: 7bit\n")
        parts.append(f"{self.content}\n")

        for item in self.attachments:
            parts.append(f"r\n--{boundary}\r\n")
            parts.append(f'Content-Type: {item.file_type}\n; name="{item.name}"')
            parts.append("Content-Transfer-Encoding: base64\n")
            parts.append(f'Content-Disposition: attachment; filename="{item.name}"\n')
            parts.append(base64.b64encode(item.content).decode("ascii"))
            parts.append(f"\n--{boundary}--")

        return "".join(parts).encode("utf-8")


@dataclass
class Connection:
    """SMTP server settings used to send e-mails."""

    host: str
    port: str
    username: str
    password: str

    def prepare(self) -> Email:
        """Return a new, empty e-mail."""
        return Email()

    def send(self, email: Email) -> None:
        """Send ``email`` to its To and Cc recipients, authenticating with PLAIN."""
        recipients = [*email.to, *email.cc]
        with smtplib.SMTP(self.host, int(self.port)) as server:
            server.ehlo()
            if server.has_extn("starttls"):
                server.starttls(context=ssl.create_default_context())
                server.ehlo()
            if not server.has_extn("auth"):
                raise smtplib.SMTPNotSupportedError("server doesn't support AUTH")
            server.login(self.username, self.password)
            server.sendmail(self.username, recipients, email.build_bytes())


def new(host: str, port: str, username: str, password: str) -> Connection:
    """Create an SMTP connection description."""
    return Connection(host=host, port=port, username=username, password=password)