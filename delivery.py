"""
WhatsApp delivery through a WAHA relay

The finished PDF is posted as multipart/form-data to the relay's sendFile
endpoint. The body is produced chunk by chunk while the request is being sent,
so the PDF is never held in memory as a whole.
"""

import os
import uuid
from pathlib import Path
from typing import Dict, Iterator, Optional

import requests

from reporting import ProgressReporter
from schemas import DeliveryConfig, EventKind, ProgressEvent
from utils import DeliveryError, load_config, setup_logger

# ─── LOGGER & CONFIG ────────────────────────────────────────────────────────────────
config = load_config()
logger = setup_logger(__name__, config)

ACCEPTED_STATUS_CODES = (200, 201)


def _quote_header_value(value: str) -> str:
    """Percent-encode the characters that would break a quoted Content-Disposition parameter."""
    return value.replace("\r", "%0D").replace("\n", "%0A").replace('"', "%22")


class MultipartFileStream:
    """A multipart/form-data body made of text fields plus one streamed file part.

    requests sends any iterable with a length as a fixed Content-Length body,
    pulling the next chunk only when the socket is ready for it. Reading the
    file happens inside that pull, so the first read error aborts the upload.
    """

    def __init__(
        self,
        fields: Dict[str, str],
        file_field: str,
        file_name: str,
        file_path: Path,
        content_type: str = "application/pdf",
        chunk_size: int = 65536,
    ):
        self.file_path = Path(file_path)
        self.chunk_size = chunk_size
        self.boundary = uuid.uuid4().hex
        self.file_size = os.path.getsize(self.file_path)

        parts = []
        for name, value in fields.items():
            parts.append(
                f"--{self.boundary}\r\n"
                f'Content-Disposition: form-data; name="{_quote_header_value(name)}"\r\n\r\n'
                f"{value}\r\n"
            )
        parts.append(
            f"--{self.boundary}\r\n"
            f'Content-Disposition: form-data; name="{_quote_header_value(file_field)}"; filename="{_quote_header_value(file_name)}"\r\n'
            f"Content-Type: {content_type}\r\n\r\n"
        )
        self.preamble = "".join(parts).encode("utf-8")
        self.epilogue = f"\r\n--{self.boundary}--\r\n".encode("utf-8")

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"

    def __len__(self) -> int:
        return len(self.preamble) + self.file_size + len(self.epilogue)

    def __iter__(self) -> Iterator[bytes]:
        yield self.preamble
        sent = 0
        with open(self.file_path, "rb") as f:
            while True:
                chunk = f.read(self.chunk_size)
                if not chunk:
                    break
                sent += len(chunk)
                yield chunk
        if sent != self.file_size:
            raise OSError(f"{self.file_path} changed size during upload ({sent} of {self.file_size} bytes)")
        yield self.epilogue


class WahaDeliverySink:
    def __init__(
        self,
        delivery_config: DeliveryConfig,
        reporter: ProgressReporter,
        session: Optional[requests.Session] = None,
    ):
        self.config = delivery_config
        self.reporter = reporter
        self.session = session or requests.Session()

    def caption(self, display_name: str) -> str:
        return self.config.caption_template.format(name=display_name)

    def deliver(self, file_path: Path, recipient: str, display_name: str) -> None:
        """Send a finished PDF to a WhatsApp recipient.

        Args:
            file_path (Path): The PDF to send.
            recipient (str): Phone number of the recipient, without the @c.us suffix.
            display_name (str): Document name used for the caption and attachment file name.

        Raises:
            DeliveryError: If the file cannot be read, the request fails or the relay
                answers with anything other than 200/201. The error carries the
                status code and response body when the relay answered.
        """
        file_path = Path(file_path)
        try:
            stream = MultipartFileStream(
                fields={
                    "chatId": f"{recipient}@c.us",
                    "caption": self.caption(display_name),
                },
                file_field="file",
                file_name=f"{display_name}.pdf",
                file_path=file_path,
                chunk_size=self.config.chunk_size,
            )
        except OSError as e:
            raise DeliveryError(f"Failed to read file info for {file_path}: {e}")

        self.reporter.report(ProgressEvent(
            kind=EventKind.DELIVERY_START,
            message=f"sending {file_path.name} ({stream.file_size / (1024 * 1024):.2f} MB) to {recipient}",
            data={"bytes": stream.file_size, "recipient": recipient},
        ))

        url = f"{self.config.api_url}/api/sendFile"
        headers = {
            "Content-Type": stream.content_type,
            "X-Api-Key": self.config.api_key,
        }

        try:
            response = self.session.post(
                url,
                params={"session": self.config.session},
                data=stream,
                headers=headers,
                timeout=self.config.timeout,
            )
        except (requests.exceptions.RequestException, OSError) as e:
            raise DeliveryError(f"Failed to send request: {e}")

        if response.status_code not in ACCEPTED_STATUS_CODES:
            raise DeliveryError(
                f"API error (status {response.status_code}): {response.text}",
                status_code=response.status_code,
                response_body=response.text,
            )

        logger.debug("Relay answered %d for %s", response.status_code, file_path)
        self.reporter.report(ProgressEvent(
            kind=EventKind.DELIVERY_DONE,
            message=f"{file_path.name} delivered to {recipient}",
            data={"status_code": response.status_code},
        ))
