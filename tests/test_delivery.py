import pytest
import requests
import responses
from responses import matchers

#local imports
from delivery import MultipartFileStream, WahaDeliverySink
from schemas import EventKind
from utils import DeliveryError

SEND_URL = "https://waha.test/api/sendFile"


@pytest.fixture
def pdf_file(tmp_path):
    path = tmp_path / "MSIM4408.pdf"
    path.write_bytes(b"%PDF-1.7\n" + b"0123456789" * 10000 + b"\n%%EOF\n")
    return path


class TestMultipartFileStream:
    """Test cases for the streamed multipart body."""

    def test_body_contains_fields_and_file(self, pdf_file):
        stream = MultipartFileStream(
            fields={"chatId": "628123@c.us", "caption": "📚 MSIM4408"},
            file_field="file",
            file_name="MSIM4408.pdf",
            file_path=pdf_file,
            chunk_size=1024,
        )

        body = b"".join(stream)

        assert len(body) == len(stream)
        assert body.startswith(f"--{stream.boundary}\r\n".encode())
        assert b'name="chatId"\r\n\r\n628123@c.us\r\n' in body
        assert "📚 MSIM4408".encode("utf-8") in body
        assert b'name="file"; filename="MSIM4408.pdf"\r\nContent-Type: application/pdf\r\n\r\n' in body
        assert pdf_file.read_bytes() in body
        assert body.endswith(f"\r\n--{stream.boundary}--\r\n".encode())
        assert stream.content_type == f"multipart/form-data; boundary={stream.boundary}"

    def test_file_is_read_in_chunks(self, pdf_file):
        """Test that the file part is produced chunk by chunk.

        Given: A 100 KB file and a 4 KB chunk size
        When: The stream is iterated
        Then: No single chunk is larger than the chunk size, apart from the text parts
        """
        stream = MultipartFileStream({}, "file", "a.pdf", pdf_file, chunk_size=4096)

        chunks = list(stream)

        file_chunks = chunks[1:-1]
        assert len(file_chunks) > 1
        assert all(len(c) <= 4096 for c in file_chunks)

    def test_quotes_and_line_breaks_in_file_name_are_encoded(self, pdf_file):
        stream = MultipartFileStream({}, "file", 'Bad"Name\r\nX-Injected: 1.pdf', pdf_file)

        preamble = stream.preamble

        assert b'filename="Bad%22Name%0D%0AX-Injected: 1.pdf"\r\n' in preamble
        assert b"\r\nX-Injected" not in preamble

    def test_file_changing_size_aborts_the_stream(self, pdf_file):
        stream = MultipartFileStream({}, "file", "a.pdf", pdf_file, chunk_size=4096)
        pdf_file.write_bytes(b"%PDF-1.7 truncated")

        with pytest.raises(OSError):
            b"".join(stream)


class TestWahaDeliverySink:
    """Test cases for WahaDeliverySink.deliver.

    WahaDeliverySink.deliver should:
    - POST the PDF as multipart to {api_url}/api/sendFile?session=...
    - Authenticate with the X-Api-Key header
    - Raise DeliveryError with the relay's status code and body on failure
    """

    @pytest.fixture
    def sink(self, delivery_config, reporter):
        with requests.Session() as session:
            yield WahaDeliverySink(delivery_config, reporter, session=session)

    @responses.activate
    def test_sends_multipart_request(self, sink, reporter, pdf_file):
        """Test a successful upload.

        Given: A relay that answers 201
        When: deliver is called
        Then: The request carries session, api key, chatId, caption and the PDF bytes

        Run with: python -m pytest tests/test_delivery.py::TestWahaDeliverySink::test_sends_multipart_request -v
        """
        # ARRANGE: Set up our test data
        responses.add(
            responses.POST,
            SEND_URL,
            json={"id": "true_6281234567890@c.us_ABC"},
            status=201,
            match=[
                matchers.query_param_matcher({"session": "default"}),
                matchers.header_matcher({"X-Api-Key": "waha-secret"}),
            ],
        )

        # ACT: Call the function we're testing
        sink.deliver(pdf_file, "6281234567890", "MSIM4408")

        # ASSERT: Check if we got what we expected
        sent = responses.calls[0].request
        assert sent.headers["Content-Type"].startswith("multipart/form-data; boundary=")
        body = b"".join(sent.body)
        assert int(sent.headers["Content-Length"]) == len(body)
        assert b"6281234567890@c.us" in body
        assert "📚 MSIM4408".encode("utf-8") in body
        assert b'filename="MSIM4408.pdf"' in body
        assert pdf_file.read_bytes() in body
        assert reporter.kinds() == [EventKind.DELIVERY_START, EventKind.DELIVERY_DONE]

    @responses.activate
    def test_200_is_also_success(self, sink, pdf_file):
        responses.add(responses.POST, SEND_URL, json={}, status=200)

        sink.deliver(pdf_file, "6281234567890", "MSIM4408")

    @responses.activate
    def test_error_status_raises_with_body(self, sink, reporter, pdf_file):
        responses.add(responses.POST, SEND_URL, body='{"error": "session not found"}', status=422)

        with pytest.raises(DeliveryError) as exc_info:
            sink.deliver(pdf_file, "6281234567890", "MSIM4408")

        assert exc_info.value.status_code == 422
        assert "session not found" in exc_info.value.response_body
        assert "422" in str(exc_info.value)
        assert EventKind.DELIVERY_DONE not in reporter.kinds()

    @responses.activate
    def test_transport_error_raises_delivery_error(self, sink, pdf_file):
        responses.add(responses.POST, SEND_URL, body=requests.exceptions.ConnectionError("refused"))

        with pytest.raises(DeliveryError) as exc_info:
            sink.deliver(pdf_file, "6281234567890", "MSIM4408")

        assert exc_info.value.status_code is None

    def test_missing_file_raises_delivery_error(self, sink, tmp_path):
        with pytest.raises(DeliveryError):
            sink.deliver(tmp_path / "missing.pdf", "6281234567890", "MSIM4408")
