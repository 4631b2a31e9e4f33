import pytest

from ephemera.api.multipart import MAX_FIELD_BYTES, StreamingForm
from ephemera.core.exceptions import FileTooLarge, MalformedForm

BOUNDARY = "xYzBoundary42"
CONTENT_TYPE = f"multipart/form-data; boundary={BOUNDARY}"


def _field(name, value):
    return f'Content-Disposition: form-data; name="{name}"'.encode(), value.encode()


def _file(data, filename="report.pdf", mime="application/pdf", name="file"):
    headers = f'Content-Disposition: form-data; name="{name}"; filename="{filename}"\r\nContent-Type: {mime}'
    return headers.encode(), data


def _body(*parts):
    out = b""
    for headers, data in parts:
        out += f"--{BOUNDARY}\r\n".encode() + headers + b"\r\n\r\n" + data + b"\r\n"
    return out + f"--{BOUNDARY}--\r\n".encode()


def _reader(content_type=CONTENT_TYPE):
    received = []
    return StreamingForm(content_type, received.append), received


def test_fields_and_file_are_split():
    form, received = _reader()
    body = _body(_field("expiresIn", "2h"), _file(b"%PDF-1.7 data"), _field("maxDownloads", "3"))
    for i in range(len(body)):
        form.feed(body[i : i + 1])
    form.close()

    assert b"".join(received) == b"%PDF-1.7 data"
    assert form.fields == {"expiresIn": "2h", "maxDownloads": "3"}
    assert form.filename == "report.pdf"
    assert form.content_type == "application/pdf"
    assert form.has_file is True


def test_file_bytes_arrive_before_body_ends():
    form, received = _reader()
    payload = b"z" * 50000
    body = _body(_file(payload))

    form.feed(body[:40000])
    assert len(b"".join(received)) > 30000
    assert form.complete is False

    form.feed(body[40000:])
    form.close()
    assert b"".join(received) == payload


def test_truncated_body_is_malformed():
    form, _ = _reader()
    form.feed(_body(_file(b"abc"))[:-20])
    with pytest.raises(MalformedForm):
        form.close()


def test_sink_errors_propagate():
    def _reject(chunk):
        raise FileTooLarge()

    form = StreamingForm(CONTENT_TYPE, _reject)
    with pytest.raises(FileTooLarge):
        form.feed(_body(_file(b"too much")))


@pytest.mark.parametrize(
    "content_type",
    [None, "", "application/json", "multipart/form-data", "text/plain; boundary=abc"],
)
def test_requires_multipart_with_boundary(content_type):
    with pytest.raises(MalformedForm) as excinfo:
        StreamingForm(content_type, lambda chunk: None)
    assert excinfo.value.code == "invalid_form"


def test_garbage_body_is_malformed():
    form, _ = _reader()
    with pytest.raises(MalformedForm):
        form.feed(b"this is not a multipart body\r\n")


def test_oversized_text_field_is_malformed():
    form, _ = _reader()
    with pytest.raises(MalformedForm):
        form.feed(_body(_field("downloadPassword", "p" * (MAX_FIELD_BYTES + 1))))


def test_only_first_file_part_is_kept():
    form, received = _reader()
    form.feed(_body(_file(b"first"), _file(b"second", filename="other.txt")))
    form.close()

    assert b"".join(received) == b"first"
    assert form.filename == "report.pdf"


def test_file_field_without_filename_is_not_a_file():
    form, received = _reader()
    form.feed(_body(_field("file", "just text")))
    form.close()

    assert form.has_file is False
    assert received == []
    assert form.fields == {"file": "just text"}
