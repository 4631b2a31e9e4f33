from __future__ import annotations

import logging
from typing import Callable, Optional

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

from ephemera.core.exceptions import MalformedForm

logger = logging.getLogger("ephemera.multipart")

MAX_FIELD_BYTES = 16 * 1024
MAX_FIELDS_TOTAL_BYTES = 64 * 1024
# Allowance for boundaries, part headers and text fields around the file bytes.
FORM_OVERHEAD_BYTES = MAX_FIELDS_TOTAL_BYTES + 16 * 1024


class StreamingForm:
    """Incremental ``multipart/form-data`` reader.

    Bytes of the file part are handed to ``on_file_data`` as they arrive,
    so the payload is never buffered in memory or spooled to a temporary
    file. Text fields are small and collected into ``fields``.
    """

    def __init__(
        self,
        content_type: Optional[str],
        on_file_data: Callable[[bytes], None],
        file_field: str = "file",
    ) -> None:
        ctype, params = parse_options_header(content_type)
        boundary = params.get(b"boundary")
        if ctype != b"multipart/form-data" or not boundary:
            raise MalformedForm("expected multipart/form-data")

        self._on_file_data = on_file_data
        self._file_field = file_field
        self.fields: dict[str, str] = {}
        self.filename: Optional[str] = None
        self.content_type: Optional[str] = None
        self.has_file = False
        self.complete = False

        self._headers: dict[bytes, bytes] = {}
        self._header_field = b""
        self._header_value = b""
        self._part_name: Optional[str] = None
        self._part_is_file = False
        self._part_value = bytearray()
        self._fields_size = 0

        self._parser = MultipartParser(
            boundary,
            callbacks={
                "on_part_begin": self._on_part_begin,
                "on_header_field": self._on_header_field,
                "on_header_value": self._on_header_value,
                "on_header_end": self._on_header_end,
                "on_headers_finished": self._on_headers_finished,
                "on_part_data": self._on_part_data,
                "on_part_end": self._on_part_end,
                "on_end": self._on_end,
            },
        )

    def feed(self, chunk: bytes) -> None:
        """Parse one chunk of the request body.

        Errors raised by ``on_file_data`` propagate unchanged.
        """
        try:
            self._parser.write(chunk)
        except MultipartParseError as exc:
            raise MalformedForm(f"malformed form: {exc}") from exc

    def close(self) -> None:
        self._parser.finalize()
        if not self.complete:
            raise MalformedForm("form body ended early")

    # Parser callbacks

    def _on_part_begin(self) -> None:
        self._headers = {}
        self._part_name = None
        self._part_is_file = False
        self._part_value = bytearray()

    def _on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def _on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def _on_header_end(self) -> None:
        self._headers[self._header_field.lower()] = self._header_value
        self._header_field = b""
        self._header_value = b""

    def _on_headers_finished(self) -> None:
        _, options = parse_options_header(self._headers.get(b"content-disposition"))
        name = options.get(b"name", b"").decode("utf-8", errors="replace")
        self._part_name = name
        if name != self._file_field or b"filename" not in options:
            return
        if self.has_file:
            # Only the first file part is kept; later ones are parsed and dropped.
            logger.warning("event=extra_file_part_ignored field=%s", name)
            self._part_name = None
            return
        self._part_is_file = True
        self.has_file = True
        self.filename = options[b"filename"].decode("utf-8", errors="replace")
        content_type = self._headers.get(b"content-type")
        self.content_type = content_type.decode("latin-1").strip() if content_type else None

    def _on_part_data(self, data: bytes, start: int, end: int) -> None:
        if self._part_is_file:
            self._on_file_data(data[start:end])
            return
        if self._part_name is None:
            return
        self._part_value += data[start:end]
        self._fields_size += end - start
        if len(self._part_value) > MAX_FIELD_BYTES or self._fields_size > MAX_FIELDS_TOTAL_BYTES:
            raise MalformedForm("form field too large")

    def _on_part_end(self) -> None:
        if self._part_name and not self._part_is_file:
            self.fields[self._part_name] = self._part_value.decode("utf-8", errors="replace")
        self._part_name = None
        self._part_is_file = False

    def _on_end(self) -> None:
        self.complete = True
