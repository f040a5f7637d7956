"""Server-sent event framing used by the relay and by upstream consumers.

Every event is a single ``data: <json>`` line followed by a blank line. Decoding is
incremental: network chunks may split a line anywhere, so text is buffered until a
full newline-terminated line is available.
"""

import json
from typing import Any, Dict, List, Optional

from ..logging import get_logger

logger = get_logger(__name__)

DATA_PREFIX = "data:"


def encode_event(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False, separators=(',', ':'))}\n\n"


class SSEDecoder:
    """Incremental ``data:`` line decoder.

    Lines that are not ``data:`` lines (comments, ``event:``, ``id:``, blanks) are
    ignored. A complete line whose payload is not a JSON object is skipped and
    counted in ``skipped``; decoding continues with the next line.
    """

    def __init__(self, source: str = "stream"):
        self.source = source
        self.skipped = 0
        self._buffer = ""

    def feed(self, chunk: str) -> List[Dict[str, Any]]:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def flush(self) -> List[Dict[str, Any]]:
        """Parse whatever is left once the stream has ended."""
        remainder, self._buffer = self._buffer, ""
        return self._parse_lines([remainder])

    @property
    def pending(self) -> str:
        return self._buffer

    def _parse_lines(self, lines: List[str]) -> List[Dict[str, Any]]:
        payloads = []
        for line in lines:
            payload = self._parse_line(line)
            if payload is not None:
                payloads.append(payload)
        return payloads

    def _parse_line(self, line: str) -> Optional[Dict[str, Any]]:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return None

        data = line[len(DATA_PREFIX):]
        if data.startswith(" "):
            data = data[1:]
        if not data or data == "[DONE]":
            return None

        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            self.skipped += 1
            logger.warning("sse_line_skipped", source=self.source, error=str(e), length=len(data))
            return None

        if not isinstance(payload, dict):
            self.skipped += 1
            logger.warning("sse_line_skipped", source=self.source, error="payload is not an object")
            return None

        return payload
