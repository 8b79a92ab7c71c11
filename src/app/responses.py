"""
Response records returned by the request handlers.

Handlers never raise for client mistakes; they return an ``ApiResponse``
built with the helpers below. A streamed body is an iterator of NDJSON
lines.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, Union

JSON_CONTENT_TYPE = "application/json"
NDJSON_CONTENT_TYPE = "application/x-ndjson"


@dataclass
class ApiResponse:
    status_code: int
    body: Union[Dict[str, Any], Iterator[str]]
    headers: Dict[str, str] = field(default_factory=lambda: {"Content-Type": JSON_CONTENT_TYPE})

    @property
    def is_stream(self) -> bool:
        return not isinstance(self.body, dict)

    def json(self) -> Dict[str, Any]:
        """Return the JSON body. Raises TypeError for streamed responses."""
        if self.is_stream:
            raise TypeError("Streamed responses have no single JSON body")
        return self.body  # type: ignore[return-value]


def json_response(body: Dict[str, Any], status_code: int = 200) -> ApiResponse:
    return ApiResponse(status_code=status_code, body=body)


def error_response(status_code: int, message: str, **details: Any) -> ApiResponse:
    body: Dict[str, Any] = {"success": False, "error": message}
    body.update(details)
    return ApiResponse(status_code=status_code, body=body)


def ndjson_lines(events: Iterable[Dict[str, Any]]) -> Iterator[str]:
    for event in events:
        yield json.dumps(event, default=str) + "\n"


def ndjson_response(events: Iterable[Dict[str, Any]]) -> ApiResponse:
    return ApiResponse(
        status_code=200,
        body=ndjson_lines(events),
        headers={"Content-Type": NDJSON_CONTENT_TYPE, "Cache-Control": "no-cache"},
    )
