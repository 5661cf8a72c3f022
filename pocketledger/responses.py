from __future__ import annotations

from typing import Any


def success(data: Any = None, message: str = "Success") -> dict[str, Any]:
    return {"status": "success", "message": message, "data": data}


def error_body(error: str, details: Any = None) -> dict[str, Any]:
    body: dict[str, Any] = {"status": "error", "error": error}
    if details is not None:
        body["details"] = details
    return body
