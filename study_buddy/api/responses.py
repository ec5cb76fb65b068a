"""
Error bodies shared by exception handlers and middleware.
"""

from typing import Optional

from fastapi.responses import JSONResponse


def error_response(status_code: int, detail: str, retry_after: Optional[int] = None) -> JSONResponse:
    """`{"detail": ...}` with a Retry-After header when the caller should come back later."""
    headers = {"Retry-After": str(retry_after)} if retry_after else None
    return JSONResponse(status_code=status_code, content={"detail": detail}, headers=headers)
