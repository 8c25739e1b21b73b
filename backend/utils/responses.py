from fastapi.responses import JSONResponse, PlainTextResponse


def success_response(status=200, **fields):
    return JSONResponse(
        status_code=status,
        content={"ok": True, **fields}
    )


def error_response(error, status=400, **fields):
    return JSONResponse(
        status_code=status,
        content={"ok": False, "error": error, **fields}
    )


def token_response(token: str, status=200):
    """Plain-text status token, as payment providers expect from webhooks."""
    return PlainTextResponse(token, status_code=status)
