"""Mapping of action results onto HTTP responses."""

from fastapi.responses import JSONResponse

from mcp_hub.app.models.common import ActionResult

# Codes whose status differs from their category's
CODE_STATUS = {
    "server_not_found": 404,
    "process_not_found": 404,
    "already_in_progress": 409,
    "already_connected": 409,
    "not_connected": 409,
    "internal_error": 500,
}

CATEGORY_STATUS = {
    "configuration": 400,
    "authentication": 401,
    "connection": 502,
    "process": 502,
    "internal": 500,
}


def status_for(result: ActionResult) -> int:
    if result.success or result.error is None:
        return 200
    return CODE_STATUS.get(result.error.code) or CATEGORY_STATUS.get(result.error.category, 500)


def respond(result: ActionResult) -> ActionResult | JSONResponse:
    """Pass successes through; failures keep their body but get an error status."""
    if result.success:
        return result
    return JSONResponse(status_code=status_for(result), content=result.model_dump(mode="json"))
