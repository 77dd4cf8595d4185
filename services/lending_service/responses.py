from typing import Any

from fastapi.encoders import jsonable_encoder


def success_response(message: str, data: Any = None) -> dict[str, Any]:
    return {"success": True, "message": message, "data": jsonable_encoder(data)}


def error_response(message: str, error: Any) -> dict[str, Any]:
    return {"success": False, "message": message, "error": jsonable_encoder(error)}
