"""
api/errors.py — Core Errors → HTTP
====================================
Only the coarse category and a generic message leave the service.
The detailed message is logged here and nowhere else.
"""

import logging
from typing import NoReturn

from fastapi import HTTPException

from core.errors import IdentityCoreError

logger = logging.getLogger("personachain.api")

STATUS_BY_CATEGORY = {
    "invalid_request": 400,
    "access_denied": 403,
    "not_found": 404,
    "conflict": 409,
    "replay": 409,
    "expired": 410,
    "integrity": 422,
    "unavailable": 503,
}


def _error_classes(base=IdentityCoreError):
    for cls in base.__subclasses__():
        yield cls
        yield from _error_classes(cls)


# resolution metadata carries error codes, not exceptions
CATEGORY_BY_CODE = {cls.code: cls.category for cls in _error_classes()}


def error_response(error: IdentityCoreError) -> HTTPException:
    status_code = STATUS_BY_CATEGORY.get(error.category, 500)
    logger.info(f"{status_code} {error.code}: {error.message}")
    return HTTPException(
        status_code=status_code,
        detail={"error": error.category, "message": error.public_message},
    )


def raise_for_error(error: IdentityCoreError) -> NoReturn:
    raise error_response(error)


def status_for_code(code: str) -> int:
    return STATUS_BY_CATEGORY.get(CATEGORY_BY_CODE.get(code, "internal"), 500)
