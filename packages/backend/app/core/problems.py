from fastapi.responses import JSONResponse

from app.core.errors import (
    AccessForbiddenError,
    ConflictError,
    ExternalCallFailure,
    InvariantViolation,
    LifecycleError,
    NotFoundError,
    ValidationError,
)


ERROR_TYPE_BASE = "https://keyhaven.dev/errors"


def problem_response(status: int, title: str, detail: str, type_: str = "about:blank") -> JSONResponse:
    return JSONResponse(
        status_code=status,
        media_type="application/problem+json",
        content={
            "type": type_,
            "title": title,
            "status": status,
            "detail": detail,
        },
    )


_FAMILY_STATUS: tuple[tuple[type[LifecycleError], int, str, str], ...] = (
    (ValidationError, 400, "Bad Request", "validation"),
    (AccessForbiddenError, 403, "Forbidden", "forbidden"),
    (NotFoundError, 404, "Not Found", "not-found"),
    (ConflictError, 409, "Conflict", "conflict"),
    (InvariantViolation, 422, "Unprocessable Entity", "invariant-violation"),
    (ExternalCallFailure, 502, "Bad Gateway", "external-call-failure"),
)


def lifecycle_problem(exc: LifecycleError) -> JSONResponse:
    for family, status, title, slug in _FAMILY_STATUS:
        if isinstance(exc, family):
            return problem_response(
                status=status,
                title=title,
                detail=str(exc) or title,
                type_=f"{ERROR_TYPE_BASE}/{slug}",
            )
    return problem_response(
        status=500,
        title="Internal Server Error",
        detail=str(exc) or "Unexpected lifecycle error.",
        type_=f"{ERROR_TYPE_BASE}/internal",
    )
