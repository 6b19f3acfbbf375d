"""FastAPI dependencies: the service graph, the requester identity, error mapping.

Identity arrives as query parameters (``userRole``, ``userId``, ``managedTeam``)
set by the authenticated front end. Role strings outside the closed set yield a
requester without a role, which every read answers with empty sets.
"""

from __future__ import annotations

import httpx
from fastapi import HTTPException, Query, Request, status
from sqlalchemy.exc import SQLAlchemyError

from src.salesops.errors import (
    ConflictError,
    InvalidTransitionError,
    NormalizationError,
    NotFoundError,
    ProviderUnavailable,
    ReadOnlyProviderError,
    RecipientValidationError,
    SalesOpsError,
    UnknownEntityTypeError,
)
from src.salesops.records.schemas import EntityType, Requester
from src.salesops.services import DashboardServices

DEFAULT_DATA_TYPES = "deals,callbacks,targets,notifications"
ANALYTICS_TOKEN = "analytics"


def get_services(request: Request) -> DashboardServices:
    """Retrieve DashboardServices from app.state, 503 if not available."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Dashboard services not initialized",
        )
    return services


def get_requester(
    user_role: str | None = Query(None, alias="userRole"),
    user_id: str | None = Query(None, alias="userId"),
    managed_team: str | None = Query(None, alias="managedTeam"),
) -> Requester:
    return Requester.from_raw(user_role, user_id, managed_team)


def parse_data_types(raw: str | None) -> tuple[list[EntityType], bool | None]:
    """Split ``dataTypes`` into entity types and the analytics switch.

    ``analytics`` is not an entity type; listing it forces analytics on.

    Raises:
        HTTPException(422): For unknown data type names.
    """
    names = [name.strip().lower() for name in (raw or DEFAULT_DATA_TYPES).split(",")]
    include_analytics = True if ANALYTICS_TOKEN in names else None
    try:
        entity_types = EntityType.parse_list([n for n in names if n != ANALYTICS_TOKEN])
    except UnknownEntityTypeError as exc:
        raise to_http_error(exc) from exc
    return entity_types, include_analytics


def to_http_error(exc: Exception) -> HTTPException:
    """Map a domain or provider exception onto an HTTP error."""
    if isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ConflictError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(
        exc,
        (
            NormalizationError,
            InvalidTransitionError,
            RecipientValidationError,
            UnknownEntityTypeError,
            ValueError,
        ),
    ):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(
        exc, (ProviderUnavailable, ReadOnlyProviderError, httpx.HTTPError, SQLAlchemyError)
    ):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(exc))


# Exceptions a mutation endpoint converts with to_http_error.
MUTATION_ERRORS = (SalesOpsError, ValueError, httpx.HTTPError, SQLAlchemyError)
