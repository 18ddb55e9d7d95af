"""
Dependency injection for the Dashboard Analytics service
"""

from typing import Any

from fastapi import HTTPException, Request, status

from libs.shared_auth.jwt_fastapi import JWTValidator, build_jwt_auth_dependencies, build_role_dependency

from .config import settings
from .logging import get_logger

logger = get_logger("dependencies")

ADMIN_ROLE = "Admin"
MANAGER_ROLE = "Manager"

jwt_validator = JWTValidator(
    secret_key=settings.JWT_SECRET,
    algorithm=settings.JWT_ALGORITHM,
    issuer=settings.JWT_ISSUER or None,
    audience=settings.JWT_AUDIENCE or None,
)

get_bearer_token, get_current_principal = build_jwt_auth_dependencies(jwt_validator)
require_admin = build_role_dependency(get_current_principal, ADMIN_ROLE)
require_manager = build_role_dependency(get_current_principal, ADMIN_ROLE, MANAGER_ROLE)


def _from_state(request: Request, name: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        logger.error(f"{name} requested before startup completed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service temporarily unavailable",
        )
    return service


async def get_dashboard_service(request: Request) -> Any:
    return _from_state(request, "dashboard_service")


async def get_kpi_service(request: Request) -> Any:
    return _from_state(request, "kpi_service")


async def get_database_service(request: Request) -> Any:
    return _from_state(request, "database_service")
