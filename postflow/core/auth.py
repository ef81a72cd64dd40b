from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from postflow.core.config import settings
from postflow.core.db import get_db_session
from postflow.models.organization import MemberRole, Organization, OrganizationMember

bearer_scheme = HTTPBearer(auto_error=True)


@dataclass(slots=True)
class AuthContext:
    organization_id: UUID
    subject: str
    email: str | None
    is_super_admin: bool = False


def _decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        ) from exc


async def require_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    session: AsyncSession = Depends(get_db_session),
) -> AuthContext:
    claims = _decode_token(credentials.credentials)

    subject = claims.get("sub")
    raw_org_id = claims.get("org_id")
    if not subject or not raw_org_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token is missing required claims",
        )

    try:
        organization_id = UUID(str(raw_org_id))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token carries a malformed organization id",
        ) from exc

    organization = await session.get(Organization, organization_id)
    if organization is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Organization is not provisioned",
        )

    email = (claims.get("email") or "").lower() or None
    is_super_admin = email is not None and email in settings.super_admin_emails()
    if not is_super_admin and email is not None:
        role = await session.scalar(
            select(OrganizationMember.role).where(
                OrganizationMember.organization_id == organization_id,
                OrganizationMember.email == email,
            )
        )
        is_super_admin = role == MemberRole.SUPERADMIN.value

    request.state.organization_id = organization_id
    request.state.auth_claims = claims

    return AuthContext(
        organization_id=organization_id,
        subject=subject,
        email=email,
        is_super_admin=is_super_admin,
    )


async def require_super_admin(
    context: AuthContext = Depends(require_auth_context),
) -> AuthContext:
    if not context.is_super_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Super admin access required",
        )
    return context
