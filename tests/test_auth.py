from __future__ import annotations

from types import SimpleNamespace
from uuid import uuid4

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from postflow.core import auth as auth_module
from postflow.core.auth import AuthContext, require_auth_context, require_super_admin
from postflow.core.config import settings


class _FakeSession:
    def __init__(self, organization: object | None, role: str | None = None) -> None:
        self._organization = organization
        self._role = role
        self.scalar_calls = 0

    async def get(self, model, entity_id):  # noqa: ANN001
        return self._organization

    async def scalar(self, stmt):  # noqa: ANN001
        self.scalar_calls += 1
        return self._role


def _credentials(**claims: object) -> HTTPAuthorizationCredentials:
    token = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def _request() -> SimpleNamespace:
    return SimpleNamespace(state=SimpleNamespace())


@pytest.mark.asyncio
async def test_valid_token_builds_context() -> None:
    organization_id = uuid4()
    request = _request()
    session = _FakeSession(SimpleNamespace(id=organization_id), role="USER")

    context = await require_auth_context(
        request,
        _credentials(sub="user_1", org_id=str(organization_id), email="Owner@Example.com"),
        session,
    )

    assert context.organization_id == organization_id
    assert context.subject == "user_1"
    assert context.email == "owner@example.com"
    assert context.is_super_admin is False
    assert request.state.organization_id == organization_id


@pytest.mark.asyncio
async def test_superadmin_member_role_grants_admin() -> None:
    organization_id = uuid4()
    session = _FakeSession(SimpleNamespace(id=organization_id), role="SUPERADMIN")

    context = await require_auth_context(
        _request(), _credentials(sub="user_1", org_id=str(organization_id), email="a@b.com"), session
    )

    assert context.is_super_admin is True


@pytest.mark.asyncio
async def test_configured_super_admin_email_skips_member_lookup(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(auth_module.settings, "super_admin_emails_csv", "ops@postflow.io, other@postflow.io")
    organization_id = uuid4()
    session = _FakeSession(SimpleNamespace(id=organization_id))

    context = await require_auth_context(
        _request(), _credentials(sub="user_1", org_id=str(organization_id), email="OPS@postflow.io"), session
    )

    assert context.is_super_admin is True
    assert session.scalar_calls == 0


@pytest.mark.asyncio
async def test_invalid_token_is_401() -> None:
    credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials="not-a-jwt")

    with pytest.raises(HTTPException) as exc:
        await require_auth_context(_request(), credentials, _FakeSession(None))
    assert exc.value.status_code == 401


@pytest.mark.asyncio
async def test_missing_claims_is_403() -> None:
    with pytest.raises(HTTPException) as exc:
        await require_auth_context(_request(), _credentials(sub="user_1"), _FakeSession(None))
    assert exc.value.status_code == 403


@pytest.mark.asyncio
async def test_malformed_org_id_is_403() -> None:
    with pytest.raises(HTTPException) as exc:
        await require_auth_context(_request(), _credentials(sub="user_1", org_id="org_123"), _FakeSession(None))
    assert exc.value.status_code == 403


@pytest.mark.asyncio
async def test_unknown_organization_is_403() -> None:
    with pytest.raises(HTTPException) as exc:
        await require_auth_context(
            _request(), _credentials(sub="user_1", org_id=str(uuid4())), _FakeSession(None)
        )
    assert exc.value.status_code == 403
    assert exc.value.detail == "Organization is not provisioned"


@pytest.mark.asyncio
async def test_require_super_admin() -> None:
    admin = AuthContext(organization_id=uuid4(), subject="u", email=None, is_super_admin=True)
    member = AuthContext(organization_id=uuid4(), subject="u", email=None)

    assert await require_super_admin(admin) is admin
    with pytest.raises(HTTPException) as exc:
        await require_super_admin(member)
    assert exc.value.status_code == 403
