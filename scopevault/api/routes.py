from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from scopevault.api.schemas import (
    Envelope,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    RegisterRequest,
    SecretCreateRequest,
    SecretListResponse,
    SecretResponse,
    SecretUpdateRequest,
    TokenResponse,
)
from scopevault.service.identity import VerifiedIdentity, attach_identity
from scopevault.service.runtime import get_runtime

router = APIRouter(prefix="/v1")


async def get_identity(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> VerifiedIdentity:
    """Verify the bearer token and attach the identity to the request."""
    runtime = get_runtime()
    identity = runtime.accounts.identity_from_header(authorization)
    attach_identity(request, identity)
    return identity


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an identity: its scope, then its credential record.

    Raises:
        400: If the username cannot form a scope name
        409: If the identity is already registered
        503: If the scope did not become active in time
    """
    runtime = get_runtime()
    await runtime.accounts.register(body.username, body.password)
    return Envelope(
        status="ok",
        data=MessageResponse(message=f"identity {body.username!r} registered"),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange username and password for a bearer token.

    Raises:
        401: If the credentials are invalid, whatever the cause
    """
    runtime = get_runtime()
    token = await runtime.accounts.authenticate(body.username, body.password)
    return Envelope(
        status="ok",
        data=TokenResponse(
            token=token,
            expires_in=runtime.settings.token_ttl_minutes * 60,
        ),
    )


@router.put("/user/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    identity: VerifiedIdentity = Depends(get_identity),
):
    runtime = get_runtime()
    await runtime.accounts.change_password(identity, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message="password changed"))


@router.delete("/user", response_model=Envelope, tags=["auth"])
async def delete_user(identity: VerifiedIdentity = Depends(get_identity)):
    """Delete the caller's identity and every secret it stored.

    Raises:
        500: If the scope could not be removed, even after forced finalization
    """
    runtime = get_runtime()
    transition = await runtime.accounts.delete_identity(identity)
    return Envelope(
        status="ok",
        data={
            "message": f"identity {identity.name!r} deleted",
            "forced_finalization": transition.forced_finalization,
        },
    )


@router.post("/secrets", response_model=Envelope, status_code=201, tags=["secrets"])
async def create_secret(
    body: SecretCreateRequest,
    identity: VerifiedIdentity = Depends(get_identity),
):
    runtime = get_runtime()
    data = await runtime.secrets.put_secret(identity, body.name, body.data)
    return Envelope(status="ok", data=SecretResponse(name=body.name, data=data))


@router.get("/secrets", response_model=Envelope, tags=["secrets"])
async def list_secrets(identity: VerifiedIdentity = Depends(get_identity)):
    runtime = get_runtime()
    names = await runtime.secrets.list_secrets(identity)
    return Envelope(status="ok", data=SecretListResponse(secrets=names))


@router.get("/secrets/{name}", response_model=Envelope, tags=["secrets"])
async def get_secret(name: str, identity: VerifiedIdentity = Depends(get_identity)):
    runtime = get_runtime()
    data = await runtime.secrets.get_secret(identity, name)
    return Envelope(status="ok", data=SecretResponse(name=name, data=data))


@router.put("/secrets/{name}", response_model=Envelope, tags=["secrets"])
async def update_secret(
    name: str,
    body: SecretUpdateRequest,
    identity: VerifiedIdentity = Depends(get_identity),
):
    """Replace the secret's data wholesale; keys left out are removed."""
    runtime = get_runtime()
    data = await runtime.secrets.update_secret(identity, name, body.data)
    return Envelope(status="ok", data=SecretResponse(name=name, data=data))


@router.delete("/secrets/{name}", status_code=204, tags=["secrets"])
async def delete_secret(name: str, identity: VerifiedIdentity = Depends(get_identity)):
    runtime = get_runtime()
    await runtime.secrets.delete_secret(identity, name)
    return Response(status_code=204)
