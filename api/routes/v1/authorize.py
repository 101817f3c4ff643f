"""
api/routes/v1/authorize.py -- Policy decision endpoint.

Route:
  POST /api/v1/authorize   -- may the bearer perform `action` on `resource`?

The portal's domain services (files, messages, news) own their payloads and
storage; they describe the entity as a resource reference and ask here. The
answer is 200 {"allowed": true} or the generic 403. The deny reason is
written to the audit log and never returned.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.models import AuthorizeRequest, AuthorizeResponse
from auth.dependencies import get_current_identity
from auth.models import Identity
from auth.policy import enforce

router = APIRouter()


@router.post("/authorize", response_model=AuthorizeResponse)
def authorize_request(
    body: AuthorizeRequest,
    identity: Identity = Depends(get_current_identity),
) -> AuthorizeResponse:
    enforce(identity, body.action, body.resource.to_ref())
    return AuthorizeResponse(allowed=True)
