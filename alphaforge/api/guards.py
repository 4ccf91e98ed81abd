"""
Request guards for broker-touching routes.

The caller's identity comes from the upstream auth layer as ``X-User-Id``.
"""
from fastapi import Depends, Header, HTTPException, Request

from alphaforge.runtime.container import AppServices


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def get_user_id(x_user_id: str = Header(default="", alias="X-User-Id")) -> str:
    user_id = x_user_id.strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id")
    return user_id


def require_session(allow_expired: bool = False):
    """
    Dependency factory: reject LOCKED users (429) and users without an active
    session (409) before the handler or the gateway runs.
    """

    async def guard(
        user_id: str = Depends(get_user_id),
        services: AppServices = Depends(get_services),
    ) -> str:
        await services.fsm.require_active(user_id, allow_expired=allow_expired)
        return user_id

    return guard


require_active_session = require_session()
