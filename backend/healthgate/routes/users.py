"""
HealthGate Backend — User Profile Route
=========================================

What:  GET /api/v1/users/{user_id}
Who:   The patient themselves, or any doctor or admin (OwnerOrRole gate on
       the route rule; the owner is the `user_id` path parameter).
"""

import logging

from fastapi import APIRouter, Request

from healthgate.exceptions import NotFoundError
from healthgate.schemas.auth import UserResponse
from healthgate.schemas.envelope import build_envelope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/users", tags=["Users"])


@router.get("/{user_id}", summary="Fetch a user profile")
async def get_user(user_id: str, request: Request):
    user = await request.app.state.directory.get(user_id)
    if user is None or not user.active:
        raise NotFoundError("User", user_id)
    data = UserResponse(id=user.id, email=user.email, role=user.role.value, verified=user.verified)
    return build_envelope(request, data.model_dump())
