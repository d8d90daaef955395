from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from src import draft_moderation, profile_service, profile_tags
from src.identity import Identity, current_identity, optional_identity, set_user_role
from src.image_reconciler import ImageSubmission
from src.profile_validation import ProfileInput, parse_image_order, parse_profile_form

router = APIRouter(prefix="/api")


class PublishPayload(BaseModel):
    published: bool = True


class RolePayload(BaseModel):
    role: str


async def _read_submission(request: Request) -> Tuple[ProfileInput, ImageSubmission]:
    form = await request.form()
    uploads: List[bytes] = []
    for item in form.getlist("new_images"):
        if not isinstance(item, UploadFile):
            continue
        payload = await item.read()
        if not payload and not item.filename:
            # Empty file input.
            continue
        uploads.append(payload)
    data = parse_profile_form(form)
    order = parse_image_order(form, upload_count=len(uploads))
    return data, ImageSubmission(touched=order.touched, order=order.order, uploads=uploads)


@router.get("/profiles")
async def list_profiles(
    include_drafts: bool = False,
    viewer: Optional[Identity] = Depends(optional_identity),
) -> Dict[str, Any]:
    records = await run_in_threadpool(profile_service.list_profiles, viewer, include_drafts=include_drafts)
    return {"profiles": [record.as_dict() for record in records]}


@router.get("/profiles/{profile_id}")
async def get_profile(profile_id: int, viewer: Optional[Identity] = Depends(optional_identity)) -> Dict[str, Any]:
    record = await run_in_threadpool(profile_service.get_profile, profile_id, viewer)
    return record.as_dict()


@router.post("/profiles", status_code=201)
async def create_profile(request: Request, identity: Identity = Depends(current_identity)) -> Dict[str, Any]:
    data, images = await _read_submission(request)
    record = await run_in_threadpool(profile_service.create_profile, identity, data, images)
    return record.as_dict()


@router.put("/profiles/{profile_id}")
async def update_profile(
    profile_id: int,
    request: Request,
    identity: Identity = Depends(current_identity),
) -> Dict[str, Any]:
    data, images = await _read_submission(request)
    record = await run_in_threadpool(profile_service.update_profile, profile_id, identity, data, images)
    payload = record.as_dict()
    payload["edited_profile_id"] = profile_id
    return payload


@router.delete("/profiles/{profile_id}")
async def delete_profile(profile_id: int, identity: Identity = Depends(current_identity)) -> Dict[str, Any]:
    return await run_in_threadpool(draft_moderation.delete_profile, identity, profile_id)


@router.get("/tags/{category}")
async def list_tag_options(category: str) -> Dict[str, Any]:
    options = await run_in_threadpool(profile_tags.list_tag_options, category)
    return {"category": category, "options": options}


@router.get("/admin/drafts")
async def list_pending_drafts(identity: Identity = Depends(current_identity)) -> Dict[str, Any]:
    drafts = await run_in_threadpool(draft_moderation.list_pending_drafts, identity)
    return {"drafts": drafts}


@router.post("/admin/drafts/{draft_id}/approve")
async def approve_draft(draft_id: int, identity: Identity = Depends(current_identity)) -> Dict[str, Any]:
    record = await run_in_threadpool(draft_moderation.approve_draft, identity, draft_id)
    return record.as_dict()


@router.post("/admin/drafts/{draft_id}/approve-new")
async def approve_new_profile(
    draft_id: int,
    payload: Optional[PublishPayload] = None,
    identity: Identity = Depends(current_identity),
) -> Dict[str, Any]:
    published = payload.published if payload is not None else True
    record = await run_in_threadpool(draft_moderation.approve_new_profile, identity, draft_id, published)
    return record.as_dict()


@router.post("/admin/drafts/{draft_id}/reject")
async def reject_draft(draft_id: int, identity: Identity = Depends(current_identity)) -> Dict[str, Any]:
    return await run_in_threadpool(draft_moderation.reject_draft, identity, draft_id)


@router.patch("/admin/profiles/{profile_id}/publish")
async def set_published(
    profile_id: int,
    payload: PublishPayload,
    identity: Identity = Depends(current_identity),
) -> Dict[str, Any]:
    record = await run_in_threadpool(draft_moderation.set_published, identity, profile_id, payload.published)
    return record.as_dict()


@router.patch("/admin/users/{user_id}/role")
async def change_user_role(
    user_id: int,
    payload: RolePayload,
    identity: Identity = Depends(current_identity),
) -> Dict[str, Any]:
    return await run_in_threadpool(set_user_role, identity, user_id, payload.role)
