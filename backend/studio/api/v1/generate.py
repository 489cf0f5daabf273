"""
Image generation endpoint.

Quota is checked before the model call and consumed only after the result
has been stored; failed generations do not count.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel

from studio.api.v1.deps import get_generation_service, get_quota_service
from studio.auth import CurrentUser
from studio.models.billing import GenerationDecision
from studio.services.generation_service import GenerationService
from studio.services.quota_service import QuotaService

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["generate"])


class GenerateResponse(BaseModel):
    image_url: str
    quota_used: int
    quota_limit: int


def _quota_exhausted_error(decision: GenerationDecision) -> HTTPException:
    return HTTPException(
        status_code=402,
        detail={
            "code": "quota_exhausted",
            "reason": decision.reason.value,
            "quota_used": decision.quota_used,
            "quota_limit": decision.quota_limit,
        },
    )


@router.post("/generate", response_model=GenerateResponse)
async def generate_image(
    user: CurrentUser,
    quota_service: Annotated[QuotaService, Depends(get_quota_service)],
    generation_service: Annotated[GenerationService, Depends(get_generation_service)],
    image: UploadFile = File(...),
    prompt: str = Form(""),
) -> GenerateResponse:
    """Transform the uploaded image according to the prompt."""
    structlog.contextvars.bind_contextvars(user_id=user.id)

    if not prompt.strip():
        raise HTTPException(status_code=400, detail="A prompt is required.")

    content = await image.read()
    if not content:
        raise HTTPException(status_code=400, detail="No image received.")
    if len(content) > generation_service.config.max_upload_bytes:
        raise HTTPException(status_code=413, detail="Image is too large.")

    decision = await quota_service.record_generation_attempt(user.id)
    if not decision.allowed:
        raise _quota_exhausted_error(decision)

    try:
        result = await generation_service.generate(
            user_id=user.id,
            image=content,
            filename=image.filename or "upload.png",
            content_type=image.content_type,
            prompt=prompt.strip(),
        )
    except Exception as e:
        logger.exception("generation_failed", error=str(e))
        raise HTTPException(
            status_code=500, detail="Image generation failed. Please try again."
        )

    record = await quota_service.record_generation_success(user.id)
    return GenerateResponse(
        image_url=result.image_url,
        quota_used=record.quota_used,
        quota_limit=decision.quota_limit,
    )
