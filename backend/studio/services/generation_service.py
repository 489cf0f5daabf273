"""
Image generation pipeline.

Uploads the source image to Supabase Storage, asks the OpenAI image edit
endpoint for a transformed version, stores the result in the output bucket
and records a ``projects`` row for the user.
"""

import base64
import uuid
from urllib.parse import unquote, urlparse

import httpx
import structlog
from openai import AsyncOpenAI
from pydantic import BaseModel

from studio.config import GenerationConfig, require
from studio.constants import PROJECTS_TABLE

logger = structlog.get_logger(__name__)


class GenerationError(RuntimeError):
    """The model returned no usable image."""


class ProjectNotFound(LookupError):
    """No project with this id belongs to the user."""


PUBLIC_OBJECT_PREFIX = "/storage/v1/object/public/"


def storage_path_from_public_url(public_url: str | None, bucket: str) -> str | None:
    """Object key inside ``bucket`` for a Supabase public URL, or None."""
    if not public_url:
        return None
    path = urlparse(public_url).path
    if not path.startswith(PUBLIC_OBJECT_PREFIX):
        return None
    url_bucket, _, key = path[len(PUBLIC_OBJECT_PREFIX) :].partition("/")
    if url_bucket != bucket or not key:
        return None
    return unquote(key)


class GenerationResult(BaseModel):
    """Stored output of one generation."""

    image_url: str
    input_image_url: str


class GenerationService:
    """Runs one image edit per call; quota accounting is the caller's job."""

    def __init__(
        self,
        supabase,
        openai_client: AsyncOpenAI,
        config: GenerationConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.input_bucket = require(config.input_bucket, "GENERATION__INPUT_BUCKET")
        self.output_bucket = require(config.output_bucket, "GENERATION__OUTPUT_BUCKET")
        self.supabase = supabase
        self.client = openai_client
        self.config = config
        self._transport = transport

    async def _upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        storage = self.supabase.storage.from_(bucket)
        await storage.upload(
            path,
            data,
            file_options={"content-type": content_type, "cache-control": "3600", "upsert": "false"},
        )
        return await storage.get_public_url(path)

    async def _download(self, url: str) -> tuple[bytes, str | None]:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.download_timeout_seconds),
            transport=self._transport,
        ) as client:
            response = await client.get(url)
            response.raise_for_status()
        return response.content, response.headers.get("content-type")

    async def _normalise_output(self, response) -> tuple[bytes, str]:
        """Extract image bytes from an images API response (base64 or URL)."""
        for item in response.data or []:
            if getattr(item, "b64_json", None):
                return base64.b64decode(item.b64_json), self.config.output_content_type
            if getattr(item, "url", None):
                content, content_type = await self._download(item.url)
                return content, content_type or self.config.output_content_type
        raise GenerationError("Image model returned an empty response")

    async def generate(
        self,
        *,
        user_id: str,
        image: bytes,
        filename: str,
        content_type: str | None,
        prompt: str,
    ) -> GenerationResult:
        input_path = f"uploads/{uuid.uuid4()}-{filename}"
        input_url = await self._upload(
            self.input_bucket, input_path, image, content_type or "application/octet-stream"
        )

        logger.info("generation_started", user_id=user_id, model=self.config.model)
        response = await self.client.images.edit(
            model=self.config.model,
            image=(filename, image, content_type or "image/png"),
            prompt=prompt,
        )
        output, output_type = await self._normalise_output(response)

        output_path = f"results/{uuid.uuid4()}.png"
        output_url = await self._upload(self.output_bucket, output_path, output, output_type)

        await self.supabase.table(PROJECTS_TABLE).insert(
            {
                "user_id": user_id,
                "prompt": prompt,
                "input_image_url": input_url,
                "output_image_url": output_url,
                "status": "completed",
            }
        ).execute()

        logger.info("generation_completed", user_id=user_id, output_path=output_path)
        return GenerationResult(image_url=output_url, input_image_url=input_url)

    async def delete_project(self, *, user_id: str, project_id: str) -> None:
        """Remove a user's project and both stored images.

        Storage objects go first; the row is only deleted once they are gone.
        """
        response = (
            await self.supabase.table(PROJECTS_TABLE)
            .select("*")
            .eq("id", project_id)
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            raise ProjectNotFound(project_id)
        project = rows[0]

        for bucket, url in (
            (self.input_bucket, project.get("input_image_url")),
            (self.output_bucket, project.get("output_image_url")),
        ):
            key = storage_path_from_public_url(url, bucket)
            if key:
                await self.supabase.storage.from_(bucket).remove([key])

        await (
            self.supabase.table(PROJECTS_TABLE)
            .delete()
            .eq("id", project_id)
            .eq("user_id", user_id)
            .execute()
        )
        logger.info("project_deleted", user_id=user_id, project_id=project_id)
