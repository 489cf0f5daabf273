"""OpenAI client used by the image generation pipeline."""

import structlog
from openai import AsyncOpenAI

from studio.config import GenerationConfig, get_settings, require

logger = structlog.get_logger(__name__)

TRACE_TAGS = ["image-generation"]


def build_image_client(config: GenerationConfig, api_key: str | None = None) -> AsyncOpenAI:
    """
    Create the AsyncOpenAI client that serves image edits.

    Image edits are slow, so the request timeout and retry count come from
    the generation settings rather than the SDK defaults. When LangSmith
    tracing is enabled the client is wrapped so every edit is traced under
    the configured project, tagged with the model name.

    Raises:
        ConfigurationError: no key passed and none configured.
    """
    settings = get_settings()
    key = require(api_key or settings.openai_api_key, "OPENAI_API_KEY")

    client = AsyncOpenAI(
        api_key=key,
        timeout=config.request_timeout_seconds,
        max_retries=config.max_retries,
    )

    if settings.langchain_tracing_v2 and settings.langsmith_api_key:
        from langsmith.wrappers import wrap_openai

        client = wrap_openai(
            client,
            tracing_extra={"tags": TRACE_TAGS, "metadata": {"model": config.model}},
        )
        logger.info("image_client_tracing_enabled", project=settings.langsmith_project)

    return client
