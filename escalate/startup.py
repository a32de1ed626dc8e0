# escalate/startup.py

import logging
import httpx

from escalate.config import Settings

logger = logging.getLogger(__name__)


async def check_ollama_health(settings: Settings) -> bool:
    if not settings.ollama_base_url:
        logger.warning("OLLAMA_BASE_URL not set; summarization will fail until it is configured.")
        return False

    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(f"{settings.ollama_base_url}/api/tags")
            response.raise_for_status()
            tags = response.json().get("models", [])
    except httpx.HTTPError as e:
        logger.error("Ollama unreachable: %s", e)
        return False

    if any(settings.ai_model in tag.get("name", "") for tag in tags):
        logger.info("Ollama model '%s' is available.", settings.ai_model)
        return True
    logger.warning("Ollama reachable but model '%s' not found.", settings.ai_model)
    return False


def log_enabled_integrations(settings: Settings) -> None:
    enabled = settings.integrations_enabled()
    if not enabled:
        logger.warning("No integrations configured; analyses will run on incident ids alone.")
    else:
        logger.info("Enabled integrations: %s", ", ".join(enabled))
