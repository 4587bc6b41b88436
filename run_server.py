import os

import uvicorn

from weather_consensus.config import settings
from weather_consensus.ollama_client import get_ollama_status
from utils.logging_utils import get_tagged_logger, setup_logging

setup_logging(level=os.getenv("LOG_LEVEL", "INFO"))
logger = get_tagged_logger(__name__, tag="server")


def maybe_check_ollama() -> None:
    """
    Check Ollama once at startup. The overview endpoint degrades to null
    without it, so a failed check only logs a warning.
    Set CONSENSUS_SKIP_OLLAMA_CHECK=true to skip the check entirely.
    """
    if os.getenv("CONSENSUS_SKIP_OLLAMA_CHECK", "false").lower() in ("1", "true", "yes"):
        logger.info("Skipping Ollama preflight (CONSENSUS_SKIP_OLLAMA_CHECK=true)")
        return

    status = get_ollama_status(settings)
    if status["ok"]:
        logger.info("Ollama reachable", extra={"base_url": status["base_url"], "model": status["model"]})
    elif status["reachable"]:
        logger.warning(
            "Ollama model not installed; overviews disabled until pulled",
            extra={"model": status["model"], "hint": f"ollama pull {status['model']}"},
        )
    else:
        logger.warning("Ollama unreachable; overviews disabled", extra={"error": status["error"]})


if __name__ == "__main__":
    maybe_check_ollama()

    uvicorn.run(
        "weather_consensus.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=False,
    )
