import os
from typing import Dict

from dotenv import load_dotenv
from groq import AsyncGroq

# --- Configuration ---
load_dotenv()
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
# Upper bound on a single provider call; chat streams also use it as the stall watchdog.
GROQ_TIMEOUT_S = float(os.getenv("GROQ_TIMEOUT_S", "8.0"))
GROQ_AUDIO_TIMEOUT_S = float(os.getenv("GROQ_AUDIO_TIMEOUT_S", "30.0"))

_clients: Dict[float, AsyncGroq] = {}


def get_client(timeout: float = GROQ_TIMEOUT_S) -> AsyncGroq:
    """
    Return a shared AsyncGroq client for the given timeout.

    Retries are disabled at the SDK level; each capability owns its retry policy.
    The client is created lazily so the app can start without GROQ_API_KEY.
    """
    client = _clients.get(timeout)
    if client is None:
        client = AsyncGroq(api_key=GROQ_API_KEY, timeout=timeout, max_retries=0)
        _clients[timeout] = client
    return client


def is_configured() -> bool:
    return bool(GROQ_API_KEY)
