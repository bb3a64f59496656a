"""
External API clients. Every call goes through ResilientHttpClient.
"""
from app.domain.services.providers.openai_client import OpenAIClient
from app.domain.services.providers.pipedrive_client import PipedriveClient
from app.domain.services.providers.ringover_client import RingoverClient

__all__ = ["OpenAIClient", "PipedriveClient", "RingoverClient"]
