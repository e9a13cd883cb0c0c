from __future__ import annotations

import asyncio

from .base import GenerationBackend
from ..models.generation import GenerationHandle, GenerationRequest


class StaticGenerationBackend(GenerationBackend):
    """
    Test-mode backend: waits briefly and returns a fixed asset URL without
    calling any provider.
    """

    def __init__(self, asset_url: str, delay_seconds: float = 1.0) -> None:
        self._asset_url = asset_url
        self._delay = delay_seconds

    async def invoke(self, request: GenerationRequest) -> GenerationHandle:
        if self._delay:
            await asyncio.sleep(self._delay)
        return GenerationHandle(asset_url=self._asset_url)
